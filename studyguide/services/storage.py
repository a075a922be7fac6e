import hashlib
import hmac
import os
import re
import time
import uuid
from pathlib import Path
from urllib.parse import quote, urlencode

import aiofiles

from studyguide.config import settings
from studyguide.errors import StorageError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_file_name(file_name: str) -> str:
    """Strip directories and shell-hostile characters from an upload name."""
    base = os.path.basename(file_name or "").strip()
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "upload"


class LocalBlobStore:
    """Slide files on local disk, served through time-limited signed URLs.

    A signed URL carries ``expires`` (unix seconds) and an HMAC-SHA256
    ``signature`` over ``"<ref>:<expires>"``.  The ``/api/files`` route calls
    :meth:`resolve` to check both before serving the file.
    """

    def __init__(
        self,
        root: str | None = None,
        *,
        secret: str | None = None,
        base_url: str | None = None,
        clock=time.time,
    ) -> None:
        self.root = Path(root or settings.storage_root).resolve()
        self._secret = (secret or settings.signing_secret).encode()
        self.base_url = (base_url or settings.public_base_url).rstrip("/")
        self._clock = clock

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------
    async def save(self, exam_id: int, file_name: str, content: bytes) -> str:
        """Store *content* and return its reference (path under root)."""
        ref = f"exams/{exam_id}/{uuid.uuid4().hex[:12]}_{safe_file_name(file_name)}"
        path = self.root / ref
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "wb") as f:
            await f.write(content)
        return ref

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------
    def _sign(self, ref: str, expires: int) -> str:
        return hmac.new(self._secret, f"{ref}:{expires}".encode(), hashlib.sha256).hexdigest()

    def _path_for(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if self.root not in path.parents:
            raise StorageError(f"Invalid file reference: {ref}")
        return path

    async def create_signed_download_url(self, ref: str, ttl_seconds: int) -> str:
        path = self._path_for(ref)
        if not path.is_file():
            raise StorageError(f"Object not found: {ref}")
        expires = int(self._clock()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._sign(ref, expires)})
        return f"{self.base_url}/api/files/{quote(ref)}?{query}"

    def resolve(self, ref: str, expires: int, signature: str) -> Path:
        """Return the file behind a signed URL, or raise ``StorageError``."""
        if expires < int(self._clock()):
            raise StorageError("Signed URL expired")
        if not hmac.compare_digest(self._sign(ref, expires), signature):
            raise StorageError("Invalid signature")
        path = self._path_for(ref)
        if not path.is_file():
            raise StorageError(f"Object not found: {ref}")
        return path
