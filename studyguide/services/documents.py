import logging
from pathlib import Path

import httpx

from studyguide.capabilities import BlobStore
from studyguide.config import settings
from studyguide.errors import DownloadError, StorageError
from studyguide.models import Slide, SlideDocument

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
PPTX_MIME = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

_MAGIC = [
    (b"%PDF", PDF_MIME),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
]

_EXTENSIONS = {
    ".pdf": PDF_MIME,
    ".pptx": PPTX_MIME,
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def detect_mime_type(content: bytes, file_name: str = "") -> str:
    """Sniff the document type from magic bytes, then from the extension."""
    for magic, mime in _MAGIC:
        if content.startswith(magic):
            return mime
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    ext = Path(file_name).suffix.lower()
    if content.startswith(b"PK\x03\x04") and ext in ("", ".pptx"):
        return PPTX_MIME
    return _EXTENSIONS.get(ext, "application/octet-stream")


class DocumentFetcher:
    """Resolve a stored slide reference to raw bytes via a signed URL.

    No caching: each call signs and downloads again, since every document is
    processed once per orchestration run.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        *,
        http: httpx.AsyncClient | None = None,
        ttl_seconds: int | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.blob_store = blob_store
        self._http = http
        self.ttl_seconds = ttl_seconds or settings.signed_url_ttl_seconds
        self.timeout = timeout

    async def fetch(self, file_ref: str) -> bytes:
        try:
            url = await self.blob_store.create_signed_download_url(file_ref, self.ttl_seconds)
        except OSError as exc:
            raise StorageError(f"Could not sign {file_ref}: {exc}") from exc

        try:
            if self._http is not None:
                resp = await self._http.get(url)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise DownloadError(f"Fetch slide failed: {exc}") from exc

        if not resp.is_success:
            raise DownloadError(f"Fetch slide failed: {resp.status_code}")
        return resp.content

    async def fetch_document(self, slide: Slide) -> SlideDocument:
        content = await self.fetch(slide.file_ref)
        file_name = slide.file_name or Path(slide.file_ref).name
        logger.debug("Fetched slide %s (%d bytes)", slide.id, len(content))
        return SlideDocument(
            slide_id=slide.id,
            file_name=file_name,
            mime_type=detect_mime_type(content, file_name),
            content=content,
        )
