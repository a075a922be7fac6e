from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, unquote, urlsplit

import httpx
import pytest

from conftest import PDF_BYTES, FakeBlobStore, file_transport
from studyguide.errors import DownloadError, StorageError
from studyguide.models import Slide
from studyguide.services.documents import PDF_MIME, PPTX_MIME, DocumentFetcher, detect_mime_type
from studyguide.services.storage import LocalBlobStore, safe_file_name


def _store(tmp_path, clock=lambda: 1000.0) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path / "blobs"), secret="s3cret", base_url="http://files.local/", clock=clock)


def _signed_parts(url: str) -> tuple[str, int, str]:
    parts = urlsplit(url)
    query = parse_qs(parts.query)
    ref = unquote(parts.path.removeprefix("/api/files/"))
    return ref, int(query["expires"][0]), query["signature"][0]


def test_safe_file_name() -> None:
    assert safe_file_name("../../etc/passwd") == "passwd"
    assert safe_file_name("Week 3: Thermo.pdf") == "Week_3_Thermo.pdf"
    assert safe_file_name("") == "upload"


def test_save_and_sign_round_trip(tmp_path) -> None:
    store = _store(tmp_path)

    ref = asyncio.run(store.save(7, "lecture 1.pdf", PDF_BYTES))
    url = asyncio.run(store.create_signed_download_url(ref, 300))

    assert ref.startswith("exams/7/") and ref.endswith("_lecture_1.pdf")
    assert url.startswith("http://files.local/api/files/exams/7/")
    signed_ref, expires, signature = _signed_parts(url)
    assert signed_ref == ref
    assert expires == 1300
    assert store.resolve(signed_ref, expires, signature).read_bytes() == PDF_BYTES


def test_expired_url_is_rejected(tmp_path) -> None:
    now = [1000.0]
    store = _store(tmp_path, clock=lambda: now[0])
    ref = asyncio.run(store.save(1, "a.pdf", PDF_BYTES))
    _, expires, signature = _signed_parts(asyncio.run(store.create_signed_download_url(ref, 60)))

    now[0] = 2000.0

    with pytest.raises(StorageError, match="expired"):
        store.resolve(ref, expires, signature)


def test_tampered_signature_or_ref_is_rejected(tmp_path) -> None:
    store = _store(tmp_path)
    ref = asyncio.run(store.save(1, "a.pdf", PDF_BYTES))
    other = asyncio.run(store.save(1, "b.pdf", PDF_BYTES))
    _, expires, signature = _signed_parts(asyncio.run(store.create_signed_download_url(ref, 60)))

    with pytest.raises(StorageError, match="signature"):
        store.resolve(ref, expires, "0" * 64)
    with pytest.raises(StorageError, match="signature"):
        store.resolve(other, expires, signature)
    with pytest.raises(StorageError, match="signature"):
        store.resolve(ref, expires + 100, signature)


def test_missing_object_and_traversal(tmp_path) -> None:
    store = _store(tmp_path)

    with pytest.raises(StorageError, match="not found"):
        asyncio.run(store.create_signed_download_url("exams/1/nope.pdf", 60))
    with pytest.raises(StorageError, match="Invalid file reference"):
        asyncio.run(store.create_signed_download_url("../outside.pdf", 60))


def test_detect_mime_type() -> None:
    assert detect_mime_type(PDF_BYTES, "whatever.bin") == PDF_MIME
    assert detect_mime_type(b"\x89PNG\r\n\x1a\n....", "") == "image/png"
    assert detect_mime_type(b"\xff\xd8\xff\xe0", "") == "image/jpeg"
    assert detect_mime_type(b"RIFF\x00\x00\x00\x00WEBPVP8 ", "") == "image/webp"
    assert detect_mime_type(b"PK\x03\x04rest", "deck.pptx") == PPTX_MIME
    assert detect_mime_type(b"plain", "notes.PDF") == PDF_MIME
    assert detect_mime_type(b"plain", "notes.xyz") == "application/octet-stream"


def _slide(ref: str, name: str = "lecture1.pdf") -> Slide:
    return Slide(id=1, exam_id=1, file_ref=ref, file_name=name)


def test_fetcher_downloads_through_signed_url(tmp_path) -> None:
    store = _store(tmp_path)
    ref = asyncio.run(store.save(1, "lecture1.pdf", PDF_BYTES))

    def handler(request: httpx.Request) -> httpx.Response:
        query = parse_qs(request.url.query.decode())
        try:
            path = store.resolve(
                unquote(request.url.path.removeprefix("/api/files/")),
                int(query["expires"][0]),
                query["signature"][0],
            )
        except StorageError:
            return httpx.Response(403)
        return httpx.Response(200, content=path.read_bytes())

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            return await DocumentFetcher(store, http=http, ttl_seconds=60).fetch_document(_slide(ref))

    document = asyncio.run(run())

    assert document.content == PDF_BYTES
    assert document.mime_type == PDF_MIME
    assert document.file_name == "lecture1.pdf"


def test_fetcher_maps_http_status_to_download_error() -> None:
    async def run():
        async with httpx.AsyncClient(transport=file_transport({})) as http:
            await DocumentFetcher(FakeBlobStore(), http=http).fetch("exams/1/a.pdf")

    with pytest.raises(DownloadError, match="Fetch slide failed: 404"):
        asyncio.run(run())


def test_fetcher_maps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            await DocumentFetcher(FakeBlobStore(), http=http).fetch("exams/1/a.pdf")

    with pytest.raises(DownloadError, match="connection refused"):
        asyncio.run(run())


def test_fetcher_propagates_storage_errors() -> None:
    async def run():
        async with httpx.AsyncClient(transport=file_transport({})) as http:
            await DocumentFetcher(FakeBlobStore(missing=["gone.pdf"]), http=http).fetch("gone.pdf")

    with pytest.raises(StorageError):
        asyncio.run(run())


def test_fetcher_uses_ref_name_when_slide_has_none() -> None:
    async def run():
        async with httpx.AsyncClient(transport=file_transport({"exams/1/abc_deck.pdf": PDF_BYTES})) as http:
            return await DocumentFetcher(FakeBlobStore(), http=http).fetch_document(_slide("exams/1/abc_deck.pdf", ""))

    assert asyncio.run(run()).file_name == "abc_deck.pdf"
