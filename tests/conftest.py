from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Callable, Sequence

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from studyguide.database import init_db
from studyguide.errors import StorageError, VideoSearchError
from studyguide.models import GenerationResult, VideoCandidate
from studyguide.services.documents import DocumentFetcher
from studyguide.services.extraction import StructuredExtractor
from studyguide.services.processor import SlideProcessor, VideoAssigner
from studyguide.services.rate_limiter import RateLimiter
from studyguide.services.repository import SlideRepository
from studyguide.services.videos import VideoFinder, VideoRanker

PDF_BYTES = b"%PDF-1.4\n% fake slide\n"


class FakeClock:
    """Monotonic clock whose ``sleep`` advances time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeModel:
    """Scripted generative model.

    Each call pops the next script entry: a string (response text), a
    ``GenerationResult``, an exception instance (raised), or a callable
    taking the parts.  When the script runs out, ``default`` is used.
    """

    def __init__(self, script: Sequence = (), default=None, name: str = "fake-model") -> None:
        self.script = list(script)
        self.default = default
        self.calls: list[dict] = []
        self._name = name

    @property
    def default_model(self) -> str:
        return self._name

    async def generate(self, parts, *, max_output_tokens: int = 2048, response_format: str = "json"):
        self.calls.append(
            {"parts": list(parts), "max_output_tokens": max_output_tokens, "response_format": response_format}
        )
        entry = self.script.pop(0) if self.script else self.default
        if callable(entry) and not isinstance(entry, (str, GenerationResult)):
            entry = entry(parts)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, GenerationResult):
            return entry
        if entry is None:
            raise AssertionError("FakeModel script exhausted")
        return GenerationResult(text=entry, finish_reason="stop")


def video(video_id: str, title: str | None = None, duration: int | None = None) -> VideoCandidate:
    return VideoCandidate(
        id=video_id,
        title=title or f"Video {video_id}",
        description=f"About {video_id}",
        thumbnail_url=f"https://img.example/{video_id}.jpg",
        duration_seconds=duration,
    )


class FakeCatalog:
    """Video catalog returning ``results(query)`` for every search."""

    def __init__(
        self,
        results: Callable[[str], list[VideoCandidate]] | list[VideoCandidate] = (),
        *,
        fail_search: bool = False,
        fail_details: bool = False,
    ) -> None:
        self._results = results
        self.fail_search = fail_search
        self.fail_details = fail_details
        self.queries: list[str] = []

    async def search(self, query: str, max_results: int = 10) -> list[VideoCandidate]:
        self.queries.append(query)
        if self.fail_search:
            raise VideoSearchError("search unavailable")
        results = self._results(query) if callable(self._results) else list(self._results)
        return [VideoCandidate(c.id, c.title, c.description, c.thumbnail_url) for c in results][:max_results]

    async def get_details(self, ids: Sequence[str]) -> list[VideoCandidate]:
        if self.fail_details:
            raise VideoSearchError("details unavailable")
        return [video(i, duration=60) for i in ids]


class FakeBlobStore:
    def __init__(self, missing: Sequence[str] = ()) -> None:
        self.missing = set(missing)

    async def create_signed_download_url(self, ref: str, ttl_seconds: int) -> str:
        if ref in self.missing:
            raise StorageError(f"Object not found: {ref}")
        return f"https://files.test/{ref}?expires=300&signature=abc"


def file_transport(files: dict[str, bytes]) -> httpx.MockTransport:
    """Serve ``files`` (keyed by ref) at ``https://files.test/<ref>``."""

    def handler(request: httpx.Request) -> httpx.Response:
        ref = request.url.path.lstrip("/")
        if ref not in files:
            return httpx.Response(404)
        return httpx.Response(200, content=files[ref])

    return httpx.MockTransport(handler)


def build_processor(
    repository,
    model: FakeModel,
    *,
    catalog: FakeCatalog | None = None,
    files: dict[str, bytes] | None = None,
    rerank: bool = False,
    limiter: RateLimiter | None = None,
    missing: Sequence[str] = (),
) -> SlideProcessor:
    """Wire a real pipeline around fakes.  Call from inside the running loop."""
    limiter = limiter or RateLimiter(0, max_attempts=3, default_retry_delay=0)
    http = httpx.AsyncClient(transport=file_transport(files or {}))
    return SlideProcessor(
        repository,
        DocumentFetcher(FakeBlobStore(missing), http=http),
        StructuredExtractor(model, limiter),
        VideoAssigner(VideoFinder(catalog), VideoRanker(model, limiter, enabled=rerank)),
    )


async def seed_exam(repository: SlideRepository, count: int, name: str = "Biology") -> tuple[int, list]:
    exam = await repository.create_exam(name)
    slides = []
    for i in range(count):
        slides.append(await repository.add_slide(exam.id, f"exams/{exam.id}/lecture{i + 1}.pdf", f"lecture{i + 1}.pdf"))
    return exam.id, slides


def slide_files(slides) -> dict[str, bytes]:
    return {s.file_ref: PDF_BYTES for s in slides}


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "studyguide.db")
    asyncio.run(init_db(path))
    return path


@pytest.fixture()
def repository(db_path: str) -> SlideRepository:
    return SlideRepository(db_path)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
