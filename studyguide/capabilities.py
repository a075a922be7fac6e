"""Collaborator interfaces consumed by the extraction pipeline.

The shipped implementations are ``SlideRepository`` (aiosqlite),
``LocalBlobStore``, ``GroqClient`` and ``YouTubeClient``; tests substitute
in-memory fakes.
"""

from typing import Protocol, Sequence

from studyguide.models import DocumentPart, GenerationResult, Slide, TextPart, Topic, Video, VideoCandidate


class Repository(Protocol):
    async def get_slides_for_batch(self, exam_id: int) -> list[Slide]: ...

    async def get_topic_for_slide(self, slide_id: int) -> Topic | None: ...

    async def insert_topic(self, topic: Topic) -> Topic: ...

    async def insert_videos(self, videos: Sequence[Video]) -> list[Video]: ...

    async def update_slide_status(self, slide_id: int, status: str, error: str | None = None) -> None: ...


class BlobStore(Protocol):
    async def create_signed_download_url(self, ref: str, ttl_seconds: int) -> str: ...


class GenerativeModel(Protocol):
    @property
    def default_model(self) -> str: ...

    async def generate(
        self,
        parts: Sequence[TextPart | DocumentPart],
        *,
        max_output_tokens: int = 2048,
        response_format: str = "json",
    ) -> GenerationResult:
        """Raise ``RateLimitedError`` on HTTP 429; report safety blocks via
        ``GenerationResult.block_reason``."""
        ...


class VideoCatalog(Protocol):
    async def search(self, query: str, max_results: int = 10) -> list[VideoCandidate]: ...

    async def get_details(self, ids: Sequence[str]) -> list[VideoCandidate]: ...
