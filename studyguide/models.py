from dataclasses import asdict, dataclass, field
from enum import Enum


class SlideStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass
class Exam:
    id: int
    name: str
    created_at: str


@dataclass
class Slide:
    id: int
    exam_id: int
    file_ref: str  # path relative to the blob store root
    file_name: str
    status: str = SlideStatus.PENDING.value
    error: str | None = None


@dataclass
class Topic:
    slide_id: int
    title: str
    subpoints: list[str]
    id: int | None = None


@dataclass
class Video:
    topic_id: int
    youtube_id: str
    title: str
    description: str
    thumbnail_url: str
    subpoint_index: int
    duration_seconds: int | None = None
    id: int | None = None


@dataclass
class VideoCandidate:
    """One catalog search hit, before it is attached to a topic."""

    id: str
    title: str
    description: str = ""
    thumbnail_url: str = ""
    duration_seconds: int | None = None

    def to_video(self, topic_id: int, subpoint_index: int) -> Video:
        return Video(
            topic_id=topic_id,
            youtube_id=self.id,
            title=self.title,
            description=self.description,
            thumbnail_url=self.thumbnail_url,
            subpoint_index=subpoint_index,
            duration_seconds=self.duration_seconds,
        )


# ---------------------------------------------------------------------------
# Generative model I/O
# ---------------------------------------------------------------------------


@dataclass
class TextPart:
    text: str


@dataclass
class DocumentPart:
    mime_type: str
    data: bytes
    name: str = ""


@dataclass
class GenerationResult:
    text: str
    finish_reason: str | None = None
    block_reason: str | None = None


@dataclass
class SlideDocument:
    """A fetched slide file ready to be sent to the model."""

    slide_id: int
    file_name: str
    mime_type: str
    content: bytes

    def as_part(self) -> DocumentPart:
        return DocumentPart(mime_type=self.mime_type, data=self.content, name=self.file_name)


@dataclass
class Extraction:
    title: str
    subpoints: list[str]
    raw_preview: str = ""
    synthesized: bool = False  # batch fallback for a slide the model skipped


# ---------------------------------------------------------------------------
# Orchestration results
# ---------------------------------------------------------------------------


@dataclass
class SlideResult:
    id: int
    ok: bool
    elapsed_ms: int
    error: str | None = None
    error_kind: str | None = None
    skipped: bool = False
    preview: str | None = None
    topic_id: int | None = None
    videos_inserted: int = 0


@dataclass
class BatchReport:
    topics_inserted: int
    skipped: int
    failed: int
    results: list[SlideResult] = field(default_factory=list)
    model: str = ""
    mode: str = ""

    @classmethod
    def from_results(cls, results: list[SlideResult], *, model: str = "", mode: str = "") -> "BatchReport":
        return cls(
            topics_inserted=sum(1 for r in results if r.ok and not r.skipped),
            skipped=sum(1 for r in results if r.skipped),
            failed=sum(1 for r in results if not r.ok),
            results=results,
            model=model,
            mode=mode,
        )

    def to_dict(self) -> dict:
        return {
            "topics_inserted": self.topics_inserted,
            "skipped": self.skipped,
            "failed": self.failed,
            "diagnostics": {
                "model": self.model,
                "mode": self.mode,
                "slide_count": len(self.results),
                "results": [asdict(r) for r in self.results],
            },
        }
