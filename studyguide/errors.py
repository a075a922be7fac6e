"""Exception taxonomy for the extraction pipeline.

Two families:

* request-level errors (``ConfigurationError``, ``RequestValidationError``)
  abort a whole ``process_batch`` call before any slide is touched;
* ``PipelineError`` subclasses are caught at the slide / chunk boundary and
  turned into ``SlideResult`` entries.  They never abort the batch.

``RateLimitedError`` is not a failure by itself: it is the transient signal
adapters raise on HTTP 429 so the ``RateLimiter`` can back off and retry.
"""

PREVIEW_LENGTH = 200


def preview_of(text: str | None, limit: int = PREVIEW_LENGTH) -> str:
    """Return at most *limit* characters of *text* for diagnostics."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit]


class StudyGuideError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Request-level
# ---------------------------------------------------------------------------


class ConfigurationError(StudyGuideError):
    """A required credential or setting is missing."""


class RequestValidationError(StudyGuideError):
    """The request does not name a valid batch target."""


# ---------------------------------------------------------------------------
# Slide / chunk level
# ---------------------------------------------------------------------------


class PipelineError(StudyGuideError):
    kind = "pipeline"

    def __init__(self, message: str, *, preview: str | None = None) -> None:
        super().__init__(message)
        self.preview = preview


class StorageError(PipelineError):
    kind = "storage"


class DownloadError(PipelineError):
    kind = "download"


class ExtractionParseError(PipelineError):
    kind = "parse"


class EmptyExtractionError(PipelineError):
    kind = "empty"


class GenerationError(PipelineError):
    """Non-transient failure talking to the generative model."""

    kind = "generation"


class QuotaExceededError(PipelineError):
    kind = "quota"

    def __init__(self, message: str, *, quota: str | None = None) -> None:
        super().__init__(message)
        self.quota = quota


class ContentBlockedError(PipelineError):
    kind = "blocked"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class VideoSearchError(PipelineError):
    kind = "video_search"


class RepositoryError(PipelineError):
    kind = "repository"


# ---------------------------------------------------------------------------
# Transient signal
# ---------------------------------------------------------------------------


class RateLimitedError(StudyGuideError):
    """HTTP 429 from the generative model.

    ``retry_after`` is the server-suggested delay in seconds when the
    response carried one; ``quota`` is the reported limit, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        quota: str | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.quota = quota
