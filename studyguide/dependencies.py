"""FastAPI dependency providers.  Tests swap these via ``app.dependency_overrides``."""

from fastapi import Request

from studyguide.clients import YouTubeClient
from studyguide.config import settings
from studyguide.services.orchestrator import BatchOrchestrator, build_orchestrator
from studyguide.services.rate_limiter import RateLimiter
from studyguide.services.repository import SlideRepository
from studyguide.services.storage import LocalBlobStore
from studyguide.services.videos import VideoFinder


def get_repository() -> SlideRepository:
    return SlideRepository(settings.database_path)


def get_blob_store() -> LocalBlobStore:
    return LocalBlobStore(settings.storage_root)


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        limiter = request.app.state.rate_limiter = RateLimiter()
    return limiter


def get_video_finder() -> VideoFinder:
    catalog = YouTubeClient(settings.youtube_api_key) if settings.youtube_api_key else None
    return VideoFinder(catalog, max_results=settings.video_search_results)


def get_orchestrator(request: Request) -> BatchOrchestrator:
    """Raises ``ConfigurationError`` when credentials are missing."""
    return build_orchestrator(get_repository(), get_blob_store(), get_rate_limiter(request))
