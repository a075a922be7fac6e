from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from studyguide.dependencies import get_video_finder
from studyguide.errors import VideoSearchError
from studyguide.services.videos import VideoFinder

router = APIRouter(prefix="/api", tags=["videos"])


class AlternativesRequest(BaseModel):
    video_title: str | None = None
    topic_title: str | None = None
    exclude_video_ids: list[str] = Field(default_factory=list)


@router.post("/videos/alternatives")
async def alternative_videos(
    body: AlternativesRequest, finder: VideoFinder = Depends(get_video_finder)
) -> dict:
    """Up to three other videos for a topic, excluding the ones already shown."""
    title = (body.video_title or body.topic_title or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="video_title or topic_title required")
    if not finder.enabled:
        raise HTTPException(status_code=400, detail="YOUTUBE_API_KEY not set")
    try:
        videos = await finder.alternatives(title, body.exclude_video_ids)
    except VideoSearchError as exc:
        raise HTTPException(status_code=502, detail=str(exc))
    return {"videos": [asdict(v) for v in videos]}
