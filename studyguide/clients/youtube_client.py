import re
from typing import Sequence

import httpx

from studyguide.config import settings
from studyguide.errors import VideoSearchError
from studyguide.models import VideoCandidate

API_BASE = "https://www.googleapis.com/youtube/v3"

_ISO_DURATION = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")


def parse_duration(iso_duration: str | None) -> int:
    """``PT1H2M3S`` -> 3723.  Missing components count as 0; junk is 0."""
    match = _ISO_DURATION.match(iso_duration or "")
    if not match:
        return 0
    hours, minutes, seconds = (int(g or 0) for g in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def _thumbnail(snippet: dict) -> str:
    thumbs = snippet.get("thumbnails") or {}
    for key in ("high", "medium", "default"):
        url = (thumbs.get(key) or {}).get("url")
        if url:
            return url
    return ""


class YouTubeClient:
    """Minimal YouTube Data API v3 client: search, then batch details."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        http: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.youtube_api_key
        self._http = http
        self.timeout = timeout

    async def _get(self, path: str, params: dict) -> dict:
        params = {**params, "key": self.api_key}
        try:
            if self._http is not None:
                resp = await self._http.get(f"{API_BASE}/{path}", params=params)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.get(f"{API_BASE}/{path}", params=params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise VideoSearchError(
                f"YouTube {path} API error: {exc.response.status_code} {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise VideoSearchError(f"YouTube {path} request failed: {exc}") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise VideoSearchError(f"YouTube {path} returned invalid JSON: {resp.text[:200]}") from exc
        if not isinstance(data, dict):
            raise VideoSearchError(f"YouTube {path} returned {type(data).__name__}, expected an object")
        return data

    async def search(self, query: str, max_results: int = 10) -> list[VideoCandidate]:
        data = await self._get(
            "search",
            {"part": "snippet", "type": "video", "maxResults": max_results, "q": query},
        )
        candidates = []
        try:
            for item in data.get("items") or []:
                video_id = (item.get("id") or {}).get("videoId")
                if not video_id:
                    continue
                snippet = item.get("snippet") or {}
                candidates.append(
                    VideoCandidate(
                        id=video_id,
                        title=snippet.get("title", ""),
                        description=snippet.get("description", ""),
                        thumbnail_url=_thumbnail(snippet),
                    )
                )
        except (AttributeError, TypeError) as exc:
            raise VideoSearchError(f"Malformed YouTube search response: {exc}") from exc
        return candidates

    async def get_details(self, ids: Sequence[str]) -> list[VideoCandidate]:
        if not ids:
            return []
        data = await self._get(
            "videos",
            {"part": "snippet,contentDetails", "id": ",".join(ids)},
        )
        details = []
        try:
            for item in data.get("items") or []:
                snippet = item.get("snippet") or {}
                content = item.get("contentDetails") or {}
                details.append(
                    VideoCandidate(
                        id=item["id"],
                        title=snippet.get("title", ""),
                        description=snippet.get("description", ""),
                        thumbnail_url=_thumbnail(snippet),
                        duration_seconds=parse_duration(content.get("duration") or "PT0S"),
                    )
                )
        except (KeyError, AttributeError, TypeError) as exc:
            raise VideoSearchError(f"Malformed YouTube videos response: {exc!r}") from exc
        return details
