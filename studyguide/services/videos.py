import logging
import re
from typing import Sequence

from studyguide.capabilities import GenerativeModel, VideoCatalog
from studyguide.errors import StudyGuideError, VideoSearchError
from studyguide.models import TextPart, VideoCandidate
from studyguide.services.json_repair import ParseFailure, parse_jsonish
from studyguide.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 100
QUERY_SUFFIX = "tutorial explanation"
MAX_DESCRIPTION_CHARS = 200
ALTERNATIVES_LIMIT = 3

_WHITESPACE = re.compile(r"\s+")


def build_query(*pieces: str) -> str:
    """Join the pieces with the tutorial suffix, capped at 100 characters."""
    text = " ".join(p for p in (*pieces, QUERY_SUFFIX) if p)
    return _WHITESPACE.sub(" ", text).strip()[:MAX_QUERY_LENGTH].strip()


class VideoFinder:
    """Search the video catalog and enrich hits with durations.

    Without a catalog (no API key) every lookup returns ``[]``: callers
    treat "no videos" as a normal outcome.
    """

    def __init__(self, catalog: VideoCatalog | None, max_results: int = 10) -> None:
        self.catalog = catalog
        self.max_results = max_results

    @property
    def enabled(self) -> bool:
        return self.catalog is not None

    async def find(self, query: str) -> list[VideoCandidate]:
        """Raises ``VideoSearchError`` only if the search phase itself fails."""
        if self.catalog is None:
            return []
        candidates = await self.catalog.search(query, self.max_results)
        if not candidates:
            return []

        try:
            details = await self.catalog.get_details([c.id for c in candidates])
        except VideoSearchError as exc:
            logger.warning("Video details lookup failed, using search results only: %s", exc)
            return candidates

        by_id = {d.id: d for d in details}
        return [by_id.get(c.id, c) for c in candidates]

    async def find_for_subpoint(self, topic_title: str, subpoint: str) -> list[VideoCandidate]:
        return await self.find(build_query(topic_title, subpoint))

    async def alternatives(
        self,
        title: str,
        exclude_ids: Sequence[str] = (),
        limit: int = ALTERNATIVES_LIMIT,
    ) -> list[VideoCandidate]:
        """Other videos for the same title, skipping the ones already shown."""
        excluded = set(exclude_ids)
        candidates = await self.find(build_query(title))
        return [c for c in candidates if c.id not in excluded][:limit]


class VideoRanker:
    """Ask the model to order candidates by relevance.

    Ranking only improves quality: when it is disabled or anything goes
    wrong the first ``top_n`` candidates are returned unranked.
    """

    def __init__(
        self,
        model: GenerativeModel | None,
        limiter: RateLimiter | None,
        *,
        enabled: bool = True,
    ) -> None:
        self.model = model
        self.limiter = limiter
        self.enabled = enabled and model is not None and limiter is not None

    @staticmethod
    def build_prompt(topic_title: str, subpoints: Sequence[str], candidates: Sequence[VideoCandidate]) -> str:
        lines = [
            f'Topic: "{topic_title}"',
            "The video must explain: " + "; ".join(subpoints),
            "",
            "Candidate videos:",
        ]
        for index, candidate in enumerate(candidates):
            description = _WHITESPACE.sub(" ", candidate.description or "")[:MAX_DESCRIPTION_CHARS]
            lines.append(f"[{index}] {candidate.title} - {description}")
        lines.append("")
        lines.append(
            'Rank the candidates from most to least relevant for a student. Return STRICT JSON only: '
            '{"ranked": number[]} using the bracketed indices.'
        )
        return "\n".join(lines)

    async def rank(
        self,
        topic_title: str,
        subpoints: Sequence[str],
        candidates: Sequence[VideoCandidate],
        top_n: int = 3,
    ) -> list[VideoCandidate]:
        fallback = list(candidates[:top_n])
        if not self.enabled or len(candidates) <= 1:
            return fallback

        try:
            result = await self.limiter.call(
                self.model.generate,
                [TextPart(self.build_prompt(topic_title, subpoints, candidates))],
                max_output_tokens=256,
                response_format="json",
            )
        except StudyGuideError as exc:
            logger.warning("Video ranking failed, keeping search order: %s", exc)
            return fallback

        parsed = parse_jsonish(result.text)
        if isinstance(parsed, ParseFailure):
            logger.warning("Video ranking output unparseable, keeping search order: %s", parsed.reason)
            return fallback

        indices = parsed.value.get("ranked")
        if not isinstance(indices, list):
            return fallback
        ranked: list[VideoCandidate] = []
        seen: set[int] = set()
        for raw_index in indices:
            if isinstance(raw_index, bool):
                continue
            try:
                index = int(raw_index)
            except (TypeError, ValueError, OverflowError):
                continue
            if 0 <= index < len(candidates) and index not in seen:
                seen.add(index)
                ranked.append(candidates[index])
        return ranked[:top_n] or fallback
