import logging
import time

from studyguide.capabilities import Repository
from studyguide.errors import PipelineError, RepositoryError, VideoSearchError
from studyguide.models import Extraction, Slide, SlideResult, SlideStatus, Topic, Video, VideoCandidate
from studyguide.services.documents import DocumentFetcher
from studyguide.services.extraction import StructuredExtractor
from studyguide.services.videos import VideoFinder, VideoRanker

logger = logging.getLogger(__name__)

INTERNAL_ERROR_KIND = "internal"


def elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class VideoAssigner:
    """Pick one video per subpoint of a topic.

    A pick that repeats an already-used catalog item is swapped for the first
    unused candidate from the same search; if there is none, the repeat is
    kept.  The same ``youtube_id`` can therefore back several subpoints, each
    with its own row.
    """

    def __init__(self, finder: VideoFinder, ranker: VideoRanker | None = None) -> None:
        self.finder = finder
        self.ranker = ranker

    async def _pick(self, topic_title: str, subpoint: str, used: set[str]) -> VideoCandidate | None:
        candidates = await self.finder.find_for_subpoint(topic_title, subpoint)
        if not candidates:
            return None
        if self.ranker is not None and self.ranker.enabled:
            ranked = await self.ranker.rank(topic_title, [subpoint], candidates, top_n=1)
        else:
            ranked = candidates[:1]
        pick = ranked[0] if ranked else candidates[0]
        if pick.id in used:
            alternate = next((c for c in candidates if c.id not in used), None)
            if alternate is not None:
                pick = alternate
        return pick

    async def assign(self, repository: Repository, topic: Topic) -> list[Video]:
        """Insert one Video row per subpoint; failures only reduce coverage."""
        if not self.finder.enabled:
            return []
        used: set[str] = set()
        inserted: list[Video] = []
        for index, subpoint in enumerate(topic.subpoints):
            try:
                pick = await self._pick(topic.title, subpoint, used)
            except VideoSearchError as exc:
                logger.warning("Video search failed for topic %s subpoint %d: %s", topic.id, index, exc)
                continue
            except Exception:
                logger.exception("Video lookup crashed for topic %s subpoint %d", topic.id, index)
                continue
            if pick is None:
                logger.info("No video found for topic %s subpoint %d", topic.id, index)
                continue
            used.add(pick.id)
            try:
                inserted.extend(await repository.insert_videos([pick.to_video(topic.id, index)]))
            except RepositoryError as exc:
                logger.warning("Could not store video for topic %s subpoint %d: %s", topic.id, index, exc)
        return inserted


class SlideProcessor:
    """Per-slide unit of work: ``pending -> processing -> done | error``.

    A slide that already has a topic goes straight to ``done`` without any
    network call.
    """

    def __init__(
        self,
        repository: Repository,
        fetcher: DocumentFetcher,
        extractor: StructuredExtractor,
        videos: VideoAssigner,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.extractor = extractor
        self.videos = videos

    async def skip_if_done(self, slide: Slide, started: float) -> SlideResult | None:
        """Idempotency guard: ``SlideResult(skipped=True)`` if a topic exists."""
        existing = await self.repository.get_topic_for_slide(slide.id)
        if existing is None:
            return None
        await self.repository.update_slide_status(slide.id, SlideStatus.DONE.value)
        return SlideResult(
            id=slide.id,
            ok=True,
            skipped=True,
            elapsed_ms=elapsed_ms(started),
            topic_id=existing.id,
        )

    async def fail(self, slide: Slide, exc: Exception, started: float) -> SlideResult:
        """Mark the slide ``error`` and report *exc* as a failed result.

        Anything that is not a ``PipelineError`` is reported with kind
        ``internal``.
        """
        kind = exc.kind if isinstance(exc, PipelineError) else INTERNAL_ERROR_KIND
        message = str(exc) or type(exc).__name__
        logger.warning("Slide %s failed (%s): %s", slide.id, kind, message)
        try:
            await self.repository.update_slide_status(slide.id, SlideStatus.ERROR.value, message)
        except RepositoryError as status_exc:
            logger.error("Could not mark slide %s as error: %s", slide.id, status_exc)
        return SlideResult(
            id=slide.id,
            ok=False,
            elapsed_ms=elapsed_ms(started),
            error=message,
            error_kind=kind,
            preview=getattr(exc, "preview", None),
        )

    async def persist_extraction(self, slide: Slide, extraction: Extraction, started: float) -> SlideResult:
        """Store the topic, attach videos, mark the slide done."""
        try:
            topic = await self.repository.insert_topic(
                Topic(slide_id=slide.id, title=extraction.title, subpoints=extraction.subpoints)
            )
            videos = await self.videos.assign(self.repository, topic)
            await self.repository.update_slide_status(slide.id, SlideStatus.DONE.value)
        except PipelineError as exc:
            return await self.fail(slide, exc, started)
        except Exception as exc:
            logger.exception("Unexpected error storing slide %s", slide.id)
            return await self.fail(slide, exc, started)
        return SlideResult(
            id=slide.id,
            ok=True,
            elapsed_ms=elapsed_ms(started),
            topic_id=topic.id,
            videos_inserted=len(videos),
        )

    async def process(self, slide: Slide) -> SlideResult:
        started = time.perf_counter()
        try:
            skipped = await self.skip_if_done(slide, started)
            if skipped is not None:
                return skipped
            await self.repository.update_slide_status(slide.id, SlideStatus.PROCESSING.value)
            document = await self.fetcher.fetch_document(slide)
            extraction = await self.extractor.extract(document)
        except PipelineError as exc:
            return await self.fail(slide, exc, started)
        except Exception as exc:
            logger.exception("Unexpected error processing slide %s", slide.id)
            return await self.fail(slide, exc, started)
        return await self.persist_extraction(slide, extraction, started)
