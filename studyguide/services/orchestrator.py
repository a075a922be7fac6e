"""Batch entry point: run every slide of an exam through the pipeline.

Two strategies share the per-slide persistence steps of ``SlideProcessor``:

* ``BatchedExtraction`` sends one multi-document model call per chunk;
* ``IndividualProcessing`` runs the full ``SlideProcessor`` per slide over a
  small pool of concurrent workers.

Per-slide and per-chunk failures come back as ``SlideResult`` data; only
request-level problems raise.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Protocol, Sequence

import httpx

from studyguide.capabilities import GenerativeModel, Repository
from studyguide.clients import GroqClient, YouTubeClient
from studyguide.config import Settings, settings as default_settings
from studyguide.errors import PipelineError, RequestValidationError
from studyguide.models import BatchReport, Slide, SlideDocument, SlideResult, SlideStatus
from studyguide.services.documents import DocumentFetcher
from studyguide.services.extraction import StructuredExtractor
from studyguide.services.processor import SlideProcessor, VideoAssigner, elapsed_ms
from studyguide.services.rate_limiter import RateLimiter
from studyguide.services.storage import LocalBlobStore
from studyguide.services.videos import VideoFinder, VideoRanker

logger = logging.getLogger(__name__)

MAX_POOL_SIZE = 6

Sleep = Callable[[float], Awaitable[None]]


def chunked(items: Sequence, size: int) -> list[list]:
    size = max(1, size)
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def round_robin(items: Sequence, buckets: int) -> list[list]:
    """Deal *items* into *buckets* lists: item ``i`` goes to bucket ``i % n``."""
    groups: list[list] = [[] for _ in range(max(1, buckets))]
    for i, item in enumerate(items):
        groups[i % len(groups)].append(item)
    return [g for g in groups if g]


class BatchStrategy(Protocol):
    name: str
    processor: SlideProcessor

    async def run(self, slides: Sequence[Slide]) -> list[SlideResult]: ...


class BatchedExtraction:
    name = "batched"

    def __init__(
        self,
        processor: SlideProcessor,
        *,
        chunk_size: int = 5,
        chunk_delay: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.processor = processor
        self.chunk_size = max(1, chunk_size)
        self.chunk_delay = chunk_delay
        self._sleep = sleep

    async def _fetch(self, slide: Slide, started: float) -> SlideDocument | SlideResult:
        try:
            return await self.processor.fetcher.fetch_document(slide)
        except PipelineError as exc:
            return await self.processor.fail(slide, exc, started)
        except Exception as exc:
            logger.exception("Unexpected error fetching slide %s", slide.id)
            return await self.processor.fail(slide, exc, started)

    async def _run_chunk(self, chunk: list[Slide]) -> list[SlideResult]:
        started = time.perf_counter()
        fetched = await asyncio.gather(*(self._fetch(slide, started) for slide in chunk))
        results = [r for r in fetched if isinstance(r, SlideResult)]
        ready = [(slide, doc) for slide, doc in zip(chunk, fetched) if isinstance(doc, SlideDocument)]
        if not ready:
            return results

        try:
            extractions = await self.processor.extractor.extract_batch([doc for _, doc in ready])
        except Exception as exc:
            # One model call produced every answer of the chunk, so they fail together.
            if isinstance(exc, PipelineError):
                logger.warning("Chunk extraction failed for %d slides: %s", len(ready), exc)
            else:
                logger.exception("Unexpected error extracting chunk of %d slides", len(ready))
            results.extend([await self.processor.fail(slide, exc, started) for slide, _ in ready])
            return results

        results.extend(
            await asyncio.gather(
                *(
                    self.processor.persist_extraction(slide, extraction, started)
                    for (slide, _), extraction in zip(ready, extractions)
                )
            )
        )
        return results

    async def run(self, slides: Sequence[Slide]) -> list[SlideResult]:
        results: list[SlideResult] = []
        for number, chunk in enumerate(chunked(slides, self.chunk_size)):
            if number and self.chunk_delay > 0:
                await self._sleep(self.chunk_delay)
            logger.info("Extracting chunk %d (%d slides)", number + 1, len(chunk))
            results.extend(await self._run_chunk(chunk))
        return results


class IndividualProcessing:
    name = "individual"

    def __init__(
        self,
        processor: SlideProcessor,
        *,
        pool_size: int = 3,
        delay: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.processor = processor
        self.pool_size = min(MAX_POOL_SIZE, max(1, pool_size))
        self.delay = delay
        self._sleep = sleep

    async def _drain(self, bucket: list[Slide]) -> list[SlideResult]:
        results = []
        for position, slide in enumerate(bucket):
            if position and self.delay > 0:
                await self._sleep(self.delay)
            results.append(await self.processor.process(slide))
        return results

    async def run(self, slides: Sequence[Slide]) -> list[SlideResult]:
        buckets = round_robin(slides, self.pool_size)
        drained = await asyncio.gather(*(self._drain(bucket) for bucket in buckets))
        return [result for bucket in drained for result in bucket]


class BatchOrchestrator:
    """Run a strategy over the slides of one exam.

    Slides that already have a topic are reported as skipped.  Every other
    slide is marked ``processing`` before the first model call, so a caller
    polling for "no slide processing" only stops once the whole batch is
    settled.
    """

    def __init__(self, repository: Repository, strategy: BatchStrategy, *, model_name: str = "") -> None:
        self.repository = repository
        self.strategy = strategy
        self.model_name = model_name

    async def _claim(self, slides: Sequence[Slide]) -> tuple[list[SlideResult], list[Slide]]:
        """Split *slides* into finished results and slides now marked processing."""
        processor = self.strategy.processor
        results: list[SlideResult] = []
        pending: list[Slide] = []
        for slide in slides:
            started = time.perf_counter()
            try:
                skipped = await processor.skip_if_done(slide, started)
                if skipped is None:
                    await self.repository.update_slide_status(slide.id, SlideStatus.PROCESSING.value)
            except Exception as exc:
                if not isinstance(exc, PipelineError):
                    logger.exception("Unexpected error preparing slide %s", slide.id)
                results.append(await processor.fail(slide, exc, started))
                continue
            if skipped is not None:
                results.append(skipped)
            else:
                pending.append(slide)
        return results, pending

    async def process_batch(self, exam_id: int | None) -> BatchReport:
        if exam_id is None or exam_id == "":
            raise RequestValidationError("Missing exam_id")

        slides = await self.repository.get_slides_for_batch(exam_id)
        if not slides:
            return BatchReport.from_results([], model=self.model_name, mode=self.strategy.name)

        started = time.perf_counter()
        results, pending = await self._claim(slides)
        if pending:
            results.extend(await self.strategy.run(pending))
        order = {slide.id: i for i, slide in enumerate(slides)}
        results.sort(key=lambda r: order.get(r.id, len(order)))

        report = BatchReport.from_results(results, model=self.model_name, mode=self.strategy.name)
        logger.info(
            "Exam %s: %d inserted, %d skipped, %d failed in %dms",
            exam_id,
            report.topics_inserted,
            report.skipped,
            report.failed,
            elapsed_ms(started),
        )
        return report


def build_orchestrator(
    repository: Repository,
    blob_store: LocalBlobStore,
    limiter: RateLimiter,
    *,
    config: Settings | None = None,
    model: GenerativeModel | None = None,
    ranking_model: GenerativeModel | None = None,
    catalog: YouTubeClient | None = None,
    http: httpx.AsyncClient | None = None,
) -> BatchOrchestrator:
    """Wire the pipeline from settings.

    Raises ``ConfigurationError`` (from ``GroqClient``) when no model is
    given and ``GROQ_API_KEY`` is unset, before any slide is touched.
    """
    config = config or default_settings
    if model is None:
        groq = GroqClient(model=config.default_model, api_key=config.groq_api_key)
        model = groq
        ranking_model = ranking_model or groq.with_model(config.ranking_model)
    if catalog is None and config.youtube_api_key:
        catalog = YouTubeClient(config.youtube_api_key, http=http)

    finder = VideoFinder(catalog, max_results=config.video_search_results)
    ranker = VideoRanker(ranking_model or model, limiter, enabled=config.rerank_videos)
    processor = SlideProcessor(
        repository,
        DocumentFetcher(blob_store, http=http, ttl_seconds=config.signed_url_ttl_seconds),
        StructuredExtractor(model, limiter),
        VideoAssigner(finder, ranker),
    )
    if config.batch_mode:
        strategy: BatchStrategy = BatchedExtraction(
            processor,
            chunk_size=config.batch_chunk_size,
            chunk_delay=config.chunk_delay_seconds,
        )
    else:
        strategy = IndividualProcessing(
            processor,
            pool_size=config.individual_pool_size,
            delay=config.individual_delay_seconds,
        )
    return BatchOrchestrator(repository, strategy, model_name=model.default_model)
