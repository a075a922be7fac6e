import logging
from pathlib import Path
from typing import Any, Sequence

from studyguide.capabilities import GenerativeModel
from studyguide.errors import EmptyExtractionError, ExtractionParseError, preview_of
from studyguide.models import Extraction, SlideDocument, TextPart
from studyguide.services.json_repair import ParseFailure, parse_jsonish, parse_jsonish_array
from studyguide.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 200
MAX_SUBPOINTS = 12
SINGLE_MAX_TOKENS = 2048
BATCH_MAX_TOKENS = 8192
FALLBACK_SUBPOINTS = ["Content extracted", "Review this slide"]

# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SINGLE_PROMPT = (
    "You are summarizing a single slide of study material into a concise topic "
    "with 3-7 bullet subpoints. Return STRICT JSON only, no prose and no markdown: "
    '{"title": string, "subpoints": string[]}'
)

RETRY_PROMPT = (
    'Return JSON {"title": string, "subpoints": string[]}. Ensure subpoints has at '
    "least 3 concise bullets extracted or inferred from the slide. If the slide is "
    "images only, infer the key talking points from the visuals."
)


def _batch_prompt(count: int) -> str:
    return (
        f"You will receive {count} slide documents, numbered 0 to {count - 1} in order. "
        "Summarize EACH one into a concise topic with 3-7 bullet subpoints. "
        "Return STRICT JSON only: an array with exactly one object per slide, "
        '[{"slideIndex": number, "title": string, "subpoints": string[]}], '
        "where slideIndex matches the number given before each document. "
        "If a slide is images only, infer the key talking points from the visuals."
    )


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------


def file_stem(file_name: str | None) -> str:
    return Path(file_name).stem.strip() if file_name else ""


def clean_subpoints(raw: Any, limit: int = MAX_SUBPOINTS) -> list[str]:
    """Coerce to trimmed non-empty strings, keep order, cap at *limit*."""
    if not isinstance(raw, list):
        return []
    cleaned = []
    for item in raw:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            cleaned.append(text)
    return cleaned[:limit]


def resolve_title(raw: Any, file_name: str | None, placeholder: str) -> str:
    """Model title, else the file name stem, else *placeholder*; never empty."""
    title = str(raw).strip() if raw is not None else ""
    if not title:
        title = file_stem(file_name) or placeholder
    return title[:MAX_TITLE_LENGTH]


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class StructuredExtractor:
    """Ask the generative model for ``{title, subpoints}`` per slide document."""

    def __init__(self, model: GenerativeModel, limiter: RateLimiter) -> None:
        self.model = model
        self.limiter = limiter

    async def _generate(self, parts: list, max_output_tokens: int, response_format: str) -> str:
        result = await self.limiter.call(
            self.model.generate,
            parts,
            max_output_tokens=max_output_tokens,
            response_format=response_format,
        )
        if result.finish_reason == "length":
            logger.warning("Model output hit the %d token limit; repair may be needed", max_output_tokens)
        return result.text

    async def _attempt(self, prompt: str, document: SlideDocument) -> tuple[str, dict | None]:
        raw = await self._generate(
            [TextPart(prompt), document.as_part()],
            max_output_tokens=SINGLE_MAX_TOKENS,
            response_format="json",
        )
        parsed = parse_jsonish(raw)
        if isinstance(parsed, ParseFailure):
            logger.info("Could not parse extraction for %s: %s", document.file_name, parsed.reason)
            return raw, None
        return raw, parsed.value

    async def extract(self, document: SlideDocument) -> Extraction:
        """Single-document extraction with one stricter retry.

        Raises ``ExtractionParseError`` when neither attempt parses and
        ``EmptyExtractionError`` when no subpoints survive cleaning.
        """
        raw, value = await self._attempt(SINGLE_PROMPT, document)
        title = value.get("title") if value else None
        subpoints = clean_subpoints(value.get("subpoints")) if value else []

        if not subpoints or not (title and str(title).strip()):
            logger.info("Retrying extraction for %s with the fallback prompt", document.file_name)
            retry_raw, retry_value = await self._attempt(RETRY_PROMPT, document)
            if retry_value is None and value is None:
                raise ExtractionParseError(
                    f"Unparseable model output | raw={preview_of(retry_raw or raw)}",
                    preview=preview_of(retry_raw or raw),
                )
            if retry_value is not None:
                raw = retry_raw
                retry_title = retry_value.get("title")
                if retry_title and str(retry_title).strip():
                    title = retry_title
                subpoints = clean_subpoints(retry_value.get("subpoints")) or subpoints

        if not subpoints:
            raise EmptyExtractionError(
                f"Empty subpoints from model | raw={preview_of(raw)}",
                preview=preview_of(raw),
            )
        return Extraction(
            title=resolve_title(title, document.file_name, "Slide"),
            subpoints=subpoints,
            raw_preview=preview_of(raw),
        )

    async def extract_batch(self, documents: Sequence[SlideDocument]) -> list[Extraction]:
        """One model call for several documents; always one result per input.

        Slides the model skipped (or answered without subpoints) get a
        synthesized placeholder topic.  A wholly unparseable answer raises
        ``ExtractionParseError`` for the whole chunk.
        """
        if not documents:
            return []
        parts: list = [TextPart(_batch_prompt(len(documents)))]
        for index, document in enumerate(documents):
            parts.append(TextPart(f"Slide {index}: {document.file_name}"))
            parts.append(document.as_part())

        raw = await self._generate(parts, max_output_tokens=BATCH_MAX_TOKENS, response_format="text")
        parsed = parse_jsonish_array(raw)
        if isinstance(parsed, ParseFailure):
            raise ExtractionParseError(
                f"Unparseable batch output ({parsed.reason}) | raw={parsed.preview}",
                preview=parsed.preview,
            )

        by_index: dict[int, dict] = {}
        for position, item in enumerate(parsed.value):
            index = item.get("slideIndex", position)
            try:
                index = int(index)
            except (TypeError, ValueError, OverflowError):
                index = position
            if 0 <= index < len(documents) and index not in by_index:
                by_index[index] = item

        results = []
        for index, document in enumerate(documents):
            placeholder = f"Topic {index + 1}"
            item = by_index.get(index)
            subpoints = clean_subpoints(item.get("subpoints")) if item else []
            if not subpoints:
                logger.warning("Model skipped slide %d (%s); using fallback topic", index, document.file_name)
                results.append(
                    Extraction(
                        title=resolve_title(item.get("title") if item else None, document.file_name, placeholder),
                        subpoints=list(FALLBACK_SUBPOINTS),
                        raw_preview=preview_of(raw),
                        synthesized=True,
                    )
                )
                continue
            results.append(
                Extraction(
                    title=resolve_title(item.get("title"), document.file_name, placeholder),
                    subpoints=subpoints,
                    raw_preview=preview_of(raw),
                )
            )
        return results
