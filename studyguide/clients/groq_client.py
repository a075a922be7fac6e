import base64
import logging
import re
from typing import Sequence

import httpx
from groq import APIConnectionError, APIStatusError, AsyncGroq, RateLimitError

from studyguide.config import settings
from studyguide.errors import ConfigurationError, GenerationError, RateLimitedError
from studyguide.models import DocumentPart, GenerationResult, TextPart
from studyguide.services.slides import SlideRenderer

logger = logging.getLogger(__name__)

# Groq vision models accept at most this many images per request.
MAX_IMAGES_PER_REQUEST = 5

_TRY_AGAIN = re.compile(r"try again in (?:(\d+)m)?([\d.]+)(ms|s)", re.IGNORECASE)
_LIMIT = re.compile(r"\bLimit (\d+)", re.IGNORECASE)


def _retry_after(exc: RateLimitError) -> float | None:
    """Server-suggested delay in seconds, from the header or the message."""
    header = exc.response.headers.get("retry-after") if exc.response is not None else None
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    match = _TRY_AGAIN.search(str(exc))
    if not match:
        return None
    minutes, value, unit = match.groups()
    seconds = float(value) / 1000 if unit.lower() == "ms" else float(value)
    return seconds + int(minutes or 0) * 60


def _quota(exc: RateLimitError) -> str | None:
    match = _LIMIT.search(str(exc))
    return match.group(1) if match else None


def _error_body(exc: APIStatusError) -> dict:
    body = exc.body if isinstance(exc.body, dict) else {}
    inner = body.get("error", body)
    return inner if isinstance(inner, dict) else {}


def build_message_content(parts: Sequence[TextPart | DocumentPart]) -> list[dict]:
    """Flatten prompt parts into Groq chat content blocks.

    Documents become their extracted text plus rendered page images; the
    image budget is shared across the whole request.
    """
    content: list[dict] = []
    image_budget = MAX_IMAGES_PER_REQUEST
    documents = sum(1 for p in parts if isinstance(p, DocumentPart))
    per_document = max(1, image_budget // max(1, documents))

    for part in parts:
        if isinstance(part, TextPart):
            content.append({"type": "text", "text": part.text})
            continue
        rendered = SlideRenderer.render(part, max_images=min(per_document, image_budget))
        label = part.name or "document"
        if rendered.text:
            content.append({"type": "text", "text": f"Extracted text of {label}:\n{rendered.text}"})
        elif not rendered.images:
            content.append({"type": "text", "text": f"{label} has no extractable text."})
        for mime, data in rendered.images[:image_budget]:
            encoded = base64.b64encode(data).decode("ascii")
            content.append({"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}})
            image_budget -= 1
    return content


class GroqClient:
    """``GenerativeModel`` backed by Groq chat completions.

    The SDK is built with ``max_retries=0``: a 429 surfaces immediately as
    ``RateLimitedError`` carrying Groq's suggested delay, and ``RateLimiter``
    decides whether to wait and try again.  Any other API failure, and any
    slide that cannot be turned into chat content, becomes ``GenerationError``.
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        key = api_key or settings.groq_api_key
        if not key:
            raise ConfigurationError("GROQ_API_KEY is not set")
        self._model = model or settings.default_model
        self._client = AsyncGroq(api_key=key, max_retries=0, http_client=http_client)

    @classmethod
    def _bound(cls, client: AsyncGroq, model: str) -> "GroqClient":
        instance = cls.__new__(cls)
        instance._client = client
        instance._model = model
        return instance

    @property
    def default_model(self) -> str:
        return self._model

    def with_model(self, model_name: str) -> "GroqClient":
        """Same SDK client and API key, different default model (used for ranking)."""
        return self._bound(self._client, model_name)

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------
    async def generate(
        self,
        parts: Sequence[TextPart | DocumentPart],
        *,
        max_output_tokens: int = 2048,
        response_format: str = "json",
        temperature: float = 0.2,
    ) -> GenerationResult:
        """Single-turn completion over text and document parts.

        ``response_format="json"`` turns on Groq's JSON object mode; use
        ``"text"`` when the answer is a top-level array.
        """
        try:
            content = build_message_content(parts)
        except ValueError as exc:
            raise GenerationError(f"Could not prepare slide for {self._model}: {exc}") from exc

        kwargs: dict = {
            "model": self._model,
            "messages": [{"role": "user", "content": content}],
            "max_tokens": max_output_tokens,
            "temperature": temperature,
        }
        if response_format == "json":
            kwargs["response_format"] = {"type": "json_object"}

        try:
            resp = await self._client.chat.completions.create(**kwargs)
        except RateLimitError as exc:
            raise RateLimitedError(
                f"Groq {self._model} rate limited: {exc}",
                retry_after=_retry_after(exc),
                quota=_quota(exc),
            ) from exc
        except APIStatusError as exc:
            error = _error_body(exc)
            # JSON mode rejects malformed output but still hands it back; let
            # the repair parser have a go at it.
            if error.get("code") == "json_validate_failed" and error.get("failed_generation"):
                logger.info("Groq %s returned invalid JSON; passing it to repair", self._model)
                return GenerationResult(
                    text=error["failed_generation"],
                    finish_reason="json_validate_failed",
                )
            raise GenerationError(f"Groq {self._model} {exc.status_code} {exc.message}") from exc
        except APIConnectionError as exc:
            raise GenerationError(f"Groq {self._model} unreachable: {exc}") from exc

        choice = resp.choices[0]
        finish_reason = choice.finish_reason
        return GenerationResult(
            text=choice.message.content or "",
            finish_reason=finish_reason,
            block_reason="content_filter" if finish_reason == "content_filter" else None,
        )
