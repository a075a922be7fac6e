from __future__ import annotations

import asyncio
import json

import pytest

from conftest import PDF_BYTES, FakeModel
from studyguide.errors import EmptyExtractionError, ExtractionParseError
from studyguide.models import DocumentPart, SlideDocument, TextPart
from studyguide.services.extraction import FALLBACK_SUBPOINTS, StructuredExtractor, clean_subpoints, resolve_title
from studyguide.services.rate_limiter import RateLimiter


def _doc(name: str = "cell_biology.pdf", slide_id: int = 1) -> SlideDocument:
    return SlideDocument(slide_id=slide_id, file_name=name, mime_type="application/pdf", content=PDF_BYTES)


def _extractor(model: FakeModel) -> StructuredExtractor:
    return StructuredExtractor(model, RateLimiter(0, max_attempts=3, default_retry_delay=0))


def test_single_extraction_sends_document_and_json_mode() -> None:
    model = FakeModel(script=['{"title": "Cell Biology", "subpoints": ["Mitosis", "Meiosis", "Cytokinesis"]}'])

    extraction = asyncio.run(_extractor(model).extract(_doc()))

    assert extraction.title == "Cell Biology"
    assert extraction.subpoints == ["Mitosis", "Meiosis", "Cytokinesis"]
    call = model.calls[0]
    assert call["max_output_tokens"] >= 2048
    assert call["response_format"] == "json"
    assert isinstance(call["parts"][0], TextPart)
    assert isinstance(call["parts"][1], DocumentPart)
    assert call["parts"][1].mime_type == "application/pdf"


def test_subpoints_are_capped_at_twelve_in_order() -> None:
    subpoints = [f"Point {i}" for i in range(20)]
    model = FakeModel(script=[json.dumps({"title": "Many", "subpoints": subpoints})])

    extraction = asyncio.run(_extractor(model).extract(_doc()))

    assert extraction.subpoints == subpoints[:12]


def test_missing_title_falls_back_to_file_stem() -> None:
    model = FakeModel(default='{"subpoints": ["A", "B", "C"]}')

    extraction = asyncio.run(_extractor(model).extract(_doc("week3_thermo.pdf")))

    assert extraction.title == "week3_thermo"
    # the missing title triggered the stricter retry
    assert len(model.calls) == 2


def test_missing_title_and_name_uses_placeholder() -> None:
    model = FakeModel(default='{"title": "  ", "subpoints": ["A"]}')

    extraction = asyncio.run(_extractor(model).extract(_doc("")))

    assert extraction.title == "Slide"


def test_long_title_is_truncated() -> None:
    model = FakeModel(script=[json.dumps({"title": "T" * 500, "subpoints": ["A"]})])

    extraction = asyncio.run(_extractor(model).extract(_doc()))

    assert len(extraction.title) == 200


def test_empty_first_attempt_retries_with_stricter_prompt() -> None:
    model = FakeModel(
        script=[
            '{"title": "Photosynthesis", "subpoints": []}',
            '{"title": "Photosynthesis", "subpoints": ["Light reactions", "Calvin cycle", "Chlorophyll"]}',
        ]
    )

    extraction = asyncio.run(_extractor(model).extract(_doc()))

    assert extraction.subpoints == ["Light reactions", "Calvin cycle", "Chlorophyll"]
    assert len(model.calls) == 2
    assert "at least 3" in model.calls[1]["parts"][0].text


def test_retry_still_empty_raises_empty_extraction() -> None:
    model = FakeModel(default='{"title": "Blank", "subpoints": ["", "   "]}')

    with pytest.raises(EmptyExtractionError) as excinfo:
        asyncio.run(_extractor(model).extract(_doc()))

    assert len(model.calls) == 2
    assert "Blank" in excinfo.value.preview


def test_unparseable_output_raises_with_preview() -> None:
    model = FakeModel(default="Sorry, I can't read this file. " * 30)

    with pytest.raises(ExtractionParseError) as excinfo:
        asyncio.run(_extractor(model).extract(_doc()))

    assert len(excinfo.value.preview) == 200


def test_truncated_output_is_repaired() -> None:
    model = FakeModel(script=['{"title":"Cell Biology","subpoints":["Mitosis","Meiosis","Cyto'])

    extraction = asyncio.run(_extractor(model).extract(_doc()))

    assert extraction.title == "Cell Biology"
    assert extraction.subpoints == ["Mitosis", "Meiosis"]


def test_helpers() -> None:
    assert clean_subpoints([" a ", None, 3, "", "b"]) == ["a", "3", "b"]
    assert clean_subpoints("not a list") == []
    assert resolve_title(None, "dir/slides.v2.pdf", "Slide") == "slides.v2"
    assert resolve_title("", None, "Topic 4") == "Topic 4"


# ---------------------------------------------------------------------------
# Batch mode
# ---------------------------------------------------------------------------


def test_batch_fills_missing_slides_with_fallback() -> None:
    answer = [
        {"slideIndex": 0, "title": "Zero", "subpoints": ["a"]},
        {"slideIndex": 2, "title": "Two", "subpoints": ["b"]},
        {"slideIndex": 4, "title": "Four", "subpoints": ["c"]},
    ]
    model = FakeModel(script=[json.dumps(answer)])
    docs = [_doc(f"deck{i}.pdf", i) for i in range(5)]

    extractions = asyncio.run(_extractor(model).extract_batch(docs))

    assert len(extractions) == 5
    assert [e.title for e in extractions] == ["Zero", "deck1", "Two", "deck3", "Four"]
    assert extractions[1].subpoints == FALLBACK_SUBPOINTS
    assert extractions[1].synthesized and extractions[3].synthesized
    assert not extractions[0].synthesized


def test_batch_call_uses_one_request_with_large_budget() -> None:
    model = FakeModel(script=['[{"slideIndex": 1, "title": "B", "subpoints": ["y"]}, {"slideIndex": 0, "title": "A", "subpoints": ["x"]}]'])
    docs = [_doc("a.pdf", 1), _doc("b.pdf", 2)]

    extractions = asyncio.run(_extractor(model).extract_batch(docs))

    assert [e.title for e in extractions] == ["A", "B"]
    assert len(model.calls) == 1
    assert model.calls[0]["max_output_tokens"] >= 8192
    documents = [p for p in model.calls[0]["parts"] if isinstance(p, DocumentPart)]
    assert [d.name for d in documents] == ["a.pdf", "b.pdf"]


def test_batch_without_file_names_uses_topic_placeholder() -> None:
    model = FakeModel(script=["[]"])
    docs = [_doc("", 1), _doc("", 2)]

    extractions = asyncio.run(_extractor(model).extract_batch(docs))

    assert [e.title for e in extractions] == ["Topic 1", "Topic 2"]


def test_batch_unparseable_raises() -> None:
    model = FakeModel(script=["The model refused."])

    with pytest.raises(ExtractionParseError):
        asyncio.run(_extractor(model).extract_batch([_doc()]))


def test_batch_non_finite_slide_index_falls_back_to_position() -> None:
    model = FakeModel(script=['[{"slideIndex": Infinity, "title": "First", "subpoints": ["a"]}, {"slideIndex": NaN, "title": "Second", "subpoints": ["b"]}]'])
    docs = [_doc("a.pdf", 1), _doc("b.pdf", 2)]

    extractions = asyncio.run(_extractor(model).extract_batch(docs))

    assert [e.title for e in extractions] == ["First", "Second"]
    assert not any(e.synthesized for e in extractions)
