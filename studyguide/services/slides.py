import io
import zipfile
from dataclasses import dataclass, field

import fitz  # PyMuPDF
from pptx import Presentation
from pptx.enum.shapes import MSO_SHAPE_TYPE
from pptx.exc import PackageNotFoundError

from studyguide.models import DocumentPart


@dataclass
class RenderedDocument:
    """What a chat model can actually consume from a slide file."""

    text: str
    images: list[tuple[str, bytes]] = field(default_factory=list)  # (mime, bytes)


class SlideRenderer:
    """Turn PDF, PPTX and image documents into text plus a few page images."""

    # Maximum characters of extracted text per document.
    MAX_TEXT_CHARS = 6000
    # Leading pages rendered as PNG so the model sees diagrams too.
    MAX_PAGE_IMAGES = 2
    # Minimum pixel area for an embedded PPTX picture (filters out icons).
    MIN_PIXEL_AREA = 100 * 100
    RENDER_DPI = 110

    @staticmethod
    def render(part: DocumentPart, max_images: int = MAX_PAGE_IMAGES) -> RenderedDocument:
        mime = part.mime_type
        if mime.startswith("image/"):
            return RenderedDocument(text="", images=[(mime, part.data)][:max_images])
        if mime == "application/pdf":
            try:
                return SlideRenderer._render_pdf(part.data, max_images)
            except RuntimeError as exc:  # fitz.FileDataError and friends
                raise ValueError(f"Unreadable PDF {part.name}: {exc}") from exc
        if mime.endswith("presentationml.presentation"):
            try:
                return SlideRenderer._render_pptx(part.data, max_images)
            except (PackageNotFoundError, zipfile.BadZipFile, KeyError) as exc:
                raise ValueError(f"Unreadable PPTX {part.name}: {exc}") from exc
        raise ValueError(f"Unsupported slide format: {mime}")

    # ------------------------------------------------------------------
    # PDF
    # ------------------------------------------------------------------
    @staticmethod
    def _render_pdf(content: bytes, max_images: int) -> RenderedDocument:
        doc = fitz.open(stream=content, filetype="pdf")
        try:
            pages: list[str] = []
            for page_idx in range(len(doc)):
                text = doc[page_idx].get_text().strip()
                if text:
                    pages.append(f"[Page {page_idx + 1}]\n{text}")

            images: list[tuple[str, bytes]] = []
            for page_idx in range(min(len(doc), max_images)):
                pixmap = doc[page_idx].get_pixmap(dpi=SlideRenderer.RENDER_DPI)
                images.append(("image/png", pixmap.tobytes("png")))
        finally:
            doc.close()

        text = "\n\n".join(pages)
        return RenderedDocument(text=text[: SlideRenderer.MAX_TEXT_CHARS], images=images)

    # ------------------------------------------------------------------
    # PPTX
    # ------------------------------------------------------------------
    @staticmethod
    def _render_pptx(content: bytes, max_images: int) -> RenderedDocument:
        prs = Presentation(io.BytesIO(content))
        pages: list[str] = []
        images: list[tuple[str, bytes]] = []

        for slide_idx, slide in enumerate(prs.slides):
            title: str | None = None
            texts: list[str] = []
            for shape in slide.shapes:
                if shape.has_text_frame:
                    frame_text = shape.text_frame.text.strip()
                    if not frame_text:
                        continue
                    # Title placeholder has idx == 0
                    if (
                        title is None
                        and shape.is_placeholder
                        and shape.placeholder_format.idx == 0
                    ):
                        title = frame_text
                        continue
                    texts.append(frame_text)

                if shape.shape_type == MSO_SHAPE_TYPE.PICTURE and len(images) < max_images:
                    # EMU to approx pixels at 96 DPI
                    w_px = int(shape.width / 914400 * 96)
                    h_px = int(shape.height / 914400 * 96)
                    if w_px * h_px >= SlideRenderer.MIN_PIXEL_AREA:
                        images.append((shape.image.content_type, shape.image.blob))

            heading = title or f"Slide {slide_idx + 1}"
            pages.append("\n".join([f"## {heading}", *(f"- {t}" for t in texts)]))

        text = "\n\n".join(pages)
        return RenderedDocument(text=text[: SlideRenderer.MAX_TEXT_CHARS], images=images)
