from __future__ import annotations

import io
import logging
from pathlib import Path

from labpilot_ai_core.errors import UnsupportedDocumentError
from labpilot_ai_core.models import ExtractionChunk, MediaPart

logger = logging.getLogger(__name__)

_PDF_MIME_TYPES = {"application/pdf", "application/x-pdf"}
_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".heic", ".gif"}
_TEXT_EXTENSIONS = {".txt", ".csv", ".md", ".json"}
_EXTENSION_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".gif": "image/gif",
}


def _extension(file_name: str | None) -> str:
    return Path(file_name or "").suffix.lower().strip()


def document_kind(mime_type: str, file_name: str | None = None) -> str:
    mime = (mime_type or "").lower().split(";", 1)[0].strip()
    ext = _extension(file_name)
    if mime in _PDF_MIME_TYPES or ext == ".pdf":
        return "pdf"
    if mime.startswith("image/") or ext in _IMAGE_EXTENSIONS:
        return "image"
    if mime.startswith("text/") or mime == "application/json" or ext in _TEXT_EXTENSIONS:
        return "text"
    return "unsupported"


def decode_pdf_pages(data: bytes) -> list[str]:
    """Text of every page in order. Undecodable input gives an empty list."""
    try:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        page_list = list(reader.pages)
    except Exception as exc:
        logger.warning("pdf could not be opened: %s", exc)
        return []

    pages: list[str] = []
    for number, page in enumerate(page_list, start=1):
        try:
            text = page.extract_text() or ""
        except Exception as exc:
            logger.warning("pdf page %d text extraction failed: %s", number, exc)
            text = ""
        pages.append(text.strip())
    return pages


def _page_label(first: int, last: int) -> str:
    return f"page {first}" if first == last else f"pages {first}-{last}"


def page_chunks(pages: list[str], pages_per_chunk: int = 1) -> list[ExtractionChunk]:
    size = max(1, pages_per_chunk)
    chunks: list[ExtractionChunk] = []
    for start in range(0, len(pages), size):
        group = pages[start : start + size]
        if not any(text for text in group):
            continue
        blocks = [f"--- Page {start + offset + 1} ---\n{text}\n" for offset, text in enumerate(group)]
        chunks.append(
            ExtractionChunk(
                index=len(chunks),
                source_label=_page_label(start + 1, start + len(group)),
                raw_text="\n".join(blocks),
            )
        )
    return chunks


def build_chunks(
    data: bytes,
    mime_type: str,
    *,
    pages_per_chunk: int = 1,
    file_name: str | None = None,
) -> list[ExtractionChunk]:
    kind = document_kind(mime_type, file_name)
    if kind == "pdf":
        return page_chunks(decode_pdf_pages(data), pages_per_chunk)
    if kind == "image":
        image_mime = (mime_type or "").lower().strip()
        if not image_mime.startswith("image/"):
            image_mime = _EXTENSION_MIME_TYPES.get(_extension(file_name), "image/jpeg")
        return [
            ExtractionChunk(
                index=0,
                source_label="image report",
                raw_text="",
                media=MediaPart(mime_type=image_mime, data=data),
            )
        ]
    if kind == "text":
        text = data.decode("utf-8", errors="ignore").strip()
        if not text:
            return []
        return [ExtractionChunk(index=0, source_label="text report", raw_text=text)]
    raise UnsupportedDocumentError(f"Unsupported document type: {mime_type or 'unknown'}")
