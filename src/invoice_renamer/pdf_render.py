from __future__ import annotations

import base64
import logging

from .errors import DecodeError

logger = logging.getLogger(__name__)

# Render zoom for page 1; 1.5x keeps receipts legible at a modest upload size.
RENDER_SCALE = 1.5

# JPEG quality for the vision model input.
JPEG_QUALITY = 80


def rasterize_first_page(
    pdf_bytes: bytes,
    *,
    scale: float = RENDER_SCALE,
    jpeg_quality: int = JPEG_QUALITY,
) -> bytes:
    """
    Render page 1 of a PDF to JPEG bytes via PyMuPDF (fitz). Import is done lazily so
    that the pipeline can be tested without the optional dependency installed.

    Raises DecodeError for empty, unparseable, encrypted or page-less documents.
    """
    if not pdf_bytes:
        raise DecodeError("document is empty")
    try:
        import fitz  # type: ignore[import-not-found]
    except Exception as exc:  # pragma: no cover
        raise RuntimeError("PyMuPDF is required for PDF rendering. Install with: pip install PyMuPDF") from exc

    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except Exception as exc:
        raise DecodeError(f"not a readable PDF ({exc})") from exc

    try:
        if getattr(doc, "needs_pass", False):
            raise DecodeError("document is encrypted")
        page_count = getattr(doc, "page_count", 0) or 0
        if page_count <= 0:
            raise DecodeError("document has no pages")
        try:
            page = doc[0]
            pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            image = pix.tobytes("jpeg", jpg_quality=jpeg_quality)
        except Exception as exc:
            raise DecodeError(f"could not render page 1 ({exc})") from exc
    finally:
        closer = getattr(doc, "close", None)
        if callable(closer):
            closer()

    logger.debug(
        "Rendered page 1 of %s page(s) at %.1fx: %s bytes JPEG",
        page_count,
        scale,
        len(image),
    )
    return image


def image_to_data_url(image: bytes, *, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"
