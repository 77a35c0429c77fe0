"""Turn a captured receipt photo into a single-page PDF."""
from __future__ import annotations

import io
from pathlib import Path
from typing import Tuple

from PIL import Image, UnidentifiedImageError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas as pdf_canvas

PDF_CONTENT_TYPE = "application/pdf"
PDF_MAGIC = b"%PDF"

_IMAGE_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png"}


class UnsupportedReceiptError(ValueError):
    """Raised for documents that are neither a PDF nor a JPEG/PNG image."""


def image_to_pdf(data: bytes) -> bytes:
    """Return a PDF whose single page has exactly the image's pixel size."""

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise UnsupportedReceiptError("Unsupported image format. Please use JPEG or PNG.") from exc
    if image.format not in _IMAGE_FORMATS:
        raise UnsupportedReceiptError(f"Unsupported image format {image.format}. Please use JPEG or PNG.")

    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    width, height = image.size

    buffer = io.BytesIO()
    canvas = pdf_canvas.Canvas(buffer, pagesize=(width, height))
    canvas.drawImage(ImageReader(image), 0, 0, width=width, height=height)
    canvas.showPage()
    canvas.save()
    return buffer.getvalue()


def prepare_receipt(data: bytes) -> Tuple[bytes, str]:
    """Return ``(pdf_bytes, content_type)`` for uploaded receipt ``data``.

    PDFs pass through untouched; JPEG and PNG photos are wrapped in a PDF page.
    """

    if data.startswith(PDF_MAGIC):
        return data, PDF_CONTENT_TYPE
    return image_to_pdf(data), PDF_CONTENT_TYPE


def load_receipt(path: Path) -> Tuple[bytes, str]:
    return prepare_receipt(Path(path).read_bytes())


__all__ = [
    "PDF_CONTENT_TYPE",
    "UnsupportedReceiptError",
    "image_to_pdf",
    "load_receipt",
    "prepare_receipt",
]
