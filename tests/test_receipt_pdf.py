from __future__ import annotations

import io
import re
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from PIL import Image

from receiptsync.receipt_pdf import PDF_CONTENT_TYPE, UnsupportedReceiptError, load_receipt, prepare_receipt


def _image_bytes(fmt: str, size=(40, 30), mode="RGB") -> bytes:
    buffer = io.BytesIO()
    colors = {"L": 255, "RGBA": (255, 255, 255, 0)}
    Image.new(mode, size, color=colors.get(mode, (255, 255, 255))).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.mark.parametrize("fmt", ["PNG", "JPEG"])
def test_photos_become_a_pdf_page_of_the_image_size(fmt):
    pdf, content_type = prepare_receipt(_image_bytes(fmt))

    assert content_type == PDF_CONTENT_TYPE
    assert pdf.startswith(b"%PDF")
    assert re.search(rb"/MediaBox\s*\[\s*0 0 40 30\s*\]", pdf)


def test_transparent_png_is_flattened():
    pdf, _ = prepare_receipt(_image_bytes("PNG", mode="RGBA"))

    assert pdf.startswith(b"%PDF")


def test_pdf_passes_through_unchanged():
    original = b"%PDF-1.7\n% receipt\n"

    assert prepare_receipt(original) == (original, PDF_CONTENT_TYPE)


def test_other_formats_are_rejected():
    with pytest.raises(UnsupportedReceiptError):
        prepare_receipt(b"plain text is not a receipt")
    with pytest.raises(UnsupportedReceiptError):
        prepare_receipt(_image_bytes("GIF", mode="L"))


def test_load_receipt_reads_from_disk(tmp_path):
    path = tmp_path / "receipt.png"
    path.write_bytes(_image_bytes("PNG"))

    pdf, _ = load_receipt(path)

    assert pdf.startswith(b"%PDF")
