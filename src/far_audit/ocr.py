"""
Local text sources: Tesseract OCR for images, embedded text for PDF/DOCX.
"""

import io
import os
import zipfile
from typing import Dict

import docx
import pytesseract
from docx.opc.exceptions import PackageNotFoundError
from loguru import logger
from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader
from pypdf.errors import PdfReadError

from .errors import CollaboratorError


def ocr_image(data: bytes) -> Dict:
    """Run Tesseract over image bytes.

    Returns ``{"text": str, "confidence": float}`` where confidence is the
    mean word confidence in [0, 1].
    """
    try:
        image = Image.open(io.BytesIO(data))
        if image.mode not in {"RGB", "L"}:
            image = image.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise CollaboratorError(f"Unreadable image: {e}") from e

    lang = os.getenv("TESSERACT_LANG", "eng")
    try:
        text = pytesseract.image_to_string(image, lang=lang) or ""
        words = pytesseract.image_to_data(image, lang=lang, output_type=pytesseract.Output.DICT)
    except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError) as e:
        raise CollaboratorError(f"Tesseract failed: {e}") from e

    confs = []
    for word, conf in zip(words.get("text", []), words.get("conf", [])):
        try:
            value = float(conf)
        except (TypeError, ValueError):
            continue
        if value >= 0 and str(word).strip():
            confs.append(value)
    confidence = round(sum(confs) / len(confs) / 100.0, 3) if confs else 0.0
    logger.debug(f"Tesseract: {len(text)} chars, confidence {confidence}")
    return {"text": text.strip(), "confidence": confidence}


def pdf_text(data: bytes) -> str:
    """Embedded text of every page; empty for scanned PDFs."""
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError, OSError) as e:
        raise CollaboratorError(f"PDF text extraction failed: {e}") from e
    return "\n".join(p.strip() for p in pages if p.strip())


def docx_text(data: bytes) -> str:
    try:
        document = docx.Document(io.BytesIO(data))
    except (zipfile.BadZipFile, PackageNotFoundError, ValueError, KeyError, OSError) as e:
        raise CollaboratorError(f"DOCX text extraction failed: {e}") from e
    paragraphs = [p.text.strip() for p in document.paragraphs if p.text and p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                paragraphs.append(" | ".join(cells))
    return "\n".join(paragraphs)
