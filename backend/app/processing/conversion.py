"""
Local conversion helpers used by the Convert stage.

  - scratch working copies under settings.working_dir
  - text pre-extraction for formats the OCR provider does not accept
    (DOCX via python-docx, TXT/MD decoded directly); PDFs with a native
    text layer are read with pypdf so a text-only PDF can skip OCR
"""

from __future__ import annotations

import io
import logging
import os
import time
from pathlib import Path

from app.core.config import settings

logger = logging.getLogger(__name__)

OCR_EXTENSIONS = frozenset({"pdf", "png", "jpg", "jpeg", "tif", "tiff"})
TEXT_EXTENSIONS = frozenset({"docx", "txt", "md"})

# Average characters per page below which a PDF is treated as scanned
MIN_CHARS_PER_PAGE = 50


def working_path_for(guid: str, ext: str) -> Path:
    return Path(settings.working_dir) / f"{guid}.{ext.lstrip('.').lower()}"


def write_working_copy(guid: str, ext: str, data: bytes) -> Path:
    path = working_path_for(guid, ext)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


def remove_working_files(guid: str) -> int:
    """Delete every scratch file for one file guid; returns how many were removed."""
    root = Path(settings.working_dir)
    if not root.exists():
        return 0
    removed = 0
    for path in root.glob(f"{guid}*"):
        try:
            path.unlink()
            removed += 1
        except FileNotFoundError:
            continue
    return removed


def remove_stale_working_files(max_age_seconds: int = 3600) -> int:
    """Delete scratch files older than max_age_seconds regardless of owner."""
    root = Path(settings.working_dir)
    if not root.exists():
        return 0
    cutoff = time.time() - max_age_seconds
    removed = 0
    for path in root.iterdir():
        if path.is_file() and path.stat().st_mtime < cutoff:
            try:
                os.remove(path)
                removed += 1
            except FileNotFoundError:
                continue
    return removed


def needs_ocr(ext: str) -> bool:
    return ext.lstrip(".").lower() in OCR_EXTENSIONS


def extract_local_text(data: bytes, ext: str) -> str | None:
    """
    Text for formats we can read without the OCR provider.

    Returns None when OCR is required (images, scanned PDFs).
    """
    ext = ext.lstrip(".").lower()
    if ext == "docx":
        return _extract_docx(data)
    if ext in ("txt", "md"):
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("latin-1", errors="replace")
    if ext == "pdf":
        return _extract_pdf_text_layer(data)
    return None


def _extract_pdf_text_layer(data: bytes) -> str | None:
    """Native PDF text layer, or None if the PDF looks scanned or is unreadable."""
    from pypdf import PdfReader
    from pypdf.errors import PyPdfError

    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    # Malformed objects surface as builtin errors from the parser, not only PyPdfError
    except (PyPdfError, ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.warning("PDF text layer unreadable | error_type=%s error=%s", type(exc).__name__, exc)
        return None

    if not pages or sum(len(p.strip()) for p in pages) / len(pages) < MIN_CHARS_PER_PAGE:
        return None
    return "\n\n".join(pages).strip()


def _extract_docx(data: bytes) -> str:
    import docx

    doc = docx.Document(io.BytesIO(data))
    return "\n".join(para.text for para in doc.paragraphs if para.text.strip())
