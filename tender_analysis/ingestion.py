"""
ingestion.py — Get plain text out of whatever file the user uploaded.

Tenders arrive as text PDFs, scanned PDFs, Word files, CSV exports from
procurement portals, and the occasional .txt someone copy-pasted. All of
them end up as one flat string in a Document; the analysis step doesn't
care about pages.

Scanned pages are detected per page by character density: if pdfplumber
finds fewer than SCANNED_CHAR_THRESHOLD chars on a page, that page goes
through Tesseract instead. Real tenders mix typed sections with scanned
signed annexures, so deciding per document would lose one or the other.
"""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import List, Optional

import pdfplumber
from PIL import Image, ImageEnhance, ImageFilter

from tender_analysis.config import config
from tender_analysis.errors import UnsupportedFormat
from tender_analysis.schemas import Document

logger = logging.getLogger(__name__)

PDF = "application/pdf"
DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
CSV = "text/csv"
TXT = "text/plain"

_EXTENSION_TYPES = {".pdf": PDF, ".docx": DOCX, ".csv": CSV, ".txt": TXT}
# Browsers (Safari especially) send these for perfectly normal files.
_GENERIC_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

# Pages with fewer chars than this are treated as scanned images.
SCANNED_CHAR_THRESHOLD = 50
OCR_DPI = 300
OCR_LANG = "eng+rus"


def resolve_media_type(file_name: str, media_type: Optional[str] = None) -> str:
    """
    Declared MIME type if we know it, otherwise go by extension.

    Raises:
        UnsupportedFormat: neither the MIME type nor the extension is one
            we can read.
    """
    declared = (media_type or "").split(";")[0].strip().lower()
    if declared in _EXTENSION_TYPES.values():
        return declared
    if declared == "application/csv" or declared == "application/vnd.ms-excel":
        return CSV

    suffix = Path(file_name).suffix.lower()
    if declared in _GENERIC_TYPES or declared.startswith("text/"):
        if suffix in _EXTENSION_TYPES:
            return _EXTENSION_TYPES[suffix]

    raise UnsupportedFormat(
        f"Unsupported file '{file_name}' ({declared or 'no type'}). "
        f"Supported: {', '.join(config.supported_formats)}"
    )


def document_type_label(media_type: str) -> str:
    """Short label for the workspace "document type" select."""
    return {PDF: "PDF", DOCX: "DOCX", CSV: "CSV"}.get(media_type, "TXT")


def extract_text(
    file_path: str,
    media_type: Optional[str] = None,
    display_name: Optional[str] = None,
) -> Document:
    """
    Load a file and return its text as a Document.

    `display_name` is the user-facing name (uploads are saved under a job
    id, so the path name is meaningless to people).

    Raises:
        FileNotFoundError: Self-explanatory.
        UnsupportedFormat: Unknown type, or the file is too big.
    """
    path = Path(file_path)
    name = display_name or path.name
    _validate_file(path)

    resolved = resolve_media_type(name, media_type or mimetypes.guess_type(name)[0])
    if resolved == PDF:
        text = _extract_pdf(path)
    elif resolved == DOCX:
        text = _extract_docx(path)
    elif resolved == CSV:
        text = _extract_csv(path)
    else:
        text = path.read_text(encoding="utf-8", errors="replace")

    logger.info("Extracted %s: %d chars (%s)", name, len(text), document_type_label(resolved))
    return Document(name=name, text=text, media_type=resolved)


def _extract_pdf(path: Path) -> str:
    page_texts: List[str] = []
    ocr_pages = 0

    try:
        pdf = pdfplumber.open(str(path))
    except Exception as exc:
        # pdfminer raises a zoo of exception types for broken or
        # encrypted files; all of them mean "we can't read this".
        raise UnsupportedFormat(f"Cannot open PDF {path.name}: {exc}") from exc

    with pdf:
        total_pages = len(pdf.pages)
        logger.info("Opening PDF: %s (%d pages)", path.name, total_pages)

        for idx, page in enumerate(pdf.pages, start=1):
            text = page.extract_text() or ""
            if len(text.strip()) < SCANNED_CHAR_THRESHOLD:
                logger.info(
                    "Page %d/%d: only %d chars detected, treating as scanned",
                    idx, total_pages, len(text.strip()),
                )
                text = _ocr_pdf_page(path, idx) or text
                ocr_pages += 1
            page_texts.append(text)

    logger.info(
        "Read %s: %d pages (%d text, %d OCR)",
        path.name, total_pages, total_pages - ocr_pages, ocr_pages,
    )
    return "\n".join(page_texts)


def _ocr_pdf_page(pdf_path: Path, page_number: int) -> str:
    """
    Render one page and OCR it. One page at a time because pdf2image
    renders every page into memory otherwise, and at 300 DPI a 50-page
    scan is gigabytes.
    """
    try:
        from pdf2image import convert_from_path

        images = convert_from_path(
            str(pdf_path), dpi=OCR_DPI, first_page=page_number, last_page=page_number,
        )
    except ImportError:
        logger.error("pdf2image not installed (also needs poppler). Cannot OCR scanned pages.")
        return ""
    except Exception as exc:
        # poppler failures surface as assorted exception types
        logger.warning("Rendering page %d for OCR failed: %s", page_number, exc)
        return ""

    if not images:
        logger.warning("pdf2image returned nothing for page %d", page_number)
        return ""
    return _ocr_image(_preprocess_image(images[0]))


def _preprocess_image(img: Image.Image) -> Image.Image:
    """Grayscale -> contrast -> median denoise. This order OCRs best on photocopies."""
    img = img.convert("L")
    img = ImageEnhance.Contrast(img).enhance(2.0)
    return img.filter(ImageFilter.MedianFilter(size=3))


def _ocr_image(img: Image.Image) -> str:
    import pytesseract

    try:
        return pytesseract.image_to_string(img, lang=OCR_LANG).strip()
    except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as exc:
        logger.error("Tesseract failed: %s", exc)
        return ""


def _extract_docx(path: Path) -> str:
    """
    Paragraphs first, then table rows as "a | b | c". Tender DOCX files
    keep half their requirements in tables, so skipping them is not an
    option.
    """
    from docx import Document as DocxDocument
    from docx.opc.exceptions import PackageNotFoundError

    try:
        doc = DocxDocument(str(path))
    except PackageNotFoundError as exc:
        raise UnsupportedFormat(f"{path.name} is not a valid DOCX file") from exc

    parts: List[str] = [p.text for p in doc.paragraphs if p.text.strip()]
    for table in doc.tables:
        for row in table.rows:
            cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts)


def _extract_csv(path: Path) -> str:
    import pandas as pd

    try:
        df = pd.read_csv(
            path, dtype=str, keep_default_na=False, encoding_errors="replace",
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
        raise UnsupportedFormat(f"Cannot parse CSV {path.name}: {exc}") from exc

    lines = [" | ".join(str(c) for c in df.columns)]
    for row in df.itertuples(index=False):
        cells = [str(c).strip() for c in row if str(c).strip()]
        if cells:
            lines.append(" | ".join(cells))
    return "\n".join(lines)


def _validate_file(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    limit_mb = config.max_file_size_mb
    if limit_mb > 0:
        size_mb = path.stat().st_size / (1024 * 1024)
        if size_mb > limit_mb:
            raise UnsupportedFormat(f"File too large ({size_mb:.1f} MB). Max: {limit_mb} MB")
