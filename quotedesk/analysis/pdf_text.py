"""
Embedded text layer of uploaded PDFs, via pdfplumber.
Only reads what is already in the file; scanned PDFs come back empty.
"""

import io

import pdfplumber
import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)


class PdfText(BaseModel):
    page_count: int = 0
    text: str = ""


def extract_pdf_text(data: bytes) -> PdfText:
    """Page count and concatenated text. Unreadable files give an empty result."""
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
    except Exception as e:
        # pdfminer has no common base exception for malformed input
        logger.warning("pdf_text_extraction_failed", error=str(e)[:200])
        return PdfText()
    return PdfText(page_count=len(pages), text="\n\n".join(p for p in pages if p))
