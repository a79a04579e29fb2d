"""
Document analysis adapter.

Wraps the vision model call and normalises its reply into an AnalysisResult.
Never raises for provider trouble: failed calls and unparseable replies come
back as zero-confidence results so the HITL gate routes the quote to staff.
"""

import base64
import re
from decimal import Decimal
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from quotedesk.analysis.json_extract import extract_json
from quotedesk.analysis.vision_client import VisionClient
from quotedesk.config import settings
from quotedesk.errors import QuoteDeskError
from quotedesk.models.enums import Complexity, FileProcessingStatus

logger = structlog.get_logger(__name__)

PDF_MANUAL_ENTRY_NOTE = (
    "PDF pages could not be rendered for vision analysis. "
    "Enter language, document type and word count manually."
)

_WORD = re.compile(r"\w+", re.UNICODE)


class DocumentImage(BaseModel):
    media_type: str
    data: bytes


class AnalysisResult(BaseModel):
    """Normalised analysis of one document (or one document group)."""
    status: str = FileProcessingStatus.COMPLETED.value
    detected_language: Optional[str] = None
    language_name: Optional[str] = None
    document_type: Optional[str] = None
    suggested_label: Optional[str] = None
    complexity: str = Complexity.EASY.value
    word_count: int = 0
    page_count: int = 1
    confidence: Decimal = Decimal("0")
    ocr_confidence: Decimal = Decimal("0")
    language_confidence: Decimal = Decimal("0")
    document_type_confidence: Decimal = Decimal("0")
    complexity_confidence: Decimal = Decimal("0")
    notes: Optional[str] = None
    degraded: bool = False
    llm_model: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


def low_confidence_result(
    note: str,
    *,
    status: str = FileProcessingStatus.FAILED.value,
    word_count: int = 0,
    page_count: int = 1,
) -> AnalysisResult:
    return AnalysisResult(
        status=status,
        word_count=word_count,
        page_count=page_count,
        notes=note,
        degraded=True,
    )


def count_words(text: Optional[str]) -> int:
    return len(_WORD.findall(text or ""))


def is_pdf(mime_type: Optional[str], file_name: Optional[str] = None) -> bool:
    if mime_type and "pdf" in mime_type.lower():
        return True
    return bool(file_name and file_name.lower().endswith(".pdf"))


# ── Normalisation ────────────────────────────────────────────

def normalize_confidence(value: Any, fallback: Optional[Decimal] = None) -> Decimal:
    """Coerce to [0, 1]. Percentages (e.g. 85.5) are scaled down."""
    if value is None or isinstance(value, bool):
        return fallback if fallback is not None else Decimal("0")
    try:
        number = Decimal(str(value))
    except ArithmeticError:
        return fallback if fallback is not None else Decimal("0")
    if not number.is_finite():
        return fallback if fallback is not None else Decimal("0")
    if 1 < number <= 100:
        number = number / 100
    number = min(max(number, Decimal("0")), Decimal("1"))
    return number.quantize(Decimal("0.0001"))


def normalize_complexity(value: Any) -> tuple[str, bool]:
    """Return (complexity, recognised)."""
    key = str(value or "").strip().lower()
    aliases = {"simple": "easy", "low": "easy", "moderate": "medium", "high": "hard", "complex": "hard"}
    key = aliases.get(key, key)
    if key in settings.COMPLEXITY_MULTIPLIERS:
        return key, True
    return Complexity.EASY.value, False


def normalize_language(value: Any) -> Optional[str]:
    if not value:
        return None
    code = str(value).strip().lower().replace("_", "-")
    return code[:16] or None


# upper bound for model-reported word and page counts
_MAX_COUNT = 10_000_000


def _non_negative_int(value: Any, default: int) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return number if 0 <= number <= _MAX_COUNT else default


def _optional_text(value: Any, limit: int = 200) -> Optional[str]:
    """Free-text fields from the model; anything non-empty is kept as a string."""
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text[:limit] or None


def normalize_reply(
    parsed: dict,
    *,
    ocr_word_count: int = 0,
    page_count: int = 1,
) -> AnalysisResult:
    """Map the model's JSON onto AnalysisResult, tolerating missing keys."""
    overall = normalize_confidence(parsed.get("confidence"))
    complexity, recognised = normalize_complexity(parsed.get("complexity"))

    complexity_confidence = normalize_confidence(parsed.get("complexity_confidence"), overall)
    notes = None
    if not recognised:
        # unknown labels price as easy but must not look trustworthy
        complexity_confidence = Decimal("0")
        notes = f"Unrecognised complexity '{parsed.get('complexity')}', defaulted to easy"

    word_count = _non_negative_int(parsed.get("word_count"), ocr_word_count)

    return AnalysisResult(
        detected_language=normalize_language(parsed.get("detected_language")),
        language_name=_optional_text(parsed.get("language_name")),
        document_type=_optional_text(parsed.get("document_type"), 64),
        suggested_label=_optional_text(parsed.get("suggested_label")),
        complexity=complexity,
        word_count=word_count,
        page_count=_non_negative_int(parsed.get("page_count"), page_count) or page_count,
        confidence=overall,
        ocr_confidence=normalize_confidence(parsed.get("ocr_confidence"), overall),
        language_confidence=normalize_confidence(parsed.get("language_confidence"), overall),
        document_type_confidence=normalize_confidence(parsed.get("document_type_confidence"), overall),
        complexity_confidence=complexity_confidence,
        notes=notes,
    )


# ── Prompt ───────────────────────────────────────────────────

def build_prompt(ocr_text: Optional[str], hints: Optional[str] = None) -> str:
    text = (ocr_text or "")[: settings.VISION_MAX_OCR_CHARS]
    hint_block = f"\nContext from the customer or staff:\n{hints}\n" if hints else ""
    return f"""Analyze this document. The pages belong to a SINGLE logical document submitted for certified translation.
{hint_block}
OCR text already extracted (may be empty):
{text}

Provide:
1. document_type: e.g. drivers_license, birth_certificate, passport, marriage_certificate, diploma_degree, transcript, bank_statement
2. detected_language: ISO 639-1 code of the source language (e.g. "it", "zh", "es")
3. language_name: full name of the language
4. complexity: "easy", "medium" or "hard"
   - easy: standard forms, clear text, common document types
   - medium: some handwriting, stamps, technical terms or complex layouts
   - hard: extensive handwriting, poor quality, legal/medical terminology, archaic language
5. word_count: estimated number of translatable words
6. page_count: number of pages
7. suggested_label: short descriptive label, e.g. "Italian Driver's License"
8. ocr_confidence, language_confidence, document_type_confidence, complexity_confidence: each 0.0 to 1.0
9. confidence: overall confidence 0.0 to 1.0

Respond ONLY with valid JSON:
{{
  "document_type": "string",
  "detected_language": "string",
  "language_name": "string",
  "complexity": "easy|medium|hard",
  "word_count": number,
  "page_count": number,
  "suggested_label": "string",
  "ocr_confidence": number,
  "language_confidence": number,
  "document_type_confidence": number,
  "complexity_confidence": number,
  "confidence": number
}}"""


def build_content(images: list[DocumentImage], prompt: str) -> list[dict]:
    content: list[dict] = []
    for image in images[: settings.VISION_MAX_IMAGES]:
        content.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.media_type,
                "data": base64.b64encode(image.data).decode("ascii"),
            },
        })
    content.append({"type": "text", "text": prompt})
    return content


# ── Entry point ──────────────────────────────────────────────

async def analyze(
    images: list[DocumentImage],
    *,
    file_name: Optional[str] = None,
    mime_type: Optional[str] = None,
    ocr_text: Optional[str] = None,
    hints: Optional[str] = None,
    page_count: int = 1,
    client: Optional[VisionClient] = None,
) -> AnalysisResult:
    """
    Analyse one document.

    PDFs without rendered page images are not sent to the model; they come
    back with zero confidence and a manual-entry note.
    """
    ocr_word_count = count_words(ocr_text)

    if not images and is_pdf(mime_type, file_name):
        logger.info("analysis_skipped_pdf", file_name=file_name)
        return low_confidence_result(
            PDF_MANUAL_ENTRY_NOTE,
            status=FileProcessingStatus.SKIPPED.value,
            word_count=ocr_word_count,
            page_count=page_count,
        )

    if not images and not ocr_text:
        return low_confidence_result("Nothing to analyse: no images and no OCR text", page_count=page_count)

    client = client or VisionClient()
    content = build_content(images, build_prompt(ocr_text, hints))

    try:
        reply = await client.complete(content)
    except QuoteDeskError as e:
        logger.warning("analysis_call_failed", file_name=file_name, error=e.message, error_code=e.error_code)
        return low_confidence_result(
            f"Vision analysis failed: {e.message}",
            word_count=ocr_word_count,
            page_count=page_count,
        )

    try:
        parsed = extract_json(reply.text)
    except QuoteDeskError as e:
        logger.warning("analysis_parse_failed", file_name=file_name, error=e.message)
        result = low_confidence_result(
            f"Vision reply could not be parsed: {e.message}",
            word_count=ocr_word_count,
            page_count=page_count,
        )
    else:
        result = normalize_reply(parsed, ocr_word_count=ocr_word_count, page_count=page_count)

    result.llm_model = reply.model
    result.input_tokens = reply.input_tokens
    result.output_tokens = reply.output_tokens
    result.latency_ms = reply.latency_ms

    logger.info(
        "analysis_completed",
        file_name=file_name,
        status=result.status,
        complexity=result.complexity,
        word_count=result.word_count,
        confidence=str(result.confidence),
        degraded=result.degraded,
    )
    return result
