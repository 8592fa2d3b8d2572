"""
Field Extraction
════════════════

Turns OCR output (linear text + resolved form pairs + tables) into the
minimal structured payloads needed to persist an entity:

  extract_receipt()   → ReceiptExtraction
  analyze_document()  → DocumentAnalysis

Backends
────────
  LLMFieldExtractor        ChatOpenAI with structured output (production)
  HeuristicFieldExtractor  form-key lookup + regex, no network (used when
                           no OpenAI key is configured)

get_field_extractor() picks one from settings, the same way the other
pluggable backends in this package are selected.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from langchain_core.messages import HumanMessage, SystemMessage

from app.core.config import settings
from app.core.exceptions import TransientProviderError
from app.processing.textract_blocks import BlockGraphResult, format_table_as_text
from app.schemas.jobs import DocumentAnalysis, ReceiptExtraction

logger = logging.getLogger(__name__)

# Prompt context ceiling (characters): keeps requests inside model limits
MAX_PROMPT_CHARS = 12_000

_RETRYABLE_EXCEPTION_TYPES = (
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
    "ReadTimeout",
    "ConnectTimeout",
)


def _is_retryable(exc: Exception) -> bool:
    """True if the exception class name suggests a transient provider error."""
    name = type(exc).__name__
    return any(name.endswith(r) for r in _RETRYABLE_EXCEPTION_TYPES)


def build_prompt_context(ocr: BlockGraphResult) -> str:
    parts = [ocr.text]
    if ocr.forms:
        parts.append("Form fields:\n" + "\n".join(f"{f.key}: {f.value}" for f in ocr.forms))
    for index, table in enumerate(ocr.tables, start=1):
        rendered = format_table_as_text(table)
        if rendered:
            parts.append(f"Table {index}:\n{rendered}")
    return "\n\n".join(p for p in parts if p)[:MAX_PROMPT_CHARS]


class FieldExtractor(ABC):
    @abstractmethod
    async def extract_receipt(self, ocr: BlockGraphResult) -> ReceiptExtraction: ...

    @abstractmethod
    async def analyze_document(self, text: str, ocr: BlockGraphResult | None = None) -> DocumentAnalysis: ...


# ---------------------------------------------------------------------------
# LLM backend
# ---------------------------------------------------------------------------

_RECEIPT_SYSTEM = (
    "You extract structured data from retail receipts. Use only values present "
    "in the text. Dates are ISO-8601. Amounts are decimal numbers without "
    "currency symbols. Currency is an ISO-4217 code."
)

_DOCUMENT_SYSTEM = (
    "You classify and summarize business documents. Return a short title, a "
    "document type (invoice, contract, voucher, warranty, bank_statement, "
    "return_policy, letter, other), a two-sentence summary, the ISO-639-1 "
    "language code and up to five topical tags."
)


class LLMFieldExtractor(FieldExtractor):
    def __init__(self, llm=None) -> None:
        if llm is None:
            from langchain_openai import ChatOpenAI

            llm = ChatOpenAI(
                model=settings.llm_model,
                temperature=settings.llm_temperature,
                api_key=settings.openai_api_key,
                timeout=settings.ocr_timeout_seconds,
            )
        self._llm = llm

    async def _invoke(self, schema: type, system: str, content: str):
        structured = self._llm.with_structured_output(schema)
        try:
            return await structured.ainvoke(
                [SystemMessage(content=system), HumanMessage(content=content)]
            )
        except Exception as exc:
            if _is_retryable(exc):
                raise TransientProviderError("openai", str(exc)) from exc
            raise

    async def extract_receipt(self, ocr: BlockGraphResult) -> ReceiptExtraction:
        result = await self._invoke(ReceiptExtraction, _RECEIPT_SYSTEM, build_prompt_context(ocr))
        logger.info(
            "LLM receipt extraction | merchant=%s total=%s items=%d",
            result.merchant_name, result.total_amount, len(result.line_items),
        )
        return result

    async def analyze_document(self, text: str, ocr: BlockGraphResult | None = None) -> DocumentAnalysis:
        content = build_prompt_context(ocr) if ocr is not None else text[:MAX_PROMPT_CHARS]
        result = await self._invoke(DocumentAnalysis, _DOCUMENT_SYSTEM, content)
        logger.info("LLM document analysis | type=%s title=%r", result.document_type, result.title)
        return result


# ---------------------------------------------------------------------------
# Heuristic backend
# ---------------------------------------------------------------------------

_TOTAL_KEYS = ("total", "amount due", "grand total", "total amount", "sum")
_TAX_KEYS = ("tax", "vat", "mwst", "gst")
_DATE_KEYS = ("date", "receipt date", "invoice date")
_MERCHANT_KEYS = ("merchant", "store", "vendor", "seller")

_AMOUNT_RE = re.compile(r"-?\d{1,3}(?:[ ,.]\d{3})*(?:[.,]\d{2})|-?\d+(?:[.,]\d{2})?")
_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y", "%m/%d/%Y", "%d-%m-%Y", "%Y/%m/%d")
_CURRENCY_HINTS = {"$": "USD", "€": "EUR", "£": "GBP", "kr": "NOK", "USD": "USD", "EUR": "EUR", "GBP": "GBP", "NOK": "NOK"}


def parse_amount(raw: str | None) -> Decimal | None:
    if not raw:
        return None
    match = _AMOUNT_RE.search(raw.replace("\u00a0", " "))
    if not match:
        return None
    token = match.group(0).replace(" ", "")
    # The last separator is the decimal mark; any earlier ones group thousands
    if "," in token and "." in token:
        decimal_mark = "," if token.rfind(",") > token.rfind(".") else "."
        thousands = "." if decimal_mark == "," else ","
        token = token.replace(thousands, "").replace(decimal_mark, ".")
    else:
        token = token.replace(",", ".")
        if token.count(".") > 1:
            head, _, tail = token.rpartition(".")
            token = head.replace(".", "") + "." + tail
    try:
        return Decimal(token).quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


def parse_date(raw: str | None) -> date | None:
    if not raw:
        return None
    candidate = raw.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(candidate, fmt).date()
        except ValueError:
            continue
    return None


def _lookup(forms: dict[str, str], keys: tuple[str, ...]) -> str | None:
    normalized = {k.strip().rstrip(":").lower(): v for k, v in forms.items()}
    for key in keys:
        if key in normalized:
            return normalized[key]
    return None


def _detect_currency(text: str) -> str | None:
    for hint, code in _CURRENCY_HINTS.items():
        if hint in text:
            return code
    return None


class HeuristicFieldExtractor(FieldExtractor):
    async def extract_receipt(self, ocr: BlockGraphResult) -> ReceiptExtraction:
        forms = ocr.forms_as_dict()
        first_line = next((line.strip() for line in ocr.text.splitlines() if line.strip()), None)
        total_raw = _lookup(forms, _TOTAL_KEYS)
        return ReceiptExtraction(
            merchant_name=_lookup(forms, _MERCHANT_KEYS) or first_line,
            receipt_date=parse_date(_lookup(forms, _DATE_KEYS)),
            total_amount=parse_amount(total_raw),
            tax_amount=parse_amount(_lookup(forms, _TAX_KEYS)),
            currency=_detect_currency(total_raw or ocr.text),
        )

    async def analyze_document(self, text: str, ocr: BlockGraphResult | None = None) -> DocumentAnalysis:
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        title = lines[0][:200] if lines else None
        summary = " ".join(lines[1:4])[:500] if len(lines) > 1 else None
        return DocumentAnalysis(title=title, document_type="other", summary=summary)


def get_field_extractor() -> FieldExtractor:
    if settings.openai_api_key:
        return LLMFieldExtractor()
    logger.info("No OpenAI key configured | using heuristic field extractor")
    return HeuristicFieldExtractor()
