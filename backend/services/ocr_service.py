"""
OCR Service - Extracts structured fields from receipt images using pytesseract.

Pipeline:
  1. load_image()            path / http(s) URL / raw bytes -> PIL image
  2. OcrEngine.recognize()   preprocessed image -> raw text + confidence
  3. ReceiptParser.parse()   raw text -> ExtractedFields

Extracted fields (each independently optional, tagged with confidence or
marked unresolved):
  - amount:   receipt total
  - currency: ISO code or symbol found on the receipt
  - date:     transaction date
  - vendor:   merchant name
  - category: keyword heuristic (Lodging > Meals > Transportation > Miscellaneous)

A receipt missing amount, date or vendor raises IncompleteExtractionError so
the caller routes it to manual entry instead of silently defaulting.
"""

import asyncio
import io
import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple, Union

import httpx
import pytesseract
from PIL import Image, ImageEnhance, ImageFilter

from models.expense_category import CATEGORY_PRIORITY, ExpenseCategory
from models.receipt import ExtractedField, ExtractedFields, ExtractionResult
from services.exceptions import ImageLoadError, IncompleteExtractionError, OcrEngineError

logger = logging.getLogger("ExpenseFlow.OCRService")

ImageSource = Union[str, Path, bytes]

# Labeled dates are trusted more than bare date-looking tokens
LABELED_DATE_PATTERNS = [
    r'(?:date|dated|transaction\s*date)\s*[:\-]?\s*(\d{1,2}[/\-\.]\d{1,2}[/\-\.]\d{2,4})',
    r'(?:date|dated|transaction\s*date)\s*[:\-]?\s*(\d{4}[/\-\.]\d{1,2}[/\-\.]\d{1,2})',
    r'(?:date|dated|transaction\s*date)\s*[:\-]?\s*([A-Za-z]{3,9}\s+\d{1,2},?\s+\d{4})',
]

DATE_PATTERNS = [
    r'\b(\d{4}[/\-\.]\d{1,2}[/\-\.]\d{1,2})\b',              # YYYY-MM-DD
    r'\b(\d{1,2}[/\-\.]\d{1,2}[/\-\.]\d{2,4})\b',            # MM/DD/YYYY, DD-MM-YYYY
    r'\b([A-Za-z]{3,9}\s+\d{1,2},?\s+\d{4})\b',              # January 15, 2026
    r'\b(\d{1,2}\s+[A-Za-z]{3,9}\s+\d{4})\b',                # 15 January 2026
]

DATE_FORMATS = [
    "%Y-%m-%d", "%Y/%m/%d", "%Y.%m.%d",
    "%m/%d/%Y", "%m/%d/%y", "%d/%m/%Y", "%d/%m/%y",
    "%m-%d-%Y", "%m-%d-%y", "%d-%m-%Y",
    "%m.%d.%Y", "%d.%m.%Y",
    "%B %d, %Y", "%B %d %Y", "%b %d, %Y", "%b %d %Y",
    "%d %B %Y", "%d %b %Y",
]

# Amount patterns, tried in order; first pattern with a match wins
TOTAL_PATTERNS = [
    r'(?:grand\s*total|amount\s*due|balance\s*due|net\s*total|total\s*due)\s*[:\s]*[^\d\n]{0,4}\s*([\d,]+(?:\.\d{1,2})?)',
    r'(?<!sub)(?<!sub\s)total\s*[:\s]*[^\d\n]{0,4}\s*([\d,]+(?:\.\d{1,2})?)',
    r'(?:amount|sum)\s*[:\s]*[^\d\n]{0,4}\s*([\d,]+\.\d{2})',
]

SUBTOTAL_PATTERNS = [
    r'(?:subtotal|sub\s*total)\s*[:\s]*[^\d\n]{0,4}\s*([\d,]+(?:\.\d{1,2})?)',
]

TAX_PATTERNS = [
    r'(?:tax|hst|gst|vat|sales\s*tax)\s*[:\s]*[^\d\n]{0,4}\s*([\d,]+(?:\.\d{1,2})?)',
]

TIP_PATTERNS = [
    r'(?:tip|gratuity)\s*[:\s]*[^\d\n]{0,4}\s*([\d,]+(?:\.\d{1,2})?)',
]

VENDOR_LABEL_PATTERNS = [
    r'^\s*(?:vendor|merchant|store|seller|sold\s*by)\s*[:\-]\s*(.+)$',
]

ISO_CURRENCY_PATTERN = r'\b(USD|EUR|GBP|JPY|CAD|AUD|CHF|CNY|INR|MXN|SEK|NOK|DKK|SGD|HKD|NZD|KRW|BRL|ZAR|KWD)\b'

# Longer symbols first so "C$" is not read as "$"
CURRENCY_SYMBOLS = [
    ('C$', 'CAD'), ('A$', 'AUD'), ('NZ$', 'NZD'), ('HK$', 'HKD'),
    ('€', 'EUR'), ('£', 'GBP'), ('¥', 'JPY'), ('₹', 'INR'), ('$', 'USD'),
]

CATEGORY_KEYWORDS = {
    ExpenseCategory.LODGING: [
        "hotel", "motel", "inn", "lodging", "resort", "hostel", "airbnb",
        "marriott", "hilton", "hyatt", "suite", "room charge", "nights",
    ],
    ExpenseCategory.MEALS: [
        "restaurant", "cafe", "café", "coffee", "bistro", "grill", "diner",
        "kitchen", "pizza", "burger", "sushi", "bakery", "breakfast", "lunch",
        "dinner", "food", "starbucks", "mcdonald's", "chipotle",
    ],
    ExpenseCategory.TRANSPORTATION: [
        "taxi", "cab", "uber", "lyft", "airline", "airlines", "flight",
        "airport", "rail", "train", "metro", "bus", "parking", "fuel",
        "gas station", "toll", "car rental", "hertz", "avis",
    ],
    ExpenseCategory.MISCELLANEOUS: [
        "office", "supplies", "staples", "pharmacy", "stationery", "printing",
        "shipping", "courier", "internet", "phone",
    ],
}


# ─── Image loading ───────────────────────────────────────────────

async def load_image(source: ImageSource, timeout_seconds: float = 10.0) -> Image.Image:
    """Load a receipt image from a path, an http(s) URL, or raw bytes."""
    if isinstance(source, (bytes, bytearray)):
        data = bytes(source)
    elif isinstance(source, str) and source.lower().startswith(("http://", "https://")):
        data = await _fetch_image(source, timeout_seconds)
    else:
        path = Path(source)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise ImageLoadError(f"Cannot read receipt image {path}: {e}", image_ref=str(path)) from e

    if not data:
        raise ImageLoadError("Receipt image is empty")

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise ImageLoadError(f"Unreadable receipt image: {e}") from e
    return img


async def _fetch_image(url: str, timeout_seconds: float) -> bytes:
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
    except httpx.HTTPError as e:
        raise ImageLoadError(f"Cannot fetch receipt image {url}: {e}", image_ref=url) from e


def preprocess_image(img: Image.Image) -> Image.Image:
    """
    Preprocess the receipt image for better OCR accuracy.
    - Convert to grayscale
    - Enhance contrast
    - Sharpen
    - Resize if too small
    """
    img = img.convert("L")
    img = ImageEnhance.Contrast(img).enhance(1.8)
    img = img.filter(ImageFilter.SHARPEN)

    w, h = img.size
    if w < 600:
        scale = 600 / w
        img = img.resize((int(w * scale), int(h * scale)), Image.LANCZOS)

    return img


# ─── OCR engines ─────────────────────────────────────────────────

class OcrOutput:
    def __init__(self, text: str, confidence: float):
        self.text = text
        self.confidence = confidence


class OcrEngine(Protocol):
    async def recognize(self, image: Image.Image) -> OcrOutput:
        ...


class TesseractOcrEngine:
    """pytesseract wrapper run off the event loop with a hard timeout."""

    def __init__(self, language: str = "eng", timeout_seconds: float = 30.0, tesseract_cmd: Optional[str] = None):
        self.language = language
        self.timeout_seconds = timeout_seconds
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    async def recognize(self, image: Image.Image) -> OcrOutput:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._run, image),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise OcrEngineError(f"OCR timed out after {self.timeout_seconds:.0f}s") from e
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError, RuntimeError, OSError) as e:
            raise OcrEngineError(f"OCR engine failed: {e}") from e

    def _run(self, image: Image.Image) -> OcrOutput:
        img = preprocess_image(image)
        data = pytesseract.image_to_data(
            img, lang=self.language, output_type=pytesseract.Output.DICT, timeout=self.timeout_seconds,
        )
        # -1 means no text detected in that box
        confidences = [float(c) for c in data.get("conf", []) if float(c) > 0]
        avg_confidence = sum(confidences) / max(len(confidences), 1) / 100.0
        text = pytesseract.image_to_string(img, lang=self.language, timeout=self.timeout_seconds)
        return OcrOutput(text=text, confidence=round(avg_confidence, 3))


# ─── Parsing ─────────────────────────────────────────────────────

def _parse_amount(text: str) -> Optional[Decimal]:
    """Parse '1,234.56' or '12,50' into a Decimal."""
    cleaned = text.strip()
    if re.fullmatch(r'\d+,\d{2}', cleaned):
        cleaned = cleaned.replace(",", ".")
    cleaned = cleaned.replace(",", "")
    try:
        value = Decimal(cleaned)
    except (InvalidOperation, ValueError):
        return None
    return value if value > 0 else None


def _parse_date(raw: str) -> Optional[date]:
    candidate = raw.strip().replace(",", ", ").replace(",  ", ", ")
    for fmt in DATE_FORMATS:
        for value in (raw.strip(), candidate):
            try:
                return datetime.strptime(value, fmt).date()
            except ValueError:
                continue
    return None


class ReceiptParser(Protocol):
    """Turns raw OCR text into ExtractedFields."""

    def parse(self, raw_text: str, ocr_confidence: float = 0.0) -> Tuple[ExtractedFields, Dict[str, Optional[Decimal]]]:
        ...


class KeywordCategorizer:
    """Keyword heuristic; ties resolve by CATEGORY_PRIORITY."""

    def __init__(self, keywords: Dict[ExpenseCategory, List[str]] = None):
        self.keywords = keywords or CATEGORY_KEYWORDS
        self._patterns = {
            category: re.compile(r'\b(?:' + "|".join(re.escape(w) for w in words) + r')\b', re.I)
            for category, words in self.keywords.items()
        }

    def categorize(self, vendor: Optional[str], text: str) -> ExtractedField[ExpenseCategory]:
        for source, confidence in ((vendor or "", 0.9), (text or "", 0.6)):
            if not source:
                continue
            for category in CATEGORY_PRIORITY:
                pattern = self._patterns.get(category)
                if pattern and pattern.search(source):
                    return ExtractedField[ExpenseCategory].found(category, confidence)
        return ExtractedField[ExpenseCategory].unresolved()


class RegexReceiptParser:
    """Ordered regex matchers over the raw OCR text."""

    LABELED_WEIGHT = 1.0
    FALLBACK_WEIGHT = 0.6

    def __init__(self, categorizer: Optional[KeywordCategorizer] = None):
        self.categorizer = categorizer or KeywordCategorizer()

    def parse(self, raw_text: str, ocr_confidence: float = 0.0) -> Tuple[ExtractedFields, Dict[str, Optional[Decimal]]]:
        base = ocr_confidence if ocr_confidence > 0 else 1.0

        amount = self._extract_total(raw_text, base)
        currency = self._extract_currency(raw_text, base)
        receipt_date = self._extract_date(raw_text, base)
        vendor = self._extract_vendor(raw_text, base)
        category = self.categorizer.categorize(vendor.value, raw_text)

        extras = {
            "subtotal": self._first_amount(SUBTOTAL_PATTERNS, raw_text),
            "tax": self._first_amount(TAX_PATTERNS, raw_text),
            "tip": self._first_amount(TIP_PATTERNS, raw_text),
        }
        fields = ExtractedFields(
            amount=amount, currency=currency, date=receipt_date, vendor=vendor, category=category,
        )
        return fields, extras

    def _extract_total(self, raw_text: str, base: float) -> ExtractedField[Decimal]:
        text_lower = raw_text.lower()
        for pattern in TOTAL_PATTERNS:
            matches = re.findall(pattern, text_lower)
            amounts = [a for a in (_parse_amount(m) for m in matches) if a is not None]
            if amounts:
                # The largest labeled total is usually the final one
                return ExtractedField[Decimal].found(max(amounts), base * self.LABELED_WEIGHT)

        # No label: take the largest currency-marked amount on the receipt
        marked = re.findall(r'[$€£¥₹]\s*([\d,]+\.\d{2})', raw_text)
        amounts = [a for a in (_parse_amount(m) for m in marked) if a is not None]
        if amounts:
            return ExtractedField[Decimal].found(max(amounts), base * self.FALLBACK_WEIGHT)
        return ExtractedField[Decimal].unresolved()

    def _first_amount(self, patterns: List[str], raw_text: str) -> Optional[Decimal]:
        text_lower = raw_text.lower()
        for pattern in patterns:
            match = re.search(pattern, text_lower)
            if match:
                return _parse_amount(match.group(1))
        return None

    def _extract_currency(self, raw_text: str, base: float) -> ExtractedField[str]:
        match = re.search(ISO_CURRENCY_PATTERN, raw_text.upper())
        if match:
            return ExtractedField[str].found(match.group(1), base * self.LABELED_WEIGHT)
        for symbol, code in CURRENCY_SYMBOLS:
            if symbol in raw_text:
                return ExtractedField[str].found(code, base * self.FALLBACK_WEIGHT)
        return ExtractedField[str].unresolved()

    def _extract_date(self, raw_text: str, base: float) -> ExtractedField[date]:
        for patterns, weight in ((LABELED_DATE_PATTERNS, self.LABELED_WEIGHT), (DATE_PATTERNS, self.FALLBACK_WEIGHT)):
            for pattern in patterns:
                for match in re.finditer(pattern, raw_text, re.I):
                    parsed = _parse_date(match.group(1))
                    if parsed:
                        return ExtractedField[date].found(parsed, base * weight)
        return ExtractedField[date].unresolved()

    def _extract_vendor(self, raw_text: str, base: float) -> ExtractedField[str]:
        for pattern in VENDOR_LABEL_PATTERNS:
            match = re.search(pattern, raw_text, re.I | re.M)
            if match and match.group(1).strip():
                return ExtractedField[str].found(match.group(1).strip()[:100], base * self.LABELED_WEIGHT)

        # The merchant name is typically in the first few non-empty lines.
        # Skip lines that look like phone numbers, dates, addresses or totals.
        lines = [l.strip() for l in raw_text.split("\n") if l.strip()]
        for line in lines[:5]:
            if len(line) < 3:
                continue
            if re.match(r'^[\d\s\-\(\)\+\.]+$', line):
                continue
            if re.match(r'^\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}', line):
                continue
            if re.match(r'^\d+\s+\w+\s+(st|ave|rd|blvd|dr|ln|ct)\b', line, re.I):
                continue
            if re.match(r'^(date|total|subtotal|tax|receipt|invoice|amount)\b', line, re.I):
                continue
            merchant = line
            if merchant.isupper() and len(merchant) > 3:
                merchant = merchant.title()
            return ExtractedField[str].found(merchant[:100], base * self.FALLBACK_WEIGHT)

        return ExtractedField[str].unresolved()


PARSERS = {
    "regex": RegexReceiptParser,
}


def get_parser(name: str) -> ReceiptParser:
    """Instantiate the receipt parser strategy named in configuration."""
    try:
        return PARSERS[name]()
    except KeyError:
        raise ValueError(f"Unknown receipt parser '{name}' (available: {', '.join(sorted(PARSERS))})")


# ─── Extractor ───────────────────────────────────────────────────

class ReceiptExtractor:
    """Image -> OCR -> parsed fields. Returns data only, never persists."""

    def __init__(self, engine: OcrEngine, parser: ReceiptParser, image_timeout_seconds: float = 10.0):
        self.engine = engine
        self.parser = parser
        self.image_timeout_seconds = image_timeout_seconds

    async def extract(self, image: ImageSource) -> ExtractionResult:
        """
        Raises ImageLoadError, OcrEngineError, or IncompleteExtractionError
        (carrying the partial result) when amount, date or vendor is missing.
        """
        img = await load_image(image, self.image_timeout_seconds)
        output = await self.engine.recognize(img)
        raw_text = output.text or ""

        fields, extras = self.parser.parse(raw_text, output.confidence)
        result = ExtractionResult(
            fields=fields,
            raw_text=raw_text,
            ocr_confidence=output.confidence,
            extras=extras,
        )

        logger.info(
            f"🔍 OCR extracted: amount={fields.amount.value}, currency={fields.currency.value}, "
            f"vendor={fields.vendor.value}, date={fields.date.value}, "
            f"category={fields.category.value}, confidence={output.confidence:.1%}"
        )

        missing = fields.missing_required()
        if missing:
            logger.info(f"📄 Incomplete receipt, unresolved: {', '.join(missing)}")
            raise IncompleteExtractionError(
                f"Could not read {', '.join(missing)} from receipt; manual entry required",
                result=result,
                missing=missing,
            )
        return result
