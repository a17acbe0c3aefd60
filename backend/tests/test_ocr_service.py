from datetime import date
from decimal import Decimal

import pytest

from conftest import FakeOcrEngine, RECEIPT_TEXT
from models.expense_category import ExpenseCategory
from services import ocr_service
from services.exceptions import ImageLoadError, IncompleteExtractionError, OcrEngineError
from services.ocr_service import (
    KeywordCategorizer,
    ReceiptExtractor,
    RegexReceiptParser,
    TesseractOcrEngine,
    get_parser,
    load_image,
)


def test_parser_reads_labeled_fields():
    fields, extras = RegexReceiptParser().parse(RECEIPT_TEXT, ocr_confidence=0.9)

    assert fields.amount.value == Decimal("500.00")
    assert fields.amount.confidence == pytest.approx(0.9)
    assert fields.currency.value == "USD"
    assert fields.date.value == date(2026, 3, 14)
    assert fields.vendor.value == "Blue Bottle Cafe"
    assert fields.category.value == ExpenseCategory.MEALS
    assert extras["subtotal"] == Decimal("465.00")
    assert extras["tax"] == Decimal("35.00")
    assert fields.is_complete


def test_subtotal_is_not_taken_as_total():
    fields, _ = RegexReceiptParser().parse("SHOP\nSubtotal: 80.00\nTotal: 86.40\n")
    assert fields.amount.value == Decimal("86.40")


def test_iso_code_beats_dollar_symbol():
    fields, _ = RegexReceiptParser().parse("MAPLE TAXI\nFare C$ 42.00\nTotal CAD 42.00\n")
    assert fields.currency.value == "CAD"


def test_prefixed_dollar_symbol_is_not_usd():
    fields, _ = RegexReceiptParser().parse("MAPLE TAXI\nTotal C$42.00\n")
    assert fields.currency.value == "CAD"


def test_unlabeled_fields_get_lower_confidence():
    fields, _ = RegexReceiptParser().parse("CORNER DELI\n2026-01-05\nSandwich $12.50\n", ocr_confidence=1.0)
    assert fields.amount.value == Decimal("12.50")
    assert fields.amount.confidence < 1.0
    assert fields.date.value == date(2026, 1, 5)
    assert fields.date.confidence < 1.0


def test_missing_fields_are_unresolved_not_defaulted():
    fields, _ = RegexReceiptParser().parse("")
    assert not fields.amount.resolved
    assert fields.amount.value is None
    assert not fields.currency.resolved
    assert fields.missing_required() == ["amount", "date", "vendor"]


def test_category_priority_breaks_ties():
    categorizer = KeywordCategorizer()
    # hotel (Lodging), grill (Meals) and airport (Transportation) all match
    assert categorizer.categorize("Airport Hotel Grill", "").value == ExpenseCategory.LODGING
    assert categorizer.categorize("Uber Eats Pizza", "").value == ExpenseCategory.MEALS


def test_vendor_match_outranks_body_text():
    result = KeywordCategorizer().categorize("Hilton", "room service dinner")
    assert result.value == ExpenseCategory.LODGING
    assert result.confidence == pytest.approx(0.9)


def test_unknown_category_is_unresolved():
    assert not KeywordCategorizer().categorize("ACME Corp", "widget").resolved


def test_parser_registry():
    assert isinstance(get_parser("regex"), RegexReceiptParser)
    with pytest.raises(ValueError):
        get_parser("neural")


@pytest.mark.asyncio
async def test_load_image_rejects_garbage_bytes():
    with pytest.raises(ImageLoadError):
        await load_image(b"definitely not a png")


@pytest.mark.asyncio
async def test_load_image_rejects_missing_path(tmp_path):
    with pytest.raises(ImageLoadError):
        await load_image(tmp_path / "missing.png")


@pytest.mark.asyncio
async def test_load_image_from_path(tmp_path, receipt_image):
    path = tmp_path / "receipt.png"
    path.write_bytes(receipt_image)
    img = await load_image(str(path))
    assert img.size == (40, 60)


@pytest.mark.asyncio
async def test_extract_complete_receipt(receipt_image):
    extractor = ReceiptExtractor(FakeOcrEngine(RECEIPT_TEXT), RegexReceiptParser())
    result = await extractor.extract(receipt_image)
    assert result.fields.amount.value == Decimal("500.00")
    assert result.raw_text == RECEIPT_TEXT
    assert result.ocr_confidence == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_extract_without_date_is_incomplete(receipt_image):
    text = "HARBOR GRILL\nFish tacos\nTotal $42.10\n"
    extractor = ReceiptExtractor(FakeOcrEngine(text), RegexReceiptParser())

    with pytest.raises(IncompleteExtractionError) as exc:
        await extractor.extract(receipt_image)

    assert exc.value.missing == ["date"]
    assert exc.value.fields.amount.value == Decimal("42.10")
    assert exc.value.fields.vendor.value == "Harbor Grill"
    assert not exc.value.fields.date.resolved
    assert exc.value.result.raw_text == text


@pytest.mark.asyncio
async def test_blank_ocr_output_is_incomplete(receipt_image):
    extractor = ReceiptExtractor(FakeOcrEngine("   "), RegexReceiptParser())
    with pytest.raises(IncompleteExtractionError) as exc:
        await extractor.extract(receipt_image)
    assert set(exc.value.missing) == {"amount", "date", "vendor"}


@pytest.mark.asyncio
async def test_engine_failure_propagates(receipt_image):
    engine = FakeOcrEngine()
    engine.error = OcrEngineError("tesseract crashed")
    with pytest.raises(OcrEngineError):
        await ReceiptExtractor(engine, RegexReceiptParser()).extract(receipt_image)


@pytest.mark.asyncio
async def test_tesseract_errors_are_wrapped(monkeypatch, receipt_image):
    def boom(*args, **kwargs):
        raise RuntimeError("Tesseract process timeout")

    monkeypatch.setattr(ocr_service.pytesseract, "image_to_data", boom)
    img = await load_image(receipt_image)
    with pytest.raises(OcrEngineError):
        await TesseractOcrEngine(timeout_seconds=5).recognize(img)
