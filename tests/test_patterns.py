"""Tests for the shared amount, tax-ID and invoice-number patterns."""

from decimal import Decimal

import pytest

from invoice_ocr.extraction.patterns import (
    INVOICE_NUMBER_RE,
    amount_after_keyword,
    extract_amount,
    extract_invoice_no,
    extract_tax_id,
    is_valid_invoice_no,
    is_valid_tax_id,
    item_name,
    parse_amount,
    strip_amounts,
)


class TestAmounts:
    """Tests for amount parsing and extraction."""

    def test_parse_with_separators(self) -> None:
        assert parse_amount("1,234.5") == Decimal("1234.5")

    def test_parse_empty(self) -> None:
        assert parse_amount("") is None
        assert parse_amount(",") is None

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("合計 NT$1,050", Decimal("1050")),
            ("合計 nt 99", Decimal("99")),
            ("Total $ 12.50", Decimal("12.50")),
            ("共 100元", Decimal("100")),
            ("數量 3 件", Decimal("3")),
        ],
    )
    def test_extract_amount(self, text: str, expected: Decimal) -> None:
        assert extract_amount(text) == expected

    def test_currency_beats_bare_number(self) -> None:
        assert extract_amount("2 杯 NT$120") == Decimal("120")

    def test_no_amount(self) -> None:
        assert extract_amount("謝謝光臨") is None

    def test_amount_after_keyword(self) -> None:
        assert amount_after_keyword("小計 100 稅額 5", "稅額") == Decimal("5")

    def test_amount_before_keyword(self) -> None:
        assert amount_after_keyword("NT$100 合計", "合計") == Decimal("100")

    def test_strip_amounts(self) -> None:
        assert strip_amounts("咖啡 NT$600") == "咖啡"
        assert strip_amounts("茶 50元") == "茶"


class TestItemName:
    """Tests for item-name extraction."""

    def test_currency_amount_removed(self) -> None:
        assert item_name("拿鐵 NT$120") == "拿鐵"

    def test_bare_trailing_number_removed(self) -> None:
        assert item_name("咖啡 600") == "咖啡"

    def test_only_amount(self) -> None:
        assert item_name("NT$120") == ""


class TestIdentifiers:
    """Tests for tax-ID and invoice-number patterns."""

    def test_tax_id_after_label(self) -> None:
        assert extract_tax_id("統編: 12345678") == "12345678"

    @pytest.mark.parametrize("text", ["AB12345678", "AB-12345678", "號碼AB-12345678"])
    def test_invoice_serial_is_not_tax_id(self, text: str) -> None:
        assert extract_tax_id(text) is None

    @pytest.mark.parametrize(
        "text", ["Tax ID 12345678", "VAT NO 12345678", "統編 AB-87654321 12345678"]
    )
    def test_tax_id_after_uppercase_label(self, text: str) -> None:
        assert extract_tax_id(text) == "12345678"

    def test_longer_run_is_not_tax_id(self) -> None:
        assert extract_tax_id("電話 123456789") is None

    @pytest.mark.parametrize("text", ["AB12345678", "AB-12345678", "號碼 AB 12345678"])
    def test_invoice_number_accepted(self, text: str) -> None:
        assert INVOICE_NUMBER_RE.search(text)

    @pytest.mark.parametrize("text", ["AB123456", "ab12345678", "AB123456789", "XAB12345678"])
    def test_invoice_number_rejected(self, text: str) -> None:
        assert INVOICE_NUMBER_RE.search(text) is None

    def test_extract_invoice_no(self) -> None:
        assert extract_invoice_no("號碼 AB12345678 ") == "AB12345678"
        assert extract_invoice_no("AB-12345678") is None

    def test_format_checks(self) -> None:
        assert is_valid_tax_id("12345678")
        assert not is_valid_tax_id("1234567")
        assert is_valid_invoice_no("AB12345678")
        assert not is_valid_invoice_no("A112345678")
