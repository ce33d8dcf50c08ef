"""Arithmetic and identity checks on extracted invoice data.

Three independent rules run on every document, none short-circuiting:

* ``銷售額 + 稅額 = 合計``: sales plus tax must equal the total.
* ``品項金額加總 = 銷售額``: item amounts must add up to the sales amount.
* ``統編核對``: the tax ID must belong to the active account.

Amounts are compared as Decimals with an absolute tolerance.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

from invoice_ocr.extraction.rule_extractor import ExtractedData
from invoice_ocr.utils.logger import get_logger
from invoice_ocr.utils.serialization import to_plain

logger = get_logger(__name__)

RULE_SALES_TAX_TOTAL = "銷售額 + 稅額 = 合計"
RULE_ITEMS_TOTAL = "品項金額加總 = 銷售額"
RULE_TAX_ID = "統編核對"

PASSED_MESSAGE = "驗算通過"


@dataclass(frozen=True)
class Account:
    username: str
    tax_id: str


@dataclass(frozen=True)
class AccountContext:
    """The account a document is checked against, and the other known ones."""

    active: Account
    known_accounts: list[Account] = field(default_factory=list)

    def find_by_tax_id(self, tax_id: str) -> Account | None:
        for account in self.known_accounts:
            if account.tax_id == tax_id:
                return account
        return None


@dataclass(frozen=True)
class RuleResult:
    is_valid: bool
    message: str
    expected: Any = None
    actual: Any = None
    diff: Any = None
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationError:
    """A failed rule as reported to the reviewer."""

    rule: str
    message: str
    expected: Any = None
    actual: Any = None
    diff: Any = None


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, RuleResult] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return to_plain(self)


def _decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value).replace(",", ""))


class Validator:
    """Runs every validation rule over one document's extracted data.

    Args:
        tolerance: Largest absolute difference still accepted between two
            amounts.
    """

    def __init__(self, tolerance: float | Decimal = 1) -> None:
        self.tolerance = _decimal(tolerance)
        self.rules: list[
            tuple[str, Callable[[ExtractedData, AccountContext | None], RuleResult]]
        ] = [
            (RULE_SALES_TAX_TOTAL, self.validate_sales_tax_total),
            (RULE_ITEMS_TOTAL, self.validate_items_total),
            (RULE_TAX_ID, self.validate_tax_id),
        ]

    def validate(
        self, extracted: ExtractedData, account: AccountContext | None = None
    ) -> ValidationResult:
        """Run all rules and collect their failures and warnings.

        Args:
            extracted: Amounts, items and identifiers of one document.
            account: Account to check the tax ID against. Without one the
                tax-ID rule passes with a warning.

        Returns:
            Overall verdict plus every rule's individual result.
        """
        errors: list[ValidationError] = []
        warnings: list[str] = []
        details: dict[str, RuleResult] = {}

        for name, rule in self.rules:
            result = rule(extracted, account)
            details[name] = result
            if not result.is_valid:
                errors.append(
                    ValidationError(
                        rule=name,
                        message=result.message,
                        expected=result.expected,
                        actual=result.actual,
                        diff=result.diff,
                    )
                )
            warnings.extend(result.warnings)

        is_valid = not errors
        logger.info(
            "Validation %s (%d/%d rules passed)",
            "PASSED" if is_valid else "FAILED",
            len(self.rules) - len(errors),
            len(self.rules),
        )
        return ValidationResult(
            is_valid=is_valid, errors=errors, warnings=warnings, details=details
        )

    def validate_sales_tax_total(
        self, data: ExtractedData, account: AccountContext | None = None
    ) -> RuleResult:
        sales = data.amount_for("銷售額")
        tax = data.amount_for("稅額")
        total = data.amount_for("合計", "總計")
        if sales is None or tax is None or total is None:
            return RuleResult(False, "缺少必要欄位（銷售額、稅額或合計）")

        try:
            expected = _decimal(sales.amount) + _decimal(tax.amount)
            actual = _decimal(total.amount)
        except (InvalidOperation, TypeError):
            return RuleResult(False, "金額格式錯誤")

        diff = actual - expected
        if abs(diff) > self.tolerance:
            return RuleResult(
                False, "銷售額 + 稅額 ≠ 合計", expected=expected, actual=actual, diff=diff
            )
        return RuleResult(True, PASSED_MESSAGE)

    def validate_items_total(
        self, data: ExtractedData, account: AccountContext | None = None
    ) -> RuleResult:
        sales = data.amount_for("銷售額", "小計")
        if sales is None:
            return RuleResult(False, "缺少銷售額或小計欄位")
        if not data.items:
            return RuleResult(True, "無品項明細，跳過驗算", warnings=["未偵測到品項明細"])

        try:
            actual = sum((_decimal(item.amount) for item in data.items), Decimal(0))
            expected = _decimal(sales.amount)
        except (InvalidOperation, TypeError):
            return RuleResult(False, "金額格式錯誤")

        diff = actual - expected
        if abs(diff) > self.tolerance:
            return RuleResult(
                False, "品項金額加總 ≠ 銷售額", expected=expected, actual=actual, diff=diff
            )
        return RuleResult(True, PASSED_MESSAGE)

    def validate_tax_id(
        self, data: ExtractedData, account: AccountContext | None = None
    ) -> RuleResult:
        if account is None:
            return RuleResult(
                True, "未提供帳號資訊，略過統編核對", warnings=["未提供帳號，未核對統一編號"]
            )
        if data.tax_id is None:
            return RuleResult(False, "未偵測到統一編號", warnings=["請手動確認統一編號"])

        extracted = data.tax_id.value
        expected = account.active.tax_id
        if extracted == expected:
            return RuleResult(True, "統編核對通過")

        owner = account.find_by_tax_id(extracted)
        if owner is not None and owner != account.active:
            suggestion = f"建議切換至帳號「{owner.username}」"
            return RuleResult(
                False,
                f"統一編號不符：此為「{owner.username}」的統編，{suggestion}",
                expected=expected,
                actual=extracted,
                warnings=[suggestion],
            )
        return RuleResult(
            False,
            "統一編號不符",
            expected=expected,
            actual=extracted,
            warnings=["請確認是否為正確的發票"],
        )

    def validate_batch(
        self, extracted: list[ExtractedData], account: AccountContext | None = None
    ) -> list[ValidationResult]:
        return [self.validate(data, account) for data in extracted]
