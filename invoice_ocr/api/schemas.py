"""Pydantic request/response schemas for the FastAPI endpoints."""

from typing import Any

from pydantic import AliasChoices, BaseModel, Field

from invoice_ocr.validation.rules_engine import Account, AccountContext


class BoxIn(BaseModel):
    """Line or word box; the right and bottom edges are optional."""

    x0: float
    y0: float
    x1: float | None = None
    y1: float | None = None


class OCRWordIn(BaseModel):
    text: str
    confidence: float = 0.0
    bbox: BoxIn | None = None


class OCRLineIn(BaseModel):
    """One OCR line. ``needsReview`` is accepted as an alias."""

    text: str
    confidence: float = 0.0
    needs_review: bool | None = Field(
        default=None, validation_alias=AliasChoices("needs_review", "needsReview")
    )
    bbox: BoxIn | None = None
    words: list[OCRWordIn] = Field(default_factory=list)


class AccountIn(BaseModel):
    username: str
    tax_id: str


class AccountContextIn(BaseModel):
    """Account the tax ID is checked against, plus other known accounts."""

    active: AccountIn
    known_accounts: list[AccountIn] = Field(default_factory=list)

    def to_context(self) -> AccountContext:
        return AccountContext(
            active=Account(**self.active.model_dump()),
            known_accounts=[Account(**a.model_dump()) for a in self.known_accounts],
        )


class AnalyzeRequest(BaseModel):
    """An OCR result to analyze, in the OCR provider's shape."""

    text: str | None = None
    confidence: float = 0.0
    lines: list[OCRLineIn] = Field(default_factory=list)
    account: AccountContextIn | None = None

    def ocr_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"account"})


class ValidationErrorResponse(BaseModel):
    rule: str
    message: str
    expected: Any = None
    actual: Any = None
    diff: Any = None


class ValidationResponse(BaseModel):
    """Response schema for the validation verdict."""

    is_valid: bool
    errors: list[ValidationErrorResponse]
    warnings: list[str]
    details: dict[str, Any]


class AnalysisResponse(BaseModel):
    """Response schema for one analyzed document."""

    success: bool
    document_id: str
    doc_type: str
    doc_type_label: str
    classification: dict[str, Any]
    chunks: list[dict[str, Any]]
    fields: dict[str, Any]
    roi_fields: dict[str, Any] | None = None
    extracted: dict[str, Any]
    validation: ValidationResponse
    processing_time_ms: float
    raw_text: str | None = None


class TemplateInfo(BaseModel):
    """ROI template of one document type."""

    name: str
    label: str
    fields: dict[str, dict[str, Any]]


class TemplatesResponse(BaseModel):
    """Response schema listing the ROI templates."""

    templates: list[TemplateInfo]


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    tesseract_available: bool
