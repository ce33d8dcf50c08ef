"""FastAPI application for invoice field extraction.

Provides endpoints to analyze OCR results, to OCR and analyze uploaded page
images, to list ROI templates, and a health check.
"""

import shutil
import time
import uuid
from typing import Annotated

from fastapi import FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from invoice_ocr import __version__
from invoice_ocr.api.schemas import (
    AnalysisResponse,
    AnalyzeRequest,
    HealthResponse,
    TemplateInfo,
    TemplatesResponse,
    ValidationResponse,
)
from invoice_ocr.extraction.document_classifier import DocumentClassifier
from invoice_ocr.ocr.document_processor import DocumentProcessor, load_image
from invoice_ocr.ocr.tesseract_engine import ocr_result_from_dict
from invoice_ocr.pipeline import DocumentAnalysis, DocumentPipeline
from invoice_ocr.utils.config import load_config
from invoice_ocr.utils.logger import get_logger
from invoice_ocr.validation.rules_engine import Account, AccountContext

logger = get_logger(__name__)

app = FastAPI(
    title="Invoice Field Extraction API",
    description="Layout-aware field extraction and validation for scanned invoices",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_ALLOWED_CONTENT_TYPES = {
    "image/png",
    "image/jpeg",
    "image/tiff",
    "image/bmp",
    "application/octet-stream",
}


def _get_processor() -> DocumentProcessor:
    """Build the OCR processor and analysis pipeline from configuration."""
    return DocumentProcessor(load_config())


def _get_pipeline() -> DocumentPipeline:
    return DocumentPipeline(load_config())


def _to_response(
    analysis: DocumentAnalysis, start_time: float, raw_text: str | None = None
) -> AnalysisResponse:
    data = analysis.to_dict()
    doc_type = analysis.classification.doc_type
    return AnalysisResponse(
        success=True,
        document_id=str(uuid.uuid4()),
        doc_type=doc_type,
        doc_type_label=DocumentClassifier.doc_type_label(doc_type),
        classification=data["classification"],
        chunks=data["chunks"],
        fields=data["fields"],
        roi_fields=data["roi_fields"],
        extracted=data["extracted"],
        validation=ValidationResponse(**data["validation"]),
        processing_time_ms=(time.time() - start_time) * 1000,
        raw_text=raw_text,
    )


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Return system health status."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        tesseract_available=shutil.which("tesseract") is not None,
    )


@app.post("/analyze", response_model=AnalysisResponse)
async def analyze_document(request: AnalyzeRequest) -> AnalysisResponse:
    """Analyze an OCR result: chunks, fields, ROI fields and validation.

    Args:
        request: OCR lines in the provider's shape, plus an optional
            account to check the tax ID against.

    Returns:
        The full analysis of the document.
    """
    start_time = time.time()
    try:
        pipeline = _get_pipeline()
        ocr_result = ocr_result_from_dict(
            request.ocr_payload(), pipeline.config.ocr.low_confidence_threshold
        )
        account = request.account.to_context() if request.account else None
        analysis = pipeline.analyze(ocr_result, account=account)
        return _to_response(analysis, start_time)
    except Exception as exc:
        logger.error("Analysis failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/extract", response_model=AnalysisResponse)
async def extract_document(
    file: Annotated[UploadFile, File(...)],
    tax_id: Annotated[str | None, Query()] = None,
    username: Annotated[str, Query()] = "current",
) -> AnalysisResponse:
    """OCR an uploaded page image and analyze it.

    Args:
        file: Uploaded page image (PNG, JPEG, TIFF or BMP).
        tax_id: Tax ID of the active account, for the tax-ID check.
        username: Name of the active account.

    Returns:
        The analysis of the page, with its OCR text.
    """
    start_time = time.time()

    if file.content_type and file.content_type not in _ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type: {file.content_type}",
        )

    content = await file.read()
    try:
        image = load_image(content)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    account = None
    if tax_id:
        active = Account(username=username, tax_id=tax_id)
        account = AccountContext(active=active, known_accounts=[active])

    try:
        page = _get_processor().process_image(image, account=account)
    except Exception as exc:
        logger.error("Extraction failed for %s: %s", file.filename, exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return _to_response(page.analysis, start_time, raw_text=page.ocr_result.text)


@app.get("/templates", response_model=TemplatesResponse)
async def list_templates() -> TemplatesResponse:
    """List the ROI templates per document type."""
    templates = _get_pipeline().roi_extractor.get_all_templates()
    return TemplatesResponse(
        templates=[
            TemplateInfo(
                name=doc_type,
                label=DocumentClassifier.doc_type_label(doc_type),
                fields=fields,
            )
            for doc_type, fields in templates.items()
        ]
    )
