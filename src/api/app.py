"""FastAPI application for the document splitting pipeline.

Provides REST endpoints for uploads, intake and record state, manual
retry/cancel/verify/edit operations, the extraction completion callback
and on-demand reconciler runs.
"""

import functools
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, FastAPI, File, Form, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.errors import (
    ExternalServiceError,
    NotFoundError,
    PersistenceError,
    PipelineError,
    ValidationError,
)
from src.models.domain import SplitMode
from src.pipeline.services import Services, build_services
from src.utils.config import AppConfig, load_config
from src.utils.logger import get_logger

from .schemas import (
    ActorRequest,
    CallbackResponse,
    CatalogEntryResponse,
    CatalogResponse,
    ExtractionCallback,
    FieldEditRequest,
    HealthResponse,
    IntakeResponse,
    ReconcileResponse,
    RecordResponse,
    VerifyRequest,
)

logger = get_logger(__name__)

VERSION = "1.0.0"

_config: AppConfig | None = None


def configure(config: AppConfig) -> None:
    """Use ``config`` instead of the default configuration file."""
    global _config
    _config = config
    _get_services.cache_clear()


@functools.lru_cache(maxsize=1)
def _get_services() -> Services:
    """Build and cache the shared application services.

    Returns:
        Services wired from the configured or default configuration.
    """
    return build_services(_config or load_config())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the background reconciler when it is enabled."""
    services = _get_services()
    task = None
    if services.config.reconciler.enabled:
        task = services.reconciler_task()
        task.start()
    yield
    if task is not None:
        task.stop()


app = FastAPI(
    title="Document Splitter API",
    description="Split multi-document scans, track extraction and gate verification",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_STATUS_CODES: list[tuple[type[PipelineError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (ExternalServiceError, 502),
    (PersistenceError, 500),
]


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map pipeline errors onto HTTP status codes."""
    status_code = next(
        (code for error_type, code in _STATUS_CODES if isinstance(exc, error_type)), 500
    )
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "details": exc.details},
    )


def _parse_pages(pages: str | None) -> list[int] | None:
    if pages is None or not pages.strip():
        return None
    try:
        return [int(p) for p in pages.replace(" ", "").split(",") if p]
    except ValueError as exc:
        raise ValidationError(
            "pages must be a comma-separated list of integers", {"pages": pages}
        ) from exc


@app.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Return system health status."""
    services = _get_services()
    try:
        with services.db.session() as session:
            session.execute(text("SELECT 1"))
        database_ok = True
    except PersistenceError:
        database_ok = False
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=VERSION,
        database_ok=database_ok,
        reconciler_enabled=services.config.reconciler.enabled,
        webhook_enabled=services.config.webhook.enabled,
    )


@app.post("/intakes", response_model=IntakeResponse, status_code=202)
async def create_intake(
    background_tasks: BackgroundTasks,
    file: Annotated[UploadFile, File(...)],
    project_id: Annotated[str, Form()],
    split_mode: Annotated[SplitMode, Form()] = SplitMode.AUTO,
    pages: Annotated[str | None, Form()] = None,
    actor: Annotated[str | None, Form()] = None,
) -> IntakeResponse:
    """Upload a document and queue it for splitting.

    Args:
        file: Uploaded document (PDF, TIFF, PNG or JPEG).
        project_id: Owning project.
        split_mode: ``auto`` to detect boundaries, ``manual`` to use ``pages``.
        pages: Comma-separated first pages for manual mode.
        actor: User performing the upload.

    Returns:
        The pending intake request; processing continues in the background.
    """
    services = _get_services()
    content = await file.read()
    intake = services.intakes.create_intake(
        project_id=project_id,
        filename=file.filename or "document.pdf",
        content=content,
        content_type=file.content_type,
        split_mode=split_mode,
        pages=_parse_pages(pages),
        actor=actor,
    )
    background_tasks.add_task(_process_intake, intake.id, actor)
    return IntakeResponse.from_domain(intake)


def _process_intake(intake_id: str, actor: str | None) -> None:
    try:
        _get_services().intakes.process(intake_id, actor=actor)
    except PipelineError as exc:
        logger.error("Background processing of intake %s failed: %s", intake_id, exc)


@app.get("/intakes/{intake_id}", response_model=IntakeResponse)
def get_intake(intake_id: str) -> IntakeResponse:
    """Return an intake request with its derived record ids."""
    return IntakeResponse.from_domain(_get_services().intakes.get(intake_id))


@app.post("/intakes/{intake_id}/retry", response_model=IntakeResponse)
def retry_intake(intake_id: str, body: ActorRequest | None = None) -> IntakeResponse:
    """Rerun a failed intake request."""
    actor = body.actor if body else None
    return IntakeResponse.from_domain(_get_services().intakes.retry(intake_id, actor=actor))


@app.get("/records/{record_id}", response_model=RecordResponse)
def get_record(record_id: str) -> RecordResponse:
    """Return a document record with its fields and log."""
    return RecordResponse.from_domain(_get_services().records.get(record_id))


@app.post("/records/{record_id}/retry", response_model=RecordResponse)
def retry_record(record_id: str, body: ActorRequest | None = None) -> RecordResponse:
    """Reset a record and dispatch it again."""
    actor = body.actor if body else None
    return RecordResponse.from_domain(_get_services().records.retry(record_id, actor=actor))


@app.post("/records/{record_id}/cancel", response_model=RecordResponse)
def cancel_record(record_id: str, body: ActorRequest | None = None) -> RecordResponse:
    """Stop tracking a record's in-flight extraction."""
    actor = body.actor if body else None
    return RecordResponse.from_domain(_get_services().records.cancel(record_id, actor=actor))


@app.post("/records/{record_id}/verify", response_model=RecordResponse)
def verify_record(record_id: str, body: VerifyRequest) -> RecordResponse:
    """Mark a trusted record as verified."""
    return RecordResponse.from_domain(_get_services().records.verify(record_id, body.actor))


@app.patch("/records/{record_id}/fields/{key}", response_model=RecordResponse)
def edit_field(record_id: str, key: str, body: FieldEditRequest) -> RecordResponse:
    """Manually set one extracted field."""
    record = _get_services().records.edit_field(record_id, key, body.value, actor=body.actor)
    return RecordResponse.from_domain(record)


@app.post("/webhooks/extraction", response_model=CallbackResponse)
def extraction_callback(body: ExtractionCallback) -> CallbackResponse:
    """Receive the extraction workflow's completion callback."""
    record, applied = _get_services().records.handle_callback(
        body.correlationId,
        body.status,
        analyze_result=body.analyzeResult,
        error_message=body.errorMessage,
    )
    return CallbackResponse(record_id=record.id, applied=applied, status=record.status.value)


@app.post("/reconciler/run", response_model=ReconcileResponse)
def run_reconciler() -> ReconcileResponse:
    """Run the execution reconciler once."""
    summary = _get_services().reconciler.run_once()
    return ReconcileResponse(**summary.to_dict())


@app.get("/catalog", response_model=CatalogResponse)
def get_catalog() -> CatalogResponse:
    """List the field catalog and the confidence threshold."""
    services = _get_services()
    return CatalogResponse(
        threshold=services.config.confidence.threshold,
        fields=[CatalogEntryResponse.from_domain(e) for e in services.catalog.entries],
    )
