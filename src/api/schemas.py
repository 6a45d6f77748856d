"""Pydantic request/response schemas for the FastAPI endpoints."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from src.models.domain import DocumentRecord, FieldCatalogEntry, IntakeRequest


class IntakeResponse(BaseModel):
    """Response schema for an intake request."""

    id: str
    project_id: str
    original_name: str
    split_mode: str
    status: str
    manual_pages: list[int] | None = None
    total_pages: int | None = None
    first_pages: list[int] | None = None
    error: str | None = None
    last_updated_by: str | None = None
    record_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, intake: IntakeRequest) -> "IntakeResponse":
        return cls(
            id=intake.id,
            project_id=intake.project_id,
            original_name=intake.original_name,
            split_mode=intake.split_mode.value,
            status=intake.status.value,
            manual_pages=intake.manual_pages,
            total_pages=intake.total_pages,
            first_pages=intake.first_pages,
            error=intake.error,
            last_updated_by=intake.last_updated_by,
            record_ids=intake.record_ids,
            created_at=intake.created_at,
            updated_at=intake.updated_at,
        )


class FieldValueResponse(BaseModel):
    """Response schema for a single extracted field."""

    rawValue: Any = None
    normalizedValue: Any = None
    confidenceScore: float
    manuallyEdited: bool = False


class EventResponse(BaseModel):
    """Response schema for a pipeline log entry."""

    step: str
    status: str
    at: datetime
    details: str
    data: dict[str, Any] = Field(default_factory=dict)


class RecordResponse(BaseModel):
    """Response schema for a document record."""

    id: str
    project_id: str
    intake_id: str | None = None
    title: str
    namespace: str
    source_key: str
    status: str
    confidence: str
    ordinal: int
    page_start: int | None = None
    page_end: int | None = None
    correlation_id: str | None = None
    analyzeResult: dict[str, FieldValueResponse] = Field(default_factory=dict)
    logs: list[EventResponse] = Field(default_factory=list)
    verified_by: str | None = None
    verified_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_domain(cls, record: DocumentRecord) -> "RecordResponse":
        return cls(
            id=record.id,
            project_id=record.project_id,
            intake_id=record.intake_id,
            title=record.title,
            namespace=record.namespace,
            source_key=record.source_key,
            status=record.status.value,
            confidence=record.confidence.value,
            ordinal=record.ordinal,
            page_start=record.page_start,
            page_end=record.page_end,
            correlation_id=record.correlation_id,
            analyzeResult={
                key: FieldValueResponse(**value.to_dict())
                for key, value in record.analyze_result.items()
            },
            logs=[
                EventResponse(
                    step=e.step.value,
                    status=e.status.value,
                    at=e.at,
                    details=e.details,
                    data=e.data,
                )
                for e in record.logs
            ],
            verified_by=record.verified_by,
            verified_at=record.verified_at,
            started_at=record.started_at,
            completed_at=record.completed_at,
        )


class ActorRequest(BaseModel):
    """Request body naming the user performing a manual operation."""

    actor: str | None = None


class VerifyRequest(BaseModel):
    """Request body for the verification operation."""

    actor: str = Field(min_length=1)


class FieldEditRequest(BaseModel):
    """Request body for a manual field edit."""

    value: Any
    actor: str | None = None


class ExtractionCallback(BaseModel):
    """Completion callback sent by the extraction workflow."""

    correlationId: str = Field(min_length=1)
    status: Literal["completed", "failed"]
    analyzeResult: dict[str, Any] | None = None
    errorMessage: str | None = None


class CallbackResponse(BaseModel):
    """Response schema for the extraction callback."""

    record_id: str
    applied: bool
    status: str


class ReconcileResponse(BaseModel):
    """Response schema for a reconciler run."""

    checked: int
    updated: int
    errors: int
    skipped: bool
    actions: dict[str, str] = Field(default_factory=dict)


class CatalogEntryResponse(BaseModel):
    """Information about a field catalog entry."""

    key: str
    label: str
    order: int
    required: bool
    type: str

    @classmethod
    def from_domain(cls, entry: FieldCatalogEntry) -> "CatalogEntryResponse":
        return cls(
            key=entry.key,
            label=entry.label,
            order=entry.order,
            required=entry.required,
            type=entry.value_type.value,
        )


class CatalogResponse(BaseModel):
    """Response schema listing the field catalog."""

    threshold: float
    fields: list[CatalogEntryResponse]


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    database_ok: bool
    reconciler_enabled: bool
    webhook_enabled: bool
