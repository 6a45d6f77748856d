"""Domain types for intake requests, document records and their event log."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class SplitMode(StrEnum):
    """How first-page indices are obtained for an intake request."""

    AUTO = "auto"
    MANUAL = "manual"


class IntakeStatus(StrEnum):
    """Lifecycle of an intake request."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RecordStatus(StrEnum):
    """Lifecycle of a document record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


class ConfidenceLevel(StrEnum):
    """Aggregate confidence classification of a record."""

    EMPTY = "empty"
    NEEDS_REVISION = "needs_revision"
    TRUSTED = "trusted"
    VERIFIED = "verified"


class FieldType(StrEnum):
    """Declared value type of a catalog field."""

    TEXT = "text"
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    DATE = "date"


class PipelineStep(StrEnum):
    """Fixed set of steps that may appear in a record's event log."""

    SPLITTER_FRAGMENT = "splitter-fragment"
    AUTOMATION_WEBHOOK = "automation-webhook"
    EXTRACTION_CALLBACK = "extraction-callback"
    EXECUTION_CHECK = "execution-check"
    CANCEL = "cancel"
    RETRY = "retry"
    FIELD_EDIT = "field-edit"
    VERIFICATION = "verification"


class EventStatus(StrEnum):
    """Outcome of a logged pipeline step."""

    SUCCESS = "success"
    ERROR = "error"


TERMINAL_INTAKE_STATUSES = frozenset({IntakeStatus.COMPLETED, IntakeStatus.FAILED})

# Allowed record transitions; every status write is guarded by these.
RECORD_TRANSITIONS: dict[RecordStatus, frozenset[RecordStatus]] = {
    RecordStatus.PENDING: frozenset({RecordStatus.PROCESSING, RecordStatus.FAILED}),
    RecordStatus.PROCESSING: frozenset(
        {RecordStatus.COMPLETED, RecordStatus.FAILED, RecordStatus.NEEDS_REVIEW}
    ),
    RecordStatus.COMPLETED: frozenset({RecordStatus.PENDING}),
    RecordStatus.FAILED: frozenset({RecordStatus.PENDING}),
    RecordStatus.NEEDS_REVIEW: frozenset({RecordStatus.PENDING}),
}


def sources_for(target: RecordStatus) -> frozenset[RecordStatus]:
    """Return the statuses from which ``target`` may be entered."""
    return frozenset(
        source for source, targets in RECORD_TRANSITIONS.items() if target in targets
    )


@dataclass
class FieldValue:
    """One extracted field of a record's ``analyzeResult``."""

    raw_value: Any
    normalized_value: Any
    confidence_score: float
    manually_edited: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "rawValue": self.raw_value,
            "normalizedValue": self.normalized_value,
            "confidenceScore": self.confidence_score,
            "manuallyEdited": self.manually_edited,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FieldValue":
        return cls(
            raw_value=data.get("rawValue"),
            normalized_value=data.get("normalizedValue"),
            confidence_score=float(data.get("confidenceScore") or 0.0),
            manually_edited=bool(data.get("manuallyEdited", False)),
        )


@dataclass(frozen=True)
class FieldCatalogEntry:
    """Static configuration for one extractable field key."""

    key: str
    label: str
    order: int = 0
    required: bool = False
    value_type: FieldType = FieldType.TEXT


@dataclass
class PipelineEvent:
    """An entry of the append-only record log."""

    step: PipelineStep
    status: EventStatus
    at: datetime = field(default_factory=utcnow)
    details: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, step: PipelineStep, details: str, **data: Any) -> "PipelineEvent":
        return cls(step=step, status=EventStatus.SUCCESS, details=details, data=data)

    @classmethod
    def error(cls, step: PipelineStep, details: str, **data: Any) -> "PipelineEvent":
        return cls(step=step, status=EventStatus.ERROR, details=details, data=data)


@dataclass
class IntakeRequest:
    """An uploaded, possibly multi-document file awaiting splitting."""

    id: str
    project_id: str
    source_key: str
    original_name: str
    split_mode: SplitMode
    status: IntakeStatus
    manual_pages: list[int] | None = None
    total_pages: int | None = None
    first_pages: list[int] | None = None
    error: str | None = None
    last_updated_by: str | None = None
    record_ids: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class DocumentRecord:
    """A finalized, individually trackable sub-document."""

    id: str
    project_id: str
    title: str
    namespace: str
    source_key: str
    status: RecordStatus
    confidence: ConfidenceLevel = ConfidenceLevel.EMPTY
    intake_id: str | None = None
    ordinal: int = 1
    page_start: int | None = None
    page_end: int | None = None
    correlation_id: str | None = None
    analyze_result: dict[str, FieldValue] = field(default_factory=dict)
    logs: list[PipelineEvent] = field(default_factory=list)
    not_found_count: int = 0
    verified_by: str | None = None
    verified_at: datetime | None = None
    case: str | None = None
    case_type: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
