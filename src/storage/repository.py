"""Repositories for intake requests and document records.

Every status write is conditional: the UPDATE carries the statuses the
caller expects the row to be in, and a zero row count means another
writer got there first. Log events attached to a guarded write are
inserted in the same transaction, so a lost race leaves no trace.
"""

from collections.abc import Collection, Iterator
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from src.errors import NotFoundError
from src.models.domain import (
    ConfidenceLevel,
    DocumentRecord,
    EventStatus,
    FieldValue,
    IntakeRequest,
    IntakeStatus,
    PipelineEvent,
    PipelineStep,
    RecordStatus,
    SplitMode,
    sources_for,
    utcnow,
)
from src.utils.logger import get_logger

from .database import Database, EventRow, IntakeRow, RecordRow

logger = get_logger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _fields_to_json(fields: dict[str, FieldValue]) -> dict[str, Any]:
    return {key: value.to_dict() for key, value in fields.items()}


def _event_row(record_id: str, event: PipelineEvent) -> EventRow:
    return EventRow(
        record_id=record_id,
        step=event.step.value,
        status=event.status.value,
        at=event.at,
        details=event.details,
        data=event.data,
    )


class IntakeRepository:
    """Persistence for intake requests.

    Args:
        db: Database providing sessions.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _to_domain(row: IntakeRow, record_ids: list[str]) -> IntakeRequest:
        return IntakeRequest(
            id=row.id,
            project_id=row.project_id,
            source_key=row.source_key,
            original_name=row.original_name,
            split_mode=SplitMode(row.split_mode),
            status=IntakeStatus(row.status),
            manual_pages=list(row.manual_pages) if row.manual_pages is not None else None,
            total_pages=row.total_pages,
            first_pages=list(row.first_pages) if row.first_pages is not None else None,
            error=row.error,
            last_updated_by=row.last_updated_by,
            record_ids=record_ids,
            created_at=_aware(row.created_at) or utcnow(),
            updated_at=_aware(row.updated_at) or utcnow(),
        )

    def add(self, intake: IntakeRequest) -> IntakeRequest:
        with self.db.session() as session:
            session.add(
                IntakeRow(
                    id=intake.id,
                    project_id=intake.project_id,
                    source_key=intake.source_key,
                    original_name=intake.original_name,
                    split_mode=intake.split_mode.value,
                    status=intake.status.value,
                    manual_pages=intake.manual_pages,
                    total_pages=intake.total_pages,
                    first_pages=intake.first_pages,
                    last_updated_by=intake.last_updated_by,
                    created_at=intake.created_at,
                    updated_at=intake.updated_at,
                )
            )
        return intake

    def get(self, intake_id: str) -> IntakeRequest:
        """Load an intake request with the ids of its derived records.

        Raises:
            NotFoundError: If no such intake request exists.
        """
        with self.db.session() as session:
            row = session.get(IntakeRow, intake_id)
            if row is None:
                raise NotFoundError("IntakeRequest", intake_id)
            record_ids = list(
                session.scalars(
                    select(RecordRow.id)
                    .where(RecordRow.intake_id == intake_id)
                    .order_by(RecordRow.ordinal)
                )
            )
            return self._to_domain(row, record_ids)

    def transition(
        self,
        intake_id: str,
        expected: Collection[IntakeStatus],
        target: IntakeStatus,
        **changes: Any,
    ) -> bool:
        """Move an intake request to ``target`` if it is in ``expected``.

        Returns:
            True if the row was updated.
        """
        with self.db.session() as session:
            result = session.execute(
                update(IntakeRow)
                .where(
                    IntakeRow.id == intake_id,
                    IntakeRow.status.in_([s.value for s in expected]),
                )
                .values(status=target.value, updated_at=utcnow(), **changes)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1


class RecordRepository:
    """Persistence for document records and their event log.

    Args:
        db: Database providing sessions.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def _to_domain(row: RecordRow, events: list[EventRow]) -> DocumentRecord:
        return DocumentRecord(
            id=row.id,
            project_id=row.project_id,
            title=row.title,
            namespace=row.namespace,
            source_key=row.source_key,
            status=RecordStatus(row.status),
            confidence=ConfidenceLevel(row.confidence),
            intake_id=row.intake_id,
            ordinal=row.ordinal,
            page_start=row.page_start,
            page_end=row.page_end,
            correlation_id=row.correlation_id,
            analyze_result={
                key: FieldValue.from_dict(value)
                for key, value in (row.analyze_result or {}).items()
            },
            logs=[
                PipelineEvent(
                    step=PipelineStep(e.step),
                    status=EventStatus(e.status),
                    at=_aware(e.at) or utcnow(),
                    details=e.details,
                    data=dict(e.data or {}),
                )
                for e in events
            ],
            not_found_count=row.not_found_count,
            verified_by=row.verified_by,
            verified_at=_aware(row.verified_at),
            case=row.case,
            case_type=row.case_type,
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
            created_at=_aware(row.created_at) or utcnow(),
            updated_at=_aware(row.updated_at) or utcnow(),
        )

    def _load(self, session: Session, row: RecordRow) -> DocumentRecord:
        events = list(
            session.scalars(
                select(EventRow).where(EventRow.record_id == row.id).order_by(EventRow.id)
            )
        )
        return self._to_domain(row, events)

    def add(self, record: DocumentRecord) -> DocumentRecord:
        """Insert a record together with its initial log events."""
        with self.db.session() as session:
            session.add(
                RecordRow(
                    id=record.id,
                    intake_id=record.intake_id,
                    project_id=record.project_id,
                    title=record.title,
                    namespace=record.namespace,
                    source_key=record.source_key,
                    status=record.status.value,
                    confidence=record.confidence.value,
                    ordinal=record.ordinal,
                    page_start=record.page_start,
                    page_end=record.page_end,
                    correlation_id=record.correlation_id,
                    analyze_result=_fields_to_json(record.analyze_result),
                    not_found_count=record.not_found_count,
                    verified_by=record.verified_by,
                    verified_at=record.verified_at,
                    case=record.case,
                    case_type=record.case_type,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                    created_at=record.created_at,
                    updated_at=record.updated_at,
                )
            )
            session.flush()
            for event in record.logs:
                session.add(_event_row(record.id, event))
        return record

    def get(self, record_id: str) -> DocumentRecord:
        """Load a record with its full log.

        Raises:
            NotFoundError: If no such record exists.
        """
        with self.db.session() as session:
            row = session.get(RecordRow, record_id)
            if row is None:
                raise NotFoundError("DocumentRecord", record_id)
            return self._load(session, row)

    def get_by_correlation_id(self, correlation_id: str) -> DocumentRecord:
        """Load the record that holds, or last held, ``correlation_id``.

        Cancel and retry clear or replace the id on the record itself, so
        the dispatch events in the log are searched when no record holds
        it any more.

        Raises:
            NotFoundError: If no record was ever dispatched with it.
        """
        with self.db.session() as session:
            row = session.scalars(
                select(RecordRow).where(RecordRow.correlation_id == correlation_id)
            ).first()
            if row is None:
                record_id = session.scalars(
                    select(EventRow.record_id)
                    .where(
                        EventRow.step == PipelineStep.AUTOMATION_WEBHOOK.value,
                        EventRow.data["executionId"].as_string() == correlation_id,
                    )
                    .order_by(EventRow.id.desc())
                ).first()
                row = session.get(RecordRow, record_id) if record_id else None
            if row is None:
                raise NotFoundError("DocumentRecord with correlation id", correlation_id)
            return self._load(session, row)

    def list_in_flight(self, limit: int, after_id: str | None = None) -> list[DocumentRecord]:
        """One page of records in ``processing`` that hold a correlation id.

        Pages are ordered by id; pass the last id of the previous page as
        ``after_id`` to continue. Records settled between pages do not
        shift later pages.
        """
        query = select(RecordRow).where(
            RecordRow.status == RecordStatus.PROCESSING.value,
            RecordRow.correlation_id.is_not(None),
            RecordRow.correlation_id != "",
        )
        if after_id is not None:
            query = query.where(RecordRow.id > after_id)
        with self.db.session() as session:
            rows = session.scalars(query.order_by(RecordRow.id).limit(limit))
            return [self._load(session, row) for row in rows]

    def iter_in_flight(self, batch_size: int) -> Iterator[DocumentRecord]:
        """Yield every in-flight record, loading ``batch_size`` at a time."""
        after_id = None
        while True:
            page = self.list_in_flight(batch_size, after_id=after_id)
            yield from page
            if len(page) < batch_size:
                return
            after_id = page[-1].id

    def list_by_intake(self, intake_id: str) -> list[DocumentRecord]:
        with self.db.session() as session:
            rows = session.scalars(
                select(RecordRow)
                .where(RecordRow.intake_id == intake_id)
                .order_by(RecordRow.ordinal)
            )
            return [self._load(session, row) for row in rows]

    def iter_ids(self, batch_size: int = 500) -> Iterator[str]:
        """Yield every record id in insertion order."""
        offset = 0
        while True:
            with self.db.session() as session:
                ids = list(
                    session.scalars(
                        select(RecordRow.id)
                        .order_by(RecordRow.created_at, RecordRow.id)
                        .offset(offset)
                        .limit(batch_size)
                    )
                )
            if not ids:
                return
            yield from ids
            offset += len(ids)

    def append_event(self, record_id: str, event: PipelineEvent) -> None:
        with self.db.session() as session:
            session.add(_event_row(record_id, event))

    def transition(
        self,
        record_id: str,
        target: RecordStatus,
        event: PipelineEvent | None = None,
        expected: Collection[RecordStatus] | None = None,
        expected_correlation_id: str | None = None,
        fields: dict[str, FieldValue] | None = None,
        **changes: Any,
    ) -> bool:
        """Conditionally move a record to ``target``.

        Args:
            record_id: Record to update.
            target: New status.
            event: Log event appended only if the update applies.
            expected: Statuses the record must be in; defaults to every
                status from which ``target`` may be entered.
            expected_correlation_id: If given, the record must still hold
                this correlation id.
            fields: Replacement ``analyzeResult`` field map.
            **changes: Other columns to set.

        Returns:
            True if the update applied.
        """
        allowed = expected if expected is not None else sources_for(target)
        values: dict[str, Any] = {"status": target.value, "updated_at": utcnow(), **changes}
        if fields is not None:
            values["analyze_result"] = _fields_to_json(fields)

        conditions = [
            RecordRow.id == record_id,
            RecordRow.status.in_([s.value for s in allowed]),
        ]
        if expected_correlation_id is not None:
            conditions.append(RecordRow.correlation_id == expected_correlation_id)

        with self.db.session() as session:
            result = session.execute(
                update(RecordRow)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1
            if applied and event is not None:
                session.add(_event_row(record_id, event))

        if not applied:
            logger.debug(
                "Record %s not moved to %s: status guard %s failed",
                record_id,
                target,
                sorted(allowed),
            )
        return applied

    def replace_fields(
        self,
        record_id: str,
        fields: dict[str, FieldValue],
        expected: Collection[RecordStatus],
        event: PipelineEvent | None = None,
    ) -> bool:
        """Replace the field map if the record is in one of ``expected``."""
        with self.db.session() as session:
            result = session.execute(
                update(RecordRow)
                .where(
                    RecordRow.id == record_id,
                    RecordRow.status.in_([s.value for s in expected]),
                )
                .values(analyze_result=_fields_to_json(fields), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1
            if applied and event is not None:
                session.add(_event_row(record_id, event))
        return applied

    def set_confidence(self, record_id: str, level: ConfidenceLevel) -> bool:
        """Store a computed classification.

        Writes nothing if the stored value already matches, and never
        overwrites ``verified``.
        """
        with self.db.session() as session:
            result = session.execute(
                update(RecordRow)
                .where(
                    RecordRow.id == record_id,
                    RecordRow.confidence != level.value,
                    RecordRow.confidence != ConfidenceLevel.VERIFIED.value,
                )
                .values(confidence=level.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def mark_verified(
        self, record_id: str, actor: str, at: datetime, event: PipelineEvent
    ) -> bool:
        """Set ``verified`` and stamp the verifier unless already verified."""
        with self.db.session() as session:
            result = session.execute(
                update(RecordRow)
                .where(
                    RecordRow.id == record_id,
                    RecordRow.confidence != ConfidenceLevel.VERIFIED.value,
                )
                .values(
                    confidence=ConfidenceLevel.VERIFIED.value,
                    verified_by=actor,
                    verified_at=at,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1
            if applied:
                session.add(_event_row(record_id, event))
        return applied

    def record_not_found(self, record_id: str, correlation_id: str) -> int | None:
        """Increment the consecutive not-found counter of an in-flight record.

        Returns:
            The new count, or None if the record is no longer in flight
            with this correlation id.
        """
        with self.db.session() as session:
            result = session.execute(
                update(RecordRow)
                .where(
                    RecordRow.id == record_id,
                    RecordRow.status == RecordStatus.PROCESSING.value,
                    RecordRow.correlation_id == correlation_id,
                )
                .values(not_found_count=RecordRow.not_found_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return session.scalar(
                select(RecordRow.not_found_count).where(RecordRow.id == record_id)
            )

    def reset_not_found(self, record_id: str) -> None:
        with self.db.session() as session:
            session.execute(
                update(RecordRow)
                .where(RecordRow.id == record_id, RecordRow.not_found_count != 0)
                .values(not_found_count=0)
                .execution_options(synchronize_session=False)
            )
