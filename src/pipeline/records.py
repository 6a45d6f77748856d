"""Per-record pipeline: dispatch, completion, cancel, retry and verification.

Each document record runs its own small state machine, independent of
its siblings and of the intake request that produced it. All writes go
through conditional repository updates, so the extraction callback, the
execution reconciler and manual operations can race without one
overwriting another.
"""

from pathlib import Path
from typing import Any

from src.confidence.engine import can_verify, classify, unsatisfied_required
from src.dispatch.webhook import WebhookDispatcher, build_dispatch_event
from src.errors import DispatchError, ValidationError
from src.extraction.field_catalog import FieldCatalog
from src.models.domain import (
    ConfidenceLevel,
    DocumentRecord,
    PipelineEvent,
    PipelineStep,
    RecordStatus,
    utcnow,
)
from src.storage.file_store import FileStore
from src.storage.repository import RecordRepository
from src.utils.logger import get_logger

logger = get_logger(__name__)

EDITABLE_STATUSES = frozenset({RecordStatus.COMPLETED, RecordStatus.NEEDS_REVIEW})
RETRYABLE_STATUSES = frozenset(
    {RecordStatus.FAILED, RecordStatus.NEEDS_REVIEW, RecordStatus.COMPLETED}
)


class RecordService:
    """Operations on individual document records.

    Args:
        records: Record repository.
        files: Store holding the split-out fragments.
        dispatcher: Webhook dispatcher for the extraction workflow.
        catalog: Field catalog used for ingestion and required keys.
        threshold: Confidence threshold percentage.
        dispatch_enabled: If False, records stay pending after creation.
    """

    def __init__(
        self,
        records: RecordRepository,
        files: FileStore,
        dispatcher: WebhookDispatcher,
        catalog: FieldCatalog,
        threshold: float = 70.0,
        dispatch_enabled: bool = True,
    ) -> None:
        self.records = records
        self.files = files
        self.dispatcher = dispatcher
        self.catalog = catalog
        self.threshold = threshold
        self.dispatch_enabled = dispatch_enabled

    def get(self, record_id: str) -> DocumentRecord:
        return self.records.get(record_id)

    # Dispatch

    def dispatch(self, record_id: str) -> DocumentRecord:
        """Send a pending record to the extraction workflow.

        On success the record moves to ``processing`` with the returned
        correlation id. When every attempt fails the record moves to
        ``failed`` with an error event; the failure is not raised, since
        the record stays addressable and retriable.

        Raises:
            ValidationError: If the record is not pending.
        """
        record = self.records.get(record_id)
        if record.status != RecordStatus.PENDING:
            raise ValidationError(
                f"Only pending records can be dispatched, record is {record.status}",
                {"record_id": record_id},
            )
        if not self.dispatch_enabled:
            logger.info("Dispatch disabled, record %s stays pending", record_id)
            return record

        event = build_dispatch_event(
            record,
            file_url=self.files.url_for(record.source_key),
            filename=Path(record.source_key).name,
            filesize=self.files.size(record.source_key),
        )
        max_retries = self.dispatcher.config.max_retries
        try:
            result = self.dispatcher.dispatch(event)
        except DispatchError as exc:
            status_note = f"HTTP {exc.last_status}" if exc.last_status else "no response"
            self.records.transition(
                record_id,
                RecordStatus.FAILED,
                expected={RecordStatus.PENDING},
                event=PipelineEvent.error(
                    PipelineStep.AUTOMATION_WEBHOOK,
                    f"Dispatch failed after {exc.attempts}/{max_retries} attempts "
                    f"({status_note}): {exc.last_error}",
                    attempts=exc.attempts,
                    lastStatus=exc.last_status,
                    responsePreview=exc.response_preview,
                ),
            )
            logger.error("Record %s dispatch failed: %s", record_id, exc.last_error)
            return self.records.get(record_id)

        applied = self.records.transition(
            record_id,
            RecordStatus.PROCESSING,
            expected={RecordStatus.PENDING},
            event=PipelineEvent.success(
                PipelineStep.AUTOMATION_WEBHOOK,
                f"Dispatched on attempt {result.attempt}/{max_retries} "
                f"(HTTP {result.status_code})",
                executionId=result.correlation_id,
                executionUrl=result.execution_url,
                attempt=result.attempt,
                responsePreview=result.response_preview,
            ),
            correlation_id=result.correlation_id,
            started_at=utcnow(),
            not_found_count=0,
        )
        if applied:
            logger.info(
                "Record %s dispatched, execution %s", record_id, result.correlation_id
            )
        else:
            logger.warning(
                "Record %s changed during dispatch, execution %s not recorded",
                record_id,
                result.correlation_id,
            )
        return self.records.get(record_id)

    def retry(self, record_id: str, actor: str | None = None) -> DocumentRecord:
        """Reset a record to pending and dispatch it again.

        Extracted fields, confidence and verification are cleared, since a
        new extraction run will replace them.

        Raises:
            ValidationError: If the record is still processing.
        """
        record = self.records.get(record_id)
        if record.status == RecordStatus.PROCESSING:
            raise ValidationError(
                "Record is still processing; cancel it before retrying",
                {"record_id": record_id},
            )
        if record.status in RETRYABLE_STATUSES:
            applied = self.records.transition(
                record_id,
                RecordStatus.PENDING,
                expected={record.status},
                event=PipelineEvent.success(
                    PipelineStep.RETRY,
                    f"Retry requested by {actor or 'system'} from {record.status}",
                    previousStatus=record.status.value,
                ),
                fields={},
                confidence=ConfidenceLevel.EMPTY.value,
                verified_by=None,
                verified_at=None,
                completed_at=None,
                not_found_count=0,
            )
            if not applied:
                raise ValidationError(
                    "Record changed while retrying, try again", {"record_id": record_id}
                )
        logger.info("Retrying record %s", record_id)
        return self.dispatch(record_id)

    def cancel(self, record_id: str, actor: str | None = None) -> DocumentRecord:
        """Stop tracking an in-flight extraction.

        Moves a processing record to ``failed`` and clears its correlation
        id; the external execution keeps running and is ignored from now
        on. Cancelling an already failed record is a no-op.

        Raises:
            ValidationError: If the record is neither processing nor failed.
        """
        record = self.records.get(record_id)
        if record.status == RecordStatus.FAILED:
            return record
        if record.status != RecordStatus.PROCESSING:
            raise ValidationError(
                f"Only processing records can be cancelled, record is {record.status}",
                {"record_id": record_id},
            )

        applied = self.records.transition(
            record_id,
            RecordStatus.FAILED,
            expected={RecordStatus.PROCESSING},
            event=PipelineEvent.success(
                PipelineStep.CANCEL,
                f"Processing cancelled by {actor or 'system'}",
                executionId=record.correlation_id,
            ),
            correlation_id=None,
        )
        current = self.records.get(record_id)
        if not applied and current.status != RecordStatus.FAILED:
            raise ValidationError(
                f"Record moved to {current.status} before it could be cancelled",
                {"record_id": record_id},
            )
        logger.info("Record %s cancelled", record_id)
        return current

    # Completion

    def complete_execution(
        self,
        record_id: str,
        correlation_id: str,
        analyze_result: dict[str, Any] | None,
        step: PipelineStep,
    ) -> bool:
        """Store extraction results if the record is still in flight.

        Returns:
            True if the record moved to ``completed``.
        """
        fields = self.catalog.ingest(analyze_result)
        applied = self.records.transition(
            record_id,
            RecordStatus.COMPLETED,
            expected={RecordStatus.PROCESSING},
            expected_correlation_id=correlation_id,
            event=PipelineEvent.success(
                step,
                f"Extraction completed with {len(fields)} fields",
                executionId=correlation_id,
            ),
            fields=fields,
            completed_at=utcnow(),
            not_found_count=0,
        )
        if applied:
            logger.info("Record %s completed with %d fields", record_id, len(fields))
            self.recompute_confidence(record_id)
        return applied

    def fail_execution(
        self,
        record_id: str,
        correlation_id: str,
        message: str | None,
        step: PipelineStep,
        stack: str | None = None,
        target: RecordStatus = RecordStatus.FAILED,
    ) -> bool:
        """Record a failed extraction if the record is still in flight.

        Args:
            target: ``failed``, or ``needs_review`` when the failure is
                suspected rather than reported.

        Returns:
            True if the record moved to ``target``.
        """
        data: dict[str, Any] = {"executionId": correlation_id}
        if stack:
            data["errorStack"] = stack
        applied = self.records.transition(
            record_id,
            target,
            expected={RecordStatus.PROCESSING},
            expected_correlation_id=correlation_id,
            event=PipelineEvent.error(step, message or "Extraction failed", **data),
            completed_at=utcnow(),
        )
        if applied:
            logger.warning("Record %s moved to %s: %s", record_id, target, message)
        return applied

    def handle_callback(
        self,
        correlation_id: str,
        status: str,
        analyze_result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> tuple[DocumentRecord, bool]:
        """Apply an extraction completion callback.

        The record is looked up by correlation id. Callbacks for records
        that are no longer processing (cancelled, or already settled by the
        reconciler) and callbacks for an execution superseded by a retry
        are ignored.

        Args:
            correlation_id: Execution id captured at dispatch.
            status: ``completed`` or ``failed``.
            analyze_result: Extraction payload on completion.
            error_message: Failure description.

        Returns:
            The current record and whether the callback was applied.

        Raises:
            NotFoundError: If no record was ever dispatched with the
                correlation id.
            ValidationError: If the status is not recognized.
        """
        if status not in (RecordStatus.COMPLETED, RecordStatus.FAILED):
            raise ValidationError(
                "Callback status must be 'completed' or 'failed'", {"status": status}
            )
        record = self.records.get_by_correlation_id(correlation_id)
        if record.status != RecordStatus.PROCESSING or record.correlation_id != correlation_id:
            logger.warning(
                "Ignoring callback for record %s in status %s", record.id, record.status
            )
            return record, False

        if status == RecordStatus.COMPLETED:
            applied = self.complete_execution(
                record.id, correlation_id, analyze_result, PipelineStep.EXTRACTION_CALLBACK
            )
        else:
            applied = self.fail_execution(
                record.id, correlation_id, error_message, PipelineStep.EXTRACTION_CALLBACK
            )
        if not applied:
            logger.warning("Callback for record %s lost the race, ignored", record.id)
        return self.records.get(record.id), applied

    # Fields and confidence

    def edit_field(
        self, record_id: str, key: str, value: Any, actor: str | None = None
    ) -> DocumentRecord:
        """Manually set one field and recompute confidence.

        Raises:
            ValidationError: If the key is not in the catalog or the record
                has no settled extraction result.
        """
        if not self.catalog.accepts(key):
            raise ValidationError(f"Unknown field key: {key}", {"key": key})
        record = self.records.get(record_id)
        if record.status not in EDITABLE_STATUSES:
            raise ValidationError(
                f"Fields can only be edited on completed records, record is {record.status}",
                {"record_id": record_id},
            )

        previous = record.analyze_result.get(key)
        fields = dict(record.analyze_result)
        fields[key] = self.catalog.build_field(key, value, 1.0, manually_edited=True)
        applied = self.records.replace_fields(
            record_id,
            fields,
            expected=EDITABLE_STATUSES,
            event=PipelineEvent.success(
                PipelineStep.FIELD_EDIT,
                f"Field {key} edited by {actor or 'system'}",
                field=key,
                previousValue=previous.raw_value if previous else None,
            ),
        )
        if not applied:
            raise ValidationError(
                "Record changed while editing, try again", {"record_id": record_id}
            )
        self.recompute_confidence(record_id)
        return self.records.get(record_id)

    def recompute_confidence(self, record_id: str) -> ConfidenceLevel:
        """Reclassify a record, writing only when the value changes."""
        record = self.records.get(record_id)
        level = classify(
            record.analyze_result,
            self.threshold,
            self.catalog.required_keys,
            record.confidence,
        )
        if level != record.confidence and self.records.set_confidence(record_id, level):
            logger.info(
                "Record %s confidence %s -> %s", record_id, record.confidence, level
            )
        return level

    def recompute_all(self) -> dict[str, int]:
        """Reclassify every record, e.g. after a threshold or catalog change."""
        checked = changed = 0
        for record_id in self.records.iter_ids():
            record = self.records.get(record_id)
            checked += 1
            if self.recompute_confidence(record_id) != record.confidence:
                changed += 1
        logger.info("Recomputed confidence for %d records, %d changed", checked, changed)
        return {"checked": checked, "changed": changed}

    def verify(self, record_id: str, actor: str) -> DocumentRecord:
        """Mark a record as verified by ``actor``.

        Verifying an already verified record returns it unchanged, keeping
        the original verifier and timestamp.

        Raises:
            ValidationError: If the record is not trusted.
        """
        record = self.records.get(record_id)
        if record.confidence == ConfidenceLevel.VERIFIED:
            return record

        required = self.catalog.required_keys
        if not can_verify(record.analyze_result, self.threshold, required, record.confidence):
            raise ValidationError(
                "Record cannot be verified until all required fields are trusted",
                {
                    "record_id": record_id,
                    "confidence": classify(
                        record.analyze_result, self.threshold, required, record.confidence
                    ).value,
                    "unsatisfied": unsatisfied_required(
                        record.analyze_result, self.threshold, required
                    ),
                },
            )

        if self.records.mark_verified(
            record_id,
            actor,
            utcnow(),
            PipelineEvent.success(PipelineStep.VERIFICATION, f"Verified by {actor}"),
        ):
            logger.info("Record %s verified by %s", record_id, actor)
        return self.records.get(record_id)
