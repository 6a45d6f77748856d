"""Execution reconciler: settles records whose completion callback never arrived.

Each run queries the workflow engine for every record in ``processing``
and applies the outcome with a conditional update, so a record that was
cancelled or settled by a callback in the meantime is left untouched.
"""

import threading
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum

from src.errors import PipelineError, ReconciliationError
from src.models.domain import DocumentRecord, PipelineStep, RecordStatus, utcnow
from src.pipeline.records import RecordService
from src.storage.repository import RecordRepository
from src.utils.config import ReconcilerConfig
from src.utils.logger import get_logger

from .engine_client import ExecutionState, WorkflowEngineClient

logger = get_logger(__name__)


class ReconcileAction(StrEnum):
    """What a run did with one record."""

    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"
    TIMED_OUT = "timed_out"
    NO_ACTION = "no_action"
    ERROR = "error"


@dataclass
class RunSummary:
    """Counters and per-record actions of one reconciler run."""

    checked: int = 0
    updated: int = 0
    errors: int = 0
    skipped: bool = False
    actions: dict[str, ReconcileAction] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "errors": self.errors,
            "skipped": self.skipped,
            "actions": {k: v.value for k, v in self.actions.items()},
        }


class ExecutionReconciler:
    """Polls the workflow engine for in-flight records.

    Only one run may be active at a time; an overlapping call returns a
    skipped summary immediately.

    Args:
        records: Record repository.
        record_service: Applies completions and failures.
        client: Workflow engine client.
        config: Batch size, not-found policy and stale timeout.
    """

    def __init__(
        self,
        records: RecordRepository,
        record_service: RecordService,
        client: WorkflowEngineClient,
        config: ReconcilerConfig,
    ) -> None:
        self.records = records
        self.record_service = record_service
        self.client = client
        self.config = config
        self._run_guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._run_guard.locked()

    def run_once(self) -> RunSummary:
        """Check every in-flight record once.

        Returns:
            Summary of the run; ``skipped`` is set if another run was active.
        """
        if not self._run_guard.acquire(blocking=False):
            logger.warning("Reconciler run already in progress, skipping")
            return RunSummary(skipped=True)
        try:
            return self._run()
        finally:
            self._run_guard.release()

    def _run(self) -> RunSummary:
        summary = RunSummary()
        try:
            for record in self.records.iter_in_flight(self.config.batch_limit):
                self._check(record, summary)
        except PipelineError as exc:
            logger.error("Reconciler could not list in-flight records: %s", exc)
            summary.errors += 1

        logger.info(
            "Reconciler run: %d checked, %d updated, %d errors",
            summary.checked,
            summary.updated,
            summary.errors,
        )
        return summary

    def _check(self, record: DocumentRecord, summary: RunSummary) -> None:
        summary.checked += 1
        try:
            action = self._reconcile(record)
        except PipelineError as exc:
            logger.error("Reconciling record %s failed: %s", record.id, exc)
            action = ReconcileAction.ERROR
        summary.actions[record.id] = action
        if action == ReconcileAction.ERROR:
            summary.errors += 1
        elif action != ReconcileAction.NO_ACTION:
            summary.updated += 1

    def _is_stale(self, record: DocumentRecord) -> bool:
        if self.config.stale_after_minutes is None or record.started_at is None:
            return False
        return utcnow() - record.started_at > timedelta(minutes=self.config.stale_after_minutes)

    def _reconcile(self, record: DocumentRecord) -> ReconcileAction:
        correlation_id = record.correlation_id or ""
        try:
            status = self.client.get_execution(correlation_id)
        except ReconciliationError as exc:
            logger.warning("Execution %s status unavailable: %s", correlation_id, exc)
            return ReconcileAction.ERROR

        if status.state == ExecutionState.COMPLETED:
            applied = self.record_service.complete_execution(
                record.id, correlation_id, status.result, PipelineStep.EXECUTION_CHECK
            )
            return ReconcileAction.COMPLETED if applied else ReconcileAction.NO_ACTION

        if status.state == ExecutionState.FAILED:
            message = status.error_message or f"Execution {status.engine_status}"
            applied = self.record_service.fail_execution(
                record.id,
                correlation_id,
                message,
                PipelineStep.EXECUTION_CHECK,
                stack=status.error_stack,
            )
            return ReconcileAction.FAILED if applied else ReconcileAction.NO_ACTION

        if status.state == ExecutionState.NOT_FOUND:
            count = self.records.record_not_found(record.id, correlation_id)
            limit = self.config.max_not_found
            if count is not None and limit is not None and count >= limit:
                applied = self.record_service.fail_execution(
                    record.id,
                    correlation_id,
                    f"Execution not found after {count} checks",
                    PipelineStep.EXECUTION_CHECK,
                    target=RecordStatus.NEEDS_REVIEW,
                )
                if applied:
                    return ReconcileAction.NEEDS_REVIEW
            elif count is not None:
                logger.info("Execution %s not found yet (%d)", correlation_id, count)
        elif record.not_found_count:
            self.records.reset_not_found(record.id)

        if self._is_stale(record):
            applied = self.record_service.fail_execution(
                record.id,
                correlation_id,
                f"Processing exceeded {self.config.stale_after_minutes} minutes",
                PipelineStep.EXECUTION_CHECK,
            )
            if applied:
                return ReconcileAction.TIMED_OUT
        return ReconcileAction.NO_ACTION


class ReconcilerTask:
    """Runs an :class:`ExecutionReconciler` on a fixed interval in a thread.

    Args:
        reconciler: The reconciler to run.
        interval_s: Seconds between runs.
    """

    def __init__(self, reconciler: ExecutionReconciler, interval_s: float) -> None:
        self.reconciler = reconciler
        self.interval_s = interval_s
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="execution-reconciler", daemon=True
        )
        self._thread.start()
        logger.info("Reconciler started (every %.0fs)", self.interval_s)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reconciler stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.reconciler.run_once()
            except Exception:
                logger.exception("Reconciler run crashed")
