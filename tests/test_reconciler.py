"""Tests for the execution reconciler and its background task."""

import time
from collections.abc import Callable
from datetime import timedelta

import httpx
import pytest

from src.models.domain import DocumentRecord, PipelineStep, RecordStatus, utcnow
from src.pipeline.records import RecordService
from src.reconcile.engine_client import WorkflowEngineClient
from src.reconcile.reconciler import ExecutionReconciler, ReconcileAction, ReconcilerTask
from src.storage.repository import RecordRepository
from src.utils.config import ReconcilerConfig

COMPLETED_EXECUTION = {
    "status": "success",
    "finished": True,
    "analyzeResult": {
        "invoice_number": {"value": "INV-1", "confidence": 0.9},
        "total_amount": {"value": "10.00", "confidence": 0.9},
    },
}
FAILED_EXECUTION = {
    "status": "error",
    "data": {"resultData": {"error": {"message": "Node crashed", "stack": "at node"}}},
}


@pytest.fixture
def executions() -> dict[str, httpx.Response]:
    """Canned engine answers keyed by execution id; unknown ids are running."""
    return {}


@pytest.fixture
def reconciler_factory(
    record_repo: RecordRepository,
    record_service_factory: Callable[..., RecordService],
    executions: dict[str, httpx.Response],
) -> Callable[..., ExecutionReconciler]:
    """Return a builder for reconcilers backed by the canned engine."""

    def handler(request: httpx.Request) -> httpx.Response:
        execution_id = request.url.path.rsplit("/", 1)[-1]
        return executions.get(execution_id, httpx.Response(200, json={"status": "running"}))

    def _make(**overrides: object) -> ExecutionReconciler:
        config = ReconcilerConfig(engine_url="http://n8n.test", api_key="k", **overrides)
        client = WorkflowEngineClient(
            config, client=httpx.Client(transport=httpx.MockTransport(handler))
        )
        return ExecutionReconciler(record_repo, record_service_factory(), client, config)

    return _make


def _in_flight(
    make_record: Callable[..., DocumentRecord], execution_id: str, started_at=None
) -> DocumentRecord:
    return make_record(
        status=RecordStatus.PROCESSING,
        correlation_id=execution_id,
        started_at=started_at or utcnow(),
    )


class TestExecutionReconciler:
    """Tests for ExecutionReconciler.run_once."""

    def test_completed_execution_settles_record(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        record = _in_flight(make_record, "e1")
        executions["e1"] = httpx.Response(200, json=COMPLETED_EXECUTION)

        summary = reconciler_factory().run_once()

        loaded = record_repo.get(record.id)
        assert summary.actions == {record.id: ReconcileAction.COMPLETED}
        assert summary.updated == 1
        assert loaded.status == RecordStatus.COMPLETED
        assert loaded.analyze_result["total_amount"].normalized_value == 10.0
        assert loaded.logs[-1].step == PipelineStep.EXECUTION_CHECK

    def test_failed_execution_records_stack(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        record = _in_flight(make_record, "e2")
        executions["e2"] = httpx.Response(200, json=FAILED_EXECUTION)

        reconciler_factory().run_once()

        loaded = record_repo.get(record.id)
        assert loaded.status == RecordStatus.FAILED
        assert loaded.logs[-1].details == "Node crashed"
        assert loaded.logs[-1].data["errorStack"] == "at node"

    def test_running_execution_untouched(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
    ) -> None:
        record = _in_flight(make_record, "e3")

        summary = reconciler_factory().run_once()

        assert summary.actions[record.id] == ReconcileAction.NO_ACTION
        assert summary.updated == 0
        assert record_repo.get(record.id).status == RecordStatus.PROCESSING

    def test_not_found_limit_moves_to_needs_review(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        record = _in_flight(make_record, "gone")
        executions["gone"] = httpx.Response(404)
        reconciler = reconciler_factory(max_not_found=2)

        first = reconciler.run_once()
        assert first.actions[record.id] == ReconcileAction.NO_ACTION
        assert record_repo.get(record.id).not_found_count == 1

        second = reconciler.run_once()
        assert second.actions[record.id] == ReconcileAction.NEEDS_REVIEW
        assert record_repo.get(record.id).status == RecordStatus.NEEDS_REVIEW

    def test_not_found_without_limit_keeps_polling(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        record = _in_flight(make_record, "gone")
        executions["gone"] = httpx.Response(404)
        reconciler = reconciler_factory()
        for _ in range(3):
            reconciler.run_once()
        loaded = record_repo.get(record.id)
        assert loaded.status == RecordStatus.PROCESSING
        assert loaded.not_found_count == 3

    def test_not_found_counter_resets_when_seen(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        record = _in_flight(make_record, "late")
        executions["late"] = httpx.Response(404)
        reconciler = reconciler_factory(max_not_found=3)
        reconciler.run_once()

        del executions["late"]
        reconciler.run_once()

        assert record_repo.get(record.id).not_found_count == 0

    def test_stale_record_times_out(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
    ) -> None:
        record = _in_flight(make_record, "slow", started_at=utcnow() - timedelta(hours=2))

        summary = reconciler_factory(stale_after_minutes=30).run_once()

        loaded = record_repo.get(record.id)
        assert summary.actions[record.id] == ReconcileAction.TIMED_OUT
        assert loaded.status == RecordStatus.FAILED
        assert "30 minutes" in loaded.logs[-1].details

    def test_query_error_counted_and_record_kept(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        broken = _in_flight(make_record, "broken")
        ok = _in_flight(make_record, "ok")
        executions["broken"] = httpx.Response(500)
        executions["ok"] = httpx.Response(200, json=COMPLETED_EXECUTION)

        summary = reconciler_factory().run_once()

        assert summary.errors == 1
        assert summary.actions[broken.id] == ReconcileAction.ERROR
        assert summary.actions[ok.id] == ReconcileAction.COMPLETED
        assert record_repo.get(broken.id).status == RecordStatus.PROCESSING

    def test_every_in_flight_record_checked_beyond_batch_size(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        old = utcnow() - timedelta(hours=1)
        running = [_in_flight(make_record, f"slow-{i}", started_at=old) for i in range(3)]
        newest = _in_flight(make_record, "fresh")
        executions["fresh"] = httpx.Response(200, json=COMPLETED_EXECUTION)

        summary = reconciler_factory(batch_limit=2).run_once()

        assert summary.checked == 4
        assert summary.actions[newest.id] == ReconcileAction.COMPLETED
        assert all(summary.actions[r.id] == ReconcileAction.NO_ACTION for r in running)
        assert record_repo.get(newest.id).status == RecordStatus.COMPLETED

    def test_malformed_engine_body_does_not_stop_run(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        odd = _in_flight(make_record, "odd")
        ok = _in_flight(make_record, "ok")
        executions["odd"] = httpx.Response(200, json={"status": "error", "data": "oops"})
        executions["ok"] = httpx.Response(200, json=COMPLETED_EXECUTION)

        summary = reconciler_factory().run_once()

        assert summary.errors == 0
        assert summary.actions[odd.id] == ReconcileAction.FAILED
        assert record_repo.get(odd.id).logs[-1].details == "Execution error"
        assert record_repo.get(ok.id).status == RecordStatus.COMPLETED

    def test_cancelled_record_not_reconciled(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        record_service_factory: Callable[..., RecordService],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        record = _in_flight(make_record, "e4")
        executions["e4"] = httpx.Response(200, json=COMPLETED_EXECUTION)
        record_service_factory().cancel(record.id, actor="alice")

        summary = reconciler_factory().run_once()

        loaded = record_repo.get(record.id)
        assert summary.checked == 0
        assert loaded.status == RecordStatus.FAILED
        assert loaded.analyze_result == {}

    def test_completion_lost_to_concurrent_cancel(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        record_service_factory: Callable[..., RecordService],
        make_record: Callable[..., DocumentRecord],
        record_repo: RecordRepository,
        executions: dict[str, httpx.Response],
    ) -> None:
        record = _in_flight(make_record, "e5")
        executions["e5"] = httpx.Response(200, json=COMPLETED_EXECUTION)
        reconciler = reconciler_factory()
        snapshot = record_repo.get(record.id)
        record_service_factory().cancel(record.id)

        action = reconciler._reconcile(snapshot)

        assert action == ReconcileAction.NO_ACTION
        assert record_repo.get(record.id).status == RecordStatus.FAILED

    def test_overlapping_run_skipped(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
    ) -> None:
        _in_flight(make_record, "e6")
        reconciler = reconciler_factory()

        with reconciler._run_guard:
            assert reconciler.running
            summary = reconciler.run_once()

        assert summary.skipped
        assert summary.checked == 0
        assert not reconciler.running

    def test_summary_to_dict(
        self,
        reconciler_factory: Callable[..., ExecutionReconciler],
        make_record: Callable[..., DocumentRecord],
    ) -> None:
        record = _in_flight(make_record, "e7")
        result = reconciler_factory().run_once().to_dict()
        assert result == {
            "checked": 1,
            "updated": 0,
            "errors": 0,
            "skipped": False,
            "actions": {record.id: "no_action"},
        }


class TestReconcilerTask:
    """Tests for the interval runner."""

    def test_runs_until_stopped(
        self, reconciler_factory: Callable[..., ExecutionReconciler]
    ) -> None:
        reconciler = reconciler_factory()
        runs: list[int] = []
        original = reconciler.run_once
        reconciler.run_once = lambda: runs.append(1) or original()

        task = ReconcilerTask(reconciler, interval_s=0.01)
        task.start()
        deadline = time.monotonic() + 2
        while not runs and time.monotonic() < deadline:
            time.sleep(0.01)
        task.stop()

        assert runs
        assert not task.is_alive

    def test_crash_does_not_stop_loop(
        self, reconciler_factory: Callable[..., ExecutionReconciler]
    ) -> None:
        reconciler = reconciler_factory()
        calls: list[int] = []

        def crash() -> None:
            calls.append(1)
            raise RuntimeError("boom")

        reconciler.run_once = crash
        task = ReconcilerTask(reconciler, interval_s=0.01)
        task.start()
        deadline = time.monotonic() + 2
        while len(calls) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        task.stop()

        assert len(calls) >= 2
