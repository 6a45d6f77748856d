"""Tests for the workflow engine execution status client."""

import httpx
import pytest

from src.errors import ReconciliationError
from src.reconcile.engine_client import ExecutionState, WorkflowEngineClient, fold_status
from src.utils.config import ReconcilerConfig


def _client(handler, **config) -> WorkflowEngineClient:
    cfg = ReconcilerConfig(engine_url="http://n8n.test/", api_key="key-1", **config)
    return WorkflowEngineClient(
        cfg, client=httpx.Client(transport=httpx.MockTransport(handler))
    )


class TestFoldStatus:
    """Tests for mapping engine execution documents."""

    def test_finished_success_is_completed(self) -> None:
        status = fold_status(
            {"status": "success", "finished": True, "analyzeResult": {"fields": {"a": 1}}}
        )
        assert status.state == ExecutionState.COMPLETED
        assert status.result == {"fields": {"a": 1}}

    def test_result_from_last_node_output(self) -> None:
        execution = {
            "status": "success",
            "finished": True,
            "data": {
                "resultData": {
                    "lastNodeExecuted": "Extract",
                    "runData": {
                        "Extract": [
                            {"data": {"main": [[{"json": {"analyzeResult": {"total": 5}}}]]}}
                        ]
                    },
                }
            },
        }
        assert fold_status(execution).result == {"total": 5}

    @pytest.mark.parametrize("engine_status", ["error", "crashed", "canceled"])
    def test_failed_states(self, engine_status: str) -> None:
        status = fold_status(
            {
                "status": engine_status,
                "data": {"resultData": {"error": {"message": "boom", "stack": "at x"}}},
            }
        )
        assert status.state == ExecutionState.FAILED
        assert status.error_message == "boom"
        assert status.error_stack == "at x"

    @pytest.mark.parametrize(
        "data",
        ["oops", ["x"], {"resultData": "oops"}, {"resultData": {"runData": [], "error": 3}}],
    )
    def test_malformed_data_tolerated(self, data: object) -> None:
        failed = fold_status({"status": "error", "data": data})
        assert failed.state == ExecutionState.FAILED
        assert (failed.error_message, failed.error_stack) == (None, None)

        completed = fold_status({"status": "success", "finished": True, "data": data})
        assert completed.state == ExecutionState.COMPLETED
        assert completed.result is None

    @pytest.mark.parametrize("engine_status", ["running", "waiting", "new", "mystery", None])
    def test_other_states_are_running(self, engine_status: str | None) -> None:
        assert fold_status({"status": engine_status}).state == ExecutionState.RUNNING

    def test_success_not_finished_is_running(self) -> None:
        assert fold_status({"status": "success"}).state == ExecutionState.RUNNING


class TestWorkflowEngineClient:
    """Tests for WorkflowEngineClient.get_execution."""

    def test_request_shape(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"status": "running"})

        _client(handler).get_execution("exec-9")

        request = seen[0]
        assert request.url.path == "/api/v1/executions/exec-9"
        assert request.url.params["includeData"] == "true"
        assert request.headers["X-N8N-API-KEY"] == "key-1"
        assert request.extensions["timeout"]["read"] == 10

    def test_not_found(self) -> None:
        status = _client(lambda r: httpx.Response(404)).get_execution("gone")
        assert status.state == ExecutionState.NOT_FOUND

    def test_timeout_is_running(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        status = _client(handler).get_execution("slow")
        assert status.state == ExecutionState.RUNNING
        assert status.engine_status == "timeout"

    def test_server_error_raises(self) -> None:
        with pytest.raises(ReconciliationError, match="HTTP 500"):
            _client(lambda r: httpx.Response(500)).get_execution("e")

    def test_connection_error_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ReconciliationError, match="unreachable"):
            _client(handler).get_execution("e")

    def test_non_json_raises(self) -> None:
        with pytest.raises(ReconciliationError, match="non-JSON"):
            _client(lambda r: httpx.Response(200, text="oops")).get_execution("e")

    def test_data_envelope_unwrapped(self) -> None:
        body = {"data": {"status": "success", "finished": True, "analyzeResult": {"x": 1}}}
        status = _client(lambda r: httpx.Response(200, json=body)).get_execution("e")
        assert status.state == ExecutionState.COMPLETED
        assert status.result == {"x": 1}

    def test_missing_engine_url_raises(self) -> None:
        with pytest.raises(ReconciliationError, match="not configured"):
            WorkflowEngineClient(ReconcilerConfig()).get_execution("e")
