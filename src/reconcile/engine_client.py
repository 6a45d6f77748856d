"""Execution status queries against the external workflow engine.

Speaks the n8n public API: ``GET /api/v1/executions/{id}`` with the
``X-N8N-API-KEY`` header. Engine states are folded into four outcomes:
running, completed, failed and not found. A timed-out query is reported
as running, so a slow engine never causes a false failure.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from src.errors import ReconciliationError
from src.utils.config import ReconcilerConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)

_FAILED_STATES = frozenset({"error", "crashed", "canceled", "cancelled", "failed"})


class ExecutionState(StrEnum):
    """Folded execution state."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class ExecutionStatus:
    """Result of one execution status query."""

    state: ExecutionState
    engine_status: str | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    error_stack: str | None = None
    stopped_at: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def _mapping(value: Any) -> Mapping[str, Any]:
    """Return ``value`` if it is a mapping, else an empty one."""
    return value if isinstance(value, Mapping) else {}


def _result_data(execution: Mapping[str, Any]) -> Mapping[str, Any]:
    return _mapping(_mapping(execution.get("data")).get("resultData"))


def _last_node_output(execution: Mapping[str, Any]) -> Any:
    """Return the JSON output of the last node that ran, if present."""
    result_data = _result_data(execution)
    last_node = result_data.get("lastNodeExecuted")
    if not isinstance(last_node, str):
        return None
    runs = _mapping(result_data.get("runData")).get(last_node) or []
    try:
        return runs[-1]["data"]["main"][0][0]["json"]
    except (IndexError, KeyError, TypeError):
        return None


def extract_result(execution: Mapping[str, Any]) -> dict[str, Any] | None:
    """Find the extraction payload (``analyzeResult``) of an execution."""
    candidates = [
        execution.get("analyzeResult"),
        _mapping(execution.get("data")).get("analyzeResult"),
    ]
    output = _last_node_output(execution)
    if isinstance(output, Mapping):
        candidates.append(output.get("analyzeResult"))
    for candidate in candidates:
        if isinstance(candidate, Mapping) and candidate:
            return dict(candidate)
    return None


def extract_error(execution: Mapping[str, Any]) -> tuple[str | None, str | None]:
    """Return the error message and stack reported for an execution."""
    error = _result_data(execution).get("error") or execution.get("error")
    if isinstance(error, str):
        return error, None
    if isinstance(error, Mapping):
        message, stack = error.get("message"), error.get("stack")
        return (
            str(message) if message is not None else None,
            str(stack) if stack is not None else None,
        )
    return None, None


def fold_status(execution: Mapping[str, Any]) -> ExecutionStatus:
    """Map an engine execution document onto an :class:`ExecutionStatus`."""
    engine_status = str(execution.get("status") or "").lower()
    finished = bool(execution.get("finished"))
    stopped_at = execution.get("stoppedAt")

    if engine_status == "success" and (finished or stopped_at):
        state = ExecutionState.COMPLETED
    elif engine_status in _FAILED_STATES:
        state = ExecutionState.FAILED
    else:
        state = ExecutionState.RUNNING

    status = ExecutionStatus(
        state=state,
        engine_status=engine_status or None,
        stopped_at=stopped_at,
        raw=dict(execution),
    )
    if state == ExecutionState.COMPLETED:
        status.result = extract_result(execution)
    elif state == ExecutionState.FAILED:
        status.error_message, status.error_stack = extract_error(execution)
    return status


class WorkflowEngineClient:
    """Queries execution status by correlation id.

    Args:
        config: Engine URL, API key and per-call timeout.
        client: Optional preconfigured HTTP client (used by tests).
    """

    def __init__(
        self, config: ReconcilerConfig, client: httpx.Client | None = None
    ) -> None:
        self.config = config
        self._client = client

    def get_execution(self, correlation_id: str) -> ExecutionStatus:
        """Query the engine for one execution.

        Args:
            correlation_id: Execution id captured at dispatch.

        Returns:
            The folded execution status.

        Raises:
            ReconciliationError: If the engine is not configured, unreachable,
                or answers with an unexpected error status or body.
        """
        if not self.config.engine_url:
            raise ReconciliationError("Workflow engine URL is not configured")

        url = f"{self.config.engine_url.rstrip('/')}/api/v1/executions/{correlation_id}"
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["X-N8N-API-KEY"] = self.config.api_key

        client = self._client or httpx.Client()
        try:
            response = client.get(
                url,
                headers=headers,
                params={"includeData": "true"},
                timeout=self.config.query_timeout_s,
            )
        except httpx.TimeoutException:
            logger.warning("Execution %s status query timed out", correlation_id)
            return ExecutionStatus(state=ExecutionState.RUNNING, engine_status="timeout")
        except httpx.HTTPError as exc:
            raise ReconciliationError(
                f"Workflow engine unreachable: {exc}", {"execution_id": correlation_id}
            ) from exc
        finally:
            if self._client is None:
                client.close()

        if response.status_code == 404:
            return ExecutionStatus(state=ExecutionState.NOT_FOUND)
        if response.is_error:
            raise ReconciliationError(
                f"Workflow engine returned HTTP {response.status_code}",
                {"execution_id": correlation_id, "status": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ReconciliationError(
                "Workflow engine returned a non-JSON body",
                {"execution_id": correlation_id},
            ) from exc
        if not isinstance(body, Mapping):
            raise ReconciliationError(
                "Workflow engine returned an unexpected body",
                {"execution_id": correlation_id},
            )

        # Some deployments wrap the execution in a "data" envelope.
        if "status" not in body and isinstance(body.get("data"), Mapping):
            body = body["data"]
        return fold_status(body)
