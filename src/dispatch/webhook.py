"""Webhook dispatch to the external extraction workflow.

Notifies the workflow that a record is ready for extraction and captures
the execution id (correlation id) it answers with. A dispatch only counts
as successful when a correlation id comes back: without one the record
could never be reconciled. Failed attempts are retried with escalating
timeouts and capped exponential backoff.
"""

import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from src.errors import DispatchError
from src.models.domain import DocumentRecord
from src.utils.config import WebhookConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)

CORRELATION_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("executionId",),
    ("data", "executionId"),
    ("execution", "id"),
)
EXECUTION_URL_PATHS: tuple[tuple[str, ...], ...] = (
    ("executionUrl",),
    ("data", "executionUrl"),
    ("execution", "url"),
)
RESPONSE_PREVIEW_CHARS = 300


def _lookup(payload: Any, paths: tuple[tuple[str, ...], ...]) -> str | None:
    for path in paths:
        node = payload
        for key in path:
            if not isinstance(node, Mapping):
                node = None
                break
            node = node.get(key)
        if node is not None and not isinstance(node, bool) and str(node).strip():
            return str(node).strip()
    return None


def extract_correlation_id(payload: Any) -> str | None:
    """Find the execution id in a workflow response body, if any."""
    return _lookup(payload, CORRELATION_ID_PATHS)


def extract_execution_url(payload: Any) -> str | None:
    """Find the execution URL in a workflow response body, if any."""
    return _lookup(payload, EXECUTION_URL_PATHS)


def build_dispatch_event(
    record: DocumentRecord,
    file_url: str | None,
    filename: str | None = None,
    filesize: int | None = None,
) -> dict[str, Any]:
    """Build the minimal document descriptor sent to the workflow.

    Args:
        record: The record being dispatched.
        file_url: URL from which the workflow can fetch the fragment.
        filename: Storage filename of the fragment.
        filesize: Fragment size in bytes.

    Returns:
        JSON-serializable event body.
    """
    event: dict[str, Any] = {
        "event": "resource.created",
        "resourceId": record.id,
        "namespace": record.namespace,
        "type": "document",
        "fileUrl": file_url,
    }
    if filename is not None:
        event["file"] = {
            "filename": filename,
            "filesize": filesize,
            "mimeType": "application/pdf",
        }
    if record.case:
        event["case"] = record.case
    if record.case_type:
        event["caseType"] = record.case_type
    return event


@dataclass
class DispatchResult:
    """Outcome of a successful dispatch."""

    correlation_id: str
    attempt: int
    status_code: int
    execution_url: str | None = None
    response_preview: str = ""


@dataclass
class _AttemptOutcome:
    status_code: int | None
    correlation_id: str | None
    execution_url: str | None
    response_text: str
    error: str | None

    @property
    def success(self) -> bool:
        return self.error is None and self.correlation_id is not None


class WebhookDispatcher:
    """Sends dispatch events with retry and backoff.

    Performs exactly one outbound call per attempt and mutates no state;
    callers persist the outcome.

    Args:
        config: Target URL, method, token and retry settings.
        client: Optional preconfigured HTTP client (used by tests).
        sleep: Blocking sleep function, injectable for tests.
    """

    def __init__(
        self,
        config: WebhookConfig,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._client = client
        self._sleep = sleep

    def attempt_timeout(self, attempt: int) -> float:
        """Timeout in seconds for a 1-based attempt number."""
        return self.config.base_timeout_s + (attempt - 1) * self.config.timeout_step_s

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds after a failed 1-based attempt."""
        delay_ms = min(
            self.config.backoff_base_ms * 2 ** (attempt - 1), self.config.backoff_cap_ms
        )
        return delay_ms / 1000

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.config.user_agent}
        token = self.config.bearer_token
        if token:
            headers["Authorization"] = token if token.startswith("Bearer ") else f"Bearer {token}"
        headers.update(self.config.extra_headers)
        return headers

    def dispatch(self, event: Mapping[str, Any]) -> DispatchResult:
        """Send an event until a correlation id is returned.

        Args:
            event: Document descriptor built by :func:`build_dispatch_event`.

        Returns:
            The correlation id with the attempt that obtained it.

        Raises:
            DispatchError: If the URL is missing or every attempt failed.
        """
        if not self.config.url:
            raise DispatchError(0, last_error="Webhook URL is not configured")

        max_retries = max(1, self.config.max_retries)
        attempt = 1
        while True:
            outcome = self._send(event, attempt)
            if outcome.success:
                logger.info(
                    "Dispatch succeeded on attempt %d/%d (execution %s)",
                    attempt,
                    max_retries,
                    outcome.correlation_id,
                )
                return DispatchResult(
                    correlation_id=outcome.correlation_id or "",
                    attempt=attempt,
                    status_code=outcome.status_code or 0,
                    execution_url=outcome.execution_url,
                    response_preview=outcome.response_text[:RESPONSE_PREVIEW_CHARS],
                )
            if attempt >= max_retries:
                break

            delay = self.backoff_delay(attempt)
            logger.warning(
                "Dispatch attempt %d/%d failed (%s), retrying in %.1fs",
                attempt,
                max_retries,
                outcome.error,
                delay,
            )
            self._sleep(delay)
            attempt += 1

        logger.error("Dispatch failed after %d attempts: %s", max_retries, outcome.error)
        raise DispatchError(
            attempts=max_retries,
            last_status=outcome.status_code,
            last_error=outcome.error,
            response_preview=outcome.response_text[:RESPONSE_PREVIEW_CHARS],
        )

    def _send(self, event: Mapping[str, Any], attempt: int) -> _AttemptOutcome:
        timeout = self.attempt_timeout(attempt)
        method = self.config.method
        request_kwargs: dict[str, Any] = {"headers": self._headers(), "timeout": timeout}
        if method == "GET":
            request_kwargs["params"] = {
                k: str(v) for k, v in event.items() if isinstance(v, str | int | float)
            }
        else:
            request_kwargs["json"] = dict(event)

        logger.debug("Sending %s dispatch (attempt %d, timeout %.0fs)", method, attempt, timeout)
        client = self._client or httpx.Client()
        try:
            response = client.request(method, self.config.url or "", **request_kwargs)
        except httpx.TimeoutException:
            return _AttemptOutcome(None, None, None, "", f"Timeout after {timeout:.0f}s")
        except httpx.HTTPError as exc:
            return _AttemptOutcome(None, None, None, "", f"{type(exc).__name__}: {exc}")
        finally:
            if self._client is None:
                client.close()

        text = response.text
        if response.is_error:
            return _AttemptOutcome(
                response.status_code, None, None, text, f"HTTP {response.status_code}"
            )

        try:
            body = json.loads(text) if text else None
        except json.JSONDecodeError:
            body = None
        correlation_id = extract_correlation_id(body)
        return _AttemptOutcome(
            status_code=response.status_code,
            correlation_id=correlation_id,
            execution_url=extract_execution_url(body),
            response_text=text,
            error=None if correlation_id else "No executionId in response",
        )
