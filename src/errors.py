"""Exception hierarchy for the document pipeline.

PipelineError (base)
├── ValidationError        malformed boundaries/ranges, gate violations
├── NotFoundError          unknown intake request, record or correlation id
├── ExternalServiceError   boundary detector or workflow unreachable/malformed
│   └── DispatchError      webhook dispatch exhausted its retries
├── ReconciliationError    transient failure querying the workflow engine
└── PersistenceError       database or file store write failure
"""

from typing import Any


class PipelineError(Exception):
    """Base exception for all pipeline errors.

    Args:
        message: Human-readable error message.
        details: Optional mapping with additional context.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(PipelineError):
    """Raised for invalid input; never retried."""


class NotFoundError(PipelineError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(
            f"{entity} not found: {identifier}",
            {"entity": entity, "id": identifier},
        )


class ExternalServiceError(PipelineError):
    """Raised when an external service is unreachable or answers malformed data."""


class DispatchError(ExternalServiceError):
    """Raised when webhook dispatch fails after all attempts.

    Args:
        attempts: Number of attempts made.
        last_status: Last HTTP status observed, if any response arrived.
        last_error: Description of the last failure.
    """

    def __init__(
        self,
        attempts: int,
        last_status: int | None = None,
        last_error: str | None = None,
        response_preview: str = "",
    ) -> None:
        self.attempts = attempts
        self.last_status = last_status
        self.last_error = last_error
        self.response_preview = response_preview
        super().__init__(
            f"Dispatch failed after {attempts} attempts: {last_error}",
            {"attempts": attempts, "last_status": last_status},
        )


class ReconciliationError(PipelineError):
    """Raised when an execution status query fails transiently."""


class PersistenceError(PipelineError):
    """Raised when a storage or database write fails."""
