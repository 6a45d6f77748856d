"""Adapter for the external AI boundary detection service.

The service receives a document (by URL or as an uploaded file) and
answers with the 1-based pages on which each logical sub-document starts,
either as a bare JSON array or under a ``pages`` key.
"""

import json
from typing import Any

import httpx

from src.errors import ExternalServiceError
from src.utils.config import DetectorConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)


def parse_pages(payload: Any) -> list[int]:
    """Parse a detector response body into sorted, unique first pages.

    Args:
        payload: Decoded JSON body.

    Returns:
        Strictly increasing list of positive page numbers.

    Raises:
        ExternalServiceError: If the payload has an unexpected shape, holds
            non-integer entries, or yields no pages.
    """
    if isinstance(payload, dict):
        payload = payload.get("pages")
    if not isinstance(payload, list):
        raise ExternalServiceError(
            "Boundary detector response has no page array",
            {"response": str(payload)[:200]},
        )

    pages: set[int] = set()
    for item in payload:
        if isinstance(item, dict):
            item = item.get("page")
        if isinstance(item, bool):
            raise ExternalServiceError("Boundary detector returned a non-integer page")
        if isinstance(item, str) and item.strip().isdigit():
            item = int(item.strip())
        if isinstance(item, float) and item.is_integer():
            item = int(item)
        if not isinstance(item, int):
            raise ExternalServiceError(
                "Boundary detector returned a non-integer page", {"value": repr(item)}
            )
        if item > 0:
            pages.add(item)

    if not pages:
        raise ExternalServiceError("Boundary detector returned no pages")
    return sorted(pages)


class BoundaryDetector:
    """Calls the boundary detection service once, without retrying.

    Args:
        config: Detector endpoint settings.
        client: Optional preconfigured HTTP client (used by tests).
    """

    def __init__(
        self, config: DetectorConfig, client: httpx.Client | None = None
    ) -> None:
        self.config = config
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if self.config.bearer_token:
            headers["Authorization"] = f"Bearer {self.config.bearer_token}"
        return headers

    def detect(self, document: bytes | str, filename: str = "document.pdf") -> list[int]:
        """Detect the first page of every sub-document.

        Args:
            document: Raw PDF bytes, or a URL the service can fetch.
            filename: Name sent along with uploaded bytes.

        Returns:
            Sorted, de-duplicated first-page indices.

        Raises:
            ExternalServiceError: If the service is not configured, is
                unreachable, answers with an error status, or answers with a
                malformed body.
        """
        if not self.config.url:
            raise ExternalServiceError("Boundary detector URL is not configured")

        request_kwargs: dict[str, Any]
        if isinstance(document, str):
            request_kwargs = {"json": {"url": document}}
        else:
            request_kwargs = {"files": {"file": (filename, document, "application/pdf")}}

        client = self._client or httpx.Client(timeout=self.config.timeout_s)
        try:
            response = client.post(
                self.config.url, headers=self._headers(), **request_kwargs
            )
        except httpx.HTTPError as exc:
            raise ExternalServiceError(
                f"Boundary detector unreachable: {exc}", {"url": self.config.url}
            ) from exc
        finally:
            if self._client is None:
                client.close()

        if response.is_error:
            raise ExternalServiceError(
                f"Boundary detector returned HTTP {response.status_code}",
                {"status": response.status_code, "body": response.text[:200]},
            )

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ExternalServiceError(
                "Boundary detector returned a non-JSON body",
                {"body": response.text[:200]},
            ) from exc

        pages = parse_pages(payload)
        logger.info("Boundary detector found %d sub-documents: %s", len(pages), pages)
        return pages
