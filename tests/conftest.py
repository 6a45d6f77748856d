"""Shared test fixtures for the document splitter test suite."""

import io
import uuid
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from pypdf import PdfWriter

from src.dispatch.webhook import WebhookDispatcher
from src.extraction.field_catalog import FieldCatalog
from src.models.domain import (
    DocumentRecord,
    FieldCatalogEntry,
    FieldType,
    PipelineEvent,
    PipelineStep,
    RecordStatus,
)
from src.pipeline.records import RecordService
from src.storage.database import Database
from src.storage.file_store import LocalFileStore
from src.storage.repository import IntakeRepository, RecordRepository
from src.utils.config import WebhookConfig


def build_pdf(page_count: int) -> bytes:
    """Create a PDF of blank pages; page ``i`` (1-based) is ``100 + i`` points wide."""
    writer = PdfWriter()
    for i in range(1, page_count + 1):
        writer.add_blank_page(width=100 + i, height=200)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


@pytest.fixture
def pdf_factory() -> Callable[[int], bytes]:
    """Return a builder for synthetic multi-page PDFs."""
    return build_pdf


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"


@pytest.fixture
def db() -> Database:
    """Create an in-memory database with the full schema."""
    database = Database("sqlite://")
    database.create_all()
    return database


@pytest.fixture
def intake_repo(db: Database) -> IntakeRepository:
    return IntakeRepository(db)


@pytest.fixture
def record_repo(db: Database) -> RecordRepository:
    return RecordRepository(db)


@pytest.fixture
def file_store(tmp_path: Path) -> LocalFileStore:
    return LocalFileStore(tmp_path / "files", public_base_url="http://files.test")


@pytest.fixture
def catalog() -> FieldCatalog:
    """Catalog with two required fields and two optional ones."""
    return FieldCatalog(
        [
            FieldCatalogEntry("invoice_number", "Invoice number", 1, True, FieldType.TEXT),
            FieldCatalogEntry("total_amount", "Total", 2, True, FieldType.NUMERIC),
            FieldCatalogEntry("issue_date", "Issue date", 3, False, FieldType.DATE),
            FieldCatalogEntry("paid", "Paid", 4, False, FieldType.BOOLEAN),
        ]
    )


@pytest.fixture
def make_record(
    record_repo: RecordRepository, file_store: LocalFileStore
) -> Callable[..., DocumentRecord]:
    """Return a factory that stores a fragment and persists a record for it."""

    def _make(
        status: RecordStatus = RecordStatus.PENDING,
        correlation_id: str | None = None,
        **kwargs: object,
    ) -> DocumentRecord:
        record_id = str(uuid.uuid4())
        key = file_store.put(f"projects/p1/{record_id}.pdf", build_pdf(1))
        record = DocumentRecord(
            id=record_id,
            project_id="p1",
            title="scan - Segment 1",
            namespace="project-p1-documents",
            source_key=key,
            status=status,
            correlation_id=correlation_id,
            logs=[PipelineEvent.success(PipelineStep.SPLITTER_FRAGMENT, "Fragment 1/1")],
            **kwargs,
        )
        return record_repo.add(record)

    return _make


def json_transport(
    responses: list[httpx.Response | Exception],
    calls: list[httpx.Request] | None = None,
) -> httpx.MockTransport:
    """Transport answering requests with ``responses`` in order.

    Exceptions in the list are raised instead of answered. The last
    entry repeats once the list is exhausted.
    """
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    return httpx.MockTransport(handler)


@pytest.fixture
def transport_factory() -> Callable[..., httpx.MockTransport]:
    """Return a builder for mock transports with canned responses."""
    return json_transport


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(url="http://workflow.test/webhook/documents", max_retries=3)


@pytest.fixture
def sleeps() -> list[float]:
    """Collects the delays requested by the dispatcher."""
    return []


@pytest.fixture
def dispatcher_factory(
    webhook_config: WebhookConfig, sleeps: list[float]
) -> Callable[..., WebhookDispatcher]:
    """Return a builder for dispatchers backed by canned responses."""

    def _make(
        responses: list[httpx.Response | Exception],
        calls: list[httpx.Request] | None = None,
        config: WebhookConfig | None = None,
    ) -> WebhookDispatcher:
        client = httpx.Client(transport=json_transport(responses, calls))
        return WebhookDispatcher(config or webhook_config, client=client, sleep=sleeps.append)

    return _make


@pytest.fixture
def record_service_factory(
    record_repo: RecordRepository,
    file_store: LocalFileStore,
    catalog: FieldCatalog,
    dispatcher_factory: Callable[..., WebhookDispatcher],
) -> Callable[..., RecordService]:
    """Return a builder for record services with a canned webhook."""

    def _make(
        responses: list[httpx.Response | Exception] | None = None,
        calls: list[httpx.Request] | None = None,
        threshold: float = 70.0,
        dispatch_enabled: bool = True,
    ) -> RecordService:
        if responses is None:
            responses = [httpx.Response(200, json={"executionId": "exec-1"})]
        return RecordService(
            record_repo,
            file_store,
            dispatcher_factory(responses, calls),
            catalog,
            threshold=threshold,
            dispatch_enabled=dispatch_enabled,
        )

    return _make
