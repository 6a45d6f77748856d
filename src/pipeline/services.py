"""Wiring of repositories, adapters and services from configuration."""

from dataclasses import dataclass
from pathlib import Path

from src.dispatch.webhook import WebhookDispatcher
from src.extraction.field_catalog import FieldCatalog
from src.reconcile.engine_client import WorkflowEngineClient
from src.reconcile.reconciler import ExecutionReconciler, ReconcilerTask
from src.splitting.boundary_detector import BoundaryDetector
from src.splitting.pdf_splitter import PDFSplitter
from src.storage.database import Database
from src.storage.file_store import LocalFileStore
from src.storage.repository import IntakeRepository, RecordRepository
from src.utils.config import AppConfig

from .intake import IntakeService
from .records import RecordService


@dataclass
class Services:
    """Shared components of one running application."""

    config: AppConfig
    db: Database
    catalog: FieldCatalog
    files: LocalFileStore
    intakes: IntakeService
    records: RecordService
    reconciler: ExecutionReconciler

    def reconciler_task(self) -> ReconcilerTask:
        return ReconcilerTask(self.reconciler, self.config.reconciler.interval_s)


def build_services(config: AppConfig) -> Services:
    """Create every component and the database schema.

    Args:
        config: Application configuration.

    Returns:
        Ready-to-use services.
    """
    db = Database(config.storage.database_url)
    db.create_all()

    catalog = FieldCatalog.from_yaml(Path(config.field_catalog_path))
    files = LocalFileStore(Path(config.storage.files_dir), config.storage.public_base_url)
    intake_repo = IntakeRepository(db)
    record_repo = RecordRepository(db)

    record_service = RecordService(
        record_repo,
        files,
        WebhookDispatcher(config.webhook),
        catalog,
        threshold=config.confidence.threshold,
        dispatch_enabled=config.webhook.enabled,
    )
    intake_service = IntakeService(
        intake_repo,
        record_repo,
        record_service,
        files,
        PDFSplitter(),
        BoundaryDetector(config.detector),
        config.intake,
        fallback_to_single_range=config.detector.fallback_to_single_range,
    )
    reconciler = ExecutionReconciler(
        record_repo,
        record_service,
        WorkflowEngineClient(config.reconciler),
        config.reconciler,
    )
    return Services(
        config=config,
        db=db,
        catalog=catalog,
        files=files,
        intakes=intake_service,
        records=record_service,
        reconciler=reconciler,
    )
