"""Intake state machine: upload, boundary detection, splitting and record creation.

An intake request moves ``pending -> processing -> completed | failed``.
It fails when detection, range calculation or splitting breaks, or when
storing a fragment or record fails partway. Records that already exist
are kept and dispatched, and a retry resumes from the first missing
record. Each record follows its own state machine; a failed dispatch
never rolls back its siblings.
"""

import uuid
from pathlib import Path
from typing import Any

from src.errors import ExternalServiceError, PersistenceError, PipelineError, ValidationError
from src.models.domain import (
    DocumentRecord,
    IntakeRequest,
    IntakeStatus,
    PipelineEvent,
    PipelineStep,
    RecordStatus,
    SplitMode,
)
from src.splitting.boundary_detector import BoundaryDetector
from src.splitting.pdf_splitter import PDFSplitter, is_pdf
from src.splitting.ranges import PageRange, compute_ranges, validate_first_pages
from src.storage.file_store import FileStore, sanitize_filename
from src.storage.repository import IntakeRepository, RecordRepository
from src.utils.config import IntakeConfig
from src.utils.logger import get_logger

from .records import RecordService

logger = get_logger(__name__)

ACCEPTED_SUFFIXES = frozenset({".pdf", ".tif", ".tiff", ".png", ".jpg", ".jpeg"})


def document_namespace(project_id: str) -> str:
    """Logical namespace shared by all records of a project."""
    return f"project-{project_id}-documents"


class IntakeService:
    """Orchestrates intake requests from upload to dispatched records.

    Args:
        intakes: Intake request repository.
        records: Record repository.
        record_service: Per-record operations, used for dispatch.
        files: Store for sources and fragments.
        splitter: PDF splitter.
        detector: Boundary detector for ``auto`` split mode.
        config: Upload limits.
        fallback_to_single_range: Treat a detector failure as "no split"
            instead of failing the intake request.
    """

    def __init__(
        self,
        intakes: IntakeRepository,
        records: RecordRepository,
        record_service: RecordService,
        files: FileStore,
        splitter: PDFSplitter,
        detector: BoundaryDetector,
        config: IntakeConfig | None = None,
        fallback_to_single_range: bool = False,
    ) -> None:
        self.intakes = intakes
        self.records = records
        self.record_service = record_service
        self.files = files
        self.splitter = splitter
        self.detector = detector
        self.config = config or IntakeConfig()
        self.fallback_to_single_range = fallback_to_single_range

    def get(self, intake_id: str) -> IntakeRequest:
        return self.intakes.get(intake_id)

    def _validate_upload(self, filename: str, content: bytes, content_type: str | None) -> None:
        if not content:
            raise ValidationError("Uploaded file is empty", {"filename": filename})
        max_bytes = self.config.max_upload_mb * 1024 * 1024
        if len(content) > max_bytes:
            raise ValidationError(
                f"File exceeds the {self.config.max_upload_mb} MB limit",
                {"filename": filename, "size": len(content)},
            )
        suffix = Path(filename).suffix.lower()
        if content_type not in self.config.allowed_content_types and suffix not in ACCEPTED_SUFFIXES:
            raise ValidationError(
                f"Unsupported file type: {content_type or suffix or 'unknown'}",
                {"filename": filename},
            )

    def create_intake(
        self,
        project_id: str,
        filename: str,
        content: bytes,
        content_type: str | None = None,
        split_mode: SplitMode = SplitMode.AUTO,
        pages: list[int] | None = None,
        actor: str | None = None,
    ) -> IntakeRequest:
        """Store an upload and create a pending intake request.

        Scanned images are converted to a PDF first. Manual page lists are
        validated when processing starts, once the page count is known.

        Args:
            project_id: Owning project.
            filename: Original filename.
            content: Uploaded bytes.
            content_type: Declared MIME type.
            split_mode: ``auto`` or ``manual``.
            pages: First pages for ``manual`` mode.
            actor: User creating the request.

        Returns:
            The created intake request.

        Raises:
            ValidationError: If the upload is empty, too large, of an
                unsupported type, or the split parameters are inconsistent.
        """
        if not project_id:
            raise ValidationError("project_id is required")
        self._validate_upload(filename, content, content_type)

        split_mode = SplitMode(split_mode)
        if split_mode == SplitMode.MANUAL and not pages:
            raise ValidationError("Manual split mode requires a page list")
        if split_mode == SplitMode.AUTO and pages:
            raise ValidationError("Page lists are only accepted in manual split mode")

        if not is_pdf(content):
            content = self.splitter.images_to_pdf(content)

        safe_name = sanitize_filename(filename)
        stem = Path(safe_name).stem or "document"
        intake_id = str(uuid.uuid4())
        source_key = self.files.put(f"intakes/{intake_id}/{stem}.pdf", content)

        intake = self.intakes.add(
            IntakeRequest(
                id=intake_id,
                project_id=project_id,
                source_key=source_key,
                original_name=safe_name,
                split_mode=split_mode,
                status=IntakeStatus.PENDING,
                manual_pages=list(pages) if pages else None,
                last_updated_by=actor,
            )
        )
        logger.info(
            "Created intake %s for project %s (%s, %d bytes)",
            intake_id,
            project_id,
            split_mode,
            len(content),
        )
        return intake

    def _first_pages(self, intake: IntakeRequest, source: bytes, total: int) -> list[int]:
        if intake.split_mode == SplitMode.MANUAL:
            return list(intake.manual_pages or [])
        try:
            return self.detector.detect(source, filename=intake.original_name)
        except ExternalServiceError:
            if not self.fallback_to_single_range:
                raise
            logger.warning("Boundary detection failed for %s, not splitting", intake.id)
            return []

    def _resolve_ranges(self, intake: IntakeRequest, source: bytes) -> tuple[int, list[PageRange]]:
        total = self.splitter.get_page_count(source)
        if intake.first_pages:
            # Boundaries settled by an earlier, partially completed run.
            return total, compute_ranges(intake.first_pages, total)
        if total == 1:
            return total, [PageRange(1, 1)]

        first_pages = self._first_pages(intake, source, total)
        validate_first_pages(first_pages, total)
        if first_pages and first_pages[0] != 1:
            # Pages before the first boundary form their own document.
            first_pages = [1, *first_pages]
        return total, compute_ranges(first_pages, total)

    def _create_record(
        self,
        intake: IntakeRequest,
        base: str,
        index: int,
        count: int,
        page_range: PageRange,
        fragment: bytes,
    ) -> DocumentRecord:
        part = f"{base}-part-{index:02d}-{uuid.uuid4().hex[:8]}.pdf"
        key = self.files.put(f"projects/{intake.project_id}/{part}", fragment)
        record = DocumentRecord(
            id=str(uuid.uuid4()),
            project_id=intake.project_id,
            title=f"{base} - Segment {index}",
            namespace=document_namespace(intake.project_id),
            source_key=key,
            status=RecordStatus.PENDING,
            intake_id=intake.id,
            ordinal=index,
            page_start=page_range.start,
            page_end=page_range.end,
            logs=[
                PipelineEvent.success(
                    PipelineStep.SPLITTER_FRAGMENT,
                    f"Fragment {index}/{count} (pages {page_range.start}-{page_range.end})",
                    range=page_range.to_dict(),
                    filesize=len(fragment),
                )
            ],
        )
        return self.records.add(record)

    def _fail(self, intake_id: str, message: str, **changes: Any) -> IntakeRequest:
        self.intakes.transition(
            intake_id, {IntakeStatus.PROCESSING}, IntakeStatus.FAILED, error=message, **changes
        )
        logger.error("Intake %s failed: %s", intake_id, message)
        return self.intakes.get(intake_id)

    def _dispatch_all(self, record_ids: list[str]) -> None:
        for record_id in record_ids:
            try:
                self.record_service.dispatch(record_id)
            except PipelineError as exc:
                logger.error("Record %s could not be dispatched: %s", record_id, exc)

    def process(self, intake_id: str, actor: str | None = None) -> IntakeRequest:
        """Run a pending intake request to completion.

        Detects boundaries (or uses the manual list), computes ranges,
        splits the source, creates one pending record per range in range
        order, then dispatches each record.

        If storing a fragment or record fails partway, the records created
        so far are still dispatched and the intake request is marked
        failed with its boundaries kept. A retry then creates only the
        missing records.

        Args:
            intake_id: Intake request to process.
            actor: User or process triggering the run.

        Returns:
            The intake request in its terminal state.

        Raises:
            ValidationError: If the intake request is not pending.
            PersistenceError: If storing a fragment or record fails.
        """
        intake = self.intakes.get(intake_id)
        changes = {"last_updated_by": actor} if actor else {}
        if not self.intakes.transition(
            intake_id, {IntakeStatus.PENDING}, IntakeStatus.PROCESSING, **changes
        ):
            raise ValidationError(
                f"Intake request is {intake.status}, expected pending",
                {"intake_id": intake_id},
            )
        logger.info("Processing intake %s (%s)", intake_id, intake.split_mode)

        try:
            source = self.files.get(intake.source_key)
            total, ranges = self._resolve_ranges(intake, source)
            fragments = self.splitter.split(source, ranges)
            existing = {record.ordinal for record in self.records.list_by_intake(intake_id)}
        except PersistenceError as exc:
            self._fail(intake_id, exc.message)
            raise
        except PipelineError as exc:
            return self._fail(intake_id, exc.message)

        boundaries = {"total_pages": total, "first_pages": [r.start for r in ranges]}
        if existing:
            logger.info(
                "Resuming intake %s, %d/%d records already exist",
                intake_id,
                len(existing),
                len(ranges),
            )

        base = Path(intake.original_name).stem or "document"
        created: list[str] = []
        failure: PipelineError | None = None
        try:
            for index, (page_range, fragment) in enumerate(zip(ranges, fragments), start=1):
                if index in existing:
                    continue
                record = self._create_record(
                    intake, base, index, len(ranges), page_range, fragment
                )
                created.append(record.id)
        except PipelineError as exc:
            failure = exc

        logger.info("Intake %s split into %d new records", intake_id, len(created))
        self._dispatch_all(created)

        if failure is not None:
            made = len(existing) + len(created)
            self._fail(
                intake_id,
                f"Created {made}/{len(ranges)} records: {failure.message}",
                **boundaries,
            )
            if isinstance(failure, PersistenceError):
                raise failure
            return self.intakes.get(intake_id)

        self.intakes.transition(
            intake_id,
            {IntakeStatus.PROCESSING},
            IntakeStatus.COMPLETED,
            error=None,
            **boundaries,
        )
        return self.intakes.get(intake_id)

    def retry(self, intake_id: str, actor: str | None = None) -> IntakeRequest:
        """Rerun a failed intake request.

        Boundaries kept from a partially completed run are reused, and
        records that already exist are not created again.

        Raises:
            ValidationError: If the intake request has not failed.
        """
        intake = self.intakes.get(intake_id)
        if not self.intakes.transition(
            intake_id, {IntakeStatus.FAILED}, IntakeStatus.PENDING, error=None
        ):
            raise ValidationError(
                f"Only failed intake requests can be retried, request is {intake.status}",
                {"intake_id": intake_id},
            )
        logger.info("Retrying intake %s", intake_id)
        return self.process(intake_id, actor=actor)
