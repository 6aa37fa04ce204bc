import logging
from typing import List, Optional

from file_upgrader.clients.interfaces import ConversionService, DocumentBackend
from file_upgrader.config import Settings
from file_upgrader.core.events.batch_events import BatchCreatedEvent, WorkItemStatusEvent
from file_upgrader.core.events.event_bus import DomainEventBus
from file_upgrader.core.exceptions import BatchNotFoundError, BatchValidationError, UpgraderError
from file_upgrader.core.job_repository import JobRepository
from file_upgrader.core.task_state_machine import TaskStateMachine
from file_upgrader.models import (
    BatchOptions,
    BatchSnapshot,
    BulkJob,
    BulkUpgradeRequest,
    Credentials,
    FileSnapshot,
    FileTask,
    FileTaskStatus,
    SingleFileUpgradeRequest,
    WorkItem,
    utc_now,
)
from file_upgrader.services.scheduler import ConversionScheduler
from file_upgrader.services.work_item_registry import WorkItemRegistry
from file_upgrader.utils.naming import file_extension, normalize_extensions


def build_snapshot(job: BulkJob, preview_count: int = 10) -> BatchSnapshot:
    """Counts by status plus the first preview_count files."""
    processed = job.completed_files + job.failed_files
    progress = int(processed * 100 / job.total_files) if job.total_files else 100
    preview = job.files[:preview_count]
    return BatchSnapshot(
        batch_id=job.batch_id,
        status=job.status,
        total_files=job.total_files,
        completed_files=job.completed_files,
        failed_files=job.failed_files,
        processing_files=job.count(FileTaskStatus.PROCESSING),
        queued_files=job.count(FileTaskStatus.QUEUED),
        cancelled_files=job.count(FileTaskStatus.CANCELLED),
        progress_percent=progress,
        created_at=job.created_at,
        files=[
            FileSnapshot(
                name=task.display_name,
                status=task.status,
                work_item_id=task.work_item_id,
                attempts=task.attempts,
                error=task.last_error,
                notice=task.notice,
            )
            for task in preview
        ],
        more_files=max(len(job.files) - len(preview), 0),
    )


class BulkJobTracker:
    """
    Owns the batch lifecycle: create (list, filter, enqueue), query and cancel.

    All task and counter changes go through the TaskStateMachine; the tracker
    only builds jobs and reads them back.
    """

    def __init__(
        self,
        settings: Settings,
        job_repository: JobRepository,
        state_machine: TaskStateMachine,
        scheduler: ConversionScheduler,
        registry: WorkItemRegistry,
        conversion_service: ConversionService,
        document_backend: DocumentBackend,
        event_bus: DomainEventBus,
    ):
        self._settings = settings
        self._repository = job_repository
        self._state_machine = state_machine
        self._scheduler = scheduler
        self._registry = registry
        self._conversion_service = conversion_service
        self._document_backend = document_backend
        self._event_bus = event_bus

    async def create_batch(self, request: BulkUpgradeRequest, credentials: Credentials) -> BulkJob:
        """
        Lists the source folder, keeps the supported file types and enqueues them.

        Raises:
            BatchValidationError: Missing identifiers or no matching files.
        """
        self._require(projectId=request.project_id, folderId=request.folder_id,
                      targetVersion=request.target_version)

        extensions = normalize_extensions(
            request.supported_types or self._settings.default_supported_extensions
        )
        if not extensions:
            raise BatchValidationError("supportedTypes must name at least one file type")

        options = BatchOptions(
            target_version=request.target_version,
            source_folder_ref=request.folder_id,
            destination_folder_ref=request.destination_folder_id,
            supported_extensions=extensions,
            skip_already_upgraded=request.skip_already_upgraded,
        )

        documents = await self._document_backend.list_folder(
            request.project_id, request.folder_id, credentials
        )
        tasks = [
            self._new_task(document.id, document.display_name, request.project_id)
            for document in documents
            if file_extension(document.display_name) in extensions
        ]
        if not tasks:
            raise BatchValidationError(
                f"No files of type {', '.join(extensions)} found in folder {request.folder_id}"
            )

        return await self._start_job(request.project_id, tasks, options, credentials)

    async def create_single_file(
        self, request: SingleFileUpgradeRequest, credentials: Credentials
    ) -> BulkJob:
        """Submits one document as a batch of one."""
        self._require(projectId=request.project_id, fileId=request.file_id,
                      targetVersion=request.target_version)

        document = await self._document_backend.get_document(
            request.project_id, request.file_id, credentials
        )
        extensions = normalize_extensions(self._settings.default_supported_extensions)
        if file_extension(document.display_name) not in extensions:
            raise BatchValidationError(f"{document.display_name} is not a supported file type")

        source_folder = await self._document_backend.get_parent_folder(
            request.project_id, request.file_id, credentials
        )
        options = BatchOptions(
            target_version=request.target_version,
            source_folder_ref=source_folder,
            destination_folder_ref=request.destination_folder_id,
            supported_extensions=extensions,
        )
        task = self._new_task(document.id, document.display_name, request.project_id)
        return await self._start_job(request.project_id, [task], options, credentials)

    async def status(self, batch_id: int) -> BatchSnapshot:
        job = await self._get_job(batch_id)
        if job.is_terminal and job.acknowledged_at is None:
            job.acknowledged_at = utc_now()
            await self._repository.update(job)
        return build_snapshot(job, self._settings.progress_preview_count)

    async def list_batches(self) -> List[BatchSnapshot]:
        jobs = await self._repository.get_all()
        return [
            build_snapshot(job, self._settings.progress_preview_count)
            for job in sorted(jobs, key=lambda j: j.batch_id)
        ]

    async def cancel(self, batch_id: int) -> int:
        """
        Cancels an active batch and returns how many outstanding work items were cancelled.

        Queued tasks never reach the conversion service. Cancellation of work items
        already running there is best-effort; their late completions are ignored.
        A completion whose backend write already started is left to finish and
        still counts.

        Raises:
            BatchNotFoundError: Unknown batch.
            InvalidBatchStateError: Batch is already Done or Cancelled.
        """
        in_flight = await self._state_machine.cancel_batch(
            batch_id, finishing=lambda: self._registry.resolving_for_batch(batch_id)
        )
        self._scheduler.cancel_pending_for_batch(batch_id)

        removed = await self._registry.remove_for_batch(batch_id)
        for work_item in removed:
            await self._cancel_work_item_quietly(work_item)

        logging.info(
            f"Batch {batch_id} cancelled: {len(in_flight)} task(s) were in flight, "
            f"{len(removed)} work item(s) cancelled"
        )
        return len(removed)

    async def work_item_status(self, work_item_id: str) -> dict:
        return await self._conversion_service.get_status(work_item_id)

    async def cancel_work_item(self, work_item_id: str) -> Optional[WorkItem]:
        """
        Cancels one outstanding work item. Its file task fails, so the batch can
        still reach Done.
        """
        work_item = await self._registry.remove(work_item_id)
        if work_item is None:
            return None

        await self._cancel_work_item_quietly(work_item)
        if work_item.batch_id is not None and work_item.file_index is not None:
            try:
                await self._state_machine.transition(
                    batch_id=work_item.batch_id,
                    file_index=work_item.file_index,
                    new_status=FileTaskStatus.FAILED,
                    last_error="Work item cancelled",
                )
            except UpgraderError as e:
                logging.info(f"Task of work item {work_item_id} not updated: {e}")
        return work_item

    def _require(self, **identifiers: str) -> None:
        missing = [name for name, value in identifiers.items() if not value or not value.strip()]
        if missing:
            raise BatchValidationError(f"Missing required identifier(s): {', '.join(missing)}")

    def _new_task(self, file_ref: str, display_name: str, project_ref: str) -> FileTask:
        return FileTask(
            file_ref=file_ref,
            display_name=display_name,
            project_ref=project_ref,
            max_attempts=self._settings.max_attempts,
        )

    async def _start_job(
        self, project_ref: str, tasks: List[FileTask], options: BatchOptions, credentials: Credentials
    ) -> BulkJob:
        job = BulkJob(
            batch_id=self._repository.next_batch_id(),
            project_ref=project_ref,
            files=tasks,
            options=options,
            credentials=credentials,
            total_files=len(tasks),
        )
        await self._repository.add(job)
        logging.info(
            f"Batch {job.batch_id} created: {job.total_files} file(s) -> {options.target_version}"
        )
        await self._event_bus.publish(BatchCreatedEvent(batch_id=job.batch_id, total_files=job.total_files))

        for index in range(len(tasks)):
            self._scheduler.enqueue(job.batch_id, index)
        return job

    async def _get_job(self, batch_id: int) -> BulkJob:
        job = await self._repository.get_by_id(batch_id)
        if job is None:
            raise BatchNotFoundError(batch_id)
        return job

    async def _cancel_work_item_quietly(self, work_item: WorkItem) -> None:
        try:
            await self._conversion_service.cancel(work_item.work_item_id)
        except Exception as e:
            logging.warning(f"Could not cancel work item {work_item.work_item_id}: {e}")
        await self._event_bus.publish(
            WorkItemStatusEvent(
                work_item_id=work_item.work_item_id, status="Cancelled", batch_id=work_item.batch_id
            )
        )
