import logging
from datetime import datetime
from typing import Callable, Optional

from file_upgrader.clients.interfaces import CredentialProvider, DocumentBackend
from file_upgrader.core.events.batch_events import WorkItemStatusEvent
from file_upgrader.core.events.event_bus import DomainEventBus
from file_upgrader.core.exceptions import (
    AuthenticationError,
    DocumentBackendError,
    DocumentConflictError,
    UpgraderError,
)
from file_upgrader.core.job_repository import JobRepository
from file_upgrader.core.task_state_machine import TaskStateMachine
from file_upgrader.models import (
    CompletionSignal,
    Credentials,
    FileTaskStatus,
    NewDocumentWrite,
    NewVersionWrite,
    PendingWrite,
    WorkItem,
    utc_now,
)
from file_upgrader.services.batch_credentials import refresh_batch_credentials
from file_upgrader.services.pending_writes import as_new_version, renamed
from file_upgrader.services.work_item_registry import WorkItemRegistry
from file_upgrader.utils.naming import disambiguate_name

CONVERSION_FAILED = "Conversion service reported failure"


class ConflictResolvingPublisher:
    """
    Consumes completion signals: looks up the work item, writes the converted
    document to the backend and records the outcome on the file task.

    Handling is idempotent. The registry entry is removed when resolving() exits,
    so a duplicate or late signal for the same id finds nothing and is ignored.
    """

    def __init__(
        self,
        registry: WorkItemRegistry,
        job_repository: JobRepository,
        state_machine: TaskStateMachine,
        document_backend: DocumentBackend,
        credential_provider: CredentialProvider,
        event_bus: DomainEventBus,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._registry = registry
        self._repository = job_repository
        self._state_machine = state_machine
        self._document_backend = document_backend
        self._credential_provider = credential_provider
        self._event_bus = event_bus
        self._clock = clock

    async def handle_completion(self, signal: CompletionSignal) -> None:
        async with self._registry.resolving(signal.id) as work_item:
            if work_item is None:
                logging.info(f"Ignoring completion for unknown work item {signal.id} (duplicate or stale)")
                return

            if not await self._batch_accepts(work_item):
                logging.info(
                    f"Dropping result of work item {signal.id}: batch {work_item.batch_id} is no longer active"
                )
                return

            if not signal.succeeded:
                logging.warning(f"Work item {signal.id} finished with status '{signal.status}'")
                await self._record_outcome(work_item, f"{CONVERSION_FAILED} ({signal.status})")
                return

            await self._notify(work_item, "Success")
            error: Optional[str] = None
            try:
                await self._write(work_item)
            except DocumentConflictError as e:
                error = f"Name conflict could not be resolved: {e}"
            except (AuthenticationError, DocumentBackendError) as e:
                error = str(e)
            except Exception as e:
                logging.error(f"Unexpected error publishing work item {signal.id}: {e}", exc_info=True)
                error = f"Unexpected error: {e}"

            await self._record_outcome(work_item, error)

    async def _batch_accepts(self, work_item: WorkItem) -> bool:
        if work_item.batch_id is None:
            return True
        job = await self._repository.get_by_id(work_item.batch_id)
        # A missing batch means the item was restored from a previous process
        if job is None or not job.is_terminal:
            return True
        # Cancel left the task Processing because this completion was already underway
        return (
            work_item.file_index is not None
            and job.files[work_item.file_index].status == FileTaskStatus.PROCESSING
        )

    async def _write(self, work_item: WorkItem) -> None:
        credentials = await self._credentials_for(work_item)
        write = work_item.pending_write

        if isinstance(write, NewDocumentWrite):
            write = await self._reuse_existing_document(work_item.project_ref, write, credentials)

        try:
            await self._execute(work_item.project_ref, write, credentials)
        except DocumentConflictError:
            new_name = disambiguate_name(write.display_name, self._clock())
            logging.warning(
                f"Name conflict for '{write.display_name}', retrying once as '{new_name}'"
            )
            await self._execute(work_item.project_ref, renamed(write, new_name), credentials)

    async def _credentials_for(self, work_item: WorkItem) -> Credentials:
        """
        The batch's current credentials when the batch is known; its refresh token
        may have rotated since the work item was submitted. Otherwise the snapshot.
        """
        job = None
        if work_item.batch_id is not None:
            job = await self._repository.get_by_id(work_item.batch_id)
        if job is None:
            return await self._credential_provider.refresh(work_item.credential_snapshot)
        return await refresh_batch_credentials(job, self._credential_provider, self._state_machine)

    async def _reuse_existing_document(
        self, project_ref: str, write: NewDocumentWrite, credentials: Credentials
    ) -> PendingWrite:
        """A document with the same name in the destination gets a new version instead."""
        documents = await self._document_backend.list_folder(project_ref, write.folder_ref, credentials)
        for document in documents:
            if document.display_name == write.display_name:
                logging.info(
                    f"'{write.display_name}' already exists in {write.folder_ref}, adding a version to {document.id}"
                )
                return as_new_version(write, document.id)
        return write

    async def _execute(self, project_ref: str, write: PendingWrite, credentials: Credentials) -> str:
        if isinstance(write, NewVersionWrite):
            return await self._document_backend.create_version(project_ref, write, credentials)
        return await self._document_backend.create_document(project_ref, write, credentials)

    async def _record_outcome(self, work_item: WorkItem, error: Optional[str]) -> None:
        status = "Completed" if error is None else "Failed"

        if work_item.batch_id is None or work_item.file_index is None:
            logging.info(f"Work item {work_item.work_item_id} (no batch) {status.lower()}: {error or 'ok'}")
        elif await self._repository.get_by_id(work_item.batch_id) is None:
            logging.info(
                f"Work item {work_item.work_item_id} of unknown batch {work_item.batch_id} "
                f"{status.lower()}: {error or 'ok'}"
            )
        else:
            try:
                await self._state_machine.transition(
                    batch_id=work_item.batch_id,
                    file_index=work_item.file_index,
                    new_status=FileTaskStatus.COMPLETED if error is None else FileTaskStatus.FAILED,
                    last_error=error,
                )
            except UpgraderError as e:
                logging.warning(f"Outcome of work item {work_item.work_item_id} not recorded: {e}")

        await self._notify(work_item, status, error)

    async def _notify(self, work_item: WorkItem, status: str, error: Optional[str] = None) -> None:
        await self._event_bus.publish(
            WorkItemStatusEvent(
                work_item_id=work_item.work_item_id,
                status=status,
                batch_id=work_item.batch_id,
                error=error,
            )
        )
