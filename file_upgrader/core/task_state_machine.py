import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from file_upgrader.core.events.batch_events import (
    BatchCancelledEvent,
    BatchFinishedEvent,
    FileTaskStatusChangedEvent,
)
from file_upgrader.core.events.domain_event import DomainEvent
from file_upgrader.core.events.event_bus import DomainEventBus
from file_upgrader.core.exceptions import (
    BatchNotFoundError,
    InvalidBatchStateError,
    InvalidTransitionError,
)
from file_upgrader.core.job_repository import JobRepository
from file_upgrader.models import BatchStatus, BulkJob, Credentials, FileTask, FileTaskStatus, utc_now


class TaskStateMachine:
    """
    Gatekeeper for every file task and batch counter mutation.

    This is the ONLY class allowed to:
    1. Validate a file task status transition.
    2. Change a FileTask's status, attempts and error fields.
    3. Maintain completed_files / failed_files and the batch status.
    4. Publish the resulting domain events.

    All of it happens under one lock, so counters never drift from task states.
    """

    def __init__(self, job_repository: JobRepository, event_bus: DomainEventBus):
        self._repository = job_repository
        self._event_bus = event_bus
        self._lock = asyncio.Lock()
        self._pending_events: Set[asyncio.Task] = set()

        self._transitions: Dict[FileTaskStatus, Set[FileTaskStatus]] = {
            FileTaskStatus.QUEUED: {
                FileTaskStatus.PROCESSING,
                FileTaskStatus.CANCELLED,
            },
            FileTaskStatus.PROCESSING: {
                FileTaskStatus.QUEUED,  # Submission failed, attempts left
                FileTaskStatus.COMPLETED,
                FileTaskStatus.FAILED,
                FileTaskStatus.CANCELLED,
            },
            FileTaskStatus.COMPLETED: set(),
            FileTaskStatus.FAILED: set(),
            FileTaskStatus.CANCELLED: set(),
        }
        logging.info("TaskStateMachine initialiseret med %s overgangsregler", len(self._transitions))

    async def transition(
        self,
        *,
        batch_id: int,
        file_index: int,
        new_status: FileTaskStatus,
        **kwargs,
    ) -> FileTask:
        """
        Moves one file task to a new status atomically and publishes an event.

        Usage:
            await state_machine.transition(
                batch_id=7, file_index=0, new_status=FileTaskStatus.COMPLETED
            )

        A cancelled batch still accepts the outcome of a task left Processing by
        cancel_batch(finishing=...): its backend write had already started.

        Raises:
            BatchNotFoundError: If the batch does not exist.
            InvalidBatchStateError: If the batch is no longer active.
            InvalidTransitionError: If the transition is not allowed, including
                a move to the status the task already has.
        """
        events: List[DomainEvent] = []

        async with self._lock:
            job, task = await self._get_task(batch_id, file_index)
            if job.is_terminal and not self._is_finishing_write(task, new_status):
                raise InvalidBatchStateError(
                    f"Batch {batch_id} is {job.status.value}; {task.display_name} cannot move to {new_status.value}"
                )

            old_status = task.status
            if new_status not in self._transitions.get(old_status, set()):
                raise InvalidTransitionError(task.display_name, old_status.value, new_status.value)

            logging.info(
                f"Transition: batch {batch_id} | {task.display_name} | {old_status.value} -> {new_status.value}"
            )
            task.status = new_status

            for key, value in kwargs.items():
                if hasattr(task, key):
                    setattr(task, key, value)
                else:
                    logging.warning(f"Unknown FileTask attribute ignored: {key}")

            now = utc_now()
            if new_status == FileTaskStatus.PROCESSING and not task.started_at:
                task.started_at = now
            elif new_status == FileTaskStatus.COMPLETED:
                task.completed_at = now
                job.completed_files += 1
            elif new_status == FileTaskStatus.FAILED:
                task.failed_at = now
                job.failed_files += 1

            events.append(self._status_event(job, file_index, old_status, new_status))

            if job.is_done and job.status == BatchStatus.ACTIVE:
                job.status = BatchStatus.DONE
                job.finished_at = now
                logging.info(
                    f"Batch {batch_id} done: {job.completed_files} completed, "
                    f"{job.failed_files} failed of {job.total_files}"
                )
                events.append(
                    BatchFinishedEvent(
                        batch_id=batch_id,
                        completed_files=job.completed_files,
                        failed_files=job.failed_files,
                    )
                )

            await self._repository.update(job)

        # Announced outside the lock so slow subscribers never block state changes
        self._announce(events)
        return task

    async def record_attempt(self, *, batch_id: int, file_index: int) -> int:
        """Increments the attempt counter of a Processing task and returns the new value."""
        async with self._lock:
            job, task = await self._get_task(batch_id, file_index)
            if task.status != FileTaskStatus.PROCESSING:
                raise InvalidTransitionError(
                    task.display_name, task.status.value, "attempt"
                )
            if task.attempts >= task.max_attempts:
                raise InvalidTransitionError(
                    task.display_name, f"attempt {task.attempts}", f"attempt {task.attempts + 1}"
                )
            task.attempts += 1
            await self._repository.update(job)
            event = self._status_event(job, file_index, task.status, task.status)

        self._announce([event])
        return task.attempts

    async def annotate(self, *, batch_id: int, file_index: int, **kwargs) -> FileTask:
        """Updates non-status fields (work_item_id, notice, last_error) of a task."""
        async with self._lock:
            job, task = await self._get_task(batch_id, file_index)
            for key, value in kwargs.items():
                if key in ("status", "attempts"):
                    raise ValueError(f"'{key}' can only change through transition()")
                if hasattr(task, key):
                    setattr(task, key, value)
                else:
                    logging.warning(f"Unknown FileTask attribute ignored: {key}")
            await self._repository.update(job)
            event = self._status_event(job, file_index, task.status, task.status)

        self._announce([event])
        return task

    async def update_credentials(self, *, batch_id: int, credentials: Credentials) -> None:
        """Replaces a batch's credentials after a refresh rotated its tokens."""
        async with self._lock:
            job = await self._repository.get_by_id(batch_id)
            if job is None:
                raise BatchNotFoundError(batch_id)
            job.credentials = credentials
            await self._repository.update(job)
        logging.info(f"Credentials of batch {batch_id} refreshed")

    async def cancel_batch(
        self,
        batch_id: int,
        finishing: Optional[Callable[[], Awaitable[Set[int]]]] = None,
    ) -> List[Tuple[int, Optional[str]]]:
        """
        Marks an active batch Cancelled and moves its unfinished tasks to Cancelled.

        finishing() is awaited under the lock and names the file indexes whose
        backend write has already started. Those tasks stay Processing and their
        outcome is still recorded when the write finishes.

        Returns (file_index, work_item_id) for each task that was Processing and
        got cancelled, so the caller can cancel the outstanding work items.
        """
        events: List[DomainEvent] = []
        in_flight: List[Tuple[int, Optional[str]]] = []
        kept = 0

        async with self._lock:
            job = await self._repository.get_by_id(batch_id)
            if job is None:
                raise BatchNotFoundError(batch_id)
            if job.is_terminal:
                raise InvalidBatchStateError(f"Batch {batch_id} is already {job.status.value}")
            keep = await finishing() if finishing else set()

            for index, task in enumerate(job.files):
                if task.status not in (FileTaskStatus.QUEUED, FileTaskStatus.PROCESSING):
                    continue
                if task.status == FileTaskStatus.PROCESSING and index in keep:
                    kept += 1
                    continue
                if task.status == FileTaskStatus.PROCESSING:
                    in_flight.append((index, task.work_item_id))
                old_status = task.status
                task.status = FileTaskStatus.CANCELLED
                events.append(self._status_event(job, index, old_status, FileTaskStatus.CANCELLED))

            job.status = BatchStatus.CANCELLED
            job.finished_at = utc_now()
            await self._repository.update(job)
            events.append(BatchCancelledEvent(batch_id=batch_id))
            logging.info(
                f"Batch {batch_id} cancelled: {len(in_flight)} in flight, {kept} finishing, "
                f"{job.completed_files} completed and {job.failed_files} failed kept"
            )

        self._announce(events)
        return in_flight

    async def count_processing(self) -> int:
        async with self._lock:
            jobs = await self._repository.get_all()
            return sum(
                job.count(FileTaskStatus.PROCESSING)
                for job in jobs
                if job.status == BatchStatus.ACTIVE
            )

    async def wait_for_pending_events(self) -> None:
        """Waits until every announced event has been delivered to the bus."""
        while self._pending_events:
            await asyncio.gather(*list(self._pending_events), return_exceptions=True)

    async def _get_task(self, batch_id: int, file_index: int) -> Tuple[BulkJob, FileTask]:
        job = await self._repository.get_by_id(batch_id)
        if job is None:
            raise BatchNotFoundError(batch_id)
        if not 0 <= file_index < len(job.files):
            raise IndexError(f"Batch {batch_id} has no file at index {file_index}")
        return job, job.files[file_index]

    @staticmethod
    def _is_finishing_write(task: FileTask, new_status: FileTaskStatus) -> bool:
        return task.status == FileTaskStatus.PROCESSING and new_status in (
            FileTaskStatus.COMPLETED,
            FileTaskStatus.FAILED,
        )

    def _status_event(
        self,
        job: BulkJob,
        file_index: int,
        old_status: Optional[FileTaskStatus],
        new_status: FileTaskStatus,
    ) -> FileTaskStatusChangedEvent:
        return FileTaskStatusChangedEvent(
            batch_id=job.batch_id,
            file_index=file_index,
            display_name=job.files[file_index].display_name,
            old_status=old_status,
            new_status=new_status,
        )

    def _announce(self, events: List[DomainEvent]) -> None:
        for event in events:
            task = asyncio.create_task(self._event_bus.publish(event))
            self._pending_events.add(task)
            task.add_done_callback(self._pending_events.discard)
