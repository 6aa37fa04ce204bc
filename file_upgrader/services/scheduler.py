import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set, Tuple

from file_upgrader.clients.interfaces import ConversionService, CredentialProvider, DocumentBackend
from file_upgrader.config import Settings
from file_upgrader.core.events.batch_events import WorkItemStatusEvent
from file_upgrader.core.events.event_bus import DomainEventBus
from file_upgrader.core.exceptions import UpgraderError
from file_upgrader.core.job_repository import JobRepository
from file_upgrader.core.task_state_machine import TaskStateMachine
from file_upgrader.models import BulkJob, DeadLetter, FileTask, FileTaskStatus, WorkItem
from file_upgrader.services.batch_credentials import refresh_batch_credentials
from file_upgrader.services.pending_writes import is_already_upgraded, plan_write
from file_upgrader.services.retry_policy import RetryPolicy
from file_upgrader.services.work_item_registry import WorkItemRegistry

TaskKey = Tuple[int, int]


class ConversionScheduler:
    """
    Drains one FIFO queue of (batch_id, file_index) entries shared by all batches,
    never letting more than max_concurrent_conversions tasks be Processing at once.

    In-flight is counted from the task states themselves, so a slot frees up the
    moment the publisher (or a failed submission) moves a task out of Processing.
    """

    def __init__(
        self,
        settings: Settings,
        job_repository: JobRepository,
        state_machine: TaskStateMachine,
        registry: WorkItemRegistry,
        conversion_service: ConversionService,
        document_backend: DocumentBackend,
        credential_provider: CredentialProvider,
        event_bus: DomainEventBus,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self._settings = settings
        self._repository = job_repository
        self._state_machine = state_machine
        self._registry = registry
        self._conversion_service = conversion_service
        self._document_backend = document_backend
        self._credential_provider = credential_provider
        self._event_bus = event_bus
        self._retry_policy = retry_policy or RetryPolicy.from_settings(settings)

        self._queue: asyncio.Queue[TaskKey] = asyncio.Queue()
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._dispatch_tasks: Set[asyncio.Task] = set()
        self._retry_tasks: Dict[TaskKey, asyncio.Task] = {}
        self._dead_letters: Deque[DeadLetter] = deque(maxlen=settings.dead_letter_limit)

        logging.info(
            f"ConversionScheduler initialiseret (ceiling {settings.max_concurrent_conversions})"
        )

    @property
    def ceiling(self) -> int:
        return self._settings.max_concurrent_conversions

    @property
    def queued(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._running:
            logging.warning("Scheduler er allerede startet")
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run())
        logging.info("Scheduler loop startet")

    async def stop(self) -> None:
        """Stops dispatching, drops pending retries and waits for in-flight dispatches."""
        self._running = False

        if self._loop_task:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        for task in list(self._retry_tasks.values()):
            task.cancel()
        if self._retry_tasks:
            await asyncio.gather(*list(self._retry_tasks.values()), return_exceptions=True)
        self._retry_tasks.clear()

        await self.wait_for_dispatches()
        logging.info("Scheduler stoppet")

    def enqueue(self, batch_id: int, file_index: int) -> None:
        self._queue.put_nowait((batch_id, file_index))

    async def wait_for_dispatches(self) -> None:
        while self._dispatch_tasks:
            await asyncio.gather(*list(self._dispatch_tasks), return_exceptions=True)

    def cancel_pending_for_batch(self, batch_id: int) -> int:
        """Drops delayed requeues of a batch. Queue entries are skipped at dequeue time."""
        keys = [key for key in self._retry_tasks if key[0] == batch_id]
        for key in keys:
            self._retry_tasks[key].cancel()
        if keys:
            logging.info(f"Cancelled {len(keys)} pending retr(y/ies) for batch {batch_id}")
        return len(keys)

    def dead_letters(self) -> List[DeadLetter]:
        return list(self._dead_letters)

    async def _run(self) -> None:
        try:
            while self._running:
                try:
                    await self._dispatch_round()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logging.error(f"Fejl i scheduler loop: {e}", exc_info=True)
                    await asyncio.sleep(self._settings.slot_poll_interval_seconds)
        except asyncio.CancelledError:
            logging.info("Scheduler loop blev cancelled")
            raise

    async def _dispatch_round(self) -> None:
        in_flight = await self._state_machine.count_processing()
        available = self.ceiling - in_flight
        if available <= 0:
            await asyncio.sleep(self._settings.slot_poll_interval_seconds)
            return

        # Block until there is work; only this loop moves tasks into Processing
        entry = await self._queue.get()
        dispatched = 0
        while True:
            if await self._start_dispatch(*entry):
                dispatched += 1
            if dispatched >= available or self._queue.empty():
                break
            entry = self._queue.get_nowait()

        if dispatched:
            logging.debug(f"Dispatched {dispatched} task(s), {self._queue.qsize()} still queued")
            await asyncio.sleep(self._settings.dispatch_round_delay_seconds)

    async def _start_dispatch(self, batch_id: int, file_index: int) -> bool:
        job = await self._repository.get_by_id(batch_id)
        if job is None or job.is_terminal:
            logging.debug(f"Skipping queue entry for inactive batch {batch_id}")
            return False
        if job.files[file_index].status != FileTaskStatus.QUEUED:
            return False

        try:
            await self._state_machine.transition(
                batch_id=batch_id, file_index=file_index, new_status=FileTaskStatus.PROCESSING
            )
        except UpgraderError as e:
            logging.info(f"Could not start {job.files[file_index].display_name}: {e}")
            return False

        task = asyncio.create_task(self._dispatch(batch_id, file_index))
        self._dispatch_tasks.add(task)
        task.add_done_callback(self._dispatch_tasks.discard)
        return True

    async def _dispatch(self, batch_id: int, file_index: int) -> None:
        try:
            attempt = await self._state_machine.record_attempt(
                batch_id=batch_id, file_index=file_index
            )
        except UpgraderError as e:
            logging.info(f"Dispatch of batch {batch_id} file {file_index} abandoned: {e}")
            return

        job = await self._repository.get_by_id(batch_id)
        if job is None:
            return
        task = job.files[file_index]
        logging.info(
            f"Submitting {task.display_name} (batch {batch_id}, attempt {attempt}/{task.max_attempts})"
        )

        try:
            await self._submit(job, file_index, task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_submit_failure(job, file_index, attempt, e)

    async def _submit(self, job: BulkJob, file_index: int, task: FileTask) -> None:
        options = job.options
        credentials = await refresh_batch_credentials(
            job, self._credential_provider, self._state_machine
        )

        version_info = await self._document_backend.get_latest_version(
            job.project_ref, task.file_ref, credentials
        )

        versions = await self._document_backend.list_versions(
            job.project_ref, task.file_ref, credentials
        )
        if is_already_upgraded(versions, options.target_version):
            notice = f"Already upgraded to {options.target_version}"
            logging.info(f"{task.display_name}: {notice}")
            if options.skip_already_upgraded:
                await self._state_machine.transition(
                    batch_id=job.batch_id,
                    file_index=file_index,
                    new_status=FileTaskStatus.COMPLETED,
                    notice=f"{notice}, skipped",
                )
                return
            await self._state_machine.annotate(
                batch_id=job.batch_id, file_index=file_index, notice=notice
            )

        output_folder = options.destination_folder_ref or options.source_folder_ref
        output_storage = await self._document_backend.allocate_storage(
            job.project_ref, output_folder, task.display_name, credentials
        )
        pending_write = plan_write(task, options, version_info, output_storage)

        work_item_id = await self._conversion_service.submit(
            input_location=version_info.storage.url,
            output_location=output_storage.url,
            format_args={"extension": task.extension},
            callback_url=self._settings.webhook_url,
            credentials=credentials,
        )

        await self._registry.register(
            WorkItem(
                work_item_id=work_item_id,
                project_ref=job.project_ref,
                pending_write=pending_write,
                credential_snapshot=credentials,
                file_ref=task.file_ref,
                batch_id=job.batch_id,
                file_index=file_index,
            )
        )

        # The batch may have been cancelled while the submission was in flight
        current = await self._repository.get_by_id(job.batch_id)
        if (
            current is None
            or current.is_terminal
            or current.files[file_index].status != FileTaskStatus.PROCESSING
        ):
            logging.info(f"{task.display_name} was cancelled during submission; cancelling {work_item_id}")
            if await self._registry.remove(work_item_id) is not None:
                await self._cancel_quietly(work_item_id)
            return

        await self._state_machine.annotate(
            batch_id=job.batch_id, file_index=file_index, work_item_id=work_item_id, last_error=None
        )
        await self._event_bus.publish(
            WorkItemStatusEvent(work_item_id=work_item_id, status="Submitted", batch_id=job.batch_id)
        )
        logging.info(f"{task.display_name} submitted as work item {work_item_id}")

    async def _handle_submit_failure(
        self, job: BulkJob, file_index: int, attempt: int, error: Exception
    ) -> None:
        task = job.files[file_index]
        message = str(error) or type(error).__name__

        try:
            if attempt < task.max_attempts:
                delay = self._retry_policy.delay_for(attempt)
                logging.warning(
                    f"Submission of {task.display_name} failed (attempt {attempt}/{task.max_attempts}): "
                    f"{message}. Retrying in {delay:.1f}s"
                )
                await self._state_machine.transition(
                    batch_id=job.batch_id,
                    file_index=file_index,
                    new_status=FileTaskStatus.QUEUED,
                    last_error=message,
                )
                self._schedule_requeue((job.batch_id, file_index), delay)
            else:
                logging.error(
                    f"Submission of {task.display_name} failed permanently after {attempt} attempts: {message}"
                )
                await self._state_machine.transition(
                    batch_id=job.batch_id,
                    file_index=file_index,
                    new_status=FileTaskStatus.FAILED,
                    last_error=message,
                )
                self._dead_letters.append(
                    DeadLetter(
                        batch_id=job.batch_id,
                        file_ref=task.file_ref,
                        display_name=task.display_name,
                        attempts=attempt,
                        error=message,
                    )
                )
        except UpgraderError as e:
            logging.info(f"Failure of {task.display_name} not recorded, batch no longer active: {e}")

    def _schedule_requeue(self, key: TaskKey, delay: float) -> None:
        self._retry_tasks[key] = asyncio.create_task(self._requeue_later(key, delay))

    async def _requeue_later(self, key: TaskKey, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            self.enqueue(*key)
        finally:
            if self._retry_tasks.get(key) is asyncio.current_task():
                del self._retry_tasks[key]

    async def _cancel_quietly(self, work_item_id: str) -> None:
        try:
            await self._conversion_service.cancel(work_item_id)
        except Exception as e:
            logging.warning(f"Could not cancel work item {work_item_id}: {e}")
