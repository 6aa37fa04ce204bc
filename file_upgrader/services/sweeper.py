import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from file_upgrader.clients.interfaces import ConversionService
from file_upgrader.config import Settings
from file_upgrader.core.events.batch_events import WorkItemStatusEvent
from file_upgrader.core.events.event_bus import DomainEventBus
from file_upgrader.core.exceptions import UpgraderError
from file_upgrader.core.job_repository import JobRepository
from file_upgrader.core.task_state_machine import TaskStateMachine
from file_upgrader.models import FileTaskStatus, WorkItem, utc_now
from file_upgrader.services.work_item_registry import WorkItemRegistry

TIMED_OUT = "Conversion timed out"


class StalenessSweeper:
    """
    Periodic cleanup: expires work items whose completion never arrived and
    evicts finished batches nobody is looking at any more.
    """

    def __init__(
        self,
        settings: Settings,
        registry: WorkItemRegistry,
        job_repository: JobRepository,
        state_machine: TaskStateMachine,
        conversion_service: ConversionService,
        event_bus: DomainEventBus,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._settings = settings
        self._registry = registry
        self._repository = job_repository
        self._state_machine = state_machine
        self._conversion_service = conversion_service
        self._event_bus = event_bus
        self._clock = clock
        self._work_item_max_age = timedelta(hours=settings.work_item_max_age_hours)
        self._retention = timedelta(seconds=settings.finished_batch_retention_seconds)
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None:
            self._running = True
            self._task = asyncio.create_task(self._run())
            logging.info(f"StalenessSweeper startet (interval {self._settings.sweep_interval_seconds}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self._settings.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logging.error(f"Fejl under sweep: {e}", exc_info=True)

    async def sweep(self) -> None:
        expired = await self.expire_work_items()
        evicted = await self.evict_finished_batches()
        if expired or evicted:
            logging.info(f"Sweep: {len(expired)} work item(s) expired, {evicted} batch(es) evicted")

    async def expire_work_items(self) -> List[WorkItem]:
        expired = await self._registry.expired(self._work_item_max_age)
        for work_item in expired:
            logging.warning(
                f"Work item {work_item.work_item_id} got no completion within "
                f"{self._settings.work_item_max_age_hours}h, expiring it"
            )
            try:
                await self._conversion_service.cancel(work_item.work_item_id)
            except Exception as e:
                logging.warning(f"Could not cancel work item {work_item.work_item_id}: {e}")

            if work_item.batch_id is not None and work_item.file_index is not None:
                try:
                    await self._state_machine.transition(
                        batch_id=work_item.batch_id,
                        file_index=work_item.file_index,
                        new_status=FileTaskStatus.FAILED,
                        last_error=TIMED_OUT,
                    )
                except UpgraderError as e:
                    logging.info(f"Task of expired work item {work_item.work_item_id} not updated: {e}")

            await self._event_bus.publish(
                WorkItemStatusEvent(
                    work_item_id=work_item.work_item_id,
                    status="Failed",
                    batch_id=work_item.batch_id,
                    error=TIMED_OUT,
                )
            )
        return expired

    async def evict_finished_batches(self) -> int:
        """
        Terminal batches are kept for the retention period after their status was
        read, or twice that long after finishing when nobody ever read it.
        """
        now = self._clock()
        evicted = 0
        for job in await self._repository.get_all():
            if not job.is_terminal or job.finished_at is None:
                continue
            if job.acknowledged_at is not None:
                expired = now - job.acknowledged_at >= self._retention
            else:
                expired = now - job.finished_at >= self._retention * 2
            if expired and await self._repository.remove(job.batch_id):
                logging.info(f"Evicted finished batch {job.batch_id} ({job.status.value})")
                evicted += 1
        return evicted
