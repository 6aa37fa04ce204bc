import logging
from typing import Any, Dict, Union

from file_upgrader.clients.interfaces import ProgressSink
from file_upgrader.core.events.batch_events import (
    BatchCancelledEvent,
    BatchCreatedEvent,
    BatchFinishedEvent,
    FileTaskStatusChangedEvent,
    WorkItemStatusEvent,
)
from file_upgrader.core.events.event_bus import DomainEventBus
from file_upgrader.core.job_repository import JobRepository
from file_upgrader.services.tracker import build_snapshot

BULK_PROGRESS_TOPIC = "Bulk-Progress-Notification"
WORK_ITEM_TOPIC = "Workitem-Notification"

BatchEvent = Union[
    BatchCreatedEvent, FileTaskStatusChangedEvent, BatchFinishedEvent, BatchCancelledEvent
]


class ProgressBroadcaster:
    """Turns domain events into snapshots on the progress sink."""

    def __init__(
        self,
        sink: ProgressSink,
        job_repository: JobRepository,
        event_bus: DomainEventBus,
        preview_count: int = 10,
    ):
        self._sink = sink
        self._repository = job_repository
        self._event_bus = event_bus
        self._preview_count = preview_count

    async def subscribe(self) -> None:
        for event_type in (
            BatchCreatedEvent,
            FileTaskStatusChangedEvent,
            BatchFinishedEvent,
            BatchCancelledEvent,
        ):
            await self._event_bus.subscribe(event_type, self.handle_batch_event)
        await self._event_bus.subscribe(WorkItemStatusEvent, self.handle_work_item_event)
        logging.info("ProgressBroadcaster subscribed to batch and work item events")

    async def unsubscribe(self) -> None:
        for event_type in (
            BatchCreatedEvent,
            FileTaskStatusChangedEvent,
            BatchFinishedEvent,
            BatchCancelledEvent,
        ):
            await self._event_bus.unsubscribe(event_type, self.handle_batch_event)
        await self._event_bus.unsubscribe(WorkItemStatusEvent, self.handle_work_item_event)

    async def handle_batch_event(self, event: BatchEvent) -> None:
        job = await self._repository.get_by_id(event.batch_id)
        if job is None:
            logging.debug(f"{event.name} for unknown batch {event.batch_id}")
            return
        snapshot = build_snapshot(job, self._preview_count)
        self._publish(BULK_PROGRESS_TOPIC, snapshot.model_dump(mode="json", by_alias=True))

    async def handle_work_item_event(self, event: WorkItemStatusEvent) -> None:
        payload: Dict[str, Any] = {"WorkitemId": event.work_item_id, "Status": event.status}
        if event.error:
            payload["Error"] = event.error
        self._publish(WORK_ITEM_TOPIC, payload)

    def _publish(self, topic: str, payload: Dict[str, Any]) -> None:
        try:
            self._sink.publish(topic, payload)
        except Exception as e:
            logging.warning(f"Could not publish to {topic}: {e}")
