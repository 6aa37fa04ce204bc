import json
import logging
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os
from pydantic import TypeAdapter, ValidationError

from file_upgrader.config import Settings
from file_upgrader.core.task_state_machine import TaskStateMachine
from file_upgrader.models import WorkItem
from file_upgrader.services.progress_broadcaster import ProgressBroadcaster
from file_upgrader.services.scheduler import ConversionScheduler
from file_upgrader.services.sweeper import StalenessSweeper
from file_upgrader.services.websocket_manager import WebSocketManager
from file_upgrader.services.work_item_registry import WorkItemRegistry

_work_items_adapter = TypeAdapter(List[WorkItem])


class UpgradeOrchestrator:
    """
    Owns the background machinery: scheduler loop, staleness sweeper and the
    progress sink sender. Built once and started/stopped by the app lifespan.
    """

    def __init__(
        self,
        settings: Settings,
        scheduler: ConversionScheduler,
        sweeper: StalenessSweeper,
        broadcaster: ProgressBroadcaster,
        websocket_manager: WebSocketManager,
        registry: WorkItemRegistry,
        state_machine: TaskStateMachine,
    ):
        self._settings = settings
        self._scheduler = scheduler
        self._sweeper = sweeper
        self._broadcaster = broadcaster
        self._websocket_manager = websocket_manager
        self._registry = registry
        self._state_machine = state_machine
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    @property
    def snapshot_path(self) -> Optional[Path]:
        path = self._settings.work_item_snapshot_path
        return Path(path) if path else None

    async def start(self) -> None:
        if self._started:
            logging.warning("UpgradeOrchestrator er allerede startet")
            return

        await self._broadcaster.subscribe()
        self._websocket_manager.start_sender_task()

        restored = await self.restore_work_items()
        if restored:
            logging.info(f"Restored {restored} outstanding work item(s) from {self.snapshot_path}")

        self._scheduler.start()
        self._sweeper.start()
        self._started = True
        logging.info("UpgradeOrchestrator startet")

    async def shutdown(self) -> None:
        """Stops dispatching, waits for in-flight submissions and persists outstanding work items."""
        if not self._started:
            return

        logging.info("UpgradeOrchestrator shutting down...")
        await self._sweeper.stop()
        await self._scheduler.stop()
        await self._state_machine.wait_for_pending_events()

        outstanding = await self._registry.list()
        if outstanding:
            if self.snapshot_path:
                await self.persist_work_items(outstanding)
            else:
                for work_item in outstanding:
                    logging.warning(
                        f"Outstanding work item {work_item.work_item_id} ({work_item.pending_write.display_name}) "
                        "will be lost; its completion can no longer be published"
                    )

        await self._broadcaster.unsubscribe()
        self._websocket_manager.stop_sender_task()
        self._started = False
        logging.info("UpgradeOrchestrator stoppet")

    async def persist_work_items(self, work_items: List[WorkItem]) -> None:
        path = self.snapshot_path
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = _work_items_adapter.dump_json(work_items, indent=2).decode("utf-8")
        async with aiofiles.open(path, "w") as f:
            await f.write(payload)
        logging.info(f"Persisted {len(work_items)} outstanding work item(s) to {path}")

    async def restore_work_items(self) -> int:
        path = self.snapshot_path
        if path is None or not await aiofiles.os.path.exists(path):
            return 0

        async with aiofiles.open(path, "r") as f:
            content = await f.read()

        try:
            work_items = _work_items_adapter.validate_json(content)
        except (ValidationError, json.JSONDecodeError) as e:
            logging.error(f"Ignoring unreadable work item snapshot {path}: {e}")
            return 0

        # Batches do not survive a restart and batch ids start over, so drop the link
        restored = await self._registry.restore(
            item.model_copy(update={"batch_id": None, "file_index": None}) for item in work_items
        )
        await aiofiles.os.remove(path)
        return restored
