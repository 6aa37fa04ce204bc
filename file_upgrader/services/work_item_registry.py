import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Dict, Iterable, List, Optional, Set

from file_upgrader.models import WorkItem, utc_now


class WorkItemRegistry:
    """
    Correlation map from a conversion service work item id to everything needed
    to finish the job when the completion signal arrives.

    Every entry is removed exactly once: either by resolving() when the signal
    is handled, or explicitly on cancellation and expiry. An entry that is being
    resolved belongs to its resolver; remove(), remove_for_batch() and expired()
    leave it alone.
    """

    def __init__(self):
        self._items: Dict[str, WorkItem] = {}
        self._lock = asyncio.Lock()
        self._id_locks: Dict[str, asyncio.Lock] = {}
        self._resolving: Set[str] = set()
        logging.info("WorkItemRegistry initialized")

    async def register(self, work_item: WorkItem) -> None:
        async with self._lock:
            if work_item.work_item_id in self._items:
                logging.warning(f"Work item {work_item.work_item_id} already registered, replacing")
            self._items[work_item.work_item_id] = work_item

    async def get(self, work_item_id: str) -> Optional[WorkItem]:
        async with self._lock:
            return self._items.get(work_item_id)

    @asynccontextmanager
    async def resolving(self, work_item_id: str) -> AsyncIterator[Optional[WorkItem]]:
        """
        Serializes handling of one work item id and removes the entry on exit.

        Yields None when the id is unknown (already handled, cancelled or expired).
        A duplicate signal waiting on the same id therefore sees None once the
        first handler is done.
        """
        async with self._lock:
            id_lock = self._id_locks.setdefault(work_item_id, asyncio.Lock())

        async with id_lock:
            async with self._lock:
                work_item = self._items.get(work_item_id)
                if work_item is not None:
                    self._resolving.add(work_item_id)
            try:
                yield work_item
            finally:
                async with self._lock:
                    self._items.pop(work_item_id, None)
                    self._resolving.discard(work_item_id)
                    # Waiters keep their reference; later arrivals find no entry anyway
                    self._id_locks.pop(work_item_id, None)

    async def remove(self, work_item_id: str) -> Optional[WorkItem]:
        """Removes an idle entry. Returns None when unknown or currently being resolved."""
        async with self._lock:
            if work_item_id in self._resolving:
                logging.info(f"Work item {work_item_id} is being resolved, not removed")
                return None
            return self._items.pop(work_item_id, None)

    async def resolving_for_batch(self, batch_id: int) -> Set[int]:
        """File indexes of a batch whose completion is being handled right now."""
        async with self._lock:
            return {
                self._items[work_item_id].file_index
                for work_item_id in self._resolving
                if work_item_id in self._items
                and self._items[work_item_id].batch_id == batch_id
                and self._items[work_item_id].file_index is not None
            }

    async def remove_for_batch(self, batch_id: int) -> List[WorkItem]:
        async with self._lock:
            removed = [
                item
                for item in self._items.values()
                if item.batch_id == batch_id and item.work_item_id not in self._resolving
            ]
            for item in removed:
                del self._items[item.work_item_id]
        if removed:
            logging.info(f"Removed {len(removed)} work item(s) of batch {batch_id}")
        return removed

    async def expired(self, max_age: timedelta) -> List[WorkItem]:
        """Removes and returns idle work items submitted longer than max_age ago."""
        cutoff = utc_now() - max_age
        async with self._lock:
            stale = [
                item
                for item in self._items.values()
                if item.submitted_at < cutoff and item.work_item_id not in self._resolving
            ]
            for item in stale:
                del self._items[item.work_item_id]
        return stale

    async def list(self) -> List[WorkItem]:
        async with self._lock:
            return list(self._items.values())

    async def count(self) -> int:
        async with self._lock:
            return len(self._items)

    async def restore(self, work_items: Iterable[WorkItem]) -> int:
        """Loads work items persisted by a previous process. Existing ids win."""
        restored = 0
        async with self._lock:
            for item in work_items:
                if item.work_item_id not in self._items:
                    self._items[item.work_item_id] = item
                    restored += 1
        return restored
