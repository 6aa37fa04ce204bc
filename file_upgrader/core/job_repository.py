"""
Job Repository - A pure data access layer for BulkJob objects.
"""

import asyncio
import itertools
import logging
from typing import Dict, List, Optional

from file_upgrader.models import BulkJob


class JobRepository:
    """
    In-memory store for BulkJob objects, safe for concurrent asyncio access.

    Also hands out batch ids: monotonic and unique for the lifetime of the process.
    """

    def __init__(self):
        self._jobs_by_id: Dict[int, BulkJob] = {}
        self._batch_ids = itertools.count(1)
        self._lock = asyncio.Lock()
        logging.info("JobRepository initialized")

    def next_batch_id(self) -> int:
        return next(self._batch_ids)

    async def get_by_id(self, batch_id: int) -> Optional[BulkJob]:
        async with self._lock:
            return self._jobs_by_id.get(batch_id)

    async def get_all(self) -> List[BulkJob]:
        async with self._lock:
            return list(self._jobs_by_id.values())

    async def add(self, job: BulkJob) -> None:
        async with self._lock:
            if job.batch_id in self._jobs_by_id:
                logging.error(
                    f"Batch {job.batch_id} already exists in repository. Use update() to modify."
                )
                return
            self._jobs_by_id[job.batch_id] = job

    async def update(self, job: BulkJob) -> None:
        async with self._lock:
            if job.batch_id not in self._jobs_by_id:
                logging.warning(f"Batch {job.batch_id} does not exist in repository. Cannot update.")
                return
            self._jobs_by_id[job.batch_id] = job

    async def remove(self, batch_id: int) -> bool:
        async with self._lock:
            return self._jobs_by_id.pop(batch_id, None) is not None

    async def count(self) -> int:
        async with self._lock:
            return len(self._jobs_by_id)
