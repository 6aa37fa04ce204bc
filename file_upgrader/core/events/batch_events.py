"""
Domain events raised for batches and their file tasks.
"""

from dataclasses import dataclass
from typing import Optional

from file_upgrader.core.events.domain_event import DomainEvent
from file_upgrader.models import BatchStatus, FileTaskStatus


@dataclass(frozen=True)
class BatchCreatedEvent(DomainEvent):
    batch_id: int
    total_files: int


@dataclass(frozen=True)
class FileTaskStatusChangedEvent(DomainEvent):
    """Published after every file task mutation, including attempt bookkeeping."""

    batch_id: int
    file_index: int
    display_name: str
    old_status: Optional[FileTaskStatus]
    new_status: FileTaskStatus


@dataclass(frozen=True)
class BatchFinishedEvent(DomainEvent):
    """Published once when a batch reaches Done."""

    batch_id: int
    completed_files: int
    failed_files: int


@dataclass(frozen=True)
class BatchCancelledEvent(DomainEvent):
    batch_id: int
    status: BatchStatus = BatchStatus.CANCELLED


@dataclass(frozen=True)
class WorkItemStatusEvent(DomainEvent):
    """Lifecycle notification for one work item (Submitted, Success, Completed, Failed, Cancelled)."""

    work_item_id: str
    status: str
    batch_id: Optional[int] = None
    error: Optional[str] = None
