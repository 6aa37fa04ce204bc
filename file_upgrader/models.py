import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FileTaskStatus(str, Enum):
    """
    Status for one document in a batch.

    Workflow: Queued -> Processing -> Completed
    Retry: Processing -> Queued (submission failed, attempts left)
    Alternative: -> Failed (attempts exhausted, conversion or publish failed)
    Cancellation: Queued/Processing -> Cancelled
    """

    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class BatchStatus(str, Enum):
    ACTIVE = "Active"
    DONE = "Done"
    CANCELLED = "Cancelled"


class OperationKind(str, Enum):
    NEW_VERSION = "NewVersion"
    NEW_DOCUMENT = "NewDocument"


class Credentials(BaseModel):
    """Access/refresh token triple captured when a batch is submitted."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime = Field(default_factory=lambda: utc_now() + timedelta(hours=1))

    def is_expiring(self, margin_seconds: int = 0) -> bool:
        return self.expires_at - timedelta(seconds=margin_seconds) <= utc_now()


class StorageRef(BaseModel):
    """An object in the backend's storage service, e.g. 'urn:adsk.objects:os.object:wip.dm.prod/abc.rvt'."""

    id: str
    url: str


class VersionInfo(BaseModel):
    storage: StorageRef
    format_type: str


class DocumentSummary(BaseModel):
    id: str
    display_name: str
    item_type: str = "items:autodesk.bim360:File"


class NewVersionWrite(BaseModel):
    """Create a new version of an existing document."""

    model_config = ConfigDict(frozen=True)

    operation_kind: Literal["NewVersion"] = "NewVersion"
    document_ref: str
    display_name: str
    storage_id: str
    version_type: str
    target_version: Optional[str] = None


class NewDocumentWrite(BaseModel):
    """Create a new document (item with a first version) in a folder."""

    model_config = ConfigDict(frozen=True)

    operation_kind: Literal["NewDocument"] = "NewDocument"
    folder_ref: str
    display_name: str
    storage_id: str
    item_type: str
    version_type: str
    target_version: Optional[str] = None


PendingWrite = Annotated[
    Union[NewVersionWrite, NewDocumentWrite], Field(discriminator="operation_kind")
]


class WorkItem(BaseModel):
    """One outstanding conversion request, keyed by the service-assigned id."""

    work_item_id: str
    project_ref: str
    pending_write: PendingWrite
    credential_snapshot: Credentials
    file_ref: str
    batch_id: Optional[int] = None
    file_index: Optional[int] = None
    submitted_at: datetime = Field(default_factory=utc_now)


class FileTask(BaseModel):
    """One document queued for conversion. Owned by its BulkJob."""

    file_ref: str = Field(..., description="Data Management item id of the source document")
    display_name: str
    project_ref: str
    status: FileTaskStatus = FileTaskStatus.QUEUED
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    work_item_id: Optional[str] = None
    last_error: Optional[str] = None
    notice: Optional[str] = Field(
        default=None, description="Advisory message, e.g. already upgraded to the target version"
    )
    queued_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def extension(self) -> str:
        return self.display_name.rsplit(".", 1)[-1].lower() if "." in self.display_name else ""


class BatchOptions(BaseModel):
    target_version: str
    source_folder_ref: str
    destination_folder_ref: Optional[str] = None
    supported_extensions: List[str] = Field(default_factory=lambda: ["rvt", "rfa", "rte"])
    skip_already_upgraded: bool = False


class BulkJob(BaseModel):
    batch_id: int
    project_ref: str
    files: List[FileTask] = Field(default_factory=list)
    options: BatchOptions
    credentials: Credentials
    status: BatchStatus = BatchStatus.ACTIVE
    created_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    total_files: int = 0
    completed_files: int = 0
    failed_files: int = 0

    # Held while the batch's credentials are refreshed; refresh tokens are single-use
    _credentials_lock: asyncio.Lock = PrivateAttr(default_factory=asyncio.Lock)

    @property
    def credentials_lock(self) -> asyncio.Lock:
        return self._credentials_lock

    @property
    def is_done(self) -> bool:
        return self.completed_files + self.failed_files == self.total_files

    @property
    def is_terminal(self) -> bool:
        return self.status != BatchStatus.ACTIVE

    def count(self, status: FileTaskStatus) -> int:
        return sum(1 for task in self.files if task.status == status)


class FileSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str
    status: FileTaskStatus
    work_item_id: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None
    notice: Optional[str] = None


class BatchSnapshot(BaseModel):
    """Progress view of one batch; serialized with camelCase keys (batchId, totalFiles, ...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    batch_id: int
    status: BatchStatus
    total_files: int
    completed_files: int
    failed_files: int
    processing_files: int
    queued_files: int
    cancelled_files: int
    progress_percent: int
    created_at: datetime
    files: List[FileSnapshot]
    more_files: int = 0


class DeadLetter(BaseModel):
    batch_id: int
    file_ref: str
    display_name: str
    attempts: int
    error: Optional[str] = None
    failed_at: datetime = Field(default_factory=utc_now)


class CompletionSignal(BaseModel):
    """Webhook body posted by the conversion service when a work item finishes."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    report_url: Optional[str] = Field(default=None, alias="reportUrl")

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


class BulkUpgradeRequest(BaseModel):
    project_id: str = Field(..., alias="projectId")
    folder_id: str = Field(..., alias="folderId")
    destination_folder_id: Optional[str] = Field(default=None, alias="destinationFolderId")
    target_version: str = Field(..., alias="targetVersion")
    supported_types: Optional[List[str]] = Field(default=None, alias="supportedTypes")
    skip_already_upgraded: bool = Field(default=False, alias="skipAlreadyUpgraded")

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "projectId": "b.1234-5678",
                "folderId": "urn:adsk.wipprod:fs.folder:co.abc",
                "targetVersion": "2023",
                "supportedTypes": ["rvt", "rfa", "rte"],
            }
        },
    )


class SingleFileUpgradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: str = Field(..., alias="projectId")
    file_id: str = Field(..., alias="fileId")
    target_version: str = Field(..., alias="targetVersion")
    destination_folder_id: Optional[str] = Field(default=None, alias="destinationFolderId")
