from typing import Any, Dict, List, Protocol

from file_upgrader.models import (
    Credentials,
    DocumentSummary,
    NewDocumentWrite,
    NewVersionWrite,
    StorageRef,
    VersionInfo,
)


class ConversionService(Protocol):
    """Slow asynchronous conversion engine. Completion arrives later on the callback URL."""

    async def submit(
        self,
        input_location: str,
        output_location: str,
        format_args: Dict[str, Any],
        callback_url: str,
        credentials: Credentials,
    ) -> str:
        """Submits one conversion and returns the service-assigned work item id.

        Raises ConversionSubmitError when the service rejects the request.
        """

    async def cancel(self, job_id: str) -> None:
        """Best-effort cancellation; may be a no-op once the job has started."""

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        ...


class DocumentBackend(Protocol):
    async def create_version(
        self, project_ref: str, write: NewVersionWrite, credentials: Credentials
    ) -> str:
        """Returns the new version id. Raises DocumentConflictError on a name collision."""

    async def create_document(
        self, project_ref: str, write: NewDocumentWrite, credentials: Credentials
    ) -> str:
        """Returns the new document id. Raises DocumentConflictError on a name collision."""

    async def list_folder(
        self, project_ref: str, folder_ref: str, credentials: Credentials
    ) -> List[DocumentSummary]:
        ...

    async def allocate_storage(
        self, project_ref: str, folder_ref: str, name: str, credentials: Credentials
    ) -> StorageRef:
        ...

    async def get_latest_version(
        self, project_ref: str, document_ref: str, credentials: Credentials
    ) -> VersionInfo:
        ...

    async def list_versions(
        self, project_ref: str, document_ref: str, credentials: Credentials
    ) -> List[Dict[str, Any]]:
        ...

    async def get_document(
        self, project_ref: str, document_ref: str, credentials: Credentials
    ) -> DocumentSummary:
        ...

    async def get_parent_folder(
        self, project_ref: str, document_ref: str, credentials: Credentials
    ) -> str:
        ...


class CredentialProvider(Protocol):
    async def refresh(self, credentials: Credentials) -> Credentials:
        """Returns usable credentials for a snapshot, refreshing them when they are about to expire.

        Raises AuthenticationError when the snapshot cannot be refreshed.
        """

    async def service_token(self) -> str:
        """Application (two-legged) token used to talk to the conversion service."""


class ProgressSink(Protocol):
    def publish(self, topic: str, snapshot: Dict[str, Any]) -> None:
        """Fire-and-forget; never blocks and never acknowledges."""
