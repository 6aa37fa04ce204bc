"""
Pending writes: the backend request prepared at submission time and executed
only after the conversion succeeds.
"""

from typing import Any, Dict, Iterable, Optional

from file_upgrader.models import (
    BatchOptions,
    FileTask,
    NewDocumentWrite,
    NewVersionWrite,
    PendingWrite,
    StorageRef,
    VersionInfo,
)


def plan_write(
    task: FileTask,
    options: BatchOptions,
    version_info: VersionInfo,
    output_storage: StorageRef,
    item_type: Optional[str] = None,
) -> PendingWrite:
    """
    In-place upgrades become a new version of the source document; upgrades into
    another folder become a new document there.
    """
    destination = options.destination_folder_ref
    if not destination or destination == options.source_folder_ref:
        return NewVersionWrite(
            document_ref=task.file_ref,
            display_name=task.display_name,
            storage_id=output_storage.id,
            version_type=version_info.format_type,
            target_version=options.target_version,
        )

    return NewDocumentWrite(
        folder_ref=destination,
        display_name=task.display_name,
        storage_id=output_storage.id,
        item_type=item_type or "items:autodesk.bim360:File",
        version_type=version_info.format_type,
        target_version=options.target_version,
    )


def renamed(write: PendingWrite, display_name: str) -> PendingWrite:
    return write.model_copy(update={"display_name": display_name})


def as_new_version(write: NewDocumentWrite, document_ref: str) -> NewVersionWrite:
    """Rewrites a document creation as a new version of an existing document."""
    return NewVersionWrite(
        document_ref=document_ref,
        display_name=write.display_name,
        storage_id=write.storage_id,
        version_type=write.version_type,
        target_version=write.target_version,
    )


def is_already_upgraded(versions: Iterable[Dict[str, Any]], target_version: str) -> bool:
    """
    Advisory check: does any version carry upgradeInfo.targetVersion == target_version?

    The metadata is written by this service, so concurrent resubmissions can
    still slip through. Never rely on it for correctness.
    """
    for version in versions:
        extension = (version.get("attributes") or {}).get("extension") or {}
        upgrade_info = (extension.get("data") or {}).get("upgradeInfo") or {}
        if upgrade_info.get("targetVersion") == target_version:
            return True
    return False
