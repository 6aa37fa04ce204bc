import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from file_upgrader.core.exceptions import (
    AuthenticationError,
    BatchNotFoundError,
    BatchValidationError,
    DocumentBackendError,
    InvalidBatchStateError,
)
from file_upgrader.dependencies import get_scheduler, get_tracker, get_work_item_registry
from file_upgrader.models import (
    BatchSnapshot,
    BulkUpgradeRequest,
    Credentials,
    DeadLetter,
    SingleFileUpgradeRequest,
    utc_now,
)
from file_upgrader.services.scheduler import ConversionScheduler
from file_upgrader.services.tracker import BulkJobTracker
from file_upgrader.services.work_item_registry import WorkItemRegistry

router = APIRouter(prefix="/api/upgrader", tags=["upgrader"])


async def get_request_credentials(
    authorization: Optional[str] = Header(default=None),
    x_refresh_token: Optional[str] = Header(default=None),
    x_token_expires_in: Optional[int] = Header(default=None),
) -> Credentials:
    """Credential snapshot from 'Authorization: Bearer <token>' plus optional refresh headers."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required - missing bearer token",
        )
    return Credentials(
        access_token=token.strip(),
        refresh_token=x_refresh_token,
        expires_at=utc_now() + timedelta(seconds=x_token_expires_in or 3600),
    )


def _backend_error(e: Exception) -> HTTPException:
    if isinstance(e, AuthenticationError):
        return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/bulk")
async def create_bulk_upgrade(
    request: BulkUpgradeRequest,
    credentials: Credentials = Depends(get_request_credentials),
    tracker: BulkJobTracker = Depends(get_tracker),
):
    """
    Starts a bulk upgrade of every supported file in a folder.

    HTTP Status Codes:
        200: Batch created
        400: Missing identifiers or no matching files
        401: Missing or rejected token
        502: Document backend unavailable
    """
    logging.info(
        f"Bulk upgrade requested for folder {request.folder_id}",
        extra={"operation": "api_bulk_create", "project_id": request.project_id},
    )
    try:
        job = await tracker.create_batch(request, credentials)
    except BatchValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (AuthenticationError, DocumentBackendError) as e:
        raise _backend_error(e)

    return {"success": True, "batchId": job.batch_id, "totalFiles": job.total_files}


@router.get("/bulk", response_model=List[BatchSnapshot])
async def list_bulk_upgrades(tracker: BulkJobTracker = Depends(get_tracker)):
    return await tracker.list_batches()


@router.get("/bulk/{batch_id}/status", response_model=BatchSnapshot)
async def get_bulk_status(batch_id: int, tracker: BulkJobTracker = Depends(get_tracker)):
    try:
        return await tracker.status(batch_id)
    except BatchNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.delete("/bulk/{batch_id}")
async def cancel_bulk_upgrade(batch_id: int, tracker: BulkJobTracker = Depends(get_tracker)):
    """Best-effort cancellation. Work items already running may still finish; their results are dropped."""
    logging.info(f"Cancel requested for batch {batch_id}", extra={"operation": "api_bulk_cancel"})
    try:
        cancelled = await tracker.cancel(batch_id)
    except BatchNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidBatchStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return {"success": True, "batchId": batch_id, "cancelledWorkItems": cancelled}


@router.post("/files")
async def upgrade_single_file(
    request: SingleFileUpgradeRequest,
    credentials: Credentials = Depends(get_request_credentials),
    tracker: BulkJobTracker = Depends(get_tracker),
):
    logging.info(f"Single file upgrade requested for {request.file_id}", extra={"operation": "api_file_upgrade"})
    try:
        job = await tracker.create_single_file(request, credentials)
    except BatchValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except (AuthenticationError, DocumentBackendError) as e:
        raise _backend_error(e)

    return {"success": True, "batchId": job.batch_id, "fileName": job.files[0].display_name}


@router.get("/work-items")
async def list_work_items(registry: WorkItemRegistry = Depends(get_work_item_registry)):
    """Outstanding work items. Credential snapshots are never returned."""
    work_items = await registry.list()
    return [
        work_item.model_dump(mode="json", exclude={"credential_snapshot"})
        for work_item in work_items
    ]


@router.get("/work-items/{work_item_id}")
async def get_work_item_status(work_item_id: str, tracker: BulkJobTracker = Depends(get_tracker)):
    try:
        return await tracker.work_item_status(work_item_id)
    except Exception as e:
        logging.warning(f"Status lookup for work item {work_item_id} failed: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.delete("/work-items/{work_item_id}")
async def cancel_work_item(work_item_id: str, tracker: BulkJobTracker = Depends(get_tracker)):
    work_item = await tracker.cancel_work_item(work_item_id)
    if work_item is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Work item {work_item_id} not found"
        )
    return {"success": True, "workItemId": work_item_id}


@router.get("/dead-letters", response_model=List[DeadLetter])
async def list_dead_letters(scheduler: ConversionScheduler = Depends(get_scheduler)):
    return scheduler.dead_letters()
