import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status

from file_upgrader.dependencies import get_publisher
from file_upgrader.models import CompletionSignal
from file_upgrader.services.publisher import ConflictResolvingPublisher

router = APIRouter(prefix="/api/callback", tags=["callbacks"])


@router.post("/conversion", status_code=status.HTTP_202_ACCEPTED)
async def conversion_completed(
    signal: CompletionSignal,
    background_tasks: BackgroundTasks,
    publisher: ConflictResolvingPublisher = Depends(get_publisher),
):
    """
    Completion webhook of the conversion service.

    Acknowledged immediately; the backend write happens after the response.
    """
    logging.info(
        f"Completion received for work item {signal.id}: {signal.status}",
        extra={"operation": "conversion_callback", "work_item_id": signal.id},
    )
    background_tasks.add_task(publisher.handle_completion, signal)
    return {"accepted": True, "workItemId": signal.id}
