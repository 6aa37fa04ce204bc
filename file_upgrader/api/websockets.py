import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from file_upgrader.dependencies import get_tracker, get_websocket_manager
from file_upgrader.models import BatchStatus
from file_upgrader.services.progress_broadcaster import BULK_PROGRESS_TOPIC
from file_upgrader.services.tracker import BulkJobTracker
from file_upgrader.services.websocket_manager import WebSocketManager

router = APIRouter(prefix="/api/ws", tags=["websockets"])


@router.websocket("/live")
async def live_progress(
    websocket: WebSocket,
    ws_manager: WebSocketManager = Depends(get_websocket_manager),
    tracker: BulkJobTracker = Depends(get_tracker),
):
    """
    Live progress feed. A new client first receives the snapshot of every
    active batch; afterwards it gets the same notifications as everyone else.
    Sending "ping" answers "pong".
    """
    await ws_manager.connect(websocket)

    try:
        for snapshot in await tracker.list_batches():
            if snapshot.status == BatchStatus.ACTIVE:
                await websocket.send_json(
                    {"topic": BULK_PROGRESS_TOPIC, "data": snapshot.model_dump(mode="json", by_alias=True)}
                )

        while True:
            if await websocket.receive_text() == "ping":
                await websocket.send_text("pong")

    except WebSocketDisconnect:
        logging.debug("Live progress client closed the connection")
        ws_manager.disconnect(websocket)
