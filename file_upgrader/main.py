import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request

from .api import bulk, callbacks, websockets
from .dependencies import (
    close_clients,
    get_orchestrator,
    get_scheduler,
    get_settings,
    get_work_item_registry,
)
from .logging_config import setup_logging
from .services.scheduler import ConversionScheduler
from .services.work_item_registry import WorkItemRegistry

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    setup_logging(settings)

    logging.info("File Upgrader starting up...")
    logging.info(f"Design Automation activity: {settings.activity_id}")
    logging.info(f"Completion webhook: {settings.webhook_url}")
    logging.info(f"Max concurrent conversions: {settings.max_concurrent_conversions}")

    orchestrator = get_orchestrator()
    await orchestrator.start()

    yield

    # Shutdown
    logging.info("File Upgrader shutting down...")
    await orchestrator.shutdown()
    await close_clients()
    logging.info("Alle background tasks stoppet")


app = FastAPI(
    title="File Upgrader",
    description="Bulk upgrade of Revit files in BIM 360 / ACC through Design Automation",
    version="0.1.0",
    lifespan=lifespan,
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    logging.info(
        f"Incoming request: {request.method} {request.url.path}",
        extra={
            "operation": "http_request",
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else "unknown",
        },
    )

    response = await call_next(request)

    logging.info(
        f"Response: {response.status_code}",
        extra={
            "operation": "http_response",
            "status_code": response.status_code,
            "path": request.url.path,
        },
    )

    return response


app.include_router(bulk.router)
app.include_router(callbacks.router)
app.include_router(websockets.router)


@app.get("/")
async def root():
    return {"status": "ok", "message": "File Upgrader er kørende"}


@app.get("/health")
async def health(
    scheduler: ConversionScheduler = Depends(get_scheduler),
    registry: WorkItemRegistry = Depends(get_work_item_registry),
):
    """Detaljeret health check."""
    return {
        "status": "healthy",
        "service": "file-upgrader",
        "queued_tasks": scheduler.queued,
        "outstanding_work_items": await registry.count(),
    }


if __name__ == "__main__":
    uvicorn.run(
        "file_upgrader.main:app", host="0.0.0.0", port=8080, reload=False, log_level="info"
    )
