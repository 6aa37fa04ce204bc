from functools import lru_cache
from typing import Any, Dict

from file_upgrader.clients.credentials import ApsCredentialProvider
from file_upgrader.clients.data_management import DataManagementClient
from file_upgrader.clients.design_automation import DesignAutomationClient
from file_upgrader.core.events.event_bus import DomainEventBus
from file_upgrader.core.job_repository import JobRepository
from file_upgrader.core.task_state_machine import TaskStateMachine

from .config import Settings
from .services.orchestrator import UpgradeOrchestrator
from .services.progress_broadcaster import ProgressBroadcaster
from .services.publisher import ConflictResolvingPublisher
from .services.scheduler import ConversionScheduler
from .services.sweeper import StalenessSweeper
from .services.tracker import BulkJobTracker
from .services.websocket_manager import WebSocketManager
from .services.work_item_registry import WorkItemRegistry

# Global singleton instances
_singletons: Dict[str, Any] = {}


@lru_cache
def get_settings() -> Settings:
    """Hent Settings singleton instance."""
    return Settings()


def get_event_bus() -> DomainEventBus:
    if "event_bus" not in _singletons:
        _singletons["event_bus"] = DomainEventBus()
    return _singletons["event_bus"]


def get_job_repository() -> JobRepository:
    if "job_repository" not in _singletons:
        _singletons["job_repository"] = JobRepository()
    return _singletons["job_repository"]


def get_task_state_machine() -> TaskStateMachine:
    if "task_state_machine" not in _singletons:
        _singletons["task_state_machine"] = TaskStateMachine(
            job_repository=get_job_repository(), event_bus=get_event_bus()
        )
    return _singletons["task_state_machine"]


def get_work_item_registry() -> WorkItemRegistry:
    if "work_item_registry" not in _singletons:
        _singletons["work_item_registry"] = WorkItemRegistry()
    return _singletons["work_item_registry"]


def get_credential_provider() -> ApsCredentialProvider:
    if "credential_provider" not in _singletons:
        _singletons["credential_provider"] = ApsCredentialProvider(get_settings())
    return _singletons["credential_provider"]


def get_conversion_service() -> DesignAutomationClient:
    if "conversion_service" not in _singletons:
        _singletons["conversion_service"] = DesignAutomationClient(
            settings=get_settings(), credential_provider=get_credential_provider()
        )
    return _singletons["conversion_service"]


def get_document_backend() -> DataManagementClient:
    if "document_backend" not in _singletons:
        _singletons["document_backend"] = DataManagementClient(get_settings())
    return _singletons["document_backend"]


def get_websocket_manager() -> WebSocketManager:
    if "websocket_manager" not in _singletons:
        _singletons["websocket_manager"] = WebSocketManager()
    return _singletons["websocket_manager"]


def get_scheduler() -> ConversionScheduler:
    if "scheduler" not in _singletons:
        _singletons["scheduler"] = ConversionScheduler(
            settings=get_settings(),
            job_repository=get_job_repository(),
            state_machine=get_task_state_machine(),
            registry=get_work_item_registry(),
            conversion_service=get_conversion_service(),
            document_backend=get_document_backend(),
            credential_provider=get_credential_provider(),
            event_bus=get_event_bus(),
        )
    return _singletons["scheduler"]


def get_publisher() -> ConflictResolvingPublisher:
    if "publisher" not in _singletons:
        _singletons["publisher"] = ConflictResolvingPublisher(
            registry=get_work_item_registry(),
            job_repository=get_job_repository(),
            state_machine=get_task_state_machine(),
            document_backend=get_document_backend(),
            credential_provider=get_credential_provider(),
            event_bus=get_event_bus(),
        )
    return _singletons["publisher"]


def get_tracker() -> BulkJobTracker:
    if "tracker" not in _singletons:
        _singletons["tracker"] = BulkJobTracker(
            settings=get_settings(),
            job_repository=get_job_repository(),
            state_machine=get_task_state_machine(),
            scheduler=get_scheduler(),
            registry=get_work_item_registry(),
            conversion_service=get_conversion_service(),
            document_backend=get_document_backend(),
            event_bus=get_event_bus(),
        )
    return _singletons["tracker"]


def get_progress_broadcaster() -> ProgressBroadcaster:
    if "progress_broadcaster" not in _singletons:
        _singletons["progress_broadcaster"] = ProgressBroadcaster(
            sink=get_websocket_manager(),
            job_repository=get_job_repository(),
            event_bus=get_event_bus(),
            preview_count=get_settings().progress_preview_count,
        )
    return _singletons["progress_broadcaster"]


def get_sweeper() -> StalenessSweeper:
    if "sweeper" not in _singletons:
        _singletons["sweeper"] = StalenessSweeper(
            settings=get_settings(),
            registry=get_work_item_registry(),
            job_repository=get_job_repository(),
            state_machine=get_task_state_machine(),
            conversion_service=get_conversion_service(),
            event_bus=get_event_bus(),
        )
    return _singletons["sweeper"]


def get_orchestrator() -> UpgradeOrchestrator:
    if "orchestrator" not in _singletons:
        _singletons["orchestrator"] = UpgradeOrchestrator(
            settings=get_settings(),
            scheduler=get_scheduler(),
            sweeper=get_sweeper(),
            broadcaster=get_progress_broadcaster(),
            websocket_manager=get_websocket_manager(),
            registry=get_work_item_registry(),
            state_machine=get_task_state_machine(),
        )
    return _singletons["orchestrator"]


async def close_clients() -> None:
    """Closes the httpx clients that were actually created."""
    for name in ("conversion_service", "document_backend", "credential_provider"):
        client = _singletons.get(name)
        if client is not None:
            await client.aclose()


def reset_singletons() -> None:
    global _singletons
    _singletons.clear()
