"""
External service clients.

Contracts (typing.Protocol) the orchestrator depends on, and the APS adapters
implementing them:

- ConversionService: DesignAutomationClient
- DocumentBackend: DataManagementClient
- CredentialProvider: ApsCredentialProvider
- ProgressSink: implemented by services.websocket_manager.WebSocketManager
"""

from .interfaces import ConversionService, CredentialProvider, DocumentBackend, ProgressSink
from .credentials import ApsCredentialProvider
from .data_management import DataManagementClient
from .design_automation import DesignAutomationClient

__all__ = [
    "ConversionService",
    "CredentialProvider",
    "DocumentBackend",
    "ProgressSink",
    "ApsCredentialProvider",
    "DataManagementClient",
    "DesignAutomationClient",
]
