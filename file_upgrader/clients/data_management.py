import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from file_upgrader.config import Settings
from file_upgrader.core.exceptions import (
    AuthenticationError,
    DocumentBackendError,
    DocumentConflictError,
)
from file_upgrader.models import (
    Credentials,
    DocumentSummary,
    NewDocumentWrite,
    NewVersionWrite,
    StorageRef,
    VersionInfo,
    utc_now,
)

JSON_API = {"version": "1.0"}
JSON_API_CONTENT_TYPE = "application/vnd.api+json"
PROCESSED_BY = "APS Revit Upgrader"


def upgrade_extension_data(target_version: Optional[str], upgraded_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Custom version metadata recording which format a version was upgraded to."""
    if not target_version:
        return {}
    return {
        "upgradeInfo": {
            "targetVersion": target_version,
            "upgradeDate": (upgraded_at or utc_now()).isoformat(),
            "processedBy": PROCESSED_BY,
        }
    }


def build_version_body(write: NewVersionWrite) -> Dict[str, Any]:
    return {
        "jsonapi": JSON_API,
        "data": {
            "type": "versions",
            "attributes": {
                "name": write.display_name,
                "extension": {
                    "type": write.version_type,
                    "version": "1.0",
                    "data": upgrade_extension_data(write.target_version),
                },
            },
            "relationships": {
                "item": {"data": {"type": "items", "id": write.document_ref}},
                "storage": {"data": {"type": "objects", "id": write.storage_id}},
            },
        },
    }


def build_item_body(write: NewDocumentWrite) -> Dict[str, Any]:
    return {
        "jsonapi": JSON_API,
        "data": {
            "type": "items",
            "attributes": {
                "displayName": write.display_name,
                "extension": {"type": write.item_type, "version": "1.0"},
            },
            "relationships": {
                "tip": {"data": {"type": "versions", "id": "1"}},
                "parent": {"data": {"type": "folders", "id": write.folder_ref}},
            },
        },
        "included": [
            {
                "type": "versions",
                "id": "1",
                "attributes": {
                    "name": write.display_name,
                    "extension": {
                        "type": write.version_type,
                        "version": "1.0",
                        "data": upgrade_extension_data(write.target_version),
                    },
                },
                "relationships": {
                    "storage": {"data": {"type": "objects", "id": write.storage_id}},
                },
            }
        ],
    }


def build_storage_body(folder_ref: str, name: str) -> Dict[str, Any]:
    return {
        "jsonapi": JSON_API,
        "data": {
            "type": "objects",
            "attributes": {"name": name},
            "relationships": {"target": {"data": {"type": "folders", "id": folder_ref}}},
        },
    }


def storage_url(base_url: str, storage_id: str) -> str:
    """Maps 'urn:adsk.objects:os.object:<bucket>/<object>' to its OSS object URL."""
    _, _, location = storage_id.rpartition(":")
    bucket, _, object_name = location.partition("/")
    if not bucket or not object_name:
        raise DocumentBackendError(f"Malformed storage id: {storage_id}")
    return f"{base_url}/oss/v2/buckets/{bucket}/objects/{object_name}"


class DataManagementClient:
    """Document backend adapter for the APS Data Management API (BIM 360 / ACC)."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.aps_base_url, timeout=settings.http_timeout_seconds
        )

    async def create_version(
        self, project_ref: str, write: NewVersionWrite, credentials: Credentials
    ) -> str:
        logging.info(f"Creating new version of {write.document_ref} as '{write.display_name}'")
        body = await self._request(
            "POST",
            f"/data/v1/projects/{project_ref}/versions",
            credentials,
            json=build_version_body(write),
        )
        return body["data"]["id"]

    async def create_document(
        self, project_ref: str, write: NewDocumentWrite, credentials: Credentials
    ) -> str:
        logging.info(f"Creating new item '{write.display_name}' in folder {write.folder_ref}")
        body = await self._request(
            "POST",
            f"/data/v1/projects/{project_ref}/items",
            credentials,
            json=build_item_body(write),
        )
        return body["data"]["id"]

    async def list_folder(
        self, project_ref: str, folder_ref: str, credentials: Credentials
    ) -> List[DocumentSummary]:
        documents: List[DocumentSummary] = []
        url: Optional[str] = f"/data/v1/projects/{project_ref}/folders/{folder_ref}/contents"
        while url:
            body = await self._request("GET", url, credentials)
            for entry in body.get("data", []):
                if entry.get("type") != "items":
                    continue
                attributes = entry.get("attributes", {})
                documents.append(
                    DocumentSummary(
                        id=entry["id"],
                        display_name=attributes.get("displayName") or attributes.get("name", ""),
                        item_type=attributes.get("extension", {}).get(
                            "type", "items:autodesk.bim360:File"
                        ),
                    )
                )
            url = body.get("links", {}).get("next", {}).get("href")
        return documents

    async def allocate_storage(
        self, project_ref: str, folder_ref: str, name: str, credentials: Credentials
    ) -> StorageRef:
        body = await self._request(
            "POST",
            f"/data/v1/projects/{project_ref}/storage",
            credentials,
            json=build_storage_body(folder_ref, name),
        )
        storage_id = body["data"]["id"]
        return StorageRef(id=storage_id, url=storage_url(self._settings.aps_base_url, storage_id))

    async def get_latest_version(
        self, project_ref: str, document_ref: str, credentials: Credentials
    ) -> VersionInfo:
        versions = await self.list_versions(project_ref, document_ref, credentials)
        if not versions:
            raise DocumentBackendError(f"Document {document_ref} has no versions")
        latest = versions[0]
        storage_id = latest["relationships"]["storage"]["data"]["id"]
        return VersionInfo(
            storage=StorageRef(id=storage_id, url=storage_url(self._settings.aps_base_url, storage_id)),
            format_type=latest["attributes"]["extension"]["type"],
        )

    async def list_versions(
        self, project_ref: str, document_ref: str, credentials: Credentials
    ) -> List[Dict[str, Any]]:
        body = await self._request(
            "GET", f"/data/v1/projects/{project_ref}/items/{document_ref}/versions", credentials
        )
        return body.get("data", [])

    async def get_document(
        self, project_ref: str, document_ref: str, credentials: Credentials
    ) -> DocumentSummary:
        body = await self._request(
            "GET", f"/data/v1/projects/{project_ref}/items/{document_ref}", credentials
        )
        attributes = body["data"]["attributes"]
        return DocumentSummary(
            id=body["data"]["id"],
            display_name=attributes["displayName"],
            item_type=attributes["extension"]["type"],
        )

    async def get_parent_folder(
        self, project_ref: str, document_ref: str, credentials: Credentials
    ) -> str:
        body = await self._request(
            "GET", f"/data/v1/projects/{project_ref}/items/{document_ref}/parent", credentials
        )
        return body["data"]["id"]

    async def _request(
        self, method: str, url: str, credentials: Credentials, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        if json is not None:
            headers["Content-Type"] = JSON_API_CONTENT_TYPE

        try:
            response = await self._client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise DocumentBackendError(f"Document backend unreachable: {e}") from e

        if response.status_code == 409:
            raise DocumentConflictError(
                f"Name conflict at {method} {url}", status_code=response.status_code
            )
        if response.status_code == 401:
            raise AuthenticationError("Authentication error - token expired")
        if response.status_code == 403:
            raise AuthenticationError("Permission error - check project permissions")
        if response.status_code >= 400:
            logging.warning(f"{method} {url} failed: {response.status_code} {response.text}")
            raise DocumentBackendError(
                f"API error: {response.status_code}", status_code=response.status_code
            )
        return response.json() if response.content else {}

    async def aclose(self) -> None:
        await self._client.aclose()
