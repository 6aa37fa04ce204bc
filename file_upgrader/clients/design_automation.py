import logging
from typing import Any, Dict, Optional

import httpx

from file_upgrader.clients.interfaces import CredentialProvider
from file_upgrader.config import Settings
from file_upgrader.core.exceptions import ConversionSubmitError
from file_upgrader.models import Credentials

# Output argument name the FileUpgrader activity expects per input extension
OUTPUT_ARGUMENTS = {
    "rvt": "resultrvt",
    "rfa": "resultrfa",
    "rte": "resultrte",
}


def build_work_item_body(
    activity_id: str,
    input_location: str,
    output_location: str,
    extension: str,
    callback_url: str,
    access_token: str,
) -> Dict[str, Any]:
    output_argument = OUTPUT_ARGUMENTS.get(extension.lower())
    if output_argument is None:
        raise ConversionSubmitError(f"Unsupported file extension for conversion: '{extension}'")

    headers = {"Authorization": f"Bearer {access_token}"}
    return {
        "activityId": activity_id,
        "arguments": {
            "rvtFile": {
                "url": input_location,
                "headers": headers,
            },
            output_argument: {
                "verb": "put",
                "url": output_location,
                "headers": headers,
            },
            "onComplete": {
                "verb": "post",
                "url": callback_url,
            },
        },
    }


class DesignAutomationClient:
    """Conversion service adapter for Design Automation for Revit work items."""

    def __init__(
        self,
        settings: Settings,
        credential_provider: CredentialProvider,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._credential_provider = credential_provider
        self._client = client or httpx.AsyncClient(
            base_url=settings.design_automation_url, timeout=settings.http_timeout_seconds
        )

    async def submit(
        self,
        input_location: str,
        output_location: str,
        format_args: Dict[str, Any],
        callback_url: str,
        credentials: Credentials,
    ) -> str:
        body = build_work_item_body(
            activity_id=format_args.get("activity_id", self._settings.activity_id),
            input_location=input_location,
            output_location=output_location,
            extension=format_args["extension"],
            callback_url=callback_url,
            access_token=credentials.access_token,
        )

        try:
            response = await self._client.post(
                "/workitems", json=body, headers=await self._auth_headers()
            )
        except httpx.HTTPError as e:
            raise ConversionSubmitError(f"Conversion service unreachable: {e}") from e

        if response.status_code >= 400:
            logging.warning(
                f"Work item submission rejected: {response.status_code} {response.text}"
            )
            raise ConversionSubmitError(
                f"Conversion service rejected work item: {response.status_code}",
                status_code=response.status_code,
            )

        work_item_id = response.json().get("id")
        if not work_item_id:
            raise ConversionSubmitError("Conversion service response carried no work item id")

        logging.info(f"Submitted the workitem: {work_item_id}")
        return work_item_id

    async def cancel(self, job_id: str) -> None:
        response = await self._client.delete(
            f"/workitems/{job_id}", headers=await self._auth_headers()
        )
        if response.status_code >= 400:
            raise ConversionSubmitError(
                f"Cancelling work item {job_id} failed: {response.status_code}",
                status_code=response.status_code,
            )
        logging.info(f"The workitem: {job_id} is cancelled")

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        response = await self._client.get(
            f"/workitems/{job_id}", headers=await self._auth_headers()
        )
        if response.status_code >= 400:
            raise ConversionSubmitError(
                f"Work item {job_id} status query failed: {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    async def _auth_headers(self) -> Dict[str, str]:
        token = await self._credential_provider.service_token()
        return {"Authorization": f"Bearer {token}"}

    async def aclose(self) -> None:
        await self._client.aclose()
