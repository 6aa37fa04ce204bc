import asyncio
import logging
from datetime import timedelta
from typing import Optional

import httpx

from file_upgrader.config import Settings
from file_upgrader.core.exceptions import AuthenticationError
from file_upgrader.models import Credentials, utc_now


class ApsCredentialProvider:
    """
    Token handling against the APS authentication endpoint.

    refresh() renews a user's three-legged snapshot with its refresh token;
    service_token() caches the application's two-legged token.
    """

    TOKEN_PATH = "/authentication/v2/token"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.aps_base_url, timeout=settings.http_timeout_seconds
        )
        self._service_credentials: Optional[Credentials] = None
        self._lock = asyncio.Lock()

    async def refresh(self, credentials: Credentials) -> Credentials:
        if not credentials.access_token:
            raise AuthenticationError("Authentication error - missing token")

        if not credentials.is_expiring(self._settings.token_refresh_margin_seconds):
            return credentials

        if not credentials.refresh_token:
            raise AuthenticationError("Authentication error - token expired and no refresh token present")

        logging.info("Token expiring soon or expired, refreshing...")
        payload = await self._request_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": credentials.refresh_token,
            }
        )
        refreshed = Credentials(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token", credentials.refresh_token),
            expires_at=utc_now() + timedelta(seconds=int(payload.get("expires_in", 3600))),
        )
        logging.info("Token refreshed successfully")
        return refreshed

    async def service_token(self) -> str:
        async with self._lock:
            if self._service_credentials and not self._service_credentials.is_expiring(60):
                return self._service_credentials.access_token

            payload = await self._request_token(
                {
                    "grant_type": "client_credentials",
                    "scope": self._settings.aps_service_scopes,
                }
            )
            self._service_credentials = Credentials(
                access_token=payload["access_token"],
                expires_at=utc_now() + timedelta(seconds=int(payload.get("expires_in", 3600))),
            )
            return self._service_credentials.access_token

    async def _request_token(self, form: dict) -> dict:
        try:
            response = await self._client.post(
                self.TOKEN_PATH,
                data=form,
                auth=(self._settings.aps_client_id, self._settings.aps_client_secret),
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Authentication error - token endpoint unreachable: {e}") from e

        if response.status_code >= 400:
            logging.warning(
                f"Token request ({form['grant_type']}) failed: {response.status_code} {response.text}"
            )
            raise AuthenticationError(
                f"Authentication error - token request failed with {response.status_code}"
            )
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()
