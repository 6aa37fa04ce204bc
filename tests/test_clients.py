import json
from datetime import timedelta

import httpx
import pytest

from file_upgrader.clients.credentials import ApsCredentialProvider
from file_upgrader.clients.data_management import DataManagementClient, storage_url
from file_upgrader.clients.design_automation import DesignAutomationClient, build_work_item_body
from file_upgrader.core.exceptions import (
    AuthenticationError,
    ConversionSubmitError,
    DocumentBackendError,
    DocumentConflictError,
)
from file_upgrader.models import Credentials, NewVersionWrite, utc_now

from fakes import FakeCredentialProvider

USER = Credentials(access_token="user-token", refresh_token="refresh")


def mock_client(settings, handler, base_url=None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url or settings.aps_base_url, transport=httpx.MockTransport(handler)
    )


def test_work_item_body_maps_extension_to_output_argument():
    body = build_work_item_body(
        activity_id="nick.FileUpgraderAppActivity+dev",
        input_location="https://oss/in",
        output_location="https://oss/out",
        extension="RFA",
        callback_url="https://hook/api/callback/conversion",
        access_token="user-token",
    )

    arguments = body["arguments"]
    assert body["activityId"] == "nick.FileUpgraderAppActivity+dev"
    assert arguments["rvtFile"]["url"] == "https://oss/in"
    assert arguments["resultrfa"] == {
        "verb": "put",
        "url": "https://oss/out",
        "headers": {"Authorization": "Bearer user-token"},
    }
    assert arguments["onComplete"] == {"verb": "post", "url": "https://hook/api/callback/conversion"}


def test_work_item_body_rejects_unknown_extension():
    with pytest.raises(ConversionSubmitError):
        build_work_item_body("a", "in", "out", "dwg", "cb", "token")


@pytest.mark.asyncio
async def test_submit_returns_work_item_id(settings):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "wi-42", "status": "pending"})

    client = DesignAutomationClient(
        settings,
        FakeCredentialProvider(),
        client=mock_client(settings, handler, base_url=settings.design_automation_url),
    )

    work_item_id = await client.submit(
        "https://oss/in", "https://oss/out", {"extension": "rvt"}, "https://hook", USER
    )

    assert work_item_id == "wi-42"
    assert requests[0].url.path.endswith("/workitems")
    assert requests[0].headers["Authorization"] == "Bearer app-token"
    assert "resultrvt" in json.loads(requests[0].content)["arguments"]


@pytest.mark.asyncio
async def test_submit_rejection_carries_status_code(settings):
    client = DesignAutomationClient(
        settings,
        FakeCredentialProvider(),
        client=mock_client(settings, lambda request: httpx.Response(429, text="quota")),
    )

    with pytest.raises(ConversionSubmitError) as excinfo:
        await client.submit("in", "out", {"extension": "rvt"}, "https://hook", USER)
    assert excinfo.value.status_code == 429


@pytest.mark.asyncio
async def test_list_folder_follows_pages_and_keeps_items_only(settings):
    pages = {
        "/data/v1/projects/b.p/folders/f1/contents": {
            "data": [
                {"type": "folders", "id": "sub", "attributes": {"name": "Sub"}},
                {
                    "type": "items",
                    "id": "item-1",
                    "attributes": {"displayName": "a.rvt", "extension": {"type": "items:autodesk.bim360:File"}},
                },
            ],
            "links": {"next": {"href": "https://developer.api.autodesk.com/page2"}},
        },
        "/page2": {"data": [{"type": "items", "id": "item-2", "attributes": {"displayName": "b.rfa"}}]},
    }

    client = DataManagementClient(
        settings, client=mock_client(settings, lambda request: httpx.Response(200, json=pages[request.url.path]))
    )

    documents = await client.list_folder("b.p", "f1", USER)

    assert [(document.id, document.display_name) for document in documents] == [
        ("item-1", "a.rvt"),
        ("item-2", "b.rfa"),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, error",
    [(409, DocumentConflictError), (401, AuthenticationError), (403, AuthenticationError), (500, DocumentBackendError)],
)
async def test_backend_status_codes_map_to_errors(settings, status_code, error):
    client = DataManagementClient(
        settings, client=mock_client(settings, lambda request: httpx.Response(status_code, text="nope"))
    )
    write = NewVersionWrite(
        document_ref="item-1", display_name="a.rvt", storage_id="urn:x", version_type="v", target_version="2023"
    )

    with pytest.raises(error):
        await client.create_version("b.p", write, USER)


@pytest.mark.asyncio
async def test_create_version_records_upgrade_info(settings):
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"data": {"id": "urn:version:2"}})

    client = DataManagementClient(settings, client=mock_client(settings, handler))
    write = NewVersionWrite(
        document_ref="item-1", display_name="a.rvt", storage_id="urn:x", version_type="v", target_version="2023"
    )

    assert await client.create_version("b.p", write, USER) == "urn:version:2"
    upgrade_info = bodies[0]["data"]["attributes"]["extension"]["data"]["upgradeInfo"]
    assert upgrade_info["targetVersion"] == "2023"


def test_storage_url_from_storage_id():
    assert (
        storage_url("https://host", "urn:adsk.objects:os.object:wip.dm.prod/abc.rvt")
        == "https://host/oss/v2/buckets/wip.dm.prod/objects/abc.rvt"
    )
    with pytest.raises(DocumentBackendError):
        storage_url("https://host", "urn:broken")


@pytest.mark.asyncio
async def test_valid_token_is_not_refreshed(settings):
    def handler(request):
        raise AssertionError("token endpoint must not be called")

    provider = ApsCredentialProvider(settings, client=mock_client(settings, handler))

    assert await provider.refresh(USER) is USER


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed(settings):
    forms = []

    def handler(request: httpx.Request) -> httpx.Response:
        forms.append(request.content.decode())
        return httpx.Response(200, json={"access_token": "fresh", "refresh_token": "refresh-2", "expires_in": 3600})

    provider = ApsCredentialProvider(settings, client=mock_client(settings, handler))
    expiring = USER.model_copy(update={"expires_at": utc_now() + timedelta(seconds=30)})

    refreshed = await provider.refresh(expiring)

    assert refreshed.access_token == "fresh"
    assert refreshed.refresh_token == "refresh-2"
    assert "grant_type=refresh_token" in forms[0]


@pytest.mark.asyncio
async def test_expired_token_without_refresh_token_fails(settings):
    provider = ApsCredentialProvider(settings, client=mock_client(settings, lambda request: httpx.Response(200)))
    expired = Credentials(access_token="old", expires_at=utc_now() - timedelta(minutes=1))

    with pytest.raises(AuthenticationError):
        await provider.refresh(expired)


@pytest.mark.asyncio
async def test_service_token_is_cached(settings):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"access_token": "app", "expires_in": 3600})

    provider = ApsCredentialProvider(settings, client=mock_client(settings, handler))

    assert await provider.service_token() == "app"
    assert await provider.service_token() == "app"
    assert len(calls) == 1
