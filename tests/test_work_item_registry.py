import asyncio
from datetime import timedelta

import pytest

from file_upgrader.models import Credentials, NewVersionWrite, WorkItem, utc_now
from file_upgrader.services.work_item_registry import WorkItemRegistry


def make_work_item(work_item_id: str, batch_id: int = 1, file_index: int = 0, age: timedelta = timedelta(0)) -> WorkItem:
    return WorkItem(
        work_item_id=work_item_id,
        project_ref="b.project",
        pending_write=NewVersionWrite(
            document_ref=f"item-{work_item_id}",
            display_name=f"{work_item_id}.rvt",
            storage_id="urn:x",
            version_type="versions:autodesk.bim360:File",
        ),
        credential_snapshot=Credentials(access_token="token"),
        file_ref=f"item-{work_item_id}",
        batch_id=batch_id,
        file_index=file_index,
        submitted_at=utc_now() - age,
    )


@pytest.mark.asyncio
async def test_resolving_yields_item_and_removes_it():
    registry = WorkItemRegistry()
    await registry.register(make_work_item("wi-1"))

    async with registry.resolving("wi-1") as work_item:
        assert work_item.work_item_id == "wi-1"

    assert await registry.get("wi-1") is None
    assert await registry.count() == 0


@pytest.mark.asyncio
async def test_resolving_removes_item_even_when_handler_fails():
    registry = WorkItemRegistry()
    await registry.register(make_work_item("wi-1"))

    with pytest.raises(RuntimeError):
        async with registry.resolving("wi-1"):
            raise RuntimeError("boom")

    assert await registry.count() == 0


@pytest.mark.asyncio
async def test_resolving_unknown_id_yields_none():
    registry = WorkItemRegistry()

    async with registry.resolving("missing") as work_item:
        assert work_item is None


@pytest.mark.asyncio
async def test_concurrent_resolving_of_same_id_sees_item_once():
    registry = WorkItemRegistry()
    await registry.register(make_work_item("wi-1"))
    seen = []

    async def handle():
        async with registry.resolving("wi-1") as work_item:
            await asyncio.sleep(0.01)
            seen.append(work_item)

    await asyncio.gather(handle(), handle(), handle())

    assert len([item for item in seen if item is not None]) == 1
    assert seen.count(None) == 2


@pytest.mark.asyncio
async def test_remove_for_batch_only_touches_that_batch():
    registry = WorkItemRegistry()
    await registry.register(make_work_item("wi-1", batch_id=1))
    await registry.register(make_work_item("wi-2", batch_id=1, file_index=1))
    await registry.register(make_work_item("wi-3", batch_id=2))

    removed = await registry.remove_for_batch(1)

    assert {item.work_item_id for item in removed} == {"wi-1", "wi-2"}
    assert [item.work_item_id for item in await registry.list()] == ["wi-3"]


@pytest.mark.asyncio
async def test_expired_removes_old_items():
    registry = WorkItemRegistry()
    await registry.register(make_work_item("old", age=timedelta(hours=25)))
    await registry.register(make_work_item("new", age=timedelta(hours=1)))

    expired = await registry.expired(timedelta(hours=24))

    assert [item.work_item_id for item in expired] == ["old"]
    assert [item.work_item_id for item in await registry.list()] == ["new"]


@pytest.mark.asyncio
async def test_restore_keeps_existing_entries():
    registry = WorkItemRegistry()
    current = make_work_item("wi-1", batch_id=7)
    await registry.register(current)

    restored = await registry.restore([make_work_item("wi-1", batch_id=1), make_work_item("wi-2")])

    assert restored == 1
    assert (await registry.get("wi-1")).batch_id == 7
    assert await registry.get("wi-2") is not None


@pytest.mark.asyncio
async def test_item_being_resolved_is_left_to_its_resolver():
    registry = WorkItemRegistry()
    await registry.register(make_work_item("wi-1", file_index=0, age=timedelta(days=2)))
    await registry.register(make_work_item("wi-2", file_index=1, age=timedelta(days=2)))

    async with registry.resolving("wi-1") as work_item:
        assert await registry.resolving_for_batch(1) == {0}
        assert [item.work_item_id for item in await registry.expired(timedelta(hours=24))] == ["wi-2"]
        assert await registry.remove_for_batch(1) == []
        assert await registry.remove("wi-1") is None
        assert work_item.work_item_id == "wi-1"

    assert await registry.resolving_for_batch(1) == set()
    assert await registry.count() == 0
