import asyncio
from datetime import timedelta

import pytest

from file_upgrader.models import (
    BatchStatus,
    BulkUpgradeRequest,
    CompletionSignal,
    Credentials,
    FileTaskStatus,
    NewVersionWrite,
    WorkItem,
    utc_now,
)
from file_upgrader.services.sweeper import TIMED_OUT, StalenessSweeper

from fakes import build_pipeline, documents, wait_until

CREDENTIALS = Credentials(access_token="user-token")
REQUEST = BulkUpgradeRequest(projectId="b.project", folderId="folder-1", targetVersion="2023")


def make_sweeper(pipeline, clock=utc_now) -> StalenessSweeper:
    return StalenessSweeper(
        settings=pipeline.settings,
        registry=pipeline.registry,
        job_repository=pipeline.repository,
        state_machine=pipeline.state_machine,
        conversion_service=pipeline.conversion,
        event_bus=pipeline.event_bus,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_stale_work_items_fail_their_task(settings):
    pipeline = build_pipeline(settings)
    pipeline.backend.folders["folder-1"] = documents("a.rvt", "b.rvt")
    pipeline.scheduler.start()
    try:
        job = await pipeline.tracker.create_batch(REQUEST, CREDENTIALS)
        await wait_until(lambda: all(task.work_item_id for task in job.files))
    finally:
        await pipeline.scheduler.stop()

    stale_id = job.files[0].work_item_id
    stale = await pipeline.registry.get(stale_id)
    stale.submitted_at = utc_now() - timedelta(hours=25)

    expired = await make_sweeper(pipeline).expire_work_items()

    assert [item.work_item_id for item in expired] == [stale_id]
    assert pipeline.conversion.cancelled == [stale_id]
    assert job.files[0].status == FileTaskStatus.FAILED
    assert job.files[0].last_error == TIMED_OUT
    assert job.files[1].status == FileTaskStatus.PROCESSING
    assert await pipeline.registry.count() == 1


@pytest.mark.asyncio
async def test_expired_work_item_without_batch_is_just_dropped(settings):
    pipeline = build_pipeline(settings)
    await pipeline.registry.register(
        WorkItem(
            work_item_id="wi-orphan",
            project_ref="b.project",
            pending_write=NewVersionWrite(
                document_ref="item-x", display_name="x.rvt", storage_id="urn:x", version_type="v"
            ),
            credential_snapshot=CREDENTIALS,
            file_ref="item-x",
            submitted_at=utc_now() - timedelta(days=2),
        )
    )

    expired = await make_sweeper(pipeline).expire_work_items()

    assert len(expired) == 1
    assert await pipeline.registry.count() == 0


@pytest.mark.asyncio
async def test_acknowledged_batches_are_evicted_after_retention(settings):
    pipeline = build_pipeline(settings)
    pipeline.backend.folders["folder-1"] = documents("a.rvt")
    job = await pipeline.tracker.create_batch(REQUEST, CREDENTIALS)
    await pipeline.tracker.cancel(job.batch_id)
    await pipeline.tracker.status(job.batch_id)

    retention = timedelta(seconds=settings.finished_batch_retention_seconds)
    early = make_sweeper(pipeline, clock=lambda: job.acknowledged_at + retention / 2)
    assert await early.evict_finished_batches() == 0

    late = make_sweeper(pipeline, clock=lambda: job.acknowledged_at + retention)
    assert await late.evict_finished_batches() == 1
    assert await pipeline.repository.get_by_id(job.batch_id) is None


@pytest.mark.asyncio
async def test_unread_batches_are_kept_twice_as_long(settings):
    pipeline = build_pipeline(settings)
    pipeline.backend.folders["folder-1"] = documents("a.rvt")
    job = await pipeline.tracker.create_batch(REQUEST, CREDENTIALS)
    await pipeline.tracker.cancel(job.batch_id)

    retention = timedelta(seconds=settings.finished_batch_retention_seconds)
    assert await make_sweeper(pipeline, clock=lambda: job.finished_at + retention).evict_finished_batches() == 0
    assert await make_sweeper(pipeline, clock=lambda: job.finished_at + retention * 2).evict_finished_batches() == 1


@pytest.mark.asyncio
async def test_active_batches_are_never_evicted(settings):
    pipeline = build_pipeline(settings)
    pipeline.backend.folders["folder-1"] = documents("a.rvt")
    job = await pipeline.tracker.create_batch(REQUEST, CREDENTIALS)

    sweeper = make_sweeper(pipeline, clock=lambda: utc_now() + timedelta(days=30))
    await sweeper.sweep()

    assert (await pipeline.repository.get_by_id(job.batch_id)).status == BatchStatus.ACTIVE


@pytest.mark.asyncio
async def test_work_item_being_written_is_not_expired(settings):
    pipeline = build_pipeline(settings)
    pipeline.backend.folders["folder-1"] = documents("a.rvt")
    pipeline.scheduler.start()
    try:
        job = await pipeline.tracker.create_batch(REQUEST, CREDENTIALS)
        await wait_until(lambda: job.files[0].work_item_id)
    finally:
        await pipeline.scheduler.stop()

    write_started = asyncio.Event()
    release_write = asyncio.Event()
    create_version = pipeline.backend.create_version

    async def slow_create_version(project_ref, write, credentials):
        write_started.set()
        await release_write.wait()
        return await create_version(project_ref, write, credentials)

    pipeline.backend.create_version = slow_create_version
    work_item_id = job.files[0].work_item_id
    completion = asyncio.create_task(
        pipeline.publisher.handle_completion(CompletionSignal(id=work_item_id, status="success"))
    )
    await asyncio.wait_for(write_started.wait(), timeout=1)

    (await pipeline.registry.get(work_item_id)).submitted_at = utc_now() - timedelta(hours=25)
    assert await make_sweeper(pipeline).expire_work_items() == []
    assert pipeline.conversion.cancelled == []

    release_write.set()
    await completion

    assert job.files[0].status == FileTaskStatus.COMPLETED
    assert job.completed_files == 1
    assert job.failed_files == 0
    assert len(pipeline.backend.writes) == 1
    assert await pipeline.registry.count() == 0
