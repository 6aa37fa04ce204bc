"""
Tests for the DomainEventBus.
"""

import asyncio
from dataclasses import dataclass
from unittest.mock import Mock, patch

import pytest

from file_upgrader.core.events.batch_events import BatchCreatedEvent, BatchFinishedEvent
from file_upgrader.core.events.domain_event import DomainEvent
from file_upgrader.core.events.event_bus import DomainEventBus


@pytest.mark.asyncio
async def test_subscribe_and_publish():
    """Test that a handler is called when its subscribed event is published."""
    bus = DomainEventBus()
    handler_mock = Mock()

    async def async_handler(event: DomainEvent):
        handler_mock(event)

    await bus.subscribe(BatchCreatedEvent, async_handler)

    event_to_publish = BatchCreatedEvent(batch_id=1, total_files=3)
    await bus.publish(event_to_publish)

    handler_mock.assert_called_once_with(event_to_publish)


@pytest.mark.asyncio
async def test_publish_to_correct_handlers_only():
    """Test that only handlers for the specific event type are called."""
    bus = DomainEventBus()
    created_mock = Mock()
    finished_mock = Mock()

    async def on_created(event):
        created_mock(event)

    async def on_finished(event):
        finished_mock(event)

    await bus.subscribe(BatchCreatedEvent, on_created)
    await bus.subscribe(BatchFinishedEvent, on_finished)

    event = BatchCreatedEvent(batch_id=1, total_files=1)
    await bus.publish(event)

    created_mock.assert_called_once_with(event)
    finished_mock.assert_not_called()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    bus = DomainEventBus()
    handler_mock = Mock()

    async def handler(event):
        handler_mock(event)

    await bus.subscribe(BatchCreatedEvent, handler)
    await bus.unsubscribe(BatchCreatedEvent, handler)
    await bus.publish(BatchCreatedEvent(batch_id=1, total_files=1))

    handler_mock.assert_not_called()


@pytest.mark.asyncio
async def test_publish_with_no_subscribers():
    bus = DomainEventBus()

    try:
        await bus.publish(BatchCreatedEvent(batch_id=1, total_files=1))
    except Exception as e:
        pytest.fail(f"Publishing with no subscribers raised an exception: {e}")


@pytest.mark.asyncio
async def test_failing_handler_does_not_stop_others():
    """Test that if one handler fails, other handlers are still executed."""
    bus = DomainEventBus()
    handler_success_mock = Mock()
    handler_fail_mock = Mock()

    async def success_handler(event):
        handler_success_mock(event)
        await asyncio.sleep(0.01)

    async def failing_handler(event):
        handler_fail_mock(event)
        raise ValueError("Handler failed intentionally")

    await bus.subscribe(BatchFinishedEvent, failing_handler)
    await bus.subscribe(BatchFinishedEvent, success_handler)

    event = BatchFinishedEvent(batch_id=1, completed_files=1, failed_files=0)

    with patch("logging.error") as mock_log_error:
        await bus.publish(event)

        handler_fail_mock.assert_called_once_with(event)
        handler_success_mock.assert_called_once_with(event)

        mock_log_error.assert_called_once()
        log_args, _ = mock_log_error.call_args
        assert "Unhandled exception in handler 'failing_handler'" in log_args[0]
        assert "Handler failed intentionally" in log_args[0]


def test_domain_events_carry_id_and_timestamp():
    @dataclass(frozen=True)
    class SampleEvent(DomainEvent):
        value: int

    first = SampleEvent(value=1)
    second = SampleEvent(value=1)

    assert first.event_id != second.event_id
    assert first.timestamp.tzinfo is not None
    assert first.name == "SampleEvent"
