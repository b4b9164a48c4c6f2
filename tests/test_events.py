"""
Tests for the Event System (Observer Pattern)

Tests payload serialization, subscription management and handler isolation.
"""

import pytest
from datetime import datetime
from unittest.mock import Mock

from repair_core.events import DomainEvent, EventPayload, EventDispatcher


def patch_event(case_id="CASE-1"):
    return EventPayload(
        event_type=DomainEvent.CASE_CONTEXT_PATCHED,
        entity_type="case",
        entity_id=case_id,
        data={"case_id": case_id, "patch": {"quotation": {"status": "approved"}}}
    )


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = patch_event()

        assert event.event_type == DomainEvent.CASE_CONTEXT_PATCHED
        assert event.entity_id == "CASE-1"
        assert isinstance(event.timestamp, datetime)
        assert event.timestamp.tzinfo is not None
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        original = patch_event()

        event_dict = original.to_dict()
        assert event_dict['event_type'] == "case.context_patched"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.data == original.data
        assert restored.timestamp == original.timestamp
        assert restored.event_id == original.event_id


class TestEventDispatcher:
    """Test subscription and publishing"""

    def test_subscribe_and_publish(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.CASE_CONTEXT_PATCHED, handler)

        event = patch_event()
        dispatcher.publish(event)

        handler.assert_called_once_with(event)

    def test_handlers_only_receive_their_type(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.APPROVAL_REJECTED, handler)

        dispatcher.publish(patch_event())
        handler.assert_not_called()

    def test_global_handlers_run_after_specific_ones(self):
        dispatcher = EventDispatcher()
        calls = []
        dispatcher.subscribe(DomainEvent.CASE_CONTEXT_PATCHED, lambda e: calls.append("specific"))
        dispatcher.subscribe_all(lambda e: calls.append("global"))

        dispatcher.publish(patch_event())
        assert calls == ["specific", "global"]

    def test_failing_handler_does_not_stop_others(self):
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("boom"))
        healthy = Mock()
        dispatcher.subscribe(DomainEvent.CASE_CONTEXT_PATCHED, failing)
        dispatcher.subscribe(DomainEvent.CASE_CONTEXT_PATCHED, healthy)

        dispatcher.publish(patch_event())

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_unsubscribe(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.WORKFLOW_COMPLETED, handler)
        dispatcher.subscribe_all(handler)
        assert dispatcher.get_handler_count() == 2

        dispatcher.unsubscribe(DomainEvent.WORKFLOW_COMPLETED, handler)
        dispatcher.unsubscribe_all(handler)
        dispatcher.unsubscribe(DomainEvent.WORKFLOW_COMPLETED, handler)

        assert dispatcher.get_handler_count() == 0
        assert dispatcher.get_subscribed_events() == []

    def test_clear(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.WORKFLOW_STARTED, Mock())
        dispatcher.subscribe(DomainEvent.WORKFLOW_CANCELLED, Mock())

        assert dispatcher.get_handler_count(DomainEvent.WORKFLOW_STARTED) == 1
        assert set(dispatcher.get_subscribed_events()) == {
            DomainEvent.WORKFLOW_STARTED, DomainEvent.WORKFLOW_CANCELLED
        }

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0
