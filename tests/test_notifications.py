"""
Tests for Notification Engine Module

Tests queueing with template rendering and deduplication, async dispatch
through channel providers, retry backoff, abandonment, retention purge
and inbox management.
"""

import pytest
import asyncio
from datetime import timedelta

from repair_core.storage import InMemoryStorage
from repair_core.audit import AuditTrail, AuditEventType
from repair_core.clock import ManualClock
from repair_core.notifications import (
    NotificationEngine,
    NotificationChannel,
    NotificationStatus,
    NotificationTemplate,
    Notification,
    ChannelProvider,
    WebhookChannelProvider,
    render_template,
)


class MockChannelProvider(ChannelProvider):
    """Mock channel provider for testing"""

    def __init__(self, should_succeed: bool = True):
        self.should_succeed = should_succeed
        self.sent_notifications = []
        self.call_count = 0

    async def send(self, notification: Notification) -> bool:
        self.call_count += 1
        self.sent_notifications.append(notification)
        return self.should_succeed


class ExplodingChannelProvider(ChannelProvider):
    async def send(self, notification: Notification) -> bool:
        raise ConnectionError("gateway unreachable")


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def audit_trail(storage, clock):
    return AuditTrail(storage, clock=clock)


@pytest.fixture
def notification_engine(storage, audit_trail, clock):
    return NotificationEngine(storage, audit_trail, clock=clock, max_retries=2,
                              backoff_base_minutes=5, backoff_cap_minutes=240)


@pytest.fixture
def email_provider(notification_engine):
    provider = MockChannelProvider()
    notification_engine.register_provider(NotificationChannel.EMAIL, provider)
    return provider


def request_payload(**extra):
    payload = {"document_type_id": "quotation", "document_id": "DOC-1", "level": 1, "level_name": "Supervisor"}
    payload.update(extra)
    return payload


class TestTemplates:
    """Test template rendering"""

    def test_known_template_is_rendered(self, notification_engine):
        delivery_id = notification_engine.send(["sup"], "email", "approval_request", request_payload())

        notification = notification_engine.get_delivery(delivery_id)[0]
        assert notification.subject == "Approval required: quotation"
        assert "level 1 (Supervisor)" in notification.body

    def test_missing_placeholders_are_kept(self):
        assert render_template("Case {case_id} in {step_name}", {"case_id": "C1"}) == "Case C1 in {step_name}"

    def test_unknown_template(self, notification_engine):
        delivery_id = notification_engine.send(["tech"], "in_app", "parts_arrived", {"message": "Screen is in"})
        notification = notification_engine.get_delivery(delivery_id)[0]
        assert notification.subject == "Parts arrived"
        assert notification.body == "Screen is in"

    def test_custom_template(self, notification_engine):
        notification_engine.register_template(
            NotificationTemplate("pickup_ready", "Ready for pickup", "Device for case {case_id} is ready")
        )
        delivery_id = notification_engine.send(["cust"], "sms", "pickup_ready", {"case_id": "C9"})
        assert notification_engine.get_delivery(delivery_id)[0].body == "Device for case C9 is ready"


class TestSending:
    """Test queueing notifications"""

    def test_one_record_per_recipient(self, notification_engine):
        delivery_id = notification_engine.send(["a", "b", "a"], NotificationChannel.EMAIL,
                                               "approval_request", request_payload())

        records = notification_engine.get_delivery(delivery_id)
        assert sorted(n.recipient_id for n in records) == ["a", "b"]
        assert all(n.status == NotificationStatus.PENDING for n in records)

    def test_dedupe_key(self, notification_engine):
        first = notification_engine.send(["sup"], "email", "approval_reminder", request_payload(),
                                         dedupe_key="reminder:APR-1:1")
        second = notification_engine.send(["sup"], "email", "approval_reminder", request_payload(),
                                          dedupe_key="reminder:APR-1:1")

        assert first == second
        assert len(notification_engine.get_notifications("sup")) == 1

    def test_unknown_channel(self, notification_engine):
        with pytest.raises(ValueError):
            notification_engine.send(["sup"], "pigeon", "approval_request", request_payload())


class TestDispatch:
    """Test async delivery"""

    def test_dispatch_pending(self, notification_engine, email_provider):
        notification_engine.send(["a", "b"], "email", "approval_request", request_payload())

        result = asyncio.run(notification_engine.dispatch_pending())

        assert result == {"attempted": 2, "sent": 2, "failed": 0}
        assert email_provider.call_count == 2
        assert all(n.status == NotificationStatus.SENT for n in notification_engine.get_notifications("a"))

        again = asyncio.run(notification_engine.dispatch_pending())
        assert again["attempted"] == 0

    def test_in_app_provider_stores_inbox_entry(self, notification_engine, storage):
        notification_engine.send(["tech"], "in_app", "step_assigned", {"case_id": "C1", "step_name": "Inspection"})
        asyncio.run(notification_engine.dispatch_pending())

        entries = storage.load_all("in_app_notifications")
        assert len(entries) == 1
        assert entries[0]["subject"] == "Case C1 needs attention"

    def test_webhook_without_url_fails(self, notification_engine):
        notification_engine.register_provider(NotificationChannel.WEBHOOK, WebhookChannelProvider(url=""))
        notification_engine.send(["ops"], "webhook", "approval_request", request_payload())

        result = asyncio.run(notification_engine.dispatch_pending())
        assert result["failed"] == 1

    def test_provider_exception_is_recorded(self, notification_engine, clock):
        notification_engine.register_provider(NotificationChannel.SMS, ExplodingChannelProvider())
        delivery_id = notification_engine.send(["cust"], "sms", "approval_request", request_payload())

        asyncio.run(notification_engine.dispatch_pending())

        notification = notification_engine.get_delivery(delivery_id)[0]
        assert notification.status == NotificationStatus.FAILED
        assert notification.last_error == "gateway unreachable"
        assert notification.next_attempt_at == clock.now() + timedelta(minutes=5)


class TestRetry:
    """Test retry backoff and abandonment"""

    def test_backoff_delay(self, notification_engine):
        assert notification_engine.backoff_delay(0) == timedelta(minutes=5)
        assert notification_engine.backoff_delay(1) == timedelta(minutes=15)
        assert notification_engine.backoff_delay(2) == timedelta(minutes=45)
        assert notification_engine.backoff_delay(5) == timedelta(minutes=240)

    def test_retry_waits_for_backoff(self, notification_engine, clock):
        provider = MockChannelProvider(should_succeed=False)
        notification_engine.register_provider(NotificationChannel.EMAIL, provider)
        notification_engine.send(["sup"], "email", "approval_request", request_payload())
        asyncio.run(notification_engine.dispatch_pending())

        assert asyncio.run(notification_engine.retry_failed())["attempted"] == 0

        clock.advance(minutes=5)
        provider.should_succeed = True
        result = asyncio.run(notification_engine.retry_failed())
        assert result["attempted"] == 1
        assert result["succeeded"] == 1

        notification = notification_engine.get_notifications("sup")[0]
        assert notification.status == NotificationStatus.SENT
        assert notification.retry_count == 1

    def test_exhausted_retries_are_abandoned(self, notification_engine, clock, audit_trail):
        notification_engine.register_provider(NotificationChannel.EMAIL, MockChannelProvider(should_succeed=False))
        delivery_id = notification_engine.send(["sup"], "email", "approval_request", request_payload())
        asyncio.run(notification_engine.dispatch_pending())

        clock.advance(minutes=5)
        assert asyncio.run(notification_engine.retry_failed())["failed"] == 1
        clock.advance(minutes=15)
        assert asyncio.run(notification_engine.retry_failed())["failed"] == 1

        result = asyncio.run(notification_engine.retry_failed())
        assert result["abandoned"] == 1

        notification = notification_engine.get_delivery(delivery_id)[0]
        assert notification.status == NotificationStatus.ABANDONED
        events = audit_trail.get_events_for_entity("notification", notification.id)
        assert events[0].event_type == AuditEventType.NOTIFICATION_ABANDONED


class TestManagement:
    """Test inbox queries, read state, stats and purge"""

    def test_mark_as_read(self, notification_engine, email_provider):
        notification_engine.send(["sup"], "email", "approval_request", request_payload())
        asyncio.run(notification_engine.dispatch_pending())
        assert notification_engine.get_unread_count("sup") == 1

        notification = notification_engine.get_notifications("sup")[0]
        assert notification_engine.mark_as_read(notification.id)
        assert notification_engine.get_unread_count("sup") == 0
        assert notification_engine.get_notifications("sup", status=NotificationStatus.READ)[0].read_at is not None
        assert not notification_engine.mark_as_read("missing")

    def test_newest_first(self, notification_engine, clock):
        notification_engine.send(["sup"], "email", "approval_request", request_payload())
        clock.advance(hours=25)
        notification_engine.send(["sup"], "email", "approval_reminder", request_payload(hours_pending=25))

        templates = [n.template for n in notification_engine.get_notifications("sup")]
        assert templates == ["approval_reminder", "approval_request"]
        assert len(notification_engine.get_notifications("sup", limit=1)) == 1

    def test_delivery_stats(self, notification_engine, email_provider):
        notification_engine.send(["a", "b"], "email", "approval_request", request_payload())
        notification_engine.send(["c"], "sms", "approval_request", request_payload())
        notification_engine.register_provider(NotificationChannel.SMS, MockChannelProvider(should_succeed=False))
        asyncio.run(notification_engine.dispatch_pending())

        stats = notification_engine.get_delivery_stats()
        assert stats["total_notifications"] == 3
        assert stats["by_status"]["sent"] == 2
        assert stats["by_status"]["failed"] == 1
        assert stats["by_channel"]["email"] == 2
        assert stats["delivery_rate"] == pytest.approx(2 / 3)

    def test_purge_keeps_pending(self, notification_engine, email_provider, clock, audit_trail):
        notification_engine.send(["a"], "email", "approval_request", request_payload())
        asyncio.run(notification_engine.dispatch_pending())
        notification_engine.send(["b"], "sms", "approval_request", request_payload())

        clock.advance(days=31)
        purged = notification_engine.purge_older_than(clock.now() - timedelta(days=30))

        assert purged == 1
        assert notification_engine.get_notifications("a") == []
        assert len(notification_engine.get_notifications("b")) == 1
        assert audit_trail.get_events_by_type(AuditEventType.NOTIFICATIONS_PURGED)
