"""
Notification Engine Module

Outbox-style notification delivery for approval requests, reminders,
escalations and case workflow actions. Engines call send(), which only
renders and stores pending records; the scheduler later dispatches them
through async channel providers and retries failures with exponential
backoff until they are abandoned.
"""

from datetime import datetime, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Union
from enum import Enum
from abc import ABC, abstractmethod
import asyncio
import uuid

import requests

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock, parse_timestamp, format_timestamp
from .config import get_config
from .logging_config import get_logger, log_action


class NotificationChannel(Enum):
    """Available notification channels"""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


class NotificationStatus(Enum):
    """Status of notifications"""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    ABANDONED = "abandoned"
    READ = "read"


@dataclass
class NotificationTemplate:
    """Subject/body pair with {placeholders}"""
    name: str
    subject_template: str
    body_template: str


DEFAULT_TEMPLATES = {
    t.name: t for t in [
        NotificationTemplate(
            "approval_request",
            "Approval required: {document_type_id}",
            "Document {document_id} is waiting for your approval at level {level} ({level_name})."
        ),
        NotificationTemplate(
            "approval_reminder",
            "Reminder: approval pending for {document_type_id}",
            "Document {document_id} has been waiting {hours_pending} hours for your decision at level {level}."
        ),
        NotificationTemplate(
            "approval_escalated",
            "Approval escalated: {document_type_id}",
            "Approval of document {document_id} was escalated from level {from_level} to {to_level}: {reason}"
        ),
        NotificationTemplate(
            "approval_delegated",
            "Approval delegated to you",
            "{from_user} delegated level {level} of document {document_id} to you: {reason}"
        ),
        NotificationTemplate(
            "approval_rejected",
            "Document rejected: {document_type_id}",
            "Document {document_id} was rejected by {approver_id}: {reason}"
        ),
        NotificationTemplate(
            "approval_completed",
            "Document approved: {document_type_id}",
            "Document {document_id} completed all approval levels."
        ),
        NotificationTemplate(
            "step_escalation",
            "Case {case_id} escalated at {step_name}",
            "Case {case_id} has spent {elapsed_hours} hours in step {step_name} (escalation level {level})."
        ),
        NotificationTemplate(
            "workflow_completed",
            "Repair case {case_id} completed",
            "Case {case_id} finished workflow {workflow_name} with status {final_status}."
        ),
        NotificationTemplate(
            "workflow_cancelled",
            "Repair case {case_id} cancelled",
            "Case {case_id} was cancelled: {reason}"
        ),
        NotificationTemplate(
            "step_assigned",
            "Case {case_id} needs attention",
            "Case {case_id} entered step {step_name}."
        ),
    ]
}


class _TolerantDict(dict):
    def __missing__(self, key):
        return "{" + key + "}"


def render_template(text: str, payload: Dict[str, Any]) -> str:
    """str.format with unknown placeholders left as-is"""
    try:
        return text.format_map(_TolerantDict(payload))
    except (AttributeError, IndexError, KeyError, ValueError):
        return text


@dataclass
class Notification(StorageRecord):
    """One message to one recipient on one channel"""
    delivery_id: str
    recipient_id: str
    channel: NotificationChannel
    template: str
    subject: str
    body: str
    payload: Dict[str, Any] = field(default_factory=dict)
    dedupe_key: Optional[str] = None
    status: NotificationStatus = NotificationStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    sent_at: Optional[datetime] = None
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['channel'] = self.channel.value
        result['status'] = self.status.value
        result['next_attempt_at'] = format_timestamp(self.next_attempt_at)
        result['sent_at'] = format_timestamp(self.sent_at)
        result['read_at'] = format_timestamp(self.read_at)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        data = dict(data)
        data['channel'] = NotificationChannel(data['channel'])
        data['status'] = NotificationStatus(data['status'])
        for key in ('created_at', 'updated_at', 'next_attempt_at', 'sent_at', 'read_at'):
            data[key] = parse_timestamp(data.get(key))
        return cls(**data)


class NotificationSender(ABC):
    """What the engines need to notify people"""

    @abstractmethod
    def send(self, recipient_ids: List[str], channel: Union[str, NotificationChannel],
             template: str, payload: Dict[str, Any], dedupe_key: Optional[str] = None) -> str:
        """Queue a message for each recipient and return the delivery id"""
        pass


class ChannelProvider(ABC):
    """Abstract base class for notification channel providers"""

    @abstractmethod
    async def send(self, notification: Notification) -> bool:
        """Send notification via this channel. Returns True if successful."""
        pass


class LogChannelProvider(ChannelProvider):
    """Logs notifications instead of sending them"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("drms.notifications")

    async def send(self, notification: Notification) -> bool:
        self.logger.info(
            f"{notification.channel.value.upper()} to {notification.recipient_id}: "
            f"{notification.subject} | {notification.body[:100]}"
        )
        return True


class WebhookChannelProvider(ChannelProvider):
    """POSTs notifications to a configured webhook URL"""

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_config()
        self.url = url if url is not None else settings.notification_webhook_url
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self.logger = get_logger("drms.notifications")

    async def send(self, notification: Notification) -> bool:
        if not self.url:
            self.logger.warning("Webhook notification skipped: no webhook URL configured")
            return False

        payload = {
            "notification_id": notification.id,
            "delivery_id": notification.delivery_id,
            "template": notification.template,
            "recipient_id": notification.recipient_id,
            "subject": notification.subject,
            "body": notification.body,
            "timestamp": notification.created_at.isoformat(),
            "payload": notification.payload
        }
        try:
            response = await asyncio.to_thread(
                requests.post,
                self.url,
                json=payload,
                timeout=self.timeout,
                headers={"Content-Type": "application/json"}
            )
        except requests.RequestException as e:
            self.logger.warning(f"Webhook send failed: {e}")
            return False
        return 200 <= response.status_code < 300


class InAppChannelProvider(ChannelProvider):
    """Stores the message for the in-app inbox"""

    def __init__(self, storage: StorageInterface, clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table = "in_app_notifications"

    async def send(self, notification: Notification) -> bool:
        now = self.clock.now().isoformat()
        in_app_data = {
            "id": str(uuid.uuid4()),
            "created_at": now,
            "updated_at": now,
            "notification_id": notification.id,
            "recipient_id": notification.recipient_id,
            "template": notification.template,
            "subject": notification.subject,
            "body": notification.body,
            "read": False,
        }
        self.storage.save(self.table, in_app_data["id"], in_app_data)
        return True


class EmailChannelProvider(ChannelProvider):
    """Email placeholder, logs until an SMTP relay is configured"""

    def __init__(self, smtp_config: Optional[Dict] = None):
        self.smtp_config = smtp_config
        self.logger = get_logger("drms.notifications")

    async def send(self, notification: Notification) -> bool:
        self.logger.info(f"EMAIL (placeholder) to {notification.recipient_id}: {notification.subject}")
        return True


class SMSChannelProvider(ChannelProvider):
    """SMS placeholder, logs until a gateway is configured"""

    def __init__(self, gateway_config: Optional[Dict] = None):
        self.gateway_config = gateway_config
        self.logger = get_logger("drms.notifications")

    async def send(self, notification: Notification) -> bool:
        self.logger.info(f"SMS (placeholder) to {notification.recipient_id}: {notification.body}")
        return True


class NotificationEngine(NotificationSender):
    """Renders, queues, delivers and retries notifications"""

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 clock: Optional[Clock] = None, max_retries: Optional[int] = None,
                 backoff_base_minutes: Optional[float] = None,
                 backoff_cap_minutes: Optional[float] = None):
        settings = get_config()
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.logger = get_logger("drms.notifications")
        self.max_retries = max_retries if max_retries is not None else settings.notification_max_retries
        self.backoff_base_minutes = (backoff_base_minutes if backoff_base_minutes is not None
                                     else settings.notification_backoff_base_minutes)
        self.backoff_cap_minutes = (backoff_cap_minutes if backoff_cap_minutes is not None
                                    else settings.notification_backoff_cap_minutes)

        self.notifications_table = "notifications"
        self.templates: Dict[str, NotificationTemplate] = dict(DEFAULT_TEMPLATES)
        self.providers: Dict[NotificationChannel, ChannelProvider] = {}
        self._initialize_default_providers()

    def _initialize_default_providers(self):
        self.providers[NotificationChannel.IN_APP] = InAppChannelProvider(self.storage, self.clock)
        self.providers[NotificationChannel.WEBHOOK] = WebhookChannelProvider()
        self.providers[NotificationChannel.EMAIL] = EmailChannelProvider()
        self.providers[NotificationChannel.SMS] = SMSChannelProvider()

        log_provider = LogChannelProvider(self.logger)
        for channel in NotificationChannel:
            if channel not in self.providers:
                self.providers[channel] = log_provider

    def register_provider(self, channel: NotificationChannel, provider: ChannelProvider):
        """Register a channel provider"""
        self.providers[channel] = provider

    def register_template(self, template: NotificationTemplate):
        self.templates[template.name] = template

    def backoff_delay(self, retry_count: int) -> timedelta:
        """min(base * 3**retry_count, cap) minutes"""
        minutes = min(self.backoff_base_minutes * (3 ** retry_count), self.backoff_cap_minutes)
        return timedelta(minutes=minutes)

    # Sending

    def send(self, recipient_ids: List[str], channel: Union[str, NotificationChannel],
             template: str, payload: Dict[str, Any], dedupe_key: Optional[str] = None) -> str:
        channel = NotificationChannel(channel)

        if dedupe_key:
            existing = self.storage.find(self.notifications_table, {"dedupe_key": dedupe_key})
            if existing:
                return existing[0]["delivery_id"]

        known = self.templates.get(template)
        if known:
            subject = render_template(known.subject_template, payload)
            body = render_template(known.body_template, payload)
        else:
            subject = template.replace("_", " ").capitalize()
            body = str(payload.get("message", ""))

        delivery_id = str(uuid.uuid4())
        now = self.clock.now()
        for recipient_id in dict.fromkeys(recipient_ids):
            notification = Notification(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                delivery_id=delivery_id,
                recipient_id=recipient_id,
                channel=channel,
                template=template,
                subject=subject,
                body=body,
                payload=dict(payload),
                dedupe_key=dedupe_key,
                max_retries=self.max_retries,
                next_attempt_at=now,
            )
            self.storage.save(self.notifications_table, notification.id, notification.to_dict())

        self.logger.debug(f"Queued {template} via {channel.value} for {len(recipient_ids)} recipient(s)")
        return delivery_id

    async def _deliver(self, notification: Notification, now: datetime) -> bool:
        provider = self.providers.get(notification.channel)
        error = None
        try:
            success = await provider.send(notification)
        except Exception as e:
            success = False
            error = str(e)

        notification.updated_at = now
        if success:
            notification.status = NotificationStatus.SENT
            notification.sent_at = now
            notification.last_error = None
            notification.next_attempt_at = None
        else:
            notification.status = NotificationStatus.FAILED
            notification.last_error = error or "Provider send failed"
            notification.next_attempt_at = now + self.backoff_delay(notification.retry_count)
            self.logger.warning(
                f"Notification {notification.id} to {notification.recipient_id} failed: {notification.last_error}"
            )
        self.storage.save(self.notifications_table, notification.id, notification.to_dict())
        return success

    async def dispatch_pending(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Deliver every pending notification that is due"""
        now = now or self.clock.now()
        results = {"attempted": 0, "sent": 0, "failed": 0}
        for data in self.storage.find(self.notifications_table, {"status": NotificationStatus.PENDING.value}):
            notification = Notification.from_dict(data)
            if notification.next_attempt_at and notification.next_attempt_at > now:
                continue
            results["attempted"] += 1
            if await self._deliver(notification, now):
                results["sent"] += 1
            else:
                results["failed"] += 1
        return results

    async def retry_failed(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Retry failed notifications whose backoff has elapsed; abandon exhausted ones"""
        now = now or self.clock.now()
        results = {"attempted": 0, "succeeded": 0, "failed": 0, "abandoned": 0}

        for data in self.storage.find(self.notifications_table, {"status": NotificationStatus.FAILED.value}):
            notification = Notification.from_dict(data)

            if notification.retry_count >= notification.max_retries:
                notification.status = NotificationStatus.ABANDONED
                notification.updated_at = now
                notification.next_attempt_at = None
                self.storage.save(self.notifications_table, notification.id, notification.to_dict())
                self.audit.log_event(
                    AuditEventType.NOTIFICATION_ABANDONED,
                    "notification",
                    notification.id,
                    {"template": notification.template, "recipient_id": notification.recipient_id,
                     "retries": notification.retry_count, "last_error": notification.last_error},
                    "system"
                )
                results["abandoned"] += 1
                continue

            if notification.next_attempt_at and notification.next_attempt_at > now:
                continue

            results["attempted"] += 1
            notification.retry_count += 1
            if await self._deliver(notification, now):
                results["succeeded"] += 1
            else:
                results["failed"] += 1

        return results

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete delivered, abandoned and read notifications created before cutoff"""
        purged = 0
        for data in self.storage.load_all(self.notifications_table):
            if data["status"] == NotificationStatus.PENDING.value:
                continue
            if parse_timestamp(data["created_at"]) < cutoff:
                self.storage.delete(self.notifications_table, data["id"])
                purged += 1
        if purged:
            self.audit.log_event(
                AuditEventType.NOTIFICATIONS_PURGED,
                "notification",
                "retention",
                {"purged": purged, "cutoff": cutoff.isoformat()},
                "system"
            )
            log_action(self.logger, "info", f"Purged {purged} notifications older than {cutoff.isoformat()}",
                       action="purge_notifications", resource="notifications")
        return purged

    # Notification management

    def get_delivery(self, delivery_id: str) -> List[Notification]:
        return [
            Notification.from_dict(data)
            for data in self.storage.find(self.notifications_table, {"delivery_id": delivery_id})
        ]

    def get_notifications(self, recipient_id: str, status: Optional[NotificationStatus] = None,
                          limit: int = 50) -> List[Notification]:
        """Get notifications for a recipient, newest first"""
        filters = {"recipient_id": recipient_id}
        if status:
            filters["status"] = status.value
        notifications = [Notification.from_dict(d) for d in self.storage.find(self.notifications_table, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications[:limit]

    def mark_as_read(self, notification_id: str) -> bool:
        data = self.storage.load(self.notifications_table, notification_id)
        if not data:
            return False
        notification = Notification.from_dict(data)
        if notification.status != NotificationStatus.READ:
            notification.status = NotificationStatus.READ
            notification.read_at = self.clock.now()
            notification.updated_at = notification.read_at
            self.storage.save(self.notifications_table, notification_id, notification.to_dict())
        return True

    def get_unread_count(self, recipient_id: str) -> int:
        return len(self.storage.find(self.notifications_table, {
            "recipient_id": recipient_id,
            "status": NotificationStatus.SENT.value
        }))

    def get_delivery_stats(self) -> Dict[str, Any]:
        """Counts by status and channel plus the delivery rate"""
        all_notifications = self.storage.load_all(self.notifications_table)
        stats = {
            "total_notifications": len(all_notifications),
            "by_status": {status.value: 0 for status in NotificationStatus},
            "by_channel": {channel.value: 0 for channel in NotificationChannel},
            "delivery_rate": 0.0
        }

        delivered = 0
        for data in all_notifications:
            stats["by_status"][data["status"]] += 1
            stats["by_channel"][data["channel"]] += 1
            if data["status"] in (NotificationStatus.SENT.value, NotificationStatus.READ.value):
                delivered += 1

        if stats["total_notifications"] > 0:
            stats["delivery_rate"] = delivered / stats["total_notifications"]
        return stats
