"""
Repair Workflow System

Wires storage, audit, clock, engines, selector, scheduler and the
context-patch bridge into one container.
"""

from typing import Any, Dict, Optional

from .actions import ActionDispatcher
from .approvals import ApprovalWorkflowEngine, ApproverDirectory, StaticApproverDirectory
from .audit import AuditTrail
from .clock import Clock, SystemClock
from .config import get_config
from .configuration import SelectionCriteria, WorkflowConfigurationSelector
from .definitions import WorkflowDefinitionStore
from .documents import StorageDocumentStore
from .errors import ConfigurationNotFound
from .events import EventDispatcher
from .notifications import NotificationChannel, NotificationEngine, WebhookChannelProvider
from .scheduler import ScheduledJobsRunner
from .storage import StorageInterface, create_storage
from .workflows import AdvanceResult, WorkflowExecutionEngine, connect_context_patches, deep_merge


class RepairWorkflowSystem:
    """Device repair workflow core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None, clock: Optional[Clock] = None,
                 approver_directory: Optional[ApproverDirectory] = None):
        settings = get_config()
        self.storage = storage or create_storage(settings.database_url, timeout=settings.storage_timeout_seconds)
        self.clock = clock or SystemClock()

        self.audit_trail = AuditTrail(self.storage, clock=self.clock)
        self.events = EventDispatcher()
        self.notifications = NotificationEngine(self.storage, self.audit_trail, clock=self.clock)
        if settings.notification_webhook_url:
            self.notifications.register_provider(
                NotificationChannel.WEBHOOK,
                WebhookChannelProvider(settings.notification_webhook_url, settings.webhook_timeout_seconds)
            )

        self.definitions = WorkflowDefinitionStore(self.storage, self.audit_trail, clock=self.clock)
        self.configurations = WorkflowConfigurationSelector(
            self.storage, self.definitions, self.audit_trail, clock=self.clock
        )
        self.documents = StorageDocumentStore(
            self.storage, self.audit_trail, clock=self.clock, event_dispatcher=self.events
        )
        self.actions = ActionDispatcher(self.audit_trail, self.notifications)
        self.workflow_engine = WorkflowExecutionEngine(
            self.storage, self.definitions,
            notifications=self.notifications,
            actions=self.actions,
            clock=self.clock,
            event_dispatcher=self.events,
            audit_manager=self.audit_trail,
        )
        self.approver_directory = approver_directory or StaticApproverDirectory()
        self.approval_engine = ApprovalWorkflowEngine(
            self.storage, self.documents,
            notifications=self.notifications,
            clock=self.clock,
            event_dispatcher=self.events,
            audit_manager=self.audit_trail,
            approver_directory=self.approver_directory,
        )
        self.scheduler = ScheduledJobsRunner(
            self.workflow_engine, self.approval_engine, self.notifications, clock=self.clock
        )

        # Approval outcomes reach case workflows only through this bridge
        connect_context_patches(self.events, self.workflow_engine)

    def start_workflow_for_case(self, case_id: str, criteria: SelectionCriteria,
                                initial_context: Optional[Dict[str, Any]] = None,
                                started_by: str = "system") -> AdvanceResult:
        """Select the configuration for a new case and start its workflow"""
        match = self.configurations.select(criteria)
        if match is None:
            raise ConfigurationNotFound(
                f"matching {criteria.device_type}/{criteria.service_type}/{criteria.customer_tier}"
            )
        context = deep_merge(criteria.as_context(), initial_context or {})
        context.setdefault("caseId", case_id)
        return self.workflow_engine.start_instance(match.definition, case_id, context, started_by)

    def close(self) -> None:
        self.scheduler.stop()
        self.storage.close()
