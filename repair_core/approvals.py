"""
Approval Workflow Engine

Multi-level document approval: sequential or parallel levels with
required-approval counts, skip conditions, delegation (per instance and
standing rules), manual and timeout escalation with optional
auto-approval, and reminders.

The engine never reads or writes case workflow state. Outcomes leave the
engine as CASE_CONTEXT_PATCHED events carrying {context_key: {status: ...}},
which the case workflow engine merges into the case context.
"""

import copy
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock, hours_between, parse_timestamp, format_timestamp
from .conditions import evaluate, to_condition
from .config import get_config
from .documents import DocumentStatus, DocumentStore
from .events import DomainEvent, EventDispatcher, EventPayload
from .notifications import NotificationSender
from .workflows import deep_merge
from .repository import VersionedRepository
from .errors import (
    DocumentNotFound, ExpressionError, IneligibleApprover, InvalidInstanceState,
    VersionConflict, WorkflowError, WorkflowNotFound,
)
from .logging_config import get_logger, log_action


class ApproverType(Enum):
    USER = "user"
    ROLE = "role"
    MANAGER = "manager"
    DEPARTMENT_HEAD = "department_head"
    CUSTOM = "custom"


class EscalationType(Enum):
    TIMEOUT = "timeout"
    REJECTION = "rejection"
    MANUAL = "manual"


class ApprovalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    ESCALATED = "escalated"
    REJECTED = "rejected"
    COMPLETED = "completed"


TERMINAL_STATUSES = {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.COMPLETED}


class Decision(Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PENDING = "pending"


_DECISION_ALIASES = {
    "approve": Decision.APPROVED,
    "approved": Decision.APPROVED,
    "reject": Decision.REJECTED,
    "rejected": Decision.REJECTED,
}


class Urgency(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


ESCALATION_PRINCIPAL = "system:escalation"


def _pick(data: Dict[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


# Workflow configuration

@dataclass
class ApprovalLevel:
    level: int
    name: str
    approver_type: ApproverType = ApproverType.USER
    approver_ids: List[str] = field(default_factory=list)
    approver_roles: List[str] = field(default_factory=list)
    required_approvals: int = 1
    is_parallel: bool = False
    timeout_hours: Optional[float] = None
    skip_conditions: List[Any] = field(default_factory=list)

    def should_skip(self, context: Dict[str, Any]) -> bool:
        return bool(self.skip_conditions) and all(
            evaluate(to_condition(condition), context) for condition in self.skip_conditions
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "name": self.name,
            "approver_type": self.approver_type.value,
            "approver_ids": list(self.approver_ids),
            "approver_roles": list(self.approver_roles),
            "required_approvals": self.required_approvals,
            "is_parallel": self.is_parallel,
            "timeout_hours": self.timeout_hours,
            "skip_conditions": copy.deepcopy(self.skip_conditions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalLevel':
        return cls(
            level=data["level"],
            name=data.get("name") or f"Level {data['level']}",
            approver_type=ApproverType(_pick(data, "approverType", "approver_type", "user")),
            approver_ids=list(_pick(data, "approverIds", "approver_ids", []) or []),
            approver_roles=list(_pick(data, "approverRoles", "approver_roles", []) or []),
            required_approvals=_pick(data, "requiredApprovals", "required_approvals", 1),
            is_parallel=bool(_pick(data, "isParallel", "is_parallel", False)),
            timeout_hours=_pick(data, "timeoutHours", "timeout_hours"),
            skip_conditions=list(_pick(data, "skipConditions", "skip_conditions", []) or []),
        )


@dataclass
class EscalationRule:
    from_level: int
    to_level: int
    trigger_after_hours: Optional[float] = None
    escalation_type: EscalationType = EscalationType.TIMEOUT
    notify_users: List[str] = field(default_factory=list)
    auto_approve: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_level": self.from_level,
            "to_level": self.to_level,
            "trigger_after_hours": self.trigger_after_hours,
            "escalation_type": self.escalation_type.value,
            "notify_users": list(self.notify_users),
            "auto_approve": self.auto_approve,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationRule':
        return cls(
            from_level=_pick(data, "fromLevel", "from_level"),
            to_level=_pick(data, "toLevel", "to_level"),
            trigger_after_hours=_pick(data, "triggerAfterHours", "trigger_after_hours"),
            escalation_type=EscalationType(_pick(data, "escalationType", "escalation_type", "timeout")),
            notify_users=list(_pick(data, "notifyUsers", "notify_users", []) or []),
            auto_approve=bool(_pick(data, "autoApprove", "auto_approve", False)),
        )


@dataclass
class DelegationRule:
    """Standing delegation, e.g. while an approver is on leave"""
    from_user_id: str
    to_user_id: str
    start_date: datetime
    end_date: datetime
    levels: List[int] = field(default_factory=list)
    is_active: bool = True

    def applies(self, user_id: str, level: int, now: datetime) -> bool:
        return (
            self.is_active
            and self.to_user_id == user_id
            and self.start_date <= now <= self.end_date
            and (not self.levels or level in self.levels)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_user_id": self.from_user_id,
            "to_user_id": self.to_user_id,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "levels": list(self.levels),
            "is_active": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DelegationRule':
        return cls(
            from_user_id=_pick(data, "fromUserId", "from_user_id"),
            to_user_id=_pick(data, "toUserId", "to_user_id"),
            start_date=parse_timestamp(_pick(data, "startDate", "start_date")),
            end_date=parse_timestamp(_pick(data, "endDate", "end_date")),
            levels=list(data.get("levels") or []),
            is_active=bool(_pick(data, "isActive", "is_active", True)),
        )


@dataclass
class NotificationConfig:
    notification_type: str
    channels: List[str] = field(default_factory=list)
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"notification_type": self.notification_type, "channels": list(self.channels), "enabled": self.enabled}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'NotificationConfig':
        return cls(
            notification_type=_pick(data, "notificationType", "notification_type") or data.get("type"),
            channels=list(data.get("channels") or []),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class ApprovalWorkflow(StorageRecord):
    name: str
    document_type_ids: List[str]
    levels: List[ApprovalLevel]
    description: str = ""
    escalation_rules: List[EscalationRule] = field(default_factory=list)
    delegation_rules: List[DelegationRule] = field(default_factory=list)
    notifications: List[NotificationConfig] = field(default_factory=list)
    context_key: Optional[str] = None
    is_active: bool = True
    created_by: str = "system"
    version: int = 0

    @property
    def effective_context_key(self) -> str:
        return self.context_key or (self.document_type_ids[0] if self.document_type_ids else "approval")

    def get_level(self, level: int) -> Optional[ApprovalLevel]:
        for candidate in self.levels:
            if candidate.level == level:
                return candidate
        return None

    @property
    def last_level(self) -> int:
        return max(level.level for level in self.levels)

    def channels_for(self, notification_type: str) -> List[str]:
        """Configured channels for a notification type, default channels if unconfigured"""
        for config in self.notifications:
            if config.notification_type == notification_type:
                return list(config.channels) if config.enabled else []
        return list(get_config().default_notification_channels)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "name": self.name,
            "description": self.description,
            "document_type_ids": list(self.document_type_ids),
            "levels": [level.to_dict() for level in self.levels],
            "escalation_rules": [rule.to_dict() for rule in self.escalation_rules],
            "delegation_rules": [rule.to_dict() for rule in self.delegation_rules],
            "notifications": [n.to_dict() for n in self.notifications],
            "context_key": self.context_key,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalWorkflow':
        return cls(
            id=data["id"],
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            name=data["name"],
            description=data.get("description") or "",
            document_type_ids=list(_pick(data, "documentTypeIds", "document_type_ids", []) or []),
            levels=sorted(
                [ApprovalLevel.from_dict(level) for level in data.get("levels") or []],
                key=lambda level: level.level
            ),
            escalation_rules=[
                EscalationRule.from_dict(rule)
                for rule in _pick(data, "escalationRules", "escalation_rules", []) or []
            ],
            delegation_rules=[
                DelegationRule.from_dict(rule)
                for rule in _pick(data, "delegationRules", "delegation_rules", []) or []
            ],
            notifications=[NotificationConfig.from_dict(n) for n in data.get("notifications") or []],
            context_key=_pick(data, "contextKey", "context_key"),
            is_active=bool(_pick(data, "isActive", "is_active", True)),
            created_by=_pick(data, "createdBy", "created_by", "system"),
            version=data.get("version", 0),
        )


# Instance state

@dataclass
class ApprovalRecord:
    approver_id: str
    level: int
    decision: Decision
    comments: Optional[str] = None
    decided_at: Optional[datetime] = None
    time_spent: Optional[float] = None
    on_behalf_of: Optional[str] = None
    synthetic: bool = False

    @property
    def principal(self) -> str:
        """Whose approval this counts as"""
        return self.on_behalf_of or self.approver_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approver_id": self.approver_id,
            "level": self.level,
            "decision": self.decision.value,
            "comments": self.comments,
            "decided_at": format_timestamp(self.decided_at),
            "time_spent": self.time_spent,
            "on_behalf_of": self.on_behalf_of,
            "synthetic": self.synthetic,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalRecord':
        data = dict(data)
        data["decision"] = Decision(data["decision"])
        data["decided_at"] = parse_timestamp(data.get("decided_at"))
        return cls(**data)


@dataclass
class EscalationRecord:
    from_level: int
    to_level: int
    reason: str
    triggered_by: str
    timestamp: datetime
    escalated_by: Optional[str] = None
    auto_approved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_level": self.from_level,
            "to_level": self.to_level,
            "reason": self.reason,
            "triggered_by": self.triggered_by,
            "timestamp": self.timestamp.isoformat(),
            "escalated_by": self.escalated_by,
            "auto_approved": self.auto_approved,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EscalationRecord':
        data = dict(data)
        data["timestamp"] = parse_timestamp(data["timestamp"])
        return cls(**data)


@dataclass
class DelegationRecord:
    from_user: str
    to_user: str
    level: int
    reason: str
    triggered_by: str
    timestamp: datetime
    valid_until: Optional[datetime] = None

    def is_valid(self, now: datetime) -> bool:
        return self.valid_until is None or now <= self.valid_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_user": self.from_user,
            "to_user": self.to_user,
            "level": self.level,
            "reason": self.reason,
            "triggered_by": self.triggered_by,
            "timestamp": self.timestamp.isoformat(),
            "valid_until": format_timestamp(self.valid_until),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DelegationRecord':
        data = dict(data)
        data["timestamp"] = parse_timestamp(data["timestamp"])
        data["valid_until"] = parse_timestamp(data.get("valid_until"))
        return cls(**data)


@dataclass
class ApprovalInstance(StorageRecord):
    document_id: str
    workflow_id: str
    current_level: int
    level_entered_at: datetime
    case_id: Optional[str] = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    records: List[ApprovalRecord] = field(default_factory=list)
    escalations: List[EscalationRecord] = field(default_factory=list)
    delegations: List[DelegationRecord] = field(default_factory=list)
    skipped_levels: List[int] = field(default_factory=list)
    context: Dict[str, Any] = field(default_factory=dict)
    submitted_by: str = "system"
    urgency: Urgency = Urgency.NORMAL
    level_deadline: Optional[datetime] = None
    last_reminder_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def records_for_level(self, level: int) -> List[ApprovalRecord]:
        return [record for record in self.records if record.level == level]

    def approving_principals(self, level: int) -> List[str]:
        """Distinct principals that approved a level, in order of approval"""
        principals = []
        for record in self.records_for_level(level):
            if record.decision == Decision.APPROVED and record.principal not in principals:
                principals.append(record.principal)
        return principals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "document_id": self.document_id,
            "workflow_id": self.workflow_id,
            "current_level": self.current_level,
            "level_entered_at": self.level_entered_at.isoformat(),
            "case_id": self.case_id,
            "status": self.status.value,
            "records": [record.to_dict() for record in self.records],
            "escalations": [record.to_dict() for record in self.escalations],
            "delegations": [record.to_dict() for record in self.delegations],
            "skipped_levels": list(self.skipped_levels),
            "context": self.context,
            "submitted_by": self.submitted_by,
            "urgency": self.urgency.value,
            "level_deadline": format_timestamp(self.level_deadline),
            "last_reminder_at": format_timestamp(self.last_reminder_at),
            "completed_at": format_timestamp(self.completed_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ApprovalInstance':
        data = dict(data)
        for key in ("created_at", "updated_at", "level_entered_at", "level_deadline",
                    "last_reminder_at", "completed_at"):
            data[key] = parse_timestamp(data.get(key))
        data["status"] = ApprovalStatus(data["status"])
        data["urgency"] = Urgency(data.get("urgency", "normal"))
        data["records"] = [ApprovalRecord.from_dict(r) for r in data.get("records", [])]
        data["escalations"] = [EscalationRecord.from_dict(r) for r in data.get("escalations", [])]
        data["delegations"] = [DelegationRecord.from_dict(r) for r in data.get("delegations", [])]
        return cls(**data)


class ApproverDirectory(ABC):
    """Resolves approver roles to user ids"""

    @abstractmethod
    def users_with_role(self, role: str) -> List[str]:
        pass


class StaticApproverDirectory(ApproverDirectory):
    def __init__(self, roles: Optional[Dict[str, List[str]]] = None):
        self.roles = {role: list(users) for role, users in (roles or {}).items()}

    def users_with_role(self, role: str) -> List[str]:
        return list(self.roles.get(role, []))

    def assign(self, role: str, user_id: str) -> None:
        users = self.roles.setdefault(role, [])
        if user_id not in users:
            users.append(user_id)


@dataclass
class _Outbox:
    """Side effects of one mutation, emitted after the instance is saved"""
    audits: List[Tuple[AuditEventType, Dict[str, Any]]] = field(default_factory=list)
    notifications: List[Tuple[List[str], str, Dict[str, Any]]] = field(default_factory=list)
    events: List[Tuple[DomainEvent, Dict[str, Any]]] = field(default_factory=list)
    document_status: Optional[DocumentStatus] = None
    context_patch: Optional[Dict[str, Any]] = None


def validate_approval_workflow(workflow: ApprovalWorkflow) -> List[str]:
    """Structural problems of an approval workflow (empty when valid)"""
    errors = []
    if not workflow.name:
        errors.append("Workflow name is required")
    if not workflow.document_type_ids:
        errors.append("At least one document type is required")
    if not workflow.levels:
        errors.append("At least one approval level is required")

    numbers = [level.level for level in workflow.levels]
    if numbers and numbers != list(range(1, len(numbers) + 1)):
        errors.append("Approval levels must be numbered consecutively from 1")

    for level in workflow.levels:
        prefix = f"Level {level.level}"
        if level.required_approvals < 1:
            errors.append(f"{prefix}: required approvals must be at least 1")
        if not level.approver_ids and not level.approver_roles:
            errors.append(f"{prefix}: approver ids or approver roles are required")
        if not level.approver_roles and level.approver_ids and level.required_approvals > len(level.approver_ids):
            errors.append(f"{prefix}: requires {level.required_approvals} approvals but lists "
                          f"{len(level.approver_ids)} approvers")
        for condition in level.skip_conditions:
            try:
                to_condition(condition)
            except ExpressionError as e:
                errors.append(f"{prefix}: invalid skip condition: {e}")

    for rule in workflow.escalation_rules:
        if rule.from_level not in numbers or rule.to_level not in numbers:
            errors.append(f"Escalation rule {rule.from_level}->{rule.to_level} references an unknown level")
        elif rule.to_level < rule.from_level:
            errors.append(f"Escalation rule {rule.from_level}->{rule.to_level} cannot move backwards")

    for rule in workflow.delegation_rules:
        if rule.from_user_id == rule.to_user_id:
            errors.append(f"Delegation rule for {rule.from_user_id} delegates to the same user")
        if rule.end_date < rule.start_date:
            errors.append(f"Delegation rule for {rule.from_user_id} ends before it starts")
    return errors


class ApprovalWorkflowEngine:
    """Runs documents through multi-level approval workflows"""

    WORKFLOWS_TABLE = "approval_workflows"
    INSTANCES_TABLE = "approval_instances"

    def __init__(self, storage: StorageInterface, documents: DocumentStore,
                 notifications: Optional[NotificationSender] = None,
                 clock: Optional[Clock] = None,
                 event_dispatcher: Optional[EventDispatcher] = None,
                 audit_manager: Optional[AuditTrail] = None,
                 approver_directory: Optional[ApproverDirectory] = None):
        settings = get_config()
        self.storage = storage
        self.documents = documents
        self.notifications = notifications
        self.clock = clock or SystemClock()
        self.events = event_dispatcher
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.directory = approver_directory
        self.reminder_after_hours = settings.approval_reminder_after_hours
        self.reminder_interval_hours = settings.approval_reminder_interval_hours
        self.workflows = VersionedRepository(storage, self.WORKFLOWS_TABLE, ApprovalWorkflow,
                                             label="Approval workflow")
        self.instances = VersionedRepository(storage, self.INSTANCES_TABLE, ApprovalInstance,
                                             label="Approval instance")
        self.logger = get_logger("drms.approvals")

    # Workflow management

    def _parse_workflow(self, data: Dict[str, Any], created_by: str) -> ApprovalWorkflow:
        now = self.clock.now()
        data = dict(data)
        data.setdefault("id", str(uuid.uuid4()))
        data.setdefault("created_at", now.isoformat())
        data.setdefault("updated_at", now.isoformat())
        data.setdefault("created_by", created_by)
        return ApprovalWorkflow.from_dict(data)

    def create_workflow(self, workflow: Union[ApprovalWorkflow, Dict[str, Any]],
                        created_by: str = "system") -> ApprovalWorkflow:
        if isinstance(workflow, dict):
            workflow = self._parse_workflow(workflow, created_by)
        errors = validate_approval_workflow(workflow)
        if errors:
            raise WorkflowError("Invalid approval workflow: " + "; ".join(errors))

        now = self.clock.now()
        workflow.id = workflow.id or str(uuid.uuid4())
        workflow.created_at = now
        workflow.updated_at = now
        self.workflows.insert(workflow)

        self.audit.log_event(
            AuditEventType.APPROVAL_WORKFLOW_CREATED,
            'approval_workflow',
            workflow.id,
            {'name': workflow.name, 'document_type_ids': workflow.document_type_ids,
             'levels': len(workflow.levels)},
            created_by
        )
        log_action(
            self.logger, "info", f"Approval workflow created: {workflow.name}",
            user_id=created_by, action="create_workflow", resource=f"approval_workflow:{workflow.id}"
        )
        return workflow

    def update_workflow(self, workflow_id: str, changes: Dict[str, Any],
                        updated_by: str = "system") -> ApprovalWorkflow:
        current = self._require_workflow(workflow_id)
        data = current.to_dict()
        data.update(copy.deepcopy(changes))
        data["id"] = current.id
        data["created_at"] = current.created_at.isoformat()
        data["version"] = current.version
        workflow = ApprovalWorkflow.from_dict(data)

        errors = validate_approval_workflow(workflow)
        if errors:
            raise WorkflowError("Invalid approval workflow: " + "; ".join(errors))
        workflow.updated_at = self.clock.now()
        self.workflows.save(workflow)

        self.audit.log_event(
            AuditEventType.APPROVAL_WORKFLOW_UPDATED,
            'approval_workflow',
            workflow.id,
            {'changes': sorted(changes), 'version': workflow.version},
            updated_by
        )
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[ApprovalWorkflow]:
        return self.workflows.load(workflow_id)

    def _require_workflow(self, workflow_id: str) -> ApprovalWorkflow:
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFound(workflow_id)
        return workflow

    def list_workflows(self, document_type_id: Optional[str] = None,
                       active_only: bool = False) -> List[ApprovalWorkflow]:
        workflows = self.workflows.all()
        if document_type_id:
            workflows = [w for w in workflows if document_type_id in w.document_type_ids]
        if active_only:
            workflows = [w for w in workflows if w.is_active]
        return sorted(workflows, key=lambda w: (w.created_at, w.id))

    def find_workflow_for_document_type(self, document_type_id: str) -> Optional[ApprovalWorkflow]:
        workflows = self.list_workflows(document_type_id, active_only=True)
        return workflows[0] if workflows else None

    def delete_workflow(self, workflow_id: str, deleted_by: str = "system") -> None:
        workflow = self._require_workflow(workflow_id)
        open_instances = [
            i for i in self.instances.find({'workflow_id': workflow_id}) if not i.is_terminal
        ]
        if open_instances:
            raise InvalidInstanceState(
                f"Approval workflow {workflow_id} has {len(open_instances)} open instances"
            )
        self.workflows.delete(workflow_id)
        self.audit.log_event(
            AuditEventType.APPROVAL_WORKFLOW_DELETED,
            'approval_workflow',
            workflow_id,
            {'name': workflow.name},
            deleted_by
        )

    # Eligibility

    def _direct_approvers(self, level: ApprovalLevel) -> List[str]:
        approvers = list(level.approver_ids)
        if self.directory:
            for role in level.approver_roles:
                for user_id in self.directory.users_with_role(role):
                    if user_id not in approvers:
                        approvers.append(user_id)
        return approvers

    def _is_direct(self, level: ApprovalLevel, user_id: str) -> bool:
        return user_id in self._direct_approvers(level)

    def _principal_for(self, workflow: ApprovalWorkflow, instance: ApprovalInstance,
                       level: ApprovalLevel, user_id: str, now: datetime,
                       seen: Optional[set] = None) -> Optional[str]:
        """
        The approver a user acts for at this level, or None if ineligible.

        Direct approvers act for themselves. Delegates act for the
        delegator, following delegation chains back to a direct approver.
        """
        if self._is_direct(level, user_id):
            return user_id
        seen = (seen or set()) | {user_id}

        delegators = [
            d.from_user for d in instance.delegations
            if d.to_user == user_id and d.level == level.level and d.is_valid(now)
        ]
        delegators += [
            rule.from_user_id for rule in workflow.delegation_rules
            if rule.applies(user_id, level.level, now)
        ]
        for delegator in delegators:
            if delegator in seen:
                continue
            principal = self._principal_for(workflow, instance, level, delegator, now, seen)
            if principal is not None:
                return principal
        return None

    def _pending_approvers(self, workflow: ApprovalWorkflow, instance: ApprovalInstance,
                           level: ApprovalLevel, now: datetime) -> List[str]:
        """Users who could still decide the current level, delegates included"""
        decided = {record.principal for record in instance.records_for_level(level.level)}
        principals = [user for user in self._direct_approvers(level) if user not in decided]
        recipients = list(principals)
        for delegation in instance.delegations:
            if delegation.level == level.level and delegation.is_valid(now) and delegation.to_user not in recipients:
                if self._principal_for(workflow, instance, level, delegation.to_user, now) in principals:
                    recipients.append(delegation.to_user)
        return recipients

    # Submission

    def submit_for_approval(self, document_id: str, workflow_id: Optional[str] = None,
                            context: Optional[Dict[str, Any]] = None,
                            submitted_by: str = "system",
                            urgency: Union[str, Urgency] = Urgency.NORMAL) -> ApprovalInstance:
        """Start approval of a draft document at its first non-skipped level"""
        try:
            urgency = Urgency(urgency)
        except ValueError:
            raise WorkflowError(f"Unknown urgency {urgency!r}")

        document = self.documents.get_document(document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        if document.status != DocumentStatus.DRAFT:
            raise InvalidInstanceState(
                f"Document {document_id} is {document.status.value}; only draft documents can be submitted"
            )
        open_instances = [i for i in self.instances.find({'document_id': document_id}) if not i.is_terminal]
        if open_instances:
            raise InvalidInstanceState(
                f"Document {document_id} already has open approval {open_instances[0].id}"
            )

        if workflow_id:
            workflow = self._require_workflow(workflow_id)
        else:
            workflow = self.find_workflow_for_document_type(document.document_type_id)
            if workflow is None:
                raise WorkflowNotFound(f"for document type {document.document_type_id}")
        if not workflow.is_active:
            raise InvalidInstanceState(f"Approval workflow {workflow.id} is not active")

        now = self.clock.now()
        instance = ApprovalInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            document_id=document_id,
            workflow_id=workflow.id,
            current_level=workflow.levels[0].level,
            level_entered_at=now,
            case_id=document.case_id,
            context=deep_merge(document.content, context or {}),
            submitted_by=submitted_by,
            urgency=urgency,
        )

        outbox = _Outbox(document_status=DocumentStatus.SUBMITTED)
        outbox.audits.append((AuditEventType.APPROVAL_SUBMITTED, {
            'document_id': document_id, 'workflow_id': workflow.id, 'urgency': instance.urgency.value
        }))
        outbox.events.append((DomainEvent.APPROVAL_SUBMITTED, {
            'document_id': document_id, 'case_id': document.case_id, 'workflow_id': workflow.id
        }))
        self._enter_level(workflow, instance, workflow.levels[0].level, now, outbox)

        self.instances.insert(instance)
        self._emit(workflow, instance, outbox, submitted_by)
        log_action(
            self.logger, "info", f"Document {document_id} submitted for approval",
            user_id=submitted_by, action="submit_for_approval",
            resource=f"approval_instance:{instance.id}",
            extra={'workflow_id': workflow.id, 'current_level': instance.current_level,
                   'skipped_levels': instance.skipped_levels}
        )
        return instance

    def _level_timeout(self, workflow: ApprovalWorkflow, level: ApprovalLevel) -> Optional[float]:
        if level.timeout_hours is not None:
            return level.timeout_hours
        for rule in workflow.escalation_rules:
            if rule.from_level == level.level and rule.escalation_type == EscalationType.TIMEOUT:
                return rule.trigger_after_hours
        return None

    def _enter_level(self, workflow: ApprovalWorkflow, instance: ApprovalInstance, start_level: int,
                     now: datetime, outbox: _Outbox) -> None:
        """Land on the first level >= start_level whose skip conditions do not hold"""
        for level in workflow.levels:
            if level.level < start_level:
                continue
            if level.should_skip(instance.context):
                instance.skipped_levels.append(level.level)
                outbox.audits.append((AuditEventType.LEVEL_SKIPPED, {
                    'level': level.level, 'name': level.name, 'skip_conditions': level.skip_conditions
                }))
                continue

            instance.current_level = level.level
            instance.level_entered_at = now
            instance.last_reminder_at = None
            instance.status = ApprovalStatus.PENDING
            timeout = self._level_timeout(workflow, level)
            instance.level_deadline = now + timedelta(hours=timeout) if timeout else None
            outbox.notifications.append((
                self._pending_approvers(workflow, instance, level, now),
                "approval_request",
                self._payload(workflow, instance, level=level.level, level_name=level.name)
            ))
            return

        self._complete(workflow, instance, now, outbox)

    def _complete(self, workflow: ApprovalWorkflow, instance: ApprovalInstance, now: datetime,
                  outbox: _Outbox) -> None:
        instance.status = ApprovalStatus.COMPLETED
        instance.completed_at = now
        instance.level_deadline = None
        outbox.document_status = DocumentStatus.APPROVED
        outbox.context_patch = {workflow.effective_context_key: {
            'status': 'approved',
            'document_id': instance.document_id,
            'approval_instance_id': instance.id,
            'approved_at': now.isoformat(),
        }}
        outbox.audits.append((AuditEventType.APPROVAL_COMPLETED, {
            'document_id': instance.document_id, 'skipped_levels': list(instance.skipped_levels)
        }))
        outbox.events.append((DomainEvent.APPROVAL_COMPLETED, {
            'document_id': instance.document_id, 'case_id': instance.case_id
        }))
        outbox.notifications.append(([instance.submitted_by], "approval_completed", self._payload(workflow, instance)))

    def _complete_level(self, workflow: ApprovalWorkflow, instance: ApprovalInstance, now: datetime,
                        outbox: _Outbox) -> None:
        finished = instance.current_level
        outbox.audits.append((AuditEventType.LEVEL_ADVANCED, {
            'from_level': finished, 'approvers': instance.approving_principals(finished)
        }))
        self._enter_level(workflow, instance, finished + 1, now, outbox)
        if not instance.is_terminal:
            outbox.events.append((DomainEvent.APPROVAL_LEVEL_ADVANCED, {
                'document_id': instance.document_id, 'from_level': finished, 'to_level': instance.current_level
            }))

    # Decisions

    def process(self, instance_id: str, approver_id: str, decision: Union[str, Decision],
                comments: Optional[str] = None) -> ApprovalInstance:
        """Record an approve or reject decision for the current level"""
        if isinstance(decision, str):
            if decision not in _DECISION_ALIASES:
                raise WorkflowError(f"Unknown approval decision {decision!r}")
            decision = _DECISION_ALIASES[decision]
        if decision == Decision.PENDING:
            raise WorkflowError("A decision must approve or reject")

        instance = self.instances.get(instance_id)
        if instance.is_terminal:
            raise InvalidInstanceState(f"Approval {instance_id} is already {instance.status.value}")
        workflow = self._require_workflow(instance.workflow_id)
        level = workflow.get_level(instance.current_level)
        now = self.clock.now()

        principal = self._principal_for(workflow, instance, level, approver_id, now)
        if principal is None:
            raise IneligibleApprover(approver_id, instance_id, level.level)

        record = ApprovalRecord(
            approver_id=approver_id,
            level=level.level,
            decision=decision,
            comments=comments,
            decided_at=now,
            time_spent=(now - instance.level_entered_at).total_seconds(),
            on_behalf_of=principal if principal != approver_id else None,
        )
        instance.records.append(record)
        outbox = _Outbox()

        if decision == Decision.REJECTED:
            instance.status = ApprovalStatus.REJECTED
            instance.completed_at = now
            instance.level_deadline = None
            outbox.document_status = DocumentStatus.REJECTED
            outbox.context_patch = {workflow.effective_context_key: {
                'status': 'rejected',
                'reason': comments,
                'document_id': instance.document_id,
                'approval_instance_id': instance.id,
                'rejected_by': principal,
                'level': level.level,
            }}
            outbox.audits.append((AuditEventType.APPROVAL_REJECTED, {
                'level': level.level, 'approver_id': approver_id, 'on_behalf_of': record.on_behalf_of,
                'comments': comments
            }))
            outbox.events.append((DomainEvent.APPROVAL_REJECTED, {
                'document_id': instance.document_id, 'case_id': instance.case_id, 'level': level.level
            }))
            outbox.notifications.append(([instance.submitted_by], "approval_rejected", self._payload(
                workflow, instance, approver_id=approver_id, reason=comments or "", level=level.level
            )))
        else:
            outbox.audits.append((AuditEventType.APPROVAL_RECORDED, {
                'level': level.level, 'approver_id': approver_id, 'on_behalf_of': record.on_behalf_of,
                'approvals': len(instance.approving_principals(level.level)),
                'required_approvals': level.required_approvals,
            }))
            if len(instance.approving_principals(level.level)) >= level.required_approvals:
                self._complete_level(workflow, instance, now, outbox)

        instance.updated_at = now
        self.instances.save(instance)
        self._emit(workflow, instance, outbox, approver_id)
        log_action(
            self.logger, "info", f"Approval decision {decision.value} on {instance.document_id}",
            user_id=approver_id, action="process_approval", resource=f"approval_instance:{instance.id}",
            extra={'level': level.level, 'status': instance.status.value}
        )
        return instance

    def delegate(self, instance_id: str, from_user: str, to_user: str, reason: str,
                 valid_until: Optional[datetime] = None,
                 delegated_by: Optional[str] = None) -> ApprovalInstance:
        """Let to_user decide the current level on behalf of from_user"""
        instance = self.instances.get(instance_id)
        if instance.is_terminal:
            raise InvalidInstanceState(f"Approval {instance_id} is already {instance.status.value}")
        if from_user == to_user:
            raise WorkflowError("Cannot delegate an approval to the same user")
        workflow = self._require_workflow(instance.workflow_id)
        level = workflow.get_level(instance.current_level)
        now = self.clock.now()

        if self._principal_for(workflow, instance, level, from_user, now) is None:
            raise IneligibleApprover(from_user, instance_id, level.level)

        record = DelegationRecord(
            from_user=from_user,
            to_user=to_user,
            level=level.level,
            reason=reason,
            triggered_by=delegated_by or from_user,
            timestamp=now,
            valid_until=valid_until,
        )
        instance.delegations.append(record)
        instance.updated_at = now

        outbox = _Outbox()
        outbox.audits.append((AuditEventType.APPROVAL_DELEGATED, record.to_dict()))
        outbox.events.append((DomainEvent.APPROVAL_DELEGATED, {
            'document_id': instance.document_id, 'from_user': from_user, 'to_user': to_user, 'level': level.level
        }))
        outbox.notifications.append(([to_user], "approval_delegated", self._payload(
            workflow, instance, from_user=from_user, reason=reason, level=level.level
        )))
        self.instances.save(instance)
        self._emit(workflow, instance, outbox, delegated_by or from_user)
        return instance

    # Escalation

    def _escalation_rule(self, workflow: ApprovalWorkflow, level: int,
                         escalation_type: EscalationType) -> Optional[EscalationRule]:
        rules = [rule for rule in workflow.escalation_rules if rule.from_level == level]
        for rule in rules:
            if rule.escalation_type == escalation_type:
                return rule
        return rules[0] if rules else None

    def escalate(self, instance_id: str, reason: str, manual: bool = True,
                 escalated_by: Optional[str] = None, to_level: Optional[int] = None) -> ApprovalInstance:
        """
        Escalate the current level.

        An auto-approve rule completes the level with a synthetic approval;
        otherwise a higher target level moves the instance forward, and
        failing that the level's deadline is extended.
        """
        instance = self.instances.get(instance_id)
        if instance.is_terminal:
            raise InvalidInstanceState(f"Approval {instance_id} is already {instance.status.value}")
        workflow = self._require_workflow(instance.workflow_id)
        if to_level is not None and workflow.get_level(to_level) is None:
            raise WorkflowError(f"Approval workflow {workflow.id} has no level {to_level}")

        now = self.clock.now()
        current = instance.current_level
        level = workflow.get_level(current)
        rule = self._escalation_rule(workflow, current,
                                     EscalationType.MANUAL if manual else EscalationType.TIMEOUT)
        target = to_level if to_level is not None else (rule.to_level if rule else current)
        auto_approve = bool(rule and rule.auto_approve)

        record = EscalationRecord(
            from_level=current,
            to_level=max(target, current),
            reason=reason,
            triggered_by="manual" if manual else "timeout",
            timestamp=now,
            escalated_by=escalated_by,
            auto_approved=auto_approve,
        )
        instance.escalations.append(record)

        outbox = _Outbox()
        outbox.audits.append((AuditEventType.APPROVAL_ESCALATED, record.to_dict()))
        outbox.events.append((DomainEvent.APPROVAL_ESCALATED, {
            'document_id': instance.document_id, 'from_level': current, 'to_level': record.to_level,
            'auto_approved': auto_approve
        }))
        recipients = list(rule.notify_users) if rule and rule.notify_users else \
            self._pending_approvers(workflow, instance, level, now)
        outbox.notifications.append((recipients, "approval_escalated", self._payload(
            workflow, instance, from_level=current, to_level=record.to_level, reason=reason
        )))

        if auto_approve:
            instance.records.append(ApprovalRecord(
                approver_id=ESCALATION_PRINCIPAL,
                level=current,
                decision=Decision.APPROVED,
                comments=reason,
                decided_at=now,
                time_spent=(now - instance.level_entered_at).total_seconds(),
                synthetic=True,
            ))
            outbox.audits.append((AuditEventType.APPROVAL_RECORDED, {
                'level': current, 'approver_id': ESCALATION_PRINCIPAL, 'synthetic': True
            }))
            self._complete_level(workflow, instance, now, outbox)
        elif target > current:
            outbox.audits.append((AuditEventType.LEVEL_ADVANCED, {
                'from_level': current, 'to_level': target, 'escalated': True
            }))
            self._enter_level(workflow, instance, target, now, outbox)
        else:
            timeout = self._level_timeout(workflow, level)
            instance.level_deadline = now + timedelta(hours=timeout) if timeout else None
            instance.status = ApprovalStatus.ESCALATED

        instance.updated_at = now
        self.instances.save(instance)
        self._emit(workflow, instance, outbox, escalated_by or "system:escalation")
        self.logger.warning(
            f"Approval {instance.id} escalated from level {current} ({'manual' if manual else 'timeout'}): {reason}"
        )
        return instance

    def check_timeouts(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Escalate every open instance whose level deadline has passed"""
        now = now or self.clock.now()
        results = []
        for instance in self.list_instances():
            if instance.is_terminal or instance.level_deadline is None or instance.level_deadline > now:
                continue
            try:
                escalated = self.escalate(
                    instance.id, f"Level {instance.current_level} timed out", manual=False
                )
                results.append({
                    'instance_id': instance.id,
                    'from_level': instance.current_level,
                    'status': escalated.status.value,
                    'current_level': escalated.current_level,
                })
            except Exception as e:
                self.logger.error(f"Timeout escalation failed for approval {instance.id}: {e}")
                results.append({'instance_id': instance.id, 'error': str(e)})
        return results

    def send_reminders(self, now: Optional[datetime] = None) -> int:
        """Remind undecided approvers; first after N hours, then every M hours"""
        now = now or self.clock.now()
        sent = 0
        for instance in self.list_instances():
            if instance.is_terminal:
                continue
            if hours_between(instance.level_entered_at, now) < self.reminder_after_hours:
                continue
            if instance.last_reminder_at and \
                    hours_between(instance.last_reminder_at, now) < self.reminder_interval_hours:
                continue

            workflow = self.get_workflow(instance.workflow_id)
            if workflow is None:
                self.logger.error(f"Approval {instance.id} references missing workflow {instance.workflow_id}")
                continue
            level = workflow.get_level(instance.current_level)
            recipients = self._pending_approvers(workflow, instance, level, now)

            instance.last_reminder_at = now
            instance.updated_at = now
            try:
                self.instances.save(instance)
            except VersionConflict:
                self.logger.info(f"Approval {instance.id} changed during reminder sweep; skipped")
                continue

            outbox = _Outbox()
            outbox.notifications.append((recipients, "approval_reminder", self._payload(
                workflow, instance, level=level.level,
                hours_pending=round(hours_between(instance.level_entered_at, now), 1)
            )))
            self._emit(workflow, instance, outbox, "system:reminders")
            sent += len(recipients)
        return sent

    # Queries

    def get_instance(self, instance_id: str) -> Optional[ApprovalInstance]:
        return self.instances.load(instance_id)

    def list_instances(self, status: Optional[ApprovalStatus] = None) -> List[ApprovalInstance]:
        instances = self.instances.find({'status': status.value}) if status else self.instances.all()
        return sorted(instances, key=lambda i: (i.created_at, i.id))

    def get_approval_history(self, document_id: str) -> List[ApprovalInstance]:
        instances = self.instances.find({'document_id': document_id})
        return sorted(instances, key=lambda i: (i.created_at, i.id))

    def get_pending_approvals(self, user_id: str) -> List[ApprovalInstance]:
        """Open instances where user_id can decide the current level"""
        now = self.clock.now()
        pending = []
        for instance in self.list_instances():
            if instance.is_terminal:
                continue
            workflow = self.get_workflow(instance.workflow_id)
            if workflow is None:
                continue
            level = workflow.get_level(instance.current_level)
            principal = self._principal_for(workflow, instance, level, user_id, now)
            if principal is None:
                continue
            decided = {record.principal for record in instance.records_for_level(level.level)}
            if principal not in decided:
                pending.append(instance)
        return pending

    # Side effects

    def _payload(self, workflow: ApprovalWorkflow, instance: ApprovalInstance, **extra) -> Dict[str, Any]:
        payload = {
            'document_id': instance.document_id,
            'document_type_id': workflow.document_type_ids[0] if workflow.document_type_ids else "",
            'approval_instance_id': instance.id,
            'case_id': instance.case_id,
            'workflow_name': workflow.name,
            'urgency': instance.urgency.value,
        }
        payload.update(extra)
        return payload

    def _emit(self, workflow: ApprovalWorkflow, instance: ApprovalInstance, outbox: _Outbox,
              user_id: str) -> None:
        for event_type, metadata in outbox.audits:
            self.audit.log_event(event_type, 'approval_instance', instance.id, metadata, user_id)

        if outbox.document_status is not None:
            self._sync_document(instance, outbox.document_status, user_id)

        for recipients, template, payload in outbox.notifications:
            self._notify(workflow, recipients, template, payload, instance)

        if self.events:
            for event_type, data in outbox.events:
                self.events.publish(EventPayload(
                    event_type=event_type,
                    entity_type='approval_instance',
                    entity_id=instance.id,
                    data=data,
                    timestamp=self.clock.now()
                ))
            if outbox.context_patch and instance.case_id:
                self.events.publish(EventPayload(
                    event_type=DomainEvent.CASE_CONTEXT_PATCHED,
                    entity_type='case',
                    entity_id=instance.case_id,
                    data={
                        'case_id': instance.case_id,
                        'patch': outbox.context_patch,
                        'document_id': instance.document_id,
                        'triggered_by': f"approval:{instance.id}",
                    },
                    timestamp=self.clock.now()
                ))

    def _sync_document(self, instance: ApprovalInstance, status: DocumentStatus, user_id: str) -> None:
        """
        Move the document to the approval outcome.

        The instance is already saved, so a document that can no longer
        make the move is logged and audited instead of aborting the emit.
        """
        try:
            if status == DocumentStatus.APPROVED:
                document = self.documents.get_document(instance.document_id)
                if document is not None and document.status == DocumentStatus.DRAFT:
                    # Every level skipped on submission
                    self.documents.update_status(instance.document_id, DocumentStatus.SUBMITTED, user_id)
            self.documents.update_status(instance.document_id, status, user_id)
        except WorkflowError as e:
            self.logger.error(f"Document {instance.document_id} not moved to {status.value} "
                              f"for approval {instance.id}: {e}")
            self.audit.log_event(AuditEventType.DOCUMENT_SYNC_FAILED, 'approval_instance', instance.id, {
                'document_id': instance.document_id, 'target_status': status.value, 'error': str(e)
            }, user_id)

    def _notify(self, workflow: ApprovalWorkflow, recipients: List[str], template: str,
                payload: Dict[str, Any], instance: ApprovalInstance) -> None:
        if self.notifications is None or not recipients:
            return
        for channel in workflow.channels_for(template):
            try:
                self.notifications.send(recipients, channel, template, payload)
            except Exception as e:
                self.logger.error(f"Failed to queue {template} for approval {instance.id} via {channel}: {e}")
