"""
Workflow Execution Engine

Runs repair cases through their workflow definition: evaluates conditional
transitions against the case context, auto-advances through start,
automatic and skippable steps, fires business rules, applies per-step
timeout escalation and dispatches end-step actions.

Every mutation loads one instance, changes it in memory and saves it with a
compare-and-swap on its version. Audit entries, notifications, actions and
domain events are collected while the instance changes and only emitted
after the save succeeded.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock, hours_between, parse_timestamp, format_timestamp
from .config import get_config
from .conditions import evaluate
from .definitions import StepDefinition, WorkflowDefinition, WorkflowDefinitionStore
from .actions import ActionContext, ActionDispatcher
from .events import DomainEvent, EventDispatcher, EventPayload
from .notifications import NotificationSender
from .repository import VersionedRepository, retry_on_conflict
from .errors import CycleDetected, InvalidInstanceState
from .logging_config import get_logger, log_action


class InstanceStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class AdvanceOutcome(Enum):
    TRANSITIONED = "transitioned"
    NO_TRANSITION_MATCHED = "no_transition_matched"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


AUTO_CANCEL_ACTION = "auto_cancel_case"
CANCELLATION_ACTION = "send_cancellation_notification"


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Return base with patch merged in; nested mappings merge, everything else replaces"""
    merged = copy.deepcopy(base)
    for key, value in (patch or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class WorkflowInstance(StorageRecord):
    """A repair case running through one definition version"""
    definition_id: str
    definition_name: str
    definition_version: int
    case_id: str
    current_step_id: str
    definition_snapshot: Dict[str, Any]
    step_entered_at: datetime
    context: Dict[str, Any] = field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.RUNNING
    history: List[Dict[str, Any]] = field(default_factory=list)
    escalation_level: int = 0
    escalations: List[Dict[str, Any]] = field(default_factory=list)
    fired_rules: List[str] = field(default_factory=list)
    final_status: Optional[str] = None
    frozen_reason: Optional[str] = None
    started_by: str = "system"
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        result['step_entered_at'] = format_timestamp(self.step_entered_at)
        result['completed_at'] = format_timestamp(self.completed_at)
        result['cancelled_at'] = format_timestamp(self.cancelled_at)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowInstance':
        data = dict(data)
        data['status'] = InstanceStatus(data['status'])
        for key in ('created_at', 'updated_at', 'step_entered_at', 'completed_at', 'cancelled_at'):
            data[key] = parse_timestamp(data.get(key))
        return cls(**data)


@dataclass
class AdvanceResult:
    instance: WorkflowInstance
    outcome: AdvanceOutcome
    from_step_id: str
    path: List[str] = field(default_factory=list)

    @property
    def current_step_id(self) -> str:
        return self.instance.current_step_id

    @property
    def transitioned(self) -> bool:
        return self.outcome != AdvanceOutcome.NO_TRANSITION_MATCHED


@dataclass
class _Effects:
    """Side effects collected during a mutation, emitted after the save"""
    audits: List[Tuple[AuditEventType, Dict[str, Any]]] = field(default_factory=list)
    events: List[Tuple[DomainEvent, Dict[str, Any]]] = field(default_factory=list)
    actions: List[Tuple[str, Optional[str], Dict[str, Any]]] = field(default_factory=list)
    notifications: List[Tuple[List[str], str, Dict[str, Any], str]] = field(default_factory=list)
    rules_fired: int = 0


class WorkflowExecutionEngine:
    """Drives workflow instances through their definitions"""

    TABLE = "workflow_instances"

    def __init__(self, storage: StorageInterface, definitions: WorkflowDefinitionStore,
                 notifications: Optional[NotificationSender] = None,
                 actions: Optional[ActionDispatcher] = None,
                 clock: Optional[Clock] = None,
                 event_dispatcher: Optional[EventDispatcher] = None,
                 audit_manager: Optional[AuditTrail] = None,
                 max_auto_hops: Optional[int] = None):
        settings = get_config()
        self.storage = storage
        self.definitions = definitions
        self.notifications = notifications
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.actions = actions or ActionDispatcher(self.audit, notifications)
        self.events = event_dispatcher
        self.max_auto_hops = max_auto_hops if max_auto_hops is not None else settings.max_auto_hops
        self.notification_channels = list(settings.default_notification_channels)
        self.repository = VersionedRepository(storage, self.TABLE, WorkflowInstance, label="Workflow instance")
        self.logger = get_logger("drms.workflows")
        self._snapshots: Dict[str, WorkflowDefinition] = {}

    # Lookups

    def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return self.repository.load(instance_id)

    def list_instances(self, status: Optional[InstanceStatus] = None, case_id: Optional[str] = None,
                       definition_id: Optional[str] = None) -> List[WorkflowInstance]:
        filters = {}
        if status:
            filters['status'] = status.value
        if case_id:
            filters['case_id'] = case_id
        if definition_id:
            filters['definition_id'] = definition_id
        instances = self.repository.find(filters) if filters else self.repository.all()
        return sorted(instances, key=lambda i: (i.created_at, i.id))

    def find_running_instance(self, case_id: str, include_suspended: bool = False) -> Optional[WorkflowInstance]:
        """The live instance of a case, if any"""
        statuses = {InstanceStatus.RUNNING}
        if include_suspended:
            statuses.add(InstanceStatus.SUSPENDED)
        live = [i for i in self.list_instances(case_id=case_id) if i.status in statuses]
        return live[-1] if live else None

    def get_current_step(self, instance_id: str) -> Optional[StepDefinition]:
        instance = self.get_instance(instance_id)
        if instance is None:
            return None
        return self._definition_for(instance).get_step(instance.current_step_id)

    def timeout_candidates(self) -> List[str]:
        """Ids of instances the timeout sweep has to look at"""
        return [i.id for i in self.list_instances(status=InstanceStatus.RUNNING)]

    def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        definition = self._snapshots.get(instance.definition_id)
        if definition is None:
            definition = WorkflowDefinitionStore.from_snapshot(instance.definition_snapshot)
            self._snapshots[instance.definition_id] = definition
        return definition

    # Starting

    def start_instance(self, definition: Union[str, WorkflowDefinition], case_id: str,
                       initial_context: Optional[Dict[str, Any]] = None,
                       started_by: str = "system") -> AdvanceResult:
        """Create an instance at the start step and auto-advance it"""
        if isinstance(definition, str):
            definition = self.definitions.require_definition(definition)
        start = definition.start_step
        if start is None:
            raise InvalidInstanceState(f"Workflow definition {definition.id} has no start step")

        now = self.clock.now()
        instance = WorkflowInstance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            definition_id=definition.id,
            definition_name=definition.name,
            definition_version=definition.version,
            case_id=case_id,
            current_step_id=start.id,
            definition_snapshot=WorkflowDefinitionStore.snapshot(definition),
            step_entered_at=now,
            context=copy.deepcopy(initial_context or {}),
            history=[self._history_entry(start.id, now, started_by)],
            started_by=started_by,
        )
        self._snapshots[definition.id] = definition

        effects = _Effects()
        effects.audits.append((AuditEventType.WORKFLOW_STARTED, {
            'case_id': case_id,
            'definition_id': definition.id,
            'definition_name': definition.name,
            'definition_version': definition.version,
            'start_step': start.id,
        }))
        effects.events.append((DomainEvent.WORKFLOW_STARTED, {
            'case_id': case_id, 'definition_id': definition.id, 'step_id': start.id
        }))

        path = [start.id]
        self._fire_business_rules(instance, definition, instance.context, effects, started_by)
        hops_ok = True
        if instance.status == InstanceStatus.RUNNING:
            hops_ok = self._run_auto(instance, definition, effects, started_by, path)

        self.repository.insert(instance)
        self._emit(instance, effects, started_by)
        log_action(
            self.logger, "info", f"Workflow started for case {case_id}: {definition.name} v{definition.version}",
            user_id=started_by, action="start_instance", resource=f"workflow_instance:{instance.id}",
            extra={'current_step_id': instance.current_step_id}
        )
        if not hops_ok:
            self._raise_cycle(instance, path)
        return AdvanceResult(instance, self._outcome_for(instance, len(path) > 1), start.id, path)

    # Advancing

    def advance(self, instance_id: str, event: Optional[Dict[str, Any]] = None,
                triggered_by: str = "system") -> AdvanceResult:
        """
        Merge an event into the context and take the first matching transition.

        When nothing matches (and no business rule fired) the stored
        instance is left untouched and the result says NO_TRANSITION_MATCHED.
        """
        return self._advance(instance_id, event or {}, triggered_by, persist_context=False)

    def apply_context_patch(self, instance_id: str, patch: Dict[str, Any],
                            triggered_by: str = "system") -> AdvanceResult:
        """Merge and persist a context patch, then try to advance"""
        return self._advance(instance_id, patch, triggered_by, persist_context=True)

    def _advance(self, instance_id: str, event: Dict[str, Any], triggered_by: str,
                 persist_context: bool) -> AdvanceResult:
        instance = self.repository.get(instance_id)
        from_step = instance.current_step_id
        suspended_patch = persist_context and instance.status == InstanceStatus.SUSPENDED
        if instance.status != InstanceStatus.RUNNING and not suspended_patch:
            raise InvalidInstanceState(
                f"Workflow instance {instance_id} is {instance.status.value}, not running"
            )

        definition = self._definition_for(instance)
        merged = deep_merge(instance.context, event)
        effects = _Effects()
        path = [from_step]
        hops_ok = True

        if persist_context:
            effects.audits.append((AuditEventType.CONTEXT_PATCHED, {
                'step_id': from_step, 'keys': sorted(event.keys())
            }))

        if not suspended_patch:
            self._fire_business_rules(instance, definition, merged, effects, triggered_by)
            if instance.status == InstanceStatus.RUNNING:
                step = definition.get_step(from_step)
                transition = step.first_matching_transition(merged)
                if transition is not None:
                    instance.context = merged
                    self._move(instance, definition, transition.to, "transitioned", triggered_by, effects,
                               condition=transition.condition)
                    path.append(transition.to)
                    if transition.action:
                        effects.actions.append((transition.action, from_step, {}))
                    hops_ok = self._run_auto(instance, definition, effects, triggered_by, path)

        moved = len(path) > 1
        if not moved and not persist_context and not effects.rules_fired and instance.status == InstanceStatus.RUNNING:
            self.logger.debug(f"No transition matched for instance {instance_id} at step {from_step}")
            return AdvanceResult(instance, AdvanceOutcome.NO_TRANSITION_MATCHED, from_step, path)

        instance.context = merged
        instance.updated_at = self.clock.now()
        self.repository.save(instance)
        self._emit(instance, effects, triggered_by)
        if not hops_ok:
            self._raise_cycle(instance, path)
        return AdvanceResult(instance, self._outcome_for(instance, moved), from_step, path)

    @staticmethod
    def _outcome_for(instance: WorkflowInstance, moved: bool) -> AdvanceOutcome:
        if instance.status == InstanceStatus.COMPLETED:
            return AdvanceOutcome.COMPLETED
        if instance.status == InstanceStatus.CANCELLED:
            return AdvanceOutcome.CANCELLED
        return AdvanceOutcome.TRANSITIONED if moved else AdvanceOutcome.NO_TRANSITION_MATCHED

    def _run_auto(self, instance: WorkflowInstance, definition: WorkflowDefinition, effects: _Effects,
                  triggered_by: str, path: List[str]) -> bool:
        """
        Follow hops that need no external input.

        Returns False when the hop guard tripped; the instance is then
        already frozen in memory.
        """
        hops = 0
        while instance.status == InstanceStatus.RUNNING:
            step = definition.get_step(instance.current_step_id)
            if step.is_terminal:
                self._finish(instance, step, effects, triggered_by)
                break

            if step.should_skip(instance.context):
                outcome = "skipped"
            elif step.auto_advances:
                outcome = "auto"
            else:
                break
            transition = step.first_matching_transition(instance.context)
            if transition is None:
                break

            if hops >= self.max_auto_hops:
                self._freeze(instance, path, effects)
                return False
            hops += 1
            self._move(instance, definition, transition.to, outcome, triggered_by, effects,
                       condition=transition.condition)
            path.append(transition.to)
            if transition.action:
                effects.actions.append((transition.action, step.id, {}))
        return True

    def _history_entry(self, step_id: str, now: datetime, triggered_by: str) -> Dict[str, Any]:
        return {
            'step_id': step_id,
            'entered_at': now.isoformat(),
            'exited_at': None,
            'outcome': None,
            'transition_to': None,
            'triggered_by': triggered_by,
        }

    def _close_history(self, instance: WorkflowInstance, now: datetime, outcome: str,
                       transition_to: Optional[str], triggered_by: str) -> None:
        if instance.history and instance.history[-1]['exited_at'] is None:
            entry = instance.history[-1]
            entry['exited_at'] = now.isoformat()
            entry['outcome'] = outcome
            entry['transition_to'] = transition_to
            entry['triggered_by'] = triggered_by

    def _move(self, instance: WorkflowInstance, definition: WorkflowDefinition, target_id: str,
              outcome: str, triggered_by: str, effects: _Effects, condition: Optional[str] = None) -> None:
        now = self.clock.now()
        from_step = instance.current_step_id
        self._close_history(instance, now, outcome, target_id, triggered_by)
        instance.current_step_id = target_id
        instance.step_entered_at = now
        instance.escalation_level = 0
        instance.history.append(self._history_entry(target_id, now, triggered_by))

        effects.audits.append((
            AuditEventType.STEP_SKIPPED if outcome == "skipped" else AuditEventType.STEP_TRANSITIONED,
            {'from_step': from_step, 'to_step': target_id, 'outcome': outcome, 'condition': condition}
        ))
        effects.events.append((DomainEvent.WORKFLOW_TRANSITIONED, {
            'case_id': instance.case_id, 'from_step': from_step, 'to_step': target_id, 'outcome': outcome
        }))

        target = definition.get_step(target_id)
        if (target is not None and target.assignment_rules.role and not target.is_terminal
                and not target.auto_advances and not target.should_skip(instance.context)):
            recipients = [f"role:{target.assignment_rules.role}"]
            effects.notifications.append((recipients, "step_assigned", {
                'case_id': instance.case_id, 'step_name': target.name, 'step_id': target.id
            }, f"step_assigned:{instance.id}:{len(instance.history)}"))

    def _finish(self, instance: WorkflowInstance, step: StepDefinition, effects: _Effects,
                triggered_by: str) -> None:
        now = self.clock.now()
        final_status = step.final_status or "completed"
        instance.final_status = final_status
        self._close_history(instance, now, final_status, None, triggered_by)
        if final_status == "cancelled":
            instance.status = InstanceStatus.CANCELLED
            instance.cancelled_at = now
            effects.audits.append((AuditEventType.WORKFLOW_CANCELLED, {'end_step': step.id}))
            effects.events.append((DomainEvent.WORKFLOW_CANCELLED, {'case_id': instance.case_id, 'end_step': step.id}))
        else:
            instance.status = InstanceStatus.COMPLETED
            instance.completed_at = now
            effects.audits.append((AuditEventType.WORKFLOW_COMPLETED, {
                'end_step': step.id, 'final_status': final_status
            }))
            effects.events.append((DomainEvent.WORKFLOW_COMPLETED, {
                'case_id': instance.case_id, 'end_step': step.id, 'final_status': final_status
            }))
        for action in step.actions:
            effects.actions.append((action, step.id, {'final_status': final_status}))

    def _freeze(self, instance: WorkflowInstance, path: List[str], effects: _Effects) -> None:
        instance.status = InstanceStatus.SUSPENDED
        instance.frozen_reason = (
            f"Exceeded {self.max_auto_hops} automatic hops; last steps: {' -> '.join(path[-6:])}"
        )
        effects.audits.append((AuditEventType.WORKFLOW_FROZEN, {
            'hops': self.max_auto_hops, 'path': path[-self.max_auto_hops:]
        }))
        effects.events.append((DomainEvent.WORKFLOW_FROZEN, {
            'case_id': instance.case_id, 'step_id': instance.current_step_id
        }))

    def _raise_cycle(self, instance: WorkflowInstance, path: List[str]) -> None:
        self.logger.error(
            f"Workflow instance {instance.id} frozen at step {instance.current_step_id}: {instance.frozen_reason}"
        )
        raise CycleDetected(instance.id, self.max_auto_hops, path)

    # Business rules

    def _fire_business_rules(self, instance: WorkflowInstance, definition: WorkflowDefinition,
                             context: Dict[str, Any], effects: _Effects, triggered_by: str) -> None:
        """Fire matching rules not fired before, highest priority first"""
        for rule in definition.rules_by_priority():
            if instance.status != InstanceStatus.RUNNING:
                break
            if rule.id in instance.fired_rules:
                continue
            if not evaluate(rule.condition, context):
                continue

            instance.fired_rules.append(rule.id)
            effects.rules_fired += 1
            effects.audits.append((AuditEventType.BUSINESS_RULE_FIRED, {
                'rule_id': rule.id, 'action': rule.action, 'step_id': instance.current_step_id
            }))
            if rule.action == AUTO_CANCEL_ACTION:
                self._cancel(instance, definition, rule.description or f"Business rule {rule.id}",
                             triggered_by, effects)
            else:
                effects.actions.append((rule.action, instance.current_step_id, {'rule_id': rule.id}))

    # Cancellation and suspension

    def _cancel(self, instance: WorkflowInstance, definition: WorkflowDefinition, reason: str,
                cancelled_by: str, effects: _Effects) -> None:
        now = self.clock.now()
        self._close_history(instance, now, "cancelled", None, cancelled_by)
        instance.status = InstanceStatus.CANCELLED
        instance.final_status = "cancelled"
        instance.cancelled_at = now
        instance.frozen_reason = None

        actions = []
        end_step = definition.end_step_with_status("cancelled")
        if end_step:
            actions.extend(end_step.actions)
        if CANCELLATION_ACTION not in actions:
            actions.append(CANCELLATION_ACTION)
        for action in actions:
            effects.actions.append((action, instance.current_step_id, {'reason': reason}))

        effects.audits.append((AuditEventType.WORKFLOW_CANCELLED, {
            'reason': reason, 'step_id': instance.current_step_id
        }))
        effects.events.append((DomainEvent.WORKFLOW_CANCELLED, {
            'case_id': instance.case_id, 'reason': reason
        }))

    def cancel_instance(self, instance_id: str, reason: str, cancelled_by: str = "system") -> WorkflowInstance:
        """Terminal; allowed from running or suspended"""
        instance = self.repository.get(instance_id)
        if instance.is_terminal:
            raise InvalidInstanceState(f"Workflow instance {instance_id} is already {instance.status.value}")

        effects = _Effects()
        self._cancel(instance, self._definition_for(instance), reason, cancelled_by, effects)
        instance.updated_at = self.clock.now()
        self.repository.save(instance)
        self._emit(instance, effects, cancelled_by)
        log_action(
            self.logger, "info", f"Workflow instance cancelled: {reason}",
            user_id=cancelled_by, action="cancel_instance", resource=f"workflow_instance:{instance.id}"
        )
        return instance

    def suspend_instance(self, instance_id: str, reason: str, suspended_by: str = "system") -> WorkflowInstance:
        instance = self.repository.get(instance_id)
        if instance.status != InstanceStatus.RUNNING:
            raise InvalidInstanceState(f"Workflow instance {instance_id} is {instance.status.value}, not running")
        instance.status = InstanceStatus.SUSPENDED
        instance.updated_at = self.clock.now()
        self.repository.save(instance)
        self.audit.log_event(
            AuditEventType.WORKFLOW_SUSPENDED,
            'workflow_instance',
            instance.id,
            {'reason': reason, 'step_id': instance.current_step_id},
            suspended_by
        )
        return instance

    def resume_instance(self, instance_id: str, resumed_by: str = "system") -> WorkflowInstance:
        """Back to running; a frozen instance loses its frozen_reason"""
        instance = self.repository.get(instance_id)
        if instance.status != InstanceStatus.SUSPENDED:
            raise InvalidInstanceState(f"Workflow instance {instance_id} is {instance.status.value}, not suspended")
        was_frozen = instance.frozen_reason
        instance.status = InstanceStatus.RUNNING
        instance.frozen_reason = None
        instance.updated_at = self.clock.now()
        self.repository.save(instance)
        self.audit.log_event(
            AuditEventType.WORKFLOW_RESUMED,
            'workflow_instance',
            instance.id,
            {'step_id': instance.current_step_id, 'was_frozen': bool(was_frozen)},
            resumed_by
        )
        return instance

    # Timeouts

    def check_timeouts(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Escalate every running instance whose step timed out; failures are per instance"""
        now = now or self.clock.now()
        results = []
        for instance_id in self.timeout_candidates():
            try:
                result = self.check_instance_timeout(instance_id, now)
            except Exception as e:
                self.logger.error(f"Timeout check failed for workflow instance {instance_id}: {e}")
                results.append({'instance_id': instance_id, 'error': str(e)})
                continue
            if result:
                results.append(result)
        return results

    def check_instance_timeout(self, instance_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """Apply due escalation levels and a due auto-transition to one instance"""
        now = now or self.clock.now()
        instance = self.repository.get(instance_id)
        if instance.status != InstanceStatus.RUNNING:
            return None

        definition = self._definition_for(instance)
        step = definition.get_step(instance.current_step_id)
        rule = definition.escalation_rule_for(step.id)
        timeout = step.timeout_hours if step.timeout_hours is not None else (rule.timeout_hours if rule else None)
        if timeout is None:
            return None
        elapsed = hours_between(instance.step_entered_at, now)
        if elapsed <= timeout:
            return None

        effects = _Effects()
        escalated_levels = []
        if rule:
            for level in rule.escalation_levels:
                if level.after_hours > elapsed or level.level <= instance.escalation_level:
                    continue
                record = {
                    'step_id': step.id,
                    'level': level.level,
                    'elapsed_hours': round(elapsed, 2),
                    'notified_roles': list(level.notify_roles),
                    'actions': list(level.actions),
                    'timestamp': now.isoformat(),
                }
                instance.escalations.append(record)
                instance.escalation_level = level.level
                escalated_levels.append(level.level)
                if level.notify_roles:
                    effects.notifications.append((
                        [f"role:{role}" for role in level.notify_roles],
                        "step_escalation",
                        {'case_id': instance.case_id, 'step_name': step.name, 'step_id': step.id,
                         'elapsed_hours': round(elapsed, 1), 'level': level.level},
                        f"step_escalation:{instance.id}:{step.id}:{instance.step_entered_at.isoformat()}:{level.level}"
                    ))
                for action in level.actions:
                    effects.actions.append((action, step.id, {'escalation_level': level.level}))
                effects.audits.append((AuditEventType.STEP_ESCALATED, record))
                effects.events.append((DomainEvent.WORKFLOW_ESCALATED, {
                    'case_id': instance.case_id, 'step_id': step.id, 'level': level.level
                }))

        auto_to = None
        path = [step.id]
        hops_ok = True
        auto = rule.auto_transition if rule else None
        if auto is not None:
            threshold = auto.after_hours if auto.after_hours is not None else timeout
            if elapsed >= threshold:
                auto_to = auto.to
                self._move(instance, definition, auto.to, "timed_out", "system:timeout", effects)
                path.append(auto.to)
                hops_ok = self._run_auto(instance, definition, effects, "system:timeout", path)

        if not escalated_levels and auto_to is None:
            return None

        instance.updated_at = now
        self.repository.save(instance)
        self._emit(instance, effects, "system:timeout")
        if escalated_levels:
            self.logger.warning(
                f"Case {instance.case_id} escalated at step {step.id} to level {max(escalated_levels)} "
                f"after {elapsed:.1f}h"
            )
        if not hops_ok:
            self._raise_cycle(instance, path)
        return {
            'instance_id': instance.id,
            'case_id': instance.case_id,
            'step_id': step.id,
            'elapsed_hours': round(elapsed, 2),
            'escalated_levels': escalated_levels,
            'auto_transitioned_to': auto_to,
            'current_step_id': instance.current_step_id,
        }

    # Side effects

    def _emit(self, instance: WorkflowInstance, effects: _Effects, triggered_by: str) -> None:
        for event_type, metadata in effects.audits:
            self.audit.log_event(event_type, 'workflow_instance', instance.id, metadata, triggered_by)

        for recipients, template, payload, dedupe_key in effects.notifications:
            self._notify(recipients, template, payload, dedupe_key)

        definition_name = instance.definition_name
        for action, step_id, extra in effects.actions:
            self.actions.dispatch(ActionContext(
                action=action,
                instance_id=instance.id,
                case_id=instance.case_id,
                step_id=step_id,
                context=instance.context,
                definition_name=definition_name,
                triggered_by=triggered_by,
                extra=extra,
            ))

        if self.events:
            for event_type, data in effects.events:
                self.events.publish(EventPayload(
                    event_type=event_type,
                    entity_type='workflow_instance',
                    entity_id=instance.id,
                    data=data,
                    timestamp=self.clock.now()
                ))

    def _notify(self, recipients: List[str], template: str, payload: Dict[str, Any], dedupe_key: str) -> None:
        if self.notifications is None:
            return
        for channel in self.notification_channels:
            try:
                self.notifications.send(recipients, channel, template, payload, dedupe_key=f"{dedupe_key}:{channel}")
            except Exception as e:
                self.logger.error(f"Failed to queue {template} notification via {channel}: {e}")


def connect_context_patches(dispatcher: EventDispatcher, engine: WorkflowExecutionEngine,
                            retries: Optional[int] = None) -> Callable[[EventPayload], Any]:
    """
    Subscribe the engine to CASE_CONTEXT_PATCHED events.

    Each patch is applied to the live instance of the event's case,
    reloading and retrying on VersionConflict.
    """
    retries = retries if retries is not None else get_config().version_conflict_retries

    def on_case_context_patched(event: EventPayload):
        case_id = event.data.get('case_id')
        patch = event.data.get('patch') or {}
        triggered_by = event.data.get('triggered_by', 'system:approvals')

        def apply():
            instance = engine.find_running_instance(case_id, include_suspended=True)
            if instance is None:
                engine.logger.info(f"No live workflow instance for case {case_id}; context patch ignored")
                return None
            return engine.apply_context_patch(instance.id, patch, triggered_by)

        return retry_on_conflict(apply, retries + 1)

    dispatcher.subscribe(DomainEvent.CASE_CONTEXT_PATCHED, on_case_context_patched)
    return on_case_context_patched
