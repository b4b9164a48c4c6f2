"""
Workflow Definition Store

Versioned repair workflow graphs. A definition arrives as a JSON-shaped
config (the camelCase form used by the admin UI and seed files), is parsed
once into typed steps, transitions, business rules and escalation rules,
validated, and stored. Stored definitions are never edited in place: an
update produces a new version of the same name, and running instances keep
their own snapshot of the version they started on.
"""

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .conditions import evaluate, to_condition, validate_expression
from .errors import DefinitionNotFound, DefinitionValidationError, ExpressionError
from .config import get_config
from .logging_config import get_logger, log_action


class StepType(Enum):
    """Kinds of workflow steps"""
    START_EVENT = "start_event"
    END_EVENT = "end_event"
    MANUAL = "manual"
    AUTOMATIC = "automatic"
    APPROVAL = "approval"
    EXTERNAL_APPROVAL = "external_approval"


# Steps that fire their transitions without waiting for an external event
AUTO_ADVANCING_STEPS = {StepType.START_EVENT, StepType.AUTOMATIC}

FINAL_STATUSES = ("completed", "cancelled", "transferred")


def _pick(data: Dict[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


@dataclass
class Transition:
    to: str
    condition: str = "always"
    action: Optional[str] = None

    def matches(self, context: Dict[str, Any]) -> bool:
        return evaluate(self.condition, context)

    def to_config(self) -> Dict[str, Any]:
        result = {"to": self.to, "condition": self.condition}
        if self.action:
            result["action"] = self.action
        return result


@dataclass
class AssignmentRules:
    role: Optional[str] = None
    skill_level_min: Optional[int] = None
    required_certifications: List[str] = field(default_factory=list)
    location: Optional[str] = None
    max_concurrent_cases: Optional[int] = None

    @classmethod
    def from_config(cls, data: Optional[Dict[str, Any]]) -> 'AssignmentRules':
        data = data or {}
        return cls(
            role=data.get("role"),
            skill_level_min=_pick(data, "skillLevelMin", "skill_level_min"),
            required_certifications=list(_pick(data, "requiredCertifications", "required_certifications", []) or []),
            location=data.get("location"),
            max_concurrent_cases=_pick(data, "maxConcurrentCases", "max_concurrent_cases"),
        )

    def to_config(self) -> Dict[str, Any]:
        result = {}
        if self.role:
            result["role"] = self.role
        if self.skill_level_min is not None:
            result["skillLevelMin"] = self.skill_level_min
        if self.required_certifications:
            result["requiredCertifications"] = list(self.required_certifications)
        if self.location:
            result["location"] = self.location
        if self.max_concurrent_cases is not None:
            result["maxConcurrentCases"] = self.max_concurrent_cases
        return result


@dataclass
class StepDefinition:
    """A node in the workflow graph"""
    id: str
    name: str
    step_type: StepType
    transitions: List[Transition] = field(default_factory=list)
    assignment_rules: AssignmentRules = field(default_factory=AssignmentRules)
    required_documents: List[str] = field(default_factory=list)
    timeout_hours: Optional[float] = None
    chargeable: bool = False
    is_start_step: bool = False
    is_end_step: bool = False
    final_status: Optional[str] = None
    actions: List[str] = field(default_factory=list)
    skip_conditions: List[str] = field(default_factory=list)
    system_action: Optional[str] = None
    description: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.step_type == StepType.END_EVENT or self.is_end_step

    @property
    def auto_advances(self) -> bool:
        return self.step_type in AUTO_ADVANCING_STEPS

    def should_skip(self, context: Dict[str, Any]) -> bool:
        """True when the step has skip conditions and every one holds"""
        return bool(self.skip_conditions) and all(
            evaluate(condition, context) for condition in self.skip_conditions
        )

    def first_matching_transition(self, context: Dict[str, Any]) -> Optional[Transition]:
        """Transitions are tried in definition order; the first match wins"""
        for transition in self.transitions:
            if transition.matches(context):
                return transition
        return None

    def to_config(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "type": self.step_type.value,
            "transitions": [t.to_config() for t in self.transitions],
            "assignmentRules": self.assignment_rules.to_config(),
            "requiredDocuments": list(self.required_documents),
            "chargeable": self.chargeable,
            "isStartStep": self.is_start_step,
            "isEndStep": self.is_end_step,
            "actions": list(self.actions),
            "skipConditions": list(self.skip_conditions),
        }
        if self.timeout_hours is not None:
            result["timeoutHours"] = self.timeout_hours
        if self.final_status:
            result["finalStatus"] = self.final_status
        if self.system_action:
            result["systemAction"] = self.system_action
        if self.description:
            result["description"] = self.description
        return result


@dataclass
class BusinessRule:
    id: str
    condition: str
    action: str
    description: str = ""
    priority: int = 0

    def to_config(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "condition": self.condition,
            "action": self.action,
            "priority": self.priority,
        }


@dataclass
class EscalationLevel:
    level: int
    after_hours: float
    notify_roles: List[str] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)


@dataclass
class AutoTransition:
    to: str
    after_hours: Optional[float] = None


@dataclass
class StepEscalationRule:
    step_id: str
    timeout_hours: Optional[float]
    escalation_levels: List[EscalationLevel] = field(default_factory=list)
    auto_transition: Optional[AutoTransition] = None

    def to_config(self) -> Dict[str, Any]:
        result = {
            "stepId": self.step_id,
            "timeoutHours": self.timeout_hours,
            "escalationLevels": [
                {
                    "level": lvl.level,
                    "afterHours": lvl.after_hours,
                    "notifyRoles": list(lvl.notify_roles),
                    "actions": list(lvl.actions),
                }
                for lvl in self.escalation_levels
            ],
        }
        if self.auto_transition:
            result["autoTransition"] = {
                "to": self.auto_transition.to,
                "afterHours": self.auto_transition.after_hours,
            }
        return result


@dataclass
class WorkflowDefinition(StorageRecord):
    """A parsed, typed workflow graph"""
    name: str
    steps: List[StepDefinition]
    version: int = 1
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    start_event: Optional[str] = None
    end_events: List[str] = field(default_factory=list)
    business_rules: List[BusinessRule] = field(default_factory=list)
    escalation_rules: List[StepEscalationRule] = field(default_factory=list)
    is_active: bool = True
    created_by: str = "system"

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    @property
    def start_step(self) -> Optional[StepDefinition]:
        flagged = [s for s in self.steps if s.is_start_step]
        if flagged:
            return flagged[0]
        if self.start_event and self.get_step(self.start_event):
            return self.get_step(self.start_event)
        typed = [s for s in self.steps if s.step_type == StepType.START_EVENT]
        return typed[0] if typed else None

    def escalation_rule_for(self, step_id: str) -> Optional[StepEscalationRule]:
        for rule in self.escalation_rules:
            if rule.step_id == step_id:
                return rule
        return None

    def end_step_with_status(self, final_status: str) -> Optional[StepDefinition]:
        for step in self.steps:
            if step.is_terminal and step.final_status == final_status:
                return step
        return None

    def rules_by_priority(self) -> List[BusinessRule]:
        return sorted(self.business_rules, key=lambda r: -r.priority)

    def to_config(self) -> Dict[str, Any]:
        """Render back to the camelCase config shape"""
        return {
            "metadata": copy.deepcopy(self.metadata),
            "startEvent": self.start_event,
            "endEvents": list(self.end_events),
            "steps": [s.to_config() for s in self.steps],
            "businessRules": [r.to_config() for r in self.business_rules],
            "escalationRules": [r.to_config() for r in self.escalation_rules],
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "config": self.to_config(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowDefinition':
        definition = parse_definition_config(
            data["config"],
            name=data["name"],
            created_by=data.get("created_by", "system"),
            description=data.get("description", ""),
        )
        definition.id = data["id"]
        definition.version = data.get("version", 1)
        definition.is_active = data.get("is_active", True)
        definition.created_at = datetime.fromisoformat(data["created_at"])
        definition.updated_at = datetime.fromisoformat(data["updated_at"])
        return definition


def _issue(issues: List[Dict[str, str]], field_name: str, message: str, code: str) -> None:
    issues.append({"field": field_name, "message": message, "code": code})


def _parse_step(raw: Dict[str, Any], index: int, issues: List[Dict[str, str]]) -> Optional[StepDefinition]:
    step_id = raw.get("id")
    if not step_id:
        _issue(issues, f"steps[{index}].id", "Step id is required", "REQUIRED_FIELD")
        return None
    try:
        step_type = StepType(raw.get("type", "manual"))
    except ValueError:
        _issue(issues, f"steps[{index}].type", f"Unknown step type {raw.get('type')!r}", "INVALID_STEP_TYPE")
        return None

    transitions = []
    for position, raw_transition in enumerate(raw.get("transitions") or []):
        if not raw_transition.get("to"):
            _issue(issues, f"steps[{index}].transitions[{position}].to",
                   "Transition target is required", "REQUIRED_FIELD")
            continue
        transitions.append(Transition(
            to=raw_transition["to"],
            condition=raw_transition.get("condition") or "always",
            action=raw_transition.get("action"),
        ))

    return StepDefinition(
        id=step_id,
        name=raw.get("name") or step_id,
        step_type=step_type,
        transitions=transitions,
        assignment_rules=AssignmentRules.from_config(_pick(raw, "assignmentRules", "assignment_rules")),
        required_documents=list(_pick(raw, "requiredDocuments", "required_documents", []) or []),
        timeout_hours=_pick(raw, "timeoutHours", "timeout_hours"),
        chargeable=bool(raw.get("chargeable", False)),
        is_start_step=bool(_pick(raw, "isStartStep", "is_start_step", False)),
        is_end_step=bool(_pick(raw, "isEndStep", "is_end_step", False)),
        final_status=_pick(raw, "finalStatus", "final_status"),
        actions=list(raw.get("actions") or []),
        skip_conditions=list(_pick(raw, "skipConditions", "skip_conditions", []) or []),
        system_action=_pick(raw, "systemAction", "system_action"),
        description=raw.get("description"),
    )


def _parse_escalation_rule(raw: Dict[str, Any]) -> StepEscalationRule:
    auto = _pick(raw, "autoTransition", "auto_transition")
    if isinstance(auto, str):
        auto = {"to": auto}
    return StepEscalationRule(
        step_id=_pick(raw, "stepId", "step_id"),
        timeout_hours=_pick(raw, "timeoutHours", "timeout_hours"),
        escalation_levels=sorted(
            [
                EscalationLevel(
                    level=lvl.get("level"),
                    after_hours=_pick(lvl, "afterHours", "after_hours", 0),
                    notify_roles=list(_pick(lvl, "notifyRoles", "notify_roles", []) or []),
                    actions=list(lvl.get("actions") or []),
                )
                for lvl in _pick(raw, "escalationLevels", "escalation_levels", []) or []
            ],
            key=lambda lvl: lvl.level,
        ),
        auto_transition=AutoTransition(auto["to"], _pick(auto, "afterHours", "after_hours")) if auto else None,
    )


def parse_definition_config(config: Dict[str, Any], name: str, created_by: str = "system",
                            description: Optional[str] = None,
                            now: Optional[datetime] = None) -> WorkflowDefinition:
    """
    Parse the JSON-shaped config into a typed WorkflowDefinition.

    Shape errors (missing ids, unknown step types) raise
    DefinitionValidationError; graph-level checks are left to
    validate_definition.
    """
    issues: List[Dict[str, str]] = []
    steps = []
    for index, raw_step in enumerate(config.get("steps") or []):
        step = _parse_step(raw_step, index, issues)
        if step:
            steps.append(step)

    # Top-level {from, to, condition} transitions append to their source step
    by_id = {step.id: step for step in steps}
    for position, raw in enumerate(config.get("transitions") or []):
        source = by_id.get(raw.get("from"))
        if source is None or not raw.get("to"):
            _issue(issues, f"transitions[{position}]",
                   f"Transition from unknown step {raw.get('from')!r}", "INVALID_TRANSITION")
            continue
        source.transitions.append(Transition(raw["to"], raw.get("condition") or "always", raw.get("action")))

    business_rules = [
        BusinessRule(
            id=raw.get("id") or f"rule-{index + 1}",
            condition=raw.get("condition") or "always",
            action=raw.get("action", ""),
            description=raw.get("description", ""),
            priority=raw.get("priority") or 0,
        )
        for index, raw in enumerate(_pick(config, "businessRules", "business_rules", []) or [])
    ]
    escalation_rules = [
        _parse_escalation_rule(raw)
        for raw in _pick(config, "escalationRules", "escalation_rules", []) or []
    ]

    if issues:
        raise DefinitionValidationError(issues)

    metadata = copy.deepcopy(config.get("metadata") or {})
    stamp = now or datetime.now().astimezone()
    return WorkflowDefinition(
        id="",
        created_at=stamp,
        updated_at=stamp,
        name=name,
        steps=steps,
        description=description if description is not None else metadata.get("description", ""),
        metadata=metadata,
        start_event=_pick(config, "startEvent", "start_event"),
        end_events=list(_pick(config, "endEvents", "end_events", []) or []),
        business_rules=business_rules,
        escalation_rules=escalation_rules,
        created_by=created_by,
    )


def _check_condition(issues: List[Dict[str, str]], field_name: str, spec: Any) -> None:
    if isinstance(spec, str):
        for message in validate_expression(spec):
            _issue(issues, field_name, message, "INVALID_CONDITION")
        return
    try:
        to_condition(spec)
    except ExpressionError as e:
        _issue(issues, field_name, str(e), "INVALID_CONDITION")


def validate_definition(definition: WorkflowDefinition, max_name_length: int = 255) -> None:
    """Raise DefinitionValidationError listing every structural problem"""
    issues: List[Dict[str, str]] = []

    if not definition.name:
        _issue(issues, "name", "Workflow name is required", "REQUIRED_FIELD")
    elif len(definition.name) > max_name_length:
        _issue(issues, "name", f"Workflow name must be at most {max_name_length} characters", "FIELD_TOO_LONG")

    if not definition.steps:
        _issue(issues, "steps", "Workflow must have at least one step", "REQUIRED_FIELD")

    seen = set()
    for step in definition.steps:
        if step.id in seen:
            _issue(issues, f"steps.{step.id}", "Step ids must be unique", "DUPLICATE_STEP")
        seen.add(step.id)

    flagged = [s.id for s in definition.steps if s.is_start_step]
    if len(flagged) > 1:
        _issue(issues, "steps", f"Multiple start steps flagged: {', '.join(flagged)}", "MULTIPLE_START_STEPS")
    elif not flagged and not definition.start_event:
        typed = [s.id for s in definition.steps if s.step_type == StepType.START_EVENT]
        if len(typed) > 1:
            _issue(issues, "steps", f"Multiple start events: {', '.join(typed)}", "MULTIPLE_START_STEPS")
    if definition.steps and definition.start_step is None:
        _issue(issues, "startEvent", "Workflow has no start step", "MISSING_START_STEP")
    if definition.start_event and definition.get_step(definition.start_event) is None:
        _issue(issues, "startEvent", f"Start event {definition.start_event!r} is not a step", "UNKNOWN_STEP")

    if definition.steps and not any(step.is_terminal for step in definition.steps):
        _issue(issues, "steps", "Workflow has no end step", "MISSING_END_STEP")
    for end_id in definition.end_events:
        end_step = definition.get_step(end_id)
        if end_step is None:
            _issue(issues, "endEvents", f"End event {end_id!r} is not a step", "UNKNOWN_STEP")
        elif not end_step.is_terminal:
            _issue(issues, "endEvents", f"End event {end_id!r} is not an end step", "INVALID_END_EVENT")

    for step in definition.steps:
        prefix = f"steps.{step.id}"
        if step.is_terminal and step.transitions:
            _issue(issues, f"{prefix}.transitions", "End steps cannot have transitions", "END_STEP_TRANSITIONS")
        if step.final_status and step.final_status not in FINAL_STATUSES:
            _issue(issues, f"{prefix}.finalStatus", f"Unknown final status {step.final_status!r}", "INVALID_FINAL_STATUS")
        if step.timeout_hours is not None and step.timeout_hours <= 0:
            _issue(issues, f"{prefix}.timeoutHours", "Timeout must be positive", "INVALID_TIMEOUT")
        for position, transition in enumerate(step.transitions):
            if definition.get_step(transition.to) is None:
                _issue(issues, f"{prefix}.transitions[{position}]",
                       f"Transition target {transition.to!r} does not exist", "UNKNOWN_STEP")
            _check_condition(issues, f"{prefix}.transitions[{position}].condition", transition.condition)
        for position, condition in enumerate(step.skip_conditions):
            _check_condition(issues, f"{prefix}.skipConditions[{position}]", condition)

    for rule in definition.business_rules:
        _check_condition(issues, f"businessRules.{rule.id}.condition", rule.condition)
        if not rule.action:
            _issue(issues, f"businessRules.{rule.id}.action", "Business rule action is required", "REQUIRED_FIELD")

    for rule in definition.escalation_rules:
        prefix = f"escalationRules.{rule.step_id}"
        if definition.get_step(rule.step_id) is None:
            _issue(issues, prefix, f"Escalation rule references unknown step {rule.step_id!r}", "UNKNOWN_STEP")
        thresholds = [lvl.after_hours for lvl in rule.escalation_levels]
        if thresholds != sorted(thresholds):
            _issue(issues, f"{prefix}.escalationLevels", "Escalation levels must have increasing afterHours",
                   "INVALID_ESCALATION")
        if rule.auto_transition and definition.get_step(rule.auto_transition.to) is None:
            _issue(issues, f"{prefix}.autoTransition",
                   f"Auto-transition target {rule.auto_transition.to!r} does not exist", "UNKNOWN_STEP")

    if issues:
        raise DefinitionValidationError(issues)


class WorkflowDefinitionStore:
    """Stores immutable, versioned workflow definitions"""

    TABLE = "workflow_definitions"

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 clock: Optional[Clock] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.logger = get_logger("drms.definitions")

    # Parsing and validation

    def parse_definition(self, config: Dict[str, Any], name: str, created_by: str = "system",
                         description: Optional[str] = None) -> WorkflowDefinition:
        return parse_definition_config(config, name, created_by, description, now=self.clock.now())

    def validate_definition(self, definition: WorkflowDefinition) -> None:
        validate_definition(definition, get_config().definition_max_name_length)

    # Definition management

    def create_definition(self, definition: Union[WorkflowDefinition, Dict[str, Any]],
                          name: Optional[str] = None, created_by: str = "system") -> WorkflowDefinition:
        """
        Validate and store a definition as the newest version of its name.

        Older versions of the same name are deactivated but stay loadable so
        that snapshots and audit history keep resolving.
        """
        if isinstance(definition, dict):
            if not name:
                name = definition.get("name")
            definition = self.parse_definition(definition, name or "", created_by)
        self.validate_definition(definition)

        previous = self.list_versions(definition.name)
        now = self.clock.now()
        definition.id = str(uuid.uuid4())
        definition.version = (max(d.version for d in previous) + 1) if previous else 1
        definition.is_active = True
        definition.created_at = now
        definition.updated_at = now

        self.storage.save(self.TABLE, definition.id, definition.to_dict())
        for older in previous:
            if older.is_active:
                self._set_active(older, False, created_by)

        self.audit.log_event(
            AuditEventType.DEFINITION_VERSIONED if previous else AuditEventType.DEFINITION_CREATED,
            'workflow_definition',
            definition.id,
            {'name': definition.name, 'version': definition.version, 'steps': len(definition.steps)},
            created_by
        )
        log_action(
            self.logger, "info", f"Workflow definition stored: {definition.name} v{definition.version}",
            user_id=created_by, action="create_definition",
            resource=f"workflow_definition:{definition.id}"
        )
        return definition

    def update_definition(self, definition_id: str, changes: Dict[str, Any],
                          updated_by: str = "system") -> WorkflowDefinition:
        """Create the next version from the stored config with top-level keys replaced"""
        current = self.get_definition(definition_id)
        if current is None:
            raise DefinitionNotFound(definition_id)
        config = current.to_config()
        config.update(copy.deepcopy(changes))
        successor = self.parse_definition(config, current.name, updated_by,
                                          changes.get("description", current.description))
        return self.create_definition(successor, created_by=updated_by)

    def get_definition(self, definition_id: str) -> Optional[WorkflowDefinition]:
        data = self.storage.load(self.TABLE, definition_id)
        return WorkflowDefinition.from_dict(data) if data else None

    def require_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = self.get_definition(definition_id)
        if definition is None:
            raise DefinitionNotFound(definition_id)
        return definition

    def get_by_name(self, name: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        """Exact version if given, else the highest active version"""
        versions = self.list_versions(name)
        if version is not None:
            return next((d for d in versions if d.version == version), None)
        active = [d for d in versions if d.is_active]
        return active[-1] if active else None

    def list_definitions(self, active_only: bool = False) -> List[WorkflowDefinition]:
        definitions = [WorkflowDefinition.from_dict(d) for d in self.storage.load_all(self.TABLE)]
        if active_only:
            definitions = [d for d in definitions if d.is_active]
        return sorted(definitions, key=lambda d: (d.name, d.version))

    def list_versions(self, name: str) -> List[WorkflowDefinition]:
        versions = [WorkflowDefinition.from_dict(d) for d in self.storage.find(self.TABLE, {"name": name})]
        return sorted(versions, key=lambda d: d.version)

    def activate_definition(self, definition_id: str, user_id: str = "system") -> bool:
        definition = self.get_definition(definition_id)
        if not definition:
            return False
        self._set_active(definition, True, user_id)
        return True

    def deactivate_definition(self, definition_id: str, user_id: str = "system") -> bool:
        definition = self.get_definition(definition_id)
        if not definition:
            return False
        self._set_active(definition, False, user_id)
        return True

    def _set_active(self, definition: WorkflowDefinition, active: bool, user_id: str) -> None:
        definition.is_active = active
        definition.updated_at = self.clock.now()
        self.storage.save(self.TABLE, definition.id, definition.to_dict())
        self.audit.log_event(
            AuditEventType.DEFINITION_ACTIVATED if active else AuditEventType.DEFINITION_DEACTIVATED,
            'workflow_definition',
            definition.id,
            {'name': definition.name, 'version': definition.version},
            user_id
        )

    # Snapshots

    @staticmethod
    def snapshot(definition: WorkflowDefinition) -> Dict[str, Any]:
        """By-value copy of a definition for embedding in an instance"""
        return definition.to_dict()

    @staticmethod
    def from_snapshot(snapshot: Dict[str, Any]) -> WorkflowDefinition:
        return WorkflowDefinition.from_dict(copy.deepcopy(snapshot))
