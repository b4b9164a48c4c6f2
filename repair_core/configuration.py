"""
Workflow Configuration Selector

Maps (device type, service type, customer tier) plus optional extra
conditions to the workflow definition a new repair case should run.
Empty criteria lists act as wildcards; ties are broken by priority, then
recency, then id so that selection is deterministic.
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
from .conditions import evaluate, to_condition, describe
from .definitions import WorkflowDefinition, WorkflowDefinitionStore
from .errors import ConfigurationConflict, ConfigurationNotFound, DefinitionNotFound, ExpressionError
from .repository import VersionedRepository
from .logging_config import get_logger, log_action


class MigrationStrategy(Enum):
    UPDATE = "update"          # repoint existing configurations in place
    DUPLICATE = "duplicate"    # add copies pointing at the new definition
    REPLACE = "replace"        # copy, then deactivate the originals


@dataclass
class SelectionCriteria:
    device_type: str
    service_type: str
    customer_tier: str
    additional_context: Dict[str, Any] = field(default_factory=dict)

    def as_context(self) -> Dict[str, Any]:
        context = {
            "deviceType": self.device_type,
            "serviceType": self.service_type,
            "customerTier": self.customer_tier,
        }
        context.update(self.additional_context)
        return context


@dataclass
class WorkflowConfiguration(StorageRecord):
    name: str
    workflow_definition_id: str
    description: str = ""
    device_types: List[str] = field(default_factory=list)
    service_types: List[str] = field(default_factory=list)
    customer_tiers: List[str] = field(default_factory=list)
    priority: int = 0
    is_active: bool = True
    conditions: List[Any] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_by: str = "system"
    version: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorkflowConfiguration':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)

    def criteria_key(self):
        return (
            frozenset(self.device_types),
            frozenset(self.service_types),
            frozenset(self.customer_tiers),
            self.priority,
        )


@dataclass
class ConfigurationMatch:
    configuration: WorkflowConfiguration
    definition: WorkflowDefinition
    matched_criteria: List[str]
    reasons: List[str]


_EDITABLE_FIELDS = {
    "name", "description", "device_types", "service_types", "customer_tiers",
    "workflow_definition_id", "priority", "is_active", "conditions", "metadata",
}


class WorkflowConfigurationSelector:
    """Selects and manages workflow configurations"""

    TABLE = "workflow_configurations"

    def __init__(self, storage: StorageInterface, definitions: WorkflowDefinitionStore,
                 audit_manager: Optional[AuditTrail] = None, clock: Optional[Clock] = None):
        self.storage = storage
        self.definitions = definitions
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.repository = VersionedRepository(storage, self.TABLE, WorkflowConfiguration,
                                              label="Workflow configuration")
        self.logger = get_logger("drms.configuration")

    # Selection

    def select(self, criteria: SelectionCriteria) -> Optional[ConfigurationMatch]:
        """Best active configuration for the criteria, or None"""
        context = criteria.as_context()
        candidates = []

        for configuration in self.list_configurations(active_only=True):
            matched, reasons = self._match(configuration, criteria, context)
            if matched is None:
                continue
            definition = self.definitions.get_definition(configuration.workflow_definition_id)
            if definition is None or not definition.is_active:
                continue
            candidates.append(ConfigurationMatch(configuration, definition, matched, reasons))

        if not candidates:
            self.logger.info(
                f"No workflow configuration for {criteria.device_type}/{criteria.service_type}/{criteria.customer_tier}"
            )
            return None

        # priority desc, created_at desc, id asc
        candidates.sort(key=lambda m: m.configuration.id)
        candidates.sort(key=lambda m: (m.configuration.priority, m.configuration.created_at), reverse=True)
        best = candidates[0]
        best.reasons.append(f"Priority {best.configuration.priority}")
        return best

    def _match(self, configuration: WorkflowConfiguration, criteria: SelectionCriteria,
               context: Dict[str, Any]):
        matched: List[str] = []
        reasons: List[str] = []
        for label, allowed, value in (
            ("deviceType", configuration.device_types, criteria.device_type),
            ("serviceType", configuration.service_types, criteria.service_type),
            ("customerTier", configuration.customer_tiers, criteria.customer_tier),
        ):
            if not allowed:
                reasons.append(f"Any {label}")
                continue
            if value not in allowed:
                return None, []
            matched.append(label)
            reasons.append(f"Matches {label}: {value}")

        for condition in configuration.conditions:
            if not evaluate(to_condition(condition), context):
                return None, []
            reasons.append(f"Condition holds: {describe(condition)}")
        return matched, reasons

    # Management

    def _check_conditions(self, conditions: List[Any]) -> None:
        for condition in conditions:
            to_condition(condition)

    def _check_conflicts(self, configuration: WorkflowConfiguration) -> None:
        if not configuration.is_active:
            return
        key = configuration.criteria_key()
        conflicting = [
            other.id for other in self.list_configurations(active_only=True)
            if other.id != configuration.id and other.criteria_key() == key
        ]
        if conflicting:
            raise ConfigurationConflict(conflicting)

    def _require_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = self.definitions.get_definition(definition_id)
        if definition is None:
            raise DefinitionNotFound(definition_id)
        return definition

    def create_configuration(self, name: str, workflow_definition_id: str,
                             device_types: Optional[List[str]] = None,
                             service_types: Optional[List[str]] = None,
                             customer_tiers: Optional[List[str]] = None,
                             priority: int = 0, description: str = "",
                             conditions: Optional[List[Any]] = None,
                             metadata: Optional[Dict[str, Any]] = None,
                             is_active: bool = True,
                             created_by: str = "system") -> WorkflowConfiguration:
        self._require_definition(workflow_definition_id)
        self._check_conditions(conditions or [])

        now = self.clock.now()
        configuration = WorkflowConfiguration(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            workflow_definition_id=workflow_definition_id,
            description=description,
            device_types=list(device_types or []),
            service_types=list(service_types or []),
            customer_tiers=list(customer_tiers or []),
            priority=priority,
            is_active=is_active,
            conditions=list(conditions or []),
            metadata=copy.deepcopy(metadata or {}),
            created_by=created_by,
        )
        self._check_conflicts(configuration)
        self.repository.insert(configuration)

        self.audit.log_event(
            AuditEventType.CONFIGURATION_CREATED,
            'workflow_configuration',
            configuration.id,
            {'name': name, 'workflow_definition_id': workflow_definition_id, 'priority': priority},
            created_by
        )
        log_action(
            self.logger, "info", f"Workflow configuration created: {name}",
            user_id=created_by, action="create_configuration",
            resource=f"workflow_configuration:{configuration.id}"
        )
        return configuration

    def get_configuration(self, configuration_id: str) -> Optional[WorkflowConfiguration]:
        return self.repository.load(configuration_id)

    def _require(self, configuration_id: str) -> WorkflowConfiguration:
        configuration = self.get_configuration(configuration_id)
        if configuration is None:
            raise ConfigurationNotFound(configuration_id)
        return configuration

    def list_configurations(self, active_only: bool = False,
                            device_type: Optional[str] = None,
                            service_type: Optional[str] = None,
                            customer_tier: Optional[str] = None,
                            workflow_definition_id: Optional[str] = None) -> List[WorkflowConfiguration]:
        configurations = self.repository.all()
        if active_only:
            configurations = [c for c in configurations if c.is_active]
        if device_type:
            configurations = [c for c in configurations if not c.device_types or device_type in c.device_types]
        if service_type:
            configurations = [c for c in configurations if not c.service_types or service_type in c.service_types]
        if customer_tier:
            configurations = [c for c in configurations if not c.customer_tiers or customer_tier in c.customer_tiers]
        if workflow_definition_id:
            configurations = [c for c in configurations if c.workflow_definition_id == workflow_definition_id]
        return sorted(configurations, key=lambda c: (-c.priority, c.name))

    def update_configuration(self, configuration_id: str, changes: Dict[str, Any],
                             updated_by: str = "system") -> WorkflowConfiguration:
        configuration = self._require(configuration_id)
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update configuration fields: {', '.join(sorted(unknown))}")

        if "workflow_definition_id" in changes:
            self._require_definition(changes["workflow_definition_id"])
        if "conditions" in changes:
            self._check_conditions(changes["conditions"])

        for key, value in changes.items():
            setattr(configuration, key, copy.deepcopy(value))
        configuration.updated_at = self.clock.now()
        self._check_conflicts(configuration)
        self.repository.save(configuration)

        self.audit.log_event(
            AuditEventType.CONFIGURATION_UPDATED,
            'workflow_configuration',
            configuration.id,
            {'changes': sorted(changes), 'version': configuration.version},
            updated_by
        )
        return configuration

    def toggle_configuration(self, configuration_id: str, is_active: bool,
                             updated_by: str = "system") -> WorkflowConfiguration:
        return self.update_configuration(configuration_id, {"is_active": is_active}, updated_by)

    def delete_configuration(self, configuration_id: str, deleted_by: str = "system") -> None:
        configuration = self._require(configuration_id)
        self.repository.delete(configuration_id)
        self.audit.log_event(
            AuditEventType.CONFIGURATION_DELETED,
            'workflow_configuration',
            configuration_id,
            {'name': configuration.name},
            deleted_by
        )

    def migrate_configurations(self, from_definition_id: str, to_definition_id: str,
                               strategy: Union[str, MigrationStrategy] = MigrationStrategy.UPDATE,
                               migrated_by: str = "system") -> Dict[str, Any]:
        """Move every configuration of one definition onto another"""
        strategy = MigrationStrategy(strategy)
        self._require_definition(to_definition_id)
        report = {
            "strategy": strategy.value,
            "from_definition_id": from_definition_id,
            "to_definition_id": to_definition_id,
            "updated": [],
            "created": [],
            "deactivated": [],
        }

        for configuration in self.list_configurations(workflow_definition_id=from_definition_id):
            if strategy == MigrationStrategy.UPDATE:
                self.update_configuration(configuration.id, {"workflow_definition_id": to_definition_id},
                                          migrated_by)
                report["updated"].append(configuration.id)
                continue

            if strategy == MigrationStrategy.REPLACE and configuration.is_active:
                # Deactivate first so the copy does not conflict with its original
                self.toggle_configuration(configuration.id, False, migrated_by)
                report["deactivated"].append(configuration.id)

            metadata = dict(configuration.metadata)
            metadata.update({"migratedFrom": from_definition_id, "originalConfigId": configuration.id})
            migrated = self.create_configuration(
                name=configuration.name if strategy == MigrationStrategy.REPLACE else f"{configuration.name} (Migrated)",
                workflow_definition_id=to_definition_id,
                device_types=configuration.device_types,
                service_types=configuration.service_types,
                customer_tiers=configuration.customer_tiers,
                priority=configuration.priority,
                description=configuration.description,
                conditions=configuration.conditions,
                metadata=metadata,
                # Duplicates start inactive; an active copy would share its original's criteria
                is_active=configuration.is_active and strategy == MigrationStrategy.REPLACE,
                created_by=migrated_by,
            )
            report["created"].append(migrated.id)

        self.audit.log_event(
            AuditEventType.CONFIGURATION_MIGRATED,
            'workflow_definition',
            to_definition_id,
            report,
            migrated_by
        )
        return report

    def validate_compatibility(self, configuration: Union[str, WorkflowConfiguration]) -> Dict[str, Any]:
        """Report problems that would stop or skew selection for a configuration"""
        if isinstance(configuration, str):
            found = self.get_configuration(configuration)
            if found is None:
                return {"compatible": False, "issues": ["Configuration not found"], "warnings": []}
            configuration = found

        issues: List[str] = []
        warnings: List[str] = []

        definition = self.definitions.get_definition(configuration.workflow_definition_id)
        if definition is None or not definition.is_active:
            issues.append("Associated workflow definition is inactive or not found")

        for condition in configuration.conditions:
            try:
                to_condition(condition)
            except ExpressionError as e:
                issues.append(f"Invalid condition: {e}")

        if not (configuration.device_types or configuration.service_types or configuration.customer_tiers):
            warnings.append("Configuration has no specific criteria and will match all requests")

        overlapping = [
            other.name for other in self.list_configurations(active_only=True)
            if other.id != configuration.id
            and other.priority == configuration.priority
            and (set(other.device_types) & set(configuration.device_types)
                 or set(other.service_types) & set(configuration.service_types)
                 or set(other.customer_tiers) & set(configuration.customer_tiers))
        ]
        if overlapping:
            warnings.append(f"Potential conflicts with configurations: {', '.join(sorted(overlapping))}")

        if definition is not None:
            applicable = definition.metadata.get("applicableCustomerTiers") or []
            outside = [tier for tier in configuration.customer_tiers if applicable and tier not in applicable]
            if outside:
                warnings.append(
                    f"Customer tiers {', '.join(outside)} are not applicable to workflow {definition.name}"
                )

        return {"compatible": not issues, "issues": issues, "warnings": warnings}
