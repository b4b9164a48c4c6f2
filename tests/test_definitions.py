"""
Test suite for workflow definitions

Tests config parsing (camelCase and snake_case), structural validation,
versioning on update, activation and snapshots.
"""

import pytest

from repair_core.storage import InMemoryStorage
from repair_core.audit import AuditTrail, AuditEventType
from repair_core.clock import ManualClock
from repair_core.definitions import (
    StepType, WorkflowDefinitionStore, parse_definition_config, validate_definition,
)
from repair_core.errors import DefinitionNotFound, DefinitionValidationError


def repair_config():
    return {
        "metadata": {"description": "Standard smartphone repair", "applicableCustomerTiers": ["standard"]},
        "startEvent": "start",
        "endEvents": ["end", "cancelled"],
        "steps": [
            {"id": "start", "name": "Start", "type": "start_event",
             "transitions": [{"to": "registration"}]},
            {"id": "registration", "name": "Registration", "type": "manual",
             "assignmentRules": {"role": "receptionist", "skillLevelMin": 1},
             "transitions": [{"to": "inspection", "condition": "status == registered"}]},
            {"id": "inspection", "name": "Inspection", "type": "manual", "timeoutHours": 24,
             "transitions": [{"to": "end", "condition": "inspection_report.status == approved"}]},
            {"id": "end", "name": "Done", "type": "end_event", "finalStatus": "completed",
             "actions": ["send_completion_notification"]},
            {"id": "cancelled", "name": "Cancelled", "type": "end_event", "finalStatus": "cancelled"},
        ],
        "businessRules": [
            {"id": "br-1", "description": "Customer declined", "priority": 10,
             "condition": "customer_approval.status == rejected", "action": "auto_cancel_case"},
        ],
        "escalationRules": [
            {"stepId": "inspection", "timeoutHours": 24,
             "escalationLevels": [
                 {"level": 2, "afterHours": 48, "notifyRoles": ["manager"]},
                 {"level": 1, "afterHours": 24, "notifyRoles": ["supervisor"]},
             ],
             "autoTransition": {"to": "cancelled", "afterHours": 72}},
        ],
    }


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def audit_manager(storage, clock):
    return AuditTrail(storage, clock=clock)


@pytest.fixture
def store(storage, audit_manager, clock):
    return WorkflowDefinitionStore(storage, audit_manager, clock=clock)


class TestParsing:
    """Test config parsing"""

    def test_parse_camel_case(self):
        definition = parse_definition_config(repair_config(), "Smartphone repair")

        assert definition.name == "Smartphone repair"
        assert definition.description == "Standard smartphone repair"
        assert definition.start_step.id == "start"
        registration = definition.get_step("registration")
        assert registration.step_type == StepType.MANUAL
        assert registration.assignment_rules.role == "receptionist"
        assert registration.assignment_rules.skill_level_min == 1
        assert definition.get_step("inspection").timeout_hours == 24
        assert definition.get_step("end").is_terminal

    def test_escalation_levels_sorted(self):
        definition = parse_definition_config(repair_config(), "Smartphone repair")
        rule = definition.escalation_rule_for("inspection")
        assert [lvl.level for lvl in rule.escalation_levels] == [1, 2]
        assert rule.auto_transition.to == "cancelled"
        assert rule.auto_transition.after_hours == 72

    def test_parse_snake_case_and_top_level_transitions(self):
        config = {
            "start_event": "s",
            "steps": [
                {"id": "s", "type": "start_event"},
                {"id": "e", "type": "end_event", "is_end_step": True},
            ],
            "transitions": [{"from": "s", "to": "e"}],
        }
        definition = parse_definition_config(config, "Minimal")
        assert definition.get_step("s").transitions[0].to == "e"
        assert definition.get_step("s").transitions[0].condition == "always"
        assert definition.get_step("e").is_end_step

    def test_unknown_step_type(self):
        config = {"steps": [{"id": "s", "type": "teleport"}]}
        with pytest.raises(DefinitionValidationError) as exc_info:
            parse_definition_config(config, "Broken")
        assert exc_info.value.issues[0]["code"] == "INVALID_STEP_TYPE"

    def test_config_round_trip(self):
        definition = parse_definition_config(repair_config(), "Smartphone repair")
        again = parse_definition_config(definition.to_config(), "Smartphone repair")
        assert [s.id for s in again.steps] == [s.id for s in definition.steps]
        assert again.business_rules[0].action == "auto_cancel_case"


class TestValidation:
    """Test structural validation"""

    def codes(self, config):
        with pytest.raises(DefinitionValidationError) as exc_info:
            validate_definition(parse_definition_config(config, "Broken"))
        return {issue["code"] for issue in exc_info.value.issues}

    def test_valid_definition(self):
        validate_definition(parse_definition_config(repair_config(), "Smartphone repair"))

    def test_unknown_transition_target(self):
        config = repair_config()
        config["steps"][1]["transitions"][0]["to"] = "nowhere"
        assert "UNKNOWN_STEP" in self.codes(config)

    def test_invalid_condition(self):
        config = repair_config()
        config["steps"][1]["transitions"][0]["condition"] = "status =="
        assert "INVALID_CONDITION" in self.codes(config)

    def test_missing_end_step(self):
        config = {"steps": [{"id": "s", "type": "start_event"}]}
        assert "MISSING_END_STEP" in self.codes(config)

    def test_end_step_with_transitions(self):
        config = repair_config()
        config["steps"][3]["transitions"] = [{"to": "start"}]
        assert "END_STEP_TRANSITIONS" in self.codes(config)

    def test_duplicate_step_ids(self):
        config = repair_config()
        config["steps"].append({"id": "registration", "type": "manual"})
        assert "DUPLICATE_STEP" in self.codes(config)

    def test_escalation_levels_must_increase(self):
        config = repair_config()
        config["escalationRules"][0]["escalationLevels"] = [
            {"level": 1, "afterHours": 48},
            {"level": 2, "afterHours": 24},
        ]
        assert "INVALID_ESCALATION" in self.codes(config)

    def test_business_rule_without_action(self):
        config = repair_config()
        config["businessRules"][0]["action"] = ""
        assert "REQUIRED_FIELD" in self.codes(config)


class TestDefinitionStore:
    """Test storing, versioning and activation"""

    def test_create_definition(self, store, audit_manager):
        definition = store.create_definition(repair_config(), name="Smartphone repair", created_by="admin")

        assert definition.id
        assert definition.version == 1
        assert definition.is_active
        assert store.require_definition(definition.id).name == "Smartphone repair"

        events = audit_manager.get_events_for_entity("workflow_definition", definition.id)
        assert events[0].event_type == AuditEventType.DEFINITION_CREATED

    def test_invalid_definition_is_not_stored(self, store, storage):
        config = repair_config()
        config["steps"][1]["transitions"][0]["to"] = "nowhere"
        with pytest.raises(DefinitionValidationError):
            store.create_definition(config, name="Broken")
        assert storage.count(WorkflowDefinitionStore.TABLE) == 0

    def test_update_creates_new_version(self, store):
        first = store.create_definition(repair_config(), name="Smartphone repair")
        steps = repair_config()["steps"]
        steps[2]["timeoutHours"] = 12
        second = store.update_definition(first.id, {"steps": steps}, updated_by="admin")

        assert second.id != first.id
        assert second.version == 2
        assert second.get_step("inspection").timeout_hours == 12
        assert not store.get_definition(first.id).is_active
        assert store.get_definition(first.id).get_step("inspection").timeout_hours == 24

    def test_get_by_name(self, store):
        first = store.create_definition(repair_config(), name="Smartphone repair")
        second = store.update_definition(first.id, {"metadata": {"revision": "b"}})

        assert store.get_by_name("Smartphone repair").id == second.id
        assert store.get_by_name("Smartphone repair", version=1).id == first.id
        assert store.get_by_name("Unknown") is None
        assert [d.version for d in store.list_versions("Smartphone repair")] == [1, 2]

    def test_update_missing_definition(self, store):
        with pytest.raises(DefinitionNotFound):
            store.update_definition("missing", {})

    def test_activation(self, store):
        definition = store.create_definition(repair_config(), name="Smartphone repair")

        assert store.deactivate_definition(definition.id)
        assert store.list_definitions(active_only=True) == []
        assert store.activate_definition(definition.id)
        assert len(store.list_definitions(active_only=True)) == 1
        assert not store.activate_definition("missing")

    def test_snapshot_is_independent(self, store):
        definition = store.create_definition(repair_config(), name="Smartphone repair")
        snapshot = WorkflowDefinitionStore.snapshot(definition)
        restored = WorkflowDefinitionStore.from_snapshot(snapshot)

        snapshot["config"]["steps"][0]["name"] = "Changed"
        assert restored.get_step("start").name == "Start"
        assert restored.id == definition.id
        assert restored.version == definition.version
