"""
Test suite for the approval workflow engine

Tests workflow management, submission, parallel and sequential levels,
skip conditions, rejection, delegation, escalation with auto-approval,
reminders and the context patches published for case workflows.
"""

import pytest
from datetime import timedelta

from repair_core.storage import InMemoryStorage
from repair_core.audit import AuditTrail, AuditEventType
from repair_core.clock import ManualClock
from repair_core.documents import DocumentStatus, StorageDocumentStore
from repair_core.events import DomainEvent, EventDispatcher
from repair_core.notifications import NotificationEngine
from repair_core.approvals import (
    ApprovalStatus, ApprovalWorkflowEngine, Decision, StaticApproverDirectory,
    validate_approval_workflow, ESCALATION_PRINCIPAL,
)
from repair_core.errors import (
    DocumentNotFound, IneligibleApprover, InvalidInstanceState, VersionConflict, WorkflowError,
    WorkflowNotFound,
)


def two_level_workflow(**overrides):
    workflow = {
        "name": "Quotation approval",
        "document_type_ids": ["quotation"],
        "levels": [
            {"level": 1, "name": "Supervisor", "approver_ids": ["sup"]},
            {"level": 2, "name": "Director", "approver_ids": ["dir"]},
        ],
    }
    workflow.update(overrides)
    return workflow


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
def events():
    return EventDispatcher()


@pytest.fixture
def published(events):
    received = []
    events.subscribe_all(received.append)
    return received


@pytest.fixture
def notifications(storage, audit_manager, clock):
    return NotificationEngine(storage, audit_manager, clock=clock)


@pytest.fixture
def documents(storage, audit_manager, clock, events):
    return StorageDocumentStore(storage, audit_manager, clock=clock, event_dispatcher=events)


@pytest.fixture
def directory():
    return StaticApproverDirectory({"manager": ["mgr-1", "mgr-2"]})


@pytest.fixture
def engine(storage, documents, notifications, clock, events, audit_manager, directory):
    return ApprovalWorkflowEngine(
        storage, documents,
        notifications=notifications,
        clock=clock,
        event_dispatcher=events,
        audit_manager=audit_manager,
        approver_directory=directory,
    )


@pytest.fixture
def quotation(documents):
    return documents.create_document("CASE-1", "quotation", {"totalAmount": 3000000}, created_by="advisor")


def audit_types(audit_manager, instance_id):
    return [e.event_type for e in audit_manager.get_events_for_entity("approval_instance", instance_id)]


def context_patches(published):
    return [e.data for e in published if e.event_type == DomainEvent.CASE_CONTEXT_PATCHED]


class TestWorkflowManagement:
    """Test creating and maintaining approval workflows"""

    def test_create_workflow(self, engine, audit_manager):
        workflow = engine.create_workflow(two_level_workflow(), created_by="admin")

        assert workflow.version == 1
        assert [level.level for level in workflow.levels] == [1, 2]
        assert workflow.effective_context_key == "quotation"
        assert engine.find_workflow_for_document_type("quotation").id == workflow.id
        events = audit_manager.get_events_for_entity("approval_workflow", workflow.id)
        assert events[0].event_type == AuditEventType.APPROVAL_WORKFLOW_CREATED

    def test_camel_case_input(self, engine):
        workflow = engine.create_workflow({
            "name": "Inspection sign-off",
            "documentTypeIds": ["inspection_report"],
            "contextKey": "inspection_report",
            "levels": [{"level": 1, "name": "Lead", "approverIds": ["a", "b"],
                        "requiredApprovals": 2, "isParallel": True}],
        })
        assert workflow.levels[0].required_approvals == 2
        assert workflow.levels[0].is_parallel
        assert workflow.context_key == "inspection_report"

    def test_invalid_workflow(self, engine):
        with pytest.raises(WorkflowError) as exc_info:
            engine.create_workflow(two_level_workflow(levels=[
                {"level": 1, "name": "One", "approver_ids": ["a"]},
                {"level": 3, "name": "Three", "approver_ids": ["b"]},
            ]))
        assert "consecutively" in str(exc_info.value)

    def test_validation_messages(self, engine):
        workflow = engine._parse_workflow(two_level_workflow(
            levels=[{"level": 1, "name": "One", "approver_ids": ["a"], "required_approvals": 2,
                     "skip_conditions": ["totalAmount <"]}],
            escalation_rules=[{"from_level": 1, "to_level": 4}],
        ), "admin")
        errors = validate_approval_workflow(workflow)
        assert any("requires 2 approvals" in e for e in errors)
        assert any("invalid skip condition" in e for e in errors)
        assert any("unknown level" in e for e in errors)

    def test_update_workflow(self, engine):
        workflow = engine.create_workflow(two_level_workflow())
        updated = engine.update_workflow(workflow.id, {"description": "Two step sign-off"})
        assert updated.version == 2
        assert engine.get_workflow(workflow.id).description == "Two step sign-off"

    def test_delete_blocked_by_open_instances(self, engine, quotation):
        workflow = engine.create_workflow(two_level_workflow())
        engine.submit_for_approval(quotation.id)

        with pytest.raises(InvalidInstanceState):
            engine.delete_workflow(workflow.id)

    def test_delete_missing_workflow(self, engine):
        with pytest.raises(WorkflowNotFound):
            engine.delete_workflow("missing")


class TestSubmission:
    """Test submitting documents"""

    def test_submit(self, engine, documents, quotation, notifications, audit_manager):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id, context={"priority": "high"},
                                              submitted_by="advisor", urgency="high")

        assert instance.status == ApprovalStatus.PENDING
        assert instance.current_level == 1
        assert instance.case_id == "CASE-1"
        assert instance.context == {"totalAmount": 3000000, "priority": "high"}
        assert instance.urgency.value == "high"
        assert documents.get_document(quotation.id).status == DocumentStatus.SUBMITTED
        assert notifications.get_notifications("sup")[0].template == "approval_request"
        assert audit_types(audit_manager, instance.id)[0] == AuditEventType.APPROVAL_SUBMITTED

    def test_missing_document(self, engine):
        with pytest.raises(DocumentNotFound):
            engine.submit_for_approval("missing")

    def test_no_workflow_for_type(self, engine, quotation):
        with pytest.raises(WorkflowNotFound):
            engine.submit_for_approval(quotation.id)

    def test_only_drafts_can_be_submitted(self, engine, quotation):
        engine.create_workflow(two_level_workflow())
        engine.submit_for_approval(quotation.id)
        with pytest.raises(InvalidInstanceState):
            engine.submit_for_approval(quotation.id)

    def test_inactive_workflow(self, engine, quotation):
        workflow = engine.create_workflow(two_level_workflow(is_active=False))
        with pytest.raises(InvalidInstanceState):
            engine.submit_for_approval(quotation.id, workflow_id=workflow.id)

    def test_level_deadline_from_timeout(self, engine, quotation, clock):
        engine.create_workflow(two_level_workflow(levels=[
            {"level": 1, "name": "Supervisor", "approver_ids": ["sup"], "timeout_hours": 8},
        ]))
        instance = engine.submit_for_approval(quotation.id)
        assert instance.level_deadline == clock.now() + timedelta(hours=8)

    def test_unknown_urgency(self, engine, documents, quotation):
        engine.create_workflow(two_level_workflow())
        with pytest.raises(WorkflowError):
            engine.submit_for_approval(quotation.id, urgency="asap")
        assert engine.get_approval_history(quotation.id) == []
        assert documents.get_document(quotation.id).status == DocumentStatus.DRAFT


class TestSkipConditions:
    """Test skipping levels on the document context"""

    def skip_first_level(self):
        return two_level_workflow(levels=[
            {"level": 1, "name": "Supervisor", "approver_ids": ["sup"],
             "skip_conditions": ["totalAmount < 5000000"]},
            {"level": 2, "name": "Director", "approver_ids": ["dir"]},
        ])

    def test_level_skipped(self, engine, quotation, audit_manager, notifications):
        engine.create_workflow(self.skip_first_level())
        instance = engine.submit_for_approval(quotation.id)

        assert instance.current_level == 2
        assert instance.skipped_levels == [1]
        assert AuditEventType.LEVEL_SKIPPED in audit_types(audit_manager, instance.id)
        assert notifications.get_notifications("sup") == []
        assert notifications.get_notifications("dir")[0].template == "approval_request"

    def test_level_not_skipped(self, engine, documents):
        engine.create_workflow(self.skip_first_level())
        document = documents.create_document("CASE-2", "quotation", {"totalAmount": 6000000})
        instance = engine.submit_for_approval(document.id)
        assert instance.current_level == 1
        assert instance.skipped_levels == []

    def test_every_level_skipped_completes(self, engine, documents, published):
        engine.create_workflow(two_level_workflow(levels=[
            {"level": 1, "name": "Supervisor", "approver_ids": ["sup"], "skip_conditions": ["totalAmount < 100"]},
        ]))
        document = documents.create_document("CASE-3", "quotation", {"totalAmount": 50})
        instance = engine.submit_for_approval(document.id)

        assert instance.status == ApprovalStatus.COMPLETED
        assert documents.get_document(document.id).status == DocumentStatus.APPROVED
        assert context_patches(published)[0]["patch"]["quotation"]["status"] == "approved"


class TestLevels:
    """Test parallel and sequential approval"""

    def test_two_of_three_parallel(self, engine, quotation):
        engine.create_workflow(two_level_workflow(levels=[
            {"level": 1, "name": "Managers", "approver_ids": ["m1", "m2", "m3"],
             "required_approvals": 2, "is_parallel": True},
        ]))
        instance = engine.submit_for_approval(quotation.id)

        instance = engine.process(instance.id, "m2", "approve")
        assert instance.status == ApprovalStatus.PENDING

        instance = engine.process(instance.id, "m2", "approve", comments="again")
        assert instance.status == ApprovalStatus.PENDING
        assert instance.approving_principals(1) == ["m2"]

        instance = engine.process(instance.id, "m3", Decision.APPROVED)
        assert instance.status == ApprovalStatus.COMPLETED

    def test_sequential_level_has_no_turn_order(self, engine, quotation, notifications):
        engine.create_workflow(two_level_workflow(levels=[
            {"level": 1, "name": "Sign-off", "approver_ids": ["first", "second"], "required_approvals": 2},
        ]))
        instance = engine.submit_for_approval(quotation.id)
        assert notifications.get_notifications("first")[0].template == "approval_request"
        assert notifications.get_notifications("second")[0].template == "approval_request"

        instance = engine.process(instance.id, "second", "approve")
        assert instance.status == ApprovalStatus.PENDING
        assert instance.approving_principals(1) == ["second"]
        assert [i.id for i in engine.get_pending_approvals("first")] == [instance.id]
        assert engine.get_pending_approvals("second") == []

        instance = engine.process(instance.id, "first", "approve")
        assert instance.status == ApprovalStatus.COMPLETED

    def test_sequential_levels(self, engine, documents, quotation, audit_manager, published):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id, submitted_by="advisor")

        with pytest.raises(IneligibleApprover):
            engine.process(instance.id, "dir", "approve")

        instance = engine.process(instance.id, "sup", "approve")
        assert instance.current_level == 2
        assert DomainEvent.APPROVAL_LEVEL_ADVANCED in [e.event_type for e in published]

        instance = engine.process(instance.id, "dir", "approve", comments="ok")
        assert instance.status == ApprovalStatus.COMPLETED
        assert instance.completed_at is not None
        assert documents.get_document(quotation.id).status == DocumentStatus.APPROVED

        patches = context_patches(published)
        assert len(patches) == 1
        assert patches[0]["case_id"] == "CASE-1"
        assert patches[0]["triggered_by"] == f"approval:{instance.id}"
        assert patches[0]["patch"]["quotation"]["status"] == "approved"
        assert patches[0]["patch"]["quotation"]["document_id"] == quotation.id

        types = audit_types(audit_manager, instance.id)
        assert types.count(AuditEventType.APPROVAL_RECORDED) == 2
        assert AuditEventType.LEVEL_ADVANCED in types
        assert types[-1] == AuditEventType.APPROVAL_COMPLETED

    def test_role_approvers(self, engine, quotation, directory):
        engine.create_workflow(two_level_workflow(levels=[
            {"level": 1, "name": "Managers", "approver_type": "role", "approver_roles": ["manager"]},
        ]))
        instance = engine.submit_for_approval(quotation.id)

        assert [i.id for i in engine.get_pending_approvals("mgr-2")] == [instance.id]
        assert engine.get_pending_approvals("someone") == []

        directory.assign("manager", "mgr-3")
        instance = engine.process(instance.id, "mgr-3", "approve")
        assert instance.status == ApprovalStatus.COMPLETED

    def test_unknown_decision(self, engine, quotation):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)
        with pytest.raises(WorkflowError):
            engine.process(instance.id, "sup", "maybe")


class TestRejection:
    """Test rejecting documents"""

    def test_reject(self, engine, documents, quotation, notifications, published):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id, submitted_by="advisor")

        instance = engine.process(instance.id, "sup", "reject", comments="price_too_high")

        assert instance.status == ApprovalStatus.REJECTED
        assert documents.get_document(quotation.id).status == DocumentStatus.REJECTED
        patch = context_patches(published)[0]["patch"]["quotation"]
        assert patch["status"] == "rejected"
        assert patch["reason"] == "price_too_high"
        assert patch["rejected_by"] == "sup"
        assert patch["level"] == 1
        assert notifications.get_notifications("advisor")[0].template == "approval_rejected"

    def test_no_decisions_after_rejection(self, engine, quotation):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)
        engine.process(instance.id, "sup", "reject")

        with pytest.raises(InvalidInstanceState):
            engine.process(instance.id, "sup", "approve")

    def test_rejected_document_can_be_resubmitted(self, engine, documents, quotation, clock):
        engine.create_workflow(two_level_workflow())
        first = engine.submit_for_approval(quotation.id)
        engine.process(first.id, "sup", "reject")

        clock.advance(minutes=5)
        documents.update_status(quotation.id, DocumentStatus.DRAFT)
        second = engine.submit_for_approval(quotation.id)
        assert [i.id for i in engine.get_approval_history(quotation.id)] == [first.id, second.id]

    def test_archived_document_still_patches_case(self, engine, documents, quotation, published,
                                                   notifications, audit_manager):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id, submitted_by="advisor")
        documents.update_status(quotation.id, DocumentStatus.ARCHIVED)

        instance = engine.process(instance.id, "sup", "reject", comments="customer_left")

        assert instance.status == ApprovalStatus.REJECTED
        assert engine.get_instance(instance.id).status == ApprovalStatus.REJECTED
        assert documents.get_document(quotation.id).status == DocumentStatus.ARCHIVED
        assert context_patches(published)[0]["patch"]["quotation"]["status"] == "rejected"
        assert notifications.get_notifications("advisor")[0].template == "approval_rejected"

        failure = [e for e in audit_manager.get_events_for_entity("approval_instance", instance.id)
                   if e.event_type == AuditEventType.DOCUMENT_SYNC_FAILED][0]
        assert failure.metadata["target_status"] == "rejected"


class TestDelegation:
    """Test per-instance and standing delegation"""

    def test_delegate_acts_on_behalf(self, engine, quotation, notifications):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)

        engine.delegate(instance.id, "sup", "deputy", "On leave")
        assert notifications.get_notifications("deputy")[0].template == "approval_delegated"
        assert [i.id for i in engine.get_pending_approvals("deputy")] == [instance.id]

        instance = engine.process(instance.id, "deputy", "approve")
        record = instance.records[0]
        assert record.approver_id == "deputy"
        assert record.on_behalf_of == "sup"
        assert instance.current_level == 2

    def test_delegation_chain(self, engine, quotation):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)

        engine.delegate(instance.id, "sup", "deputy", "On leave")
        engine.delegate(instance.id, "deputy", "intern", "Busy")

        instance = engine.process(instance.id, "intern", "approve")
        assert instance.records[0].on_behalf_of == "sup"

    def test_expired_delegation(self, engine, quotation, clock):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)
        engine.delegate(instance.id, "sup", "deputy", "Afternoon only",
                        valid_until=clock.now() + timedelta(hours=4))

        clock.advance(hours=5)
        with pytest.raises(IneligibleApprover):
            engine.process(instance.id, "deputy", "approve")

    def test_invalid_delegations(self, engine, quotation):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)

        with pytest.raises(WorkflowError):
            engine.delegate(instance.id, "sup", "sup", "Self")
        with pytest.raises(IneligibleApprover):
            engine.delegate(instance.id, "dir", "deputy", "Not my level")

    def test_standing_delegation_rule(self, engine, quotation, clock):
        now = clock.now()
        engine.create_workflow(two_level_workflow(delegation_rules=[{
            "from_user_id": "sup", "to_user_id": "backup",
            "start_date": (now - timedelta(days=1)).isoformat(),
            "end_date": (now + timedelta(days=1)).isoformat(),
            "levels": [1],
        }]))
        instance = engine.submit_for_approval(quotation.id)

        instance = engine.process(instance.id, "backup", "approve")
        assert instance.records[0].on_behalf_of == "sup"

        with pytest.raises(IneligibleApprover):
            engine.process(instance.id, "backup", "approve")


class TestEscalation:
    """Test manual and timeout escalation"""

    def test_manual_escalation_without_rule_extends_deadline(self, engine, quotation, clock):
        engine.create_workflow(two_level_workflow(levels=[
            {"level": 1, "name": "Supervisor", "approver_ids": ["sup"], "timeout_hours": 8},
            {"level": 2, "name": "Director", "approver_ids": ["dir"]},
        ]))
        instance = engine.submit_for_approval(quotation.id)
        clock.advance(hours=6)

        instance = engine.escalate(instance.id, "Customer waiting", escalated_by="advisor")

        assert instance.status == ApprovalStatus.ESCALATED
        assert instance.current_level == 1
        assert instance.level_deadline == clock.now() + timedelta(hours=8)
        assert instance.escalations[0].triggered_by == "manual"

        instance = engine.process(instance.id, "sup", "approve")
        assert instance.current_level == 2

    def test_escalate_to_level(self, engine, quotation, notifications):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)

        instance = engine.escalate(instance.id, "Supervisor unavailable", to_level=2)
        assert instance.current_level == 2
        assert instance.status == ApprovalStatus.PENDING
        assert instance.escalations[0].to_level == 2
        assert notifications.get_notifications("dir")[0].template == "approval_request"

    def test_escalate_to_unknown_level(self, engine, quotation):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)
        with pytest.raises(WorkflowError):
            engine.escalate(instance.id, "Nowhere", to_level=9)

    def test_timeout_auto_approval(self, engine, quotation, clock, audit_manager, notifications):
        engine.create_workflow(two_level_workflow(escalation_rules=[{
            "from_level": 1, "to_level": 2, "trigger_after_hours": 24,
            "escalation_type": "timeout", "auto_approve": True, "notify_users": ["ops"],
        }]))
        instance = engine.submit_for_approval(quotation.id)
        assert instance.level_deadline == clock.now() + timedelta(hours=24)

        clock.advance(hours=23)
        assert engine.check_timeouts() == []

        clock.advance(hours=2)
        results = engine.check_timeouts()
        assert results[0]["instance_id"] == instance.id
        assert results[0]["current_level"] == 2

        instance = engine.get_instance(instance.id)
        assert instance.current_level == 2
        escalation = instance.escalations[0]
        assert escalation.auto_approved
        assert escalation.triggered_by == "timeout"
        synthetic = instance.records[0]
        assert synthetic.synthetic
        assert synthetic.approver_id == ESCALATION_PRINCIPAL
        assert synthetic.decision == Decision.APPROVED
        assert notifications.get_notifications("ops")[0].template == "approval_escalated"
        assert AuditEventType.APPROVAL_ESCALATED in audit_types(audit_manager, instance.id)


class TestReminders:
    """Test reminder cadence"""

    def test_reminder_schedule(self, engine, quotation, clock, notifications):
        engine.create_workflow(two_level_workflow())
        engine.submit_for_approval(quotation.id)

        clock.advance(hours=23)
        assert engine.send_reminders() == 0

        clock.advance(hours=2)
        assert engine.send_reminders() == 1
        reminders = [n for n in notifications.get_notifications("sup") if n.template == "approval_reminder"]
        assert len(reminders) == 2

        clock.advance(hours=1)
        assert engine.send_reminders() == 0

        clock.advance(hours=23)
        assert engine.send_reminders() == 1

    def test_no_reminders_for_finished_instances(self, engine, quotation, clock):
        engine.create_workflow(two_level_workflow(levels=[
            {"level": 1, "name": "Supervisor", "approver_ids": ["sup"]},
        ]))
        instance = engine.submit_for_approval(quotation.id)
        engine.process(instance.id, "sup", "approve")

        clock.advance(hours=30)
        assert engine.send_reminders() == 0


class TestConcurrentDecisions:
    """Test compare-and-save on approval instances"""

    def test_stale_decision_raises_conflict(self, engine, storage, documents, quotation, clock,
                                            audit_manager, published, monkeypatch):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)
        other = ApprovalWorkflowEngine(storage, documents, clock=clock, audit_manager=audit_manager)

        # Another writer decides level 1 after this engine has loaded the instance
        require_workflow = engine._require_workflow
        interleaved = []

        def require_after_other_writer(workflow_id):
            if not interleaved:
                interleaved.append(other.process(instance.id, "sup", "approve"))
            return require_workflow(workflow_id)

        monkeypatch.setattr(engine, "_require_workflow", require_after_other_writer)

        with pytest.raises(VersionConflict):
            engine.process(instance.id, "sup", "reject")

        stored = engine.get_instance(instance.id)
        assert stored.version == 2
        assert stored.status == ApprovalStatus.PENDING
        assert stored.current_level == 2
        assert [r.decision for r in stored.records] == [Decision.APPROVED]
        assert documents.get_document(quotation.id).status == DocumentStatus.SUBMITTED
        assert context_patches(published) == []
        assert AuditEventType.APPROVAL_REJECTED not in audit_types(audit_manager, instance.id)

    def test_reloaded_decision_succeeds(self, engine, quotation):
        engine.create_workflow(two_level_workflow())
        instance = engine.submit_for_approval(quotation.id)
        stale = engine.instances.get(instance.id)

        engine.process(instance.id, "sup", "approve")
        with pytest.raises(VersionConflict):
            engine.instances.save(stale)

        instance = engine.process(instance.id, "dir", "approve")
        assert instance.status == ApprovalStatus.COMPLETED
        assert instance.version == 3
