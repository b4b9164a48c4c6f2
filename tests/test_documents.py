"""
Test suite for the storage-backed document store
"""

import pytest

from repair_core.storage import InMemoryStorage
from repair_core.audit import AuditTrail, AuditEventType
from repair_core.clock import ManualClock
from repair_core.documents import DocumentStatus, StorageDocumentStore, can_transition
from repair_core.events import DomainEvent, EventDispatcher
from repair_core.errors import DocumentNotFound, InvalidInstanceState


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
def documents(storage, audit_manager, clock, events):
    return StorageDocumentStore(storage, audit_manager, clock=clock, event_dispatcher=events)


class TestDocumentStore:
    """Test document lifecycle"""

    def test_create_document(self, documents, audit_manager):
        document = documents.create_document("CASE-1", "quotation", {"totalAmount": 1200}, created_by="advisor")

        assert document.status == DocumentStatus.DRAFT
        assert document.version == 1
        assert documents.get_document(document.id).content == {"totalAmount": 1200}
        events = audit_manager.get_events_for_entity("document", document.id)
        assert events[0].event_type == AuditEventType.DOCUMENT_CREATED

    def test_status_moves(self, documents, events):
        received = []
        events.subscribe(DomainEvent.DOCUMENT_STATUS_CHANGED, received.append)
        document = documents.create_document("CASE-1", "quotation")

        documents.update_status(document.id, DocumentStatus.SUBMITTED)
        updated = documents.update_status(document.id, DocumentStatus.REJECTED, changed_by="sup")

        assert updated.status == DocumentStatus.REJECTED
        assert updated.version == 3
        assert [e.data["to"] for e in received] == ["submitted", "rejected"]

    def test_same_status_is_a_no_op(self, documents):
        document = documents.create_document("CASE-1", "quotation")
        assert documents.update_status(document.id, DocumentStatus.DRAFT).version == 1

    def test_invalid_move(self, documents):
        document = documents.create_document("CASE-1", "quotation")
        with pytest.raises(InvalidInstanceState):
            documents.update_status(document.id, DocumentStatus.APPROVED)

    def test_missing_document(self, documents):
        with pytest.raises(DocumentNotFound):
            documents.update_status("missing", DocumentStatus.SUBMITTED)

    def test_archive_from_any_status(self):
        for status in (DocumentStatus.DRAFT, DocumentStatus.SUBMITTED, DocumentStatus.APPROVED):
            assert can_transition(status, DocumentStatus.ARCHIVED)
        assert not can_transition(DocumentStatus.ARCHIVED, DocumentStatus.ARCHIVED)
        assert not can_transition(DocumentStatus.APPROVED, DocumentStatus.DRAFT)

    def test_list_documents(self, documents, clock):
        first = documents.create_document("CASE-1", "quotation")
        clock.advance(minutes=1)
        second = documents.create_document("CASE-1", "inspection_report")
        documents.create_document("CASE-2", "quotation")
        documents.update_status(second.id, DocumentStatus.SUBMITTED)

        assert [d.id for d in documents.list_documents(case_id="CASE-1")] == [first.id, second.id]
        assert [d.id for d in documents.list_documents(status=DocumentStatus.SUBMITTED)] == [second.id]
        assert len(documents.list_documents()) == 3
