"""
Document Store Module

Case documents (quotations, inspection reports, ...) whose status is driven
by the approval engine. The engine only depends on the DocumentStore
interface; StorageDocumentStore is the default storage-backed implementation.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .errors import DocumentNotFound, InvalidInstanceState
from .events import DomainEvent, EventDispatcher, EventPayload
from .repository import VersionedRepository


class DocumentStatus(Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


# Allowed status moves; any status may also move to ARCHIVED
ALLOWED_TRANSITIONS = {
    DocumentStatus.DRAFT: {DocumentStatus.SUBMITTED},
    DocumentStatus.SUBMITTED: {DocumentStatus.APPROVED, DocumentStatus.REJECTED},
    DocumentStatus.REJECTED: {DocumentStatus.DRAFT},
    DocumentStatus.APPROVED: set(),
    DocumentStatus.ARCHIVED: set(),
}


@dataclass
class Document(StorageRecord):
    case_id: str
    document_type_id: str
    content: Dict[str, Any] = field(default_factory=dict)
    status: DocumentStatus = DocumentStatus.DRAFT
    created_by: str = "system"
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Document':
        data = dict(data)
        data['status'] = DocumentStatus(data['status'])
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        return cls(**data)


def can_transition(current: DocumentStatus, target: DocumentStatus) -> bool:
    if target == DocumentStatus.ARCHIVED:
        return current != DocumentStatus.ARCHIVED
    return target in ALLOWED_TRANSITIONS[current]


class DocumentStore(ABC):
    """What the approval engine needs from documents"""

    @abstractmethod
    def get_document(self, document_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def update_status(self, document_id: str, status: DocumentStatus,
                      changed_by: str = "system") -> Document:
        pass

    @abstractmethod
    def create_document(self, case_id: str, document_type_id: str,
                        content: Optional[Dict[str, Any]] = None,
                        created_by: str = "system") -> Document:
        pass


class StorageDocumentStore(DocumentStore):
    """Documents kept in the shared storage backend"""

    TABLE = "documents"

    def __init__(self, storage: StorageInterface, audit_manager: Optional[AuditTrail] = None,
                 clock: Optional[Clock] = None, event_dispatcher: Optional[EventDispatcher] = None):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit = audit_manager or AuditTrail(storage, clock=self.clock)
        self.events = event_dispatcher
        self.repository = VersionedRepository(storage, self.TABLE, Document, label="Document")

    def create_document(self, case_id: str, document_type_id: str,
                        content: Optional[Dict[str, Any]] = None,
                        created_by: str = "system") -> Document:
        now = self.clock.now()
        document = Document(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            case_id=case_id,
            document_type_id=document_type_id,
            content=dict(content or {}),
            created_by=created_by,
        )
        self.repository.insert(document)
        self.audit.log_event(
            AuditEventType.DOCUMENT_CREATED,
            'document',
            document.id,
            {'case_id': case_id, 'document_type_id': document_type_id},
            created_by
        )
        return document

    def get_document(self, document_id: str) -> Optional[Document]:
        return self.repository.load(document_id)

    def list_documents(self, case_id: Optional[str] = None,
                       status: Optional[DocumentStatus] = None) -> List[Document]:
        filters = {}
        if case_id:
            filters['case_id'] = case_id
        if status:
            filters['status'] = status.value
        documents = self.repository.find(filters) if filters else self.repository.all()
        return sorted(documents, key=lambda d: d.created_at)

    def update_status(self, document_id: str, status: DocumentStatus,
                      changed_by: str = "system") -> Document:
        document = self.get_document(document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        if document.status == status:
            return document
        if not can_transition(document.status, status):
            raise InvalidInstanceState(
                f"Document {document_id} cannot move from {document.status.value} to {status.value}"
            )

        previous = document.status
        document.status = status
        document.updated_at = self.clock.now()
        self.repository.save(document)

        self.audit.log_event(
            AuditEventType.DOCUMENT_STATUS_CHANGED,
            'document',
            document.id,
            {'from': previous.value, 'to': status.value},
            changed_by
        )
        if self.events:
            self.events.publish(EventPayload(
                event_type=DomainEvent.DOCUMENT_STATUS_CHANGED,
                entity_type='document',
                entity_id=document.id,
                data={'case_id': document.case_id, 'from': previous.value, 'to': status.value},
                timestamp=document.updated_at
            ))
        return document
