"""
Pydantic schemas for API requests
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from .configuration import SelectionCriteria


# Definition schemas
class CreateDefinitionRequest(BaseModel):
    name: str
    config: Dict[str, Any] = Field(..., description="Workflow graph (steps, startEvent, endEvents, rules)")
    description: str = ""
    created_by: str = "system"


# Configuration schemas
class CreateConfigurationRequest(BaseModel):
    name: str
    workflow_definition_id: str
    device_types: List[str] = Field(default_factory=list)
    service_types: List[str] = Field(default_factory=list)
    customer_tiers: List[str] = Field(default_factory=list)
    priority: int = 0
    description: str = ""
    conditions: List[Any] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_by: str = "system"


class SelectionCriteriaModel(BaseModel):
    device_type: str
    service_type: str
    customer_tier: str
    additional_context: Dict[str, Any] = Field(default_factory=dict)

    def to_criteria(self) -> SelectionCriteria:
        return SelectionCriteria(
            device_type=self.device_type,
            service_type=self.service_type,
            customer_tier=self.customer_tier,
            additional_context=dict(self.additional_context),
        )


# Instance schemas
class StartCaseWorkflowRequest(BaseModel):
    case_id: str
    criteria: SelectionCriteriaModel
    initial_context: Dict[str, Any] = Field(default_factory=dict)
    started_by: str = "system"


class AdvanceRequest(BaseModel):
    event: Dict[str, Any] = Field(default_factory=dict)
    triggered_by: str = "system"


class CancelRequest(BaseModel):
    reason: str
    cancelled_by: str = "system"


# Document schemas
class CreateDocumentRequest(BaseModel):
    case_id: str
    document_type_id: str
    content: Dict[str, Any] = Field(default_factory=dict)
    created_by: str = "system"


# Approval schemas
class CreateApprovalWorkflowRequest(BaseModel):
    name: str
    document_type_ids: List[str]
    levels: List[Dict[str, Any]]
    description: str = ""
    escalation_rules: List[Dict[str, Any]] = Field(default_factory=list)
    delegation_rules: List[Dict[str, Any]] = Field(default_factory=list)
    notifications: List[Dict[str, Any]] = Field(default_factory=list)
    context_key: Optional[str] = None
    created_by: str = "system"


class SubmitForApprovalRequest(BaseModel):
    document_id: str
    workflow_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    submitted_by: str = "system"
    urgency: str = "normal"


class ProcessApprovalRequest(BaseModel):
    approver_id: str
    decision: str = Field(..., description="approve or reject")
    comments: Optional[str] = None


class DelegateApprovalRequest(BaseModel):
    from_user: str
    to_user: str
    reason: str
    valid_until: Optional[datetime] = None
    delegated_by: Optional[str] = None


class EscalateApprovalRequest(BaseModel):
    reason: str
    escalated_by: Optional[str] = None
    to_level: Optional[int] = None
