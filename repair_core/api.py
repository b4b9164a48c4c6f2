"""
FastAPI REST API Module

Thin HTTP facade over the workflow and approval core: definitions,
configurations, case workflow instances, documents and approvals.
No authentication; callers pass acting user ids explicitly.
"""

from datetime import timezone
from typing import Any, Dict, Optional
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .config import get_config
from .errors import (
    ConfigurationNotFound, CycleDetected, DefinitionNotFound, DocumentNotFound,
    IneligibleApprover, InstanceNotFound, VersionConflict, WorkflowError, WorkflowNotFound,
)
from .schemas import (
    AdvanceRequest, CancelRequest, CreateApprovalWorkflowRequest, CreateConfigurationRequest,
    CreateDefinitionRequest, CreateDocumentRequest, DelegateApprovalRequest, EscalateApprovalRequest,
    ProcessApprovalRequest, SelectionCriteriaModel, StartCaseWorkflowRequest, SubmitForApprovalRequest,
)
from .system import RepairWorkflowSystem
from .workflows import AdvanceResult
from .logging_config import get_logger


_NOT_FOUND = (DefinitionNotFound, ConfigurationNotFound, InstanceNotFound, WorkflowNotFound, DocumentNotFound)


def error_status(error: WorkflowError) -> int:
    """HTTP status for a core error"""
    if isinstance(error, VersionConflict):
        return status.HTTP_409_CONFLICT
    if isinstance(error, IneligibleApprover):
        return status.HTTP_403_FORBIDDEN
    if isinstance(error, _NOT_FOUND):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, CycleDetected):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    return status.HTTP_400_BAD_REQUEST


def _error_body(error: WorkflowError) -> Dict[str, Any]:
    body = {"error": type(error).__name__, "detail": str(error)}
    if isinstance(error, CycleDetected):
        body.update(error.to_dict())
    issues = getattr(error, "issues", None)
    if issues:
        body["issues"] = issues
    return body


def _advance_response(result: AdvanceResult) -> Dict[str, Any]:
    return {
        "instance": result.instance.to_dict(),
        "outcome": result.outcome.value,
        "from_step_id": result.from_step_id,
        "current_step_id": result.current_step_id,
        "path": result.path,
    }


def create_app(system: Optional[RepairWorkflowSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    system = system or RepairWorkflowSystem()
    logger = get_logger("drms.api")

    app = FastAPI(
        title="Device Repair Workflow API",
        description="Repair case workflows and multi-level document approvals",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def get_system() -> RepairWorkflowSystem:
        return system

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        code = error_status(exc)
        if code >= 409:
            logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content=_error_body(exc))

    @app.get("/health")
    async def health_check(system: RepairWorkflowSystem = Depends(get_system)):
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "repair_workflow_api",
            "timestamp": system.clock.now().isoformat(),
        }

    # Workflow definitions

    @app.post("/definitions", status_code=status.HTTP_201_CREATED)
    async def create_definition(request: CreateDefinitionRequest,
                                system: RepairWorkflowSystem = Depends(get_system)):
        definition = system.definitions.parse_definition(
            request.config, request.name, created_by=request.created_by, description=request.description
        )
        definition = system.definitions.create_definition(definition, created_by=request.created_by)
        return definition.to_dict()

    @app.get("/definitions")
    async def list_definitions(active_only: bool = False,
                               system: RepairWorkflowSystem = Depends(get_system)):
        return {"definitions": [d.to_dict() for d in system.definitions.list_definitions(active_only)]}

    @app.get("/definitions/{definition_id}")
    async def get_definition(definition_id: str, system: RepairWorkflowSystem = Depends(get_system)):
        return system.definitions.require_definition(definition_id).to_dict()

    # Workflow configurations

    @app.post("/configurations", status_code=status.HTTP_201_CREATED)
    async def create_configuration(request: CreateConfigurationRequest,
                                   system: RepairWorkflowSystem = Depends(get_system)):
        configuration = system.configurations.create_configuration(**request.model_dump())
        return configuration.to_dict()

    @app.post("/configurations/select")
    async def select_configuration(request: SelectionCriteriaModel,
                                   system: RepairWorkflowSystem = Depends(get_system)):
        match = system.configurations.select(request.to_criteria())
        if match is None:
            raise HTTPException(status_code=404, detail="No workflow configuration matches the criteria")
        return {
            "configuration": match.configuration.to_dict(),
            "workflow_definition_id": match.definition.id,
            "matched_criteria": match.matched_criteria,
            "reasons": match.reasons,
        }

    # Case workflow instances

    @app.post("/instances", status_code=status.HTTP_201_CREATED)
    async def start_case_workflow(request: StartCaseWorkflowRequest,
                                  system: RepairWorkflowSystem = Depends(get_system)):
        result = system.start_workflow_for_case(
            request.case_id, request.criteria.to_criteria(), request.initial_context, request.started_by
        )
        return _advance_response(result)

    @app.get("/instances/{instance_id}")
    async def get_instance(instance_id: str, system: RepairWorkflowSystem = Depends(get_system)):
        instance = system.workflow_engine.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound("Workflow instance", instance_id)
        return instance.to_dict()

    @app.post("/instances/{instance_id}/advance")
    async def advance_instance(instance_id: str, request: AdvanceRequest,
                               system: RepairWorkflowSystem = Depends(get_system)):
        return _advance_response(system.workflow_engine.advance(instance_id, request.event, request.triggered_by))

    @app.post("/instances/{instance_id}/cancel")
    async def cancel_instance(instance_id: str, request: CancelRequest,
                              system: RepairWorkflowSystem = Depends(get_system)):
        instance = system.workflow_engine.cancel_instance(instance_id, request.reason, request.cancelled_by)
        return instance.to_dict()

    # Documents

    @app.post("/documents", status_code=status.HTTP_201_CREATED)
    async def create_document(request: CreateDocumentRequest,
                              system: RepairWorkflowSystem = Depends(get_system)):
        document = system.documents.create_document(
            request.case_id, request.document_type_id, request.content, request.created_by
        )
        return document.to_dict()

    @app.get("/documents/{document_id}")
    async def get_document(document_id: str, system: RepairWorkflowSystem = Depends(get_system)):
        document = system.documents.get_document(document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        return document.to_dict()

    # Approvals

    @app.post("/approval-workflows", status_code=status.HTTP_201_CREATED)
    async def create_approval_workflow(request: CreateApprovalWorkflowRequest,
                                       system: RepairWorkflowSystem = Depends(get_system)):
        data = request.model_dump(exclude={"created_by"})
        workflow = system.approval_engine.create_workflow(data, created_by=request.created_by)
        return workflow.to_dict()

    @app.post("/approvals", status_code=status.HTTP_201_CREATED)
    async def submit_for_approval(request: SubmitForApprovalRequest,
                                  system: RepairWorkflowSystem = Depends(get_system)):
        instance = system.approval_engine.submit_for_approval(
            request.document_id,
            workflow_id=request.workflow_id,
            context=request.context,
            submitted_by=request.submitted_by,
            urgency=request.urgency,
        )
        return instance.to_dict()

    @app.get("/approvals/pending/{user_id}")
    async def get_pending_approvals(user_id: str, system: RepairWorkflowSystem = Depends(get_system)):
        return {"approvals": [i.to_dict() for i in system.approval_engine.get_pending_approvals(user_id)]}

    @app.get("/approvals/{instance_id}")
    async def get_approval(instance_id: str, system: RepairWorkflowSystem = Depends(get_system)):
        instance = system.approval_engine.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound("Approval instance", instance_id)
        return instance.to_dict()

    @app.post("/approvals/{instance_id}/decisions")
    async def process_approval(instance_id: str, request: ProcessApprovalRequest,
                               system: RepairWorkflowSystem = Depends(get_system)):
        instance = system.approval_engine.process(
            instance_id, request.approver_id, request.decision, request.comments
        )
        return instance.to_dict()

    @app.post("/approvals/{instance_id}/delegate")
    async def delegate_approval(instance_id: str, request: DelegateApprovalRequest,
                                system: RepairWorkflowSystem = Depends(get_system)):
        valid_until = request.valid_until
        if valid_until is not None and valid_until.tzinfo is None:
            valid_until = valid_until.replace(tzinfo=timezone.utc)
        instance = system.approval_engine.delegate(
            instance_id, request.from_user, request.to_user, request.reason,
            valid_until=valid_until, delegated_by=request.delegated_by
        )
        return instance.to_dict()

    @app.post("/approvals/{instance_id}/escalate")
    async def escalate_approval(instance_id: str, request: EscalateApprovalRequest,
                                system: RepairWorkflowSystem = Depends(get_system)):
        instance = system.approval_engine.escalate(
            instance_id, request.reason, manual=True,
            escalated_by=request.escalated_by, to_level=request.to_level
        )
        return instance.to_dict()

    # Audit

    @app.get("/audit/integrity")
    async def verify_audit_integrity(system: RepairWorkflowSystem = Depends(get_system)):
        """Verify audit trail integrity"""
        return system.audit_trail.verify_integrity()

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    uvicorn.run(
        "repair_core.api:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level=settings.log_level.lower()
    )
