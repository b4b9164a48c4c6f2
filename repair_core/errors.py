"""
Workflow Error Taxonomy

Every error raised by the workflow and approval core derives from
WorkflowError, which is itself a ValueError so callers that already
catch ValueError around engine calls keep working.
"""

from typing import Any, Dict, List, Optional


class WorkflowError(ValueError):
    """Base class for workflow core errors"""


class ExpressionError(WorkflowError):
    """A condition expression could not be parsed"""

    def __init__(self, expression: str, position: int, message: str):
        self.expression = expression
        self.position = position
        self.message = message
        super().__init__(f"{message} at position {position} in {expression!r}")


class DefinitionValidationError(WorkflowError):
    """A workflow definition failed structural validation"""

    def __init__(self, issues: List[Dict[str, str]]):
        self.issues = issues
        summary = "; ".join(f"{i['field']}: {i['message']}" for i in issues)
        super().__init__(f"Workflow definition is invalid: {summary}")


class DefinitionNotFound(WorkflowError):
    def __init__(self, definition_id: str):
        self.definition_id = definition_id
        super().__init__(f"Workflow definition {definition_id} not found")


class ConfigurationNotFound(WorkflowError):
    def __init__(self, configuration_id: str):
        self.configuration_id = configuration_id
        super().__init__(f"Workflow configuration {configuration_id} not found")


class ConfigurationConflict(WorkflowError):
    """Another active configuration covers exactly the same criteria"""

    def __init__(self, conflicting_ids: List[str]):
        self.conflicting_ids = conflicting_ids
        super().__init__(
            f"Configuration conflicts with active configurations: {', '.join(conflicting_ids)}"
        )


class InstanceNotFound(WorkflowError):
    def __init__(self, instance_type: str, instance_id: str):
        self.instance_type = instance_type
        self.instance_id = instance_id
        super().__init__(f"{instance_type} {instance_id} not found")


class WorkflowNotFound(WorkflowError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Approval workflow {workflow_id} not found")


class DocumentNotFound(WorkflowError):
    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found")


class InvalidInstanceState(WorkflowError):
    """Operation is not allowed in the instance's current status"""


class VersionConflict(WorkflowError):
    """Optimistic lock failure: the stored record moved on since it was loaded"""

    def __init__(self, table: str, record_id: str, expected: Optional[int], actual: Optional[int]):
        self.table = table
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {table}/{record_id}: expected {expected}, found {actual}"
        )


class IneligibleApprover(WorkflowError):
    def __init__(self, approver_id: str, instance_id: str, level: int):
        self.approver_id = approver_id
        self.instance_id = instance_id
        self.level = level
        super().__init__(
            f"User {approver_id} is not an eligible approver for level {level} of {instance_id}"
        )


class CycleDetected(WorkflowError):
    """Auto-advance exceeded the hop guard; the instance has been frozen"""

    def __init__(self, instance_id: str, hops: int, path: List[str]):
        self.instance_id = instance_id
        self.hops = hops
        self.path = path
        tail = " -> ".join(path[-6:])
        super().__init__(
            f"Instance {instance_id} exceeded {hops} automatic hops (last steps: {tail})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"instance_id": self.instance_id, "hops": self.hops, "path": self.path}
