"""
Action Dispatcher Module

Named side effects attached to workflow steps, business rules and
escalation levels (e.g. "send_completion_notification"). Dispatch is
fire-and-forget from the engine's point of view: a failing or unknown
action is logged and audited, never retried and never raised.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .notifications import NotificationSender
from .logging_config import get_logger


@dataclass
class ActionContext:
    """What an action handler gets to see"""
    action: str
    instance_id: str
    case_id: str
    step_id: Optional[str]
    context: Dict[str, Any] = field(default_factory=dict)
    definition_name: Optional[str] = None
    triggered_by: str = "system"
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def case_recipient(self) -> str:
        return f"case:{self.case_id}"


ActionHandler = Callable[[ActionContext], None]


class ActionDispatcher:
    """Registry of action name to handler"""

    def __init__(self, audit_manager: AuditTrail, notifications: Optional[NotificationSender] = None,
                 channels: Optional[List[str]] = None):
        self.audit = audit_manager
        self.notifications = notifications
        self.channels = channels or list(get_config().default_notification_channels)
        self.logger = get_logger("drms.actions")
        self._handlers: Dict[str, ActionHandler] = {}

        self.register("send_completion_notification", self._send_completion_notification)
        self.register("send_cancellation_notification", self._send_cancellation_notification)
        self.register("notify_assignee", self._notify_assignee)

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    @property
    def registered_actions(self) -> List[str]:
        return sorted(self._handlers)

    def dispatch(self, ctx: ActionContext) -> bool:
        """Run one action; True if a handler ran without raising"""
        handler = self._handlers.get(ctx.action)
        if handler is None:
            self.logger.warning(f"Unhandled action {ctx.action} for instance {ctx.instance_id}")
            outcome, error = "unhandled", None
        else:
            try:
                handler(ctx)
                outcome, error = "dispatched", None
            except Exception as e:
                self.logger.error(f"Action {ctx.action} failed for instance {ctx.instance_id}: {e}")
                outcome, error = "failed", str(e)

        metadata = {'action': ctx.action, 'outcome': outcome, 'case_id': ctx.case_id, 'step_id': ctx.step_id}
        if error:
            metadata['error'] = error
        self.audit.log_event(
            AuditEventType.ACTION_DISPATCHED,
            'workflow_instance',
            ctx.instance_id,
            metadata,
            ctx.triggered_by
        )
        return outcome == "dispatched"

    def dispatch_all(self, actions: List[str], base: ActionContext) -> Dict[str, bool]:
        results = {}
        for action in actions:
            ctx = ActionContext(
                action=action,
                instance_id=base.instance_id,
                case_id=base.case_id,
                step_id=base.step_id,
                context=base.context,
                definition_name=base.definition_name,
                triggered_by=base.triggered_by,
                extra=base.extra,
            )
            results[action] = self.dispatch(ctx)
        return results

    # Built-in handlers

    def _notify_case(self, ctx: ActionContext, template: str, payload: Dict[str, Any]) -> None:
        if self.notifications is None:
            self.logger.info(f"No notification sender configured, skipping {template} for case {ctx.case_id}")
            return
        for channel in self.channels:
            self.notifications.send(
                [ctx.case_recipient], channel, template, payload,
                dedupe_key=f"{template}:{ctx.instance_id}:{ctx.step_id}:{channel}"
            )

    def _send_completion_notification(self, ctx: ActionContext) -> None:
        self._notify_case(ctx, "workflow_completed", {
            "case_id": ctx.case_id,
            "workflow_name": ctx.definition_name,
            "final_status": ctx.extra.get("final_status", "completed"),
        })

    def _send_cancellation_notification(self, ctx: ActionContext) -> None:
        self._notify_case(ctx, "workflow_cancelled", {
            "case_id": ctx.case_id,
            "reason": ctx.extra.get("reason", ""),
        })

    def _notify_assignee(self, ctx: ActionContext) -> None:
        self._notify_case(ctx, "step_assigned", {
            "case_id": ctx.case_id,
            "step_name": ctx.extra.get("step_name", ctx.step_id),
        })
