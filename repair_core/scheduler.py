"""
Scheduled Jobs Runner

Periodic sweep over the time-based behaviour of the system: notification
delivery and retries, case step timeouts, approval timeouts and reminders,
and notification retention.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .approvals import ApprovalWorkflowEngine
from .clock import Clock, SystemClock
from .config import get_config
from .errors import CycleDetected
from .notifications import NotificationEngine
from .workflows import WorkflowExecutionEngine
from .logging_config import get_logger, log_action


@dataclass
class JobReport:
    """Outcome of one sweep"""
    started_at: datetime
    finished_at: Optional[datetime] = None
    notifications_dispatched: Dict[str, int] = field(default_factory=dict)
    step_timeouts: List[Dict[str, Any]] = field(default_factory=list)
    approval_timeouts: List[Dict[str, Any]] = field(default_factory=list)
    reminders_sent: int = 0
    notification_retries: Dict[str, int] = field(default_factory=dict)
    notifications_purged: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors) + sum(1 for result in self.step_timeouts if 'error' in result) + \
            sum(1 for result in self.approval_timeouts if 'error' in result)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'notifications_dispatched': self.notifications_dispatched,
            'step_timeouts': self.step_timeouts,
            'approval_timeouts': self.approval_timeouts,
            'reminders_sent': self.reminders_sent,
            'notification_retries': self.notification_retries,
            'notifications_purged': self.notifications_purged,
            'errors': self.errors,
            'error_count': self.error_count,
        }


class ScheduledJobsRunner:
    """Runs the periodic jobs; one failing job or instance never aborts the sweep"""

    def __init__(self, workflow_engine: WorkflowExecutionEngine,
                 approval_engine: ApprovalWorkflowEngine,
                 notifications: NotificationEngine,
                 clock: Optional[Clock] = None,
                 interval_minutes: Optional[int] = None,
                 max_workers: Optional[int] = None,
                 retention_days: Optional[int] = None):
        settings = get_config()
        self.workflow_engine = workflow_engine
        self.approval_engine = approval_engine
        self.notifications = notifications
        self.clock = clock or SystemClock()
        self.interval_minutes = interval_minutes if interval_minutes is not None else settings.scheduler_interval_minutes
        self.max_workers = max_workers if max_workers is not None else settings.scheduler_max_workers
        self.retention_days = retention_days if retention_days is not None else settings.notification_retention_days
        self.logger = get_logger("drms.scheduler")
        self._stop_event: Optional[asyncio.Event] = None

    async def run_once(self, now: Optional[datetime] = None) -> JobReport:
        now = now or self.clock.now()
        report = JobReport(started_at=now)

        try:
            report.notifications_dispatched = await self.notifications.dispatch_pending(now)
        except Exception as e:
            self._record_failure(report, "dispatch_notifications", e)

        try:
            report.step_timeouts = await asyncio.to_thread(self._check_step_timeouts, now)
        except Exception as e:
            self._record_failure(report, "step_timeouts", e)

        try:
            report.approval_timeouts = await asyncio.to_thread(self.approval_engine.check_timeouts, now)
        except Exception as e:
            self._record_failure(report, "approval_timeouts", e)

        try:
            report.reminders_sent = await asyncio.to_thread(self.approval_engine.send_reminders, now)
        except Exception as e:
            self._record_failure(report, "approval_reminders", e)

        try:
            report.notification_retries = await self.notifications.retry_failed(now)
        except Exception as e:
            self._record_failure(report, "retry_notifications", e)

        try:
            cutoff = now - timedelta(days=self.retention_days)
            report.notifications_purged = await asyncio.to_thread(self.notifications.purge_older_than, cutoff)
        except Exception as e:
            self._record_failure(report, "purge_notifications", e)

        report.finished_at = self.clock.now()
        log_action(
            self.logger, "info", "Scheduled sweep finished",
            action="run_scheduled_jobs", resource="scheduler",
            extra={
                'step_timeouts': len(report.step_timeouts),
                'approval_timeouts': len(report.approval_timeouts),
                'reminders_sent': report.reminders_sent,
                'notifications_purged': report.notifications_purged,
                'errors': report.error_count,
            }
        )
        return report

    def _check_step_timeouts(self, now: datetime) -> List[Dict[str, Any]]:
        """One task per running instance in a bounded pool"""
        candidates = self.workflow_engine.timeout_candidates()
        if not candidates:
            return []

        results = []
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="drms-timeouts") as pool:
            futures = {
                pool.submit(self.workflow_engine.check_instance_timeout, instance_id, now): instance_id
                for instance_id in candidates
            }
            for future, instance_id in futures.items():
                try:
                    result = future.result()
                except CycleDetected as e:
                    self.logger.error(f"Instance {instance_id} frozen during timeout transition: {e}")
                    results.append({'instance_id': instance_id, 'error': str(e), 'frozen': True})
                    continue
                except Exception as e:
                    self.logger.error(f"Timeout check failed for workflow instance {instance_id}: {e}")
                    results.append({'instance_id': instance_id, 'error': str(e)})
                    continue
                if result:
                    results.append(result)
        return results

    def _record_failure(self, report: JobReport, job: str, error: Exception) -> None:
        self.logger.error(f"Scheduled job {job} failed: {error}")
        report.errors.append(f"{job}: {error}")

    async def run_forever(self) -> None:
        """Sweep every interval_minutes until stop() is called"""
        self._stop_event = asyncio.Event()
        self.logger.info(f"Scheduler started, interval {self.interval_minutes} minutes")
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                self.logger.error(f"Scheduled sweep failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_minutes * 60)
            except asyncio.TimeoutError:
                pass
        self.logger.info("Scheduler stopped")

    def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
