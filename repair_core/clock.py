"""
Clock Module

Engines never call datetime.now() directly; they ask an injected clock so
timeout and escalation logic can be driven deterministically in tests.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone, timedelta
from typing import Optional
import threading


class Clock(ABC):
    """Source of the current time (always timezone-aware UTC)"""

    @abstractmethod
    def now(self) -> datetime:
        pass


class SystemClock(Clock):
    """Wall-clock time"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, hours: float = 0, minutes: float = 0, days: float = 0) -> datetime:
        """Move the clock forward and return the new time"""
        with self._lock:
            self._now = self._now + timedelta(days=days, hours=hours, minutes=minutes)
            return self._now

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        with self._lock:
            self._now = moment


def hours_between(start: datetime, end: datetime) -> float:
    """Elapsed hours from start to end (negative if end precedes start)"""
    return (end - start).total_seconds() / 3600.0


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp from storage, tolerating None"""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
