"""
Versioned Repository Module

Typed access to storage tables whose records carry a monotonic "version"
field. Saves are compare-and-swap: a save that races another writer fails
with VersionConflict instead of silently overwriting.
"""

from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from .storage import StorageInterface
from .errors import InstanceNotFound, VersionConflict


T = TypeVar('T')


class VersionedRepository(Generic[T]):
    """Load and compare-and-save records of one type in one table"""

    def __init__(self, storage: StorageInterface, table: str, record_type: Any,
                 label: Optional[str] = None):
        self.storage = storage
        self.table = table
        self.record_type = record_type
        self.label = label or table

    def load(self, record_id: str) -> Optional[T]:
        data = self.storage.load(self.table, record_id)
        if data is None:
            return None
        return self.record_type.from_dict(data)

    def get(self, record_id: str) -> T:
        """Load a record or raise InstanceNotFound"""
        record = self.load(record_id)
        if record is None:
            raise InstanceNotFound(self.label, record_id)
        return record

    def find(self, filters: Dict[str, Any]) -> List[T]:
        return [self.record_type.from_dict(data) for data in self.storage.find(self.table, filters)]

    def all(self) -> List[T]:
        return [self.record_type.from_dict(data) for data in self.storage.load_all(self.table)]

    def insert(self, record: T) -> T:
        """Store a brand new record at version 1"""
        data = record.to_dict()
        data['version'] = 1
        if not self.storage.compare_and_save(self.table, record.id, data, None):
            raise VersionConflict(self.table, record.id, None,
                                  self.storage.current_version(self.table, record.id))
        record.version = 1
        return record

    def save(self, record: T, expected_version: Optional[int] = None) -> T:
        """
        Write record if the stored version still equals expected_version.

        expected_version defaults to the version the record was loaded at.
        On success the record's version is bumped in place.
        """
        expected = record.version if expected_version is None else expected_version
        data = record.to_dict()
        data['version'] = expected + 1
        if not self.storage.compare_and_save(self.table, record.id, data, expected):
            raise VersionConflict(self.table, record.id, expected,
                                  self.storage.current_version(self.table, record.id))
        record.version = expected + 1
        return record

    def delete(self, record_id: str) -> bool:
        return self.storage.delete(self.table, record_id)


def retry_on_conflict(operation: Callable[[], T], attempts: int) -> T:
    """Run operation, re-running it from scratch after a VersionConflict"""
    last_error: Optional[VersionConflict] = None
    for _ in range(max(1, attempts)):
        try:
            return operation()
        except VersionConflict as e:
            last_error = e
    raise last_error
