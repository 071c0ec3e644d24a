"""
Storage Backend Module

Provides the abstract storage interface and the in-memory implementation the
batch runs against. Records are stored as JSON-compatible dictionaries: Decimal
values as strings, dates as ISO strings and enums as their values.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, get_type_hints
from decimal import Decimal
from datetime import date
from enum import Enum
import json
import threading
from dataclasses import dataclass, fields
from contextlib import contextmanager


def _to_storage_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _to_storage_value(v) for k, v in value.items()}
    return value


def _from_storage_value(value: Any, hint: Any) -> Any:
    if value is None:
        return None
    # Optional[X] comes through as Union[X, None]
    args = [a for a in getattr(hint, '__args__', ()) if a is not type(None)]
    if getattr(hint, '__origin__', None) is not None and len(args) == 1:
        hint = args[0]
    if hint is Decimal:
        return Decimal(value)
    if hint is date:
        return date.fromisoformat(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: int
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: _to_storage_value(getattr(self, f.name)) for f in fields(self)}
    
    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        hints = get_type_hints(cls)
        return cls(**{
            f.name: _from_storage_value(data.get(f.name), hints[f.name])
            for f in fields(cls)
            if f.name in data
        })


class StorageInterface(ABC):
    """Abstract interface for storage backends"""
    
    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass
    
    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass
    
    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass
    
    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass
    
    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass
    
    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any],
             predicate: Optional[Callable[[Dict[str, Any]], bool]] = None) -> List[Dict[str, Any]]:
        """Find records matching filters and an optional predicate"""
        pass
    
    @abstractmethod
    def next_id(self, table: str) -> int:
        """Next sequential integer id for a table"""
        pass
    
    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
        pass
    
    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass
    
    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass
    
    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation.
    
    Transactions are snapshot based: the first write to a table inside a
    transaction copies that table, and rollback restores the copies.
    Transactions do not nest; an inner atomic() joins the outer one.
    """
    
    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._snapshots: Dict[str, Dict[str, Dict[str, Any]]] = {}
    
    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
    
    def _touch(self, table: str) -> None:
        """Snapshot a table before its first write in a transaction"""
        if self._depth and table not in self._snapshots:
            self._snapshots[table] = dict(self._data[table])
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._touch(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))
    
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None
    
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]
    
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._touch(table)
                del self._data[table][record_id]
                return True
            return False
    
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]
    
    def find(self, table: str, filters: Dict[str, Any],
             predicate: Optional[Callable[[Dict[str, Any]], bool]] = None) -> List[Dict[str, Any]]:
        """Find records matching filters and an optional predicate"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match and (predicate is None or predicate(record)):
                    results.append(json.loads(json.dumps(record)))
            return results
    
    def next_id(self, table: str) -> int:
        """Next sequential integer id (max existing id + 1)"""
        with self._lock:
            self._ensure_table(table)
            return 1 + max((record['id'] for record in self._data[table].values()), default=0)
    
    def begin_transaction(self) -> None:
        with self._lock:
            self._depth += 1
    
    def commit(self) -> None:
        with self._lock:
            if self._depth:
                self._depth -= 1
                if not self._depth:
                    self._snapshots = {}
    
    def rollback(self) -> None:
        with self._lock:
            if not self._depth:
                return
            self._depth -= 1
            if not self._depth:
                for table, snapshot in self._snapshots.items():
                    self._data[table] = snapshot
                self._snapshots = {}
