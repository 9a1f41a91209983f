"""
Storage interfaces for execution history and anomalies.

The detector and ingestion service only talk to the abstract
``HistoryStore`` and ``AnomalyStore``. ``MemoryHistoryStore`` and
``MemoryAnomalyStore`` keep everything in process; the PostgreSQL
implementations live in ``testlens.database``.
"""

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple

from .models import (
    Anomaly,
    AnomalyFilter,
    AnomalyType,
    ExecutionHistoryEntry,
)

logger = logging.getLogger(__name__)


DEFAULT_HISTORY_LIMIT = 25_000
DEFAULT_QUERY_LIMIT = 2_000


class AnomalyNotFoundError(Exception):
    """Raised when an anomaly id does not exist in the store."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


def _copy(anomaly: Anomaly) -> Anomaly:
    """Detached copy; stored records are never handed out."""
    return replace(anomaly, details=dict(anomaly.details))


class HistoryStore(ABC):
    """Append-only store of test executions."""

    @abstractmethod
    def append(self, entries: Sequence[ExecutionHistoryEntry]) -> int:
        """Store entries whose id is new, returning how many were written."""
        pass

    @abstractmethod
    def for_project(
        self,
        project_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> List[ExecutionHistoryEntry]:
        """Entries of a project, oldest first, at most ``limit`` of them."""
        pass


class AnomalyStore(ABC):
    """
    Store of detected anomalies.

    Implementations must keep at most one unresolved anomaly per
    ``(test_id, type)``; ``insert_if_absent`` is the atomic
    check-and-insert that upholds it.
    """

    @abstractmethod
    def insert_if_absent(self, anomaly: Anomaly) -> Optional[Anomaly]:
        """
        Insert the anomaly unless an unresolved one with the same
        ``(test_id, type)`` exists.

        Returns:
            The stored anomaly (with ``id`` set), or None if skipped
        """
        pass

    @abstractmethod
    def find_unresolved(self, test_id: str, anomaly_type: AnomalyType) -> Optional[Anomaly]:
        """Return the unresolved anomaly for ``(test_id, type)``, if any."""
        pass

    @abstractmethod
    def get(self, anomaly_id: str) -> Anomaly:
        """Fetch one anomaly. Raises AnomalyNotFoundError."""
        pass

    @abstractmethod
    def resolve(self, anomaly_id: str, resolved_at: Optional[datetime] = None) -> Anomaly:
        """Mark an anomaly resolved. Raises AnomalyNotFoundError."""
        pass

    @abstractmethod
    def update_insights(
        self,
        anomaly_id: str,
        insights: str,
        root_cause: Optional[str],
        suggested_fix: Optional[str],
        confidence: float,
        generated_at: Optional[datetime] = None,
    ) -> Anomaly:
        """Attach downstream analysis to an anomaly. Raises AnomalyNotFoundError."""
        pass

    @abstractmethod
    def list(
        self,
        filter: Optional[AnomalyFilter] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[Anomaly]:
        """Anomalies matching ``filter``, newest ``detected_at`` first."""
        pass

    def save_detected(self, candidates: Sequence[Anomaly]) -> List[Anomaly]:
        """
        Persist detection candidates, skipping any ``(test_id, type)`` that
        already has an unresolved anomaly.

        Returns:
            The anomalies that were actually inserted
        """
        inserted = []
        for candidate in candidates:
            stored = self.insert_if_absent(candidate)
            if stored is None:
                logger.debug(
                    "Skipping %s anomaly for %s: unresolved one exists",
                    candidate.type.value, candidate.test_name,
                )
                continue
            inserted.append(stored)

        if inserted:
            logger.info("Stored %d new anomalies", len(inserted))
        return inserted


class MemoryHistoryStore(HistoryStore):
    """In-process history store. Entries whose id was already stored are skipped."""

    def __init__(self) -> None:
        self._entries: Dict[str, List[ExecutionHistoryEntry]] = {}
        self._ids: Set[str] = set()
        self._lock = threading.Lock()

    def append(self, entries: Sequence[ExecutionHistoryEntry]) -> int:
        for entry in entries:
            if entry.project_id is None:
                raise ValueError(f"History entry {entry.test_id} has no project_id")

        inserted = 0
        with self._lock:
            for entry in entries:
                if entry.test_id in self._ids:
                    continue
                self._ids.add(entry.test_id)
                self._entries.setdefault(entry.project_id, []).append(entry)
                inserted += 1
        return inserted

    def for_project(
        self,
        project_id: str,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> List[ExecutionHistoryEntry]:
        with self._lock:
            return list(self._entries.get(project_id, [])[:limit])


class MemoryAnomalyStore(AnomalyStore):
    """
    In-process anomaly store.

    Keeps secondary indexes by project and type; ``list`` starts from the
    most selective one and filters the rest.
    """

    def __init__(self) -> None:
        self._anomalies: Dict[str, Anomaly] = {}
        self._unresolved: Dict[Tuple[str, AnomalyType], str] = {}
        self._by_project: Dict[str, List[str]] = {}
        self._by_type: Dict[AnomalyType, List[str]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._anomalies)

    def insert_if_absent(self, anomaly: Anomaly) -> Optional[Anomaly]:
        with self._lock:
            if anomaly.dedup_key in self._unresolved:
                return None

            stored = replace(
                anomaly,
                id=anomaly.id or new_id(),
                details=dict(anomaly.details),
                resolved=False,
                resolved_at=None,
            )
            self._anomalies[stored.id] = stored
            self._unresolved[stored.dedup_key] = stored.id
            self._by_project.setdefault(stored.project_id, []).append(stored.id)
            self._by_type.setdefault(stored.type, []).append(stored.id)
            return _copy(stored)

    def find_unresolved(self, test_id: str, anomaly_type: AnomalyType) -> Optional[Anomaly]:
        with self._lock:
            anomaly_id = self._unresolved.get((test_id, anomaly_type))
            return _copy(self._anomalies[anomaly_id]) if anomaly_id else None

    def get(self, anomaly_id: str) -> Anomaly:
        with self._lock:
            return _copy(self._get_locked(anomaly_id))

    def _get_locked(self, anomaly_id: str) -> Anomaly:
        try:
            return self._anomalies[anomaly_id]
        except KeyError:
            raise AnomalyNotFoundError(f"Anomaly not found: {anomaly_id}") from None

    def resolve(self, anomaly_id: str, resolved_at: Optional[datetime] = None) -> Anomaly:
        with self._lock:
            anomaly = self._get_locked(anomaly_id)
            if not anomaly.resolved:
                anomaly.resolved = True
                anomaly.resolved_at = resolved_at or _utcnow()
                self._unresolved.pop(anomaly.dedup_key, None)
            return _copy(anomaly)

    def update_insights(
        self,
        anomaly_id: str,
        insights: str,
        root_cause: Optional[str],
        suggested_fix: Optional[str],
        confidence: float,
        generated_at: Optional[datetime] = None,
    ) -> Anomaly:
        with self._lock:
            anomaly = self._get_locked(anomaly_id)
            anomaly.insights = insights
            anomaly.root_cause = root_cause
            anomaly.suggested_fix = suggested_fix
            anomaly.confidence = confidence
            anomaly.insights_generated_at = generated_at or _utcnow()
            return _copy(anomaly)

    def list(
        self,
        filter: Optional[AnomalyFilter] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[Anomaly]:
        filter = filter or AnomalyFilter()
        with self._lock:
            if filter.project_id is not None:
                ids = self._by_project.get(filter.project_id, [])
            elif filter.type is not None:
                ids = self._by_type.get(filter.type, [])
            elif filter.resolved is False:
                ids = list(self._unresolved.values())
            else:
                ids = list(self._anomalies)
            candidates = [_copy(self._anomalies[i]) for i in ids]

        results = [a for a in candidates if filter.matches(a)]
        results.sort(key=lambda a: a.detected_at, reverse=True)
        return results[:limit]
