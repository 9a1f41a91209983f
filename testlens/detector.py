"""
Anomaly detection over per-test execution history.

Flags tests that are flaky (both pass and fail), slow (high mean
duration) or frequently failing. Each check is independent, so one test
can produce several anomalies in the same pass.
"""

import logging
import statistics
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from .models import (
    Anomaly,
    AnomalyType,
    DetectionConfig,
    DetectionResult,
    ExecutionHistoryEntry,
    Severity,
    TestKey,
    TestStatus,
)

logger = logging.getLogger(__name__)


HistoryInput = Union[
    Mapping,  # TestKey -> sequence of ExecutionHistoryEntry
    Iterable[ExecutionHistoryEntry],
]


def group_history(
    entries: Iterable[ExecutionHistoryEntry],
) -> Dict[TestKey, List[ExecutionHistoryEntry]]:
    """
    Group execution history by test identity ``(file, test_name)``.

    Groups keep the order in which their first entry was seen, and entries
    keep their input order within a group.
    """
    groups: Dict[TestKey, List[ExecutionHistoryEntry]] = {}
    for entry in entries:
        groups.setdefault(entry.key, []).append(entry)
    return groups


def _grade(value: float, medium: float, high: float) -> Severity:
    if value > high:
        return Severity.HIGH
    elif value > medium:
        return Severity.MEDIUM
    else:
        return Severity.LOW


class AnomalyDetector:
    """
    Computes anomaly candidates from grouped execution history.

    Candidates are not persisted here; hand them to
    ``AnomalyStore.save_detected`` for deduplicated storage.
    """

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize detector.

        Args:
            config: Detection thresholds (defaults to DetectionConfig())
            clock: Returns the detection timestamp (defaults to UTC now)
        """
        self.config = config or DetectionConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def detect(self, project_id: str, history: HistoryInput) -> List[Anomaly]:
        """
        Run every check over every test-identity group.

        Args:
            project_id: Project the history belongs to
            history: Mapping of test identity to entries, or a flat
                iterable of entries to be grouped

        Returns:
            Anomaly candidates in group order
        """
        if isinstance(history, Mapping):
            groups: Iterable[Sequence[ExecutionHistoryEntry]] = history.values()
        else:
            groups = group_history(history).values()

        detected_at = self._clock()
        candidates: List[Anomaly] = []
        skipped_groups = 0

        for group in groups:
            if len(group) < self.config.min_runs:
                skipped_groups += 1
                continue
            candidates.extend(self.check_group(project_id, group, detected_at))

        logger.debug(
            "Detected %d anomaly candidates for project %s (%d groups below %d runs)",
            len(candidates), project_id, skipped_groups, self.config.min_runs,
        )
        return candidates

    def check_group(
        self,
        project_id: str,
        group: Sequence[ExecutionHistoryEntry],
        detected_at: Optional[datetime] = None,
    ) -> List[Anomaly]:
        """Run the flaky, slow and frequently-failing checks on one group."""
        if len(group) < self.config.min_runs:
            return []

        detected_at = detected_at or self._clock()
        first = group[0]
        found = []

        for check in (self._check_flaky, self._check_slow, self._check_failing):
            result = check(group)
            if result is None:
                continue
            anomaly_type, severity, details = result
            found.append(Anomaly(
                project_id=project_id,
                test_id=first.test_id,
                test_name=first.test_name,
                type=anomaly_type,
                severity=severity,
                detected_at=detected_at,
                details=details,
            ))

        return found

    def _check_flaky(self, group):
        total = len(group)
        passed = sum(1 for e in group if e.status == TestStatus.PASSED)
        failed = sum(1 for e in group if e.status == TestStatus.FAILED)

        if passed == 0 or failed == 0:
            return None

        flakiness = min(passed, failed) / total
        if flakiness <= self.config.flaky_threshold:
            return None

        severity = _grade(flakiness, self.config.flaky_medium, self.config.flaky_high)
        return AnomalyType.FLAKY, severity, {
            "passRate": passed / total,
            "failRate": failed / total,
            "totalRuns": total,
        }

    def _check_slow(self, group):
        durations = [e.duration_ms for e in group]
        average = statistics.fmean(durations)
        if average <= self.config.slow_threshold_ms:
            return None

        severity = _grade(average, self.config.slow_medium_ms, self.config.slow_high_ms)
        return AnomalyType.SLOW, severity, {
            "averageDuration": average,
            "maxDuration": max(durations),
        }

    def _check_failing(self, group):
        total = len(group)
        failed = sum(1 for e in group if e.status == TestStatus.FAILED)
        if failed == 0:
            return None

        failure_rate = failed / total
        if failure_rate <= self.config.failure_threshold:
            return None

        severity = _grade(failure_rate, self.config.failure_medium, self.config.failure_high)
        return AnomalyType.FREQUENTLY_FAILING, severity, {
            "failureRate": failure_rate,
            "totalRuns": total,
            "recentFailures": failed,
        }


def run_detection(
    project_id: str,
    history: HistoryInput,
    store=None,
    config: Optional[DetectionConfig] = None,
) -> DetectionResult:
    """
    Detect anomalies and, when a store is given, persist them.

    Args:
        project_id: Project the history belongs to
        history: Grouped or flat execution history
        store: AnomalyStore to save new anomalies into (optional)
        config: Detection thresholds (optional)

    Returns:
        DetectionResult with all candidates and the ones actually inserted
    """
    candidates = AnomalyDetector(config).detect(project_id, history)
    result = DetectionResult(project_id=project_id, candidates=candidates)
    if store is not None:
        result.inserted = store.save_detected(candidates)
    return result
