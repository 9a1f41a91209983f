"""
Data models for testlens.
"""

import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any, Tuple


class TestStatus(str, Enum):
    """Status of a single test execution."""
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RUNNING = "running"


class AnomalyType(str, Enum):
    """Kind of quality signal detected over a test's history."""
    FLAKY = "flaky"
    SLOW = "slow"
    FREQUENTLY_FAILING = "frequently_failing"
    RESOURCE_INTENSIVE = "resource_intensive"


class Severity(str, Enum):
    """Severity grade of a detected anomaly."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# (file, test name); file is None when the log never named one
TestKey = Tuple[Optional[str], str]


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


@dataclass
class TestOutcome:
    """Structured result of one test case, extracted from log text."""
    __test__ = False

    test_name: str
    status: TestStatus
    file: Optional[str] = None
    line: Optional[int] = None
    error: Optional[str] = None
    error_details: Optional[str] = None
    duration: Optional[float] = None  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class LogStep:
    """One named segment of a raw CI job log."""
    name: str
    step_number: int
    log_text: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ExecutionHistoryEntry:
    """One historical execution of a specific test."""
    test_id: str
    test_name: str
    status: TestStatus
    duration_ms: float = 0.0
    file: Optional[str] = None
    line: Optional[int] = None
    project_id: Optional[str] = None
    run_id: Optional[str] = None
    error: Optional[str] = None
    error_details: Optional[str] = None
    recorded_at: Optional[datetime] = None

    @property
    def key(self) -> TestKey:
        return (self.file, self.test_name)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        project_id: Optional[str] = None,
        index: int = 0,
    ) -> "ExecutionHistoryEntry":
        """
        Build an entry from a JSON object (snake_case or camelCase keys).

        ``project_id`` fills in a missing project. Entries without an id get
        one derived from their content and ``index`` (their position in the
        source file), so loading the same file twice yields the same ids.
        """
        def pick(*names: str, default: Any = None) -> Any:
            for name in names:
                if name in data and data[name] is not None:
                    return data[name]
            return default

        test_name = pick("test_name", "testName", "name")
        if not test_name:
            raise ValueError(f"History entry without a test name: {data!r}")

        entry = cls(
            test_id="",
            test_name=test_name,
            status=TestStatus(pick("status")),
            duration_ms=float(pick("duration_ms", "durationMs", "duration", default=0)),
            file=pick("file"),
            line=pick("line"),
            project_id=pick("project_id", "projectId", default=project_id),
            run_id=pick("run_id", "runId"),
            error=pick("error"),
            error_details=pick("error_details", "errorDetails"),
            recorded_at=_parse_datetime(pick("recorded_at", "recordedAt")),
        )
        test_id = pick("test_id", "testId", "id")
        entry.test_id = str(test_id) if test_id is not None else _derive_entry_id(entry, index)
        return entry


def _derive_entry_id(entry: "ExecutionHistoryEntry", index: int) -> str:
    parts = [
        entry.project_id, entry.file, entry.test_name, entry.run_id,
        entry.recorded_at.isoformat() if entry.recorded_at else None, index,
    ]
    digest = hashlib.sha1(json.dumps(parts).encode("utf-8")).hexdigest()
    return f"h-{digest[:32]}"


@dataclass
class Anomaly:
    """A detected quality signal about a test's historical behaviour."""
    project_id: str
    test_id: str
    test_name: str
    type: AnomalyType
    severity: Severity
    detected_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    id: Optional[str] = None

    # Attached later by downstream analysis
    insights: Optional[str] = None
    root_cause: Optional[str] = None
    suggested_fix: Optional[str] = None
    confidence: Optional[float] = None
    insights_generated_at: Optional[datetime] = None

    @property
    def dedup_key(self) -> Tuple[str, AnomalyType]:
        return (self.test_id, self.type)

    def to_dict(self) -> Dict[str, Any]:
        return _serialize(asdict(self))


@dataclass
class AnomalyFilter:
    """Conjunctive filter for anomaly queries. Unset fields match anything."""
    project_id: Optional[str] = None
    type: Optional[AnomalyType] = None
    resolved: Optional[bool] = None

    def matches(self, anomaly: Anomaly) -> bool:
        if self.project_id is not None and anomaly.project_id != self.project_id:
            return False
        if self.type is not None and anomaly.type != self.type:
            return False
        if self.resolved is not None and anomaly.resolved != self.resolved:
            return False
        return True


@dataclass
class DetectionConfig:
    """Thresholds for anomaly detection."""
    min_runs: int = 3

    flaky_threshold: float = 0.2
    flaky_medium: float = 0.3
    flaky_high: float = 0.5

    slow_threshold_ms: float = 5000.0
    slow_medium_ms: float = 7500.0
    slow_high_ms: float = 10000.0

    failure_threshold: float = 0.5
    failure_medium: float = 0.65
    failure_high: float = 0.8


@dataclass
class DetectionResult:
    """Outcome of one detection pass."""
    project_id: str
    candidates: List[Anomaly] = field(default_factory=list)
    inserted: List[Anomaly] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        """Candidates already covered by an unresolved anomaly."""
        return len(self.candidates) - len(self.inserted)
