"""
Ingestion of test-run results.

A ``TestRunIngest`` is the payload a reporter (or a CI sync job) submits:
one run of one framework, plus its individual test results. The
``IngestionService`` turns it into execution history, optionally parsing a
raw CI log first, and exposes the anomaly operations built on top of that
history.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .config import Settings
from .detector import AnomalyDetector
from .log_parser import parse_job_outcomes
from .models import (
    Anomaly,
    AnomalyFilter,
    DetectionResult,
    ExecutionHistoryEntry,
    TestStatus,
)
from .store import AnomalyStore, HistoryStore, new_id

logger = logging.getLogger(__name__)


INCOMPLETE_TEST_ERROR = "Test did not complete before run finished"

CONFIDENCE_LABELS = {
    "high": 0.8,
    "medium": 0.5,
    "low": 0.2,
}
DEFAULT_CONFIDENCE = 0.5


class IngestionError(Exception):
    """Raised when an ingestion payload is malformed."""
    pass


class TestFramework(str, Enum):
    """Framework that produced a test run."""
    __test__ = False

    VITEST = "vitest"
    PLAYWRIGHT = "playwright"
    JEST = "jest"
    OTHER = "other"


class TestType(str, Enum):
    """Layer of the test pyramid a run belongs to."""
    __test__ = False

    UNIT = "unit"
    INTEGRATION = "integration"
    E2E = "e2e"
    VISUAL = "visual"


def _enum(enum_cls, value: Any, what: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise IngestionError(f"Unknown {what} {value!r} (expected one of: {allowed})") from None


def _timestamp(value: Any, what: str) -> Optional[datetime]:
    """Accept a datetime, an ISO-8601 string or epoch milliseconds."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise IngestionError(f"Invalid {what}: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise IngestionError(f"Invalid {what}: {value!r}") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _duration(value: Any, what: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise IngestionError(f"{what} must be a number, got {value!r}")
    if value < 0:
        raise IngestionError(f"{what} must not be negative, got {value!r}")
    return float(value)


def slugify(name: str) -> str:
    """Project id derived from a project name."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "project"


def normalize_confidence(confidence: Union[float, int, str, None]) -> float:
    """
    Map a confidence value onto [0, 1].

    Numbers are clamped; the labels ``high``, ``medium`` and ``low`` map to
    0.8, 0.5 and 0.2. Anything else gives 0.5.
    """
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
        return max(0.0, min(1.0, float(confidence)))
    if isinstance(confidence, str):
        return CONFIDENCE_LABELS.get(confidence.strip().lower(), DEFAULT_CONFIDENCE)
    return DEFAULT_CONFIDENCE


@dataclass
class TestResultRecord:
    """One test's result as submitted for ingestion."""
    __test__ = False

    name: str
    file: Optional[str]
    status: TestStatus
    duration: float = 0.0  # milliseconds
    line: Optional[int] = None
    column: Optional[int] = None
    error: Optional[str] = None
    error_details: Optional[str] = None
    retries: Optional[int] = None
    suite: Optional[str] = None
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestResultRecord":
        """
        Validate and build a record from a JSON object.

        Raises:
            IngestionError: On a missing name, unknown status or bad duration
        """
        if not isinstance(data, dict):
            raise IngestionError(f"Test result must be a JSON object, got {data!r}")

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise IngestionError(f"Test result without a name: {data!r}")

        return cls(
            name=name,
            file=data.get("file"),
            status=_enum(TestStatus, data.get("status"), "test status"),
            duration=_duration(data.get("duration", 0), f"Duration of {name!r}"),
            line=data.get("line"),
            column=data.get("column"),
            error=data.get("error"),
            error_details=data.get("errorDetails", data.get("error_details")),
            retries=data.get("retries"),
            suite=data.get("suite"),
            tags=list(data.get("tags") or []),
        )


@dataclass
class TestRunIngest:
    """A test run submitted for ingestion."""
    __test__ = False

    project_name: str
    framework: TestFramework
    test_type: TestType
    started_at: datetime
    tests: List[TestResultRecord] = field(default_factory=list)
    project_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    environment: Optional[str] = None
    ci: Optional[bool] = None
    commit_sha: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.tests)

    @property
    def passed(self) -> int:
        return sum(1 for t in self.tests if t.status == TestStatus.PASSED)

    @property
    def failed(self) -> int:
        return sum(1 for t in self.tests if t.status == TestStatus.FAILED)

    @property
    def skipped(self) -> int:
        return sum(1 for t in self.tests if t.status == TestStatus.SKIPPED)

    @property
    def running(self) -> int:
        return sum(1 for t in self.tests if t.status == TestStatus.RUNNING)

    @property
    def is_complete(self) -> bool:
        """Complete once ``completed_at`` is set or nothing is still running."""
        return self.completed_at is not None or self.running == 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TestRunIngest":
        """
        Validate and build a run from a JSON object (camelCase keys, as
        reporters send them; snake_case is accepted too).

        Raises:
            IngestionError: If the payload is malformed
        """
        if not isinstance(data, dict):
            raise IngestionError("Test run payload must be a JSON object")

        def pick(camel: str, snake: str, default: Any = None) -> Any:
            if camel in data:
                return data[camel]
            return data.get(snake, default)

        project_name = pick("projectName", "project_name")
        if not isinstance(project_name, str) or not project_name.strip():
            raise IngestionError("projectName is required")

        started_at = _timestamp(pick("startedAt", "started_at"), "startedAt")
        if started_at is None:
            raise IngestionError("startedAt is required")

        tests = data.get("tests", [])
        if not isinstance(tests, list):
            raise IngestionError("tests must be a list")

        duration = pick("duration", "duration")
        return cls(
            project_name=project_name,
            project_id=pick("projectId", "project_id"),
            framework=_enum(TestFramework, data.get("framework", "other"), "framework"),
            test_type=_enum(TestType, pick("testType", "test_type", "unit"), "test type"),
            started_at=started_at,
            completed_at=_timestamp(pick("completedAt", "completed_at"), "completedAt"),
            duration=_duration(duration, "Run duration") if duration is not None else None,
            environment=data.get("environment"),
            ci=data.get("ci"),
            commit_sha=pick("commitSha", "commit_sha"),
            metadata=dict(data.get("metadata") or {}),
            tests=[TestResultRecord.from_dict(t) for t in tests],
        )


@dataclass
class IngestResult:
    """What an ingestion stored."""
    project_id: str
    run_id: str
    status: TestStatus
    recorded: int = 0
    from_log: int = 0
    converted_running: int = 0


def run_status(run: TestRunIngest) -> TestStatus:
    """Overall status of a run, derived from its tests."""
    if not run.is_complete and run.running:
        return TestStatus.RUNNING
    if run.failed or (run.is_complete and run.running):
        return TestStatus.FAILED
    if run.tests and run.skipped == run.total:
        return TestStatus.SKIPPED
    return TestStatus.PASSED


class IngestionService:
    """
    Entry point for storing runs and managing anomalies.

    Example:
        service = IngestionService(MemoryHistoryStore(), MemoryAnomalyStore())
        service.ingest(TestRunIngest.from_dict(payload), raw_log=log_text)
        result = service.run_detection("my-project")
    """

    def __init__(
        self,
        history_store: HistoryStore,
        anomaly_store: AnomalyStore,
        detector: Optional[AnomalyDetector] = None,
        settings: Optional[Settings] = None,
    ):
        self.history = history_store
        self.anomalies = anomaly_store
        self.settings = settings or Settings()
        self.detector = detector or AnomalyDetector(self.settings.detection)

    def ingest(self, run: TestRunIngest, raw_log: Optional[str] = None) -> IngestResult:
        """
        Store one run's tests as execution history.

        Args:
            run: Validated run payload
            raw_log: Raw CI job log; outcomes parsed from it are added to
                the run's tests, with the step name as suite

        Returns:
            IngestResult with the project id, run id and counts
        """
        parsed = []
        if raw_log:
            for step, outcomes in parse_job_outcomes(raw_log):
                for outcome in outcomes:
                    parsed.append(TestResultRecord(
                        name=outcome.test_name,
                        file=outcome.file,
                        status=outcome.status,
                        duration=outcome.duration or 0.0,
                        line=outcome.line,
                        error=outcome.error,
                        error_details=outcome.error_details,
                        suite=step.name,
                    ))
            run = replace(run, tests=run.tests + parsed)
        from_log = len(parsed)

        project_id = run.project_id or slugify(run.project_name)
        run_id = new_id()
        status = run_status(run)
        complete = run.is_complete
        recorded_at = run.completed_at or run.started_at

        entries = []
        converted = 0
        for test in run.tests:
            test_status = test.status
            error = test.error
            if test_status == TestStatus.RUNNING and complete:
                logger.warning(
                    "Test %r still running but run %s is complete, recording as failed",
                    test.name, run_id,
                )
                test_status = TestStatus.FAILED
                error = error or INCOMPLETE_TEST_ERROR
                converted += 1

            entries.append(ExecutionHistoryEntry(
                test_id=new_id(),
                test_name=test.name,
                status=test_status,
                duration_ms=test.duration,
                file=test.file,
                line=test.line,
                project_id=project_id,
                run_id=run_id,
                error=error,
                error_details=test.error_details,
                recorded_at=recorded_at,
            ))

        recorded = self.history.append(entries)
        logger.info(
            "Ingested run %s for %s: %d tests (%d from log), status %s",
            run_id, project_id, recorded, from_log, status.value,
        )
        return IngestResult(
            project_id=project_id,
            run_id=run_id,
            status=status,
            recorded=recorded,
            from_log=from_log,
            converted_running=converted,
        )

    def run_detection(self, project_id: str) -> DetectionResult:
        """Detect anomalies over a project's history and store new ones."""
        history = self.history.for_project(project_id, limit=self.settings.history_limit)
        candidates = self.detector.detect(project_id, history)
        result = DetectionResult(project_id=project_id, candidates=candidates)
        result.inserted = self.anomalies.save_detected(candidates)
        return result

    def resolve_anomaly(self, anomaly_id: str) -> Anomaly:
        """Mark an anomaly resolved. Raises AnomalyNotFoundError."""
        return self.anomalies.resolve(anomaly_id)

    def list_anomalies(self, filter: Optional[AnomalyFilter] = None) -> List[Anomaly]:
        """Anomalies matching ``filter``, newest first."""
        return self.anomalies.list(filter, limit=self.settings.query_limit)

    def attach_insights(
        self,
        anomaly_id: str,
        insights: str,
        root_cause: Optional[str] = None,
        suggested_fix: Optional[str] = None,
        confidence: Union[float, int, str, None] = DEFAULT_CONFIDENCE,
    ) -> Anomaly:
        """Store downstream analysis on an anomaly. Raises AnomalyNotFoundError."""
        return self.anomalies.update_insights(
            anomaly_id,
            insights=insights,
            root_cause=root_cause,
            suggested_fix=suggested_fix,
            confidence=normalize_confidence(confidence),
        )
