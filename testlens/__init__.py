"""
testlens - CI log parsing and test anomaly detection

Turns raw CI job logs into structured test outcomes and flags flaky, slow
and frequently failing tests from their execution history.
"""

__version__ = "0.1.0"

from .detector import AnomalyDetector, group_history, run_detection
from .durations import parse_duration, format_duration
from .ingest import IngestionService, TestRunIngest, normalize_confidence
from .log_parser import (
    extract_test_outcomes,
    parse_job_log,
    parse_step_log,
    split_into_steps,
)
from .models import (
    Anomaly,
    AnomalyFilter,
    AnomalyType,
    DetectionConfig,
    ExecutionHistoryEntry,
    LogStep,
    Severity,
    TestOutcome,
    TestStatus,
)
from .store import MemoryAnomalyStore, MemoryHistoryStore

__all__ = [
    "Anomaly",
    "AnomalyDetector",
    "AnomalyFilter",
    "AnomalyType",
    "DetectionConfig",
    "ExecutionHistoryEntry",
    "IngestionService",
    "LogStep",
    "MemoryAnomalyStore",
    "MemoryHistoryStore",
    "Severity",
    "TestOutcome",
    "TestRunIngest",
    "TestStatus",
    "extract_test_outcomes",
    "format_duration",
    "group_history",
    "normalize_confidence",
    "parse_duration",
    "parse_job_log",
    "parse_step_log",
    "run_detection",
    "split_into_steps",
]
