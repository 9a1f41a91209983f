"""
Test the ingestion contract and the service built on it.

Covers:
- Payload validation (required fields, enums, durations, timestamps)
- Derived totals and run status
- Running tests on a completed run are recorded as failed
- Raw log outcomes are added to the run
- Detection through the service is idempotent
- Resolve, list and insight attachment
- Confidence normalization
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from conftest import JOB_LOG

from testlens.config import Settings
from testlens.ingest import (
    INCOMPLETE_TEST_ERROR,
    IngestionError,
    IngestionService,
    TestFramework,
    TestResultRecord,
    TestRunIngest,
    TestType,
    normalize_confidence,
    run_status,
    slugify,
)
from testlens.models import AnomalyFilter, AnomalyType, Severity, TestStatus
from testlens.store import AnomalyNotFoundError


def payload(tests=None, **overrides):
    data = {
        "projectName": "Web App",
        "framework": "vitest",
        "testType": "unit",
        "startedAt": 1767225600000,
        "completedAt": 1767225660000,
        "tests": tests if tests is not None else [
            {"name": "does X", "file": "src/a.test.ts", "status": "passed", "duration": 120},
        ],
    }
    data.update(overrides)
    return data


def record_data(name="does X", status="passed", duration=100, **extra):
    data = {"name": name, "file": "src/a.test.ts", "status": status, "duration": duration}
    data.update(extra)
    return data


class TestPayloadValidation:
    """TestRunIngest.from_dict()."""

    def test_valid_payload(self):
        run = TestRunIngest.from_dict(payload())
        assert run.project_name == "Web App"
        assert run.framework == TestFramework.VITEST
        assert run.test_type == TestType.UNIT
        assert run.started_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert run.tests[0] == TestResultRecord(
            name="does X", file="src/a.test.ts", status=TestStatus.PASSED, duration=120.0,
        )

    def test_iso_timestamps(self):
        run = TestRunIngest.from_dict(payload(startedAt="2026-01-01T00:00:00Z", completedAt=None))
        assert run.started_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert run.completed_at is None

    def test_optional_fields(self):
        run = TestRunIngest.from_dict(payload(
            tests=[record_data(
                errorDetails="stack", retries=2, suite="math", tags=["fast"], line=3, column=7,
            )],
            environment="ci",
            ci=True,
            commitSha="abc123",
            metadata={"branch": "main"},
        ))
        record = run.tests[0]
        assert (record.error_details, record.retries, record.suite) == ("stack", 2, "math")
        assert (record.tags, record.line, record.column) == (["fast"], 3, 7)
        assert (run.environment, run.ci, run.commit_sha) == ("ci", True, "abc123")
        assert run.metadata == {"branch": "main"}

    @pytest.mark.parametrize(
        "overrides, match",
        [
            ({"projectName": ""}, "projectName"),
            ({"startedAt": None}, "startedAt"),
            ({"startedAt": "yesterday"}, "startedAt"),
            ({"framework": "mocha"}, "framework"),
            ({"testType": "smoke"}, "test type"),
            ({"tests": "nope"}, "tests must be a list"),
            ({"duration": -1}, "must not be negative"),
        ],
    )
    def test_invalid_run(self, overrides, match):
        with pytest.raises(IngestionError, match=match):
            TestRunIngest.from_dict(payload(**overrides))

    @pytest.mark.parametrize(
        "record, match",
        [
            ({"file": "a.ts", "status": "passed", "duration": 1}, "without a name"),
            (record_data(status="exploded"), "test status"),
            (record_data(duration=-5), "must not be negative"),
            (record_data(duration="fast"), "must be a number"),
            ("not an object", "JSON object"),
        ],
    )
    def test_invalid_test_record(self, record, match):
        with pytest.raises(IngestionError, match=match):
            TestRunIngest.from_dict(payload(tests=[record]))

    def test_not_an_object(self):
        with pytest.raises(IngestionError):
            TestRunIngest.from_dict(["not", "a", "run"])


class TestRunStatus:
    """Totals and overall status."""

    def test_totals(self):
        run = TestRunIngest.from_dict(payload(tests=[
            record_data("a", "passed"),
            record_data("b", "failed"),
            record_data("c", "skipped"),
            record_data("d", "passed"),
        ]))
        assert (run.total, run.passed, run.failed, run.skipped) == (4, 2, 1, 1)
        assert run_status(run) == TestStatus.FAILED

    def test_all_skipped(self):
        run = TestRunIngest.from_dict(payload(tests=[record_data(status="skipped")]))
        assert run_status(run) == TestStatus.SKIPPED

    def test_passed(self):
        run = TestRunIngest.from_dict(payload())
        assert run_status(run) == TestStatus.PASSED

    def test_incomplete_run_is_running(self):
        run = TestRunIngest.from_dict(payload(
            tests=[record_data(status="running")], completedAt=None,
        ))
        assert not run.is_complete
        assert run_status(run) == TestStatus.RUNNING

    def test_completed_with_running_tests_is_failed(self):
        run = TestRunIngest.from_dict(payload(tests=[record_data(status="running")]))
        assert run.is_complete
        assert run_status(run) == TestStatus.FAILED


class TestIngest:
    """IngestionService.ingest()."""

    def test_records_history(self, service, history_store):
        result = service.ingest(TestRunIngest.from_dict(payload()))
        assert result.project_id == "web-app"
        assert result.recorded == 1
        assert result.status == TestStatus.PASSED

        (entry,) = history_store.for_project("web-app")
        assert entry.test_name == "does X"
        assert entry.file == "src/a.test.ts"
        assert entry.duration_ms == 120
        assert entry.run_id == result.run_id
        assert entry.recorded_at == datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc)

    def test_explicit_project_id(self, service):
        result = service.ingest(TestRunIngest.from_dict(payload(projectId="p-42")))
        assert result.project_id == "p-42"

    def test_every_test_gets_a_fresh_id(self, service, history_store):
        run = TestRunIngest.from_dict(payload(tests=[record_data(), record_data()]))
        service.ingest(run)
        service.ingest(run)
        ids = [e.test_id for e in history_store.for_project("web-app")]
        assert len(ids) == len(set(ids)) == 4

    def test_running_tests_on_completed_run_become_failed(self, service, history_store):
        run = TestRunIngest.from_dict(payload(tests=[
            record_data("hung", "running"),
            record_data("own error", "running", error="killed"),
        ]))
        result = service.ingest(run)
        assert result.converted_running == 2
        hung, own = history_store.for_project("web-app")
        assert hung.status == TestStatus.FAILED
        assert hung.error == INCOMPLETE_TEST_ERROR
        assert own.error == "killed"

    def test_running_tests_on_incomplete_run_are_kept(self, service, history_store):
        run = TestRunIngest.from_dict(payload(
            tests=[record_data(status="running"), record_data("b", "passed")], completedAt=None,
        ))
        result = service.ingest(run)
        assert result.status == TestStatus.RUNNING
        assert result.converted_running == 0
        assert history_store.for_project("web-app")[0].status == TestStatus.RUNNING

    def test_raw_log_outcomes_are_added(self, service, history_store):
        run = TestRunIngest.from_dict(payload(tests=[]))
        result = service.ingest(run, raw_log=JOB_LOG)
        assert result.from_log == 2
        assert result.recorded == 2
        assert result.status == TestStatus.FAILED
        passed, failed = history_store.for_project("web-app")
        assert (passed.test_name, passed.duration_ms) == ("does X", 120)
        assert (failed.test_name, failed.duration_ms) == ("does Y", 0)
        assert failed.error == "Error: boom\nat src/a.test.ts:20:5"
        assert run.tests == []


class TestServiceAnomalies:
    """Detection, listing, resolving and insights through the service."""

    def _ingest_flaky(self, service):
        for status in ["passed"] * 6 + ["failed"] * 4:
            service.ingest(TestRunIngest.from_dict(payload(tests=[record_data(status=status)])))

    def test_detection_runs_once_per_anomaly(self, service, anomaly_store):
        self._ingest_flaky(service)
        first = service.run_detection("web-app")
        second = service.run_detection("web-app")
        assert [(a.type, a.severity) for a in first.inserted] == [
            (AnomalyType.FLAKY, Severity.MEDIUM),
        ]
        assert second.inserted == []
        assert len(anomaly_store) == 1

    def test_resolve_and_list(self, service):
        self._ingest_flaky(service)
        anomaly = service.run_detection("web-app").inserted[0]
        assert service.list_anomalies(AnomalyFilter(resolved=False)) == [anomaly]

        service.resolve_anomaly(anomaly.id)
        assert service.list_anomalies(AnomalyFilter(resolved=False)) == []
        assert len(service.run_detection("web-app").inserted) == 1

    def test_history_limit(self, history_store, anomaly_store, detector):
        settings = Settings(history_limit=5)
        service = IngestionService(history_store, anomaly_store, detector=detector, settings=settings)
        self._ingest_flaky(service)
        # only the first five (all passing) runs are read
        assert service.run_detection("web-app").candidates == []

    def test_attach_insights(self, service):
        self._ingest_flaky(service)
        anomaly = service.run_detection("web-app").inserted[0]
        updated = service.attach_insights(
            anomaly.id, "Timing issue", root_cause="race", confidence="high",
        )
        assert updated.insights == "Timing issue"
        assert updated.root_cause == "race"
        assert updated.suggested_fix is None
        assert updated.confidence == 0.8

    def test_unknown_anomaly(self, service):
        with pytest.raises(AnomalyNotFoundError):
            service.resolve_anomaly("missing")


class TestHelpers:
    """normalize_confidence() and slugify()."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            (0.7, 0.7),
            (1.5, 1.0),
            (-2, 0.0),
            ("high", 0.8),
            ("medium", 0.5),
            ("LOW", 0.2),
            ("certain", 0.5),
            (None, 0.5),
        ],
    )
    def test_normalize_confidence(self, value, expected):
        assert normalize_confidence(value) == expected

    def test_slugify(self):
        assert slugify("Web App") == "web-app"
        assert slugify("  API / v2 ") == "api-v2"
        assert slugify("!!!") == "project"
