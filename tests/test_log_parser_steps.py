"""
Test splitting raw CI job logs into steps.

Covers:
- Named groups become numbered steps
- Annotation prefixes are stripped inside steps
- A new group start implicitly closes an open step
- Unterminated trailing step keeps its number
- Logs without group markers become a single "All Steps" step
- Empty input, empty group names, CRLF line endings
- Optional timestamp stripping
"""

from __future__ import annotations

from conftest import JOB_LOG

from testlens.log_parser import (
    DEFAULT_STEP_NAME,
    parse_job_log,
    split_into_steps,
    strip_annotation,
)


class TestGroupedLogs:
    """Logs with ##[group] / ##[endgroup] markers."""

    def test_steps_are_named_and_numbered(self):
        steps = split_into_steps(JOB_LOG)
        assert [(s.name, s.step_number) for s in steps] == [
            ("Set up job", 1),
            ("Install dependencies", 2),
            ("Run unit tests", 3),
        ]

    def test_annotations_are_stripped(self):
        steps = split_into_steps(JOB_LOG)
        assert steps[1].log_text == "npm ci\nadded 812 packages in 14s"
        assert "##[" not in steps[2].log_text
        assert steps[2].log_text.endswith("Process completed with exit code 1.")

    def test_implicit_close_on_new_group(self):
        log = "##[group]A\na1\n##[group]B\nb1\n##[endgroup]"
        steps = split_into_steps(log)
        assert [(s.name, s.step_number, s.log_text) for s in steps] == [
            ("A", 1, "a1"),
            ("B", 2, "b1"),
        ]

    def test_unterminated_trailing_step(self):
        log = "##[group]A\na\n##[endgroup]\n##[group]B\nb1\nb2"
        steps = split_into_steps(log)
        assert steps[-1].name == "B"
        assert steps[-1].step_number == 2
        assert steps[-1].log_text == "b1\nb2"

    def test_lines_outside_groups_are_dropped(self):
        log = "preamble\n##[group]A\na\n##[endgroup]\nbetween\n##[group]B\nb\n##[endgroup]"
        steps = split_into_steps(log)
        assert [s.log_text for s in steps] == ["a", "b"]

    def test_group_name_is_trimmed(self):
        steps = split_into_steps("##[group]  Build  \nx\n##[endgroup]")
        assert steps[0].name == "Build"

    def test_empty_group_name(self):
        steps = split_into_steps("##[group]A\n##[endgroup]\n##[group]\nx\n##[endgroup]")
        assert steps[1].name == "Step 2"

    def test_crlf_line_endings(self):
        steps = split_into_steps("##[group]A\r\nline one\r\nline two\r\n##[endgroup]\r\n")
        assert steps[0].name == "A"
        assert steps[0].log_text == "line one\nline two"


class TestUngroupedLogs:
    """Logs without any group markers."""

    def test_single_default_step(self):
        steps = split_into_steps("##[command]npm test\n PASS  a.test.ts (5ms)")
        assert len(steps) == 1
        assert steps[0].name == DEFAULT_STEP_NAME == "All Steps"
        assert steps[0].step_number == 1
        assert steps[0].log_text == "npm test\n PASS  a.test.ts (5ms)"

    def test_empty_input(self):
        assert split_into_steps("") == []

    def test_step_numbers_are_sequential(self):
        log = "\n".join(f"##[group]S{i}\nx\n##[endgroup]" for i in range(1, 6))
        assert [s.step_number for s in split_into_steps(log)] == [1, 2, 3, 4, 5]


class TestTimestamps:
    """GitHub Actions raw logs prefix every line with a timestamp."""

    LOG = (
        "2026-03-01T12:00:00.1234567Z ##[group]Run tests\n"
        "2026-03-01T12:00:01.0000000Z  PASS  a.test.ts (5ms)\n"
        "2026-03-01T12:00:02.0000000Z ##[endgroup]\n"
    )

    def test_markers_found_after_stripping(self):
        steps = split_into_steps(self.LOG, strip_timestamps=True)
        assert [s.name for s in steps] == ["Run tests"]
        assert steps[0].log_text == " PASS  a.test.ts (5ms)"

    def test_timestamps_kept_by_default(self):
        steps = split_into_steps(self.LOG)
        assert [s.name for s in steps] == [DEFAULT_STEP_NAME]


class TestHelpers:
    """Small helpers and entry points."""

    def test_strip_annotation(self):
        assert strip_annotation("##[warning]careful") == "careful"
        assert strip_annotation("##[debug]x") == "x"
        assert strip_annotation("plain") == "plain"

    def test_parse_job_log_matches_split(self):
        assert parse_job_log(JOB_LOG) == split_into_steps(JOB_LOG)

    def test_deterministic(self):
        assert split_into_steps(JOB_LOG) == split_into_steps(JOB_LOG)
