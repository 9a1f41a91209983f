"""
CI log parsing for testlens.

Two passes over raw CI output:

- ``split_into_steps`` cuts a full job log into named steps using the
  ``##[group]`` / ``##[endgroup]`` markers CI runners emit.
- ``extract_test_outcomes`` scans one step's text for Vitest, Jest and
  Playwright result lines and turns them into ``TestOutcome`` records,
  collecting error evidence for failures along the way.

Both functions are pure and re-entrant.
"""

import logging
import re
from enum import Enum
from typing import List, Optional, Tuple

from .durations import parse_duration
from .models import LogStep, TestOutcome, TestStatus

logger = logging.getLogger(__name__)


GROUP_START = "##[group]"
GROUP_END = "##[endgroup]"
ANNOTATION_PREFIXES = (
    "##[command]",
    "##[error]",
    "##[warning]",
    "##[notice]",
    "##[debug]",
)
DEFAULT_STEP_NAME = "All Steps"

NAME_SEPARATOR = " > "

# GitHub Actions prefixes raw job log lines with an ISO-8601 timestamp
_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?Z?\s?")
_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

_DURATION_SUFFIX = r"(?:\s+\((\d+(?:\.\d+)?(?:ms|s|m))\))?\s*$"

_MARKERS: List[Tuple["re.Pattern[str]", TestStatus]] = [
    (re.compile(r"^\s*PASS\s+(.+?)" + _DURATION_SUFFIX), TestStatus.PASSED),
    (re.compile(r"^\s*FAIL\s+(.+?)" + _DURATION_SUFFIX), TestStatus.FAILED),
    (re.compile(r"^\s*SKIP\s+(.+?)" + _DURATION_SUFFIX), TestStatus.SKIPPED),
    (re.compile(r"^\s*[✓✔]\s+(.+?)" + _DURATION_SUFFIX), TestStatus.PASSED),
    (re.compile(r"^\s*[×✕✗✘]\s+(.+?)" + _DURATION_SUFFIX), TestStatus.FAILED),
]

_ERROR_MARKERS = ("Error:", "AssertionError", "TypeError", "ReferenceError")
_STACK_FRAME_RE = re.compile(r"^\s*at ")
_FILE_REF_RE = re.compile(
    r"\b(?:at|in)\s+\(?([^\s()]+?\.(?:tsx|ts|jsx|js))(?::(\d+))?(?![\w.])"
)


class ScanState(Enum):
    """State of the outcome scanner between lines."""
    IDLE = "idle"
    CAPTURING_ERROR = "capturing_error"


def _lines(text: str) -> List[str]:
    return [line.rstrip("\r") for line in text.split("\n")]


def strip_annotation(line: str) -> str:
    """Remove a leading ``##[command]``-style annotation from a log line."""
    for prefix in ANNOTATION_PREFIXES:
        if line.startswith(prefix):
            return line[len(prefix):]
    return line


def split_into_steps(raw_log: str, strip_timestamps: bool = False) -> List[LogStep]:
    """
    Split a raw job log into named steps.

    A ``##[group]<name>`` line opens a step and ``##[endgroup]`` closes it.
    A new group start also closes a step left open by a malformed log.
    Step numbers count group starts, so an unterminated trailing step keeps
    the number it was given when it opened.

    If the log has no group markers at all, the whole log comes back as a
    single step named ``"All Steps"``.

    Args:
        raw_log: Full job log text
        strip_timestamps: Drop a leading ISO-8601 timestamp from every line
            before looking for markers

    Returns:
        Steps in the order they appear in the log (empty for empty input)
    """
    if not raw_log:
        return []

    steps: List[LogStep] = []
    ungrouped: List[str] = []
    buffer: List[str] = []
    current_name: Optional[str] = None
    current_number = 0
    group_starts = 0

    for line in _lines(raw_log):
        if strip_timestamps:
            line = _TIMESTAMP_RE.sub("", line, count=1)

        if line.startswith(GROUP_START):
            if current_name is not None:
                steps.append(LogStep(current_name, current_number, "\n".join(buffer)))
            group_starts += 1
            current_number = group_starts
            current_name = line[len(GROUP_START):].strip() or f"Step {group_starts}"
            buffer = []
        elif line.startswith(GROUP_END):
            if current_name is not None:
                steps.append(LogStep(current_name, current_number, "\n".join(buffer)))
                current_name = None
                buffer = []
        elif current_name is not None:
            buffer.append(strip_annotation(line))
        elif group_starts == 0:
            ungrouped.append(strip_annotation(line))

    if current_name is not None:
        steps.append(LogStep(current_name, current_number, "\n".join(buffer)))

    if group_starts == 0:
        return [LogStep(DEFAULT_STEP_NAME, 1, "\n".join(ungrouped))]

    logger.debug("Split job log into %d steps", len(steps))
    return steps


def _split_name(raw: str) -> Tuple[Optional[str], str]:
    """Split ``file > suite > test`` names into (file, test)."""
    raw = raw.strip()
    if NAME_SEPARATOR in raw:
        parts = [part.strip() for part in raw.split(NAME_SEPARATOR)]
        return (parts[0] or None), parts[-1]
    return None, raw


def _match_marker(line: str) -> Optional[TestOutcome]:
    for pattern, status in _MARKERS:
        match = pattern.match(line)
        if not match:
            continue
        file, test_name = _split_name(match.group(1))
        token = match.group(2)
        return TestOutcome(
            test_name=test_name,
            status=status,
            file=file,
            duration=parse_duration(token) if token else None,
        )
    return None


def _is_error_evidence(line: str) -> bool:
    if _STACK_FRAME_RE.match(line):
        return True
    return any(marker in line for marker in _ERROR_MARKERS)


class OutcomeScanner:
    """
    Line-at-a-time state machine behind ``extract_test_outcomes``.

    Holds at most one outcome in progress. A marker line flushes it and
    starts the next one; while the pending outcome is a failure the scanner
    is in ``CAPTURING_ERROR`` and keeps lines that look like error evidence.

    Example:
        scanner = OutcomeScanner()
        for line in text.split("\\n"):
            scanner.feed(line)
        outcomes = scanner.finish()
    """

    def __init__(self) -> None:
        self.state = ScanState.IDLE
        self.outcomes: List[TestOutcome] = []
        self._current: Optional[TestOutcome] = None
        self._error_lines: List[str] = []

    @property
    def current(self) -> Optional[TestOutcome]:
        """The outcome still being built, if any."""
        return self._current

    def feed(self, line: str) -> None:
        """Consume one line of log text."""
        line = _ANSI_RE.sub("", line)

        outcome = _match_marker(line)
        if outcome is not None:
            self._flush()
            self._current = outcome
            if outcome.status == TestStatus.FAILED:
                self.state = ScanState.CAPTURING_ERROR
            else:
                self.state = ScanState.IDLE
        elif self.state is ScanState.CAPTURING_ERROR and _is_error_evidence(line):
            self._error_lines.append(line.strip())

        if self._current is not None and self._current.file is None:
            self._attach_file_reference(line)

    def finish(self) -> List[TestOutcome]:
        """Flush the pending outcome and return everything collected."""
        self._flush()
        self.state = ScanState.IDLE
        return self.outcomes

    def _attach_file_reference(self, line: str) -> None:
        match = _FILE_REF_RE.search(line)
        if not match:
            return
        self._current.file = match.group(1)
        if match.group(2):
            self._current.line = int(match.group(2))

    def _flush(self) -> None:
        if self._current is None:
            return
        if self._current.status == TestStatus.FAILED and self._error_lines:
            # error and error_details carry the same text
            text = "\n".join(self._error_lines)
            self._current.error = text
            self._current.error_details = text
        self.outcomes.append(self._current)
        self._current = None
        self._error_lines = []


def extract_test_outcomes(log_text: str) -> List[TestOutcome]:
    """
    Extract test outcomes from one step's log text.

    Recognises, in the same scan:
        PASS  <name> (120ms)     FAIL  <name>     SKIP  <name>
        ✓ <name> (1.5s)          × <name> (2m)

    Names of the form ``file > suite > test`` are split into file and test
    name. Lines that never match a marker are either kept as error context
    for a failed test or ignored.
    """
    if not log_text:
        return []

    scanner = OutcomeScanner()
    for line in _lines(log_text):
        scanner.feed(line)
    outcomes = scanner.finish()

    logger.debug(
        "Extracted %d outcomes (%d failed)",
        len(outcomes),
        sum(1 for o in outcomes if o.status == TestStatus.FAILED),
    )
    return outcomes


def parse_job_log(raw_log: str, strip_timestamps: bool = False) -> List[LogStep]:
    """Entry point for CI sync: split a fetched job log into steps."""
    return split_into_steps(raw_log, strip_timestamps=strip_timestamps)


def parse_step_log(log_text: str) -> List[TestOutcome]:
    """Entry point for CI sync: outcomes for one step's log text."""
    return extract_test_outcomes(log_text)


def parse_job_outcomes(
    raw_log: str,
    strip_timestamps: bool = False,
) -> List[Tuple[LogStep, List[TestOutcome]]]:
    """Split a job log and extract outcomes for every step."""
    return [
        (step, extract_test_outcomes(step.log_text))
        for step in split_into_steps(raw_log, strip_timestamps=strip_timestamps)
    ]
