"""Heuristic classification of agent output.

Each call to ``ResponseAnalyzer.analyze`` inspects one iteration's combined
stdout/stderr and reports:

- the RALPH_STATUS block, if the agent emitted one;
- whether a completion phrase appeared, and how many iterations in a row did;
- whether the iteration only ran tests without implementing anything;
- a provider rate limit, with the reset time when the text states one.

Only the two consecutive-match counters carry over between calls and drive
decisions. The per-call results are kept as an append-only audit history.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ralph_controller.constants import (
    COMPLETION_SIGNAL_THRESHOLD,
    EXIT_CONFIDENCE_THRESHOLD,
    STATUS_BLOCK_END,
    STATUS_BLOCK_START,
    TEST_ONLY_LOOP_THRESHOLD,
)
from ralph_controller.models.analysis import (
    AnalysisResult,
    ProviderRateLimitInfo,
    RalphStatus,
)
from ralph_controller.models.loop import IterationResult

logger = logging.getLogger(__name__)


# Project-level completion phrases (regex, case-insensitive)
COMPLETION_PATTERNS = [
    # Explicit completion phrases
    r"all tasks complete",
    r"all tasks have been completed",
    r"all tasks are complete",
    r"project is complete",
    r"implementation is complete",
    r"all items done",
    r"nothing left to do",
    # Task tracking signals
    r"no remaining tasks",
    r"no more tasks",
    r"no remaining unchecked",
    r"no unchecked tasks",
    r"no incomplete tasks",
    r"all tasks.*checked",
    r"all items.*checked",
    # Requests for new work mean the current work is done
    r"please add a new task",
    r"add a new task to",
    r"add new tasks",
    r"waiting for.*new.*task",
    r"ready for.*next.*task",
    # Status block markers
    r"EXIT_SIGNAL:\s*true",
    r"RALPH_STATUS.*COMPLETE",
]

TEST_PATTERNS = [
    r"npm test",
    r"dotnet test",
    r"pytest",
    r"jest",
    r"running tests",
    r"test passed",
    r"test failed",
    r"all tests pass",
]

IMPLEMENTATION_PATTERNS = [
    r"created",
    r"implemented",
    r"added",
    r"modified",
    r"updated",
    r"wrote",
    r"built",
    r"fixed",
    r"refactored",
]

RATE_LIMIT_PATTERN = (
    r"\b(hit|reached)\s+(your\s+)?(rate\s+)?limit\b"
    r"|\brate\s+limit\b"
    r"|\bquota\s+exceeded\b"
    r"|\b(have\s+)?no\s+quota\b"
    r"|\b402\b.*quota"
)

# "resets in 2 hours", "resets in 45 min"
RESET_IN_PATTERN = (
    r"resets\s+in\s+(?P<value>\d+)\s*(?P<unit>hours?|hrs?|h|minutes?|mins?|m)\b"
)

# "resets 3pm", "resets 3:00 pm (America/New_York)", "resets 15:30"
RESET_AT_PATTERN = (
    r"resets\s+(?:at\s+)?(?P<time>\d{1,2}(?::\d{2})?\s*(?:am|pm)|\d{1,2}:\d{2})"
    r"\s*(?:\((?P<tz>[^)]+)\))?"
)

STATUS_BLOCK_PATTERN = re.escape(STATUS_BLOCK_START) + r"\s*(.*?)\s*" + re.escape(STATUS_BLOCK_END)

# Points added to the confidence score
SCORE_COMPLETION_SIGNAL = 25
SCORE_STATUS_COMPLETE = 40
SCORE_EXIT_SIGNAL = 30
SCORE_REPEATED_SIGNAL = 25


@dataclass(frozen=True)
class SignalPatterns:
    """Keyword tables used for classification. Swap to tune detection."""

    completion: Tuple[str, ...] = tuple(COMPLETION_PATTERNS)
    test: Tuple[str, ...] = tuple(TEST_PATTERNS)
    implementation: Tuple[str, ...] = tuple(IMPLEMENTATION_PATTERNS)
    rate_limit: str = RATE_LIMIT_PATTERN


DEFAULT_PATTERNS = SignalPatterns()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def extract_ralph_status(output: str) -> Optional[RalphStatus]:
    """Parse the ---RALPH_STATUS--- block. Fields are read independently."""
    match = re.search(STATUS_BLOCK_PATTERN, output, re.IGNORECASE | re.DOTALL)
    if not match:
        return None

    block = match.group(1)
    status = RalphStatus()

    m = re.search(r"^\s*STATUS:\s*(\w+)", block, re.IGNORECASE | re.MULTILINE)
    if m:
        status.status = m.group(1).upper()

    m = re.search(r"EXIT_SIGNAL:\s*(true|false)", block, re.IGNORECASE)
    if m:
        status.exit_signal = m.group(1).lower() == "true"

    m = re.search(r"TASKS_COMPLETED:\s*(\d+)", block, re.IGNORECASE)
    if m:
        status.tasks_completed = int(m.group(1))

    m = re.search(r"FILES_MODIFIED:\s*(\d+)", block, re.IGNORECASE)
    if m:
        status.files_modified = int(m.group(1))

    m = re.search(r"TESTS_PASSED:\s*(true|false|\d+)", block, re.IGNORECASE)
    if m:
        value = m.group(1).lower()
        status.tests_passed = value == "true" or (value.isdigit() and int(value) > 0)

    m = re.search(r"NEXT_STEP:\s*(.+?)(?:\n|$)", block, re.IGNORECASE)
    if m:
        status.next_step = m.group(1).strip()

    return status


def _parse_time_of_day(text: str) -> Optional[Tuple[int, int]]:
    m = re.fullmatch(r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?", text.strip(), re.IGNORECASE)
    if not m:
        return None
    hour = int(m.group(1))
    minute = int(m.group(2) or 0)
    meridiem = (m.group(3) or "").lower()
    if minute > 59:
        return None
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    elif m.group(2) is None or hour > 23:
        return None
    return hour, minute


def _resolve_timezone(name: Optional[str]) -> tzinfo:
    if name:
        try:
            return ZoneInfo(name.strip())
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown time zone '{name}', using local time")
    return datetime.now().astimezone().tzinfo or timezone.utc


def parse_reset_time(output: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Work out when a provider rate limit lifts, if the text says.

    A relative "resets in N hours/minutes" wins over a wall-clock
    "resets 3:00pm (Zone)"; the latter resolves to the next future
    occurrence of that time in the named (or local) zone.
    """
    now = now or _utcnow()

    m = re.search(RESET_IN_PATTERN, output, re.IGNORECASE)
    if m:
        value = int(m.group("value"))
        unit = m.group("unit").lower()
        delta = timedelta(hours=value) if unit.startswith("h") else timedelta(minutes=value)
        return now + delta

    m = re.search(RESET_AT_PATTERN, output, re.IGNORECASE)
    if not m:
        return None

    time_of_day = _parse_time_of_day(m.group("time"))
    if time_of_day is None:
        return None

    tz = _resolve_timezone(m.group("tz"))
    now_in_tz = now.astimezone(tz)
    candidate = now_in_tz.replace(
        hour=time_of_day[0], minute=time_of_day[1], second=0, microsecond=0
    )
    if candidate <= now_in_tz:
        candidate += timedelta(days=1)
    return candidate


def detect_rate_limit(
    output: str,
    now: Optional[datetime] = None,
    pattern: str = RATE_LIMIT_PATTERN,
) -> Optional[ProviderRateLimitInfo]:
    """Return rate-limit details if the output reports a provider limit."""
    if not re.search(pattern, output, re.IGNORECASE):
        return None

    message = None
    for line in output.split("\n"):
        if re.search(pattern, line, re.IGNORECASE):
            message = line.strip()
            break

    return ProviderRateLimitInfo(reset_at=parse_reset_time(output, now), message=message)


class ResponseAnalyzer:
    """Stateful wrapper around the classifiers: keeps the consecutive counters."""

    def __init__(
        self,
        completion_signal_threshold: int = COMPLETION_SIGNAL_THRESHOLD,
        test_only_loop_threshold: int = TEST_ONLY_LOOP_THRESHOLD,
        patterns: SignalPatterns = DEFAULT_PATTERNS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.completion_signal_threshold = completion_signal_threshold
        self.test_only_loop_threshold = test_only_loop_threshold
        self.patterns = patterns
        self._clock = clock
        self._history: List[AnalysisResult] = []
        self._completion_signal_count = 0
        self._test_only_loop_count = 0

    @property
    def completion_signal_count(self) -> int:
        return self._completion_signal_count

    @property
    def test_only_loop_count(self) -> int:
        return self._test_only_loop_count

    @property
    def history(self) -> Tuple[AnalysisResult, ...]:
        return tuple(self._history)

    def analyze(self, result: IterationResult) -> AnalysisResult:
        output = result.combined_output
        now = self._clock()
        analysis = AnalysisResult(timestamp=now, success=result.success, output_length=len(output))

        analysis.ralph_status = extract_ralph_status(output)

        analysis.has_completion_signal = self.detect_completion_signal(output)
        if analysis.has_completion_signal:
            self._completion_signal_count += 1
        else:
            self._completion_signal_count = 0

        analysis.is_test_only_loop = self.detect_test_only_loop(output)
        if analysis.is_test_only_loop:
            self._test_only_loop_count += 1
        else:
            self._test_only_loop_count = 0

        analysis.rate_limit = detect_rate_limit(output, now, self.patterns.rate_limit)

        analysis.confidence_score = self._calculate_confidence(analysis)
        analysis.exit_reason = self._exit_reason(analysis)
        analysis.should_exit = analysis.exit_reason is not None

        if analysis.should_exit:
            logger.info(f"Exit condition met: {analysis.exit_reason}")

        self._history.append(analysis)
        return analysis

    def detect_completion_signal(self, output: str) -> bool:
        return any(re.search(p, output, re.IGNORECASE) for p in self.patterns.completion)

    def detect_test_only_loop(self, output: str) -> bool:
        test_count = sum(len(re.findall(p, output, re.IGNORECASE)) for p in self.patterns.test)
        impl_count = sum(
            len(re.findall(p, output, re.IGNORECASE)) for p in self.patterns.implementation
        )
        return test_count > 3 and impl_count == 0

    def reset(self) -> None:
        self._history.clear()
        self._completion_signal_count = 0
        self._test_only_loop_count = 0

    def _calculate_confidence(self, analysis: AnalysisResult) -> int:
        score = 0
        status = analysis.ralph_status
        if analysis.has_completion_signal:
            score += SCORE_COMPLETION_SIGNAL
        if status is not None and status.is_complete:
            score += SCORE_STATUS_COMPLETE
        if status is not None and status.exit_signal is True:
            score += SCORE_EXIT_SIGNAL
        if self._completion_signal_count >= 2:
            score += SCORE_REPEATED_SIGNAL
        return min(score, 100)

    def _exit_reason(self, analysis: AnalysisResult) -> Optional[str]:
        """Reason for exiting, checked in priority order; None to keep going."""
        if self._completion_signal_count >= self.completion_signal_threshold:
            return f"Completion signal detected {self._completion_signal_count} times"

        if self._test_only_loop_count >= self.test_only_loop_threshold:
            return f"Test-only loop detected {self._test_only_loop_count} consecutive times"

        status = analysis.ralph_status
        if status is not None and status.is_complete and status.exit_signal is True:
            return "RALPH_STATUS reported COMPLETE with EXIT_SIGNAL"

        if analysis.confidence_score >= EXIT_CONFIDENCE_THRESHOLD:
            return f"High confidence score: {analysis.confidence_score}"

        return None
