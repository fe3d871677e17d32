"""Loop detection over recent step traces.

The engine records one ``StepTrace`` per tool attempt and keeps the last
``MAX_TRACES`` of them. ``detect_loop_pattern`` looks for:

- ``repeat-same-step``: the last three traces share a title.
- ``alternate-two-steps``: the last four traces alternate A, B, A, B.
- ``same-url-failures``: the last three traces stayed on one URL with at least
  two failures.
- ``identical-failure``: the last two traces failed with the same tool, URL
  and error.

``LoopGuard`` turns consecutive signals into a streak with exponential
backoff and a review cooldown.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from pydantic import Field

from ..schemas.base import BaseSchema
from ..schemas.domain import StepStatus

MAX_TRACES = 6
REVIEW_COOLDOWN = 2


@dataclass(frozen=True)
class StepTrace:
    title: str
    status: StepStatus
    tool: Optional[str] = None
    url: Optional[str] = None
    error: Optional[str] = None


class LoopSignal(BaseSchema):
    reason: str
    pattern: str
    titles: List[str] = Field(default_factory=list)
    urls: List[Optional[str]] = Field(default_factory=list)
    statuses: List[StepStatus] = Field(default_factory=list)


def record_trace(traces: Sequence[StepTrace], trace: StepTrace) -> List[StepTrace]:
    """Append ``trace`` and keep only the most recent ``MAX_TRACES``."""
    return [*traces, trace][-MAX_TRACES:]


def _signal(pattern: str, reason: str, window: Sequence[StepTrace]) -> LoopSignal:
    return LoopSignal(
        reason=reason,
        pattern=pattern,
        titles=[t.title for t in window],
        urls=[t.url for t in window],
        statuses=[t.status for t in window],
    )


def detect_loop_pattern(traces: Sequence[StepTrace]) -> Optional[LoopSignal]:
    recent = list(traces)[-MAX_TRACES:]
    if len(recent) >= 3:
        last_three = recent[-3:]
        if len({t.title.lower() for t in last_three}) == 1:
            return _signal("repeat-same-step", "Repeated the same step multiple times.", last_three)

        if len(recent) >= 4:
            last_four = recent[-4:]
            a, b, c, d = (t.title.lower() for t in last_four)
            if a == c and b == d and a != b:
                return _signal("alternate-two-steps", "Alternating between the same two steps.", last_four)

        first_url = last_three[0].url
        failures = sum(1 for t in last_three if t.status == StepStatus.failed)
        if first_url and all(t.url == first_url for t in last_three) and failures >= 2:
            return _signal("same-url-failures", "Repeated failures on the same URL.", last_three)

    if len(recent) >= 2:
        prev, last = recent[-2:]
        if (
            prev.status == StepStatus.failed
            and last.status == StepStatus.failed
            and last.error
            and (prev.tool, prev.url, prev.error) == (last.tool, last.url, last.error)
        ):
            return _signal("identical-failure", "The same failure happened twice in a row.", [prev, last])
    return None


class LoopGuard:
    """Streak, backoff and cooldown bookkeeping for one engine invocation."""

    def __init__(self, *, threshold: int, backoff_base_ms: int, backoff_max_ms: int) -> None:
        self.threshold = threshold
        self.backoff_base_ms = max(0, backoff_base_ms)
        self.backoff_max_ms = max(self.backoff_base_ms, backoff_max_ms)
        self.streak = 0
        self.cooldown = 0
        self.backoff_ms = 0

    def observe(self, signal: Optional[LoopSignal]) -> bool:
        """Account for one attempt; True when the guard trips.

        A missing signal resets the streak and the backoff. A tripped guard
        doubles the backoff (starting at the base, capped at the maximum).
        """
        self.cooldown = max(0, self.cooldown - 1)
        if signal is None:
            self.streak = 0
            self.backoff_ms = 0
            return False
        self.streak += 1
        if self.streak < self.threshold:
            return False
        self.backoff_ms = min(self.backoff_ms * 2, self.backoff_max_ms) if self.backoff_ms else self.backoff_base_ms
        return True

    @property
    def can_review(self) -> bool:
        return self.cooldown == 0

    def reviewed(self) -> None:
        self.cooldown = REVIEW_COOLDOWN
