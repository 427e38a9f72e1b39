"""Bounded retry schedule used by the command dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class AttemptOutcome(Enum):
    """How a single transmission attempt ended."""

    SUCCESS = "success"
    UNREACHABLE = "unreachable"
    REJECTED = "rejected"
    TRANSIENT = "transient"


class RetryDecision(Enum):
    """What the dispatcher should do after an attempt."""

    DONE = "done"
    RETRY = "retry"
    ABORT = "abort"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Attempt:
    """One attempt of a command: its index and response deadline in seconds."""

    index: int
    deadline: float


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential deadline parameters.

    Attempt ``i`` waits ``timeout * 2**i`` seconds for its response, for
    ``i`` in ``0..retries`` inclusive.
    """

    retries: int = 5
    timeout: float = 0.1

    def __post_init__(self) -> None:
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def deadline(self, index: int) -> float:
        """Calculate the response deadline for the given attempt index."""

        if index < 0 or index > self.retries:
            raise IndexError(f"attempt {index} outside retry budget {self.retries}")
        return self.timeout * (1 << index)

    def attempts(self) -> Tuple[Attempt, ...]:
        return tuple(Attempt(index, self.deadline(index)) for index in range(self.max_attempts))

    def worst_case(self) -> float:
        """Sum of every attempt deadline; no command waits longer for responses."""

        return sum(attempt.deadline for attempt in self.attempts())

    def start(self) -> "RetryState":
        return RetryState(self)


@dataclass
class RetryState:
    """Mutable progress through a :class:`RetryPolicy`."""

    policy: RetryPolicy
    index: int = 0
    decision: Optional[RetryDecision] = None
    history: List[AttemptOutcome] = field(default_factory=list)

    @property
    def current(self) -> Attempt:
        return Attempt(self.index, self.policy.deadline(self.index))

    @property
    def finished(self) -> bool:
        return self.decision is not None and self.decision is not RetryDecision.RETRY

    @property
    def attempts_made(self) -> int:
        return len(self.history)

    def record(self, outcome: AttemptOutcome) -> RetryDecision:
        """Record the outcome of the current attempt and decide the next step."""

        if self.finished:
            raise RuntimeError("retry sequence already finished")
        self.history.append(outcome)
        if outcome is AttemptOutcome.SUCCESS:
            decision = RetryDecision.DONE
        elif outcome is AttemptOutcome.UNREACHABLE:
            decision = RetryDecision.ABORT
        elif outcome is AttemptOutcome.REJECTED:
            decision = RetryDecision.REJECTED
        elif self.index >= self.policy.retries:
            decision = RetryDecision.EXHAUSTED
        else:
            decision = RetryDecision.RETRY
            self.index += 1
        self.decision = decision
        return decision
