"""
agent/budget.py — Per-Turn Budget Tracker

Bounds one turn's tool usage by wall-clock seconds and tokens.

Every step is checked BEFORE it is dispatched: check_and_reserve() either
returns a Reservation or raises BudgetExceeded. When the step finishes,
record() converts the reservation into actual usage. Nothing is ever rolled
back; exceeding the budget only stops new work from starting.

Seconds are wall-clock since begin(). Concurrent steps overlap in time, so
outstanding second reservations combine by max; tokens add up.

Usage:
    tracker = BudgetTracker()
    budget = tracker.begin(BudgetLimits(seconds=60, tokens=32_000))
    reservation = tracker.check_and_reserve(budget, 6.0, 3_000)
    ...
    tracker.record(budget, reservation, elapsed, tokens)
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from digitalse.exceptions import BudgetExceeded
from digitalse.observability.logger import get_logger

log = get_logger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class BudgetLimits:
    seconds: float = 60.0
    tokens: int = 32_000

    @classmethod
    def from_settings(cls, settings) -> "BudgetLimits":
        return cls(seconds=settings.budget.seconds, tokens=settings.budget.tokens)


@dataclass
class Reservation:
    id: int
    seconds: float
    tokens: int
    step_index: Optional[int] = None
    released: bool = False


@dataclass
class Budget:
    seconds_limit: float
    token_limit: int
    started_at: float
    clock: Clock
    tokens_used: int = 0
    step_seconds: float = 0.0       # sum of per-step actuals, for reporting
    outstanding: dict[int, Reservation] = field(default_factory=dict)
    refusals: int = 0

    @property
    def seconds_used(self) -> float:
        return max(0.0, self.clock() - self.started_at)

    @property
    def outstanding_seconds(self) -> float:
        return max((r.seconds for r in self.outstanding.values()), default=0.0)

    @property
    def outstanding_tokens(self) -> int:
        return sum(r.tokens for r in self.outstanding.values())

    def snapshot(self) -> dict:
        return {
            "seconds_used": round(self.seconds_used, 3),
            "seconds_limit": self.seconds_limit,
            "tokens_used": self.tokens_used,
            "token_limit": self.token_limit,
            "outstanding": len(self.outstanding),
        }


class BudgetTracker:
    """
    Stateless over budgets: every method takes the Budget it operates on,
    so one tracker serves every session.
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._ids = itertools.count(1)

    def begin(self, limits: BudgetLimits) -> Budget:
        return Budget(
            seconds_limit=limits.seconds,
            token_limit=limits.tokens,
            started_at=self._clock(),
            clock=self._clock,
        )

    def check_and_reserve(
        self,
        budget: Budget,
        est_seconds: float,
        est_tokens: int,
        step_index: Optional[int] = None,
    ) -> Reservation:
        """
        Reserve an estimated cost or raise BudgetExceeded.

        Checks:
          elapsed + max(outstanding seconds, est_seconds) <= seconds_limit
          tokens_used + outstanding tokens + est_tokens  <= token_limit
        """
        elapsed = budget.seconds_used
        projected_seconds = elapsed + max(budget.outstanding_seconds, est_seconds)
        if projected_seconds > budget.seconds_limit:
            self._refuse(budget, step_index)
            raise BudgetExceeded(
                f"Step needs ~{est_seconds:g}s but only "
                f"{self.remaining_seconds(budget):.1f}s of the turn remain",
                dimension="seconds",
                requested=est_seconds,
                remaining=self.remaining_seconds(budget),
            )

        projected_tokens = budget.tokens_used + budget.outstanding_tokens + est_tokens
        if projected_tokens > budget.token_limit:
            self._refuse(budget, step_index)
            remaining = budget.token_limit - budget.tokens_used - budget.outstanding_tokens
            raise BudgetExceeded(
                f"Step needs ~{est_tokens} tokens but only {max(0, remaining)} remain",
                dimension="tokens",
                requested=est_tokens,
                remaining=max(0, remaining),
            )

        reservation = Reservation(
            id=next(self._ids),
            seconds=est_seconds,
            tokens=est_tokens,
            step_index=step_index,
        )
        budget.outstanding[reservation.id] = reservation
        log.debug(
            "budget.reserved",
            step=step_index,
            seconds=est_seconds,
            tokens=est_tokens,
            elapsed=round(elapsed, 3),
        )
        return reservation

    def record(
        self,
        budget: Budget,
        reservation: Reservation,
        actual_seconds: float,
        actual_tokens: int,
    ) -> None:
        """Release the reservation and charge the actual usage."""
        if reservation.released:
            return
        budget.outstanding.pop(reservation.id, None)
        reservation.released = True
        budget.tokens_used += max(0, actual_tokens)
        budget.step_seconds += max(0.0, actual_seconds)
        log.debug(
            "budget.recorded",
            step=reservation.step_index,
            seconds=round(actual_seconds, 3),
            tokens=actual_tokens,
            tokens_used=budget.tokens_used,
        )

    def release(self, budget: Budget, reservation: Reservation) -> None:
        """Drop a reservation whose call never happened."""
        self.record(budget, reservation, 0.0, 0)

    def remaining_seconds(self, budget: Budget) -> float:
        return max(0.0, budget.seconds_limit - budget.seconds_used)

    def remaining_tokens(self, budget: Budget) -> int:
        return max(0, budget.token_limit - budget.tokens_used)

    def is_exhausted(self, budget: Budget) -> bool:
        return self.remaining_seconds(budget) <= 0 or self.remaining_tokens(budget) <= 0

    def _refuse(self, budget: Budget, step_index: Optional[int]) -> None:
        budget.refusals += 1
        log.warning("budget.exceeded", step=step_index, **budget.snapshot())
