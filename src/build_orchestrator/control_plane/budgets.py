"""
Build-level budget envelope.

Tracks wall-clock time and agent cost for one build and decides whether new dispatch
may continue. Exhaustion halts dispatch of new tasks only; in-flight tasks finish and
are gate-checked normally. A limit of ``0`` means unlimited.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from build_orchestrator.domain.models import Build

MonotonicClock = Callable[[], float]


class BudgetAction(StrEnum):
    CONTINUE = "continue"
    STOP = "stop"


@dataclass(frozen=True, slots=True)
class BudgetDecision:
    action: BudgetAction
    reason_codes: tuple[str, ...]
    elapsed_seconds: float
    cost_spent_usd: float
    max_wall_clock_seconds: float
    max_cost_usd: float

    @property
    def should_stop(self) -> bool:
        return self.action is BudgetAction.STOP

    def describe(self) -> str:
        if not self.should_stop:
            return "within budget"
        parts: list[str] = []
        if "wall_clock_exhausted" in self.reason_codes:
            parts.append(
                f"wall-clock budget exhausted ({self.elapsed_seconds:.1f}s of "
                f"{self.max_wall_clock_seconds:.1f}s)"
            )
        if "cost_exhausted" in self.reason_codes:
            parts.append(
                f"cost budget exhausted (${self.cost_spent_usd:.4f} of ${self.max_cost_usd:.4f})"
            )
        return "; ".join(parts)

    def to_dict(self) -> dict[str, object]:
        return {
            "action": self.action.value,
            "reason_codes": list(self.reason_codes),
            "elapsed_seconds": self.elapsed_seconds,
            "cost_spent_usd": self.cost_spent_usd,
            "limits": {
                "max_wall_clock_seconds": self.max_wall_clock_seconds,
                "max_cost_usd": self.max_cost_usd,
            },
        }


class BuildBudget:
    """Wall-clock and cost envelope for one run of a build."""

    def __init__(
        self,
        *,
        max_wall_clock_seconds: float = 0.0,
        max_cost_usd: float = 0.0,
        clock: MonotonicClock | None = None,
        logger: Any | None = None,
    ) -> None:
        for name, value in (
            ("max_wall_clock_seconds", max_wall_clock_seconds),
            ("max_cost_usd", max_cost_usd),
        ):
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"{name} must be finite and >= 0")
        self._max_wall_clock_seconds = float(max_wall_clock_seconds)
        self._max_cost_usd = float(max_cost_usd)
        self._clock = clock if clock is not None else time.monotonic
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._started_at: float | None = None
        self._carried_seconds = 0.0
        self._exhausted_logged = False

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object],
        *,
        clock: MonotonicClock | None = None,
        logger: Any | None = None,
    ) -> BuildBudget:
        section = config.get("budgets", {})
        budgets: Mapping[str, Any] = section if isinstance(section, Mapping) else {}
        return cls(
            max_wall_clock_seconds=float(budgets.get("max_wall_clock_seconds", 0.0)),
            max_cost_usd=float(budgets.get("max_cost_usd", 0.0)),
            clock=clock,
            logger=logger,
        )

    @property
    def unlimited(self) -> bool:
        return self._max_wall_clock_seconds == 0 and self._max_cost_usd == 0

    def start(self, build: Build) -> None:
        """Begin timing; time spent in earlier runs of the build still counts."""
        self._carried_seconds = build.elapsed_seconds
        self._started_at = self._clock()
        self._exhausted_logged = False

    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return self._carried_seconds
        return self._carried_seconds + max(0.0, self._clock() - self._started_at)

    def sync(self, build: Build) -> None:
        """Write accumulated elapsed time onto the build (commit path only)."""
        build.elapsed_seconds = round(self.elapsed_seconds(), 6)

    def check(self, build: Build) -> BudgetDecision:
        elapsed = self.elapsed_seconds()
        reasons: list[str] = []
        if self._max_wall_clock_seconds > 0 and elapsed >= self._max_wall_clock_seconds:
            reasons.append("wall_clock_exhausted")
        if self._max_cost_usd > 0 and build.cost_spent_usd >= self._max_cost_usd:
            reasons.append("cost_exhausted")

        decision = BudgetDecision(
            action=BudgetAction.STOP if reasons else BudgetAction.CONTINUE,
            reason_codes=tuple(reasons) if reasons else ("within_budget",),
            elapsed_seconds=elapsed,
            cost_spent_usd=build.cost_spent_usd,
            max_wall_clock_seconds=self._max_wall_clock_seconds,
            max_cost_usd=self._max_cost_usd,
        )
        if decision.should_stop and not self._exhausted_logged:
            self._exhausted_logged = True
            self._logger.warning(
                "control_plane_budget_decision",
                build_id=build.id,
                **decision.to_dict(),
            )
        return decision


__all__ = ["BudgetAction", "BudgetDecision", "BuildBudget"]
