"""
agent/plan.py — Plan and Step State

A Plan is the ordered, dependency-aware set of tool invocations chosen for
one user turn. It is plain data: no tasks, futures or connections, so a
plan held for confirmation can sit in the session across turns.

Step lifecycle:

    PENDING ──────────────► RUNNING ──► SUCCEEDED
       │   ▲                   │
       │   │ (confirmed)       └──────► FAILED ──► dependents SKIPPED
       ▼   │
    AWAITING_CONFIRMATION ──(declined)──► SKIPPED

    CLARIFICATION_NEEDED is terminal and stops the whole plan.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional

from digitalse.tools.types import SideEffect, ToolDescriptor, ToolResult


class StepStatus(str, Enum):
    PENDING = "PENDING"
    AWAITING_CONFIRMATION = "AWAITING_CONFIRMATION"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CLARIFICATION_NEEDED = "CLARIFICATION_NEEDED"


TERMINAL_STATUSES = frozenset({
    StepStatus.SUCCEEDED,
    StepStatus.FAILED,
    StepStatus.SKIPPED,
    StepStatus.CLARIFICATION_NEEDED,
})


def confirmation_signature(tool: str, inputs: dict[str, Any]) -> str:
    """Canonical (tool name, resolved inputs) key. Any changed input changes it."""
    return json.dumps([tool, inputs], sort_keys=True, default=str)


@dataclass
class Step:
    index: int
    descriptor: ToolDescriptor
    inputs: dict[str, Any] = field(default_factory=dict)
    depends_on: list[int] = field(default_factory=list)
    derived: dict[str, str] = field(default_factory=dict)   # param → derivation name
    intent: Optional[str] = None
    status: StepStatus = StepStatus.PENDING
    side_effect: SideEffect = SideEffect.READ
    effect_description: str = ""
    reason: str = ""
    question: str = ""              # set when status is CLARIFICATION_NEEDED
    authorized: bool = False        # set by the safety gate for cleared mutating steps
    attempts: int = 0
    result: Optional[ToolResult] = None

    @property
    def tool(self) -> str:
        return self.descriptor.name

    @property
    def signature(self) -> str:
        return confirmation_signature(self.tool, self.inputs)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark(self, status: StepStatus, reason: str = "") -> None:
        self.status = status
        if reason:
            self.reason = reason

    def describe(self) -> str:
        if not self.inputs:
            return self.tool
        args = ", ".join(f"{k}={_short(v)}" for k, v in sorted(self.inputs.items()))
        return f"{self.tool}({args})"

    def __repr__(self) -> str:
        return f"<Step #{self.index} {self.tool} {self.status.value} deps={self.depends_on}>"


@dataclass
class Plan:
    utterance: str = ""
    steps: list[Step] = field(default_factory=list)
    intents: list[str] = field(default_factory=list)
    rule_table_version: str = ""
    id: str = field(default_factory=lambda: f"plan_{uuid.uuid4().hex[:8]}")
    budget_exhausted: bool = False

    # ── Queries ───────────────────────────────────────────────────────────────

    @property
    def is_empty(self) -> bool:
        return not self.steps

    @property
    def is_complete(self) -> bool:
        return all(step.is_terminal for step in self.steps)

    def get(self, index: int) -> Step:
        return self.steps[index]

    def with_status(self, *statuses: StepStatus) -> list[Step]:
        return [s for s in self.steps if s.status in statuses]

    @property
    def awaiting_confirmation(self) -> list[Step]:
        return self.with_status(StepStatus.AWAITING_CONFIRMATION)

    @property
    def clarifications(self) -> list[Step]:
        return self.with_status(StepStatus.CLARIFICATION_NEEDED)

    @property
    def results(self) -> list[ToolResult]:
        return [s.result for s in self.steps if s.result is not None]

    def dependents_of(self, index: int) -> list[Step]:
        """Every step that transitively depends on step `index`, in plan order."""
        found: set[int] = set()
        frontier = [index]
        while frontier:
            current = frontier.pop()
            for step in self.steps:
                if current in step.depends_on and step.index not in found:
                    found.add(step.index)
                    frontier.append(step.index)
        return [s for s in self.steps if s.index in found]

    def producers_succeeded(self, step: Step) -> bool:
        return all(self.steps[i].status == StepStatus.SUCCEEDED for i in step.depends_on)

    # ── Transitions ───────────────────────────────────────────────────────────

    def cascade_skip(self, index: int, reason: str) -> list[Step]:
        """SKIP every non-terminal transitive dependent of step `index`."""
        skipped = []
        for step in self.dependents_of(index):
            if not step.is_terminal:
                step.mark(StepStatus.SKIPPED, reason)
                skipped.append(step)
        return skipped

    def summary(self) -> str:
        if self.is_empty:
            return "no tools"
        return "; ".join(f"{s.describe()} → {s.status.value}" for s in self.steps)


def order_steps(steps: list[Step]) -> list[Step]:
    """
    Topologically order steps, producers first, ties kept in their original
    order. Step indices and depends_on are rewritten to plan positions.

    Raises:
        ValueError: the dependency graph has a cycle or a dangling edge.
    """
    by_index = {s.index: s for s in steps}
    for step in steps:
        for dep in step.depends_on:
            if dep not in by_index:
                raise ValueError(f"Step {step.index} depends on unknown step {dep}")

    position = {s.index: pos for pos, s in enumerate(steps)}
    remaining = {s.index: set(s.depends_on) for s in steps}
    ordered: list[Step] = []
    while remaining:
        ready = sorted((i for i, deps in remaining.items() if not deps), key=position.get)
        if not ready:
            raise ValueError(f"Dependency cycle among steps {sorted(remaining)}")
        chosen = ready[0]
        ordered.append(by_index[chosen])
        del remaining[chosen]
        for deps in remaining.values():
            deps.discard(chosen)

    renumber = {step.index: new for new, step in enumerate(ordered)}
    for step in ordered:
        step.index = renumber[step.index]
        step.depends_on = sorted(renumber[d] for d in step.depends_on)
    return ordered


def dedupe_steps(steps: Iterable[Step]) -> list[Step]:
    """
    Drop steps identical to an earlier one (same tool, inputs, derived inputs
    and producers). Dependencies on a dropped step are redirected to the
    survivor. Producers must precede their consumers in `steps`.
    """
    kept: list[Step] = []
    seen: dict[str, int] = {}
    alias: dict[int, int] = {}
    for step in steps:
        producers = sorted({alias.get(d, d) for d in step.depends_on})
        key = json.dumps([step.signature, step.derived, producers], sort_keys=True)
        if key in seen:
            alias[step.index] = seen[key]
            continue
        seen[key] = step.index
        kept.append(step)
    for step in kept:
        step.depends_on = sorted({alias.get(d, d) for d in step.depends_on})
    return kept


def _short(value: Any, limit: int = 60) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[: limit - 1] + "…"
