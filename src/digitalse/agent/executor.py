"""
agent/executor.py — Plan Executor

Drives a filtered Plan to completion (or to its first confirmation
barrier) within one turn's Budget.

Each wave:
  1. Collect ready steps: PENDING, every producer SUCCEEDED, and positioned
     before the first AWAITING_CONFIRMATION step
  2. Resolve derived inputs and validate inputs against the descriptor
  3. Reserve budget for every ready step, in plan order; the first refusal
     SKIPs that step and every step not yet started
  4. Dispatch the admitted steps concurrently, bounded by max_concurrency

A FAILED step SKIPs all of its transitive dependents. Only a READ step whose
collaborator reported a transient error is retried, once, and only if the
budget still covers it. A deadline breach is final.

Usage:
    executor = PlanExecutor(registry, collaborator, tracker)
    await executor.execute(plan, budget)
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from digitalse.agent.budget import Budget, BudgetTracker, Reservation
from digitalse.agent.derivations import resolve as resolve_derivation
from digitalse.agent.plan import Plan, Step, StepStatus
from digitalse.collaborators.base import Collaborator
from digitalse.exceptions import BudgetExceeded, CollaboratorFailure, ConfirmationRequired
from digitalse.observability.logger import get_logger
from digitalse.safety.gate import require_authorization
from digitalse.safety.statements import describe_effect
from digitalse.tools.registry import ToolRegistry, validate_inputs
from digitalse.tools.types import SideEffect, ToolResult, estimate_tokens

log = get_logger(__name__)


class ReferenceCache:
    """Results of cacheable reference tools, keyed by step signature."""

    def __init__(self) -> None:
        self._results: dict[str, ToolResult] = {}

    def get(self, signature: str) -> Optional[ToolResult]:
        return self._results.get(signature)

    def put(self, signature: str, result: ToolResult) -> None:
        self._results[signature] = result

    def __contains__(self, signature: object) -> bool:
        return signature in self._results

    def __len__(self) -> int:
        return len(self._results)

    def clear(self) -> None:
        self._results.clear()


class PlanExecutor:
    """
    Executes plans against a Collaborator.

    Stateless between plans apart from the reference cache, so one executor
    serves every session.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        collaborator: Collaborator,
        tracker: Optional[BudgetTracker] = None,
        max_concurrency: int = 4,
        retry_transient_reads: bool = True,
        cache: Optional[ReferenceCache] = None,
        clock=time.monotonic,
    ) -> None:
        self._registry = registry
        self._collaborator = collaborator
        self._tracker = tracker or BudgetTracker()
        self._max_concurrency = max_concurrency
        self._retry_transient_reads = retry_transient_reads
        self._cache = cache if cache is not None else ReferenceCache()
        self._clock = clock

    @property
    def cache(self) -> ReferenceCache:
        return self._cache

    # ─────────────────────────────────────────────────────────────────────────
    # Public
    # ─────────────────────────────────────────────────────────────────────────

    async def execute(self, plan: Plan, budget: Budget) -> Plan:
        """Run every runnable step of `plan`. Mutates and returns the plan."""
        if plan.clarifications:
            self._hold_for_clarification(plan)
            return plan

        semaphore = asyncio.Semaphore(self._max_concurrency)
        wave = 0
        while True:
            ready = self._ready_steps(plan)
            if not ready:
                break
            wave += 1

            admitted: list[tuple[Step, Reservation]] = []
            refused = False
            for step in ready:
                if not self._prepare(plan, step):
                    continue
                est_seconds, est_tokens = self._estimate(step)
                try:
                    reservation = self._tracker.check_and_reserve(
                        budget, est_seconds, est_tokens, step_index=step.index
                    )
                except BudgetExceeded as exc:
                    self._skip_for_budget(plan, step, exc, started={s.index for s, _ in admitted})
                    refused = True
                    break
                admitted.append((step, reservation))

            if admitted:
                log.debug("executor.wave", wave=wave, steps=[s.index for s, _ in admitted])
                await asyncio.gather(*(
                    self._run_step(plan, budget, step, reservation, semaphore)
                    for step, reservation in admitted
                ))
            if refused:
                break

        log.info(
            "executor.plan_done",
            plan_id=plan.id,
            statuses={s.index: s.status.value for s in plan.steps},
            **budget.snapshot(),
        )
        return plan

    # ─────────────────────────────────────────────────────────────────────────
    # Scheduling
    # ─────────────────────────────────────────────────────────────────────────

    def _ready_steps(self, plan: Plan) -> list[Step]:
        ready = []
        for step in plan.steps:
            if step.status == StepStatus.AWAITING_CONFIRMATION:
                break
            if step.status != StepStatus.PENDING:
                continue
            try:
                require_authorization(step)
            except ConfirmationRequired as exc:
                # Never run a mutating step the gate has not cleared
                step.status = StepStatus.AWAITING_CONFIRMATION
                step.effect_description = step.effect_description or describe_effect(
                    step.descriptor, step.inputs, step.side_effect
                )
                log.warning("executor.unauthorised_step", tool=step.tool, step=step.index,
                            error=str(exc))
                break
            if plan.producers_succeeded(step):
                ready.append(step)
        return ready

    def _prepare(self, plan: Plan, step: Step) -> bool:
        """Fill derived inputs and validate. False (step FAILED) on a problem."""
        if step.derived:
            producers = [plan.get(i).result for i in step.depends_on if plan.get(i).result]
            for param, derivation in step.derived.items():
                try:
                    step.inputs[param] = resolve_derivation(derivation, producers)
                except (KeyError, ValueError, TypeError) as exc:
                    self._fail(plan, step, f"could not derive '{param}': {exc}")
                    return False

        error = validate_inputs(step.descriptor, step.inputs)
        if error:
            self._fail(plan, step, f"invalid inputs: {error}")
            return False
        return True

    def _estimate(self, step: Step) -> tuple[float, int]:
        descriptor = step.descriptor
        if descriptor.cacheable and step.signature in self._cache:
            return 0.0, 0
        return descriptor.cost.seconds, descriptor.cost.tokens

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    async def _run_step(
        self,
        plan: Plan,
        budget: Budget,
        step: Step,
        reservation: Reservation,
        semaphore: asyncio.Semaphore,
    ) -> None:
        descriptor = step.descriptor

        if descriptor.cacheable:
            cached = self._cache.get(step.signature)
            if cached is not None:
                self._tracker.record(budget, reservation, 0.0, 0)
                step.result = cached.model_copy(update={"step_index": step.index, "cached": True})
                step.status = StepStatus.SUCCEEDED
                log.info("executor.cache_hit", tool=step.tool, step=step.index)
                return

        async with semaphore:
            while True:
                step.status = StepStatus.RUNNING
                step.attempts += 1
                deadline = min(self._tracker.remaining_seconds(budget), descriptor.cost.max_seconds)
                log.info("executor.step_started", tool=step.tool, step=step.index,
                         attempt=step.attempts, deadline=round(deadline, 2))
                t0 = self._clock()
                try:
                    if deadline <= 0:
                        raise asyncio.TimeoutError()
                    response = await asyncio.wait_for(
                        self._collaborator.invoke(descriptor, dict(step.inputs)),
                        timeout=deadline,
                    )
                except asyncio.TimeoutError:
                    elapsed = self._clock() - t0
                    self._tracker.record(budget, reservation, elapsed, 0)
                    self._fail(plan, step, f"deadline of {deadline:.1f}s exceeded")
                    return
                except CollaboratorFailure as exc:
                    elapsed = self._clock() - t0
                    self._tracker.record(budget, reservation, elapsed, 0)
                    retry = self._retry_reservation(budget, step, exc)
                    if retry is None:
                        self._fail(plan, step, str(exc), transient=exc.transient)
                        return
                    reservation = retry
                    log.warning("executor.step_retry", tool=step.tool, step=step.index,
                                error=str(exc))
                    continue
                except Exception as exc:
                    elapsed = self._clock() - t0
                    self._tracker.record(budget, reservation, elapsed, 0)
                    log.error("executor.step_crashed", tool=step.tool, step=step.index,
                              error=str(exc), exc_info=True)
                    self._fail(plan, step, f"unexpected error: {exc}")
                    return

                elapsed = self._clock() - t0
                tokens = response.tokens_consumed
                if tokens is None:
                    tokens = estimate_tokens(response.payload)
                self._tracker.record(budget, reservation, elapsed, tokens)

                step.result = ToolResult(
                    step_index=step.index,
                    tool=step.tool,
                    payload=response.payload,
                    elapsed_seconds=round(elapsed, 3),
                    tokens_consumed=tokens,
                    side_effect=step.side_effect,
                    source=descriptor.source,
                )
                step.status = StepStatus.SUCCEEDED
                if descriptor.cacheable:
                    self._cache.put(step.signature, step.result)
                log.info("executor.step_succeeded", tool=step.tool, step=step.index,
                         elapsed=round(elapsed, 3), tokens=tokens)
                return

    def _retry_reservation(
        self, budget: Budget, step: Step, exc: CollaboratorFailure
    ) -> Optional[Reservation]:
        if not (exc.transient and self._retry_transient_reads):
            return None
        if step.side_effect != SideEffect.READ or step.attempts > 1:
            return None
        try:
            return self._tracker.check_and_reserve(
                budget, step.descriptor.cost.seconds, step.descriptor.cost.tokens,
                step_index=step.index,
            )
        except BudgetExceeded:
            log.info("executor.retry_skipped_budget", tool=step.tool, step=step.index)
            return None

    # ─────────────────────────────────────────────────────────────────────────
    # Terminal transitions
    # ─────────────────────────────────────────────────────────────────────────

    def _fail(self, plan: Plan, step: Step, reason: str, transient: bool = False) -> None:
        step.mark(StepStatus.FAILED, reason)
        skipped = plan.cascade_skip(
            step.index, f"Skipped: depends on {step.tool}, which failed"
        )
        log.warning(
            "executor.step_failed",
            tool=step.tool,
            step=step.index,
            reason=reason,
            transient=transient,
            skipped=[s.index for s in skipped],
        )

    def _skip_for_budget(
        self, plan: Plan, refused: Step, exc: BudgetExceeded, started: set[int]
    ) -> None:
        plan.budget_exhausted = True
        refused.mark(StepStatus.SKIPPED, f"BudgetExceeded: {exc}")
        for step in plan.steps:
            if step.index in started or step is refused:
                continue
            if step.status == StepStatus.PENDING:
                step.mark(StepStatus.SKIPPED, "BudgetExceeded: turn budget exhausted before this step")
        log.warning("executor.budget_stop", step=refused.index, tool=refused.tool,
                    dimension=exc.dimension)

    def _hold_for_clarification(self, plan: Plan) -> None:
        for step in plan.steps:
            if step.status in (StepStatus.PENDING, StepStatus.AWAITING_CONFIRMATION):
                step.mark(StepStatus.SKIPPED, "Skipped: waiting for clarification")
        log.info("executor.clarification_short_circuit",
                 questions=[s.question for s in plan.clarifications])
