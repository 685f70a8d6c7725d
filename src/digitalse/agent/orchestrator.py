"""
agent/orchestrator.py — Turn Orchestrator

Runs one user turn end to end:

    pending confirmation? ── yes ─► classify reply
        affirmative → record confirmation, resume the saved plan
        declining   → skip held steps, run whatever else is runnable
        ambiguous   → new request? abandon the held plan and route it
                      otherwise re-propose the held steps
    route → safety gate → execute (under a fresh budget) → compose

The session context is read freely but written only here, at the end of
the turn. A plan still awaiting confirmation is saved into the context as
plain data.

Usage:
    orc = Orchestrator.from_settings(settings, collaborator)
    response = await orc.handle_turn(session_id, "Drop table STAGING.TMP")
    response = await orc.handle_turn(session_id, "yes")
"""

from __future__ import annotations

import time
from typing import Optional

from digitalse.agent.budget import BudgetLimits, BudgetTracker
from digitalse.agent.composer import AgentResponse, ResponseComposer
from digitalse.agent.executor import PlanExecutor, ReferenceCache
from digitalse.agent.plan import Plan
from digitalse.agent.router import IntentRouter, IntentSuggester
from digitalse.agent.session import Session, SessionStore, Turn
from digitalse.collaborators.base import Collaborator
from digitalse.observability.logger import bind_session, clear_session, get_logger
from digitalse.safety.gate import ReplyKind, SafetyGate, classify_reply
from digitalse.tools.catalog import build_registry
from digitalse.tools.registry import ToolRegistry

log = get_logger(__name__)


class Orchestrator:
    """
    Coordinates router, safety gate, executor and composer for each turn.

    Inject all dependencies via the constructor; use from_settings() when
    wiring up the application.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        collaborator: Collaborator,
        router: Optional[IntentRouter] = None,
        gate: Optional[SafetyGate] = None,
        executor: Optional[PlanExecutor] = None,
        composer: Optional[ResponseComposer] = None,
        tracker: Optional[BudgetTracker] = None,
        limits: BudgetLimits = BudgetLimits(),
        sessions: Optional[SessionStore] = None,
    ) -> None:
        self._registry = registry
        self._tracker = tracker or BudgetTracker()
        self._router = router or IntentRouter(registry)
        self._gate = gate or SafetyGate()
        self._executor = executor or PlanExecutor(registry, collaborator, self._tracker)
        self._composer = composer or ResponseComposer()
        self._limits = limits
        self._sessions = sessions or SessionStore()

    @classmethod
    def from_settings(
        cls,
        settings,
        collaborator: Collaborator,
        suggester: Optional[IntentSuggester] = None,
        tracker: Optional[BudgetTracker] = None,
        registry: Optional[ToolRegistry] = None,
    ) -> "Orchestrator":
        if registry is None:
            registry = build_registry(settings)
        tracker = tracker or BudgetTracker()
        return cls(
            registry=registry,
            collaborator=collaborator,
            router=IntentRouter(registry, suggester=suggester),
            gate=SafetyGate.from_settings(settings),
            executor=PlanExecutor(
                registry,
                collaborator,
                tracker,
                max_concurrency=settings.executor.max_concurrency,
                retry_transient_reads=settings.executor.retry_transient_reads,
                cache=ReferenceCache(),
            ),
            tracker=tracker,
            limits=BudgetLimits.from_settings(settings),
            sessions=SessionStore(max_turns=settings.agent.max_context_turns),
        )

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    # ─────────────────────────────────────────────────────────────────────────
    # Public: one turn
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_turn(self, session_id: str, utterance: str) -> AgentResponse:
        """Process one user utterance and return the composed response."""
        session = self._sessions.get_or_create(session_id)
        session.turn_count += 1
        bind_session(session.id, session.turn_count)
        log.info("orchestrator.turn_start", utterance=utterance[:120])
        t0 = time.monotonic()

        try:
            budget = self._tracker.begin(self._limits)
            preface = None

            pending = session.context.take_pending()
            if pending is not None:
                response, preface = await self._resume(session, pending, utterance, budget)
                if response is not None:
                    return response

            plan = await self._router.route(utterance, session.context)
            return await self._run_plan(session, plan, utterance, budget, preface=preface)
        finally:
            log.info("orchestrator.turn_done", elapsed=round(time.monotonic() - t0, 3))
            clear_session()

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _resume(
        self, session: Session, pending: Plan, utterance: str, budget
    ) -> tuple[Optional[AgentResponse], Optional[str]]:
        """
        Handle a reply to a held plan. Returns (response, None) when the reply
        was consumed, or (None, preface) when the utterance is a new request.
        """
        ctx = session.context
        reply = classify_reply(utterance)
        log.info("orchestrator.confirmation_reply", reply=reply.value,
                 held=[s.tool for s in pending.awaiting_confirmation])

        if reply == ReplyKind.AFFIRMATIVE:
            for step in pending.awaiting_confirmation:
                ctx.record_confirmation(step.signature)
            return await self._run_plan(
                session, pending, utterance, budget,
                acknowledgment="Confirmed. Running it now.",
            ), None

        if reply == ReplyKind.DECLINING:
            self._gate.decline(pending)
            return await self._run_plan(
                session, pending, utterance, budget,
                acknowledgment="Okay, I won't run it. Nothing was changed.",
            ), None

        if self._router.classify(utterance, ctx):
            held = ", ".join(f"`{s.describe()}`" for s in pending.awaiting_confirmation)
            self._gate.decline(pending, reason="was dropped for a new request")
            log.info("orchestrator.pending_abandoned", plan_id=pending.id)
            return None, f"I dropped the unconfirmed {held} since you asked something new."

        # Ambiguous: not consent. Hold the plan and ask again.
        ctx.save_pending(pending)
        response = self._composer.compose(
            pending,
            acknowledgment="I didn't catch a clear yes or no, so nothing has run.",
        )
        self._finish_turn(session, pending, utterance, response, budget)
        return response, None

    async def _run_plan(
        self,
        session: Session,
        plan: Plan,
        utterance: str,
        budget,
        acknowledgment: Optional[str] = None,
        preface: Optional[str] = None,
    ) -> AgentResponse:
        ctx = session.context
        self._gate.filter(plan, ctx)
        await self._executor.execute(plan, budget)
        response = self._composer.compose(plan, acknowledgment=acknowledgment, preface=preface)

        if plan.awaiting_confirmation:
            ctx.save_pending(plan)
        self._finish_turn(session, plan, utterance, response, budget)
        return response

    def _finish_turn(self, session: Session, plan: Plan, utterance: str,
                     response: AgentResponse, budget) -> None:
        ctx = session.context
        ctx.remember(plan)
        ctx.add_turn(Turn(
            utterance=utterance,
            plan_summary=plan.summary(),
            result_summary=f"{response.kind.value}: {len(response.findings)} finding(s)",
            response_kind=response.kind.value,
        ))
        session.tool_call_count += sum(1 for inv in response.invocations if not inv.cached)
        session.tokens_used += budget.tokens_used
        log.info(
            "orchestrator.response",
            kind=response.kind.value,
            plan_id=plan.id,
            steps=len(plan.steps),
            pending=ctx.pending_plan is not None,
            **budget.snapshot(),
        )
