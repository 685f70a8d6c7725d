"""
safety/gate.py — Safety Gate

Sits between the router and the executor. Every plan passes through
filter() before any step runs.

Decision flow per step:
  1. Compute the effective side effect (statement verb for DDL/DML tools)
  2. Not in the confirm set → authorised, runs this turn
  3. In the confirm set and the context holds a confirmation for the exact
     step signature → confirmation consumed (once), authorised
  4. Otherwise → AWAITING_CONFIRMATION with a description of the effect

Confirmations are recorded by the orchestrator on a later turn, from the
user's reply. An ambiguous reply is never treated as consent.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from digitalse.agent.plan import Plan, Step, StepStatus
from digitalse.exceptions import ConfirmationDeclined, ConfirmationRequired
from digitalse.observability.logger import get_logger
from digitalse.safety.statements import (
    classify_statement,
    describe_effect,
    effective_side_effect,
    statement_of,
)
from digitalse.tools.types import SideEffect

if TYPE_CHECKING:
    from digitalse.agent.session import ConversationContext

log = get_logger(__name__)

_DEFAULT_CONFIRM = (SideEffect.WRITE, SideEffect.DESTRUCTIVE)

# Replies longer than this are never read as a bare yes/no
_MAX_REPLY_WORDS = 8

_AFFIRM = (
    r"(y|yes|yep|yeah|yup|sure|ok|okay|confirm(ed)?|proceed|go\s+ahead|"
    r"approve(d)?|affirmative|do\s+it|run\s+it)"
)
# The whole reply must be consent words, optionally with a courtesy
_AFFIRMATIVE = re.compile(
    rf"^{_AFFIRM}(\s*[,.!]?\s*({_AFFIRM}|please|thanks|thank\s+you|now))*$",
    re.IGNORECASE,
)
_DECLINING = re.compile(
    r"^(n|no|nope|nah|cancel|stop|abort|decline(d)?|don'?t|do\s+not|never\s*mind|skip)\b",
    re.IGNORECASE,
)


class ReplyKind(str, Enum):
    AFFIRMATIVE = "affirmative"
    DECLINING = "declining"
    AMBIGUOUS = "ambiguous"


def classify_reply(text: str) -> ReplyKind:
    """
    Classify a reply to a confirmation prompt.

      "yes" / "go ahead" / "ok, run it"    → AFFIRMATIVE
      "no" / "cancel" / "don't"            → DECLINING
      "maybe" / "yes but not now" / "ok?"  → AMBIGUOUS

    A question is never consent.
    """
    cleaned = text.strip().strip(".!").strip()
    words = cleaned.split()
    if not words or len(words) > _MAX_REPLY_WORDS or "?" in cleaned:
        return ReplyKind.AMBIGUOUS
    if _AFFIRMATIVE.match(cleaned):
        return ReplyKind.AFFIRMATIVE
    if _DECLINING.search(cleaned):
        return ReplyKind.DECLINING
    return ReplyKind.AMBIGUOUS


class SafetyGate:
    """
    Holds mutating steps until the user confirms them.

    Usage:
        gate = SafetyGate.from_settings(settings)
        gate.filter(plan, context)
        for step in plan.awaiting_confirmation:
            print(step.effect_description)
    """

    def __init__(self, confirm_side_effects: Iterable[SideEffect | str] = _DEFAULT_CONFIRM) -> None:
        self._confirm = frozenset(s if isinstance(s, SideEffect) else SideEffect(str(s).upper())
                                  for s in confirm_side_effects)
        # Destructive work is always held, whatever the config says
        self._confirm |= {SideEffect.DESTRUCTIVE}

    @classmethod
    def from_settings(cls, settings) -> "SafetyGate":
        return cls(settings.safety.confirm_side_effects)

    @property
    def confirm_side_effects(self) -> frozenset[SideEffect]:
        return self._confirm

    def requires_confirmation(self, side_effect: SideEffect) -> bool:
        return side_effect in self._confirm

    # ── Plan filtering ───────────────────────────────────────────────────────

    def assess(self, step: Step) -> SideEffect:
        """Set the step's effective side effect and effect description."""
        statement = statement_of(step.inputs)
        if statement is not None:
            effect, reason = classify_statement(statement, step.descriptor.side_effect)
        else:
            effect, reason = step.descriptor.side_effect, "declared side effect"
        step.side_effect = effect
        if effect != SideEffect.READ:
            step.effect_description = describe_effect(step.descriptor, step.inputs, effect)
        log.debug("safety.assessed", tool=step.tool, step=step.index,
                  side_effect=effect.value, reason=reason)
        return effect

    def filter(self, plan: Plan, context: "ConversationContext") -> Plan:
        """
        Mark every step that needs confirmation AWAITING_CONFIRMATION unless
        a matching confirmation is on record. Returns the same plan.
        """
        for step in plan.steps:
            if step.status not in (StepStatus.PENDING, StepStatus.AWAITING_CONFIRMATION):
                continue
            effect = self.assess(step)

            if not self.requires_confirmation(effect):
                step.authorized = True
                continue

            if step.authorized and step.status == StepStatus.PENDING:
                continue

            if context.consume_confirmation(step.signature):
                step.authorized = True
                step.status = StepStatus.PENDING
                log.info("safety.confirmation_consumed", tool=step.tool, step=step.index,
                         side_effect=effect.value)
                continue

            step.authorized = False
            step.status = StepStatus.AWAITING_CONFIRMATION
            log.warning(
                "safety.confirmation_required",
                tool=step.tool,
                step=step.index,
                side_effect=effect.value,
                effect=step.effect_description,
            )
        return plan

    def decline(self, plan: Plan, reason: str = "declined by user") -> list[Step]:
        """SKIP every held step and its dependents. Nothing is executed."""
        skipped: list[Step] = []
        for step in plan.awaiting_confirmation:
            exc = ConfirmationDeclined(step.tool, reason)
            step.mark(StepStatus.SKIPPED, f"{type(exc).__name__}: {exc}")
            step.authorized = False
            skipped.append(step)
            skipped.extend(plan.cascade_skip(
                step.index, f"Skipped: depends on {step.tool}, which was not confirmed"
            ))
            log.info("safety.confirmation_declined", tool=step.tool, step=step.index)
        return skipped

    classify_reply = staticmethod(classify_reply)


def require_authorization(step: Step) -> None:
    """
    Raise ConfirmationRequired if `step` would change state and the gate
    has not cleared it. The step's own statement is re-classified, so a
    step built without passing through filter() is still caught.
    """
    if step.authorized:
        return
    effect = max(step.side_effect, effective_side_effect(step.descriptor, step.inputs))
    if effect != SideEffect.READ:
        step.side_effect = effect
        raise ConfirmationRequired(step.tool, step.signature)
