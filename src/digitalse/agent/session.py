"""
agent/session.py — Per-Session State

One Session exists per conversation. It owns a ConversationContext:
recent turns, the entity tally used to resolve "that query" / "this
table", recorded confirmations, and the plan (if any) waiting for the
user's confirmation.

The context is mutated only by the orchestrator at turn boundaries. A
pending plan is saved as plain data; nothing asynchronous waits on it.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from digitalse.agent.plan import Plan, StepStatus
from digitalse.observability.logger import get_logger

log = get_logger(__name__)

# Step inputs remembered for elided references in later turns
_TRACKED_ENTITIES = ("query_id", "object_name", "object_type")


@dataclass
class Turn:
    utterance: str
    plan_summary: str
    result_summary: str
    response_kind: str = ""
    at: float = field(default_factory=time.time)


class ConversationContext:
    """Bounded conversation memory for one session."""

    def __init__(self, max_turns: int = 20) -> None:
        self.turns: deque[Turn] = deque(maxlen=max_turns)
        self.entities: dict[str, str] = {}
        self.pending_plan: Optional[Plan] = None
        self._confirmations: set[str] = set()

    # ── Turns ─────────────────────────────────────────────────────────────────

    def add_turn(self, turn: Turn) -> None:
        self.turns.append(turn)

    def recent(self, n: int = 5) -> list[Turn]:
        return list(self.turns)[-n:]

    def remember(self, plan: Plan) -> None:
        """Update the entity tally from the plan's resolved step inputs."""
        for step in plan.steps:
            if step.status == StepStatus.CLARIFICATION_NEEDED:
                continue
            for name in _TRACKED_ENTITIES:
                value = step.inputs.get(name)
                if isinstance(value, str) and value:
                    self.entities[name] = value

    # ── Confirmations ─────────────────────────────────────────────────────────

    def record_confirmation(self, signature: str) -> None:
        self._confirmations.add(signature)

    def consume_confirmation(self, signature: str) -> bool:
        """True exactly once per recorded confirmation."""
        if signature in self._confirmations:
            self._confirmations.discard(signature)
            return True
        return False

    def has_confirmation(self, signature: str) -> bool:
        return signature in self._confirmations

    def clear_confirmations(self) -> None:
        self._confirmations.clear()

    # ── Pending plan ──────────────────────────────────────────────────────────

    def save_pending(self, plan: Plan) -> None:
        self.pending_plan = plan

    def take_pending(self) -> Optional[Plan]:
        plan, self.pending_plan = self.pending_plan, None
        return plan

    def clear(self) -> None:
        self.turns.clear()
        self.entities.clear()
        self.pending_plan = None
        self._confirmations.clear()


class Session:
    """All per-conversation runtime state."""

    def __init__(self, session_id: str, max_turns: int = 20) -> None:
        self.id = session_id
        self.created_at = time.time()
        self.context = ConversationContext(max_turns=max_turns)
        self.turn_count = 0
        self.tool_call_count = 0
        self.tokens_used = 0
        log.debug("session.created", session_id=session_id)

    @classmethod
    def create(cls, max_turns: int = 20) -> "Session":
        return cls(session_id=f"sess_{uuid.uuid4().hex[:12]}", max_turns=max_turns)

    def status_summary(self) -> dict:
        pending = self.context.pending_plan
        return {
            "session_id": self.id,
            "turns": self.turn_count,
            "tool_calls": self.tool_call_count,
            "tokens_used": self.tokens_used,
            "entities": dict(self.context.entities),
            "awaiting_confirmation": [s.describe() for s in pending.awaiting_confirmation] if pending else [],
            "uptime_seconds": round(time.time() - self.created_at, 1),
        }

    def __repr__(self) -> str:
        return f"<Session id={self.id} turns={self.turn_count}>"


class SessionStore:
    """In-process registry of live sessions, keyed by id."""

    def __init__(self, max_turns: int = 20) -> None:
        self._sessions: dict[str, Session] = {}
        self._max_turns = max_turns

    def create(self, session_id: Optional[str] = None) -> Session:
        session = Session(session_id, self._max_turns) if session_id else Session.create(self._max_turns)
        if session.id in self._sessions:
            raise ValueError(f"Session '{session.id}' already exists")
        self._sessions[session.id] = session
        log.info("session.started", session_id=session.id)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: str) -> Session:
        return self._sessions.get(session_id) or self.create(session_id)

    def end(self, session_id: str) -> bool:
        """Destroy the session and its context. False if it did not exist."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.context.clear()
        log.info("session.ended", session_id=session_id, turns=session.turn_count)
        return True

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
