"""
tests/unit/test_session.py — Session and ConversationContext Tests
"""

from __future__ import annotations

import pytest

from digitalse.agent.plan import Plan, Step, StepStatus
from digitalse.agent.session import ConversationContext, Session, SessionStore, Turn
from digitalse.tools import catalog
from digitalse.tools.catalog import build_registry


@pytest.fixture(scope="module")
def registry():
    return build_registry()


class TestConversationContext:
    def test_turns_are_bounded(self):
        ctx = ConversationContext(max_turns=2)
        for i in range(3):
            ctx.add_turn(Turn(utterance=f"u{i}", plan_summary="", result_summary=""))
        assert [t.utterance for t in ctx.recent()] == ["u1", "u2"]

    def test_remember_tracks_entities_from_steps(self, registry):
        ctx = ConversationContext()
        plan = Plan(steps=[
            Step(index=0, descriptor=registry.lookup(catalog.QUERY_TEXT_FETCHER),
                 inputs={"query_id": "01b2-aaaa-0001"}),
            Step(index=1, descriptor=registry.lookup(catalog.GET_OBJECT_DDL),
                 inputs={"object_type": "TABLE", "object_name": "DB.S.T"}),
        ])
        ctx.remember(plan)
        assert ctx.entities == {
            "query_id": "01b2-aaaa-0001",
            "object_type": "TABLE",
            "object_name": "DB.S.T",
        }

    def test_clarification_steps_are_not_remembered(self, registry):
        ctx = ConversationContext()
        step = Step(index=0, descriptor=registry.lookup(catalog.QUERY_TEXT_FETCHER),
                    inputs={"query_id": "x-1"}, status=StepStatus.CLARIFICATION_NEEDED)
        ctx.remember(Plan(steps=[step]))
        assert ctx.entities == {}

    def test_confirmation_consumed_once(self):
        ctx = ConversationContext()
        ctx.record_confirmation("sig")
        assert ctx.has_confirmation("sig")
        assert ctx.consume_confirmation("sig")
        assert not ctx.consume_confirmation("sig")

    def test_take_pending_clears_it(self):
        ctx = ConversationContext()
        plan = Plan()
        ctx.save_pending(plan)
        assert ctx.take_pending() is plan
        assert ctx.take_pending() is None

    def test_clear(self):
        ctx = ConversationContext()
        ctx.entities["query_id"] = "x-1"
        ctx.record_confirmation("sig")
        ctx.save_pending(Plan())
        ctx.clear()
        assert ctx.entities == {}
        assert ctx.pending_plan is None
        assert not ctx.has_confirmation("sig")


class TestSessionStore:
    def test_create_generates_id(self):
        store = SessionStore()
        session = store.create()
        assert session.id.startswith("sess_")
        assert session.id in store

    def test_duplicate_id_rejected(self):
        store = SessionStore()
        store.create("abc")
        with pytest.raises(ValueError):
            store.create("abc")

    def test_get_or_create_reuses(self):
        store = SessionStore()
        assert store.get_or_create("abc") is store.get_or_create("abc")
        assert len(store) == 1

    def test_end_destroys_context(self):
        store = SessionStore()
        session = store.create("abc")
        session.context.entities["query_id"] = "x-1"
        assert store.end("abc")
        assert session.context.entities == {}
        assert store.get("abc") is None
        assert not store.end("abc")

    def test_sessions_are_isolated(self):
        store = SessionStore()
        a, b = store.create("a"), store.create("b")
        a.context.record_confirmation("sig")
        assert not b.context.has_confirmation("sig")

    def test_status_summary(self):
        session = Session("abc")
        summary = session.status_summary()
        assert summary["session_id"] == "abc"
        assert summary["awaiting_confirmation"] == []
