"""
tests/unit/test_safety.py — Safety Gate Unit Tests

Statement classification, effect descriptions, confirmation replies and
plan filtering with one-shot confirmations. No collaborator is involved.
"""

from __future__ import annotations

import pytest

from digitalse.agent.plan import Plan, Step, StepStatus
from digitalse.agent.session import ConversationContext
from digitalse.exceptions import ConfirmationRequired
from digitalse.safety.gate import ReplyKind, SafetyGate, classify_reply, require_authorization
from digitalse.safety.statements import (
    classify_statement,
    describe_effect,
    effective_side_effect,
    split_statements,
)
from digitalse.tools import catalog
from digitalse.tools.catalog import build_registry
from digitalse.tools.types import SideEffect


@pytest.fixture(scope="module")
def registry():
    return build_registry()


@pytest.fixture
def gate():
    return SafetyGate()


@pytest.fixture
def ctx():
    return ConversationContext()


def _ddl_step(registry, statement, index=0, depends_on=None):
    return Step(
        index=index,
        descriptor=registry.lookup(catalog.EXECUTE_DDL),
        inputs={"ddl_statement": statement},
        depends_on=list(depends_on or []),
    )


def _dml_step(registry, statement, index=0):
    return Step(index=index, descriptor=registry.lookup(catalog.EXECUTE_DML),
                inputs={"dml_statement": statement})


# ─────────────────────────────────────────────────────────────────────────────
# Statement classification
# ─────────────────────────────────────────────────────────────────────────────

class TestClassifyStatement:
    @pytest.mark.parametrize("sql", [
        "DROP TABLE STAGING.TMP",
        "truncate table t",
        "CREATE OR REPLACE TABLE T (ID INT)",
        "ALTER TABLE A SWAP WITH B",
        "ALTER TABLE T DROP COLUMN C",
        "alter table t\n  drop constraint pk_t",
        "INSERT OVERWRITE INTO T SELECT 1",
    ])
    def test_destructive(self, sql):
        effect, _ = classify_statement(sql, SideEffect.WRITE)
        assert effect == SideEffect.DESTRUCTIVE

    @pytest.mark.parametrize("sql", [
        "SHOW TABLES",
        "DESCRIBE TABLE T",
        "SELECT * FROM T",
        "WITH x AS (SELECT 1) SELECT * FROM x",
    ])
    def test_read(self, sql):
        effect, _ = classify_statement(sql, SideEffect.DESTRUCTIVE)
        assert effect == SideEffect.READ

    @pytest.mark.parametrize("sql", [
        "CREATE TABLE T (ID INT)",
        "INSERT INTO T VALUES (1)",
        "GRANT SELECT ON TABLE T TO ROLE R",
        "ALTER WAREHOUSE W SET WAREHOUSE_SIZE = 'LARGE'",
        "ALTER TABLE T ADD COLUMN DROPPED_AT TIMESTAMP",
    ])
    def test_write(self, sql):
        effect, _ = classify_statement(sql, SideEffect.READ)
        assert effect == SideEffect.WRITE

    def test_batch_takes_the_worst_statement(self):
        effect, reason = classify_statement("SELECT 1; DROP TABLE T;", SideEffect.READ)
        assert effect == SideEffect.DESTRUCTIVE
        assert "destructive" in reason

    def test_comments_are_ignored(self):
        assert split_statements("-- drop table t\nSELECT 1 /* ; drop */") == ["SELECT 1"]

    def test_unknown_verb_uses_baseline(self):
        effect, _ = classify_statement("CALL MY_PROC()", SideEffect.DESTRUCTIVE)
        assert effect == SideEffect.DESTRUCTIVE

    def test_empty_statement_uses_baseline(self):
        effect, _ = classify_statement("  ;  ", SideEffect.WRITE)
        assert effect == SideEffect.WRITE

    def test_effective_side_effect_without_statement_is_declared(self, registry):
        descriptor = registry.lookup(catalog.GET_OBJECT_DDL)
        assert effective_side_effect(descriptor, {"object_type": "TABLE"}) == SideEffect.READ


class TestDescribeEffect:
    def test_drop(self, registry):
        d = registry.lookup(catalog.EXECUTE_DDL)
        text = describe_effect(d, {"ddl_statement": "DROP TABLE STAGING.TMP"}, SideEffect.DESTRUCTIVE)
        assert "permanently remove table STAGING.TMP" in text

    def test_update_without_where_warns(self, registry):
        d = registry.lookup(catalog.EXECUTE_DML)
        text = describe_effect(d, {"dml_statement": "UPDATE T SET X = 1"}, SideEffect.WRITE)
        assert "every row is affected" in text

    def test_delete_with_where(self, registry):
        d = registry.lookup(catalog.EXECUTE_DML)
        text = describe_effect(d, {"dml_statement": "DELETE FROM T WHERE ID = 1"}, SideEffect.WRITE)
        assert "delete rows from T" in text
        assert "every row" not in text

    def test_alter_drop(self, registry):
        d = registry.lookup(catalog.EXECUTE_DDL)
        text = describe_effect(d, {"ddl_statement": "ALTER TABLE T DROP COLUMN C"}, SideEffect.DESTRUCTIVE)
        assert "drop part of table T" in text

    def test_insert_overwrite(self, registry):
        d = registry.lookup(catalog.EXECUTE_DML)
        text = describe_effect(d, {"dml_statement": "INSERT OVERWRITE INTO T SELECT 1"},
                               SideEffect.DESTRUCTIVE)
        assert "delete every row in T before inserting" in text


# ─────────────────────────────────────────────────────────────────────────────
# Reply classification
# ─────────────────────────────────────────────────────────────────────────────

class TestClassifyReply:
    @pytest.mark.parametrize("text", [
        "yes", "Yes.", "y", "go ahead", "confirm", "ok, run it", "sure!",
        "yes please", "Go ahead, thanks",
    ])
    def test_affirmative(self, text):
        assert classify_reply(text) == ReplyKind.AFFIRMATIVE

    @pytest.mark.parametrize("text", ["no", "No thanks", "cancel", "don't", "never mind", "stop"])
    def test_declining(self, text):
        assert classify_reply(text) == ReplyKind.DECLINING

    @pytest.mark.parametrize("text", [
        "maybe",
        "yes but not now",
        "",
        "what would that do to my dashboards?",
        "yes " + "please " * 10,
        "ok, but what exactly will that remove?",
        "yes?",
        "sure, after lunch",
        "ok I guess, though it worries me",
    ])
    def test_ambiguous(self, text):
        assert classify_reply(text) == ReplyKind.AMBIGUOUS

    def test_gate_exposes_classifier(self):
        assert SafetyGate.classify_reply("yes") == ReplyKind.AFFIRMATIVE


# ─────────────────────────────────────────────────────────────────────────────
# Gate filtering
# ─────────────────────────────────────────────────────────────────────────────

class TestGateFilter:
    def test_default_confirm_set(self):
        assert SafetyGate().confirm_side_effects == {SideEffect.WRITE, SideEffect.DESTRUCTIVE}

    def test_confirm_set_from_members_and_names(self):
        gate = SafetyGate(confirm_side_effects=[SideEffect.WRITE, "destructive"])
        assert gate.confirm_side_effects == {SideEffect.WRITE, SideEffect.DESTRUCTIVE}

    def test_destructive_always_confirmed(self):
        gate = SafetyGate(confirm_side_effects=["WRITE"])
        assert gate.requires_confirmation(SideEffect.DESTRUCTIVE)
        assert not gate.requires_confirmation(SideEffect.READ)

    def test_drop_is_held(self, gate, ctx, registry):
        plan = Plan(steps=[_ddl_step(registry, "DROP TABLE STAGING.TMP")])
        gate.filter(plan, ctx)
        step = plan.get(0)
        assert step.status == StepStatus.AWAITING_CONFIRMATION
        assert step.side_effect == SideEffect.DESTRUCTIVE
        assert not step.authorized
        assert "STAGING.TMP" in step.effect_description

    def test_read_statement_passes_through(self, gate, ctx, registry):
        plan = Plan(steps=[_dml_step(registry, "SELECT * FROM T")])
        gate.filter(plan, ctx)
        assert plan.get(0).status == StepStatus.PENDING
        assert plan.get(0).authorized

    def test_write_not_held_when_removed_from_confirm_set(self, ctx, registry):
        gate = SafetyGate(confirm_side_effects=[SideEffect.DESTRUCTIVE])
        plan = Plan(steps=[_dml_step(registry, "INSERT INTO T VALUES (1)")])
        gate.filter(plan, ctx)
        assert plan.get(0).status == StepStatus.PENDING

    def test_confirmation_is_consumed_once(self, gate, ctx, registry):
        step = _ddl_step(registry, "DROP TABLE STAGING.TMP")
        ctx.record_confirmation(step.signature)

        first = Plan(steps=[step])
        gate.filter(first, ctx)
        assert first.get(0).status == StepStatus.PENDING
        assert first.get(0).authorized

        second = Plan(steps=[_ddl_step(registry, "DROP TABLE STAGING.TMP")])
        gate.filter(second, ctx)
        assert second.get(0).status == StepStatus.AWAITING_CONFIRMATION

    def test_confirmation_for_different_inputs_does_not_apply(self, gate, ctx, registry):
        ctx.record_confirmation(_ddl_step(registry, "DROP TABLE A").signature)
        plan = Plan(steps=[_ddl_step(registry, "DROP TABLE B")])
        gate.filter(plan, ctx)
        assert plan.get(0).status == StepStatus.AWAITING_CONFIRMATION
        assert ctx.has_confirmation(_ddl_step(registry, "DROP TABLE A").signature)

    def test_terminal_steps_untouched(self, gate, ctx, registry):
        step = _ddl_step(registry, "DROP TABLE X")
        step.mark(StepStatus.SKIPPED, "ConfirmationDeclined")
        gate.filter(Plan(steps=[step]), ctx)
        assert step.status == StepStatus.SKIPPED

    def test_decline_skips_held_step_and_dependents(self, gate, ctx, registry):
        plan = Plan(steps=[
            _ddl_step(registry, "DROP TABLE X", index=0),
            _ddl_step(registry, "SHOW TABLES", index=1, depends_on=[0]),
        ])
        gate.filter(plan, ctx)
        skipped = gate.decline(plan)
        assert [s.index for s in skipped] == [0, 1]
        assert plan.get(0).reason.startswith("ConfirmationDeclined: ExecuteDDL")
        assert plan.get(1).status == StepStatus.SKIPPED

    def test_decline_reason_names_the_error(self, gate, ctx, registry):
        plan = Plan(steps=[_dml_step(registry, "DELETE FROM T")])
        gate.filter(plan, ctx)
        gate.decline(plan, reason="by request")
        assert plan.get(0).reason == "ConfirmationDeclined: ExecuteDML by request"


# ─────────────────────────────────────────────────────────────────────────────
# Authorization check
# ─────────────────────────────────────────────────────────────────────────────

class TestRequireAuthorization:
    def test_unauthorised_mutation_raises(self, registry):
        step = _ddl_step(registry, "DROP TABLE X")
        with pytest.raises(ConfirmationRequired) as exc_info:
            require_authorization(step)
        assert exc_info.value.tool == catalog.EXECUTE_DDL
        assert exc_info.value.signature == step.signature
        assert step.side_effect == SideEffect.DESTRUCTIVE

    def test_read_statement_needs_no_authorization(self, registry):
        require_authorization(_ddl_step(registry, "SHOW TABLES"))

    def test_authorised_step_passes(self, gate, ctx, registry):
        step = _ddl_step(registry, "DROP TABLE X")
        ctx.record_confirmation(step.signature)
        gate.filter(Plan(steps=[step]), ctx)
        require_authorization(step)
