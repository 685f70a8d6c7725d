"""
tests/unit/test_composer.py — Response Composer Tests

Builds executed plans by hand and checks the composed response: kind,
evidence grouping, notices, partial statement, recommendations and the
invocation records.
"""

from __future__ import annotations

import pytest

from digitalse.agent.composer import ResponseComposer, ResponseKind, recommend
from digitalse.agent.plan import Plan, Step, StepStatus
from digitalse.tools import catalog
from digitalse.tools.catalog import build_registry
from digitalse.tools.types import EvidenceSource, SideEffect, ToolResult


@pytest.fixture(scope="module")
def registry():
    return build_registry()


@pytest.fixture
def composer():
    return ResponseComposer()


def _done(registry, index, tool, payload, inputs=None, status=StepStatus.SUCCEEDED, cached=False):
    descriptor = registry.lookup(tool)
    step = Step(index=index, descriptor=descriptor, inputs=dict(inputs or {}), status=status,
                attempts=1)
    if status == StepStatus.SUCCEEDED:
        step.result = ToolResult(
            step_index=index, tool=tool, payload=payload, elapsed_seconds=0.5,
            tokens_consumed=100, source=descriptor.source, cached=cached,
        )
    return step


class TestKinds:
    def test_empty_plan_is_fallback_without_invocations(self, composer):
        response = composer.compose(Plan(utterance="hello"))
        assert response.kind == ResponseKind.FALLBACK
        assert response.invocations == []
        assert "How do clustering keys work" in response.text

    def test_answer_groups_findings_by_source(self, composer, registry):
        plan = Plan(intents=["USAGE_ANALYSIS", "DOCUMENTATION_LOOKUP"], steps=[
            _done(registry, 0, catalog.USAGE_ANALYST, {"rows": [{"CREDITS": 1}]}),
            _done(registry, 1, catalog.DOCUMENTATION_SEARCH, {"results": []}),
        ])
        response = composer.compose(plan)
        assert response.kind == ResponseKind.ANSWER
        grouped = response.findings_by_source()
        assert set(grouped) == {EvidenceSource.WORKLOAD, EvidenceSource.DOCUMENTATION}
        assert response.acknowledgment == (
            "Let me analyze your account usage and search the Snowflake documentation."
        )
        # Workload evidence is shown before documentation
        assert response.text.index("From your workload data") < response.text.index(
            "From the Snowflake documentation"
        )
        assert len(response.invocations) == 2
        assert response.notices == []

    def test_confirmation(self, composer, registry):
        step = Step(index=0, descriptor=registry.lookup(catalog.EXECUTE_DDL),
                    inputs={"ddl_statement": "DROP TABLE STAGING.TMP"},
                    status=StepStatus.AWAITING_CONFIRMATION, side_effect=SideEffect.DESTRUCTIVE,
                    effect_description="`DROP TABLE STAGING.TMP` will permanently remove table STAGING.TMP.")
        response = composer.compose(Plan(intents=["DDL_EXECUTION"], steps=[step]))

        assert response.kind == ResponseKind.CONFIRMATION
        assert response.confirmations[0].side_effect == "DESTRUCTIVE"
        assert response.confirmations[0].signature == step.signature
        assert "Reply **yes**" in response.next_step
        assert "permanently remove" in response.text
        assert response.invocations == []

    def test_clarification_wins(self, composer, registry):
        step = Step(index=0, descriptor=registry.lookup(catalog.QUERY_TEXT_FETCHER),
                    status=StepStatus.CLARIFICATION_NEEDED, question="Which query should I look at?")
        response = composer.compose(Plan(intents=["QUERY_DEEP_DIVE"], steps=[step]))
        assert response.kind == ResponseKind.CLARIFICATION
        assert response.questions == ["Which query should I look at?"]
        assert response.notices == []

    def test_budget_partial(self, composer, registry):
        plan = Plan(budget_exhausted=True, steps=[
            _done(registry, 0, catalog.DOCUMENTATION_SEARCH, "a", {"query": "a"}),
            _done(registry, 1, catalog.DOCUMENTATION_SEARCH, "b", {"query": "b"}),
            _done(registry, 2, catalog.DOCUMENTATION_SEARCH, None, {"query": "c"},
                  status=StepStatus.SKIPPED),
            _done(registry, 3, catalog.DOCUMENTATION_SEARCH, None, {"query": "d"},
                  status=StepStatus.SKIPPED),
        ])
        for step in plan.steps[2:]:
            step.reason = "BudgetExceeded: turn budget exhausted before this step"
            step.attempts = 0

        response = composer.compose(plan)
        assert response.kind == ResponseKind.PARTIAL
        assert response.is_partial
        assert "partial" in response.partial_statement
        assert "after 2 of 4 planned steps" in response.partial_statement
        assert "2 step(s) were skipped" in response.partial_statement
        assert [n.step_index for n in response.notices] == [2, 3]
        assert len(response.invocations) == 2

    def test_failure_partial(self, composer, registry):
        failed = _done(registry, 0, catalog.USAGE_ANALYST, None, {"question": "q"},
                       status=StepStatus.FAILED)
        failed.reason = "AccountUsageAnalyst: analyst returned HTTP 400"
        response = composer.compose(Plan(steps=[failed]))
        assert response.kind == ResponseKind.PARTIAL
        assert "1 step(s) failed" in response.partial_statement
        assert response.notices[0].reason.endswith("HTTP 400")
        assert any("Re-run AccountUsageAnalyst" in r.title for r in response.recommendations)

    def test_preface_follows_acknowledgment(self, composer, registry):
        plan = Plan(intents=["DOCUMENTATION_LOOKUP"],
                    steps=[_done(registry, 0, catalog.DOCUMENTATION_SEARCH, "x", {"query": "x"})])
        response = composer.compose(plan, acknowledgment="Okay.", preface="I dropped the old request.")
        assert response.text.startswith("Okay.\n\nI dropped the old request.")

    def test_cached_finding_marked(self, composer, registry):
        plan = Plan(steps=[_done(registry, 0, catalog.FIELD_DEFINITIONS, {"A": "b"}, cached=True)])
        response = composer.compose(plan)
        assert response.findings[0].cached
        assert "_(cached)_" in response.text


class TestRecommendations:
    def test_gen2_spill_and_pruning(self, registry):
        plan = Plan(steps=[
            _done(registry, 0, catalog.QUERY_DATA_FETCHER, {
                "operators": [{"partitions_scanned": 9800, "partitions_total": 10000}],
                "bytes_spilled_to_local_storage": 5 * 1024 ** 3,
                "bytes_spilled_to_remote_storage": 0,
            }),
            _done(registry, 1, catalog.GEN2_BENCHMARK, {"speedup_factor": 1.8}),
        ])
        recs = recommend(plan)
        titles = [r.title for r in recs]
        assert titles == [
            "Improve partition pruning",
            "Try a Gen2 warehouse for this workload",
            "Reduce local spilling",
        ]
        assert recs[1].source == EvidenceSource.BENCHMARK
        assert "5.0 GB" in recs[2].rationale

    def test_remote_spill_is_top_priority(self, registry):
        plan = Plan(steps=[_done(registry, 0, catalog.QUERY_DATA_FETCHER, {
            "bytes_spilled_to_local_storage": 1,
            "bytes_spilled_to_remote_storage": 2 * 1024 ** 3,
        })])
        recs = recommend(plan)
        assert recs[0].title == "Eliminate remote spilling"
        assert recs[0].priority == 1
        assert all(r.title != "Reduce local spilling" for r in recs)

    def test_small_speedup_not_recommended(self, registry):
        plan = Plan(steps=[_done(registry, 0, catalog.GEN2_BENCHMARK, {"speedup_factor": 1.05})])
        assert recommend(plan) == []

    def test_speedup_only_read_from_benchmark_source(self, registry):
        plan = Plan(steps=[_done(registry, 0, catalog.USAGE_ANALYST, {"speedup_factor": 3.0})])
        assert recommend(plan) == []
