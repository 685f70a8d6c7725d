"""
tests/unit/test_executor.py — Plan Executor Unit Tests

Uses StaticCollaborator so every call is recorded and no network is used.

Test groups:
  - dependency waves and derived inputs
  - concurrency cap
  - failure cascade, transient retry, deadline
  - budget refusal → SKIPPED BudgetExceeded
  - confirmation barrier and clarification short-circuit
  - reference cache
"""

from __future__ import annotations

import asyncio

import pytest

from digitalse.agent.budget import BudgetLimits, BudgetTracker
from digitalse.agent.executor import PlanExecutor, ReferenceCache
from digitalse.agent.plan import Plan, Step, StepStatus
from digitalse.collaborators.base import StaticCollaborator, demo_responses
from digitalse.exceptions import PermanentCollaboratorError, TransientCollaboratorError
from digitalse.tools import catalog
from digitalse.tools.catalog import build_registry
from digitalse.tools.types import CollaboratorResponse, CostEstimate, SideEffect


@pytest.fixture(scope="module")
def registry():
    return build_registry()


@pytest.fixture
def tracker():
    return BudgetTracker()


def _executor(registry, collaborator, tracker, **kwargs):
    return PlanExecutor(registry, collaborator, tracker, **kwargs)


def _step(registry, index, tool, inputs=None, depends_on=None, derived=None, **kwargs):
    return Step(
        index=index,
        descriptor=registry.lookup(tool),
        inputs=dict(inputs or {}),
        depends_on=list(depends_on or []),
        derived=dict(derived or {}),
        **kwargs,
    )


def _deep_dive(registry, query_id="01b2-aaaa-0001"):
    return Plan(steps=[
        _step(registry, 0, catalog.QUERY_TEXT_FETCHER, {"query_id": query_id}),
        _step(registry, 1, catalog.QUERY_DATA_FETCHER, {"query_id": query_id}),
        _step(registry, 2, catalog.GEN2_BENCHMARK, depends_on=[0, 1],
              derived={"QUERY_DESC_INPUT": "query_description"}),
    ])


def _docs(registry, index, query):
    return _step(registry, index, catalog.DOCUMENTATION_SEARCH, {"query": query})


# ─────────────────────────────────────────────────────────────────────────────
# Waves and derived inputs
# ─────────────────────────────────────────────────────────────────────────────

class TestWaves:
    @pytest.mark.asyncio
    async def test_deep_dive_runs_producers_before_benchmark(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        plan = _deep_dive(registry)
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert [s.status for s in plan.steps] == [StepStatus.SUCCEEDED] * 3
        called = [name for name, _ in collaborator.calls]
        assert called[-1] == catalog.GEN2_BENCHMARK
        assert set(called[:2]) == {catalog.QUERY_TEXT_FETCHER, catalog.QUERY_DATA_FETCHER}

        description = plan.get(2).inputs["QUERY_DESC_INPUT"]
        assert description.startswith("Query with table scans, joins and aggregations")
        assert "spills to local storage" in description

    @pytest.mark.asyncio
    async def test_result_records_elapsed_and_tokens(self, registry, tracker):
        collaborator = StaticCollaborator({
            catalog.DOCUMENTATION_SEARCH: CollaboratorResponse(payload={"ok": 1}, tokens_consumed=42),
        })
        plan = Plan(steps=[_docs(registry, 0, "clustering")])
        budget = tracker.begin(BudgetLimits())
        await _executor(registry, collaborator, tracker).execute(plan, budget)

        result = plan.get(0).result
        assert result.tokens_consumed == 42
        assert result.elapsed_seconds >= 0
        assert budget.tokens_used == 42
        assert budget.outstanding == {}

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, registry, tracker):
        state = {"now": 0, "peak": 0}

        async def slow(inputs):
            state["now"] += 1
            state["peak"] = max(state["peak"], state["now"])
            await asyncio.sleep(0.02)
            state["now"] -= 1
            return {"chunk": inputs["query"]}

        collaborator = StaticCollaborator({catalog.DOCUMENTATION_SEARCH: slow})
        plan = Plan(steps=[_docs(registry, i, f"q{i}") for i in range(4)])
        executor = _executor(registry, collaborator, tracker, max_concurrency=2)
        await executor.execute(plan, tracker.begin(BudgetLimits()))

        assert state["peak"] == 2
        assert all(s.status == StepStatus.SUCCEEDED for s in plan.steps)


# ─────────────────────────────────────────────────────────────────────────────
# Failures
# ─────────────────────────────────────────────────────────────────────────────

class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_producer_skips_dependents(self, registry, tracker):
        responses = demo_responses()
        responses[catalog.QUERY_DATA_FETCHER] = PermanentCollaboratorError(
            catalog.QUERY_DATA_FETCHER, "Query not found"
        )
        collaborator = StaticCollaborator(responses)
        plan = _deep_dive(registry)
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        text, stats, bench = plan.steps
        assert text.status == StepStatus.SUCCEEDED
        assert stats.status == StepStatus.FAILED
        assert "Query not found" in stats.reason
        assert stats.attempts == 1
        assert bench.status == StepStatus.SKIPPED
        assert bench.reason == "Skipped: depends on QueryDataFetcher, which failed"
        assert collaborator.calls_to(catalog.GEN2_BENCHMARK) == []

    @pytest.mark.asyncio
    async def test_transient_read_retried_once(self, registry, tracker):
        attempts = []

        def flaky(inputs):
            attempts.append(1)
            if len(attempts) == 1:
                return TransientCollaboratorError(catalog.QUERY_TEXT_FETCHER, "connection reset")
            return {"query_text": "SELECT 1"}

        collaborator = StaticCollaborator({catalog.QUERY_TEXT_FETCHER: flaky})
        plan = Plan(steps=[_step(registry, 0, catalog.QUERY_TEXT_FETCHER, {"query_id": "a-1"})])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert plan.get(0).status == StepStatus.SUCCEEDED
        assert plan.get(0).attempts == 2

    @pytest.mark.asyncio
    async def test_transient_read_fails_after_second_error(self, registry, tracker):
        error = TransientCollaboratorError(catalog.QUERY_TEXT_FETCHER, "throttled")
        collaborator = StaticCollaborator({catalog.QUERY_TEXT_FETCHER: error})
        plan = Plan(steps=[_step(registry, 0, catalog.QUERY_TEXT_FETCHER, {"query_id": "a-1"})])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert plan.get(0).status == StepStatus.FAILED
        assert plan.get(0).attempts == 2

    @pytest.mark.asyncio
    async def test_retry_disabled(self, registry, tracker):
        error = TransientCollaboratorError(catalog.QUERY_TEXT_FETCHER, "throttled")
        collaborator = StaticCollaborator({catalog.QUERY_TEXT_FETCHER: error})
        plan = Plan(steps=[_step(registry, 0, catalog.QUERY_TEXT_FETCHER, {"query_id": "a-1"})])
        executor = _executor(registry, collaborator, tracker, retry_transient_reads=False)
        await executor.execute(plan, tracker.begin(BudgetLimits()))

        assert plan.get(0).attempts == 1

    @pytest.mark.asyncio
    async def test_transient_write_not_retried(self, registry, tracker):
        error = TransientCollaboratorError(catalog.EXECUTE_DDL, "connection reset")
        collaborator = StaticCollaborator({catalog.EXECUTE_DDL: error})
        step = _step(registry, 0, catalog.EXECUTE_DDL, {"ddl_statement": "DROP TABLE X"},
                     side_effect=SideEffect.DESTRUCTIVE, authorized=True)
        plan = Plan(steps=[step])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert step.status == StepStatus.FAILED
        assert len(collaborator.calls) == 1

    @pytest.mark.asyncio
    async def test_deadline_breach_is_final(self, registry, tracker):
        async def hang(inputs):
            await asyncio.sleep(5)

        descriptor = registry.lookup(catalog.QUERY_TEXT_FETCHER).model_copy(
            update={"cost": CostEstimate(seconds=0.05, tokens=10, max_seconds=0.05)}
        )
        step = Step(index=0, descriptor=descriptor, inputs={"query_id": "a-1"})
        collaborator = StaticCollaborator({catalog.QUERY_TEXT_FETCHER: hang})
        plan = Plan(steps=[step])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert step.status == StepStatus.FAILED
        assert "deadline" in step.reason
        assert step.attempts == 1

    @pytest.mark.asyncio
    async def test_invalid_inputs_fail_without_a_call(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        plan = Plan(steps=[_step(registry, 0, catalog.QUERY_TEXT_FETCHER, {})])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert plan.get(0).status == StepStatus.FAILED
        assert plan.get(0).reason.startswith("invalid inputs")
        assert collaborator.calls == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_step(self, registry, tracker):
        collaborator = StaticCollaborator({catalog.DOCUMENTATION_SEARCH: RuntimeError("kaboom")})
        plan = Plan(steps=[_docs(registry, 0, "x")])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert plan.get(0).status == StepStatus.FAILED
        assert "unexpected error: kaboom" in plan.get(0).reason


# ─────────────────────────────────────────────────────────────────────────────
# Budget
# ─────────────────────────────────────────────────────────────────────────────

class TestBudget:
    @pytest.mark.asyncio
    async def test_refusal_skips_remaining_steps(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        plan = Plan(steps=[_docs(registry, i, f"q{i}") for i in range(4)])
        # Each documentation search reserves 1500 tokens
        budget = tracker.begin(BudgetLimits(seconds=60, tokens=3000))
        await _executor(registry, collaborator, tracker).execute(plan, budget)

        statuses = [s.status for s in plan.steps]
        assert statuses == [StepStatus.SUCCEEDED] * 2 + [StepStatus.SKIPPED] * 2
        assert all(s.reason.startswith("BudgetExceeded") for s in plan.steps[2:])
        assert plan.budget_exhausted
        assert len(collaborator.calls) == 2

    @pytest.mark.asyncio
    async def test_refused_producer_skips_later_wave(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        plan = _deep_dive(registry)
        # Text (1500) fits, stats (3000) does not
        budget = tracker.begin(BudgetLimits(seconds=60, tokens=2000))
        await _executor(registry, collaborator, tracker).execute(plan, budget)

        assert plan.get(0).status == StepStatus.SUCCEEDED
        assert plan.get(1).status == StepStatus.SKIPPED
        assert plan.get(2).status == StepStatus.SKIPPED
        assert collaborator.calls_to(catalog.GEN2_BENCHMARK) == []


# ─────────────────────────────────────────────────────────────────────────────
# Barriers
# ─────────────────────────────────────────────────────────────────────────────

class TestBarriers:
    @pytest.mark.asyncio
    async def test_unauthorised_mutating_step_never_runs(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        step = _step(registry, 0, catalog.EXECUTE_DDL, {"ddl_statement": "DROP TABLE X"},
                     side_effect=SideEffect.DESTRUCTIVE)
        plan = Plan(steps=[step])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert step.status == StepStatus.AWAITING_CONFIRMATION
        assert collaborator.calls == []

    @pytest.mark.asyncio
    async def test_held_step_describes_its_effect(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        step = _step(registry, 0, catalog.EXECUTE_DML,
                     {"dml_statement": "DELETE FROM STAGING.EVENTS"},
                     side_effect=SideEffect.WRITE)
        plan = Plan(steps=[step])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert step.status == StepStatus.AWAITING_CONFIRMATION
        assert "STAGING.EVENTS" in step.effect_description
        assert collaborator.calls == []

    @pytest.mark.asyncio
    async def test_statement_reclassified_when_gate_skipped(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        # Built without the gate, so the step still carries the READ default
        step = _step(registry, 0, catalog.EXECUTE_DDL, {"ddl_statement": "DROP TABLE STAGING.TMP"})
        plan = Plan(steps=[step])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert step.status == StepStatus.AWAITING_CONFIRMATION
        assert step.side_effect == SideEffect.DESTRUCTIVE
        assert "permanently remove table STAGING.TMP" in step.effect_description
        assert collaborator.calls == []

    @pytest.mark.asyncio
    async def test_steps_after_held_step_wait(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        plan = Plan(steps=[
            _docs(registry, 0, "before"),
            _step(registry, 1, catalog.EXECUTE_DDL, {"ddl_statement": "DROP TABLE X"},
                  side_effect=SideEffect.DESTRUCTIVE, status=StepStatus.AWAITING_CONFIRMATION),
            _docs(registry, 2, "after"),
        ])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert plan.get(0).status == StepStatus.SUCCEEDED
        assert plan.get(1).status == StepStatus.AWAITING_CONFIRMATION
        assert plan.get(2).status == StepStatus.PENDING

    @pytest.mark.asyncio
    async def test_clarification_short_circuits_plan(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        plan = Plan(steps=[
            _step(registry, 0, catalog.QUERY_TEXT_FETCHER, status=StepStatus.CLARIFICATION_NEEDED,
                  question="Which query?"),
            _docs(registry, 1, "clustering"),
        ])
        await _executor(registry, collaborator, tracker).execute(plan, tracker.begin(BudgetLimits()))

        assert plan.get(1).status == StepStatus.SKIPPED
        assert plan.get(1).reason == "Skipped: waiting for clarification"
        assert collaborator.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Reference cache
# ─────────────────────────────────────────────────────────────────────────────

class TestReferenceCache:
    @pytest.mark.asyncio
    async def test_cacheable_result_reused_across_plans(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        cache = ReferenceCache()
        executor = _executor(registry, collaborator, tracker, cache=cache)

        first = Plan(steps=[_step(registry, 0, catalog.FIELD_DEFINITIONS)])
        await executor.execute(first, tracker.begin(BudgetLimits()))
        second = Plan(steps=[_step(registry, 0, catalog.FIELD_DEFINITIONS)])
        budget = tracker.begin(BudgetLimits())
        await executor.execute(second, budget)

        assert len(collaborator.calls_to(catalog.FIELD_DEFINITIONS)) == 1
        assert second.get(0).status == StepStatus.SUCCEEDED
        assert second.get(0).result.cached
        assert budget.tokens_used == 0
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_non_cacheable_tools_always_call(self, registry, tracker):
        collaborator = StaticCollaborator(demo_responses())
        executor = _executor(registry, collaborator, tracker)
        for _ in range(2):
            await executor.execute(Plan(steps=[_docs(registry, 0, "same")]), tracker.begin(BudgetLimits()))
        assert len(collaborator.calls_to(catalog.DOCUMENTATION_SEARCH)) == 2
        assert len(executor.cache) == 0
