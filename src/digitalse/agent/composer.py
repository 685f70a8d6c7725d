"""
agent/composer.py — Response Composer

Turns an executed Plan into an AgentResponse the interface can render.

Response structure:
  1. Acknowledgment of the request
  2. Findings, grouped and labelled by evidence source
  3. Prioritised recommendations
  4. A notice for every step that did not succeed
  5. An explicit partial-answer statement when the budget ran out
  6. Next step (confirmation prompt, clarifying question or follow-up)
  7. Tool invocation records
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Optional

from digitalse.agent.plan import Plan, Step, StepStatus
from digitalse.tools.types import EvidenceSource, ToolResult

_FINDING_CHARS = 1_200


class ResponseKind(str, Enum):
    ANSWER = "answer"
    PARTIAL = "partial"
    CONFIRMATION = "confirmation"
    CLARIFICATION = "clarification"
    FALLBACK = "fallback"


_SOURCE_LABELS = {
    EvidenceSource.DOCUMENTATION: "📘 From the Snowflake documentation",
    EvidenceSource.WORKLOAD: "📊 From your workload data",
    EvidenceSource.BENCHMARK: "📈 Benchmark estimate (model-matched, not measured on your account)",
    EvidenceSource.REFERENCE: "📎 Reference definitions and thresholds",
}
_SOURCE_ORDER = [
    EvidenceSource.WORKLOAD,
    EvidenceSource.DOCUMENTATION,
    EvidenceSource.BENCHMARK,
    EvidenceSource.REFERENCE,
]

_INTENT_ACTIONS = {
    "DOCUMENTATION_LOOKUP": "search the Snowflake documentation",
    "USAGE_ANALYSIS": "analyze your account usage",
    "QUERY_DEEP_DIVE": "analyze that query's text and operator statistics",
    "GEN2_PREDICTION": "estimate the benefit of a Gen2 warehouse",
    "DDL_INSPECTION": "extract the object's DDL",
    "DDL_EXECUTION": "run your DDL statement",
    "DML_EXECUTION": "run your DML statement",
    "METRIC_REFERENCE": "look up metric definitions and performance thresholds",
    "SUGGESTED": "check the most relevant tool",
}

_FOLLOW_UPS = {
    "QUERY_DEEP_DIVE": "Want me to pull the DDL of the tables this query scans?",
    "USAGE_ANALYSIS": "Want me to drill into one of these queries? Just share its query ID.",
    "DOCUMENTATION_LOOKUP": "Want me to check how this applies to your own workload?",
    "DDL_INSPECTION": "Want me to check how often this object is scanned and how well it prunes?",
    "GEN2_PREDICTION": "Want me to compare this against a specific query? Share its query ID.",
}

_EXAMPLE_QUESTIONS = (
    "How do clustering keys work in Snowflake?",
    "What queries consumed the most credits last week?",
    "Analyze query performance for query ID <your-query-id>",
    "What is the DDL for table MY_DB.MY_SCHEMA.MY_TABLE?",
)


@dataclass
class Finding:
    source: EvidenceSource
    tool: str
    step_index: int
    text: str
    cached: bool = False


@dataclass
class Recommendation:
    priority: int               # 1 = act first
    title: str
    rationale: str
    source: Optional[EvidenceSource] = None


@dataclass
class Notice:
    step_index: int
    tool: str
    status: StepStatus
    reason: str


@dataclass
class ToolInvocation:
    step_index: int
    tool: str
    inputs: dict[str, Any]
    status: StepStatus
    elapsed_seconds: float = 0.0
    tokens_consumed: int = 0
    cached: bool = False


@dataclass
class ConfirmationRequest:
    step_index: int
    tool: str
    side_effect: str
    effect: str
    signature: str


@dataclass
class AgentResponse:
    """Composed output of one turn. `text` is the Markdown rendering."""
    kind: ResponseKind
    acknowledgment: str
    findings: list[Finding] = field(default_factory=list)
    recommendations: list[Recommendation] = field(default_factory=list)
    notices: list[Notice] = field(default_factory=list)
    partial_statement: Optional[str] = None
    next_step: str = ""
    invocations: list[ToolInvocation] = field(default_factory=list)
    confirmations: list[ConfirmationRequest] = field(default_factory=list)
    questions: list[str] = field(default_factory=list)
    plan_id: Optional[str] = None
    text: str = ""

    @property
    def is_partial(self) -> bool:
        return self.partial_statement is not None

    def findings_by_source(self) -> dict[EvidenceSource, list[Finding]]:
        grouped: dict[EvidenceSource, list[Finding]] = {}
        for finding in self.findings:
            grouped.setdefault(finding.source, []).append(finding)
        return grouped

    def __str__(self) -> str:
        return self.text


class ResponseComposer:
    """Builds AgentResponse objects from executed plans."""

    def compose(
        self,
        plan: Plan,
        acknowledgment: Optional[str] = None,
        preface: Optional[str] = None,
    ) -> AgentResponse:
        """
        Args:
            plan:           The plan after gate filtering and execution.
            acknowledgment: Replaces the default acknowledgment line.
            preface:        Extra sentence placed right after the acknowledgment.
        """
        if plan.is_empty:
            response = self._fallback(plan, acknowledgment)
            response.text = render_markdown(response, preface)
            return response

        response = AgentResponse(
            kind=ResponseKind.ANSWER,
            acknowledgment=acknowledgment or self._acknowledge(plan),
            plan_id=plan.id,
        )
        response.findings = [_finding(s) for s in plan.steps if s.status == StepStatus.SUCCEEDED and s.result]
        response.recommendations = recommend(plan)
        response.notices = [
            Notice(step_index=s.index, tool=s.tool, status=s.status, reason=s.reason or s.status.value)
            for s in plan.steps
            if s.status not in (StepStatus.SUCCEEDED, StepStatus.CLARIFICATION_NEEDED)
        ]
        response.invocations = [_invocation(s) for s in plan.steps if s.attempts > 0 or s.result]
        response.confirmations = [
            ConfirmationRequest(
                step_index=s.index,
                tool=s.tool,
                side_effect=s.side_effect.value,
                effect=s.effect_description,
                signature=s.signature,
            )
            for s in plan.awaiting_confirmation
        ]
        response.questions = [s.question for s in plan.clarifications]

        failed = plan.with_status(StepStatus.FAILED)
        if plan.budget_exhausted:
            skipped = [s for s in plan.with_status(StepStatus.SKIPPED) if "BudgetExceeded" in s.reason]
            ran = len(plan.with_status(StepStatus.SUCCEEDED, StepStatus.FAILED))
            response.partial_statement = (
                f"⏱️ This answer is partial: the turn's time/token budget ran out after "
                f"{ran} of {len(plan.steps)} planned steps, so {len(skipped)} step(s) were skipped."
            )
        elif failed:
            response.partial_statement = (
                f"⚠️ This answer is partial: {len(failed)} step(s) failed, so some evidence is missing."
            )

        if response.questions:
            response.kind = ResponseKind.CLARIFICATION
            response.next_step = " ".join(dict.fromkeys(response.questions))
        elif response.confirmations:
            response.kind = ResponseKind.CONFIRMATION
            response.next_step = "Reply **yes** to run it exactly as shown, or **no** to cancel."
        elif response.is_partial:
            response.kind = ResponseKind.PARTIAL
            response.next_step = (
                "Ask again to pick up the skipped steps, or narrow the question."
                if plan.budget_exhausted
                else "Ask again to retry the failed steps."
            )
        else:
            response.next_step = next(
                (_FOLLOW_UPS[i] for i in plan.intents if i in _FOLLOW_UPS),
                "Anything else you'd like me to look into?",
            )

        response.text = render_markdown(response, preface)
        return response

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _fallback(self, plan: Plan, acknowledgment: Optional[str]) -> AgentResponse:
        examples = "\n".join(f"- {q}" for q in _EXAMPLE_QUESTIONS)
        return AgentResponse(
            kind=ResponseKind.FALLBACK,
            acknowledgment=acknowledgment or (
                "I couldn't match that to anything I can look up or run."
            ),
            next_step=f"Try asking something like:\n{examples}",
            plan_id=plan.id,
        )

    def _acknowledge(self, plan: Plan) -> str:
        actions = [_INTENT_ACTIONS[i] for i in plan.intents if i in _INTENT_ACTIONS]
        if not actions:
            return "Here's what I found."
        if len(actions) == 1:
            joined = actions[0]
        else:
            joined = ", ".join(actions[:-1]) + " and " + actions[-1]
        return f"Let me {joined}."


# ─────────────────────────────────────────────────────────────────────────────
# Findings / invocations
# ─────────────────────────────────────────────────────────────────────────────


def _finding(step: Step) -> Finding:
    result: ToolResult = step.result
    return Finding(
        source=result.source,
        tool=step.tool,
        step_index=step.index,
        text=result.payload_text(max_chars=_FINDING_CHARS),
        cached=result.cached,
    )


def _invocation(step: Step) -> ToolInvocation:
    result = step.result
    return ToolInvocation(
        step_index=step.index,
        tool=step.tool,
        inputs=dict(step.inputs),
        status=step.status,
        elapsed_seconds=result.elapsed_seconds if result else 0.0,
        tokens_consumed=result.tokens_consumed if result else 0,
        cached=result.cached if result else False,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Recommendations
# ─────────────────────────────────────────────────────────────────────────────

_SPEEDUP_KEY = re.compile(r"speed\s*up|improvement|factor", re.IGNORECASE)
_SPILL_KEY = re.compile(r"bytes_spilled_to_(local|remote)_storage", re.IGNORECASE)

_GB = 1024 ** 3
_POOR_PRUNING_RATIO = 0.8
_GEN2_WORTHWHILE = 1.2


def recommend(plan: Plan) -> list[Recommendation]:
    """Derive prioritised recommendations from step results and failures."""
    recs: list[Recommendation] = []
    for step in plan.steps:
        if step.status == StepStatus.SUCCEEDED and step.result is not None:
            recs.extend(_from_result(step.result))
        elif step.status == StepStatus.FAILED:
            recs.append(Recommendation(
                priority=4,
                title=f"Re-run {step.tool} once the problem is resolved",
                rationale=(
                    f"It failed ({step.reason}). Check the input values and that "
                    f"your role can use the tool, then ask again."
                ),
            ))

    unique: dict[str, Recommendation] = {}
    for rec in recs:
        if rec.title not in unique or rec.priority < unique[rec.title].priority:
            unique[rec.title] = rec
    return sorted(unique.values(), key=lambda r: (r.priority, r.title))


def _from_result(result: ToolResult) -> list[Recommendation]:
    recs: list[Recommendation] = []
    pairs = list(_walk(result.payload))

    if result.source == EvidenceSource.BENCHMARK:
        speedup = next(
            (float(v) for k, v in pairs
             if _SPEEDUP_KEY.search(k) and isinstance(v, (int, float)) and not isinstance(v, bool)),
            None,
        )
        if speedup is not None and speedup >= _GEN2_WORTHWHILE:
            recs.append(Recommendation(
                priority=2 if speedup >= 1.5 else 3,
                title="Try a Gen2 warehouse for this workload",
                rationale=(
                    f"The matching benchmark estimates about {speedup:.1f}x faster execution. "
                    f"Gen2 gains are largest for scans, joins, DML and semi-structured data."
                ),
                source=EvidenceSource.BENCHMARK,
            ))

    spills = {}
    for key, value in pairs:
        match = _SPILL_KEY.search(key)
        if match and isinstance(value, (int, float)) and value > 0:
            spills[match.group(1).lower()] = value
    if "remote" in spills:
        recs.append(Recommendation(
            priority=1,
            title="Eliminate remote spilling",
            rationale=(
                f"{spills['remote'] / _GB:.1f} GB spilled to remote storage. Use a larger "
                f"warehouse or reduce the data each operator processes."
            ),
            source=result.source,
        ))
    elif "local" in spills:
        recs.append(Recommendation(
            priority=3,
            title="Reduce local spilling",
            rationale=(
                f"{spills['local'] / _GB:.1f} GB spilled to local storage. Consider a larger "
                f"warehouse or filtering earlier in the query."
            ),
            source=result.source,
        ))

    scanned = _number(pairs, "partitions_scanned")
    total = _number(pairs, "partitions_total")
    if scanned is not None and total:
        ratio = scanned / total
        if ratio >= _POOR_PRUNING_RATIO:
            recs.append(Recommendation(
                priority=2,
                title="Improve partition pruning",
                rationale=(
                    f"The query scanned {ratio:.0%} of micro-partitions. A clustering key on "
                    f"the filter columns, or more selective predicates, would cut the scan."
                ),
                source=result.source,
            ))
    return recs


def _number(pairs: list[tuple[str, Any]], key: str) -> Optional[float]:
    for k, v in pairs:
        if k.lower() == key and isinstance(v, (int, float)) and not isinstance(v, bool):
            return float(v)
    return None


def _walk(payload: Any, key: str = "") -> Iterator[tuple[str, Any]]:
    """Yield (key, value) for every leaf of a nested payload."""
    if isinstance(payload, dict):
        for k, v in payload.items():
            yield from _walk(v, str(k))
    elif isinstance(payload, list):
        for item in payload:
            yield from _walk(item, key)
    else:
        yield key, payload


# ─────────────────────────────────────────────────────────────────────────────
# Rendering
# ─────────────────────────────────────────────────────────────────────────────

_STATUS_ICONS = {
    StepStatus.SUCCEEDED: "✅",
    StepStatus.FAILED: "❌",
    StepStatus.SKIPPED: "⏭️",
    StepStatus.AWAITING_CONFIRMATION: "⏸️",
    StepStatus.PENDING: "…",
    StepStatus.RUNNING: "⚙️",
}


def render_markdown(response: AgentResponse, preface: Optional[str] = None) -> str:
    lines: list[str] = [response.acknowledgment]
    if preface:
        lines += ["", preface]

    grouped = response.findings_by_source()
    for source in _SOURCE_ORDER:
        findings = grouped.get(source)
        if not findings:
            continue
        lines += ["", f"### {_SOURCE_LABELS[source]}"]
        for finding in findings:
            cached = " _(cached)_" if finding.cached else ""
            lines += [f"**{finding.tool}**{cached}", "```", finding.text, "```"]

    if response.recommendations:
        lines += ["", "### Recommendations"]
        for i, rec in enumerate(response.recommendations, 1):
            lines.append(f"{i}. **{rec.title}**: {rec.rationale}")

    if response.confirmations:
        lines += ["", "### 🚨 Confirmation required"]
        for req in response.confirmations:
            lines.append(f"- `{req.tool}` ({req.side_effect}): {req.effect}")

    if response.notices:
        lines += ["", "### Notices"]
        for notice in response.notices:
            icon = _STATUS_ICONS.get(notice.status, "•")
            lines.append(f"- {icon} `{notice.tool}` {notice.status.value.lower()}: {notice.reason}")

    if response.partial_statement:
        lines += ["", response.partial_statement]

    if response.next_step:
        lines += ["", response.next_step]

    if response.invocations:
        lines += ["", "<details><summary>Tool calls</summary>", ""]
        for inv in response.invocations:
            cached = ", cached" if inv.cached else ""
            lines.append(
                f"- #{inv.step_index} `{inv.tool}` {inv.status.value} "
                f"({inv.elapsed_seconds:.2f}s, {inv.tokens_consumed} tokens{cached})"
            )
        lines += ["", "</details>"]

    return "\n".join(lines)
