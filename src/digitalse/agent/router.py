"""
agent/router.py — Intent Router

Turns one utterance (plus the session's conversation context) into a Plan.

Routing is deterministic: a versioned rule table maps each Intent to
keyword patterns and an ordered tool template. Every matching intent is
planned, in table order, unless an earlier match suppresses it. Entities
(query ids, object names, SQL statements) are extracted from the utterance;
elided references ("that query", "this table") resolve from the context.
A missing required entity produces a CLARIFICATION_NEEDED step instead of a
guessed input.

When no rule matches, an optional suggester may propose READ-only steps.
Its output is untrusted and validated against the registry before it
becomes part of the plan.

Usage:
    router = IntentRouter(registry)
    plan = router.plan_for("Analyze query performance for query abc-123", context)
    plan = await router.route(utterance, context)    # with suggester fallback
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Protocol

from digitalse.agent.derivations import QUERY_DESCRIPTION
from digitalse.agent.plan import Plan, Step, StepStatus, dedupe_steps, order_steps
from digitalse.exceptions import ClarificationNeeded, RoutingAmbiguityError
from digitalse.observability.logger import get_logger
from digitalse.safety.statements import effective_side_effect
from digitalse.tools import catalog
from digitalse.tools.registry import ToolRegistry, validate_inputs
from digitalse.tools.types import SideEffect

if TYPE_CHECKING:
    from digitalse.agent.session import ConversationContext

log = get_logger(__name__)

RULE_TABLE_VERSION = "1.3"


class Intent(str, Enum):
    DOCUMENTATION_LOOKUP = "DOCUMENTATION_LOOKUP"
    USAGE_ANALYSIS = "USAGE_ANALYSIS"
    QUERY_DEEP_DIVE = "QUERY_DEEP_DIVE"
    GEN2_PREDICTION = "GEN2_PREDICTION"
    DDL_INSPECTION = "DDL_INSPECTION"
    DDL_EXECUTION = "DDL_EXECUTION"
    DML_EXECUTION = "DML_EXECUTION"
    METRIC_REFERENCE = "METRIC_REFERENCE"


# ─────────────────────────────────────────────────────────────────────────────
# Rule table
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TemplateStep:
    """
    One tool slot of an intent template.

    inputs maps tool parameter → entity name (see Entities). depends_on
    names other slots of the same template by key.
    """
    key: str
    tool: str
    inputs: tuple[tuple[str, str], ...] = ()
    derived: tuple[tuple[str, str], ...] = ()
    depends_on: tuple[str, ...] = ()


@dataclass(frozen=True)
class IntentRule:
    intent: Intent
    patterns: tuple[re.Pattern, ...]
    template: tuple[TemplateStep, ...]
    triggers: tuple[str, ...] = ()          # entities whose mere mention matches
    suppresses: tuple[Intent, ...] = ()

    def matches(self, utterance: str, entities: "Entities") -> bool:
        if any(entities.mentions(name) for name in self.triggers):
            return True
        return any(p.search(utterance) for p in self.patterns)

    @property
    def tools(self) -> list[str]:
        return [slot.tool for slot in self.template]


def _p(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


RULE_TABLE: tuple[IntentRule, ...] = (
    IntentRule(
        intent=Intent.DDL_EXECUTION,
        patterns=(),
        triggers=("ddl_statement",),
        template=(
            TemplateStep("ddl", catalog.EXECUTE_DDL, inputs=(("ddl_statement", "ddl_statement"),)),
        ),
        suppresses=(Intent.DOCUMENTATION_LOOKUP, Intent.USAGE_ANALYSIS, Intent.DDL_INSPECTION),
    ),
    IntentRule(
        intent=Intent.DML_EXECUTION,
        patterns=(),
        triggers=("dml_statement",),
        template=(
            TemplateStep("dml", catalog.EXECUTE_DML, inputs=(("dml_statement", "dml_statement"),)),
        ),
        suppresses=(Intent.DOCUMENTATION_LOOKUP, Intent.USAGE_ANALYSIS),
    ),
    IntentRule(
        intent=Intent.DDL_INSPECTION,
        patterns=_p(
            r"\b(get_)?ddl\b",
            r"\b(definition|structure|columns)\s+(of|for)\s+(the\s+|this\s+|that\s+)?"
            r"(dynamic\s+table|table|view|schema|database|function|procedure|warehouse|stream|task|pipe|stage)\b",
            r"\bhow\s+is\s+(the\s+|this\s+|that\s+)?"
            r"(dynamic\s+table|table|view|schema|database|function|procedure|stream|task|pipe)\b.*\bdefined\b",
        ),
        template=(
            TemplateStep("ddl", catalog.GET_OBJECT_DDL, inputs=(
                ("object_type", "object_type"),
                ("object_name", "object_name"),
            )),
        ),
        suppresses=(Intent.DOCUMENTATION_LOOKUP,),
    ),
    IntentRule(
        intent=Intent.QUERY_DEEP_DIVE,
        patterns=_p(
            r"\b(analy[sz]e|diagnose|investigate|troubleshoot|profile|deep[\s-]*dive\s+into|explain)\s+"
            r"(the\s+)?(performance\s+of\s+)?(this\s+|that\s+|a\s+|my\s+|one\s+)?(slow\s+)?query\b"
            r"(?!\s+(history|patterns|workload|load))",
            r"\bwhy\s+(is|was)\s+(this|that|my)\s+query\s+(so\s+)?slow\b",
        ),
        triggers=("query_id",),
        template=(
            TemplateStep("text", catalog.QUERY_TEXT_FETCHER, inputs=(("query_id", "query_id"),)),
            TemplateStep("stats", catalog.QUERY_DATA_FETCHER, inputs=(("query_id", "query_id"),)),
            TemplateStep(
                "benchmark", catalog.GEN2_BENCHMARK,
                derived=(("QUERY_DESC_INPUT", QUERY_DESCRIPTION),),
                depends_on=("text", "stats"),
            ),
        ),
        suppresses=(Intent.GEN2_PREDICTION, Intent.USAGE_ANALYSIS, Intent.DOCUMENTATION_LOOKUP),
    ),
    IntentRule(
        intent=Intent.GEN2_PREDICTION,
        patterns=_p(r"\bgen\s*-?\s*2\b", r"\bgeneration\s*(2|two)\b"),
        template=(
            TemplateStep("benchmark", catalog.GEN2_BENCHMARK,
                         inputs=(("QUERY_DESC_INPUT", "utterance"),)),
        ),
    ),
    IntentRule(
        intent=Intent.METRIC_REFERENCE,
        patterns=_p(
            r"\bfield\s+definitions?\b",
            r"\b(performance\s+)?thresholds?\b",
            r"\banalysis\s+guidance\b",
            r"\bwhat\s+does\s+(the\s+)?[\w\s]{1,40}?\s+(metric|field|statistic|column)\s+mean\b",
            r"\b(operator_statistics|execution_time_breakdown|operator_type)\b",
        ),
        template=(
            TemplateStep("fields", catalog.FIELD_DEFINITIONS),
            TemplateStep("guidance", catalog.ANALYSIS_GUIDANCE),
        ),
        suppresses=(Intent.DOCUMENTATION_LOOKUP,),
    ),
    IntentRule(
        intent=Intent.USAGE_ANALYSIS,
        patterns=_p(
            r"\b(my|our)\s+(\w+\s+){0,2}(queries|query\s+history|warehouses?|tables|users|workload|account|credits?)\b",
            r"\b(which|what)\s+(of\s+my\s+)?(queries|tables|warehouses|users)\b",
            r"\b(show|list|find)\s+(me\s+)?(the\s+|all\s+)?(queries|tables|warehouses|users)\b",
            r"\b(most|top|highest)\s+(\d+\s+)?(expensive|costly|credit|slowest)\b",
            r"\bcredits?\s+(consum|us|spen)\w*\b",
            r"\bquery\s+history\b",
            r"\b(spill(ing|ed)?|queu(ed|ing)|cache\s+hit\s+rates?|pruning\s+history|poor\s+pruning)\b",
            r"\b(last|past|this|previous)\s+(\d+\s+)?(week|month|day|quarter|year|days|weeks|months)\b",
            r"\beligible\s+for\b",
        ),
        template=(
            TemplateStep("usage", catalog.USAGE_ANALYST, inputs=(("question", "utterance"),)),
        ),
    ),
    IntentRule(
        intent=Intent.DOCUMENTATION_LOOKUP,
        patterns=_p(
            r"^\s*how\s+(do|does|can|should|to|is|are)\b",
            r"^\s*(what|why)\s+(is|are)\s+(?!(my|our|the\s+most)\b)",
            r"^\s*when\s+(should|do|does|to)\b",
            r"\bexplain\b",
            r"\bbest\s+practices?\b",
            r"\bsyntax\b",
            r"\b(documentation|docs)\b",
            r"\bdifference\s+between\b",
            r"\bhow\s+to\b",
        ),
        template=(
            TemplateStep("docs", catalog.DOCUMENTATION_SEARCH, inputs=(("query", "utterance"),)),
        ),
    ),
)


def referenced_tools(rules: tuple[IntentRule, ...] = RULE_TABLE) -> list[str]:
    """Every tool name the rule table routes to."""
    names: list[str] = []
    for rule in rules:
        for tool in rule.tools:
            if tool not in names:
                names.append(tool)
    return names


# ─────────────────────────────────────────────────────────────────────────────
# Entity extraction
# ─────────────────────────────────────────────────────────────────────────────

_UUID_RE = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE
)
# "query abc-123", "query_id: 01b2-...": dashed ids with at least one digit
_DASHED_ID_RE = re.compile(
    r"\bquery(?:[\s_-]*id)?\s*[:#=]?\s*((?=[A-Za-z0-9-]*\d)[A-Za-z0-9]+(?:-[A-Za-z0-9]+)+)\b",
    re.IGNORECASE,
)
# "query ID abc123": explicit id keyword, dash not required
_EXPLICIT_ID_RE = re.compile(
    r"\bquery[\s_-]*id\s*[:#=]?\s*((?=[A-Za-z0-9-]*\d)[A-Za-z0-9][A-Za-z0-9-]*)\b",
    re.IGNORECASE,
)
_ELIDED_QUERY_RE = re.compile(
    r"\b(that|this|the\s+same|the\s+previous|the\s+last|my\s+last|previous|same)\s+query\b",
    re.IGNORECASE,
)

_OBJECT_TYPES = (
    "dynamic table", "materialized view", "table", "view", "schema", "database",
    "function", "procedure", "warehouse", "stream", "task", "pipe", "stage",
)
_OBJECT_TYPE_ALT = "|".join(t.replace(" ", r"\s+") for t in _OBJECT_TYPES)
_IDENT = r"[A-Za-z_\"][\w$\"]*(?:\.[A-Za-z_\"][\w$\"]*){0,2}"
_OBJECT_RE = re.compile(rf"\b({_OBJECT_TYPE_ALT})\s+({_IDENT})", re.IGNORECASE)
_ELIDED_OBJECT_RE = re.compile(
    rf"\b(that|this|the\s+same|the\s+previous|same)\s+({_OBJECT_TYPE_ALT})\b", re.IGNORECASE
)
# Words that follow an object type but are not object names
_NOT_NAMES = frozenset({
    "is", "are", "was", "for", "of", "in", "on", "with", "that", "this", "and",
    "or", "to", "the", "a", "an", "it", "definition", "ddl", "structure",
    "look", "please", "named", "called", "do", "does", "would", "should",
    "keys", "key", "scan", "scans", "syntax", "size", "sizes", "pruning",
})

# ── SQL statements ──────────────────────────────────────────────────────────

_DDL_OBJECT = (
    r"(?:(?:or\s+replace|if\s+(?:not\s+)?exists|transient|temporary|temp|secure|"
    r"dynamic|materialized|external|recursive|terse)\s+)*"
    r"(?:tables?|views?|schemas?|databases?|warehouses?|stages?|streams?|tasks?|pipes?|"
    r"functions?|procedures?|roles?|users?|sequences?|file\s+formats?|columns|objects|"
    r"grants|parameters|integrations?|shares?)\b"
)
_DDL_RE = re.compile(
    rf"^(?:(?:create|alter|drop|undrop|show|describe|desc)\s+{_DDL_OBJECT}"
    r"|truncate\s+(?:table\s+)?(?:if\s+exists\s+)?[\w$.\"]+"
    r"|comment\s+on\s+\w+"
    r"|(?:grant|revoke)\s+.+\bon\b)",
    re.IGNORECASE | re.DOTALL,
)
_DML_RE = re.compile(
    r"^(?:select\s+.+\bfrom\b"
    r"|with\s+\w+\s+as\s*\(.+\bselect\b"
    r"|insert\s+(?:overwrite\s+)?into\b"
    r"|update\s+[\w$.\"]+\s+set\b"
    r"|delete\s+from\b"
    r"|merge\s+into\b)",
    re.IGNORECASE | re.DOTALL,
)
_BACKTICKS_RE = re.compile(r"`{1,3}(?:sql)?\s*([^`]+?)\s*`{1,3}", re.IGNORECASE)
_RUN_RE = re.compile(r"\b(?:run|execute)\s*:?\s+(.+)$", re.IGNORECASE | re.DOTALL)
_LEADING_RE = re.compile(r"^\s*(?:please\s+)?(?:(?:run|execute)\s*:?\s+)?(.+)$",
                         re.IGNORECASE | re.DOTALL)
_TRAILING_NOISE_RE = re.compile(r"(\s+(please|for\s+me|now))+\s*$|[\s;.!]+$", re.IGNORECASE)

_SQL_KEYWORDS = frozenset({
    "create", "or", "replace", "alter", "drop", "undrop", "truncate", "show",
    "describe", "desc", "grant", "revoke", "comment", "on", "if", "exists",
    "not", "transient", "temporary", "temp", "secure", "dynamic",
    "materialized", "external", "recursive", "terse", "table", "tables",
    "view", "views", "schema", "schemas", "database", "databases",
    "warehouse", "warehouses", "stage", "stages", "stream", "streams", "task",
    "tasks", "pipe", "pipes", "function", "functions", "procedure",
    "procedures", "role", "roles", "user", "users", "sequence", "sequences",
    "file", "format", "formats", "columns", "objects", "grants",
    "parameters", "select", "insert", "overwrite", "into", "update",
    "delete", "from", "merge", "with", "distinct",
})


def normalise_statement(sql: str) -> str:
    """
    Canonical statement text: whitespace collapsed, trailing terminators and
    politeness stripped, leading keywords upper-cased.

      "Drop table STAGING.TMP;"  →  "DROP TABLE STAGING.TMP"
    """
    text = " ".join(sql.split())
    previous = None
    while previous != text:
        previous = text
        text = _TRAILING_NOISE_RE.sub("", text)
    words = text.split(" ")
    for i, word in enumerate(words):
        if word.lower() not in _SQL_KEYWORDS:
            break
        words[i] = word.upper()
    return " ".join(words)


def extract_statement(utterance: str) -> tuple[Optional[str], Optional[str]]:
    """
    Find an explicit SQL statement in the utterance.

    A statement counts only when it opens the utterance (optionally after
    "please" / "run" / "execute"), sits in backticks, or follows "run" /
    "execute". Returns (ddl_statement, dml_statement); at most one is set.
    """
    candidates: list[str] = []
    candidates.extend(m.group(1) for m in _BACKTICKS_RE.finditer(utterance))
    leading = _LEADING_RE.match(utterance)
    if leading:
        candidates.append(leading.group(1))
    run = _RUN_RE.search(utterance)
    if run:
        candidates.append(run.group(1))

    for candidate in candidates:
        text = candidate.strip()
        if _DDL_RE.search(text):
            return normalise_statement(text), None
        if _DML_RE.search(text):
            return None, normalise_statement(text)
    return None, None


def _object_type_token(raw: str) -> str:
    return "_".join(raw.upper().split())


@dataclass
class Entities:
    """Entities found in one utterance, after context resolution."""
    utterance: str
    values: dict[str, Any] = field(default_factory=dict)
    mentioned: set[str] = field(default_factory=set)   # explicit or elided
    unresolved: set[str] = field(default_factory=set)  # elided, nothing in context

    def get(self, name: str) -> Any:
        if name == "utterance":
            return self.utterance
        return self.values.get(name)

    def mentions(self, name: str) -> bool:
        return name in self.mentioned


def extract_entities(utterance: str, context: Optional["ConversationContext"] = None) -> Entities:
    """Pull query ids, object references and statements out of the utterance."""
    entities = Entities(utterance=utterance)
    remembered = context.entities if context is not None else {}

    ddl, dml = extract_statement(utterance)
    if ddl:
        entities.values["ddl_statement"] = ddl
        entities.mentioned.add("ddl_statement")
    if dml:
        entities.values["dml_statement"] = dml
        entities.mentioned.add("dml_statement")

    # ── Query id ─────────────────────────────────────────────────────────────
    query_id = None
    for pattern in (_UUID_RE, _DASHED_ID_RE, _EXPLICIT_ID_RE):
        match = pattern.search(utterance)
        if match:
            query_id = match.group(match.lastindex or 0)
            break
    if query_id:
        entities.values["query_id"] = query_id
        entities.mentioned.add("query_id")
    elif _ELIDED_QUERY_RE.search(utterance):
        entities.mentioned.add("query_id")
        if remembered.get("query_id"):
            entities.values["query_id"] = remembered["query_id"]
        else:
            entities.unresolved.add("query_id")

    # ── Object reference (not taken from inside a statement) ────────────────
    if not (ddl or dml):
        obj = None
        for match in _OBJECT_RE.finditer(utterance):
            name = match.group(2)
            if name.lower() not in _NOT_NAMES:
                obj = (_object_type_token(match.group(1)), name)
                break
        if obj:
            entities.values["object_type"], entities.values["object_name"] = obj
            entities.mentioned.update({"object_type", "object_name"})
        else:
            elided = _ELIDED_OBJECT_RE.search(utterance)
            if elided:
                entities.mentioned.update({"object_type", "object_name"})
                if remembered.get("object_name"):
                    entities.values["object_name"] = remembered["object_name"]
                    entities.values["object_type"] = (
                        remembered.get("object_type") or _object_type_token(elided.group(2))
                    )
                else:
                    entities.unresolved.update({"object_type", "object_name"})

    return entities


_CLARIFY_QUESTIONS = {
    "query_id": "Which query should I look at? Please share its query ID.",
    "object_name": (
        "Which object do you mean? Please give its type and fully qualified "
        "name, for example TABLE MY_DB.MY_SCHEMA.MY_TABLE."
    ),
    "object_type": (
        "Which object do you mean? Please give its type and fully qualified "
        "name, for example TABLE MY_DB.MY_SCHEMA.MY_TABLE."
    ),
}


def _resolve_inputs(slot: TemplateStep, entities: Entities) -> dict[str, Any]:
    """Map a template slot's inputs from entities. Raises ClarificationNeeded on the first gap."""
    inputs: dict[str, Any] = {}
    for param, entity in slot.inputs:
        value = entities.get(entity)
        if value is None:
            raise ClarificationNeeded(
                entity, _CLARIFY_QUESTIONS.get(entity, f"Please provide the {entity.replace('_', ' ')}.")
            )
        inputs[param] = value
    return inputs


# ─────────────────────────────────────────────────────────────────────────────
# Suggester fallback
# ─────────────────────────────────────────────────────────────────────────────


class IntentSuggester(Protocol):
    """
    Proposes tool calls for open-ended questions no rule matched.
    Returns a list of {"tool": name, "inputs": {...}} dicts.
    """

    async def suggest(self, utterance: str, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        ...


class SearchSuggester:
    """
    Suggests the best registry.search() hit among read-only tools that take
    a single free-text parameter, passing the utterance through.
    """

    def __init__(self, registry: ToolRegistry, max_suggestions: int = 1) -> None:
        self._registry = registry
        self._max = max_suggestions

    async def suggest(self, utterance: str, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        suggestions = []
        for descriptor in self._registry.search(utterance):
            required = descriptor.required_params
            if descriptor.side_effect != SideEffect.READ or len(required) != 1:
                continue
            if descriptor.input_schema[required[0]].type != "string":
                continue
            suggestions.append({"tool": descriptor.name, "inputs": {required[0]: utterance}})
            if len(suggestions) >= self._max:
                break
        return suggestions


# ─────────────────────────────────────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────────────────────────────────────


class IntentRouter:
    """
    Maps an utterance to a Plan using RULE_TABLE.

    Stateless: the only per-session input is the ConversationContext, read
    but never mutated.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        rules: tuple[IntentRule, ...] = RULE_TABLE,
        suggester: Optional[IntentSuggester] = None,
    ) -> None:
        self._registry = registry
        self._rules = rules
        self._suggester = suggester
        catalog.check_catalog(registry, referenced_tools(rules))

    @property
    def version(self) -> str:
        return RULE_TABLE_VERSION

    def classify(self, utterance: str, context: Optional["ConversationContext"] = None) -> list[Intent]:
        """Matched intents in table order, after suppression."""
        return self._match(utterance, extract_entities(utterance, context))

    def _match(self, utterance: str, entities: Entities) -> list[Intent]:
        matched: list[Intent] = []
        suppressed: set[Intent] = set()
        for rule in self._rules:
            if rule.intent in suppressed:
                continue
            if rule.matches(utterance, entities):
                matched.append(rule.intent)
                suppressed.update(rule.suppresses)
        return [i for i in matched if i not in suppressed]

    def plan_for(self, utterance: str, context: Optional["ConversationContext"] = None) -> Plan:
        """Deterministic plan from the rule table. Empty when nothing matches."""
        entities = extract_entities(utterance, context)
        intents = self._match(utterance, entities)
        plan = Plan(utterance=utterance, intents=[i.value for i in intents],
                    rule_table_version=RULE_TABLE_VERSION)
        if not intents:
            log.info("router.no_intent", utterance=utterance[:120])
            return plan

        rules = {rule.intent: rule for rule in self._rules}
        steps: list[Step] = []
        for intent in intents:
            steps.extend(self._instantiate(rules[intent], entities, start=len(steps)))

        plan.steps = order_steps(dedupe_steps(steps))
        log.info(
            "router.intents_matched",
            intents=plan.intents,
            steps=[s.tool for s in plan.steps],
            clarifications=len(plan.clarifications),
            version=RULE_TABLE_VERSION,
        )
        return plan

    async def route(self, utterance: str, context: Optional["ConversationContext"] = None) -> Plan:
        """plan_for(), falling back to the suggester when no rule matches."""
        plan = self.plan_for(utterance, context)
        if not plan.is_empty or self._suggester is None:
            return plan

        tools = [d.to_llm_schema() for d in self._registry.list_descriptors()]
        try:
            suggestions = await self._suggester.suggest(utterance, tools)
        except Exception as exc:
            log.warning("router.suggester_failed", error=str(exc))
            return plan

        steps: list[Step] = []
        for suggestion in suggestions:
            try:
                steps.append(self._validate_suggestion(suggestion, index=len(steps)))
            except RoutingAmbiguityError as exc:
                log.warning("router.suggestion_rejected", suggestion=suggestion, reason=str(exc))
        plan.steps = dedupe_steps(steps)
        for position, step in enumerate(plan.steps):
            step.index = position
        if plan.steps:
            plan.intents = ["SUGGESTED"]
            log.info("router.suggestion_accepted", steps=[s.tool for s in plan.steps])
        return plan

    # ── Internals ────────────────────────────────────────────────────────────

    def _instantiate(self, rule: IntentRule, entities: Entities, start: int) -> list[Step]:
        keys = {slot.key: start + i for i, slot in enumerate(rule.template)}
        steps: list[Step] = []
        for i, slot in enumerate(rule.template):
            descriptor = self._registry.lookup(slot.tool)
            step = Step(
                index=start + i,
                descriptor=descriptor,
                depends_on=[keys[k] for k in slot.depends_on],
                derived=dict(slot.derived),
                intent=rule.intent.value,
            )
            try:
                step.inputs = _resolve_inputs(slot, entities)
            except ClarificationNeeded as exc:
                # One question per intent; the rest of its template waits for the answer
                step.status = StepStatus.CLARIFICATION_NEEDED
                step.depends_on = []
                step.derived = {}
                step.question = exc.question
                step.reason = f"{type(exc).__name__}: missing {exc.parameter}"
                log.info("router.clarification_needed", intent=rule.intent.value,
                         tool=slot.tool, missing=exc.parameter)
                return [step]
            step.side_effect = effective_side_effect(descriptor, step.inputs)
            steps.append(step)
        return steps

    def _validate_suggestion(self, suggestion: dict[str, Any], index: int) -> Step:
        name = suggestion.get("tool") if isinstance(suggestion, dict) else None
        inputs = suggestion.get("inputs", {}) if isinstance(suggestion, dict) else None
        descriptor = self._registry.get(name) if isinstance(name, str) else None
        if descriptor is None:
            raise RoutingAmbiguityError(f"Suggested tool {name!r} is not registered")
        if not isinstance(inputs, dict):
            raise RoutingAmbiguityError(f"Suggested inputs for {name} are not an object")
        error = validate_inputs(descriptor, inputs)
        if error:
            raise RoutingAmbiguityError(error)
        if effective_side_effect(descriptor, inputs) != SideEffect.READ:
            raise RoutingAmbiguityError(f"Suggested tool {name} is not read-only")
        return Step(index=index, descriptor=descriptor, inputs=dict(inputs),
                    intent="SUGGESTED", side_effect=SideEffect.READ)
