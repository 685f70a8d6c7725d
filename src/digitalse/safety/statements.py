"""
safety/statements.py — SQL Statement Classifier

Assigns a SideEffect to a DDL/DML statement based on its leading verb.
The execution tools declare their worst case (ExecuteDDL → DESTRUCTIVE,
ExecuteDML → WRITE); the classifier narrows that down per statement so a
SHOW or SELECT runs without a confirmation prompt.

A statement batch (several statements separated by ';') takes the highest
side effect of its parts.
"""

from __future__ import annotations

import re
from typing import Any

from digitalse.tools.types import SideEffect, ToolDescriptor

# Input parameters that carry a statement to classify
STATEMENT_PARAMS = ("ddl_statement", "dml_statement")

# ─────────────────────────────────────────────────────────────────────────────
# Verb rules (matched against the start of each statement)
# ─────────────────────────────────────────────────────────────────────────────

DESTRUCTIVE_PATTERNS: list[re.Pattern] = [
    re.compile(r"^drop\b", re.IGNORECASE),
    re.compile(r"^truncate\b", re.IGNORECASE),
    re.compile(r"^create\s+or\s+replace\b", re.IGNORECASE),   # replaces existing object
    re.compile(r"^alter\s+\w+(\s+\w+)?\s+.*\bswap\s+with\b", re.IGNORECASE),
    re.compile(r"^alter\b.*\bdrop\b", re.IGNORECASE | re.DOTALL),   # drops a column or constraint
    re.compile(r"^insert\s+overwrite\b", re.IGNORECASE),         # truncates before inserting
]

READ_PATTERNS: list[re.Pattern] = [
    re.compile(r"^show\b", re.IGNORECASE),
    re.compile(r"^desc(ribe)?\b", re.IGNORECASE),
    re.compile(r"^list\b", re.IGNORECASE),
    re.compile(r"^explain\b", re.IGNORECASE),
    re.compile(r"^select\b", re.IGNORECASE),
]

WRITE_PATTERNS: list[re.Pattern] = [
    re.compile(r"^insert\b", re.IGNORECASE),
    re.compile(r"^update\b", re.IGNORECASE),
    re.compile(r"^delete\b", re.IGNORECASE),
    re.compile(r"^merge\b", re.IGNORECASE),
    re.compile(r"^copy\s+into\b", re.IGNORECASE),
    re.compile(r"^create\b", re.IGNORECASE),
    re.compile(r"^alter\b", re.IGNORECASE),
    re.compile(r"^undrop\b", re.IGNORECASE),
    re.compile(r"^grant\b", re.IGNORECASE),
    re.compile(r"^revoke\b", re.IGNORECASE),
    re.compile(r"^comment\b", re.IGNORECASE),
    re.compile(r"^rename\b", re.IGNORECASE),
]

# A CTE is read-only unless its final statement mutates
_WITH_PREFIX = re.compile(r"^with\b", re.IGNORECASE)
_MUTATING_KEYWORD = re.compile(r"\b(insert|update|delete|merge)\b", re.IGNORECASE)

_LINE_COMMENT = re.compile(r"--[^\n]*")
_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)


# ─────────────────────────────────────────────────────────────────────────────
# Classifier
# ─────────────────────────────────────────────────────────────────────────────


def split_statements(sql: str) -> list[str]:
    """Strip comments and split a batch into individual non-empty statements."""
    cleaned = _BLOCK_COMMENT.sub(" ", _LINE_COMMENT.sub(" ", sql))
    return [part.strip() for part in cleaned.split(";") if part.strip()]


def classify_statement(sql: str, baseline: SideEffect) -> tuple[SideEffect, str]:
    """
    Compute the side effect of a statement (or batch).

    Args:
        sql:      The statement text.
        baseline: The tool's declared side effect, used for unknown verbs.

    Returns:
        (side_effect, reason_string)
    """
    parts = split_statements(sql)
    if not parts:
        return baseline, "Empty statement; using the tool's declared side effect"

    worst: SideEffect | None = None
    reason = ""
    for part in parts:
        effect, why = _classify_one(part, baseline)
        if worst is None or effect > worst:
            worst, reason = effect, why
    return worst, reason


def _classify_one(statement: str, baseline: SideEffect) -> tuple[SideEffect, str]:
    for pattern in DESTRUCTIVE_PATTERNS:
        if pattern.search(statement):
            return SideEffect.DESTRUCTIVE, f"Statement matches destructive verb: '{pattern.pattern}'"
    if _WITH_PREFIX.search(statement):
        if _MUTATING_KEYWORD.search(statement):
            return SideEffect.WRITE, "CTE statement ends in a data modification"
        return SideEffect.READ, "CTE query is read-only"
    for pattern in READ_PATTERNS:
        if pattern.search(statement):
            return SideEffect.READ, f"Statement matches read-only verb: '{pattern.pattern}'"
    for pattern in WRITE_PATTERNS:
        if pattern.search(statement):
            return SideEffect.WRITE, f"Statement matches mutating verb: '{pattern.pattern}'"
    return baseline, "Unrecognised verb; using the tool's declared side effect"


def statement_of(inputs: dict[str, Any]) -> str | None:
    for key in STATEMENT_PARAMS:
        value = inputs.get(key)
        if isinstance(value, str):
            return value
    return None


def effective_side_effect(descriptor: ToolDescriptor, inputs: dict[str, Any]) -> SideEffect:
    """Side effect of invoking `descriptor` with `inputs`."""
    statement = statement_of(inputs)
    if statement is None:
        return descriptor.side_effect
    effect, _ = classify_statement(statement, descriptor.side_effect)
    return effect


def describe_effect(descriptor: ToolDescriptor, inputs: dict[str, Any], side_effect: SideEffect) -> str:
    """Human-readable account of what running the step will change."""
    statement = statement_of(inputs)
    if statement is None:
        return f"{descriptor.name} will run with {_format_inputs(inputs)}."

    first = split_statements(statement)[0] if split_statements(statement) else statement
    verb = first.split()[0].upper() if first.split() else "STATEMENT"
    target = _target_of(first)

    if side_effect == SideEffect.DESTRUCTIVE:
        if verb == "DROP":
            return (f"`{statement}` will permanently remove {target}. "
                    f"Dependent objects and grants may break.")
        if verb == "TRUNCATE":
            return f"`{statement}` will delete every row in {target}. This cannot be undone."
        if verb == "CREATE":
            return f"`{statement}` will replace {target}, discarding its current definition and data."
        if verb == "ALTER":
            return f"`{statement}` will drop part of {target}. Dropped columns and constraints cannot be recovered."
        if verb == "INSERT":
            target = _target_of(_OVERWRITE.sub("INSERT ", first, count=1))
            return f"`{statement}` will delete every row in {target} before inserting the new rows."
        return f"`{statement}` is destructive and cannot be undone."
    if verb in ("INSERT", "MERGE", "COPY"):
        return f"`{statement}` will add or change rows in {target}."
    if verb in ("UPDATE", "DELETE"):
        action = "modify existing rows in" if verb == "UPDATE" else "delete rows from"
        text = f"`{statement}` will {action} {target}."
        if not _WHERE.search(first):
            text += " It has no WHERE clause, so every row is affected."
        return text
    return f"`{statement}` will change {target}."


_WHERE = re.compile(r"\bwhere\b", re.IGNORECASE)
_OVERWRITE = re.compile(r"^insert\s+overwrite\s+", re.IGNORECASE)


_TARGET = re.compile(
    r"^\w+\s+(?:or\s+replace\s+)?(?:if\s+(?:not\s+)?exists\s+)?"
    r"(?:(?:transient|temporary|temp|secure|dynamic|materialized|external)\s+)*"
    r"(?:(table|view|schema|database|warehouse|stage|stream|task|pipe|function|procedure|role|user|into|from)\s+)?"
    r"(?:if\s+(?:not\s+)?exists\s+)?([\w$.\"]+)",
    re.IGNORECASE,
)


def _target_of(statement: str) -> str:
    match = _TARGET.search(statement)
    if not match:
        return "the target object"
    kind, name = match.group(1), match.group(2)
    if kind and kind.lower() not in ("into", "from"):
        return f"{kind.lower()} {name}"
    return name


def _format_inputs(inputs: dict[str, Any]) -> str:
    if not inputs:
        return "no inputs"
    return ", ".join(f"{k}={v!r}" for k, v in sorted(inputs.items()))
