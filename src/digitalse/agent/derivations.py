"""
agent/derivations.py — Derived Step Inputs

Some step inputs only exist once their producers have run: the benchmark
lookup takes a description of the query's operations, built from the query
text and operator statistics fetched earlier in the same plan.

Plans refer to a derivation by name so they stay plain data. The executor
resolves the name through DERIVATIONS after every producer has SUCCEEDED.
"""

from __future__ import annotations

import re
from typing import Any, Callable

from digitalse.tools.types import ToolResult, _normalise_payload

Derivation = Callable[[list[ToolResult]], Any]

QUERY_DESCRIPTION = "query_description"

# (label, pattern) pairs, checked against SQL text and operator statistics
_OPERATION_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("table scans", re.compile(r"\btable\s*scan\b|\bfrom\s+[\w$.\"]+", re.IGNORECASE)),
    ("joins", re.compile(r"\bjoin\b", re.IGNORECASE)),
    ("aggregations", re.compile(r"\bgroup\s+by\b|\baggregate\b", re.IGNORECASE)),
    ("window functions", re.compile(r"\bover\s*\(|\bwindow\s*function\b", re.IGNORECASE)),
    ("sorting", re.compile(r"\border\s+by\b|\bsort\b", re.IGNORECASE)),
    ("semi-structured data", re.compile(
        r"\bflatten\b|\bvariant\b|\bparse_json\b|:\w+::", re.IGNORECASE)),
    ("DML", re.compile(r"\b(insert|update|delete|merge)\b", re.IGNORECASE)),
]

_SPILL = re.compile(r"bytes_spilled_to_(local|remote)_storage\"?\s*[:=]\s*([1-9]\d*)", re.IGNORECASE)

_MAX_SQL_CHARS = 600


def derive_query_description(results: list[ToolResult]) -> str:
    """
    Summarise what a query does, in the form the benchmark lookup expects:
    "Query with table scans, joins and aggregations; spills to remote
    storage. SQL: SELECT ..."
    """
    texts = [_normalise_payload(r.payload) for r in results]
    combined = "\n".join(texts)

    operations = [label for label, pattern in _OPERATION_PATTERNS if pattern.search(combined)]
    parts = []
    if operations:
        listed = ", ".join(operations[:-1]) + (" and " if len(operations) > 1 else "") + operations[-1]
        parts.append(f"Query with {listed}")
    else:
        parts.append("Query")

    spills = {m.group(1).lower() for m in _SPILL.finditer(combined)}
    if spills:
        parts[-1] += "; spills to " + " and ".join(sorted(spills)) + " storage"

    sql = _first_sql(texts)
    description = parts[0] + "."
    if sql:
        description += f" SQL: {sql[:_MAX_SQL_CHARS]}"
    return description


def _first_sql(texts: list[str]) -> str:
    for text in texts:
        match = re.search(r"\b(select|with|insert|update|delete|merge)\b.*", text,
                          re.IGNORECASE | re.DOTALL)
        if match:
            return " ".join(match.group(0).split())
    return ""


DERIVATIONS: dict[str, Derivation] = {
    QUERY_DESCRIPTION: derive_query_description,
}


def resolve(name: str, results: list[ToolResult]) -> Any:
    """Run the named derivation. Raises KeyError for an unknown name."""
    return DERIVATIONS[name](results)
