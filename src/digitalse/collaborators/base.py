"""
collaborators/base.py — Collaborator Interface

A collaborator executes a tool's ExecutionBinding and hands back the raw
payload. The orchestration core never talks to Snowflake directly; it only
calls Collaborator.invoke().

Implementations must raise TransientCollaboratorError for failures worth a
single retry (timeouts, throttling, lost connections) and
PermanentCollaboratorError for everything else.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional, Protocol, Union, runtime_checkable

from digitalse.exceptions import PermanentCollaboratorError
from digitalse.tools.types import CollaboratorResponse, ToolDescriptor


@runtime_checkable
class Collaborator(Protocol):
    async def invoke(self, descriptor: ToolDescriptor, inputs: dict[str, Any]) -> CollaboratorResponse:
        ...


Responder = Union[Any, Exception, CollaboratorResponse, Callable[[dict[str, Any]], Any]]


class StaticCollaborator:
    """
    Answers from a fixed table keyed by tool name. Used by the tests and by
    the CLI's --offline mode.

    A table value may be:
      - a CollaboratorResponse, returned as is
      - an Exception instance, raised
      - a callable taking the inputs (sync or async), whose return value is
        treated like any other table value
      - anything else, wrapped as the payload
    """

    def __init__(
        self,
        responses: Optional[dict[str, Responder]] = None,
        delay: float = 0.0,
    ) -> None:
        self._responses = dict(responses or {})
        self._delay = delay
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def set(self, tool: str, response: Responder) -> None:
        self._responses[tool] = response

    def calls_to(self, tool: str) -> list[dict[str, Any]]:
        return [inputs for name, inputs in self.calls if name == tool]

    async def invoke(self, descriptor: ToolDescriptor, inputs: dict[str, Any]) -> CollaboratorResponse:
        self.calls.append((descriptor.name, dict(inputs)))
        if self._delay:
            await asyncio.sleep(self._delay)
        if descriptor.name not in self._responses:
            raise PermanentCollaboratorError(descriptor.name, "no response configured")

        value = self._responses[descriptor.name]
        if callable(value) and not isinstance(value, type):
            value = value(dict(inputs))
            if inspect.isawaitable(value):
                value = await value
        if isinstance(value, Exception):
            raise value
        if isinstance(value, CollaboratorResponse):
            return value
        return CollaboratorResponse(payload=value)


def demo_responses() -> dict[str, Responder]:
    """Canned payloads for every catalog tool, for offline demos."""
    from digitalse.tools import catalog

    return {
        catalog.DOCUMENTATION_SEARCH: {
            "results": [{
                "DOCUMENT_TITLE": "Clustering Keys & Clustered Tables",
                "SOURCE_URL": "https://docs.snowflake.com/en/user-guide/tables-clustering-keys",
                "CHUNK": (
                    "A clustering key is a subset of columns in a table that are "
                    "explicitly designated to co-locate the data in the same "
                    "micro-partitions. Clustering improves partition pruning for "
                    "selective filters on very large tables."
                ),
            }],
        },
        catalog.USAGE_ANALYST: {
            "sql": "SELECT warehouse_name, SUM(credits_attributed_compute) AS credits ...",
            "rows": [
                {"WAREHOUSE_NAME": "ETL_WH", "CREDITS": 412.5},
                {"WAREHOUSE_NAME": "BI_WH", "CREDITS": 188.1},
            ],
        },
        catalog.QUERY_TEXT_FETCHER: lambda inputs: {
            "query_id": inputs.get("query_id"),
            "query_text": (
                "SELECT c.region, SUM(o.amount) FROM orders o "
                "JOIN customers c ON o.customer_id = c.id GROUP BY c.region"
            ),
            "warehouse_size": "MEDIUM",
            "query_load_percent": 100,
        },
        catalog.QUERY_DATA_FETCHER: lambda inputs: {
            "query_id": inputs.get("query_id"),
            "operators": [
                {"OPERATOR_TYPE": "TableScan", "partitions_scanned": 9800, "partitions_total": 10000},
                {"OPERATOR_TYPE": "Join", "output_rows": 1200000, "input_rows": 400000},
                {"OPERATOR_TYPE": "Aggregate"},
            ],
            "bytes_spilled_to_local_storage": 5368709120,
            "bytes_spilled_to_remote_storage": 0,
        },
        catalog.FIELD_DEFINITIONS: {
            "OPERATOR_STATISTICS": "Per-operator rows, bytes, pruning and spilling counters.",
            "EXECUTION_TIME_BREAKDOWN": "Share of time spent in processing, I/O, network and sync.",
        },
        catalog.ANALYSIS_GUIDANCE: {
            "spilling": "Any remote spilling is severe; local spilling above 1 GB is moderate.",
            "pruning": "Scanning more than 80% of partitions indicates poor pruning.",
        },
        catalog.GEN2_BENCHMARK: {"speedup_factor": 1.8, "matched_benchmark": "scan-join-aggregate"},
        catalog.GET_OBJECT_DDL: lambda inputs: {
            "ddl": f"create or replace {inputs.get('object_type', 'TABLE').lower()} "
                   f"{inputs.get('object_name')} (ID NUMBER, AMOUNT NUMBER(12,2));",
        },
        catalog.EXECUTE_DDL: lambda inputs: {
            "status": "success",
            "statement": inputs.get("ddl_statement"),
        },
        catalog.EXECUTE_DML: lambda inputs: {
            "status": "success",
            "statement": inputs.get("dml_statement"),
            "rows_affected": 0,
        },
    }
