"""
collaborators/snowflake.py — Snowflake Collaborator

Executes tool bindings against a Snowflake account:

  procedure       CALL <identifier>(%s, ...)
  function        SELECT <identifier>(%s, ...)
  cortex_search   SELECT SNOWFLAKE.CORTEX.SEARCH_PREVIEW(<service>, <json>)
  cortex_analyst  POST /api/v2/cortex/analyst/message, then run the SQL it returns

The connector is blocking, so every cursor call runs in a worker thread.
Errors are mapped onto the collaborator hierarchy:

  OperationalError / InterfaceError / timeouts / HTTP 429 / HTTP 5xx  → transient
  ProgrammingError / other connector errors / HTTP 4xx                → permanent
"""

from __future__ import annotations

import asyncio
import json
import threading
from typing import Any, Callable, Optional

import httpx
import snowflake.connector
from snowflake.connector import DictCursor
from snowflake.connector.errors import (
    Error as SnowflakeError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
)

from digitalse.exceptions import (
    CollaboratorFailure,
    PermanentCollaboratorError,
    TransientCollaboratorError,
)
from digitalse.observability.logger import get_logger
from digitalse.safety.statements import classify_statement
from digitalse.tools.types import BindingKind, CollaboratorResponse, SideEffect, ToolDescriptor

log = get_logger(__name__)

_ANALYST_PATH = "/api/v2/cortex/analyst/message"
_MAX_ROWS = 200


class SnowflakeCollaborator:
    """
    One connection per process, opened lazily and shared by all sessions.

    Usage:
        collaborator = SnowflakeCollaborator(settings)
        response = await collaborator.invoke(descriptor, {"query_id": "01b2-..."})
        await collaborator.aclose()
    """

    def __init__(
        self,
        settings,
        connect: Optional[Callable[..., Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._sf = settings.snowflake
        self._connect = connect or snowflake.connector.connect
        self._conn = None
        self._conn_lock = threading.Lock()
        self._http = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._sf.analyst_timeout_seconds)
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Collaborator interface
    # ─────────────────────────────────────────────────────────────────────────

    async def invoke(self, descriptor: ToolDescriptor, inputs: dict[str, Any]) -> CollaboratorResponse:
        binding = descriptor.binding
        log.debug("snowflake.invoke", tool=descriptor.name, kind=binding.kind.value,
                  identifier=binding.identifier)

        if binding.kind == BindingKind.CORTEX_ANALYST:
            payload = await self._ask_analyst(descriptor, inputs)
        elif binding.kind == BindingKind.CORTEX_SEARCH:
            payload = await self._search(descriptor, inputs)
        elif binding.kind in (BindingKind.PROCEDURE, BindingKind.FUNCTION):
            payload = await self._call_routine(descriptor, inputs)
        else:
            raise PermanentCollaboratorError(descriptor.name, f"unsupported binding {binding.kind}")

        return CollaboratorResponse(payload=payload)

    async def aclose(self) -> None:
        await self._http.aclose()
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # ─────────────────────────────────────────────────────────────────────────
    # Bindings
    # ─────────────────────────────────────────────────────────────────────────

    async def _call_routine(self, descriptor: ToolDescriptor, inputs: dict[str, Any]) -> Any:
        args = positional_args(descriptor, inputs)
        placeholders = ", ".join(["%s"] * len(args))
        verb = "CALL" if descriptor.binding.kind == BindingKind.PROCEDURE else "SELECT"
        sql = f"{verb} {descriptor.binding.identifier}({placeholders})"
        rows = await self._run(descriptor, sql, args)
        return _scalar_or_rows(rows)

    async def _search(self, descriptor: ToolDescriptor, inputs: dict[str, Any]) -> Any:
        options = descriptor.binding.options
        request = {
            "query": inputs["query"],
            "columns": inputs.get("columns") or options.get("columns", []),
            "limit": inputs.get("limit") or options.get("max_results", 5),
        }
        sql = "SELECT SNOWFLAKE.CORTEX.SEARCH_PREVIEW(%s, %s)"
        rows = await self._run(descriptor, sql, [descriptor.binding.identifier, json.dumps(request)])
        return _scalar_or_rows(rows)

    async def _ask_analyst(self, descriptor: ToolDescriptor, inputs: dict[str, Any]) -> Any:
        url = self._sf.account_url + _ANALYST_PATH
        body = {
            "messages": [
                {"role": "user", "content": [{"type": "text", "text": inputs["question"]}]}
            ],
            "semantic_view": descriptor.binding.identifier,
        }
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self._settings.snowflake_token or ''}",
            "X-Snowflake-Authorization-Token-Type": "PROGRAMMATIC_ACCESS_TOKEN",
        }
        try:
            resp = await self._http.post(url, json=body, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            message = f"analyst returned HTTP {status}: {exc.response.text[:300]}"
            if status == 429 or status >= 500:
                raise TransientCollaboratorError(descriptor.name, message) from exc
            raise PermanentCollaboratorError(descriptor.name, message) from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientCollaboratorError(descriptor.name, f"analyst unreachable: {exc}") from exc

        text, statement = parse_analyst_message(resp.json())
        result: dict[str, Any] = {"interpretation": text, "sql": statement}
        if statement:
            effect, reason = classify_statement(statement, SideEffect.DESTRUCTIVE)
            if effect != SideEffect.READ:
                log.warning("snowflake.analyst_sql_rejected", side_effect=effect.value, reason=reason)
                raise PermanentCollaboratorError(
                    descriptor.name, f"analyst generated a non-read statement ({effect.value}); not run"
                )
            result["rows"] = await self._run(descriptor, statement, None)
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # Connector
    # ─────────────────────────────────────────────────────────────────────────

    async def _run(self, descriptor: ToolDescriptor, sql: str, params: Optional[list]) -> list[dict]:
        try:
            return await asyncio.to_thread(self._execute_sync, sql, params,
                                           descriptor.binding.warehouse)
        except CollaboratorFailure:
            raise
        except ProgrammingError as exc:
            raise PermanentCollaboratorError(descriptor.name, f"SQL error: {exc.msg or exc}") from exc
        except (OperationalError, InterfaceError) as exc:
            raise TransientCollaboratorError(descriptor.name, f"connection problem: {exc.msg or exc}") from exc
        except SnowflakeError as exc:
            raise PermanentCollaboratorError(descriptor.name, str(exc)) from exc

    def _execute_sync(self, sql: str, params: Optional[list], warehouse: Optional[str]) -> list[dict]:
        conn = self._connection()
        cursor = conn.cursor(DictCursor)
        try:
            if warehouse and warehouse != self._sf.warehouse:
                cursor.execute(f'USE WAREHOUSE "{warehouse}"')
            cursor.execute(sql, params)
            return list(cursor.fetchmany(_MAX_ROWS))
        finally:
            cursor.close()

    def _connection(self):
        with self._conn_lock:
            if self._conn is None:
                self._conn = self._connect(**self._connect_kwargs())
                log.info("snowflake.connected", account=self._sf.account, role=self._sf.role,
                         warehouse=self._sf.warehouse)
            return self._conn

    def _connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "account": self._sf.account,
            "user": self._sf.user,
            "role": self._sf.role,
            "warehouse": self._sf.warehouse,
            "database": self._sf.database,
            "application": "DigitalSE",
        }
        # A programmatic access token is accepted in place of the password
        kwargs["password"] = self._settings.snowflake_password or self._settings.snowflake_token
        return kwargs


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────


def positional_args(descriptor: ToolDescriptor, inputs: dict[str, Any]) -> list[Any]:
    """
    Inputs as positional routine arguments, in schema order. Stops at the
    first absent parameter so later defaults stay in effect.
    """
    args = []
    for name in descriptor.input_schema:
        if name not in inputs:
            break
        value = inputs[name]
        args.append(json.dumps(value) if isinstance(value, (list, dict)) else value)
    return args


def parse_analyst_message(data: dict[str, Any]) -> tuple[str, Optional[str]]:
    """Pull the interpretation text and the generated SQL out of an analyst reply."""
    content = (data.get("message") or {}).get("content") or []
    texts: list[str] = []
    statement = None
    for item in content:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "text" and item.get("text"):
            texts.append(item["text"])
        elif item.get("type") == "sql" and item.get("statement"):
            statement = item["statement"]
    return "\n".join(texts), statement


def _scalar_or_rows(rows: list[dict]) -> Any:
    """A single one-column row collapses to its value, decoded if it holds JSON."""
    if len(rows) == 1 and len(rows[0]) == 1:
        value = next(iter(rows[0].values()))
        if isinstance(value, str):
            try:
                return json.loads(value)
            except ValueError:
                return value
        return value
    return rows
