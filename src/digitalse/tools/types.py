"""
tools/types.py — Tool System Data Models

Shared types used across the tool registry, router, safety gate, executor
and every collaborator binding.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# Side-effect / source enums
# ─────────────────────────────────────────────────────────────────────────────


class SideEffect(str, Enum):
    """
    What a tool invocation can do to persistent state. The Safety Gate holds
    every step whose side effect is in the configured confirm set.
    """
    READ = "READ"                 # No side effects (search, history, DDL extraction)
    WRITE = "WRITE"               # Mutates data or objects (INSERT, CREATE, ALTER)
    DESTRUCTIVE = "DESTRUCTIVE"   # Irreversible or broad impact (DROP, TRUNCATE)

    def _order(self) -> int:
        return [SideEffect.READ, SideEffect.WRITE, SideEffect.DESTRUCTIVE].index(self)

    def __lt__(self, other: "SideEffect") -> bool:
        return self._order() < other._order()

    def __le__(self, other: "SideEffect") -> bool:
        return self._order() <= other._order()

    def __gt__(self, other: "SideEffect") -> bool:
        return self._order() > other._order()

    def __ge__(self, other: "SideEffect") -> bool:
        return self._order() >= other._order()


class EvidenceSource(str, Enum):
    """Where a finding comes from. Each carries a different epistemic weight."""
    DOCUMENTATION = "documentation"   # official Snowflake docs
    WORKLOAD = "workload"             # the user's own account data
    BENCHMARK = "benchmark"           # model-matched benchmark estimate
    REFERENCE = "reference"           # static field definitions / thresholds


class BindingKind(str, Enum):
    CORTEX_SEARCH = "cortex_search"
    CORTEX_ANALYST = "cortex_analyst"
    PROCEDURE = "procedure"
    FUNCTION = "function"


# ─────────────────────────────────────────────────────────────────────────────
# Tool registration metadata
# ─────────────────────────────────────────────────────────────────────────────


class ParameterSpec(BaseModel):
    """One input parameter of a tool."""
    model_config = ConfigDict(frozen=True)

    type: str = "string"          # JSON schema type name
    required: bool = False
    description: str = ""


class ExecutionBinding(BaseModel):
    """
    Opaque handle to the external collaborator that executes a tool.
    The core never interprets it; collaborators dispatch on `kind`.
    """
    model_config = ConfigDict(frozen=True)

    kind: BindingKind
    identifier: str
    warehouse: Optional[str] = None
    options: dict[str, Any] = Field(default_factory=dict)


class CostEstimate(BaseModel):
    """Static, conservative per-call estimate used before dispatch."""
    model_config = ConfigDict(frozen=True)

    seconds: float = 5.0
    tokens: int = 1000
    max_seconds: float = 30.0     # per-call ceiling before the deadline fires


class ToolDescriptor(BaseModel):
    """
    Full, immutable metadata for a registered tool.
    Loaded once at startup, shared read-only by every session.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    input_schema: dict[str, ParameterSpec] = Field(default_factory=dict)
    side_effect: SideEffect = SideEffect.READ
    binding: ExecutionBinding
    source: EvidenceSource = EvidenceSource.WORKLOAD
    cacheable: bool = False
    cost: CostEstimate = Field(default_factory=CostEstimate)

    @property
    def required_params(self) -> list[str]:
        return [name for name, spec in self.input_schema.items() if spec.required]

    def to_llm_schema(self) -> dict[str, Any]:
        """Return the schema in the JSON-schema shape a model expects."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": {
                    name: {"type": spec.type, "description": spec.description}
                    for name, spec in self.input_schema.items()
                },
                "required": self.required_params,
            },
        }


# ─────────────────────────────────────────────────────────────────────────────
# Runtime result types
# ─────────────────────────────────────────────────────────────────────────────


class CollaboratorResponse(BaseModel):
    """What a collaborator hands back for one call."""
    payload: Any = None
    tokens_consumed: Optional[int] = None   # None → estimated from payload size


class ToolResult(BaseModel):
    """The output of one SUCCEEDED step."""
    step_index: int
    tool: str
    payload: Any = None
    elapsed_seconds: float = 0.0
    tokens_consumed: int = 0
    side_effect: SideEffect = SideEffect.READ
    source: EvidenceSource = EvidenceSource.WORKLOAD
    cached: bool = False

    def payload_text(self, max_chars: int = 4_000) -> str:
        """Payload as display text, truncated with a notice."""
        text = _normalise_payload(self.payload)
        if len(text) <= max_chars:
            return text
        return (
            text[:max_chars]
            + f"\n\n[Output truncated, {len(text) - max_chars} chars omitted]"
        )


def _normalise_payload(payload: Any) -> str:
    if payload is None:
        return "Done."
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, indent=2, default=str)
    except (TypeError, ValueError):
        return str(payload)


def estimate_tokens(payload: Any) -> int:
    """Rough token count for a payload: ~4 characters per token."""
    return max(1, len(_normalise_payload(payload)) // 4)
