"""
tools/registry.py — Tool Registry

Central catalog of every tool the orchestration core may invoke.
Populated once at startup from the fixed catalog, then frozen. Read-only at
runtime and shared by all sessions without locking.

Usage:
    registry = ToolRegistry.from_descriptors(default_descriptors(settings))

    descriptor = registry.lookup("QueryDataFetcher")     # raises if unknown
    ranked = registry.search("clustering keys documentation")
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Optional

from digitalse.exceptions import ConfigurationError, ToolNotFoundError
from digitalse.observability.logger import get_logger
from digitalse.tools.types import ToolDescriptor

log = get_logger(__name__)

# Words that carry no routing signal. Kept small and fixed so search scores
# stay stable across runs.
_STOP_WORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "do", "does", "for",
    "from", "how", "i", "in", "is", "it", "me", "my", "of", "on", "or",
    "the", "this", "that", "to", "use", "what", "when", "which", "with",
    "you", "your",
})

_NAME_WEIGHT = 3
_DESCRIPTION_WEIGHT = 1

_CAMEL_SPLIT = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")
_WORD = re.compile(r"[a-z0-9]+")

_JSON_TYPE_MAP: dict[str, type | tuple] = {
    "string":  str,
    "integer": int,
    "number":  (int, float),
    "boolean": bool,
    "array":   list,
    "object":  dict,
}


def tokenize(text: str) -> set[str]:
    """Lowercase word set of `text` with camel-case split and stop words removed."""
    spaced = _CAMEL_SPLIT.sub(" ", text)
    return {w for w in _WORD.findall(spaced.lower()) if w not in _STOP_WORDS}


class ToolRegistry:
    """
    Maps tool names to their immutable descriptors.

    Registration is fail-fast: a duplicate name raises ConfigurationError
    and the caller must abort startup. After freeze() nothing can be added.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDescriptor] = {}
        self._name_tokens: dict[str, set[str]] = {}
        self._desc_tokens: dict[str, set[str]] = {}
        self._frozen = False

    @classmethod
    def from_descriptors(cls, descriptors: Iterable[ToolDescriptor]) -> "ToolRegistry":
        """Build and freeze a registry. Any duplicate aborts the whole build."""
        registry = cls()
        for descriptor in descriptors:
            registry.register(descriptor)
        registry.freeze()
        log.info("registry.ready", tools=registry.names())
        return registry

    # ── Write (startup only) ──────────────────────────────────────────────────

    def register(self, descriptor: ToolDescriptor) -> None:
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register '{descriptor.name}': the tool registry is "
                f"read-only after startup."
            )
        if descriptor.name in self._tools:
            raise ConfigurationError(
                f"Tool '{descriptor.name}' is already registered. "
                f"Tool names must be unique."
            )
        self._tools[descriptor.name] = descriptor
        self._name_tokens[descriptor.name] = tokenize(descriptor.name)
        self._desc_tokens[descriptor.name] = tokenize(descriptor.description)
        log.debug(
            "tool.registered",
            tool=descriptor.name,
            side_effect=descriptor.side_effect.value,
            binding=descriptor.binding.kind.value,
        )

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ── Read (runtime) ────────────────────────────────────────────────────────

    def lookup(self, name: str) -> ToolDescriptor:
        """Return the descriptor. Raises ToolNotFoundError if not found."""
        descriptor = self._tools.get(name)
        if descriptor is None:
            raise ToolNotFoundError(name, self.names())
        return descriptor

    def get(self, name: str) -> Optional[ToolDescriptor]:
        """Return the descriptor or None if not found."""
        return self._tools.get(name)

    def is_registered(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return sorted(self._tools)

    def list_descriptors(self) -> list[ToolDescriptor]:
        return [self._tools[name] for name in self.names()]

    def search(self, query: str) -> list[ToolDescriptor]:
        """
        Rank descriptors by keyword overlap with `query`.

        score = 3 × |query ∩ name tokens| + 1 × |query ∩ description tokens|

        Zero-score tools are dropped; ties break alphabetically by name.
        """
        query_tokens = tokenize(query)
        if not query_tokens:
            return []
        scored: list[tuple[int, str]] = []
        for name in self._tools:
            score = (
                _NAME_WEIGHT * len(query_tokens & self._name_tokens[name])
                + _DESCRIPTION_WEIGHT * len(query_tokens & self._desc_tokens[name])
            )
            if score > 0:
                scored.append((score, name))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [self._tools[name] for _, name in scored]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __repr__(self) -> str:
        return f"<ToolRegistry tools={self.names()} frozen={self._frozen}>"


def validate_inputs(descriptor: ToolDescriptor, inputs: dict[str, Any]) -> Optional[str]:
    """
    Validate resolved inputs against the descriptor's input schema.
    Returns an error string if invalid, None if valid.

    Checks:
      1. All required parameters are present.
      2. No parameter outside the schema is supplied.
      3. Provided values match their declared JSON types.
    """
    for name in descriptor.required_params:
        if name not in inputs:
            return f"Missing required parameter: '{name}'"

    for name, value in inputs.items():
        spec = descriptor.input_schema.get(name)
        if spec is None:
            return f"Unknown parameter '{name}' for tool '{descriptor.name}'"
        expected = _JSON_TYPE_MAP.get(spec.type)
        if expected is None:
            continue
        # bool is a subclass of int in Python, so check bool explicitly first
        if spec.type in ("integer", "number") and isinstance(value, bool):
            return f"Parameter '{name}': expected {spec.type}, got boolean"
        if not isinstance(value, expected):
            return f"Parameter '{name}': expected {spec.type}, got {type(value).__name__}"

    return None
