"""
tools/ — DigitalSE Tool System

Public interface for the tool catalog and registry.

Usage:
    from digitalse.tools import build_registry, SideEffect

    registry = build_registry(settings)      # frozen, fail-fast on duplicates
    descriptor = registry.lookup("ExecuteDDL")
"""

from __future__ import annotations

from digitalse.tools.catalog import build_registry, check_catalog, default_descriptors
from digitalse.tools.registry import ToolRegistry, validate_inputs
from digitalse.tools.types import (
    BindingKind,
    CollaboratorResponse,
    CostEstimate,
    EvidenceSource,
    ExecutionBinding,
    ParameterSpec,
    SideEffect,
    ToolDescriptor,
    ToolResult,
)

__all__ = [
    "build_registry",
    "check_catalog",
    "default_descriptors",
    "ToolRegistry",
    "validate_inputs",
    # Types
    "BindingKind",
    "CollaboratorResponse",
    "CostEstimate",
    "EvidenceSource",
    "ExecutionBinding",
    "ParameterSpec",
    "SideEffect",
    "ToolDescriptor",
    "ToolResult",
]
