"""
exceptions.py — DigitalSE Unified Error Hierarchy

All DigitalSE-specific exceptions live here. Every layer of the
orchestration core raises typed subclasses of DigitalSEError, never bare
Exception.

Import from here, not from individual modules:
    from digitalse.exceptions import BudgetExceeded, ConfirmationDeclined

Hierarchy:
    DigitalSEError
    ├── ConfigurationError          (startup-fatal)
    ├── ToolNotFoundError
    ├── RoutingError
    │   ├── RoutingAmbiguityError
    │   └── ClarificationNeeded
    ├── BudgetExceeded
    ├── CollaboratorFailure
    │   ├── TransientCollaboratorError
    │   └── PermanentCollaboratorError
    └── SafetyError
        ├── ConfirmationRequired
        └── ConfirmationDeclined
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class DigitalSEError(Exception):
    """Base class for all DigitalSE exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Startup / registry
# ─────────────────────────────────────────────────────────────────────────────

class ConfigurationError(DigitalSEError):
    """Tool catalog or settings are invalid. Aborts startup."""


class ToolNotFoundError(DigitalSEError):
    """Requested tool is not registered in the ToolRegistry."""

    def __init__(self, name: str, available: Optional[list[str]] = None) -> None:
        self.name = name
        self.available = available or []
        super().__init__(
            f"Tool '{name}' is not registered. Available tools: {self.available}"
        )


# ─────────────────────────────────────────────────────────────────────────────
# Routing
# ─────────────────────────────────────────────────────────────────────────────

class RoutingError(DigitalSEError):
    """Base for intent routing problems. Never fatal to a turn."""


class RoutingAmbiguityError(RoutingError):
    """The utterance matched no usable tool. Degrade to a conversational reply."""


class ClarificationNeeded(RoutingError):
    """A required entity (query id, object name) is missing from the turn."""

    def __init__(self, parameter: str, question: str) -> None:
        self.parameter = parameter
        self.question = question
        super().__init__(question)


# ─────────────────────────────────────────────────────────────────────────────
# Budget
# ─────────────────────────────────────────────────────────────────────────────

class BudgetExceeded(DigitalSEError):
    """Remaining budget cannot cover the next step's estimated cost."""

    def __init__(
        self,
        message: str = "",
        *,
        dimension: str = "",
        requested: float = 0.0,
        remaining: float = 0.0,
    ) -> None:
        self.dimension = dimension
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            message
            or f"Budget exceeded on {dimension}: requested {requested:g}, "
            f"remaining {remaining:g}"
        )


# ─────────────────────────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────────────────────────

class CollaboratorFailure(DigitalSEError):
    """An external collaborator call failed for one step."""

    transient: bool = False

    def __init__(self, tool: str, message: str) -> None:
        self.tool = tool
        super().__init__(f"{tool}: {message}")


class TransientCollaboratorError(CollaboratorFailure):
    """Timeout, throttling or connectivity problem. A read may be retried once."""

    transient = True


class PermanentCollaboratorError(CollaboratorFailure):
    """Malformed input or a rejected statement. Never retried."""


# ─────────────────────────────────────────────────────────────────────────────
# Safety
# ─────────────────────────────────────────────────────────────────────────────

class SafetyError(DigitalSEError):
    """Base for confirmation / permission errors."""


class ConfirmationRequired(SafetyError):
    """A mutating step reached the executor without a consumed confirmation."""

    def __init__(self, tool: str, signature: str) -> None:
        self.tool = tool
        self.signature = signature
        super().__init__(
            f"Step '{tool}' requires explicit confirmation before it can run."
        )


class ConfirmationDeclined(SafetyError):
    """The user declined (or did not clearly approve) a held step."""

    def __init__(self, tool: str, reason: str) -> None:
        self.tool = tool
        self.reason = reason
        super().__init__(f"{tool} {reason}")


__all__ = [
    "DigitalSEError",
    "ConfigurationError",
    "ToolNotFoundError",
    "RoutingError",
    "RoutingAmbiguityError",
    "ClarificationNeeded",
    "BudgetExceeded",
    "CollaboratorFailure",
    "TransientCollaboratorError",
    "PermanentCollaboratorError",
    "SafetyError",
    "ConfirmationRequired",
    "ConfirmationDeclined",
]
