"""
agent/ — DigitalSE Agent Core

Public API:
    from digitalse.agent import Plan, Step, BudgetTracker, AgentResponse

Component overview:
    IntentRouter        Utterance → ordered, deduplicated Plan (agent.router)
    BudgetTracker       Per-turn seconds/tokens reservations
    PlanExecutor        Dependency waves under a concurrency cap (agent.executor)
    ResponseComposer    Executed plan → evidence-labelled AgentResponse
    SessionStore        Per-conversation context, confirmations, pending plan
    Orchestrator        One turn end to end (agent.orchestrator)

The router, executor and orchestrator are imported from their modules
directly; safety.gate depends on agent.plan and must not pull them in.
"""

from digitalse.agent.budget import Budget, BudgetLimits, BudgetTracker
from digitalse.agent.composer import AgentResponse, ResponseComposer, ResponseKind
from digitalse.agent.plan import Plan, Step, StepStatus
from digitalse.agent.session import ConversationContext, Session, SessionStore

__all__ = [
    "AgentResponse",
    "Budget",
    "BudgetLimits",
    "BudgetTracker",
    "ConversationContext",
    "Plan",
    "ResponseComposer",
    "ResponseKind",
    "Session",
    "SessionStore",
    "Step",
    "StepStatus",
]
