"""
collaborators/ — Backends that execute tool bindings.

The Snowflake collaborator lives in digitalse.collaborators.snowflake and is
imported explicitly where a live account is used.
"""

from digitalse.collaborators.base import Collaborator, StaticCollaborator, demo_responses

__all__ = [
    "Collaborator",
    "StaticCollaborator",
    "demo_responses",
]
