"""
safety/__init__.py — DigitalSE Safety Module
"""

from digitalse.safety.gate import ReplyKind, SafetyGate, classify_reply
from digitalse.safety.statements import classify_statement, effective_side_effect

__all__ = [
    "ReplyKind",
    "SafetyGate",
    "classify_reply",
    "classify_statement",
    "effective_side_effect",
]
