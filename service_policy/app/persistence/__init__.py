"""
Persistence backends for policies and decision logs.
"""

from .base import DecisionLogStore, PolicyStore
from .memory import InMemoryDecisionLogStore, InMemoryPolicyStore

__all__ = [
    "DecisionLogStore",
    "PolicyStore",
    "InMemoryDecisionLogStore",
    "InMemoryPolicyStore",
]
