"""
Policy snapshot cache.
"""

from .snapshot import PolicyCache, PolicySnapshot

__all__ = ["PolicyCache", "PolicySnapshot"]
