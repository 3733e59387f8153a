"""
Decision audit logging and usage statistics.
"""

from .statistics import StatisticsTracker
from .worker import AuditWorker, CounterIncrement

__all__ = ["AuditWorker", "CounterIncrement", "StatisticsTracker"]
