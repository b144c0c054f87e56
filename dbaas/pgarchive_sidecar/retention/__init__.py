"""
Retention loop: policy enforcement, catalog reconciliation, recovery window.
"""

from .runner import RetentionPolicyRunner, is_reconcilable_backup
from .scheduler import Clock, IntervalScheduler, SystemClock

__all__ = [
    "RetentionPolicyRunner",
    "is_reconcilable_backup",
    "Clock",
    "IntervalScheduler",
    "SystemClock",
]
