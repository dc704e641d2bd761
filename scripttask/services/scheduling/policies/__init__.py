"""
Scheduling admission policies.

Concurrency ceilings, inter-schedule dependencies and the deferred queue for
firings blocked by maintenance windows.
"""

from .concurrency import ConcurrencyGate, ConcurrencyLimits
from .dependencies import DependencyGate
from .priority import DeferredFiring, DeferredQueue

__all__ = [
    "ConcurrencyGate",
    "ConcurrencyLimits",
    "DependencyGate",
    "DeferredFiring",
    "DeferredQueue",
]
