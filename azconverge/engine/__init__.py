"""Convergence engine package.

Submodules:
    convergence -- ConvergenceEngine: plan execution, destroy.
    diff        -- Recursive subset drift detection.
    events      -- ResourceEvent + EventBus fan-out.
    retry       -- Exponential backoff for transient provider errors.
"""

from azconverge.engine.convergence import CLUSTER_CLASS_TYPES, ConvergenceEngine
from azconverge.engine.events import EventBus, ResourceEvent

__all__ = [
    "CLUSTER_CLASS_TYPES",
    "ConvergenceEngine",
    "EventBus",
    "ResourceEvent",
]
