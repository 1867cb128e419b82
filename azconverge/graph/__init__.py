"""Resource declaration graph.

Provides the in-memory declaration store and the dependency resolver that
turns declared (``depends_on``) and inferred (DeferredValue) references into
a deterministic ConvergencePlan.
"""

from azconverge.graph.models import ConvergencePlan, EdgeType, GraphEdge
from azconverge.graph.resolver import DependencyResolver
from azconverge.graph.store import ResourceStore

__all__ = [
    "ConvergencePlan",
    "DependencyResolver",
    "EdgeType",
    "GraphEdge",
    "ResourceStore",
]
