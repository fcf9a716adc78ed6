"""
Job Store and Dependency Graph
"""
from .dependencies import DEPENDENCY_GRAPH, dependents, prerequisites, rank, validate_graph
from .store import JobStore, SeedResult

__all__ = [
    "DEPENDENCY_GRAPH",
    "dependents",
    "prerequisites",
    "rank",
    "validate_graph",
    "JobStore",
    "SeedResult",
]
