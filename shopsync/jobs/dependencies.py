"""
Object Type Dependency Graph

Static, hand-declared DAG of which object types must be synced before
another may run for the same shop and date range. Ranks are the longest
path from a root, so roots have rank 1.
"""

from functools import lru_cache
from typing import Dict, FrozenSet, List, Mapping

from shopsync.database.models import ObjectType
from shopsync.errors import ConfigurationError


DEPENDENCY_GRAPH: Dict[str, FrozenSet[str]] = {
    ObjectType.ORDERS.value: frozenset(),
    ObjectType.SKUS.value: frozenset({ObjectType.ORDERS.value}),
    ObjectType.REFUNDS.value: frozenset({ObjectType.ORDERS.value, ObjectType.SKUS.value}),
    ObjectType.SHIPPING_DISCOUNTS.value: frozenset({ObjectType.ORDERS.value, ObjectType.SKUS.value}),
}


def validate_graph(graph: Mapping[str, FrozenSet[str]]) -> Dict[str, int]:
    """
    Check that a dependency graph is closed and acyclic.
    
    Args:
        graph: Map of object type to its prerequisite set
    
    Returns:
        Rank of every object type
    
    Raises:
        ConfigurationError: On unknown prerequisites or a cycle
    """
    for object_type, prerequisites in graph.items():
        unknown = set(prerequisites) - set(graph)
        if unknown:
            raise ConfigurationError(
                f"{object_type} depends on undeclared types: {sorted(unknown)}"
            )
    
    ranks: Dict[str, int] = {}
    visiting: List[str] = []
    
    def visit(node: str) -> int:
        if node in ranks:
            return ranks[node]
        if node in visiting:
            cycle = " -> ".join(visiting[visiting.index(node):] + [node])
            raise ConfigurationError(f"Dependency cycle: {cycle}")
        visiting.append(node)
        rank = 1 + max((visit(dep) for dep in graph[node]), default=0)
        visiting.pop()
        ranks[node] = rank
        return rank
    
    for node in sorted(graph):
        visit(node)
    return ranks


RANKS: Dict[str, int] = validate_graph(DEPENDENCY_GRAPH)


def _require(object_type: str) -> str:
    key = getattr(object_type, "value", object_type)
    if key not in DEPENDENCY_GRAPH:
        raise ConfigurationError(f"Unknown object type: {object_type}")
    return key


def rank(object_type: str) -> int:
    """Dependency rank of an object type"""
    return RANKS[_require(object_type)]


def prerequisites(object_type: str) -> FrozenSet[str]:
    """Object types that must be completed first"""
    return DEPENDENCY_GRAPH[_require(object_type)]


@lru_cache(maxsize=None)
def dependents(object_type: str) -> FrozenSet[str]:
    """Object types that list ``object_type`` as a direct prerequisite"""
    key = _require(object_type)
    return frozenset(t for t, deps in DEPENDENCY_GRAPH.items() if key in deps)


def object_types_by_rank() -> List[str]:
    """All object types, lowest rank first"""
    return sorted(DEPENDENCY_GRAPH, key=lambda t: (RANKS[t], t))
