"""
Unit Tests - Object Type Dependency Graph
"""
import pytest

from shopsync.errors import ConfigurationError
from shopsync.jobs.dependencies import (
    DEPENDENCY_GRAPH,
    dependents,
    object_types_by_rank,
    prerequisites,
    rank,
    validate_graph,
)


class TestDependencyGraph:
    """Tests for the declared graph"""
    
    def test_ranks(self):
        """Ranks are longest-path depths"""
        assert rank("orders") == 1
        assert rank("skus") == 2
        assert rank("refunds") == 3
        assert rank("shipping-discounts") == 3
    
    def test_prerequisites(self):
        """Refunds need orders and skus"""
        assert prerequisites("orders") == frozenset()
        assert prerequisites("refunds") == {"orders", "skus"}
    
    def test_dependents(self):
        """Completing skus unblocks both enrichment types"""
        assert dependents("skus") == {"refunds", "shipping-discounts"}
        assert dependents("refunds") == frozenset()
    
    def test_order_by_rank(self):
        """Roots come first"""
        ordered = object_types_by_rank()
        assert ordered[0] == "orders"
        assert ordered[1] == "skus"
        assert set(ordered) == set(DEPENDENCY_GRAPH)
    
    def test_unknown_type_rejected(self):
        """Unknown object types are a configuration error"""
        with pytest.raises(ConfigurationError):
            rank("customers")


class TestValidateGraph:
    """Tests for graph validation"""
    
    def test_cycle_detected(self):
        """A cycle is rejected with the cycle path"""
        graph = {"a": frozenset({"b"}), "b": frozenset({"a"})}
        with pytest.raises(ConfigurationError, match="cycle"):
            validate_graph(graph)
    
    def test_undeclared_prerequisite(self):
        """Prerequisites must be declared types"""
        with pytest.raises(ConfigurationError, match="undeclared"):
            validate_graph({"a": frozenset({"missing"})})
    
    def test_diamond(self):
        """Rank follows the longest path"""
        graph = {
            "a": frozenset(),
            "b": frozenset({"a"}),
            "c": frozenset({"a", "b"}),
        }
        assert validate_graph(graph) == {"a": 1, "b": 2, "c": 3}
