from __future__ import annotations

import pytest

from remake.dag.build import build_adjacency
from remake.dag.validate import assert_acyclic
from remake.util.errors import CycleError, PlanError


def test_assert_acyclic_returns_topological_order() -> None:
    names = ["a", "b", "c"]
    dependents, in_degree = build_adjacency(names, {"b": ["a"], "c": ["b"]})
    assert assert_acyclic(names, dependents, in_degree) == ["a", "b", "c"]


def test_assert_acyclic_breaks_ties_by_declaration_order() -> None:
    names = ["z", "y", "x", "w"]
    dependents, in_degree = build_adjacency(names, {"w": ["z", "y", "x"]})
    assert assert_acyclic(names, dependents, in_degree) == ["z", "y", "x", "w"]


def test_assert_acyclic_detects_cycle_and_reports_it() -> None:
    names = ["a", "b", "c", "d"]
    upstream = {"a": ["c"], "b": ["a"], "c": ["b"], "d": ["c"]}
    dependents, in_degree = build_adjacency(names, upstream)
    with pytest.raises(CycleError) as excinfo:
        assert_acyclic(names, dependents, in_degree)
    cycle = excinfo.value.cycle
    assert sorted(cycle) == ["a", "b", "c"]
    assert "d" not in cycle
    assert str(excinfo.value).startswith("Plan has cyclic dependencies:")


def test_cycle_error_is_a_plan_error() -> None:
    names = ["a", "b"]
    dependents, in_degree = build_adjacency(names, {"a": ["b"], "b": ["a"]})
    with pytest.raises(PlanError):
        assert_acyclic(names, dependents, in_degree)
