"""Unit tests for the ResourceStore and DependencyResolver.

Includes hypothesis properties: every acyclic graph yields an order where
each predecessor comes first, and every graph with a cycle is rejected.
"""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from azconverge.errors import CycleDetected, DanglingReference, DuplicateResource, LeaseConflict
from azconverge.graph.models import EdgeType
from azconverge.graph.resolver import DependencyResolver
from azconverge.graph.store import ResourceStore

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class TestResourceStore:
    def test_duplicate_declaration_is_rejected(self) -> None:
        store = ResourceStore()
        store.declare("rg", "azure:resources/ResourceGroup")
        with pytest.raises(DuplicateResource):
            store.declare("rg", "azure:resources/ResourceGroup")

    def test_sealed_store_rejects_declarations(self) -> None:
        store = ResourceStore()
        store.seal()
        with pytest.raises(RuntimeError):
            store.declare("rg", "azure:resources/ResourceGroup")

    async def test_output_reads_suspend_until_settled(self) -> None:
        store = ResourceStore()
        store.declare("rg", "azure:resources/ResourceGroup")
        reader = asyncio.create_task(store.outputs("rg"))
        await asyncio.sleep(0)
        assert not reader.done()
        store.output_cell("rg").set({"name": "rg"})
        assert await reader == {"name": "rg"}

    async def test_lease_is_exclusive(self) -> None:
        store = ResourceStore()
        store.declare("rg", "azure:resources/ResourceGroup")
        async with store.lease("rg") as resource:
            assert resource.id == "rg"
            with pytest.raises(LeaseConflict):
                async with store.lease("rg"):
                    pass
        async with store.lease("rg"):
            pass


# ---------------------------------------------------------------------------
# Edges and ordering
# ---------------------------------------------------------------------------


class TestDependencyResolver:
    def test_explicit_and_inferred_edges(self) -> None:
        store = ResourceStore()
        store.declare("rg", "t:Group", {"name": "rg"})
        store.declare("acr", "t:Registry", {"resourceGroupName": store.output("rg", "name")})
        store.declare("grant", "t:Role", {"scope": store.output("acr", "id")}, depends_on=["rg"])

        edges = {(e.source, e.target): e for e in DependencyResolver(store).edges()}
        assert edges[("rg", "acr")].edge_type == EdgeType.INFERRED
        assert edges[("rg", "acr")].source_field == "resourceGroupName"
        assert edges[("acr", "grant")].edge_type == EdgeType.INFERRED
        assert edges[("rg", "grant")].edge_type == EdgeType.EXPLICIT

    def test_duplicate_references_produce_one_edge(self) -> None:
        store = ResourceStore()
        store.declare("rg", "t:Group")
        store.declare(
            "app",
            "t:App",
            {"a": store.output("rg", "name"), "b": store.output("rg", "location")},
            depends_on=["rg"],
        )
        assert len(DependencyResolver(store).edges()) == 1

    def test_dangling_explicit_reference(self) -> None:
        store = ResourceStore()
        store.declare("app", "t:App", depends_on=["missing"])
        with pytest.raises(DanglingReference) as exc_info:
            DependencyResolver(store).plan()
        assert exc_info.value.missing_id == "missing"

    def test_dangling_inferred_reference(self) -> None:
        store = ResourceStore()
        store.declare("app", "t:App", {"group": store.output("ghost", "name")})
        with pytest.raises(DanglingReference) as exc_info:
            DependencyResolver(store).plan()
        assert exc_info.value.resource_id == "app"

    def test_ties_break_by_declaration_order(self) -> None:
        store = ResourceStore()
        for rid in ("c", "a", "b"):
            store.declare(rid, "t:Thing")
        store.declare("z", "t:Thing", depends_on=["b", "c"])
        plan = DependencyResolver(store).plan()
        assert plan.order == ("c", "a", "b", "z")

    def test_cycle_reports_its_members(self) -> None:
        store = ResourceStore()
        store.declare("independent", "t:Thing")
        store.declare("a", "t:Thing", depends_on=["c"])
        store.declare("b", "t:Thing", depends_on=["a"])
        store.declare("c", "t:Thing", depends_on=["b"])
        with pytest.raises(CycleDetected) as exc_info:
            DependencyResolver(store).plan()
        assert set(exc_info.value.members) == {"a", "b", "c"}
        assert "->" in str(exc_info.value)

    def test_self_reference_is_a_cycle(self) -> None:
        store = ResourceStore()
        store.declare("a", "t:Thing", {"self": store.output("a", "id")})
        with pytest.raises(CycleDetected) as exc_info:
            DependencyResolver(store).plan()
        assert exc_info.value.members == ["a"]

    def test_plan_dependents_are_transitive(self) -> None:
        store = ResourceStore()
        store.declare("rg", "t:Group")
        store.declare("cluster", "t:Cluster", depends_on=["rg"])
        store.declare("grant", "t:Role", depends_on=["cluster"])
        store.declare("other", "t:Thing")
        plan = DependencyResolver(store).plan()
        assert plan.dependents("rg") == ["cluster", "grant"]
        assert plan.successors("rg") == ["cluster"]


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


@st.composite
def acyclic_graphs(draw: st.DrawFn) -> tuple[list[str], list[tuple[int, int]]]:
    """Nodes declared in a shuffled order; edges only go from lower to higher rank."""
    size = draw(st.integers(min_value=1, max_value=12))
    ranks = draw(st.permutations(range(size)))
    pairs = [(i, j) for i in range(size) for j in range(size) if i < j]
    edges = draw(st.lists(st.sampled_from(pairs), unique=True, max_size=30)) if pairs else []
    ids = [f"r{rank}" for rank in ranks]
    return ids, edges


@st.composite
def cyclic_graphs(draw: st.DrawFn) -> tuple[list[str], list[tuple[int, int]], set[int]]:
    """An acyclic graph plus one injected cycle over ``cycle`` ranks."""
    size = draw(st.integers(min_value=2, max_value=10))
    length = draw(st.integers(min_value=2, max_value=size))
    cycle = draw(st.lists(st.integers(0, size - 1), min_size=length, max_size=length, unique=True))
    cycle_edges = [(cycle[k], cycle[(k + 1) % length]) for k in range(length)]
    ids = [f"r{rank}" for rank in draw(st.permutations(range(size)))]
    return ids, cycle_edges, set(cycle)


def _store(ids: list[str], edges: list[tuple[int, int]]) -> ResourceStore:
    store = ResourceStore()
    deps: dict[str, list[str]] = {rid: [] for rid in ids}
    for src, dst in edges:
        deps[f"r{dst}"].append(f"r{src}")
    for rid in ids:
        store.declare(rid, "t:Thing", depends_on=deps[rid])
    return store


class TestResolverProperties:
    @given(acyclic_graphs())
    @settings(max_examples=150, deadline=None)
    def test_every_predecessor_precedes_its_dependents(self, graph: tuple[list[str], list[tuple[int, int]]]) -> None:
        ids, edges = graph
        plan = DependencyResolver(_store(ids, edges)).plan()
        assert sorted(plan.order) == sorted(ids)
        for src, dst in edges:
            assert plan.index(f"r{src}") < plan.index(f"r{dst}")

    @given(acyclic_graphs())
    @settings(max_examples=50, deadline=None)
    def test_plan_is_deterministic(self, graph: tuple[list[str], list[tuple[int, int]]]) -> None:
        ids, edges = graph
        first = DependencyResolver(_store(ids, edges)).plan()
        second = DependencyResolver(_store(ids, edges)).plan()
        assert first.order == second.order

    @given(cyclic_graphs())
    @settings(max_examples=150, deadline=None)
    def test_any_cycle_is_detected(self, graph: tuple[list[str], list[tuple[int, int]], set[int]]) -> None:
        ids, edges, cycle = graph
        with pytest.raises(CycleDetected) as exc_info:
            DependencyResolver(_store(ids, edges)).plan()
        assert set(exc_info.value.members) == {f"r{rank}" for rank in cycle}
