"""Tests for ResourceGraph: ordering, cycles and readiness transitions."""

import asyncio
import random

import pytest

from devhost.dag import ResourceGraph
from devhost.errors import (
    CycleError,
    DuplicateResourceError,
    InvalidTransitionError,
    UnknownResourceError,
)
from devhost.model import ResourceKind, ResourceState


def make_graph(edges, names=()):
    g = ResourceGraph()
    for n in sorted({*names, *(a for a, _ in edges), *(b for _, b in edges)}):
        g.add_resource(n)
    for dependent, dependency in edges:
        g.add_wait_for(dependent, dependency)
    return g


def random_dag(rng: random.Random, size: int):
    names = [f"r{i:02d}" for i in range(size)]
    edges = []
    for i, dependent in enumerate(names):
        for dependency in names[:i]:
            if rng.random() < 0.3:
                edges.append((dependent, dependency))
    rng.shuffle(names)
    return names, edges


class TestGraphConstruction:
    def test_duplicate_resource(self):
        g = ResourceGraph()
        g.add_resource("db")
        with pytest.raises(DuplicateResourceError):
            g.add_resource("db")

    def test_unknown_resource_in_edge(self):
        g = ResourceGraph()
        g.add_resource("api")
        with pytest.raises(UnknownResourceError) as exc:
            g.add_wait_for("api", "db")
        assert "db" in str(exc.value)

    def test_kind_is_recorded(self):
        g = ResourceGraph()
        g.add_resource("postgres", ResourceKind.CONTAINER)
        assert g.kind("postgres") is ResourceKind.CONTAINER
        assert g.state("postgres") is ResourceState.NOT_STARTED

    def test_duplicate_edge_is_ignored(self):
        g = make_graph([("api", "db"), ("api", "db")])
        assert g.dependencies_of("api") == ["db"]

    def test_parent_child_is_not_an_ordering_edge(self):
        g = make_graph([], names=["postgres", "pgmcp"])
        g.add_parent("postgres", "pgmcp")
        assert g.parent_of("pgmcp") == "postgres"
        assert g.children_of("postgres") == ["pgmcp"]
        assert g.dependencies_of("pgmcp") == []

    def test_parent_cycle_rejected(self):
        g = make_graph([], names=["a", "b"])
        g.add_parent("a", "b")
        with pytest.raises(CycleError):
            g.add_parent("b", "a")


class TestCycles:
    def test_self_wait_is_a_cycle(self):
        g = make_graph([], names=["a"])
        with pytest.raises(CycleError):
            g.add_wait_for("a", "a")

    def test_cycle_rejected_and_graph_unchanged(self):
        g = make_graph([("b", "a"), ("c", "b")])
        before_order = g.topological_order()
        before_deps = {n: g.dependencies_of(n) for n in g.names}

        with pytest.raises(CycleError) as exc:
            g.add_wait_for("a", "c")

        assert exc.value.path == ["a", "c", "b", "a"]
        assert {n: g.dependencies_of(n) for n in g.names} == before_deps
        assert g.topological_order() == before_order
        assert g.dependents_of("c") == []

    def test_random_back_edges_always_rejected(self):
        rng = random.Random(7)
        for _ in range(25):
            names, edges = random_dag(rng, 8)
            g = make_graph(edges, names=names)
            order = g.topological_order()
            for dependent in order:
                for dependency in g.transitive_dependents(dependent):
                    with pytest.raises(CycleError):
                        g.add_wait_for(dependent, dependency)
            # still a valid DAG with the same order
            assert g.topological_order() == order


class TestOrdering:
    def test_dependencies_come_first(self):
        rng = random.Random(42)
        for _ in range(50):
            names, edges = random_dag(rng, 10)
            g = make_graph(edges, names=names)
            order = g.topological_order()
            position = {n: i for i, n in enumerate(order)}
            assert sorted(order) == sorted(names)
            for dependent, dependency in edges:
                assert position[dependency] < position[dependent]

    def test_ties_broken_by_name(self):
        g = make_graph([("api", "db")], names=["zeta", "alpha"])
        assert g.topological_order() == ["alpha", "db", "api", "zeta"]

    def test_levels(self):
        g = make_graph([("appdb", "postgres"), ("api", "appdb"), ("pgmcp", "appdb"), ("api", "build-api")])
        assert g.levels() == [["build-api", "postgres"], ["appdb"], ["api", "pgmcp"]]


class TestTransitions:
    def test_happy_path(self):
        g = make_graph([("api", "db")])
        g.mark_starting("db")
        assert g.state("db") is ResourceState.STARTING
        g.mark_ready("db")
        g.mark_starting("api")
        g.mark_ready("api")
        assert g.states() == {"api": ResourceState.READY, "db": ResourceState.READY}

    def test_mark_ready_twice_fails_and_stays_ready(self):
        g = make_graph([], names=["db"])
        g.mark_starting("db")
        g.mark_ready("db")
        with pytest.raises(InvalidTransitionError):
            g.mark_ready("db")
        assert g.state("db") is ResourceState.READY

    def test_ready_cannot_fail(self):
        g = make_graph([], names=["db"])
        g.mark_ready("db")
        with pytest.raises(InvalidTransitionError):
            g.mark_failed("db", "boom")
        assert g.state("db") is ResourceState.READY

    def test_cannot_start_before_dependency_ready(self):
        g = make_graph([("api", "db")])
        with pytest.raises(InvalidTransitionError):
            g.mark_starting("api")
        assert g.state("api") is ResourceState.NOT_STARTED

    def test_ready_dependency_never_blocks(self):
        g = make_graph([("api", "db")])
        g.mark_starting("db")
        g.mark_ready("db")
        g.mark_starting("api")
        assert g.state("api") is ResourceState.STARTING

    def test_failure_cascades_to_dependents(self):
        g = make_graph([("appdb", "postgres"), ("api", "appdb"), ("pgmcp", "appdb")], names=["other"])
        g.mark_starting("postgres")
        cascaded = g.mark_failed("postgres", "container exited")

        assert cascaded == ["appdb", "api", "pgmcp"]
        for name in cascaded:
            assert g.state(name) is ResourceState.FAILED
            with pytest.raises(InvalidTransitionError):
                g.mark_starting(name)
        assert g.reason("postgres") == "container exited"
        assert g.reason("api") == "dependency 'appdb' failed"
        assert g.state("other") is ResourceState.NOT_STARTED

    def test_failure_without_cascade_leaves_dependents(self):
        g = make_graph([("api", "db"), ("worker", "api")])
        g.mark_starting("db")

        assert g.mark_failed("db", "cancelled during start", cascade=False) == []
        assert g.state("db") is ResourceState.FAILED
        assert g.state("api") is ResourceState.NOT_STARTED
        assert g.state("worker") is ResourceState.NOT_STARTED
        assert g.reason("api") is None



class TestWaitUntilReady:
    @pytest.mark.asyncio
    async def test_wakes_on_ready(self):
        g = make_graph([], names=["db"])
        waiter = asyncio.create_task(g.wait_until_ready("db"))
        await asyncio.sleep(0)
        assert not waiter.done()
        g.mark_starting("db")
        g.mark_ready("db")
        assert await asyncio.wait_for(waiter, 1) is ResourceState.READY

    @pytest.mark.asyncio
    async def test_wakes_dependents_on_cascade(self):
        g = make_graph([("api", "db")])
        waiter = asyncio.create_task(g.wait_until_ready("api"))
        g.mark_starting("db")
        g.mark_failed("db", "boom")
        assert await asyncio.wait_for(waiter, 1) is ResourceState.FAILED

    @pytest.mark.asyncio
    async def test_already_terminal_returns_immediately(self):
        g = make_graph([], names=["db"])
        g.mark_ready("db")
        assert await asyncio.wait_for(g.wait_until_ready("db"), 1) is ResourceState.READY
