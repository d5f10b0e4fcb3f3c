# dag.py
from __future__ import annotations

import asyncio
import heapq
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from .errors import (
    CycleError,
    DuplicateResourceError,
    InvalidTransitionError,
    UnknownResourceError,
)
from .model import ResourceKind, ResourceState


@dataclass
class _Node:
    name: str
    kind: ResourceKind
    state: ResourceState = ResourceState.NOT_STARTED
    reason: Optional[str] = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)


class ResourceGraph:
    """
    Resource nodes plus WaitFor and parent/child edges.

    WaitFor edges (dependent -> dependency) are kept acyclic at insertion
    time. Readiness state lives here and is the only state shared between
    the driver's tasks; every terminal transition sets the node's event
    exactly once.
    """

    def __init__(self) -> None:
        self._nodes: Dict[str, _Node] = {}
        self._deps: Dict[str, Set[str]] = {}        # dependent -> dependencies
        self._dependents: Dict[str, Set[str]] = {}  # dependency -> dependents
        self._parent: Dict[str, str] = {}           # child -> parent

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_resource(self, name: str, kind: ResourceKind = ResourceKind.EXECUTABLE) -> str:
        if name in self._nodes:
            raise DuplicateResourceError(name)
        self._nodes[name] = _Node(name=name, kind=ResourceKind(kind))
        self._deps[name] = set()
        self._dependents[name] = set()
        return name

    def add_wait_for(self, dependent: str, dependency: str) -> None:
        self._require(dependent)
        self._require(dependency)

        if dependency in self._deps[dependent]:
            return

        # The new edge closes a cycle iff `dependent` is already reachable
        # from `dependency` through existing WaitFor edges.
        path = self._path(dependency, dependent)
        if path is not None:
            raise CycleError([dependent, *path])

        self._deps[dependent].add(dependency)
        self._dependents[dependency].add(dependent)

    def add_parent(self, parent: str, child: str) -> None:
        self._require(parent)
        self._require(child)
        if parent == child:
            raise CycleError([child, parent])
        # walk up from the parent; the child must not be an ancestor of it
        cur: Optional[str] = parent
        while cur is not None:
            if cur == child:
                raise CycleError([child, parent, child])
            cur = self._parent.get(cur)
        self._parent[child] = parent

    def _require(self, name: str) -> None:
        if name not in self._nodes:
            raise UnknownResourceError(name, list(self._nodes))

    def _path(self, start: str, goal: str) -> Optional[List[str]]:
        """Dependency path start -> ... -> goal, following WaitFor edges."""
        if start == goal:
            return [start]
        prev: Dict[str, str] = {}
        q = deque([start])
        seen = {start}
        while q:
            node = q.popleft()
            for nxt in sorted(self._deps[node]):
                if nxt in seen:
                    continue
                prev[nxt] = node
                if nxt == goal:
                    path = [goal]
                    while path[-1] != start:
                        path.append(prev[path[-1]])
                    return list(reversed(path))
                seen.add(nxt)
                q.append(nxt)
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def names(self) -> List[str]:
        return list(self._nodes)

    def kind(self, name: str) -> ResourceKind:
        self._require(name)
        return self._nodes[name].kind

    def state(self, name: str) -> ResourceState:
        self._require(name)
        return self._nodes[name].state

    def reason(self, name: str) -> Optional[str]:
        self._require(name)
        return self._nodes[name].reason

    def is_ready(self, name: str) -> bool:
        return self.state(name) is ResourceState.READY

    def states(self) -> Dict[str, ResourceState]:
        return {name: node.state for name, node in self._nodes.items()}

    def dependencies_of(self, name: str) -> List[str]:
        self._require(name)
        return sorted(self._deps[name])

    def dependents_of(self, name: str) -> List[str]:
        self._require(name)
        return sorted(self._dependents[name])

    def parent_of(self, name: str) -> Optional[str]:
        self._require(name)
        return self._parent.get(name)

    def children_of(self, name: str) -> List[str]:
        self._require(name)
        return sorted(c for c, p in self._parent.items() if p == name)

    def transitive_dependents(self, name: str) -> List[str]:
        self._require(name)
        out: List[str] = []
        seen = {name}
        q = deque(sorted(self._dependents[name]))
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            out.append(node)
            q.extend(sorted(self._dependents[node]))
        return out

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def topological_order(self) -> List[str]:
        """
        Dependencies first. Among resources unblocked at the same time the
        lexicographically smallest name goes first, so the order is stable.
        """
        indeg = {n: len(d) for n, d in self._deps.items()}
        heap = [n for n, d in indeg.items() if d == 0]
        heapq.heapify(heap)

        order: List[str] = []
        while heap:
            node = heapq.heappop(heap)
            order.append(node)
            for child in self._dependents[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(heap, child)

        if len(order) != len(indeg):
            stuck = sorted(n for n, d in indeg.items() if d > 0)
            raise CycleError(stuck)
        return order

    def levels(self) -> List[List[str]]:
        """
        Topological "levels" (stages).
        Everything in one level can start concurrently.
        """
        indeg = {n: len(d) for n, d in self._deps.items()}
        q = deque(sorted(n for n, d in indeg.items() if d == 0))

        levels: List[List[str]] = []
        processed = 0

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                node = q.popleft()
                level.append(node)
                processed += 1

            nxt_level: List[str] = []
            for node in level:
                for child in self._dependents[node]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        nxt_level.append(child)
            q.extend(sorted(nxt_level))
            levels.append(level)

        if processed != len(indeg):
            stuck = sorted(n for n, d in indeg.items() if d > 0)
            raise CycleError(stuck)
        return levels

    # ------------------------------------------------------------------
    # Readiness transitions
    # ------------------------------------------------------------------

    def mark_starting(self, name: str) -> None:
        node = self._get(name)
        if node.state is not ResourceState.NOT_STARTED:
            raise InvalidTransitionError(name, node.state.value, ResourceState.STARTING.value)
        blocked = [d for d in sorted(self._deps[name]) if not self.is_ready(d)]
        if blocked:
            raise InvalidTransitionError(
                name,
                f"{node.state.value} (waiting for {', '.join(blocked)})",
                ResourceState.STARTING.value,
            )
        node.state = ResourceState.STARTING

    def mark_ready(self, name: str) -> None:
        node = self._get(name)
        if node.state.is_terminal:
            raise InvalidTransitionError(name, node.state.value, ResourceState.READY.value)
        node.state = ResourceState.READY
        node.done.set()

    def mark_failed(self, name: str, reason: Optional[str] = None, *, cascade: bool = True) -> List[str]:
        """
        Fail `name` and, before returning, every transitive dependent that
        has not started yet. Returns the names failed by the cascade.

        With cascade=False only `name` fails; dependents keep their state.
        """
        node = self._get(name)
        if node.state.is_terminal:
            raise InvalidTransitionError(name, node.state.value, ResourceState.FAILED.value)
        node.state = ResourceState.FAILED
        node.reason = reason
        node.done.set()

        cascaded: List[str] = []
        if not cascade:
            return cascaded
        q = deque([name])
        while q:
            failed = q.popleft()
            for dependent in sorted(self._dependents[failed]):
                dep_node = self._nodes[dependent]
                if dep_node.state is not ResourceState.NOT_STARTED:
                    continue
                dep_node.state = ResourceState.FAILED
                dep_node.reason = f"dependency '{failed}' failed"
                dep_node.done.set()
                cascaded.append(dependent)
                q.append(dependent)
        return cascaded

    async def wait_until_ready(self, name: str) -> ResourceState:
        """Suspend until `name` is READY or FAILED and return which."""
        node = self._get(name)
        await node.done.wait()
        return node.state

    def _get(self, name: str) -> _Node:
        self._require(name)
        return self._nodes[name]
