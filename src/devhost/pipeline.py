# pipeline.py
from __future__ import annotations

import heapq
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

from . import settings
from .errors import CycleError, DuplicateStepError, UnknownStepError
from .logs import get_step_logger
from .model import PipelineStep, Resource, StepResult
from .process import CancellationToken, ProcessRunner

log = logging.getLogger(__name__)

# Built-in steps other steps can hook into via `required_by_steps`.
WELL_KNOWN_STEPS = ("build", "publish", "deploy")


@dataclass
class StepFactoryContext:
    """Handed to a resource's pipeline step factories."""
    resource: Resource
    app: Any


@dataclass
class PipelineStepContext:
    step_name: str
    app: Any
    logger: logging.Logger
    token: CancellationToken
    runner: ProcessRunner
    output_dir: Path


@dataclass
class PipelineContext:
    """Shared by every step of one `execute` call."""
    app: Any = None
    token: CancellationToken = field(default_factory=CancellationToken)
    runner: ProcessRunner = field(default_factory=ProcessRunner)
    output_dir: Path = field(default_factory=lambda: Path(settings.OUTPUT_DIR))

    def for_step(self, name: str) -> PipelineStepContext:
        return PipelineStepContext(
            step_name=name,
            app=self.app,
            logger=get_step_logger(name),
            token=self.token,
            runner=self.runner,
            output_dir=Path(self.output_dir),
        )


class PipelineStepRegistry:
    """
    Named deploy-time steps ordered by their `required_by_steps` /
    `depends_on_steps` edges.

    Failure policy: a failed step skips every step that requires it,
    directly or transitively. Steps on independent branches still run.
    """

    def __init__(self, include_well_known: bool = True):
        self._steps: Dict[str, PipelineStep] = {}
        if include_well_known:
            for name in WELL_KNOWN_STEPS:
                self.register(PipelineStep(name=name))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, step: PipelineStep) -> PipelineStep:
        if step.name in self._steps:
            raise DuplicateStepError(step.name)
        self._steps[step.name] = step
        return step

    def register_many(self, steps: Iterable[PipelineStep]) -> None:
        for step in steps:
            self.register(step)

    def collect(self, app: Any) -> None:
        """Register the steps produced by every resource's step factories."""
        for resource in app.resources.values():
            for factory in resource.pipeline_step_factories:
                self.register_many(factory(StepFactoryContext(resource=resource, app=app)))

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def get(self, name: str) -> PipelineStep:
        try:
            return self._steps[name]
        except KeyError:
            raise UnknownStepError(name) from None

    @property
    def steps(self) -> List[PipelineStep]:
        return list(self._steps.values())

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def _prerequisites(self) -> Dict[str, Set[str]]:
        prereq: Dict[str, Set[str]] = {name: set() for name in self._steps}
        for step in self._steps.values():
            for successor in step.required_by_steps:
                if successor not in self._steps:
                    raise UnknownStepError(successor, referenced_by=step.name)
                prereq[successor].add(step.name)
            for dep in step.depends_on_steps:
                if dep not in self._steps:
                    raise UnknownStepError(dep, referenced_by=step.name)
                prereq[step.name].add(dep)
        return prereq

    def resolve_order(self, target: str) -> List[PipelineStep]:
        """
        `target` and everything it needs, prerequisites first.
        Ties are broken by step name.
        """
        if target not in self._steps:
            raise UnknownStepError(target)
        prereq = self._prerequisites()

        closure: Set[str] = set()
        stack = [target]
        while stack:
            name = stack.pop()
            if name in closure:
                continue
            closure.add(name)
            stack.extend(prereq[name])

        indeg = {n: len(prereq[n] & closure) for n in closure}
        dependents: Dict[str, List[str]] = {n: [] for n in closure}
        for n in closure:
            for p in prereq[n] & closure:
                dependents[p].append(n)

        heap = [n for n, d in indeg.items() if d == 0]
        heapq.heapify(heap)
        order: List[str] = []
        while heap:
            name = heapq.heappop(heap)
            order.append(name)
            for nxt in dependents[name]:
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    heapq.heappush(heap, nxt)

        if len(order) != len(closure):
            raise CycleError(sorted(n for n, d in indeg.items() if d > 0))
        return [self._steps[n] for n in order]

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, target: str, context: Optional[PipelineContext] = None) -> List[StepResult]:
        context = context or PipelineContext()
        order = self.resolve_order(target)
        prereq = self._prerequisites()
        log.info("pipeline '%s': %s", target, " -> ".join(s.name for s in order))

        status: Dict[str, str] = {}
        results: List[StepResult] = []

        for step in order:
            if context.token.cancelled:
                result = StepResult(step.name, "cancelled")
            else:
                blocked = sorted(p for p in prereq[step.name] if status.get(p) != "ok")
                if blocked:
                    result = StepResult(
                        step.name,
                        "skipped",
                        error=f"prerequisite '{blocked[0]}' did not complete",
                    )
                else:
                    result = await self._run_step(step, context)

            status[step.name] = result.status
            results.append(result)

        return results

    async def _run_step(self, step: PipelineStep, context: PipelineContext) -> StepResult:
        step_ctx = context.for_step(step.name)
        if step.action is None:
            return StepResult(step.name, "ok")

        step_ctx.logger.info("step started")
        start = time.monotonic()
        try:
            await step.action(step_ctx)
        except Exception as e:
            duration = time.monotonic() - start
            if context.token.cancelled:
                step_ctx.logger.info("step cancelled")
                return StepResult(step.name, "cancelled", duration_s=duration)
            step_ctx.logger.error("step failed: %s", e)
            return StepResult(step.name, "failed", error=str(e) or type(e).__name__, duration_s=duration)

        duration = time.monotonic() - start
        if context.token.cancelled:
            return StepResult(step.name, "cancelled", duration_s=duration)
        step_ctx.logger.info("step completed in %.1fs", duration)
        return StepResult(step.name, "ok", duration_s=duration)
