# runner.py
from __future__ import annotations

import asyncio
import logging
import runpy
import signal
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from . import settings
from .commands import CommandContext, CommandService
from .dag import ResourceGraph
from .dsl import AppBuilder, DistributedApplication
from .errors import ProcessExitError
from .interaction import ConsoleInteractionService, InteractionService, StaticInteractionService
from .logs import configure_logging, get_resource_logger
from .model import CommandResult, Resource, ResourceKind, ResourceState, StepResult, resolve_value
from .pipeline import PipelineContext, PipelineStepRegistry
from .process import CancellationToken, ProcessHandle, ProcessRunner
from .ui.console import Console, get_console

log = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Apphost loading (local file)
# ----------------------------------------------------------------------

def load_apphost(path: str | Path) -> DistributedApplication:
    """
    Load an application model from a file.

    A `.py` file must define either:
      - apphost() -> AppBuilder | DistributedApplication
      - APP = AppBuilder | DistributedApplication

    A `.json` file is read as a declarative manifest.
    """
    app_path = Path(path).expanduser().resolve()
    if not app_path.exists():
        raise FileNotFoundError(f"Apphost file not found: {app_path}")

    if app_path.suffix == ".json":
        from .manifest import load_manifest

        return load_manifest(app_path).to_builder().build()

    if app_path.suffix != ".py":
        raise ValueError(f"Apphost must be a .py or .json file, got: {app_path.name}")

    module_name = f"devhost_apphost_{app_path.stem}"
    globals_dict = runpy.run_path(str(app_path), run_name=module_name)

    app = None
    if "apphost" in globals_dict and callable(globals_dict["apphost"]):
        app = globals_dict["apphost"]()
    elif "APP" in globals_dict:
        app = globals_dict["APP"]

    if isinstance(app, AppBuilder):
        app = app.build()
    if not isinstance(app, DistributedApplication):
        raise TypeError(
            "Apphost must return/define an AppBuilder or DistributedApplication. "
            "Define apphost() -> AppBuilder or APP = AppBuilder(...)."
        )
    return app


# ----------------------------------------------------------------------
# Graph build
# ----------------------------------------------------------------------

def build_graph(app: DistributedApplication) -> ResourceGraph:
    """Fails fast on duplicates, unknown names and cycles."""
    graph = ResourceGraph()
    for resource in app.resources.values():
        graph.add_resource(resource.name, resource.kind)
    for resource in app.resources.values():
        if resource.parent:
            graph.add_parent(resource.parent, resource.name)
        for dep in resource.wait_for:
            graph.add_wait_for(resource.name, dep)
    graph.topological_order()
    return graph


# ----------------------------------------------------------------------
# Driver
# ----------------------------------------------------------------------

class Orchestrator:
    """
    Starts the resources of one application, each as soon as everything it
    waits for is ready, and keeps long-running ones alive until stopped.

    Per resource: NOT_STARTED -> STARTING -> READY | FAILED.
      - one-shot processes are ready when they exit with code 0
      - long-running processes are ready when their health check passes
        (or as soon as they are spawned if they have none)
      - resources without a command are ready when their check passes
    """

    def __init__(
        self,
        app: DistributedApplication,
        *,
        runner: Optional[ProcessRunner] = None,
        interaction: Optional[InteractionService] = None,
        console: Optional[Console] = None,
        startup_timeout: float = settings.STARTUP_TIMEOUT_SECONDS,
        probe_interval: float = settings.PROBE_INTERVAL_SECONDS,
    ):
        self.app = app
        self.runner = runner or ProcessRunner()
        self.interaction = interaction or StaticInteractionService(accept=False)
        self.console = console or get_console()
        self.startup_timeout = startup_timeout
        self.probe_interval = probe_interval

        self.graph = build_graph(app)
        self.commands = CommandService(app, self.interaction, self.runner)

        self._services: Dict[str, asyncio.Task] = {}
        self._service_tokens: Dict[str, CancellationToken] = {}
        self._stopping = False

    # ------------------------------------------------------------------
    # Start-up
    # ------------------------------------------------------------------

    async def start(self, token: Optional[CancellationToken] = None) -> Dict[str, ResourceState]:
        token = token or CancellationToken()
        order = self.graph.topological_order()
        self.allocate_endpoints()
        self.console.print_run_started(self.app.name, len(order))

        tasks = [
            asyncio.create_task(self._drive(self.app.resources[name], token), name=f"devhost:{name}")
            for name in order
        ]
        await asyncio.gather(*tasks)
        return self.graph.states()

    def allocate_endpoints(self) -> None:
        """Give every endpoint its port before anything starts; idempotent."""
        for resource in self.app.resources.values():
            resource.allocate_endpoints()

    async def _drive(self, resource: Resource, token: CancellationToken) -> None:
        name = resource.name
        logger = get_resource_logger(name)

        for dep in self.graph.dependencies_of(name):
            state = await self._wait_or_cancel(dep, token)
            if state is None or state is ResourceState.FAILED:
                # cancelled: stay NOT_STARTED; failed: the cascade already failed us,
                # unless the failure was a cancellation, which does not cascade
                return

        if token.cancelled or self.graph.state(name) is not ResourceState.NOT_STARTED:
            return

        self.graph.mark_starting(name)
        self.console.print_resource_starting(name, resource.kind.value)

        try:
            await self._start(resource, token, logger)
        except Exception as e:
            logger.debug("start failed", exc_info=True)
            svc_token = self._service_tokens.get(name)
            if svc_token is not None:
                svc_token.cancel()
            self._fail(name, str(e) or type(e).__name__, cascade=not token.cancelled)

    async def _wait_or_cancel(self, dep: str, token: CancellationToken) -> Optional[ResourceState]:
        waiter = asyncio.create_task(self.graph.wait_until_ready(dep))
        cancelled = asyncio.create_task(token.wait())
        done, pending = await asyncio.wait({waiter, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()
        if waiter in done:
            return waiter.result()
        return None

    async def _start(self, resource: Resource, token: CancellationToken, logger: logging.Logger) -> None:
        name = resource.name
        command, args, env = await self._launch_plan(resource)

        if command is None:
            ok, reason = await self._wait_healthy(resource, token, None, None)
            await self._finish(resource, token, ok, reason)
            return

        if resource.one_shot:
            result = await self.runner.run(
                command, args, cwd=resource.working_dir, env=env, token=token, logger=logger
            )
            if result.cancelled:
                self._fail(name, "cancelled during start", cascade=False)
            elif result.exit_code != 0:
                err = ProcessExitError(command, args, result.exit_code, result.lines[-20:])
                self._fail(name, str(err))
            else:
                await self._ready(resource, token)
            return

        svc_token = token.linked()
        spawned = asyncio.Event()

        def on_start(_handle: ProcessHandle) -> None:
            spawned.set()

        task = asyncio.create_task(
            self.runner.run(
                command,
                args,
                cwd=resource.working_dir,
                env=env,
                token=svc_token,
                on_start=on_start,
                logger=logger,
            ),
            name=f"devhost:{name}:process",
        )
        self._services[name] = task
        self._service_tokens[name] = svc_token

        ok, reason = await self._wait_healthy(resource, token, task, spawned)
        if not ok:
            svc_token.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._finish(resource, token, ok, reason)
        if ok and self.graph.is_ready(name):
            task.add_done_callback(lambda t: self._service_exited(name, t))

    async def _finish(self, resource: Resource, token: CancellationToken, ok: bool, reason: Optional[str]) -> None:
        if ok:
            await self._ready(resource, token)
        else:
            self._fail(resource.name, reason, cascade=not token.cancelled)

    async def _launch_plan(self, resource: Resource) -> Tuple[Optional[str], List[str], Dict[str, str]]:
        env = {k: await resolve_value(v) for k, v in resource.env.items()}
        args = [await resolve_value(a) for a in resource.args]

        if resource.kind is ResourceKind.CONTAINER and resource.image:
            argv = ["run", "--rm", "--name", resource.name]
            for ep in resource.endpoints.values():
                argv += ["-p", f"{ep.port}:{ep.target_port}"]
            for k, v in env.items():
                argv += ["-e", f"{k}={v}"]
            argv += [resource.image, *args]
            return resource.command or "docker", argv, {}

        http = resource.endpoints.get("http")
        if http is not None:
            env.setdefault("PORT", str(http.target_port))
        return resource.command, args, env

    async def _wait_healthy(
        self,
        resource: Resource,
        token: CancellationToken,
        task: Optional[asyncio.Task],
        spawned: Optional[asyncio.Event],
    ) -> Tuple[bool, Optional[str]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        probe = resource.health_check
        logger = get_resource_logger(resource.name)

        if spawned is not None:
            await self._wait_any(token, task, spawned.wait(), timeout=None)

        while True:
            if token.cancelled:
                return False, "cancelled during start"
            if task is not None and task.done():
                return False, _exit_reason(task)
            if probe is None:
                return True, None
            try:
                if await probe():
                    return True, None
            except Exception as e:
                logger.debug("health check error: %s", e)
            if loop.time() >= deadline:
                return False, f"not healthy after {self.startup_timeout:.0f}s"
            await self._wait_any(token, task, None, timeout=self.probe_interval)

    async def _wait_any(
        self,
        token: CancellationToken,
        task: Optional[asyncio.Task],
        extra: Optional[Awaitable],
        timeout: Optional[float],
    ) -> None:
        waiters = [asyncio.ensure_future(token.wait())]
        if extra is not None:
            waiters.append(asyncio.ensure_future(extra))
        watch = list(waiters)
        if task is not None:
            watch.append(task)
        await asyncio.wait(watch, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        for w in waiters:
            if not w.done():
                w.cancel()

    async def _ready(self, resource: Resource, token: CancellationToken) -> None:
        name = resource.name
        if self.graph.state(name).is_terminal:
            return
        self.graph.mark_ready(name)
        urls = [ep.url for ep in resource.endpoints.values() if ep.allocated and ep.scheme.startswith("http")]
        self.console.print_resource_ready(name, urls)

        logger = get_resource_logger(name)
        for hook in resource.ready_hooks:
            ctx = CommandContext(
                resource=resource,
                app=self.app,
                logger=logger,
                token=token,
                interaction=self.interaction,
                runner=self.runner,
            )
            try:
                await hook(ctx)
            except Exception as e:
                logger.error("ready hook failed: %s", e)

    def _fail(self, name: str, reason: Optional[str], *, cascade: bool = True) -> None:
        if self.graph.state(name).is_terminal:
            return
        cascaded = self.graph.mark_failed(name, reason, cascade=cascade)
        self.console.print_resource_failed(name, reason)
        for dependent in cascaded:
            self.console.print_resource_failed(dependent, self.graph.reason(dependent))

    def _service_exited(self, name: str, task: asyncio.Task) -> None:
        if self._stopping:
            return
        get_resource_logger(name).warning("process stopped: %s", _exit_reason(task))

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def run(
        self,
        token: Optional[CancellationToken] = None,
        on_started: Optional[Callable[[Orchestrator], Awaitable[None]]] = None,
    ) -> Dict[str, ResourceState]:
        """Start everything, then keep services alive until `token` is cancelled."""
        token = token or CancellationToken()
        try:
            states = await self.start(token)
            self.console.print_results(states, {n: self.graph.reason(n) for n in states})

            if on_started is not None and not token.cancelled:
                await on_started(self)

            running = [t for t in self._services.values() if not t.done()]
            if running and not token.cancelled:
                self.console.print_info("\nPress Ctrl+C to stop.")
                stop = asyncio.ensure_future(token.wait())
                while running and not stop.done():
                    await asyncio.wait([stop, *running], return_when=asyncio.FIRST_COMPLETED)
                    running = [t for t in running if not t.done()]
                if not stop.done():
                    stop.cancel()
            return self.graph.states()
        finally:
            await self.stop()

    async def stop(self) -> None:
        self._stopping = True
        for svc_token in self._service_tokens.values():
            svc_token.cancel()
        if self._services:
            await asyncio.gather(*self._services.values(), return_exceptions=True)

    async def invoke_command(
        self,
        resource: str,
        command: str,
        token: Optional[CancellationToken] = None,
    ) -> CommandResult:
        self.allocate_endpoints()
        return await self.commands.invoke(resource, command, token)

    async def publish(
        self,
        step: str = "deploy",
        token: Optional[CancellationToken] = None,
        output_dir: str | Path = settings.OUTPUT_DIR,
    ) -> List[StepResult]:
        registry = PipelineStepRegistry()
        registry.collect(self.app)
        context = PipelineContext(
            app=self.app,
            token=token or CancellationToken(),
            runner=self.runner,
            output_dir=Path(output_dir),
        )
        return await registry.execute(step, context)


def _exit_reason(task: asyncio.Task) -> str:
    if task.cancelled():
        return "process task cancelled"
    exc = task.exception()
    if exc is not None:
        return str(exc) or type(exc).__name__
    result = task.result()
    if result.cancelled:
        return "process was stopped"
    return f"process exited with code {result.exit_code}"


# ----------------------------------------------------------------------
# Blocking entry point
# ----------------------------------------------------------------------

def run_app(
    app: DistributedApplication,
    *,
    interaction: Optional[InteractionService] = None,
    exec_commands: Sequence[Tuple[str, str]] = (),
    debug: bool = False,
) -> int:
    """
    Run `app` until Ctrl+C / SIGTERM. Returns 1 if any resource or
    requested command failed, else 0.
    """
    configure_logging(debug)
    console = get_console()

    async def main() -> int:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, token.cancel)
            except (NotImplementedError, RuntimeError):
                pass

        orch = Orchestrator(
            app,
            interaction=interaction or ConsoleInteractionService(),
            console=console,
        )
        command_failed = False

        async def on_started(o: Orchestrator) -> None:
            nonlocal command_failed
            for resource, command in exec_commands:
                result = await o.invoke_command(resource, command, token)
                console.print_command_result(resource, command, result)
                command_failed = command_failed or not result.success

        states = await orch.run(token, on_started if exec_commands else None)
        failed = any(s is ResourceState.FAILED for s in states.values())
        return 1 if failed or command_failed else 0

    return asyncio.run(main())
