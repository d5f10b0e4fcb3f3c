# process.py
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from . import settings
from .errors import ProcessExitError, ProcessStartError

log = logging.getLogger(__name__)

LineSink = Callable[[str, str], None]   # (stream name, line)

TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "psql": "Install the PostgreSQL client tools or fix PATH.",
    "pg_isready": "Install the PostgreSQL client tools or fix PATH.",
    "alembic": "Install alembic (e.g., pip install alembic).",
    "uvicorn": "Install uvicorn (e.g., pip install uvicorn).",
    "python3": "Install Python 3 or fix PATH (python3).",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
}

# Upper bound on waiting for buffered output once the process is gone.
_DRAIN_TIMEOUT_S = 5.0
_LINE_LIMIT = 1 << 20


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class CancellationToken:
    """
    One-way cancellation signal shared by cooperating tasks.

    `cancel()` is idempotent; callbacks run once, synchronously, in the
    cancelling call. Tokens created with `linked()` are cancelled together
    with their parent but can also be cancelled on their own.
    """

    def __init__(self, parent: Optional[CancellationToken] = None):
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], None]] = []
        if parent is not None:
            parent.register(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb()

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run `callback` on cancellation. Returns an unregister function."""
        if self.cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    async def wait(self) -> None:
        await self._event.wait()

    def linked(self) -> CancellationToken:
        return CancellationToken(parent=self)


# ----------------------------------------------------------------------
# Handle / result
# ----------------------------------------------------------------------

@dataclass
class ProcessHandle:
    """One spawned process. Owned by the `run` call that created it."""
    command: str
    args: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    pid: Optional[int] = None
    lines: List[str] = field(default_factory=list)   # stdout + stderr, arrival order
    exit_code: Optional[int] = None
    cancelled: bool = False

    @property
    def display(self) -> str:
        return " ".join([self.command, *self.args])


@dataclass
class ProcessResult:
    handle: ProcessHandle

    @property
    def exit_code(self) -> Optional[int]:
        return self.handle.exit_code

    @property
    def cancelled(self) -> bool:
        return self.handle.cancelled

    @property
    def lines(self) -> List[str]:
        return self.handle.lines

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.exit_code == 0

    def check(self) -> ProcessResult:
        """Raise ProcessExitError for a non-zero exit code."""
        if not self.cancelled and self.exit_code != 0:
            raise ProcessExitError(
                command=self.handle.command,
                arguments=list(self.handle.args),
                exit_code=self.exit_code if self.exit_code is not None else -1,
                output=self.handle.lines[-20:],
            )
        return self


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

class ProcessRunner:
    """
    Spawns external commands and turns their lifecycle events (output
    lines, exit) into a single awaited ProcessResult.
    """

    def __init__(
        self,
        logger: Optional[logging.Logger] = None,
        grace_period: float = settings.KILL_GRACE_SECONDS,
    ):
        self.logger = logger or log
        self.grace_period = grace_period

    async def run(
        self,
        command: str,
        args: Sequence[Any] = (),
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, Any] | None = None,
        token: Optional[CancellationToken] = None,
        on_line: Optional[LineSink] = None,
        on_start: Optional[Callable[[ProcessHandle], None]] = None,
        logger: Optional[logging.Logger] = None,
        check: bool = False,
    ) -> ProcessResult:
        """
        Run `command args...` to completion (or cancellation).

        Output lines go to `on_line(stream, line)` if given, otherwise to
        the logger at DEBUG. `on_start(handle)` fires once the process is
        spawned. The exit code is returned as-is; with `check=True` a
        non-zero exit raises ProcessExitError.
        """
        sink_logger = logger or self.logger
        argv = [str(a) for a in args]
        handle = ProcessHandle(
            command=str(command),
            args=argv,
            cwd=str(cwd) if cwd is not None else None,
            env={k: str(v) for k, v in (env or {}).items()},
        )

        if handle.cwd is not None and not Path(handle.cwd).is_dir():
            raise ProcessStartError(
                kind="cwd_missing",
                resource=None,
                message=f"working directory not found: {handle.cwd}",
                details={"command": handle.display},
            )

        if token is not None and token.cancelled:
            handle.cancelled = True
            return ProcessResult(handle)

        proc_env = os.environ.copy()
        proc_env.update(handle.env)

        try:
            proc = await asyncio.create_subprocess_exec(
                handle.command,
                *argv,
                cwd=handle.cwd,
                env=proc_env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_LINE_LIMIT,
            )
        except FileNotFoundError as e:
            tool = Path(handle.command).name
            raise ProcessStartError(
                kind="tool_missing",
                resource=None,
                message=f"'{handle.command}' was not found",
                details={"hint": TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")},
            ) from e
        except PermissionError as e:
            raise ProcessStartError(
                kind="not_executable",
                resource=None,
                message=f"'{handle.command}' is not executable",
                details={"error": str(e)},
            ) from e

        handle.pid = proc.pid
        sink_logger.debug("started pid=%s: %s", proc.pid, handle.display)
        if on_start is not None:
            on_start(handle)

        # Exit and cancellation both race to resolve this future; only the
        # first one counts.
        completion: asyncio.Future = asyncio.get_running_loop().create_future()

        def complete(outcome: str) -> None:
            if not completion.done():
                completion.set_result(outcome)

        def deliver(stream: str, line: str) -> None:
            handle.lines.append(line)
            if on_line is not None:
                on_line(stream, line)
            else:
                sink_logger.debug(line)

        readers = [
            asyncio.create_task(_pump(proc.stdout, "stdout", deliver)),
            asyncio.create_task(_pump(proc.stderr, "stderr", deliver)),
        ]
        exit_watch = asyncio.create_task(proc.wait())
        exit_watch.add_done_callback(lambda _t: complete("exited"))
        unregister = token.register(lambda: complete("cancelled")) if token is not None else None

        try:
            outcome = await completion
            if outcome == "cancelled":
                handle.cancelled = True
                await self._terminate(proc)
                await _drain(readers, timeout=min(_DRAIN_TIMEOUT_S, 1.0))
                sink_logger.info("cancelled: %s", handle.display)
            else:
                await _drain(readers, timeout=_DRAIN_TIMEOUT_S)
                handle.exit_code = proc.returncode
        finally:
            if unregister is not None:
                unregister()
            if proc.returncode is None:
                # the awaiting task itself was cancelled
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            for t in (*readers, exit_watch):
                if not t.done():
                    t.cancel()

        result = ProcessResult(handle)
        if check:
            result.check()
        return result

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            if self.grace_period > 0:
                proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), self.grace_period)
                    return
                except asyncio.TimeoutError:
                    pass
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


async def _pump(stream: Optional[asyncio.StreamReader], name: str, deliver: Callable[[str, str], None]) -> None:
    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # line longer than the reader limit; hand over what is buffered
            raw = await stream.read(_LINE_LIMIT)
        if not raw:
            break
        deliver(name, raw.decode("utf-8", errors="replace").rstrip("\r\n"))


async def _drain(readers: List[asyncio.Task], timeout: float) -> None:
    """Let readers deliver what is still buffered, then give up."""
    _done, pending = await asyncio.wait(readers, timeout=timeout)
    for t in pending:
        t.cancel()
