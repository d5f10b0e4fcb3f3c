"""Operator interaction: confirmation prompts that gate commands."""

from __future__ import annotations

import asyncio
import os
import sys
import threading
from dataclasses import dataclass
from typing import Optional

import click

from .process import CancellationToken


@dataclass
class InteractionResult:
    accepted: bool
    cancelled: bool = False

    @property
    def confirmed(self) -> bool:
        return self.accepted and not self.cancelled


class InteractionService:
    """Base class: a synchronous confirmation round-trip with the operator."""

    async def prompt_confirmation(
        self,
        message: str,
        title: str = "Confirm",
        token: Optional[CancellationToken] = None,
    ) -> InteractionResult:
        raise NotImplementedError


class StaticInteractionService(InteractionService):
    """Answers every prompt the same way (``--yes``, non-interactive runs, tests)."""

    def __init__(self, accept: bool = True, cancel: bool = False):
        self.accept = accept
        self.cancel = cancel
        self.prompts: list[tuple[str, str]] = []

    async def prompt_confirmation(self, message, title="Confirm", token=None):
        self.prompts.append((title, message))
        if self.cancel or (token is not None and token.cancelled):
            return InteractionResult(accepted=False, cancelled=True)
        return InteractionResult(accepted=self.accept)


class ConsoleInteractionService(InteractionService):
    """
    Prompts on the terminal via click; Ctrl+C / EOF counts as cancel.

    The prompt blocks on stdin in a daemon thread, so a cancelled prompt
    never holds up interpreter or event-loop shutdown.
    """

    async def prompt_confirmation(self, message, title="Confirm", token=None):
        if token is not None and token.cancelled:
            return InteractionResult(accepted=False, cancelled=True)

        loop = asyncio.get_running_loop()
        answer: asyncio.Future = loop.create_future()
        threading.Thread(
            target=_ask_in_thread,
            args=(loop, answer, title, message),
            name="devhost-confirm",
            daemon=True,
        ).start()
        if token is None:
            return await answer

        cancelled = asyncio.ensure_future(token.wait())
        done, _pending = await asyncio.wait({answer, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        if answer in done:
            cancelled.cancel()
            return answer.result()

        # any later answer from the thread is dropped
        answer.cancel()
        return InteractionResult(accepted=False, cancelled=True)


def _ask_in_thread(loop, answer, title, message) -> None:
    try:
        result = _ask(title, message)
    except Exception as e:
        _post(loop, answer, None, e)
    else:
        _post(loop, answer, result, None)


def _post(loop, answer, result, error) -> None:
    def resolve() -> None:
        if answer.done():
            return
        if error is not None:
            answer.set_exception(error)
        else:
            answer.set_result(result)

    try:
        loop.call_soon_threadsafe(resolve)
    except RuntimeError:
        # loop already closed: nobody is waiting for this answer
        pass


def _ask(title: str, message: str) -> InteractionResult:
    stdin = sys.stdin
    click.echo(f"\n{title}")
    while True:
        click.echo(f"{message} [y/N]: ", nl=False)
        line = _read_line(stdin)
        if line is None:
            click.echo()
            return InteractionResult(accepted=False, cancelled=True)
        value = line.strip()
        if not value:
            return InteractionResult(accepted=False)
        try:
            return InteractionResult(accepted=click.BOOL.convert(value, None, None))
        except click.BadParameter:
            click.echo("Error: invalid input", err=True)


def _read_line(stream) -> Optional[str]:
    """One line without its newline, or None at EOF."""
    # Read the raw fd when there is one: a thread parked inside the
    # buffered stream would hold its lock through interpreter shutdown.
    try:
        fd = stream.fileno()
    except (OSError, ValueError):
        line = stream.readline()
        return line.rstrip("\r\n") if line else None

    data = bytearray()
    while True:
        chunk = os.read(fd, 1)
        if not chunk:
            return data.decode(errors="replace") if data else None
        if chunk == b"\n":
            return data.decode(errors="replace")
        data += chunk
