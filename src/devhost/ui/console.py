"""Console output formatting utilities for devhost."""

from __future__ import annotations

import sys
from typing import Dict, List, Optional

from ..model import CommandResult, ResourceState, StepResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_header(self, title: str) -> None:
        """Print a section header."""
        print(f"\n{title}")
        print("-" * len(title))

    def print_run_started(self, app: str, resource_count: int) -> None:
        """Print run start information."""
        print("\nAPPHOST STARTED")
        print(f"Application: {app}")
        print(f"Resources: {resource_count}")
        print()

    def print_plan(self, levels: List[List[str]], parents: Optional[Dict[str, str]] = None) -> None:
        """Print start-up stages; resources in one stage start concurrently."""
        parents = parents or {}
        self.print_header("START PLAN")
        for idx, level in enumerate(levels, start=1):
            print(f"Stage {idx}:")
            for name in level:
                parent = parents.get(name)
                suffix = f" (child of {parent})" if parent else ""
                print(f"  {name}{suffix}")

    def print_resource_starting(self, name: str, kind: str) -> None:
        print(f"STARTING: {name} ({kind})")

    def print_resource_ready(self, name: str, urls: Optional[List[str]] = None) -> None:
        line = f"READY: {name}"
        if urls:
            line += f" -> {', '.join(urls)}"
        print(line)

    def print_resource_failed(self, name: str, reason: Optional[str]) -> None:
        print(f"FAILED: {name}")
        if reason:
            if self.debug:
                print(f"Reason: {reason}")
            else:
                print(f"Reason: {reason.splitlines()[0]}")

    def print_results(self, states: Dict[str, ResourceState], reasons: Optional[Dict[str, Optional[str]]] = None) -> None:
        """Print final resource states."""
        reasons = reasons or {}
        print("\n" + "=" * 40)
        print("RESOURCES")
        print("=" * 40)
        for name, state in states.items():
            status_display = state.value.upper().replace("_", " ")
            reason = reasons.get(name)
            if reason and state is ResourceState.FAILED:
                print(f"  {name}: {status_display} ({reason.splitlines()[0]})")
            else:
                print(f"  {name}: {status_display}")

    def print_command_result(self, resource: str, command: str, result: CommandResult) -> None:
        if result.success:
            print(f"COMMAND {resource}:{command}: success")
        else:
            print(f"COMMAND {resource}:{command}: failed")
            if result.error_message:
                print(f"Error: {result.error_message}")

    def print_step_results(self, target: str, results: List[StepResult]) -> None:
        print("\n" + "=" * 40)
        print(f"PIPELINE: {target}")
        print("=" * 40)
        for r in results:
            status_display = r.status.upper() if r.status != "ok" else "SUCCESS"
            line = f"  {r.name}: {status_display}"
            if r.duration_s:
                line += f" ({r.duration_s:.1f}s)"
            print(line)
            if r.error:
                print(f"    {r.error.splitlines()[0]}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
