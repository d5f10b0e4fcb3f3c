# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence


# ----------------------------------------------------------------------
# Graph / registry misuse (fatal, raised before anything runs)
# ----------------------------------------------------------------------

class GraphError(ValueError):
    """Base class for configuration errors in the resource or step graph."""


class DuplicateResourceError(GraphError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate resource name: {name}")


class UnknownResourceError(GraphError):
    def __init__(self, name: str, known: Sequence[str] = ()):
        self.name = name
        msg = f"Unknown resource '{name}'"
        if known:
            msg += f". Known resources: {sorted(known)}"
        super().__init__(msg)


class CycleError(GraphError):
    def __init__(self, path: Sequence[str]):
        self.path = list(path)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.path)}")


class InvalidTransitionError(GraphError):
    def __init__(self, name: str, current: str, target: str):
        self.name = name
        self.current = current
        self.target = target
        super().__init__(f"Resource '{name}' cannot move from {current} to {target}")


class DuplicateStepError(GraphError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate pipeline step: {name}")


class UnknownStepError(GraphError):
    def __init__(self, name: str, referenced_by: str | None = None):
        self.name = name
        msg = f"Unknown pipeline step '{name}'"
        if referenced_by:
            msg += f" (referenced by '{referenced_by}')"
        super().__init__(msg)


class DuplicateCommandError(GraphError):
    def __init__(self, resource: str, command: str):
        self.resource = resource
        self.command = command
        super().__init__(f"Command '{command}' is already registered on resource '{resource}'")


# ----------------------------------------------------------------------
# Runtime errors
# ----------------------------------------------------------------------

@dataclass(eq=False)
class OrchestrationError(Exception):
    """
    Structured runtime error with enough context for:
      - clean CLI output
      - the resource's failure reason
      - debugging without full tracebacks
    """
    kind: str
    resource: str | None
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.resource:
            lines.append(f"resource={self.resource}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ProcessStartError(OrchestrationError):
    """The process could not be spawned at all (missing tool, bad cwd)."""


@dataclass(eq=False)
class ProcessExitError(Exception):
    command: str
    arguments: list
    exit_code: int
    output: list = field(default_factory=list)

    def __str__(self) -> str:
        cmd = " ".join([self.command, *map(str, self.arguments)])
        return f"'{cmd}' exited with code {self.exit_code}"


class ConfirmationDeclinedError(Exception):
    """The operator declined or dismissed a confirmation prompt."""

    def __init__(self, message: str = "cancelled by user"):
        super().__init__(message)


class SeedItemError(Exception):
    """A single item of the data population loop could not be created."""
