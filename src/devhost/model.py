# model.py
from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional


class ResourceKind(str, Enum):
    CONTAINER = "container"
    PROJECT = "project"
    EXECUTABLE = "executable"
    DATABASE = "database"
    DATABASE_TABLE = "database-table"


class ResourceState(str, Enum):
    NOT_STARTED = "not_started"   # declared, not yet allowed to start
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ResourceState.READY, ResourceState.FAILED)


# ---------------------------------------------------------------------
# Endpoints and lazily resolved values
# ---------------------------------------------------------------------

def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@dataclass
class Endpoint:
    """A named URL-producing slot on a resource."""
    name: str
    scheme: str = "http"
    port: Optional[int] = None          # None -> a free local port at start
    target_port: Optional[int] = None   # port inside the container / process
    host: str = "localhost"
    is_external: bool = False

    _allocated: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def allocated(self) -> bool:
        return self._allocated.is_set()

    def allocate(self) -> None:
        if self.port is None:
            self.port = _free_port()
        if self.target_port is None:
            self.target_port = self.port
        self._allocated.set()

    @property
    def url(self) -> str:
        if not self.allocated:
            raise RuntimeError(f"Endpoint '{self.name}' has not been allocated yet")
        return f"{self.scheme}://{self.host}:{self.port}"

    async def wait_allocated(self) -> None:
        await self._allocated.wait()


class EndpointReference:
    """Refers to an endpoint of a resource; resolves once it is allocated."""

    def __init__(self, resource: Resource, endpoint_name: str):
        self.resource = resource
        self.endpoint_name = endpoint_name

    @property
    def endpoint(self) -> Endpoint:
        try:
            return self.resource.endpoints[self.endpoint_name]
        except KeyError:
            raise KeyError(
                f"Resource '{self.resource.name}' has no endpoint '{self.endpoint_name}'. "
                f"Known endpoints: {sorted(self.resource.endpoints)}"
            ) from None

    async def get_value(self) -> str:
        endpoint = self.endpoint
        await endpoint.wait_allocated()
        return endpoint.url

    def __repr__(self) -> str:
        return f"EndpointReference({self.resource.name}.{self.endpoint_name})"


class ConnectionStringReference:
    """
    Resolves a resource's connection string template.

    The template is formatted with ``host`` and ``port`` of the resource's
    first endpoint once that endpoint is allocated.
    """

    def __init__(self, resource: Resource):
        self.resource = resource

    async def get_value(self) -> str:
        resource = self.resource
        if resource.connection_string is None:
            raise ValueError(f"Resource '{resource.name}' does not expose a connection string")
        source = resource.endpoint_source or resource
        if not source.endpoints:
            return resource.connection_string
        endpoint = next(iter(source.endpoints.values()))
        await endpoint.wait_allocated()
        return resource.connection_string.format(host=endpoint.host, port=endpoint.port)

    def __repr__(self) -> str:
        return f"ConnectionStringReference({self.resource.name})"


async def resolve_value(value: Any) -> str:
    """Resolve a plain value or anything with an async ``get_value()``."""
    getter = getattr(value, "get_value", None)
    if getter is not None:
        return str(await getter())
    return str(value)


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

@dataclass
class CommandResult:
    success: bool
    error_message: Optional[str] = None

    @classmethod
    def ok(cls) -> CommandResult:
        return cls(success=True)

    @classmethod
    def failed(cls, message: str) -> CommandResult:
        return cls(success=False, error_message=message)


CommandAction = Callable[[Any], Awaitable[Optional[CommandResult]]]


@dataclass
class ResourceCommand:
    """A named, operator-invocable action bound to a resource."""
    name: str
    description: str
    action: CommandAction
    requires_confirmation: bool = False
    confirmation_message: Optional[str] = None
    confirmation_title: str = "Confirm"
    cancelled_message: str = "cancelled by user"


# ---------------------------------------------------------------------
# Pipeline steps
# ---------------------------------------------------------------------

StepAction = Callable[[Any], Awaitable[None]]


@dataclass
class PipelineStep:
    """
    A named deploy-time action.

    `required_by_steps` lists steps that must wait for this one;
    `depends_on_steps` lists steps this one waits for.
    """
    name: str
    action: Optional[StepAction] = None
    required_by_steps: List[str] = field(default_factory=list)
    depends_on_steps: List[str] = field(default_factory=list)


@dataclass
class StepResult:
    name: str
    status: str                # "ok" | "failed" | "skipped" | "cancelled"
    error: Optional[str] = None
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "ok"


# ---------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------

HealthCheck = Callable[[], Awaitable[bool]]
ReadyHook = Callable[[Any], Awaitable[None]]
StepFactory = Callable[[Any], List[PipelineStep]]


@dataclass
class Resource:
    """
    A named unit of work managed by the orchestrator.

    Canonical dependency field: `wait_for` (names of resources that must be
    ready before this one starts).
    """
    name: str
    kind: ResourceKind

    # process to spawn (None -> nothing to spawn, readiness is probe-only)
    command: Optional[str] = None
    args: List[Any] = field(default_factory=list)
    working_dir: Optional[str] = None
    env: Dict[str, Any] = field(default_factory=dict)
    image: Optional[str] = None

    # one-shot resources are ready when their process exits with code 0
    one_shot: bool = False
    health_check: Optional[HealthCheck] = None

    endpoints: Dict[str, Endpoint] = field(default_factory=dict)
    connection_string: Optional[str] = None
    endpoint_source: Optional[Resource] = field(default=None, repr=False)

    wait_for: List[str] = field(default_factory=list)
    parent: Optional[str] = None

    commands: Dict[str, ResourceCommand] = field(default_factory=dict)
    pipeline_step_factories: List[StepFactory] = field(default_factory=list)
    ready_hooks: List[ReadyHook] = field(default_factory=list)

    icon_name: Optional[str] = None
    exclude_from_manifest: bool = False

    # recipe-specific data (e.g. which server and database a reset targets)
    annotations: Dict[str, Any] = field(default_factory=dict)

    def allocate_endpoints(self) -> None:
        for endpoint in self.endpoints.values():
            if not endpoint.allocated:
                endpoint.allocate()
