# src/devhost/dsl.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .commands import add_command
from .errors import DuplicateResourceError
from .model import (
    CommandAction,
    ConnectionStringReference,
    Endpoint,
    EndpointReference,
    HealthCheck,
    ReadyHook,
    Resource,
    ResourceKind,
    StepFactory,
)
from .probes import http_probe


def env_name(name: str) -> str:
    """`app-db` -> `APP_DB`"""
    return re.sub(r"[^0-9A-Za-z]+", "_", name).strip("_").upper()


# ---------------------------------------------------------------------
# Application model
# ---------------------------------------------------------------------

@dataclass
class DistributedApplication:
    """The built, immutable-by-convention set of declared resources."""
    name: str
    resources: Dict[str, Resource]

    def get(self, name: str) -> Resource:
        return self.resources[name]


# ---------------------------------------------------------------------
# Resource builder (one concern per method, chainable)
# ---------------------------------------------------------------------

Ref = Union["ResourceBuilder", Resource, str]


def _name_of(ref: Ref) -> str:
    if isinstance(ref, str):
        return ref
    if isinstance(ref, ResourceBuilder):
        return ref.resource.name
    return ref.name


class ResourceBuilder:
    def __init__(self, app_builder: AppBuilder, resource: Resource):
        self.app_builder = app_builder
        self.resource = resource

    @property
    def name(self) -> str:
        return self.resource.name

    # -- process ---------------------------------------------------------

    def with_args(self, *args: Any):
        self.resource.args.extend(args)
        return self

    def with_env(self, key: str, value: Any):
        self.resource.env[key] = value
        return self

    def with_working_dir(self, path: str):
        self.resource.working_dir = path
        return self

    # -- ordering / grouping ----------------------------------------------

    def wait_for(self, *others: Ref):
        for other in others:
            name = _name_of(other)
            if name not in self.resource.wait_for:
                self.resource.wait_for.append(name)
        return self

    def wait_for_completion(self, *others: Ref):
        """Wait for one-shot resources (builds, migrations) to exit with code 0."""
        for other in others:
            target = self.app_builder.resources.get(_name_of(other))
            if target is not None and not target.one_shot:
                raise ValueError(
                    f"'{self.name}' cannot wait for completion of '{target.name}': "
                    f"it is a long-running {target.kind.value}"
                )
        return self.wait_for(*others)

    def with_parent_relationship(self, parent: Ref):
        self.resource.parent = _name_of(parent)
        return self

    def with_child_relationship(self, child: Ref):
        self.app_builder.resources[_name_of(child)].parent = self.name
        return self

    # -- endpoints / references ---------------------------------------------

    def with_endpoint(
        self,
        name: str,
        *,
        scheme: str = "tcp",
        port: Optional[int] = None,
        target_port: Optional[int] = None,
        is_external: bool = False,
    ):
        if name in self.resource.endpoints:
            raise ValueError(f"Resource '{self.name}' already has an endpoint named '{name}'")
        self.resource.endpoints[name] = Endpoint(
            name=name,
            scheme=scheme,
            port=port,
            target_port=target_port,
            is_external=is_external,
        )
        return self

    def with_http_endpoint(self, port: Optional[int] = None, target_port: Optional[int] = None, name: str = "http"):
        return self.with_endpoint(name, scheme="http", port=port, target_port=target_port)

    def with_external_http_endpoints(self):
        for endpoint in self.resource.endpoints.values():
            if endpoint.scheme in ("http", "https"):
                endpoint.is_external = True
        return self

    def get_endpoint(self, name: str = "http") -> EndpointReference:
        ref = EndpointReference(self.resource, name)
        ref.endpoint  # fail early on a typo
        return ref

    @property
    def connection_string(self) -> ConnectionStringReference:
        return ConnectionStringReference(self.resource)

    def with_reference(self, other: Ref):
        """
        Hand another resource's address to this one:
          - connection string  -> <NAME>_URL
          - each endpoint      -> <NAME>_<ENDPOINT>_URL
        """
        target = self.app_builder.resources[_name_of(other)]
        prefix = env_name(target.name)
        if target.connection_string is not None:
            self.resource.env[f"{prefix}_URL"] = ConnectionStringReference(target)
        for ep_name in target.endpoints:
            self.resource.env[f"{prefix}_{env_name(ep_name)}_URL"] = EndpointReference(target, ep_name)
        return self

    # -- readiness -----------------------------------------------------------

    def with_health_check(self, probe: HealthCheck):
        self.resource.health_check = probe
        return self

    def with_http_health_check(self, path: str = "/health", endpoint: str = "http"):
        return self.with_health_check(http_probe(self.get_endpoint(endpoint), path))

    def on_ready(self, hook: ReadyHook):
        self.resource.ready_hooks.append(hook)
        return self

    # -- operator surface / deploy ---------------------------------------------

    def with_command(
        self,
        name: str,
        description: str,
        action: CommandAction,
        *,
        requires_confirmation: bool = False,
        confirmation_message: Optional[str] = None,
        confirmation_title: str = "Confirm",
        cancelled_message: str = "cancelled by user",
    ):
        add_command(
            self.resource,
            name,
            description,
            action,
            requires_confirmation=requires_confirmation,
            confirmation_message=confirmation_message,
            confirmation_title=confirmation_title,
            cancelled_message=cancelled_message,
        )
        return self

    def with_pipeline_step_factory(self, factory: StepFactory):
        self.resource.pipeline_step_factories.append(factory)
        return self

    # -- display ---------------------------------------------------------------

    def with_icon_name(self, icon: str):
        self.resource.icon_name = icon
        return self

    def exclude_from_manifest(self):
        self.resource.exclude_from_manifest = True
        return self

    # -- recipes (composition helpers) ----------------------------------------

    def with_build(self, *command: str):
        from .recipes.build import with_build

        return with_build(self, *command)

    def with_data_population(self, **kwargs: Any):
        from .recipes.seed import with_data_population

        return with_data_population(self, **kwargs)


# ---------------------------------------------------------------------
# Application builder
# ---------------------------------------------------------------------

class AppBuilder:
    """
    Collects resource declarations.

    Example:
        builder = AppBuilder("shop")
        db = builder.add_postgres("postgres").add_database("appdb")
        builder.add_project("api", "./api", "uvicorn", "app:app") \\
            .with_http_endpoint().wait_for(db).with_reference(db)
        app = builder.build()
    """

    def __init__(self, name: str = "apphost"):
        self.name = name
        self.resources: Dict[str, Resource] = {}

    def add_resource(self, resource: Resource) -> ResourceBuilder:
        if resource.name in self.resources:
            raise DuplicateResourceError(resource.name)
        self.resources[resource.name] = resource
        return ResourceBuilder(self, resource)

    def add_container(self, name: str, image: str, *args: Any) -> ResourceBuilder:
        return self.add_resource(
            Resource(name=name, kind=ResourceKind.CONTAINER, command="docker", image=image, args=list(args))
        )

    def add_executable(self, name: str, command: str, working_dir: str = ".", *args: Any) -> ResourceBuilder:
        """A one-shot process: ready once it exits with code 0."""
        return self.add_resource(
            Resource(
                name=name,
                kind=ResourceKind.EXECUTABLE,
                command=command,
                args=list(args),
                working_dir=working_dir,
                one_shot=True,
            )
        )

    def add_project(self, name: str, working_dir: str, command: str, *args: Any) -> ResourceBuilder:
        """A long-running service built from a local project directory."""
        return self.add_resource(
            Resource(
                name=name,
                kind=ResourceKind.PROJECT,
                command=command,
                args=list(args),
                working_dir=working_dir,
            )
        )

    def add_postgres(self, name: str, **kwargs: Any):
        from .recipes.postgres import add_postgres

        return add_postgres(self, name, **kwargs)

    def build(self) -> DistributedApplication:
        return DistributedApplication(name=self.name, resources=dict(self.resources))
