"""Declarative JSON manifest: load resource declarations, or emit them from an app."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .dsl import AppBuilder, DistributedApplication, ResourceBuilder
from .model import ConnectionStringReference, EndpointReference, HealthCheck, Resource, ResourceKind
from .probes import CommandProbe, HttpProbe, command_probe

# "{appdb.connectionString}" / "{api.bindings.http.url}"
_REF = re.compile(r"^\{(?P<res>[^.{}]+)\.(?:(?P<cs>connectionString)|bindings\.(?P<ep>[^.{}]+)\.url)\}$")


# -------------------- Schemas --------------------

class EndpointDecl(BaseModel):
    name: str = "http"
    scheme: str = "http"
    port: Optional[int] = None
    target_port: Optional[int] = None
    external: bool = False


class HealthCheckDecl(BaseModel):
    """Either an HTTP path probed on `endpoint`, or a command that must exit 0."""
    http: Optional[str] = None
    endpoint: str = "http"
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _one_kind(self) -> HealthCheckDecl:
        if (self.http is None) == (self.command is None):
            raise ValueError("health check needs exactly one of 'http' or 'command'")
        return self


class ResourceDecl(BaseModel):
    name: str
    kind: ResourceKind
    command: Optional[str] = None
    image: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    working_dir: Optional[str] = None
    one_shot: Optional[bool] = None          # defaults to True for executables
    wait_for: List[str] = Field(default_factory=list)
    parent: Optional[str] = None
    endpoints: List[EndpointDecl] = Field(default_factory=list)
    # a bare string is an HTTP path probed on the "http" endpoint
    health_check: Union[str, HealthCheckDecl, None] = None
    connection_string: Optional[str] = None
    endpoint_source: Optional[str] = None    # resource whose endpoint fills {host}/{port}

    @model_validator(mode="after")
    def _check_launch(self) -> ResourceDecl:
        if self.kind is ResourceKind.CONTAINER and not self.image:
            raise ValueError(f"container '{self.name}' needs an image")
        if self.kind in (ResourceKind.EXECUTABLE, ResourceKind.PROJECT) and not self.command:
            raise ValueError(f"{self.kind.value} '{self.name}' needs a command")
        return self


class Manifest(BaseModel):
    version: int = 1
    name: str = "apphost"
    resources: List[ResourceDecl] = Field(default_factory=list)

    @field_validator("resources")
    @classmethod
    def _unique_names(cls, resources: List[ResourceDecl]) -> List[ResourceDecl]:
        names = [r.name for r in resources]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate resource names found: {dupes}")
        return resources

    @model_validator(mode="after")
    def _known_endpoint_sources(self) -> Manifest:
        names = {r.name for r in self.resources}
        for r in self.resources:
            if r.endpoint_source is not None and r.endpoint_source not in names:
                raise ValueError(
                    f"resource '{r.name}' takes its endpoint from unknown resource '{r.endpoint_source}'"
                )
        return self

    # -------------------- Manifest -> builder --------------------

    def to_builder(self) -> AppBuilder:
        builder = AppBuilder(self.name)
        for decl in self.resources:
            one_shot = decl.one_shot if decl.one_shot is not None else decl.kind is ResourceKind.EXECUTABLE
            builder.add_resource(
                Resource(
                    name=decl.name,
                    kind=decl.kind,
                    command=decl.command or ("docker" if decl.kind is ResourceKind.CONTAINER else None),
                    image=decl.image,
                    working_dir=decl.working_dir,
                    one_shot=one_shot,
                    connection_string=decl.connection_string,
                    wait_for=list(decl.wait_for),
                    parent=decl.parent,
                )
            )

        # second pass: values may reference any resource in the file
        for decl in self.resources:
            rb = _builder_for(builder, decl.name)
            for ep in decl.endpoints:
                rb.with_endpoint(
                    ep.name,
                    scheme=ep.scheme,
                    port=ep.port,
                    target_port=ep.target_port,
                    is_external=ep.external,
                )
            rb.with_args(*(_parse_value(builder, a) for a in decl.args))
            for k, v in decl.env.items():
                rb.with_env(k, _parse_value(builder, v))
            if decl.endpoint_source:
                rb.resource.endpoint_source = builder.resources[decl.endpoint_source]
            _load_health_check(builder, rb, decl.health_check)
        return builder

    # -------------------- App -> manifest --------------------

    @classmethod
    def from_app(cls, app: DistributedApplication) -> Manifest:
        decls: List[ResourceDecl] = []
        for res in app.resources.values():
            if res.exclude_from_manifest:
                continue
            decls.append(
                ResourceDecl(
                    name=res.name,
                    kind=res.kind,
                    command=res.command,
                    image=res.image,
                    args=[_render_value(a) for a in res.args],
                    env={k: _render_value(v) for k, v in res.env.items()},
                    working_dir=res.working_dir,
                    one_shot=res.one_shot,
                    wait_for=list(res.wait_for),
                    parent=res.parent,
                    endpoints=[
                        EndpointDecl(
                            name=ep.name,
                            scheme=ep.scheme,
                            port=ep.port,
                            target_port=ep.target_port,
                            external=ep.is_external,
                        )
                        for ep in res.endpoints.values()
                    ],
                    connection_string=res.connection_string,
                    endpoint_source=res.endpoint_source.name if res.endpoint_source else None,
                    health_check=_render_health_check(res.health_check),
                )
            )
        return cls(name=app.name, resources=decls)


def load_manifest(path: str | Path) -> Manifest:
    return Manifest.model_validate_json(Path(path).read_text(encoding="utf-8"))


def _builder_for(builder: AppBuilder, name: str) -> ResourceBuilder:
    return ResourceBuilder(builder, builder.resources[name])


def _parse_value(builder: AppBuilder, value: str) -> Any:
    m = _REF.match(value)
    if not m or m.group("res") not in builder.resources:
        return value
    target = builder.resources[m.group("res")]
    if m.group("cs"):
        return ConnectionStringReference(target)
    return EndpointReference(target, m.group("ep"))


def _render_value(value: Any) -> str:
    if isinstance(value, ConnectionStringReference):
        return "{" + value.resource.name + ".connectionString}"
    if isinstance(value, EndpointReference):
        return "{" + f"{value.resource.name}.bindings.{value.endpoint_name}.url" + "}"
    if callable(getattr(value, "get_value", None)):
        return repr(value)
    return str(value)


def _load_health_check(
    builder: AppBuilder,
    rb: ResourceBuilder,
    decl: Union[str, HealthCheckDecl, None],
) -> None:
    if decl is None:
        return
    if isinstance(decl, str):
        rb.with_http_health_check(decl)
    elif decl.http is not None:
        rb.with_http_health_check(decl.http, decl.endpoint)
    else:
        rb.with_health_check(command_probe(decl.command, [_parse_value(builder, a) for a in decl.args]))


def _render_health_check(probe: Optional[HealthCheck]) -> Optional[HealthCheckDecl]:
    # arbitrary callables have no declarative form and are left out
    if isinstance(probe, HttpProbe) and isinstance(probe.target, EndpointReference):
        return HealthCheckDecl(http=probe.path, endpoint=probe.target.endpoint_name)
    if isinstance(probe, CommandProbe):
        return HealthCheckDecl(command=probe.command, args=[_render_value(a) for a in probe.args])
    return None
