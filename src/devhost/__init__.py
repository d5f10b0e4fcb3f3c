from .dsl import AppBuilder, DistributedApplication, ResourceBuilder
from .model import CommandResult, PipelineStep, Resource, ResourceKind, ResourceState
from .process import CancellationToken, ProcessRunner
from .runner import Orchestrator, load_apphost, run_app

__all__ = [
    "AppBuilder",
    "CancellationToken",
    "CommandResult",
    "DistributedApplication",
    "Orchestrator",
    "PipelineStep",
    "ProcessRunner",
    "Resource",
    "ResourceBuilder",
    "ResourceKind",
    "ResourceState",
    "load_apphost",
    "run_app",
]
