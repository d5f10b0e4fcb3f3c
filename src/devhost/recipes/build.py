# recipes/build.py
from __future__ import annotations

from ..dsl import ResourceBuilder

# byte-compiles the project; fails on syntax errors
DEFAULT_BUILD_COMMAND = ("python3", "-m", "compileall", "-q", ".")


def with_build(project: ResourceBuilder, *command: str) -> ResourceBuilder:
    """Run a one-shot build before the project starts."""
    argv = command or DEFAULT_BUILD_COMMAND
    build = project.app_builder.add_executable(
        f"build-{project.name}",
        argv[0],
        project.resource.working_dir or ".",
        *argv[1:],
    )
    build.with_icon_name("Build")
    return project.with_child_relationship(build).wait_for_completion(build)
