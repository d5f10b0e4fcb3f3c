# recipes/migrate.py
from __future__ import annotations

from pathlib import Path
from typing import List, Sequence

from .. import settings
from ..dsl import AppBuilder, ResourceBuilder
from ..model import PipelineStep
from ..pipeline import PipelineStepContext, StepFactoryContext

DEFAULT_MIGRATE_ARGS = ("upgrade", "head")
DEFAULT_BUNDLE_ARGS = ("upgrade", "head", "--sql")


def add_migration(
    builder: AppBuilder,
    project: ResourceBuilder,
    database: ResourceBuilder,
    *,
    command: str = "alembic",
    args: Sequence[str] = DEFAULT_MIGRATE_ARGS,
    bundle_args: Sequence[str] = DEFAULT_BUNDLE_ARGS,
) -> ResourceBuilder:
    """
    Declare `migrate-<project>`: a one-shot migration run in the project's
    directory once the database is ready.

    Also contributes a `migration-bundle-<project>` pipeline step, required
    by `deploy`, which renders the migrations as an offline SQL script into
    the pipeline output directory.
    """
    workdir = project.resource.working_dir or "."
    migrate = builder.add_executable(f"migrate-{project.name}", command, workdir, *args)
    migrate.with_env("DEVHOST_ENVIRONMENT", settings.ENVIRONMENT)
    migrate.wait_for(database).with_reference(database).with_icon_name("Migrate")

    step_name = f"migration-bundle-{project.name}"
    script_name = f"{project.name}-migrations.sql"

    async def bundle(ctx: PipelineStepContext) -> None:
        stdout: List[str] = []

        def on_line(stream: str, line: str) -> None:
            if stream == "stdout":
                stdout.append(line)
            else:
                ctx.logger.debug(line)

        result = await ctx.runner.run(
            command,
            list(bundle_args),
            cwd=workdir,
            env={"DEVHOST_ENVIRONMENT": settings.ENVIRONMENT},
            token=ctx.token,
            on_line=on_line,
            logger=ctx.logger,
            check=True,
        )
        if result.cancelled:
            return

        out = Path(ctx.output_dir) / script_name
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text("\n".join(stdout) + "\n", encoding="utf-8")
        ctx.logger.info("wrote %s (%d lines)", out, len(stdout))

    def steps(_ctx: StepFactoryContext) -> List[PipelineStep]:
        return [PipelineStep(name=step_name, action=bundle, required_by_steps=["deploy"])]

    migrate.with_pipeline_step_factory(steps)
    return migrate
