# recipes/reset.py
from __future__ import annotations

from ..commands import CommandContext
from ..dsl import ResourceBuilder
from ..model import CommandResult

RESET_CONFIRMATION = "Are you sure you want to reset the database? This action cannot be undone."
RESET_TITLE = "Confirm Reset"
RESET_CANCELLED = "Database reset cancelled by user."


async def reset_database(ctx: CommandContext) -> CommandResult:
    """Drop and recreate the database on its server."""
    info = ctx.resource.annotations.get("postgres")
    if not info or "database" not in info:
        return CommandResult.failed(f"'{ctx.resource.name}' is not a postgres database")

    server, user, database = info["server"], info["user"], info["database"]
    ctx.logger.warning("resetting database '%s' on %s", database, server)

    for args in (
        ["exec", server, "dropdb", "-U", user, "--if-exists", "--force", database],
        ["exec", server, "createdb", "-U", user, database],
    ):
        result = await ctx.runner.run("docker", args, token=ctx.token, logger=ctx.logger, check=True)
        if result.cancelled:
            return CommandResult.failed("Database reset interrupted.")

    ctx.logger.info("database '%s' reset", database)
    return CommandResult.ok()


def with_reset_db_command(database: ResourceBuilder) -> ResourceBuilder:
    return database.with_command(
        "reset",
        "Reset Database",
        reset_database,
        requires_confirmation=True,
        confirmation_message=RESET_CONFIRMATION,
        confirmation_title=RESET_TITLE,
        cancelled_message=RESET_CANCELLED,
    )
