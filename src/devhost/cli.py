# cli.py
from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click

from devhost import settings
from devhost.errors import GraphError
from devhost.interaction import ConsoleInteractionService, InteractionService, StaticInteractionService
from devhost.logs import configure_logging
from devhost.runner import Orchestrator, build_graph, load_apphost, run_app
from devhost.ui.console import Console, get_console, set_console


def find_apphost_files() -> list[Path]:
    """
    Find apphost files in the current directory.

    Returns:
        Sorted list of candidate paths
    """
    found = []
    current_dir = Path(".")

    default_apphost = current_dir / settings.DEFAULT_APPHOST
    if default_apphost.exists():
        found.append(default_apphost)

    for path in current_dir.glob("*_apphost.py"):
        if path != default_apphost:
            found.append(path)

    return sorted(found)


def discover_apphost(apphost_arg: str | None) -> Path:
    """
    Resolve the apphost file from the argument or by looking around.

    Raises:
        SystemExit: If no apphost can be found or the choice is ambiguous
    """
    console = get_console()

    if apphost_arg:
        apphost_path = Path(apphost_arg)
        if not apphost_path.exists() and apphost_path.suffix not in (".py", ".json"):
            apphost_path = Path(str(apphost_path) + ".py")
        if not apphost_path.exists():
            console.print_error(
                "Apphost file not found",
                f"Could not find apphost file: {apphost_arg}",
                suggestion="Create an apphost file or specify a different path:\n  devhost run --apphost my_apphost.py",
            )
            sys.exit(1)
        return apphost_path

    candidates = find_apphost_files()

    if len(candidates) == 0:
        console.print_error(
            "No apphost file found",
            "Could not find any apphost files.",
            details=[
                "Looked for:",
                f"  {settings.DEFAULT_APPHOST}",
                "  *_apphost.py",
            ],
            suggestion=f"Create {settings.DEFAULT_APPHOST}, or specify one explicitly:\n  devhost run --apphost my_apphost.py",
        )
        sys.exit(1)

    if len(candidates) > 1:
        file_list = "\n".join(f"  {f}" for f in candidates)
        console.print_error(
            "Multiple apphost files found",
            "Found multiple apphost files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify an apphost explicitly:\n  devhost run --apphost {candidates[0]}",
        )
        sys.exit(1)

    return candidates[0]


def _load(ctx, apphost_arg: str | None):
    """Load and validate the apphost, exiting 1 with a readable error."""
    console = get_console()
    apphost_path = discover_apphost(apphost_arg)
    try:
        app = load_apphost(apphost_path)
        build_graph(app)
        return app
    except GraphError as e:
        console.print_error("Invalid application model", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_error(
            "Failed to load apphost",
            f"Could not load apphost from {apphost_path}",
            details=[str(e)],
        )
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)


def _parse_exec(value: str) -> tuple[str, str]:
    resource, sep, command = value.partition(":")
    if not sep or not resource or not command:
        raise click.BadParameter(f"expected RESOURCE:COMMAND, got '{value}'", param_hint="--exec")
    return resource, command


def _interaction(yes: bool) -> InteractionService:
    return StaticInteractionService(accept=True) if yes else ConsoleInteractionService()


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and process output)",
)
@click.pass_context
def cli(ctx, debug):
    """devhost: run a local multi-service application from one declaration."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--apphost", default=None, help=f"Apphost file (defaults to {settings.DEFAULT_APPHOST} if present)")
@click.option(
    "--exec",
    "exec_",
    multiple=True,
    metavar="RESOURCE:COMMAND",
    help="Invoke a resource command once everything has started (repeatable)",
)
@click.option("--yes", is_flag=True, default=False, help="Answer yes to confirmation prompts")
@click.pass_context
def run(ctx, apphost, exec_, yes):
    """Start every resource and keep them running until Ctrl+C."""
    console = get_console()
    exec_commands = [_parse_exec(v) for v in exec_]
    app = _load(ctx, apphost)

    try:
        code = run_app(
            app,
            interaction=_interaction(yes),
            exec_commands=exec_commands,
            debug=ctx.obj.get("debug", False),
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    if code:
        sys.exit(code)


@cli.command()
@click.option("--apphost", default=None, help=f"Apphost file (defaults to {settings.DEFAULT_APPHOST} if present)")
@click.pass_context
def plan(ctx, apphost):
    """Show start-up stages without starting anything."""
    console = get_console()
    app = _load(ctx, apphost)
    graph = build_graph(app)
    parents = {n: p for n in graph.names if (p := graph.parent_of(n))}
    console.print_plan(graph.levels(), parents)


@cli.command(name="exec")
@click.argument("resource")
@click.argument("command")
@click.option("--apphost", default=None, help=f"Apphost file (defaults to {settings.DEFAULT_APPHOST} if present)")
@click.option("--yes", is_flag=True, default=False, help="Answer yes to confirmation prompts")
@click.pass_context
def exec_command(ctx, resource, command, apphost, yes):
    """Invoke one resource command without starting the application."""
    console = get_console()
    app = _load(ctx, apphost)
    configure_logging(ctx.obj.get("debug", False))

    try:
        orch = Orchestrator(app, interaction=_interaction(yes), console=console)
        result = asyncio.run(orch.invoke_command(resource, command))
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    console.print_command_result(resource, command, result)
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--apphost", default=None, help=f"Apphost file (defaults to {settings.DEFAULT_APPHOST} if present)")
@click.option("--step", default="deploy", show_default=True, help="Pipeline step to run (with its prerequisites)")
@click.option("--output-dir", default=settings.OUTPUT_DIR, show_default=True, help="Directory for step artifacts")
@click.pass_context
def publish(ctx, apphost, step, output_dir):
    """Run the deploy-time pipeline up to STEP."""
    console = get_console()
    app = _load(ctx, apphost)
    configure_logging(ctx.obj.get("debug", False))

    try:
        orch = Orchestrator(app, console=console)
        results = asyncio.run(orch.publish(step, output_dir=output_dir))
    except GraphError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)

    console.print_step_results(step, results)
    if not all(r.ok for r in results):
        sys.exit(1)


@cli.command()
@click.option("--apphost", default=None, help=f"Apphost file (defaults to {settings.DEFAULT_APPHOST} if present)")
@click.option("--output", default=None, type=click.Path(dir_okay=False), help="Write to a file instead of stdout")
@click.pass_context
def manifest(ctx, apphost, output):
    """Emit the application model as a JSON manifest."""
    from devhost.manifest import Manifest

    app = _load(ctx, apphost)
    text = Manifest.from_app(app).model_dump_json(indent=2, exclude_none=True)
    if output:
        Path(output).write_text(text + "\n", encoding="utf-8")
        get_console().print_info(f"Wrote manifest to {output}")
    else:
        click.echo(text)


if __name__ == "__main__":
    cli()
