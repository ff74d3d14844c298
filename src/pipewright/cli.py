# cli.py
from __future__ import annotations

import json
import logging
import subprocess
import sys
from pathlib import Path

import click

from . import dag, schema
from .engine import Engine
from .errors import ConfigurationError, PipewrightError, RunNotFound
from .git_facts import event_from_git
from .model import EVENT_KINDS, RunStatus
from .settings import EngineConfig
from .ui.console import Console, get_console, set_console


def discover_workflows(paths: tuple[str, ...]) -> list[Path]:
    """
    Workflow files to load: the ones given on the command line, or every
    file found under .pipewright/workflows/ plus *_workflow.py.

    Raises:
        SystemExit: If a given file is missing or nothing was found
    """
    console = get_console()

    if paths:
        missing = [p for p in paths if not Path(p).exists()]
        if missing:
            console.print_error(
                "Workflow file not found",
                "Could not find workflow file(s):",
                details=missing,
                suggestion="Specify existing files:\n  pipewright run event.json --workflow .pipewright/workflows/ci.yml",
            )
            sys.exit(1)
        return [Path(p) for p in paths]

    found = schema.find_workflow_files(".")
    if not found:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {schema.WORKFLOW_DIR}/*.yml|*.yaml|*.py",
                "  *_workflow.py",
            ],
            suggestion="Create .pipewright/workflows/ci.yml or pass --workflow explicitly.",
        )
        sys.exit(1)
    return found


def _fail(ctx: click.Context, exc: BaseException) -> None:
    console = get_console()
    if isinstance(exc, ConfigurationError):
        console.print_error("Invalid configuration", exc.message, details=exc.problems or None)
        if ctx.obj.get("debug", False):
            console.print_exception(exc)
    else:
        console.print_exception(exc)
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--state-dir", default=None, help="State directory (default: .pipewright)")
@click.pass_context
def cli(ctx, debug, state_dir):
    """pipewright: run CI/CD workflows triggered by repository events."""
    console = Console(debug=debug)
    set_console(console)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["state_dir"] = state_dir


def _config(ctx: click.Context, **overrides) -> EngineConfig:
    return EngineConfig.from_env(state_dir=ctx.obj.get("state_dir"), **overrides)


@cli.command()
@click.argument("event_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--workflow",
    "workflows",
    multiple=True,
    help="Workflow file (repeatable; defaults to discovered workflows)",
)
@click.option("--workers", default=None, type=int, help="Number of parallel jobs")
@click.option("--runners", default=None, type=int, help="Number of local runners")
@click.pass_context
def run(ctx, event_file, workflows, workers, runners):
    """Run every workflow the event in EVENT_FILE triggers."""
    console = get_console()
    workflow_paths = discover_workflows(workflows)

    try:
        event = schema.load_event(event_file)
        config = _config(ctx, max_workers=workers, runners=runners)
        with Engine(config) as engine:
            engine.load(workflow_paths)
            console.print_debug(f"loaded {len(engine.definitions)} workflow(s)")
            runs = engine.dispatch(event)

            if not runs:
                console.print_info(f"No workflow matched {event.kind} {event.ref}")
                return
            for r in runs:
                console.print_results(r.to_dict())

        if any(r.status is not RunStatus.SUCCEEDED for r in runs):
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except PipewrightError as e:
        _fail(ctx, e)


@cli.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def validate(ctx, workflow_file):
    """Load WORKFLOW_FILE and check its job graph without running anything."""
    console = get_console()
    try:
        definition = schema.load_workflow(workflow_file)
        graph = dag.build(definition)
    except PipewrightError as e:
        _fail(ctx, e)
        return

    console.print_header(f"{definition.name}: {len(graph.jobs)} job(s)")
    console.print_layers(graph.layers)
    console.print_info("OK")


@cli.command()
@click.argument("run_id")
@click.pass_context
def cancel(ctx, run_id):
    """Request cancellation of RUN_ID (picked up by the process running it)."""
    console = get_console()
    try:
        with Engine(_config(ctx)) as engine:
            requested = engine.cancel(run_id)
    except RunNotFound as e:
        console.print_error("Unknown run", e.message)
        sys.exit(1)
    except PipewrightError as e:
        _fail(ctx, e)
        return

    if requested:
        console.print_info(f"Cancellation requested for {run_id}")
    else:
        console.print_info(f"Run {run_id} already finished")


@cli.command()
@click.option("--compare-ref", default=None, help="Git ref to diff against for changed_paths (e.g. origin/main)")
@click.option("--kind", default="push", type=click.Choice(EVENT_KINDS), show_default=True)
@click.pass_context
def event(ctx, compare_ref, kind):
    """Print an event describing the local git checkout, as JSON."""
    console = get_console()
    try:
        ev = event_from_git(compare_ref, kind=kind)
    except subprocess.CalledProcessError as e:
        console.print_error(
            "Git command failed",
            f"{' '.join(e.cmd)} exited with {e.returncode}",
            suggestion="Run inside a git checkout, and fetch the compare ref first.",
        )
        sys.exit(1)
    except FileNotFoundError:
        console.print_error(
            "Git command not found",
            "Could not find git command.",
            suggestion="Install Git or write the event file by hand.",
        )
        sys.exit(1)
    click.echo(json.dumps(ev.to_dict(), indent=2))


@cli.command()
@click.argument("environment")
@click.argument("run_id")
@click.pass_context
def rollback(ctx, environment, run_id):
    """Publish again what RUN_ID deployed to ENVIRONMENT."""
    console = get_console()
    try:
        with Engine(_config(ctx)) as engine:
            result = engine.rollback(environment, run_id)
    except PipewrightError as e:
        _fail(ctx, e)
        return
    console.print_info(f"{environment}: {result.url} ({result.digest[:12]}, run {run_id})")


if __name__ == "__main__":
    cli()
