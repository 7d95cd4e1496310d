# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path

import click

from jobgraph.config import Settings
from jobgraph.engine import Engine
from jobgraph.errors import ConfigurationError
from jobgraph.git_facts.git import current_ref, head_sha, is_dirty
from jobgraph.loader import load_pipeline
from jobgraph.model import EventKind, RunContext, RunStatus
from jobgraph.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("jobgraph_workflow.py", "jobgraph.yml", "jobgraph.yaml", ".jobgraph.yml")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    current_dir = Path(".")
    found = [current_dir / name for name in DEFAULT_WORKFLOWS if (current_dir / name).exists()]
    for path in current_dir.glob("*_workflow.py"):
        if path not in found:
            found.append(path)
    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify a different path:\n  jobgraph run --workflow ci.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  *_workflow.py"],
            suggestion="Specify a workflow explicitly:\n  jobgraph run --workflow ci.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
            suggestion=f"Specify a workflow explicitly:\n  jobgraph run --workflow {workflow_files[0]}",
        )
        sys.exit(1)

    return workflow_files[0]


def build_context(event: str, ref: str | None, base_ref: str | None, head_ref: str | None) -> RunContext:
    """Trigger context for a local run; ref and sha default to the git checkout."""
    console = get_console()
    sha = None
    if ref is None:
        try:
            ref = current_ref()
            sha = head_sha()
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine git ref",
                "No --ref given and the current directory is not a git checkout.",
                suggestion="Specify the ref explicitly:\n  jobgraph run --ref refs/heads/main",
            )
            sys.exit(1)
        else:
            if is_dirty():
                console.print_debug("working tree has uncommitted changes")

    if EventKind(event) == EventKind.PULL_REQUEST:
        if not base_ref:
            console.print_error(
                "Missing base ref",
                "pull_request runs need --base-ref.",
                suggestion="jobgraph run --event pull_request --base-ref main",
            )
            sys.exit(1)
        return RunContext(EventKind.PULL_REQUEST, ref=ref, base_ref=base_ref, head_ref=head_ref or ref, sha=sha)
    return RunContext(EventKind.PUSH, ref=ref, sha=sha)


def _load(workflow_path: Path):
    console = get_console()
    try:
        return load_pipeline(workflow_path)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(2)


_context_options = [
    click.option(
        "--workflow",
        default=None,
        help="Workflow file (.py, .yml, .json); defaults to jobgraph_workflow.py / jobgraph.yml",
    ),
    click.option(
        "--event",
        type=click.Choice([e.value for e in EventKind]),
        default=EventKind.PUSH.value,
        show_default=True,
        help="Trigger event kind",
    ),
    click.option("--ref", default=None, help="Git ref (defaults to the current branch)"),
    click.option("--base-ref", default=None, help="Base ref for pull_request events"),
    click.option("--head-ref", default=None, help="Head ref for pull_request events"),
]


def context_options(fn):
    for opt in reversed(_context_options):
        fn = opt(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print the summary")
@click.pass_context
def cli(ctx, debug, quiet):
    """jobgraph: run job-graph pipelines with matrices, conditions and fail-fast."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, settings.log_level, logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
    )
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug
    ctx.obj["settings"] = settings


@cli.command()
@context_options
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--fail-fast/--no-fail-fast", default=None, help="Cancel pending jobs after the first failure")
@click.option("--timeout", default=None, type=float, help="Run timeout in seconds")
@click.option("--workdir", default=None, help="Working directory for steps")
@click.pass_context
def run(ctx, workflow, event, ref, base_ref, head_ref, workers, fail_fast, timeout, workdir):
    """Run a pipeline for one trigger event."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    pipeline = _load(workflow_path)
    context = build_context(event, ref, base_ref, head_ref)

    engine = Engine(ctx.obj["settings"], observers=[console.on_event])
    try:
        run_ = engine.trigger(
            pipeline,
            context,
            max_workers=workers,
            fail_fast=fail_fast,
            timeout=timeout,
            workdir=workdir,
        )
        if run_ is None:
            console.print_info(f"Pipeline '{pipeline.name}' is not triggered by {event} on {context.ref}")
            return
        if run_.status == RunStatus.FAILED:
            console.print_error("Invalid pipeline", run_.error or "configuration error")
            sys.exit(2)

        console.print_run_started(
            run_id=run_.id,
            pipeline=pipeline.name,
            event=context.event.value,
            ref=context.ref,
            job_count=len(run_.instances),
        )
        engine.execute(run_)
        console.print_results(run_.results(), run_.status.value)

        if run_.status != RunStatus.SUCCEEDED:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@context_options
@click.pass_context
def plan(ctx, workflow, event, ref, base_ref, head_ref):
    """Show expanded job instances by stage without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    pipeline = _load(workflow_path)
    context = build_context(event, ref, base_ref, head_ref)

    result = Engine(ctx.obj["settings"]).plan(pipeline, context)
    if result is None:
        console.print_info(f"Pipeline '{pipeline.name}' is not triggered by {event} on {context.ref}")
        return
    if result.run.status == RunStatus.FAILED:
        console.print_error("Invalid pipeline", result.run.error or "configuration error")
        sys.exit(2)
    console.print_header(f"{pipeline.name}: {len(result.run.instances)} job instance(s)")
    console.print_plan(result.levels, result.skipped)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file served by the API")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.pass_context
def serve(ctx, workflow, host, port):
    """Serve trigger, status and artifact endpoints over HTTP."""
    import uvicorn

    from jobgraph.server import create_app

    pipeline = _load(discover_workflow(workflow))
    engine = Engine(ctx.obj["settings"], observers=[get_console().on_event])
    uvicorn.run(create_app(engine, pipeline), host=host, port=port)


if __name__ == "__main__":
    cli()
