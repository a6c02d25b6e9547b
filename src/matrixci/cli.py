# cli.py
from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional

import click

from matrixci.engine import evaluate
from matrixci.errors import MatrixCIError, SchemaError
from matrixci.executors import CancelToken, DryRunExecutor, ShellExecutor
from matrixci.git_facts.git import event_from_git
from matrixci.model import TriggerEvent
from matrixci.scheduler import schedule
from matrixci.secrets import ChainSecretProvider, DotenvSecretProvider, EnvSecretProvider, MappingSecretProvider
from matrixci.ui.console import Console, get_console, set_console
from matrixci.workflow import find_workflow_files, load_workflow


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Resolve the workflow file from the argument, or discover a single one in
    the current directory. Exits with status 1 when that is not possible.
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Specify an existing file:\n  matrixci run .github/workflows/main.yml",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  .github/workflows/*.yml",
                "  matrixci.yml",
                "  *_workflow.py",
            ],
            suggestion="Specify a workflow explicitly:\n  matrixci run path/to/workflow.yml",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[str(f) for f in workflow_files],
        )
        sys.exit(1)

    return workflow_files[0]


def _load(ctx, workflow):
    console = get_console()
    path = discover_workflow(workflow)
    try:
        return path, load_workflow(path)
    except SchemaError as e:
        console.print_error("Invalid workflow", str(e), details=[str(path)])
        sys.exit(2)
    except Exception as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            import traceback
            traceback.print_exc()
        sys.exit(1)


def _event(event: str, branch: Optional[str], changed_files: tuple, from_git: bool, compare_ref: str) -> TriggerEvent:
    if from_git:
        try:
            git_event = event_from_git(event, compare_ref)
        except (subprocess.CalledProcessError, FileNotFoundError):
            get_console().print_error(
                "Could not read git state",
                "--from-git needs a git checkout and the git command.",
                suggestion="Pass --branch and --changed-file explicitly instead.",
            )
            sys.exit(1)
        return TriggerEvent(
            event=event,
            branch=branch or git_event.branch,
            changed_files=tuple(changed_files) or git_event.changed_files,
        )
    return TriggerEvent(event=event, branch=branch, changed_files=tuple(changed_files))


def event_options(fn):
    fn = click.option("--compare-ref", default="origin/main", show_default=True,
                      help="Git ref to diff against with --from-git")(fn)
    fn = click.option("--from-git", is_flag=True, default=False,
                      help="Take branch and changed files from the local git checkout")(fn)
    fn = click.option("--changed-file", "changed_files", multiple=True,
                      help="A changed file path (repeatable), for paths filters")(fn)
    fn = click.option("--branch", default=None, help="Branch the event refers to")(fn)
    fn = click.option("--event", default="push", show_default=True, help="Triggering event kind")(fn)
    fn = click.argument("workflow", required=False)(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci — evaluate and run matrix CI pipelines locally."""
    console = Console(debug=debug)
    set_console(console)
    if debug:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("workflow", required=False)
@click.pass_context
def validate(ctx, workflow):
    """Load a workflow and report its jobs."""
    _path, definition = _load(ctx, workflow)
    get_console().print_definition(definition)
    get_console().print_info("\nOK")


@cli.command()
@event_options
@click.pass_context
def plan(ctx, workflow, event, branch, changed_files, from_git, compare_ref):
    """Print the job instances a triggering event would run."""
    _path, definition = _load(ctx, workflow)
    instances = evaluate(definition, _event(event, branch, changed_files, from_git, compare_ref))
    get_console().print_plan(instances)


@cli.command()
@event_options
@click.option("--workers", default=None, type=int, envvar="MATRIXCI_WORKERS", help="Number of parallel instances")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True,
              help="Stop starting new instances after the first failure")
@click.option("--dry-run", is_flag=True, default=False, help="Record steps without executing anything")
@click.option("--secrets-file", default=None, envvar="MATRIXCI_SECRETS_FILE",
              type=click.Path(dir_okay=False), help=".env file with secret values")
@click.option("--secret", "secret_names", multiple=True,
              help="Expose this environment variable as a secret (repeatable)")
@click.option("--workdir", default=".", show_default=True, type=click.Path(file_okay=False),
              help="Directory that run: steps execute in")
@click.pass_context
def run(ctx, workflow, event, branch, changed_files, from_git, compare_ref,
        workers, fail_fast, dry_run, secrets_file, secret_names, workdir):
    """
    Run a workflow's job instances.

    run: steps execute in the shell; uses: actions are not available locally
    and are recorded as succeeded.
    """
    console = get_console()
    path, definition = _load(ctx, workflow)
    trigger_event = _event(event, branch, changed_files, from_git, compare_ref)

    providers = [EnvSecretProvider(secret_names)] if secret_names else []
    if secrets_file:
        try:
            providers.append(DotenvSecretProvider(secrets_file))
        except FileNotFoundError as e:
            console.print_error("Secrets file not found", str(e))
            sys.exit(1)
    secrets = ChainSecretProvider(*providers) if providers else MappingSecretProvider()

    executor = DryRunExecutor() if dry_run else ShellExecutor(workdir, fallback=DryRunExecutor())
    cancel = CancelToken()

    try:
        instances = evaluate(definition, trigger_event, secrets)
        console.print_run_started(definition.name, path.name, len(instances))
        result = schedule(
            instances,
            definition,
            executor,
            secrets,
            max_workers=workers,
            fail_fast=fail_fast,
            cancel=cancel,
        )
        console.print_results(result)
        if not result.ok:
            sys.exit(1)
    except KeyboardInterrupt:
        cancel.cancel()
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except MatrixCIError as e:
        console.print_exception(e)
        sys.exit(1)


if __name__ == "__main__":
    cli()
