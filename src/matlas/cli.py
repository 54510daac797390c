"""matlas command line.

Usage:
    matlas discover --project-id ID [--include-databases] [-o FILE]
    matlas infra validate -f stack.yaml
    matlas infra plan -f stack.yaml
    matlas infra diff -f stack.yaml
    matlas infra apply -f stack.yaml [--dry-run] [--auto-approve]
    matlas infra destroy -f stack.yaml [--rollback-on-error]
    matlas infra show --project-id ID

Exit codes: 0 success or no change, 1 fatal error, 2 changes detected by
plan/diff, 3 partial success.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn, TypeVar

import click

from .config import MAX_CONCURRENCY_LIMIT, Config, ConfigurationError, OutputFormat
from .discovery import DiscoveryOptions
from .errors import MatlasError
from .executor import EXIT_ERROR, ExecutionOptions, ExecutionReport, Executor
from .loader import load_files
from .logging_setup import setup_logging
from .pipeline import Pipeline
from .planner import Plan, PlanMode, PlanOptions
from .reporter import (
    plan_exit_code,
    render_diff,
    render_document,
    render_error,
    render_plan,
    render_report,
    render_state,
)

T = TypeVar("T")

VERSION = "0.1.0"
OUTPUT_CHOICES = [f.value for f in OutputFormat]


@dataclass
class CliContext:
    """Global options shared by every subcommand."""

    config_path: str | None
    output: str | None
    timeout: int | None
    verbose: bool

    def load_config(self, **overrides: Any) -> Config:
        try:
            config = Config.from_env(self.config_path)
            if self.output:
                overrides["output"] = OutputFormat(self.output)
            if self.timeout:
                overrides.setdefault("apply_timeout_seconds", self.timeout)
                overrides.setdefault("discover_timeout_seconds", self.timeout)
            return config.with_overrides(**overrides)
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e

    def output_format(self) -> OutputFormat:
        return OutputFormat(self.output) if self.output else OutputFormat.TABLE


pass_context = click.make_pass_decorator(CliContext)


def _fail(error: MatlasError, fmt: OutputFormat) -> NoReturn:
    click.echo(render_error(error, fmt), err=fmt == OutputFormat.TABLE)
    sys.exit(EXIT_ERROR)


def _run(coro: Coroutine[Any, Any, T], fmt: OutputFormat) -> T:
    """Run a pipeline coroutine, rendering MatlasError with its hint."""
    try:
        return asyncio.run(coro)
    except MatlasError as e:
        _fail(e, fmt)


def _pipeline(ctx: CliContext, **overrides: Any) -> Pipeline:
    config = ctx.load_config(**overrides)
    try:
        return Pipeline(config)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _confirm(plan: Plan) -> bool:
    click.echo(render_plan(plan))
    return click.confirm("Apply these changes?", default=False)


async def _execute_with_signals(
    pipeline: Pipeline,
    files: list[str | Path],
    plan_options: PlanOptions,
    execution: ExecutionOptions,
) -> ExecutionReport:
    """Plan, then execute with SIGINT/SIGTERM cancelling the executor."""
    planned = await pipeline.plan(files, plan_options)
    approve = None if execution.auto_approve or execution.dry_run else _confirm
    executor: Executor = pipeline.executor(planned.live, execution, approve)

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, executor.cancel)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not on the main thread, or the platform has no signal support
            break
    try:
        return await executor.execute(planned.plan)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="matlas")
@click.option(
    "--output",
    type=click.Choice(OUTPUT_CHOICES),
    default=None,
    help="Output format (default: table)",
)
@click.option("--timeout", type=click.IntRange(min=1), help="Deadline in seconds")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Config file")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    envvar="MATLAS_LOG_FORMAT",
    default="text",
    help="Log line format",
)
@click.pass_context
def main(
    ctx: click.Context,
    output: str | None,
    timeout: int | None,
    verbose: bool,
    config_path: str | None,
    log_format: str,
) -> None:
    """matlas: declarative management for managed MongoDB projects.

    \b
    Quick Start:
        matlas discover --project-id ID -o current.yaml
        matlas infra plan -f stack.yaml
        matlas infra apply -f stack.yaml
    """
    setup_logging(verbose=verbose, json_logs=log_format == "json")
    ctx.obj = CliContext(
        config_path=config_path,
        output=output,
        timeout=timeout,
        verbose=verbose,
    )


# =============================================================================
# Discovery
# =============================================================================


@main.command()
@click.option("--project-id", default="", help="Project to discover (default: PROJECT_ID)")
@click.option("--include-databases", is_flag=True, help="Enumerate databases and collections")
@click.option("--include", "include", multiple=True, help="Only these parts (repeatable)")
@click.option("--exclude", "exclude", multiple=True, help="Skip these parts (repeatable)")
@click.option(
    "--mask-secrets/--no-mask-secrets",
    default=True,
    show_default=True,
    help="Mask passwords and keys in the snapshot",
)
@click.option("--convert-to-apply", is_flag=True, help="Emit an ApplyDocument")
@click.option("--output-file", "-o", type=click.Path(dir_okay=False), help="Write to FILE")
@pass_context
def discover(
    ctx: CliContext,
    project_id: str,
    include_databases: bool,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    mask_secrets: bool,
    convert_to_apply: bool,
    output_file: str | None,
) -> None:
    """Snapshot a project as a DiscoveredProject document."""
    fmt = ctx.output_format()
    try:
        options = DiscoveryOptions.from_names(
            list(include),
            list(exclude),
            include_databases=include_databases,
            mask_secrets=mask_secrets,
        )
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    with _pipeline(ctx) as pipeline:
        document, result = _run(
            pipeline.discover_document(project_id, options, convert_to_apply), fmt
        )

    rendered = render_document(document, fmt)
    if output_file:
        Path(output_file).write_text(rendered, encoding="utf-8")
        click.echo(f"Wrote {document['kind']} to {output_file}", err=True)
    else:
        click.echo(rendered)

    if result.error is not None:
        click.secho(f"warning: {result.error}", fg="yellow", err=True)


# =============================================================================
# Infrastructure Commands
# =============================================================================


@main.group()
def infra() -> None:
    """Declarative pipeline: validate, plan, diff, apply, destroy, show."""
    pass


def files_option(fn: Callable[..., Any]) -> Callable[..., Any]:
    fn = click.option(
        "--strict-env",
        is_flag=True,
        help="Fail on undefined ${VAR} references in manifests",
    )(fn)
    return click.option(
        "--file",
        "-f",
        "files",
        multiple=True,
        required=True,
        type=click.Path(exists=True, dir_okay=False),
        help="Manifest file (repeatable)",
    )(fn)


@infra.command()
@files_option
@pass_context
def validate(ctx: CliContext, files: tuple[str, ...], strict_env: bool) -> None:
    """Load and validate manifests without calling the API."""
    fmt = ctx.output_format()
    try:
        desired = load_files(list(files), strict_env=strict_env)
    except MatlasError as e:
        _fail(e, fmt)
    for warning in desired.warnings:
        click.secho(f"warning: {warning}", fg="yellow", err=True)
    click.secho(f"✓ {len(desired.resources)} resources valid", fg="green")


@infra.command()
@files_option
@click.option("--prune", is_flag=True, help="Delete live resources missing from FILE")
@pass_context
def plan(ctx: CliContext, files: tuple[str, ...], strict_env: bool, prune: bool) -> None:
    """Show the operations apply would run. Exits 2 when there are changes."""
    fmt = ctx.output_format()
    with _pipeline(ctx, strict_env=strict_env) as pipeline:
        planned = _run(pipeline.plan(list(files), PlanOptions(prune=prune)), fmt)
    click.echo(render_plan(planned.plan, fmt))
    sys.exit(plan_exit_code(planned.plan))


@infra.command()
@files_option
@click.option("--prune", is_flag=True, help="Include deletes of live resources missing from FILE")
@pass_context
def diff(ctx: CliContext, files: tuple[str, ...], strict_env: bool, prune: bool) -> None:
    """Field-level differences between FILE and live state."""
    fmt = ctx.output_format()
    with _pipeline(ctx, strict_env=strict_env) as pipeline:
        planned = _run(pipeline.plan(list(files), PlanOptions(prune=prune)), fmt)
    click.echo(render_diff(planned.plan, fmt))
    sys.exit(plan_exit_code(planned.plan))


@infra.command()
@files_option
@click.option("--dry-run", is_flag=True, help="Plan and report without changing anything")
@click.option("--auto-approve", is_flag=True, help="Do not ask for confirmation")
@click.option("--preserve-existing", is_flag=True, help="Never delete; adopt on conflict")
@click.option(
    "--max-concurrency",
    type=click.IntRange(1, MAX_CONCURRENCY_LIMIT),
    default=None,
    help="Operations running at once",
)
@click.option("--prune", is_flag=True, help="Delete live resources missing from FILE")
@click.option("--allow-destructive", is_flag=True, help="Allow replacing projects and clusters")
@pass_context
def apply(
    ctx: CliContext,
    files: tuple[str, ...],
    strict_env: bool,
    dry_run: bool,
    auto_approve: bool,
    preserve_existing: bool,
    max_concurrency: int | None,
    prune: bool,
    allow_destructive: bool,
) -> None:
    """Reconcile live state toward FILE."""
    fmt = ctx.output_format()
    pipeline = _pipeline(ctx, max_concurrency=max_concurrency, strict_env=strict_env)
    plan_options = PlanOptions(
        prune=prune,
        preserve_existing=preserve_existing,
        allow_destructive=allow_destructive,
    )
    execution = ExecutionOptions(
        dry_run=dry_run,
        auto_approve=auto_approve,
        max_concurrency=pipeline.config.max_concurrency,
        preserve_existing=preserve_existing,
        timeout_seconds=pipeline.config.apply_timeout_seconds,
    )
    with pipeline:
        report = _run(_execute_with_signals(pipeline, list(files), plan_options, execution), fmt)
    _emit_report(report, fmt)


@infra.command()
@files_option
@click.option("--dry-run", is_flag=True, help="Plan and report without deleting anything")
@click.option("--auto-approve", is_flag=True, help="Do not ask for confirmation")
@click.option("--rollback-on-error", is_flag=True, help="Recreate deleted resources on failure")
@pass_context
def destroy(
    ctx: CliContext,
    files: tuple[str, ...],
    strict_env: bool,
    dry_run: bool,
    auto_approve: bool,
    rollback_on_error: bool,
) -> None:
    """Delete the resources named in FILE."""
    fmt = ctx.output_format()
    pipeline = _pipeline(ctx, strict_env=strict_env)
    execution = ExecutionOptions(
        dry_run=dry_run,
        auto_approve=auto_approve,
        max_concurrency=pipeline.config.max_concurrency,
        rollback_on_error=rollback_on_error,
        timeout_seconds=pipeline.config.apply_timeout_seconds,
    )
    with pipeline:
        report = _run(
            _execute_with_signals(
                pipeline, list(files), PlanOptions(mode=PlanMode.DESTROY), execution
            ),
            fmt,
        )
    _emit_report(report, fmt)


@infra.command()
@click.option("--project-id", default="", help="Project to show (default: PROJECT_ID)")
@pass_context
def show(ctx: CliContext, project_id: str) -> None:
    """Render the live state of a project."""
    fmt = ctx.output_format()
    with _pipeline(ctx) as pipeline:
        result = _run(pipeline.discover(project_id), fmt)
    click.echo(render_state(result.state, fmt))
    if result.error is not None:
        click.secho(f"warning: {result.error}", fg="yellow", err=True)


def _emit_report(report: ExecutionReport, fmt: OutputFormat) -> None:
    click.echo(render_report(report, fmt))
    sys.exit(report.exit_code)


if __name__ == "__main__":
    main()
