"""
Command-line interface for pipewright.
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Optional

import click

from pipewright import __version__
from pipewright.config import configure, get_config
from pipewright.errors import PipewrightError
from pipewright.models import RunRequest


def _setup_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else getattr(logging, get_config().log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


def _store():
    from pipewright.state import StateStore

    return StateStore(get_config().database_path)


def _parse_vars(pairs) -> tuple:
    variables = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"Expected KEY=VALUE, got {pair!r}", param_hint="--var")
        key, value = pair.split("=", 1)
        variables[key.strip()] = value
    return tuple(sorted(variables.items()))


def _emit_report(report, output: str) -> None:
    if output == "json":
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(report.summary())


def _fail(error: Exception) -> None:
    click.echo(f"Error: {error}", err=True)
    sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option("--state-dir", envvar="PIPEWRIGHT_STATE_DIR", help="Directory of the state database")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(state_dir: Optional[str], debug: bool):
    """pipewright - Deployment pipeline orchestration."""
    configure(state_dir=state_dir)
    _setup_logging(debug)


@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
def validate(pipeline_file):
    """Validate a pipeline file and print its execution order."""
    from pipewright.pipeline.loader import describe, load_definition

    try:
        definition = load_definition(pipeline_file)
    except PipewrightError as e:
        _fail(e)

    click.echo(f"Pipeline {definition.name}: {len(definition.graph)} stage(s)")
    for line in describe(definition):
        click.echo(line)


@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--revision", "-r", required=True, help="Source revision to deploy")
@click.option("--environment", "-e", required=True, help="Target environment")
@click.option("--var", "-v", "variables", multiple=True, help="Template variable KEY=VALUE")
@click.option("--concurrency", "-j", type=int, help="Maximum stages running at once")
@click.option("--no-teardown", is_flag=True, help="Keep resources when the run fails")
@click.option("--output", "-o", default="text", type=click.Choice(["text", "json"]))
def run(pipeline_file, revision, environment, variables, concurrency, no_teardown, output):
    """Trigger a run of a pipeline and execute it."""
    from pipewright.pipeline import Pipeline

    cfg = get_config()
    if concurrency:
        cfg.max_concurrency = concurrency
    if no_teardown:
        cfg.teardown_on_failure = False

    try:
        pipeline = Pipeline.from_file(pipeline_file)
        request = RunRequest(
            revision=revision,
            environment=environment,
            variables=_parse_vars(variables),
        )
        run_id = pipeline.trigger(request)
        if output == "text":
            click.echo(f"Running {pipeline.name} as {run_id}...")
        report = pipeline.execute(run_id)
    except PipewrightError as e:
        _fail(e)

    _emit_report(report, output)
    if not report.successful:
        sys.exit(1)


@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("run_id")
@click.option("--force", is_flag=True, help="Resume even if the run is marked running")
@click.option("--output", "-o", default="text", type=click.Choice(["text", "json"]))
def resume(pipeline_file, run_id, force, output):
    """Resume a failed run, re-running only unresolved stages."""
    from pipewright.pipeline import Pipeline

    try:
        report = Pipeline.from_file(pipeline_file).resume(run_id, force=force)
    except PipewrightError as e:
        _fail(e)

    _emit_report(report, output)
    if not report.successful:
        sys.exit(1)


@main.command()
@click.argument("run_id")
@click.option("--file", "-f", "pipeline_file", type=click.Path(exists=True, dir_okay=False),
              help="Pipeline file, to list stages that never ran")
@click.option("--output", "-o", default="text", type=click.Choice(["text", "json"]))
def status(run_id, pipeline_file, output):
    """Show a run's status and per-stage outcomes."""
    from pipewright.pipeline.core import run_report
    from pipewright.pipeline.loader import load_definition

    try:
        order = load_definition(pipeline_file).graph.order() if pipeline_file else None
        report = run_report(_store(), run_id, order)
    except PipewrightError as e:
        _fail(e)

    _emit_report(report, output)


@main.command()
@click.option("--limit", "-n", default=20, help="Maximum runs to list")
@click.option("--output", "-o", default="text", type=click.Choice(["text", "json"]))
def runs(limit, output):
    """List recent runs."""
    results = _store().list_runs(limit=limit)

    if output == "json":
        click.echo(json.dumps([r.to_dict() for r in results], indent=2))
        return

    if not results:
        click.echo("No runs found")
        return

    for r in results:
        click.echo(
            f"{r.id}  {r.status.value:<11}  {r.pipeline}  "
            f"{r.request.revision}@{r.request.environment}  {r.created_at:%Y-%m-%d %H:%M:%S}"
        )


@main.command()
@click.argument("run_id")
@click.option("--force", is_flag=True, help="Tear down even if the run is marked running")
def teardown(run_id, force):
    """Remove every active resource of a run."""
    from pipewright.pipeline.core import teardown_run
    from pipewright.resources import ResourceTracker

    store = _store()
    try:
        report = teardown_run(store, ResourceTracker(store), run_id, force=force)
    except PipewrightError as e:
        _fail(e)

    for resource in report.removed:
        click.echo(f"  ✓ removed {resource.kind} {resource.resource_id}")
    for leak in report.leaked:
        click.echo(f"  ✗ leaked {leak.resource_id}: {leak.reason}")
    if not report.removed and not report.leaked:
        click.echo("No active resources")
    if not report.clean:
        sys.exit(1)


@main.command()
@click.argument("run_id")
def abort(run_id):
    """Ask the process executing a run to abort it."""
    store = _store()
    try:
        current = store.get_status(run_id)
        if current.finished:
            click.echo(f"Run {run_id} already {current.value}")
            return
        store.request_abort(run_id)
    except PipewrightError as e:
        _fail(e)

    click.echo(f"Abort requested for {run_id}")


@main.group()
def leaks():
    """Inspect and acknowledge leaked resources."""
    pass


@leaks.command("list")
@click.option("--run", "run_id", help="Only leaks of this run")
@click.option("--all", "include_all", is_flag=True, help="Include acknowledged leaks")
@click.option("--output", "-o", default="text", type=click.Choice(["text", "json"]))
def list_leaks(run_id, include_all, output):
    """List resources that teardown could not remove."""
    results = _store().leaks(run_id, include_acknowledged=include_all)

    if output == "json":
        click.echo(json.dumps([l.to_dict() for l in results], indent=2))
        return

    if not results:
        click.echo("No leaked resources")
        return

    for leak in results:
        ack = " (acknowledged)" if leak.acknowledged else ""
        click.echo(f"[{leak.run_id}] {leak.resource_id}{ack}")
        click.echo(f"  Reason: {leak.reason}")
        click.echo(f"  Recorded: {leak.recorded_at:%Y-%m-%d %H:%M:%S}")


@leaks.command("ack")
@click.argument("run_id")
@click.argument("resource_id")
def ack_leak(run_id, resource_id):
    """Acknowledge a leaked resource after cleaning it up by hand."""
    if not _store().acknowledge_leak(run_id, resource_id):
        _fail(PipewrightError(f"No leak of {resource_id} recorded for {run_id}"))
    click.echo(f"Acknowledged {resource_id}")


@main.command()
def config():
    """Show current configuration."""
    cfg = get_config()

    click.echo("pipewright Configuration")
    click.echo("=" * 40)
    click.echo(f"State Database: {cfg.database_path}")
    click.echo(f"Max Concurrency: {cfg.max_concurrency}")
    click.echo(f"Default Timeout: {cfg.default_timeout}s")
    click.echo(f"Default Max Attempts: {cfg.default_max_attempts}")
    click.echo(f"Teardown On Failure: {cfg.teardown_on_failure}")
    click.echo(f"Teardown Retries: {cfg.teardown_retries}")
    click.echo(f"Telemetry Enabled: {cfg.telemetry_enabled}")
    click.echo(f"Log Level: {cfg.log_level}")


if __name__ == "__main__":
    main()
