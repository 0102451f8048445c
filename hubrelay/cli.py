"""CLI interface for hubrelay."""

import asyncio
import json
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import click
import pydantic

from .context import RelayContext
from .errors import RelayError
from .log import configure_logging
from .models import Config, JobSpec, JobStatus
from .settings import Settings
from .storage import Storage
from .worker import SyncWorker

# CLI key -> Config field
CONFIG_KEYS = {
    "max-retries": "max_retries",
    "sync-backoff-base": "sync_backoff_base",
    "sync-backoff-max": "sync_backoff_max",
    "sync-interval": "sync_interval",
    "max-queue-size": "max_queue_size",
    "poll-initial-interval": "poll_initial_interval",
    "poll-backoff-multiplier": "poll_backoff_multiplier",
    "poll-max-interval": "poll_max_interval",
    "poll-timeout": "poll_timeout",
}


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _with_context(settings: Settings, fn: Callable[[RelayContext], Awaitable[Any]]) -> Any:
    """Build a context, run fn inside the event loop and always close it."""

    async def main() -> Any:
        async with RelayContext(settings) as context:
            return await fn(context)

    return asyncio.run(main())


def _format_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@click.group()
@click.option("--data-dir", envvar="HUBRELAY_DATA_DIR", default=None, help="State directory")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, ...)")
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[str], log_level: Optional[str]):
    """hubrelay - resilient job runner for the image-transform service"""
    overrides = {}
    if data_dir:
        overrides["data_dir"] = data_dir
    if log_level:
        overrides["log_level"] = log_level
    settings = Settings(**overrides)
    configure_logging(settings.log_level, settings.log_json)
    ctx.obj = settings


@cli.command()
@click.argument("spec_json")
@click.option("--wait", is_flag=True, help="Wait until the job finishes")
@click.pass_obj
def submit(settings: Settings, spec_json: str, wait: bool):
    """Submit a job.

    Example:
        hubrelay submit '{"webapp_id":"1937084629516193794","node_info_list":[]}'
    """
    try:
        spec = JobSpec(**json.loads(spec_json))
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
    except pydantic.ValidationError as e:
        _fail(f"Invalid job spec: {e}")

    async def run(context: RelayContext):
        outcome = await context.orchestrator.submit(spec)
        if outcome.queued or not wait:
            return outcome, None
        return outcome, await context.orchestrator.wait(outcome.job.id)

    try:
        outcome, finished = _with_context(settings, run)
    except RelayError as e:
        _fail(f"Submit failed: {e}")

    if outcome.queued:
        click.echo(f"✓ {outcome.message} (action {outcome.action_id})")
        return
    click.echo(f"✓ Job {outcome.job.id} submitted")
    if finished is not None:
        _echo_job(finished)
        if finished.status != JobStatus.SUCCEEDED:
            sys.exit(1)


def _echo_job(job) -> None:
    click.echo(f"Job {job.id}: {job.status.value} after {job.attempts} polls")
    if job.error:
        click.echo(f"  Error: {job.error}")
    if job.fetch_error:
        click.echo(f"  Results unavailable: {job.fetch_error} (retry with 'hubrelay fetch {job.id}')")
    for artifact in job.results:
        click.echo(f"  {artifact.file_type or 'file'}: {artifact.file_url}")


@cli.command()
@click.pass_obj
def status(settings: Settings):
    """Show job and offline queue statistics.

    Example:
        hubrelay status
    """
    storage = Storage(settings.data_dir)
    stats = storage.get_stats()
    config = storage.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("hubrelay Status")
    click.echo("=" * 50)
    click.echo(f"Total Jobs:     {stats['total']}")
    click.echo(f"  Pending:      {stats['pending']}")
    click.echo(f"  Running:      {stats['running']}")
    click.echo(f"  Succeeded:    {stats['succeeded']}")
    click.echo(f"  Failed:       {stats['failed']}")
    click.echo(f"  Cancelled:    {stats['cancelled']}")
    click.echo(f"Queued actions: {stats['queued_actions']}")
    click.echo(f"Last sync:      {_format_time(storage.get_last_sync())}")
    click.echo("\nConfiguration:")
    click.echo(f"  Region:       {settings.region}")
    click.echo(f"  Max Retries:  {config.max_retries}")
    click.echo(f"  Poll Timeout: {config.poll_timeout:g}s")
    click.echo("=" * 50 + "\n")


@cli.command(name="list")
@click.option("--state", type=click.Choice([s.value for s in JobStatus]), help="Filter by state")
@click.option("--limit", default=10, help="Maximum jobs to display")
@click.pass_obj
def list_jobs(settings: Settings, state: Optional[str], limit: int):
    """List jobs by state.

    Example:
        hubrelay list --state running
        hubrelay list --state succeeded --limit 20
    """
    storage = Storage(settings.data_dir)

    if state:
        jobs = storage.get_jobs_by_status(JobStatus(state))
    else:
        jobs = storage.get_all_jobs()

    jobs = jobs[:limit]

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<24} {'State':<12} {'Polls':<8} {'Submitted':<20}")
    click.echo("-" * 66)
    for job in jobs:
        click.echo(f"{job.id:<24} {job.status.value:<12} {job.attempts:<8} {_format_time(job.submitted_at):<20}")
    click.echo()


@cli.command()
@click.argument("job_id")
@click.pass_obj
def cancel(settings: Settings, job_id: str):
    """Cancel a pending or running job.

    Example:
        hubrelay cancel 1938201234567890
    """
    try:
        cancelled = _with_context(settings, lambda context: context.orchestrator.cancel(job_id))
    except KeyError:
        _fail(f"Job {job_id} not found")

    if cancelled:
        click.echo(f"✓ Job {job_id} cancelled")
    else:
        _fail(f"Job {job_id} already finished")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def fetch(settings: Settings, job_id: str):
    """Fetch the results of a succeeded job again.

    Example:
        hubrelay fetch 1938201234567890
    """
    try:
        job = _with_context(settings, lambda context: context.orchestrator.fetch_results(job_id))
    except KeyError:
        _fail(f"Job {job_id} not found")
    except RelayError as e:
        _fail(str(e))

    _echo_job(job)
    if job.fetch_error:
        sys.exit(1)


@cli.group()
def queue():
    """Manage the offline action queue"""
    pass


@queue.command(name="list")
@click.option("--limit", default=10, help="Maximum actions to display")
@click.pass_obj
def queue_list(settings: Settings, limit: int):
    """List queued actions in sync order.

    Example:
        hubrelay queue list
    """
    actions = _with_context(settings, _pending_actions)[:limit]

    if not actions:
        click.echo("Offline queue is empty")
        return

    click.echo(f"\n{'ID':<40} {'Type':<16} {'Priority':<10} {'Retries':<8} {'Next try':<20}")
    click.echo("-" * 98)
    for action in actions:
        click.echo(
            f"{action.id:<40} {action.type:<16} {action.priority.value:<10} "
            f"{action.retry_count:<8} {_format_time(action.next_retry_at):<20}"
        )
    click.echo()


async def _pending_actions(context: RelayContext):
    return context.offline.pending()


@queue.command(name="sync")
@click.pass_obj
def queue_sync(settings: Settings):
    """Replay every due action now.

    Example:
        hubrelay queue sync
    """

    async def run(context: RelayContext):
        context.offline.set_online(await context.ping())
        return await context.offline.sync()

    result = _with_context(settings, run)
    for error in result.errors:
        suffix = " (dropped)" if error.dropped else ""
        click.echo(f"✗ {error.action_id} {error.action_type}: {error.error}{suffix}", err=True)
    click.echo(
        f"{'✓' if result.success else '✗'} Synced: {result.processed} processed, "
        f"{result.failed} failed, {len(result.expired)} expired"
    )
    if not result.success:
        sys.exit(1)


@queue.command(name="cancel")
@click.argument("action_id")
@click.pass_obj
def queue_cancel(settings: Settings, action_id: str):
    """Remove a queued action.

    Example:
        hubrelay queue cancel submit-3f2a9c
    """
    if _with_context(settings, lambda context: context.orchestrator.cancel_queued(action_id)):
        click.echo(f"✓ Action {action_id} removed from the queue")
    else:
        _fail(f"Action {action_id} not found in the queue")


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command()
@click.pass_obj
def show(settings: Settings):
    """Show current configuration.

    Example:
        hubrelay config show
    """
    cfg = Storage(settings.data_dir).get_config()

    click.echo("\nCurrent Configuration:")
    for key, field in CONFIG_KEYS.items():
        click.echo(f"  {key + ':':<25} {getattr(cfg, field)}")
    click.echo()


@config.command(name="set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def set_config(settings: Settings, key: str, value: str):
    """Set a configuration value.

    Example:
        hubrelay config set max-retries 5
        hubrelay config set poll-timeout 600
    """
    field = CONFIG_KEYS.get(key)
    if field is None:
        _fail(f"Unknown config key: {key}")

    storage = Storage(settings.data_dir)
    try:
        cfg = Config(**{**storage.get_config().model_dump(), field: value})
    except pydantic.ValidationError as e:
        _fail(f"Invalid value: {e.errors()[0]['msg']}")

    storage.set_config(cfg)
    click.echo(f"✓ Configuration updated: {key} = {getattr(cfg, field)}")


@cli.group()
def worker():
    """Run the background sync worker"""
    pass


@worker.command()
@click.option("--interval", type=float, default=None, help="Seconds between sync passes")
@click.pass_obj
def start(settings: Settings, interval: Optional[float]):
    """Start the worker in the foreground.

    Example:
        hubrelay worker start --interval 15
    """
    click.echo("Starting sync worker...")
    _with_context(settings, lambda context: SyncWorker(context, interval).run())
    click.echo("Worker stopped")


if __name__ == "__main__":
    cli()
