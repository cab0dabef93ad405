"""
Command line interface.

    rotaback backup run JOB [--dry-run]
    rotaback backup once SOURCE... --dest DIR [--keep N] [--dry-run]
    rotaback backup archives SOURCE_NAME --dest DIR

`once` and `archives` work on the filesystem only and never build the app,
so they need no database or configured data directories. Their defaults come
from the same environment variables as the service configuration.

Every command exits with status 1 when any source failed.
"""

import sys

import click
from flask.cli import AppGroup, FlaskGroup

from rotaback.backup.compression import TarArchiveCreator
from rotaback.backup.executor import execute_backup_job_by_name
from rotaback.backup.orchestrator import BackupOrchestrator, BackupRequest, OutcomeStatus
from rotaback.backup.retention import RetentionPolicy
from rotaback.backup.storage import ArchiveStore, StorageError
from rotaback.backup.naming import sanitize_source_name
from rotaback.backup.errors import InvalidSourceName
from rotaback.config import Config


backup_cli = AppGroup('backup', help='Create and rotate backup archives.')

_STATUS_COLORS = {
    OutcomeStatus.CREATED: 'green',
    OutcomeStatus.DRY_RUN_SKIPPED: 'cyan',
    OutcomeStatus.FAILED: 'red'
}


@backup_cli.command('run')
@click.argument('job_name')
@click.option('--dry-run', is_flag=True, help='Show what would happen without writing anything.')
def run_job_command(job_name, dry_run):
    """Run a stored backup job."""
    try:
        run = execute_backup_job_by_name(job_name, dry_run=dry_run, allow_disabled=True)
    except ValueError as e:
        raise click.ClickException(str(e))

    for outcome in run.outcomes:
        color = 'red' if outcome.status == 'failed' else 'yellow' if outcome.warnings != '[]' else 'green'
        click.secho(outcome.summary, fg=color)

    click.echo(f"Run {run.id}: {run.status}")
    sys.exit(1 if run.status in ('failed', 'cancelled') else 0)


@backup_cli.command('once', with_appcontext=False)
@click.argument('sources', nargs=-1, required=True, type=click.Path(file_okay=False))
@click.option('--dest', required=True, type=click.Path(file_okay=False), help='Destination root.')
@click.option('--keep', type=click.IntRange(min=1), envvar='MAX_ARCHIVES_PER_SOURCE',
              default=Config.MAX_ARCHIVES_PER_SOURCE, show_default=True, help='Archives kept per source.')
@click.option('--dry-run', is_flag=True, help='Show what would happen without writing anything.')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), envvar='ARCHIVE_TIMEOUT_SECONDS',
              default=None, help='Seconds per archive.')
@click.option('--workers', type=click.IntRange(min=1), envvar='BACKUP_WORKERS',
              default=1, show_default=True, help='Sources processed concurrently.')
def once_command(sources, dest, keep, dry_run, timeout, workers):
    """Back up directories without a stored job (no history is recorded)."""
    orchestrator = BackupOrchestrator(
        destination_root=dest,
        policy=RetentionPolicy(keep),
        creator=TarArchiveCreator(timeout=timeout),
        max_workers=workers
    )
    result = orchestrator.run(BackupRequest(source_directory=s, dry_run=dry_run) for s in sources)

    for outcome in result.outcomes:
        click.secho(outcome.summary, fg=_STATUS_COLORS[outcome.status])
        for warning in outcome.warnings:
            click.secho(f"  warning: {warning.message}", fg='yellow')

    click.echo(result.describe())
    sys.exit(result.exit_code)


@backup_cli.command('archives', with_appcontext=False)
@click.argument('source_name')
@click.option('--dest', required=True, type=click.Path(file_okay=False), help='Destination root.')
def archives_command(source_name, dest):
    """List the archives of a source, newest first."""
    try:
        name = sanitize_source_name(source_name)
        records = ArchiveStore(dest).list_archives(name)
    except (InvalidSourceName, StorageError) as e:
        raise click.ClickException(e.message)

    for record in sorted(records, key=lambda r: (r.created_at, r.sequence), reverse=True):
        click.echo(f"{record.created_at.isoformat()}  {record.size_bytes:>12}  {record.filename}")


def _create_cli_app():
    from rotaback import create_app
    return create_app(start_scheduler=False)


cli = FlaskGroup(create_app=_create_cli_app, add_default_commands=True)
# Registered here as well as on app.cli so that commands without an app
# context resolve before the app is loaded
cli.add_command(backup_cli)


def main():
    cli()
