"""
Operator commands, available as `flask offsite <command>`.
"""

from datetime import datetime, timezone

import click
from flask.cli import AppGroup

from offsite.destinations.errors import DestinationError, NotFound
from offsite.services import get_services


offsite_cli = AppGroup('offsite', help='Remote destinations and purge queue.')


def _format_ts(timestamp: int) -> str:
    if not timestamp:
        return '-'
    return datetime.fromtimestamp(timestamp, timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')


@offsite_cli.command('purge-run')
def purge_run():
    """Run one remote purge pass now."""
    report = get_services().worker.run()

    if not report['acquired']:
        click.echo('Another purge pass is running, nothing done.')
        return

    for line in report['logs']:
        click.echo(line)
    click.echo(
        f"Processed {report['processed']}: {len(report['completed'])} completed, "
        f"{len(report['retry'])} to retry, {len(report['failed'])} failed"
    )
    for error in report['errors']:
        click.echo(f"Error: {error}", err=True)


@offsite_cli.command('purge-list')
def purge_list():
    """Show the remote purge queue."""
    services = get_services()
    queue = services.manifest.get_queue()

    if not queue:
        click.echo('Remote purge queue is empty.')
        return

    for entry in queue:
        click.echo(
            f"{entry.file}  status={entry.status}  attempts={entry.attempts}  "
            f"destinations={','.join(entry.destinations)}  next={_format_ts(entry.next_attempt_at)}"
        )
        if entry.last_error:
            click.echo(f"    last error: {entry.last_error}")

    overall = services.forecaster.load().get('forecast', {}).get('overall') or {}
    if overall.get('forecast_label'):
        click.echo(f"Estimated time to drain: {overall['forecast_label']}")


@offsite_cli.command('purge-retry')
@click.argument('file')
def purge_retry(file):
    """Reset FILE so the next pass attempts it again."""
    if not get_services().worker.retry(file):
        raise click.ClickException(f"{file} is not in the purge queue")
    click.echo(f"{file} will be retried on the next pass.")


@offsite_cli.command('purge-delete')
@click.argument('file')
def purge_delete(file):
    """Drop FILE from the purge queue without deleting it remotely."""
    if not get_services().worker.delete(file):
        raise click.ClickException(f"{file} is not in the purge queue")
    click.echo(f"{file} removed from the purge queue.")


@offsite_cli.command('purge-register')
@click.argument('file')
@click.argument('destinations', nargs=-1, required=True)
def purge_register(file, destinations):
    """Queue FILE for deletion from DESTINATIONS."""
    entry = get_services().worker.register(file, list(destinations))
    click.echo(f"{entry.file} queued for {', '.join(entry.destinations)}.")


@offsite_cli.command('usage')
@click.option('--refresh', is_flag=True, help='Ignore the cached snapshot.')
def usage(refresh):
    """Show storage usage of every destination."""
    snapshot = get_services().storage_metrics.get_snapshot(force_refresh=refresh)

    for entry in snapshot['destinations']:
        if not entry['connected']:
            click.echo(f"{entry['id']}: not configured")
            continue

        used = entry['used_human'] or '?'
        quota = entry['quota_human'] or 'no quota'
        line = f"{entry['id']}: {used} / {quota}, {entry['backups_count']} backups"
        if entry.get('days_to_threshold_label'):
            line += f" ({entry['days_to_threshold_label']})"
        click.echo(line)
        for error in entry['errors']:
            click.echo(f"    error: {error}")

    if snapshot.get('stale'):
        click.echo('(cached snapshot is stale)')


@offsite_cli.command('prune')
@click.argument('destination_id')
@click.option('--keep', default=0, show_default=True, help='Number of newest backups to keep.')
@click.option('--days', default=0, show_default=True, help='Keep backups younger than this many days.')
def prune(destination_id, keep, days):
    """Apply a retention policy to DESTINATION_ID."""
    try:
        destination = get_services().registry.resolve(destination_id)
    except NotFound as e:
        raise click.ClickException(str(e))

    with destination:
        result = destination.prune_remote_backups(keep, days)
    click.echo(f"Inspected {result.inspected}, deleted {result.deleted}.")
    for name in result.deleted_items:
        click.echo(f"    deleted {name}")
    for error in result.errors:
        click.echo(f"Error: {error}", err=True)


@offsite_cli.command('destinations')
def destinations():
    """List known destinations and whether they are configured."""
    registry = get_services().registry
    for destination_id in registry.known_ids:
        try:
            destination = registry.resolve(destination_id)
        except NotFound:
            click.echo(f"{destination_id}: disabled")
            continue
        with destination:
            state = 'configured' if destination.connected else 'not configured'
            click.echo(f"{destination_id}: {destination.name} ({state})")


def _parse_pairs(pairs):
    settings = {}
    for pair in pairs:
        name, sep, value = pair.partition('=')
        if not sep or not name.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint='SETTINGS')
        settings[name.strip()] = value
    return settings


@offsite_cli.command('configure')
@click.argument('destination_id')
@click.argument('pairs', metavar='SETTINGS...', nargs=-1, required=True)
@click.option('--replace', is_flag=True, help='Discard settings that are not given.')
@click.option('--test', 'test_connection', is_flag=True, help='Make an authenticated call after saving.')
def configure(destination_id, pairs, replace, test_connection):
    """
    Store settings for DESTINATION_ID as KEY=VALUE pairs.

    Secret values are encrypted at rest. An empty value (KEY=) removes the key.
    """
    services = get_services()
    if destination_id not in services.registry.known_ids:
        raise click.ClickException(f"Unknown destination: {destination_id}")

    settings = {} if replace else services.settings.get(destination_id)
    for name, value in _parse_pairs(pairs).items():
        if value == '':
            settings.pop(name, None)
        else:
            settings[name] = value

    try:
        services.settings.save(destination_id, settings)
    except RuntimeError as e:
        raise click.ClickException(str(e))
    click.echo(f"Saved {len(settings)} settings for {destination_id}.")

    try:
        destination = services.registry.resolve(destination_id)
    except NotFound as e:
        raise click.ClickException(str(e))

    with destination:
        if not destination.connected:
            click.echo(f"{destination.name} is still missing required settings.")
            return
        if test_connection:
            try:
                destination.test_connection()
            except DestinationError as e:
                raise click.ClickException(f"Connection test failed: {e}")
            click.echo(f"Connection to {destination.name} OK.")


@offsite_cli.command('disconnect')
@click.argument('destination_id')
def disconnect(destination_id):
    """Forget the stored settings and credentials of DESTINATION_ID."""
    if not get_services().settings.delete(destination_id):
        click.echo(f"No stored settings for {destination_id}.")
        return
    click.echo(f"{destination_id} disconnected.")
