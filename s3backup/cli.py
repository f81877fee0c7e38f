"""
Command-line interface for s3backup.

Commands:
- backup: run a backup from a configuration file
- validate: check a configuration file
- list: show archives stored for the project
"""

import sys

import click

from s3backup import __version__, configure_logging
from s3backup.audit import AuditLogger
from s3backup.backup.executor import build_storage, run_backup
from s3backup.backup.storage import StorageError
from s3backup.config import Config, load_config
from s3backup.models import RunStatus, ValidationError
from s3backup.utils.naming import parse_timestamp_from_filename


MB = 1024 * 1024

config_option = click.option(
    '-c', '--config', 'config_path',
    default=Config.CONFIG_FILE,
    show_default=True,
    type=click.Path(dir_okay=False),
    help='Path to configuration file'
)


def _open_audit():
    if Config.AUDIT_LOG:
        return AuditLogger(Config.AUDIT_LOG)
    return None


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.version_option(__version__, prog_name='s3-backup')
def cli():
    """Configurable backup tool for directories and databases to S3."""


@cli.command()
@config_option
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose logging')
@click.option('-q', '--quiet', is_flag=True, help='Suppress all output except errors')
def backup(config_path, verbose, quiet):
    """Run backup using configuration file."""
    level = 'ERROR' if quiet else ('DEBUG' if verbose else Config.LOG_LEVEL)
    configure_logging(level, Config.LOG_DIR)

    audit = _open_audit()
    try:
        try:
            config = load_config(config_path)
        except ValidationError as e:
            if audit:
                audit.log_config_validation(config_path, False, [str(e)])
            click.echo(f"Backup failed: {e}", err=True)
            sys.exit(1)

        if audit:
            audit.log_config_validation(config_path, True)

        try:
            result = run_backup(config, audit=audit)
        except StorageError as e:
            if audit:
                audit.log_backup_error(e, {'state': 'setup'})
            click.echo(f"Backup failed: {e}", err=True)
            sys.exit(1)
    finally:
        if audit:
            audit.close()

    if result.status == RunStatus.FAILED:
        click.echo(f"Backup failed: {result.error}", err=True)
        sys.exit(1)

    if result.status == RunStatus.NOTHING_TO_BACKUP:
        click.echo("Nothing to back up: no directories or databases configured")
        return

    click.echo("Backup completed successfully!")
    click.echo(f"Processed {len(result.artifacts)} backups")
    click.echo(f"Total size: {result.total_size / MB:.2f} MB")
    click.echo(f"Uploaded {len(result.uploads)} files to S3")

    maintenance = result.maintenance
    if maintenance.ran and maintenance.ok:
        click.echo(f"Retention cleanup removed {maintenance.deleted_count} old backup(s)")
    elif maintenance.ran:
        click.echo(f"Warning: retention cleanup failed: {maintenance.error}", err=True)


@cli.command()
@config_option
@click.option('--check-bucket', is_flag=True, help='Also check that the bucket is reachable')
def validate(config_path, check_bucket):
    """Validate configuration file."""
    configure_logging('WARNING')

    try:
        config = load_config(config_path)
    except ValidationError as e:
        click.echo(f"Configuration validation failed: {e}", err=True)
        sys.exit(1)

    click.echo("Configuration is valid")
    click.echo(f"Directories: {len(config.directories)}")
    click.echo(f"Databases: {len(config.databases)}")
    click.echo(f"S3 Bucket: {config.s3.bucket}")

    if check_bucket:
        try:
            build_storage(config).test_connection()
        except StorageError as e:
            click.echo(f"Bucket check failed: {e}", err=True)
            sys.exit(1)
        click.echo("Bucket is reachable")


@cli.command(name='list')
@config_option
@click.option('--prefix', default=None, help='Key prefix (default: the project)')
def list_backups(config_path, prefix):
    """List existing backups in S3."""
    configure_logging('WARNING')

    try:
        config = load_config(config_path)
        objects = build_storage(config).list_remote(prefix)
    except (ValidationError, StorageError) as e:
        click.echo(f"Failed to list backups: {e}", err=True)
        sys.exit(1)

    click.echo(f"Found {len(objects)} backups in S3:")
    for obj in objects:
        taken = parse_timestamp_from_filename(obj.key.rsplit('/', 1)[-1]) or obj.last_modified
        date = taken.strftime('%Y-%m-%d') if taken else 'unknown'
        click.echo(f"  {obj.key} ({obj.size_bytes / MB:.2f} MB, {date})")


def main():
    cli()


if __name__ == '__main__':
    main()
