"""
Flask CLI commands.

    flask --app vmkeeper run-backup
    flask --app vmkeeper encrypt-secret
    flask --app vmkeeper show-config
"""

import sys

import click
from flask import current_app
from flask.cli import with_appcontext

from vmkeeper.backup.executor import execute_backup
from vmkeeper.backup.settings import ConfigurationError, load_settings
from vmkeeper.utils.crypto import crypto_manager


def register_commands(app):
    app.cli.add_command(run_backup_command)
    app.cli.add_command(encrypt_secret_command)
    app.cli.add_command(show_config_command)


@click.command('run-backup')
@with_appcontext
def run_backup_command():
    """Run one backup now and exit non-zero if it fails."""
    config_file = current_app.config['BACKUP_CONFIG_FILE']

    try:
        run = execute_backup(config_file)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(2)

    click.echo(f"Backup run {run.run_id}: {run.status}")
    if run.status == 'failed':
        click.echo(run.error_message or 'unknown error', err=True)
        sys.exit(1)


@click.command('encrypt-secret')
@click.option('--value', prompt=True, hide_input=True, confirmation_prompt=True,
              help='Secret to encrypt (prompted when omitted)')
@with_appcontext
def encrypt_secret_command(value):
    """Print an enc: token for a secret, for use in the backup settings."""
    if not crypto_manager.is_initialized:
        passphrase = current_app.config.get('SECRET_PASSPHRASE')
        if not passphrase:
            click.echo("Set VMKEEPER_PASSPHRASE first.", err=True)
            sys.exit(2)
        salt = crypto_manager.initialize(passphrase)
        click.echo(f"New salt generated, export it as VMKEEPER_SALT={salt.hex()}", err=True)

    click.echo(crypto_manager.encrypt(value))


@click.command('show-config')
@with_appcontext
def show_config_command():
    """Validate the backup settings and print a summary (secrets are not shown)."""
    config_file = current_app.config['BACKUP_CONFIG_FILE']

    try:
        settings = load_settings(config_file)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(2)

    policies = settings.policies
    click.echo(f"Settings file: {config_file}")
    click.echo(f"Running VMs only: {policies.running_only}")
    for override in policies.overrides.values():
        flags = [
            name for name in ('exclude', 'skip_local_checksum', 'skip_remote_verification')
            if getattr(override, name)
        ]
        click.echo(f"  VM {override.vm_id}: {', '.join(flags) or 'no overrides'}")
    click.echo(f"Export path: {settings.local.export_path}")
    click.echo(f"Archive path: {settings.local.archive_path} (keep {settings.local.retention or 'all'})")
    click.echo(f"Run logs: {settings.local.log_path}")
    for remote in settings.remotes:
        click.echo(f"Remote {remote.name} [{remote.type}]: {remote.path} (keep {remote.retention or 'all'})")
    click.echo(f"Bandwidth: {settings.bandwidth.to_rclone() or 'unlimited'}")
    click.echo(f"Notification: {'enabled' if settings.notification.enabled else 'disabled'}")
    click.echo(f"Schedule: {settings.schedule_cron or 'manual only'}")
