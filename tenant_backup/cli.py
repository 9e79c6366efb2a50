"""
Operator commands registered on the Flask CLI.

    flask create-user alice --role admin
    flask export-backup --output backup.zip
"""

import click
from flask import current_app
from flask.cli import with_appcontext

from tenant_backup import db
from tenant_backup.auth import VALID_ROLES, hash_password, validate_password_strength
from tenant_backup.backup.executor import export_backup
from tenant_backup.backup.orchestrator import BackupError
from tenant_backup.models import User


@click.command('create-user')
@click.argument('username')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--role', type=click.Choice(VALID_ROLES), default='staff', show_default=True)
@with_appcontext
def create_user_command(username, password, role):
    """Create an operator account."""
    username = username.strip()
    if len(username) < 3:
        raise click.ClickException("Username must be at least 3 characters long")

    is_valid, error_msg = validate_password_strength(password)
    if not is_valid:
        raise click.ClickException(error_msg)

    if User.query.filter_by(username=username).first():
        raise click.ClickException(f"User {username} already exists")

    user = User(username=username, password_hash=hash_password(password), role=role)
    db.session.add(user)
    db.session.commit()

    current_app.logger.info(f"Created {role} user {username}")
    click.echo(f"Created {role} user {username}")


@click.command('export-backup')
@click.option('--output', '-o', type=click.File('wb'), required=True, help='Archive destination')
@click.option('--requested-by', default='cli', show_default=True, help='Name recorded on the run')
@with_appcontext
def export_backup_command(output, requested_by):
    """Write a full backup archive to a file."""
    try:
        run = export_backup(output, requested_by=requested_by)
    except BackupError as e:
        raise click.ClickException(str(e))

    click.echo(
        f"Backup {run.archive_name}: {run.status}, {run.entries_written} entries written, "
        f"{len(run.failures)} failed"
    )
    for failure in run.failures:
        click.echo(f"  skipped {failure['path']}: {failure['reason']}", err=True)


def register_commands(app):
    """Attach the operator commands to app.cli."""
    app.cli.add_command(create_user_command)
    app.cli.add_command(export_backup_command)
