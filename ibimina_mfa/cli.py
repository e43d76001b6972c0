"""
Ibimina MFA CLI commands.

Registered as ``flask mfa`` through the ``flask.commands`` entry point and on
every app built by :func:`ibimina_mfa.app.create_app`.
"""

import base64
import logging
import secrets

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .security.mfa.config import SECRET_KEYS
from .security.mfa.exceptions import MFAServiceError
from .security.mfa.models import SYSTEM_ADMIN_ROLE, User, init_db

log = logging.getLogger(__name__)


def echo_header(title):
    """
    Print a styled section header.

    Args:
        title: Header text to display
    """
    click.echo(click.style(title, fg="green"))
    click.echo(click.style("-" * len(title), fg="green"))


def generate_secret_values():
    """Fresh values for every MFA secret; the data key is 32 random bytes in base64."""
    values = {key: secrets.token_urlsafe(32) for key in SECRET_KEYS}
    values["MFA_DATA_KEY"] = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
    return values


@click.command("generate-keys")
def generate_keys():
    """Print fresh MFA secrets as environment assignments."""
    echo_header("MFA secrets")
    for key, value in generate_secret_values().items():
        click.echo(f"{key}={value}")


@click.command("init-db")
@with_appcontext
def init_db_command():
    """Create the MFA tables."""
    init_db(current_app)
    click.echo(click.style("MFA tables created", fg="green"))


class _CliAdmin:
    """Actor used for resets run from the command line."""

    id = "cli"
    role = SYSTEM_ADMIN_ROLE
    is_system_admin = True


@click.command("reset")
@click.argument("user_id")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@with_appcontext
def reset_user(user_id, yes):
    """
    Reset MFA for a user.

    Args:
        user_id: Id of the user whose MFA state is cleared
    """
    echo_header(f"Resetting MFA for user: {user_id}")
    if not yes:
        click.confirm("This removes the user's secret, backup codes and devices. Continue?", abort=True)
    orchestrator = current_app.extensions["ibimina_mfa"]
    try:
        orchestrator.reset_user_mfa(_CliAdmin(), user_id)
    except MFAServiceError as e:
        click.echo(click.style(f"Error resetting MFA: {e.error}", fg="red"))
        raise SystemExit(1)
    click.echo(click.style("MFA reset successfully!", fg="green"))


@click.command("audit")
@click.argument("user_id")
@click.option("--limit", default=20, show_default=True, help="Number of events to show")
@with_appcontext
def audit_trail(user_id, limit):
    """List recent MFA audit events for a user."""
    if db.session.get(User, user_id) is None:
        click.echo(click.style(f"User {user_id} not found", fg="red"))
        raise SystemExit(1)
    echo_header(f"MFA audit trail for user: {user_id}")
    orchestrator = current_app.extensions["ibimina_mfa"]
    for event in orchestrator.audit.get_audit_trail(user_id, limit=limit):
        click.echo(f"{event.created_at:%Y-%m-%d %H:%M:%S}  {event.action}  {event.meta}")


@click.group()
def mfa():
    """Ibimina MFA commands."""
    pass


mfa.add_command(generate_keys)
mfa.add_command(init_db_command)
mfa.add_command(reset_user)
mfa.add_command(audit_trail)
