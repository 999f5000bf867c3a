"""CLI tools for ClarityMDT administration."""

import logging
import time

import click

from clarity_mdt.core.security import create_session_token
from clarity_mdt.db.enums import Role
from clarity_mdt.db.session import SessionLocal
from clarity_mdt.services import telegram_settings_service, user_service, verification_service
from clarity_mdt.services.telegram_poller import TelegramPoller


@click.group()
def cli():
    """ClarityMDT CLI tools."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--name", required=True, help="Department name")
def create_department(name: str):
    """
    Create a department.

    Example:
        python -m clarity_mdt.cli create-department --name "Oncology"
    """
    db = SessionLocal()
    try:
        department = user_service.create_department(db, name)
        click.echo(f"✓ Created department: {department.name}")
        click.echo(f"  ID: {department.id}")
    except ValueError as e:
        db.rollback()
        raise click.ClickException(str(e))
    finally:
        db.close()


@cli.command()
@click.option("--login-id", required=True, help="Login handle")
@click.option("--name", required=True, help="Display name")
@click.option(
    "--role",
    type=click.Choice([r.value for r in Role]),
    default=Role.VIEWER.value,
    show_default=True,
)
@click.option("--department", "department_name", default=None, help="Department name")
def create_user(login_id: str, name: str, role: str, department_name: str | None):
    """Create a user (credentials are managed by the auth front end)."""
    db = SessionLocal()
    try:
        department_id = None
        if department_name:
            department = user_service.get_department_by_name(db, department_name)
            if not department:
                raise click.ClickException(f"Department '{department_name}' not found")
            department_id = department.id

        user = user_service.create_user(db, login_id, name, Role(role), department_id)
        click.echo(f"✓ Created user: {user.name} ({user.role})")
        click.echo(f"  ID: {user.id}")
    except ValueError as e:
        db.rollback()
        raise click.ClickException(str(e))
    finally:
        db.close()


@cli.command()
@click.option("--login-id", required=True, help="Login handle")
def session_token(login_id: str):
    """Print a session cookie value for a user (local development)."""
    db = SessionLocal()
    try:
        user = user_service.get_user_by_login_id(db, login_id)
        if not user:
            raise click.ClickException(f"User '{login_id}' not found")
        click.echo(create_session_token(user.id, user.role, user.token_version))
    finally:
        db.close()


@cli.command()
def purge_verification_codes():
    """Delete expired Telegram linking codes."""
    db = SessionLocal()
    try:
        count = verification_service.purge_expired(db)
        click.echo(f"✓ Purged {count} expired verification code(s)")
    finally:
        db.close()


@cli.command()
@click.option("--once", is_flag=True, help="Process a single batch of updates and exit")
def telegram_poll(once: bool):
    """
    Poll the Telegram Bot API for linking codes (no public webhook).

    Runs until interrupted unless --once is given.
    """
    db = SessionLocal()
    try:
        client = telegram_settings_service.get_client(db)
    finally:
        db.close()
    if client is None:
        raise click.ClickException("Telegram is disabled or the bot token is not configured")

    poller = TelegramPoller()
    if once:
        handled = poller.poll_once(client=client)
        click.echo(f"✓ Handled {handled} message(s)")
        return

    poller.start(client, persistent=True)
    click.echo("→ Polling Telegram, press Ctrl+C to stop")
    try:
        while poller.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        poller.shutdown()
        click.echo("✓ Polling stopped")


if __name__ == "__main__":
    cli()
