# Overview: Flask CLI command groups for bootstrap, device provisioning and billing maintenance.

# backend/cuehall/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --username owner --password "Password123!" --role OWNER
#   Create a staff user (prompts if options are omitted).
# - python -m flask users set-pin --username owner --pin 482913
#   Set the 6-digit PIN used for owner re-authentication.
# - python -m flask users list
#
# Tables:
# - python -m flask tables create --name "Table 1" --rate 30000 [--device-id 1 --channel 0 --gpio 23]
# - python -m flask tables list
#
# IoT devices:
# - python -m flask iot register-device --name "gateway-1"
#   Prints the device token ONCE. Store it on the controller.
# - python -m flask iot rotate-token --device-id 1
# - python -m flask iot list-devices
# - python -m flask iot purge-nonces
#   Drop expired replay-protection nonces.
#
# Billing:
# - python -m flask billing sweep
#   Run one expiry sweep (auto-complete overdue sessions, blink warnings).
# - python -m flask billing active

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import Table, User
from .models.auth import ROLES
from .services.auth_service import create_user, set_user_pin, PasswordValidationError, PinValidationError
from .services import billing_service, command_service, device_auth_service, expiry_service, table_service
from .validation import DomainError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables (idempotent)."""
    db.create_all()
    click.echo("PASS Database schema created.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--name', default=None, help='Display name')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(list(ROLES)), prompt=True, help='Role')
@with_appcontext
def create_user_cli(username, name, password, role):
    """
    Create a new staff user.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    try:
        user = create_user(username=username, password=password, role=role, name=name)
        click.echo(f"PASS Created user: {user.username} with role '{user.role}' (ID: {user.id})")

    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit, special char")
    except ValueError as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")


@users_group.command('set-pin')
@click.option('--username', required=True, help='Username')
@click.option('--pin', prompt=True, hide_input=True, confirmation_prompt=True, help='6-digit PIN')
@with_appcontext
def set_pin_cli(username, pin):
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return

    try:
        set_user_pin(user.id, pin)
        click.echo(f"PASS PIN updated for {username}")
    except PinValidationError as e:
        click.echo(f"FAIL {str(e)}")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo(f"\n{'ID':<5} {'Username':<20} {'Role':<12} {'Active':<8} {'PIN':<5}")
    click.echo("-" * 55)
    for u in users:
        click.echo(f"{u.id:<5} {u.username:<20} {u.role:<12} {str(u.is_active):<8} {'yes' if u.pin_hash else 'no':<5}")


@click.group('tables')
def tables_group():
    """Billiard table setup."""


@tables_group.command('create')
@click.option('--name', required=True, help='Table name')
@click.option('--rate', required=True, help='Hourly rate')
@click.option('--device-id', type=int, default=None, help='Dedicated IoT device ID')
@click.option('--channel', type=int, default=None, help='Relay channel (0-15)')
@click.option('--gpio', type=int, default=None, help='GPIO pin')
@with_appcontext
def create_table_cli(name, rate, device_id, channel, gpio):
    payload = {"name": name, "hourly_rate": rate}
    if device_id is not None:
        payload["iot_device_id"] = device_id
    if channel is not None:
        payload["relay_channel"] = channel
    if gpio is not None:
        payload["gpio_pin"] = gpio

    try:
        table = table_service.create_table(payload)
        click.echo(f"PASS Created table: {table.name} (ID: {table.id}, rate {table.hourly_rate}/h)")
    except DomainError as e:
        click.echo(f"FAIL Error: {str(e)}")


@tables_group.command('list')
@with_appcontext
def list_tables_cli():
    tables = db.session.query(Table).order_by(Table.name).all()
    click.echo(f"\n{'ID':<5} {'Name':<20} {'Rate':<12} {'Status':<12} {'Device':<7} {'Ch':<4} {'GPIO':<5}")
    click.echo("-" * 70)
    for t in tables:
        click.echo(
            f"{t.id:<5} {t.name:<20} {str(t.hourly_rate):<12} {t.status:<12} "
            f"{str(t.iot_device_id or '-'):<7} {str(t.relay_channel if t.relay_channel is not None else '-'):<4} "
            f"{str(t.gpio_pin or '-'):<5}"
        )


@click.group('iot')
def iot_group():
    """IoT device provisioning and protocol maintenance."""


@iot_group.command('register-device')
@click.option('--name', required=True, help='Device name')
@with_appcontext
def register_device_cli(name):
    """
    Register a light controller.

    The plaintext token is printed once. Only its hash is stored.
    """
    try:
        device, token = command_service.register_device(name)
    except DomainError as e:
        click.echo(f"FAIL Error: {str(e)}")
        return

    click.echo(f"PASS Registered device: {device.name} (ID: {device.id})")
    click.echo(f"     Token: {token}")
    click.echo("SECURITY Store this token on the device now; it cannot be shown again")


@iot_group.command('rotate-token')
@click.option('--device-id', type=int, required=True, help='Device ID')
@with_appcontext
def rotate_token_cli(device_id):
    try:
        device, token = command_service.rotate_device_token(device_id)
    except DomainError as e:
        click.echo(f"FAIL Error: {str(e)}")
        return

    click.echo(f"PASS Rotated token for {device.name} (ID: {device.id})")
    click.echo(f"     Token: {token}")


@iot_group.command('list-devices')
@with_appcontext
def list_devices_cli():
    liveness = current_app.config["IOT_DEVICE_LIVENESS_SECONDS"]
    for d in command_service.list_devices():
        state = "online" if d.online_at(liveness_seconds=liveness) else "offline"
        click.echo(f"{d.id:<5} {d.name:<24} {state:<8} last seen {d.last_seen or 'never'}")


@iot_group.command('purge-nonces')
@with_appcontext
def purge_nonces_cli():
    purged = device_auth_service.purge_nonces()
    click.echo(f"Purged {purged} expired nonces.")


@click.group('billing')
def billing_group():
    """Billing session maintenance."""


@billing_group.command('sweep')
@with_appcontext
def sweep_cli():
    """Run the expiry sweep once."""
    result = expiry_service.run_sweep()
    click.echo(f"Auto-completed {len(result['completed'])} sessions, sent {len(result['warned'])} warnings.")


@billing_group.command('active')
@with_appcontext
def active_sessions_cli():
    sessions = billing_service.get_active_sessions()
    if not sessions:
        click.echo("No active sessions.")
        return

    for s in sessions:
        click.echo(f"{s.id:<5} table {s.table_id:<4} {s.rate_type:<11} ends {s.end_time} total {s.total_amount}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(tables_group)
    app.cli.add_command(iot_group)
    app.cli.add_command(billing_group)
