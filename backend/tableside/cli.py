# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/tableside/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--tables 10] [--seats 4]
#   Idempotent bootstrap: creates the schema, default tables and a starter menu.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Tables:
# - python -m flask tables list
#   List tables with status and token state.
# - python -m flask tables seed --count 10 --seats 4
#   Create tables numbered 1..count (existing numbers are skipped).
# - python -m flask tables issue-token 3 [--ttl-class operator]
#   Issue a token and print the access URL to put in the QR code.
# - python -m flask tables free 3
#   Apply the "free" action (table available, token revoked, open payments cancelled).
#
# Menu:
# - python -m flask menu seed
#   Insert the starter menu (skips names that already exist).
# - python -m flask menu list
#
# Payments:
# - python -m flask payments expire
#   Cancel open payments whose window has passed. Safe to run from cron.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import MenuItem, Table
from .errors import TablesideError
from .services import payment_service, table_service, token_service
from .time_utils import to_utc_z


DEFAULT_MENU = [
    # (name, price_cents, preparation_time minutes)
    ("Pao de queijo (6 un.)", 1800, 10),
    ("Coxinha", 950, 12),
    ("File a parmegiana", 5890, 30),
    ("Feijoada individual", 4990, 25),
    ("Moqueca de peixe", 6790, 35),
    ("Salada da casa", 2890, 10),
    ("Pudim de leite", 1490, 5),
    ("Suco natural", 1190, 5),
    ("Refrigerante lata", 790, 2),
    ("Agua mineral", 590, 1),
]


def _seed_tables(count: int, seats: int) -> int:
    existing = {number for (number,) in db.session.query(Table.number).all()}
    created = 0
    for number in range(1, count + 1):
        if number in existing:
            continue
        db.session.add(Table(number=number, seats=seats, status=table_service.TABLE_STATUS_AVAILABLE))
        created += 1
    db.session.commit()
    return created


def _seed_menu() -> int:
    existing = {name for (name,) in db.session.query(MenuItem.name).all()}
    created = 0
    for name, price_cents, preparation_time in DEFAULT_MENU:
        if name in existing:
            continue
        db.session.add(MenuItem(
            name=name,
            price_cents=price_cents,
            preparation_time=preparation_time,
            available=True,
        ))
        created += 1
    db.session.commit()
    return created


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--tables', 'table_count', type=int, default=10, show_default=True, help='Number of tables')
@click.option('--seats', type=int, default=4, show_default=True, help='Seats per table')
@with_appcontext
def init_system(table_count, seats):
    """
    Initialize the restaurant: schema, tables 1..N and the starter menu.

    Safe to re-run; existing rows are left alone.
    """
    click.echo("START Initializing Tableside...")

    db.create_all()
    click.echo("PASS Schema ready")

    created_tables = _seed_tables(table_count, seats)
    click.echo(f"PASS Tables: {created_tables} created")

    created_items = _seed_menu()
    click.echo(f"PASS Menu items: {created_items} created")

    click.echo("DONE Tableside initialized. Issue QR tokens with 'flask tables issue-token <id>'.")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init' to initialize.")


# =============================================================================
# TABLES
# =============================================================================

@click.group('tables')
def tables_group():
    """Table inspection and floor commands."""


@tables_group.command('list')
@with_appcontext
def list_tables_cli():
    """
    List all tables.

    Example:
        flask tables list
    """
    tables = table_service.list_tables()

    if not tables:
        click.echo("No tables found. Run 'flask tables seed' first.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Number':<8} {'Seats':<7} {'Status':<17} {'Token':<10} {'Expires'}")
    click.echo("="*90)

    for table in tables:
        token_state = table.token_class if table.has_token else "-"
        expires = to_utc_z(table.token_expires_at) or "-"
        click.echo(
            f"{table.id:<5} {table.number:<8} {table.seats:<7} {table.status:<17} {token_state:<10} {expires}"
        )

    click.echo("="*90 + "\n")


@tables_group.command('seed')
@click.option('--count', type=int, default=10, show_default=True)
@click.option('--seats', type=int, default=4, show_default=True)
@with_appcontext
def seed_tables_cli(count, seats):
    """Create tables numbered 1..count, skipping numbers that exist."""
    created = _seed_tables(count, seats)
    click.echo(f"PASS Created {created} tables")


@tables_group.command('issue-token')
@click.argument('table_id', type=int)
@click.option(
    '--ttl-class',
    type=click.Choice(token_service.VALID_TOKEN_CLASSES),
    default=token_service.TOKEN_CLASS_GUEST,
    show_default=True,
)
@with_appcontext
def issue_token_cli(table_id, ttl_class):
    """
    Issue a table token and print the access URL for the QR code.

    Any previous token for the table stops working.
    """
    try:
        token, expires_at = token_service.issue(table_id, ttl_class)
    except TablesideError as e:
        raise click.ClickException(e.message)

    click.echo(f"Token:      {token}")
    click.echo(f"Class:      {ttl_class}")
    click.echo(f"Expires:    {to_utc_z(expires_at)}")
    click.echo(f"Access URL: {token_service.build_access_url(table_id, token)}")


@tables_group.command('free')
@click.argument('table_id', type=int)
@with_appcontext
def free_table_cli(table_id):
    """Release a table: available, token revoked, open payments cancelled."""
    try:
        result = table_service.apply_action(table_id, table_service.ACTION_FREE)
    except TablesideError as e:
        raise click.ClickException(e.message)

    if result.changed:
        click.echo(f"PASS {result.message}")
    else:
        click.echo(f"Table {result.table.number} was already available.")


# =============================================================================
# MENU
# =============================================================================

@click.group('menu')
def menu_group():
    """Menu catalog commands."""


@menu_group.command('seed')
@with_appcontext
def seed_menu_cli():
    """Insert the starter menu."""
    created = _seed_menu()
    click.echo(f"PASS Created {created} menu items")


@menu_group.command('list')
@with_appcontext
def list_menu_cli():
    """List menu items with price and availability."""
    items = db.session.query(MenuItem).order_by(MenuItem.id).all()

    if not items:
        click.echo("No menu items found. Run 'flask menu seed' first.")
        return

    click.echo("\n" + "="*70)
    click.echo(f"{'ID':<5} {'Name':<30} {'Price':>10} {'Prep':>6}  {'Available'}")
    click.echo("="*70)

    for item in items:
        price = f"{item.price_cents / 100:.2f}"
        click.echo(
            f"{item.id:<5} {item.name:<30} {price:>10} {item.preparation_time:>5}m  {'yes' if item.available else 'no'}"
        )

    click.echo("="*70 + "\n")


# =============================================================================
# PAYMENTS
# =============================================================================

@click.group('payments')
def payments_group():
    """Payment maintenance commands."""


@payments_group.command('expire')
@with_appcontext
def expire_payments_cli():
    """Cancel open payments whose payment window has passed."""
    expired = payment_service.expire_stale_payments()
    click.echo(f"Expired {expired} payments.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tables_group)
    app.cli.add_command(menu_group)
    app.cli.add_command(payments_group)
