# Overview: Flask CLI command groups for bootstrap, users and stock reconciliation.

# backend/posledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--org "Org Name"]
#   Idempotent bootstrap: organization, warehouse and branch, roles, permissions, admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users:
# - python -m flask users create --username jdoe --email jdoe@posledger.local --password "Password123!" --role cashier --location-id 2
# - python -m flask users grant-location --username jdoe --location-id 1
#
# Inventory:
# - python -m flask inventory reconcile [--variation-id 3]
#   Prints the conservation report; exits 1 when anything is out of balance.

import json

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Organization, Location, User
from .models.tenancy import LOCATION_TYPE_WAREHOUSE, LOCATION_TYPE_BRANCH
from .permissions import DEFAULT_ROLES
from .services.auth_service import create_user, create_default_roles, assign_role, PasswordValidationError
from .services import permission_service
from .services import reconciliation_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--org', 'org_name', default='Default Organization', help='Organization name')
@click.option('--org-code', default='DEFAULT', help='Organization code')
@click.option('--admin-password', default='Password123!', help='Password for the admin user')
@with_appcontext
def init_system(org_name, org_code, admin_password):
    """
    Initialize an organization with a warehouse, a branch, the built-in
    roles and permissions, and an admin user.

    SECURITY: Change the admin password immediately in production!
    """
    click.echo("START Initializing posledger...")

    org = db.session.query(Organization).filter_by(code=org_code).first()
    if not org:
        org = Organization(name=org_name, code=org_code, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")
    else:
        click.echo(f"PASS Using existing organization: {org.name} (ID: {org.id})")

    defaults = [
        ("Main Warehouse", "WH", LOCATION_TYPE_WAREHOUSE),
        ("Main Branch", "BR1", LOCATION_TYPE_BRANCH),
    ]
    warehouse = None
    for name, code, location_type in defaults:
        location = db.session.query(Location).filter_by(org_id=org.id, code=code).first()
        if not location:
            location = Location(org_id=org.id, name=name, code=code, location_type=location_type)
            db.session.add(location)
            db.session.commit()
            click.echo(f"PASS Created location: {location.name} (ID: {location.id})")
        else:
            click.echo(f"PASS Using existing location: {location.name} (ID: {location.id})")
        warehouse = warehouse or location

    click.echo("\nSECURITY Initializing roles and permissions...")
    create_default_roles(org.id)
    perm_count = permission_service.initialize_permissions()
    assignment_count = permission_service.assign_default_role_permissions(org.id)
    click.echo(f"PASS Created {perm_count} permissions, {assignment_count} role assignments")

    existing = db.session.query(User).filter_by(org_id=org.id, username="admin").first()
    if existing:
        click.echo("WARN  User 'admin' already exists, skipping...")
    else:
        try:
            admin = create_user(
                username="admin",
                email="admin@posledger.local",
                password=admin_password,
                org_id=org.id,
                location_id=warehouse.id,
            )
        except PasswordValidationError as e:
            raise click.ClickException(f"Password validation failed for 'admin': {e}")
        assign_role(admin.id, "admin")
        click.echo("PASS Created user: admin (admin@posledger.local) with role 'admin'")

    click.echo("\nDONE posledger initialized")


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


@click.group('users')
def users_group():
    """User management commands."""


@users_group.command('create')
@click.option('--org-id', type=int, help='Organization ID (uses the first organization if omitted)')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice([name for name, _ in DEFAULT_ROLES]), prompt=True, help='Role')
@click.option('--location-id', type=int, help='Home location')
@with_appcontext
def create_user_cli(org_id, username, email, password, role, location_id):
    """Create a user with one of the built-in roles."""
    if org_id:
        org = db.session.get(Organization, org_id)
    else:
        org = db.session.query(Organization).order_by(Organization.id).first()
    if not org:
        raise click.ClickException("No organization found. Run 'python -m flask system init' first.")

    try:
        user = create_user(
            username=username,
            email=email,
            password=password,
            org_id=org.id,
            location_id=location_id,
        )
        assign_role(user.id, role)
    except (PasswordValidationError, ValueError) as e:
        db.session.rollback()
        raise click.ClickException(str(e))

    click.echo(f"PASS Created user: {username} ({email}) with role '{role}' in {org.name}")


@users_group.command('grant-location')
@click.option('--username', required=True, help='Username')
@click.option('--location-id', type=int, required=True, help='Location to grant')
@with_appcontext
def grant_location_cli(username, location_id):
    """Let a user work at an additional location."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user:
        raise click.ClickException(f"User '{username}' not found")

    try:
        permission_service.grant_location_access(user.id, location_id)
    except ValueError as e:
        db.session.rollback()
        raise click.ClickException(str(e))

    click.echo(f"PASS Granted location {location_id} to {username}")


@click.group('inventory')
def inventory_group():
    """Stock inspection commands."""


@inventory_group.command('reconcile')
@click.option('--org-id', type=int, help='Organization ID (all organizations if omitted)')
@click.option('--variation-id', type=int, help='Check a single variation')
@click.option('--json', 'as_json', is_flag=True, help='Print the raw report')
@with_appcontext
def reconcile_cli(org_id, variation_id, as_json):
    """Check stock conservation; exits non-zero when unbalanced."""
    report = reconciliation_service.reconcile(org_id=org_id, variation_id=variation_id)

    if as_json:
        click.echo(json.dumps(report, indent=2))
    else:
        click.echo(f"{'Variation':<10} {'Levels':>10} {'Transit':>10} {'Expected':>10}  Status")
        click.echo("=" * 56)
        for row in report["variations"]:
            status = "OK" if row["balanced"] else "MISMATCH"
            click.echo(
                f"{row['variation_id']:<10} {row['levels_total']:>10} {row['in_transit']:>10} "
                f"{row['expected_total']:>10}  {status}"
            )
            for loc in row["locations"]:
                if not loc["balanced"]:
                    click.echo(
                        f"    location {loc['location_id']}: level {loc['quantity_available']}, "
                        f"movements {loc['movement_sum']}"
                    )
        for unit in report["units_not_received"]:
            click.echo(
                f"WARN  Serial number {unit['serial_number_id']} still in transit "
                f"after {unit['transfer_number']} completed"
            )
        if report["invalid_unit_movements"]:
            click.echo(f"FAIL {report['invalid_unit_movements']} unit movements without a unit")

    if not report["balanced"]:
        click.echo("FAIL Stock is out of balance")
        click.get_current_context().exit(1)
    click.echo("PASS Stock is balanced")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(inventory_group)
