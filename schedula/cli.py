# Overview: Flask CLI command groups for bootstrap, tenant onboarding and maintenance.

# schedula/cli.py
# Commands Legend (run from the repository root):
# Prereqs:
# - Activate your virtualenv and `pip install -e .`.
# - Set FLASK_APP to schedula (PowerShell: $env:FLASK_APP="schedula").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--demo]
#   Create all tables; --demo also creates a demo tenant with an admin and a provider.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Tenant management (MULTI-TENANT):
# - python -m flask tenants list [--all]
#   List tenants (inactive ones with --all).
# - python -m flask tenants create --name "Acme Salon" --slug acme-salon --admin-email owner@acme.example.com --timezone America/New_York
#   Create a tenant with default policy and its admin (prompts for the password).
#
# User bootstrap:
# - python -m flask users create --tenant acme-salon --email pro@acme.example.com --name "Pat" --role PROVIDER
#   Create a user in a tenant (prompts for the password).
#
# Maintenance:
# - python -m flask waitlist expire [--tenant acme-salon]
#   Mark ACTIVE waitlist entries past their expiry as EXPIRED (safe to run from cron).

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Appointment, Service, User
from .models.auth import ROLE_ADMIN, ROLE_PROVIDER, VALID_ROLES
from .services.auth_service import create_user, PasswordValidationError, UserValidationError
from .services import tenant_service
from .services.waitlist_service import expire_entries
from .validation import ValidationError, ConflictError


DEMO_PASSWORD = "Password123"


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--demo', is_flag=True, help='Also create a demo tenant')
@with_appcontext
def init_system(demo):
    """
    Create the schema and, optionally, a demo tenant.

    Demo tenant (slug "demo"):
    - Admin: admin@demo.example.com
    - Provider: provider@demo.example.com, offering a 60 minute "Consultation"
    - Password for both: "Password123"

    SECURITY: Never run --demo against a production database!
    """
    click.echo("START Initializing Schedula...")
    db.create_all()
    click.echo("PASS Tables created")

    if not demo:
        return

    if tenant_service.resolve_tenant("demo") is not None:
        click.echo("PASS Demo tenant already exists")
        return

    tenant, admin = tenant_service.register_tenant(
        name="Demo Studio",
        slug="demo",
        admin_email="admin@demo.example.com",
        admin_name="Demo Admin",
        admin_password=DEMO_PASSWORD,
    )
    provider = create_user(tenant.id, "provider@demo.example.com", "Demo Provider", DEMO_PASSWORD, ROLE_PROVIDER)
    db.session.add(Service(
        tenant_id=tenant.id,
        provider_id=provider.id,
        name="Consultation",
        duration_minutes=60,
        price_cents=5000,
        is_active=True,
    ))
    db.session.commit()

    click.echo(f"PASS Created demo tenant: {tenant.name} (ID: {tenant.id}, slug: {tenant.slug})")
    click.echo(f"     Admin: {admin.email} / Provider: {provider.email}")
    click.echo("SECURITY Change the demo passwords before exposing this instance")


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

    click.echo("PASS Database reset complete. Run 'python -m flask system init --demo' for sample data.")


# =============================================================================
# TENANT MANAGEMENT COMMANDS
# =============================================================================

@click.group('tenants')
def tenants_group():
    """Tenant (business) management commands."""


@tenants_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive tenants')
@with_appcontext
def list_tenants_cli(include_inactive):
    """List tenants with user and appointment counts."""
    tenants = tenant_service.list_tenants(include_inactive=include_inactive)

    if not tenants:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "="*88)
    click.echo(f"{'ID':<5} {'Name':<28} {'Slug':<20} {'Timezone':<20} {'Users':<7} {'Appts'}")
    click.echo("="*88)

    for tenant in tenants:
        user_count = db.session.query(User).filter_by(tenant_id=tenant.id).count()
        appt_count = db.session.query(Appointment).filter_by(tenant_id=tenant.id).count()
        name = tenant.name if tenant.is_active else f"{tenant.name} (inactive)"
        click.echo(f"{tenant.id:<5} {name:<28} {tenant.slug:<20} {tenant.timezone:<20} {user_count:<7} {appt_count}")

    click.echo("="*88 + "\n")


@tenants_group.command('create')
@click.option('--name', required=True, help='Business name')
@click.option('--slug', required=True, help='URL handle (unique)')
@click.option('--timezone', default='UTC', help='IANA timezone, e.g. Europe/Berlin')
@click.option('--admin-email', required=True, help='Admin e-mail')
@click.option('--admin-name', default='Administrator', help='Admin display name')
@click.option('--admin-password', prompt=True, hide_input=True, confirmation_prompt=True, help='Admin password')
@with_appcontext
def create_tenant_cli(name, slug, timezone, admin_email, admin_name, admin_password):
    """Create a tenant, its default policy and its admin account."""
    try:
        tenant, admin = tenant_service.register_tenant(
            name=name,
            slug=slug,
            timezone=timezone,
            admin_email=admin_email,
            admin_name=admin_name,
            admin_password=admin_password,
        )
    except ConflictError as e:
        click.echo(f"FAIL {e}")
        return
    except (ValidationError, UserValidationError, PasswordValidationError) as e:
        click.echo(f"FAIL {e}")
        return

    click.echo(f"PASS Created tenant: {tenant.name} (ID: {tenant.id}, slug: {tenant.slug})")
    click.echo(f"     Admin: {admin.email}")


# =============================================================================
# USER MANAGEMENT COMMANDS
# =============================================================================

@click.group('users')
def users_group():
    """User bootstrap commands."""


@users_group.command('create')
@click.option('--tenant', 'tenant_handle', required=True, help='Tenant slug or ID')
@click.option('--email', prompt=True, help='Email address')
@click.option('--name', prompt=True, help='Display name')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(sorted(VALID_ROLES)), default=ROLE_PROVIDER, help='Role')
@click.option('--phone', default=None, help='Phone number')
@with_appcontext
def create_user_cli(tenant_handle, email, name, password, role, phone):
    """
    Create a user in a tenant.

    Password must meet strength requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    """
    tenant = tenant_service.resolve_tenant(tenant_handle)
    if tenant is None:
        click.echo(f"FAIL Tenant '{tenant_handle}' not found")
        return

    try:
        user = create_user(tenant.id, email, name, password, role, phone=phone)
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
        click.echo("Requirements: 8+ chars, uppercase, lowercase, digit")
        return
    except UserValidationError as e:
        click.echo(f"FAIL Failed to create user: {str(e)}")
        return

    click.echo(f"PASS Created user: {user.name} ({user.email}) with role '{user.role}'")
    click.echo(f"     Tenant: {tenant.name} (ID: {tenant.id})")
    if role == ROLE_ADMIN:
        click.echo("SECURITY Admin accounts can change tenant policy and payment settings")


# =============================================================================
# MAINTENANCE COMMANDS
# =============================================================================

@click.group('waitlist')
def waitlist_group():
    """Waitlist maintenance commands."""


@waitlist_group.command('expire')
@click.option('--tenant', 'tenant_handle', default=None, help='Limit to one tenant (slug or ID)')
@with_appcontext
def expire_waitlist_cli(tenant_handle):
    """Expire ACTIVE waitlist entries whose expiry has passed."""
    tenant_id = None
    if tenant_handle:
        tenant = tenant_service.resolve_tenant(tenant_handle)
        if tenant is None:
            click.echo(f"FAIL Tenant '{tenant_handle}' not found")
            return
        tenant_id = tenant.id

    count = expire_entries(tenant_id=tenant_id)
    click.echo(f"PASS Expired {count} waitlist entries")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(tenants_group)  # Multi-tenant management
    app.cli.add_command(users_group)
    app.cli.add_command(waitlist_group)
