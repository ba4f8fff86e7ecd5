# Overview: Flask CLI command groups for tenant administration and store inspection.

# backend/fieldsync/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Tenants:
# - python -m flask tenants create --id acme --name "Acme Field Sales"
#   Create a tenant; devices must carry this id in every record.
# - python -m flask tenants list [--all]
#   List tenants (use --all to include inactive).
# - python -m flask tenants deactivate acme
#   Stop accepting pushes/pulls for a tenant.
#
# Settings:
# - python -m flask settings show acme
#   Effective sync settings (override or default) for a tenant.
# - python -m flask settings set acme gps.max_accuracy_m 50
#   Set a tenant override.
#
# Cash reconciliation periods:
# - python -m flask periods close acme 2026-10-18 --by manager
# - python -m flask periods reopen acme 2026-10-18 --by manager
# - python -m flask periods list acme [--status CLOSED]
#
# Inspection:
# - python -m flask records show acme <record_id> [--history]
# - python -m flask stock show acme [--warehouse WH-1]

import json

import click
from flask.cli import with_appcontext

from .errors import PeriodError, UnknownTenant
from .extensions import db
from .services import period_service, settings_service, store_service, tenant_service


@click.group('tenants')
def tenants_group():
    """Tenant administration."""


@tenants_group.command('create')
@click.option('--id', 'tenant_id', required=True, help='Tenant id carried by devices')
@click.option('--name', required=True, help='Display name')
@with_appcontext
def create_tenant_cli(tenant_id, name):
    """Create a new tenant."""
    try:
        tenant = tenant_service.create_tenant(tenant_id, name)
        db.session.commit()
    except tenant_service.TenantError as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Created tenant: {tenant.name} (ID: {tenant.id})")


@tenants_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive tenants')
@with_appcontext
def list_tenants_cli(include_inactive):
    """List tenants."""
    tenants = tenant_service.list_tenants(include_inactive=include_inactive)
    if not tenants:
        click.echo("No tenants found.")
        return

    click.echo("\n" + "="*60)
    click.echo(f"{'ID':<20} {'Name':<30} {'Active'}")
    click.echo("="*60)
    for tenant in tenants:
        click.echo(f"{tenant.id:<20} {tenant.name:<30} {'Yes' if tenant.is_active else 'No'}")
    click.echo("="*60 + "\n")


@tenants_group.command('deactivate')
@click.argument('tenant_id')
@with_appcontext
def deactivate_tenant_cli(tenant_id):
    """Deactivate a tenant (sync requests are rejected with TENANT_UNKNOWN)."""
    try:
        tenant_service.set_tenant_active(tenant_id, False)
        db.session.commit()
    except tenant_service.TenantError as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS Deactivated tenant {tenant_id}")


@click.group('settings')
def settings_group():
    """Tenant sync settings."""


@settings_group.command('show')
@click.argument('tenant_id')
@with_appcontext
def show_settings_cli(tenant_id):
    """Show effective settings for a tenant."""
    for key, value in settings_service.get_tenant_settings(tenant_id).items():
        description = settings_service.SETTINGS_CATALOG[key]["description"]
        click.echo(f"{key:<28} {value!s:<10} {description}")


@settings_group.command('set')
@click.argument('tenant_id')
@click.argument('key')
@click.argument('value')
@click.option('--by', 'updated_by', default=None, help='Operator name for the audit trail')
@with_appcontext
def set_setting_cli(tenant_id, key, value, updated_by):
    """Set a tenant setting override."""
    try:
        row = settings_service.set_tenant_setting(tenant_id, key, value, updated_by=updated_by)
        db.session.commit()
    except settings_service.SettingsError as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS {row.key} = {row.value} for tenant {tenant_id}")


@click.group('periods')
def periods_group():
    """Cash reconciliation periods."""


def _run_period_action(action, tenant_id, period_key, actor, verb):
    try:
        period = action(tenant_id, period_key, actor)
        db.session.commit()
    except (PeriodError, UnknownTenant) as e:
        db.session.rollback()
        click.echo(f"FAIL {e}")
        return
    click.echo(f"PASS {verb} period {period.period_key} for tenant {tenant_id}")


@periods_group.command('close')
@click.argument('tenant_id')
@click.argument('period_key')
@click.option('--by', 'actor', default=None, help='Operator name')
@with_appcontext
def close_period_cli(tenant_id, period_key, actor):
    """Close a period; later cash submissions for it are rejected."""
    _run_period_action(period_service.close_period, tenant_id, period_key, actor, "Closed")


@periods_group.command('reopen')
@click.argument('tenant_id')
@click.argument('period_key')
@click.option('--by', 'actor', default=None, help='Operator name')
@with_appcontext
def reopen_period_cli(tenant_id, period_key, actor):
    """Re-open a closed period."""
    _run_period_action(period_service.reopen_period, tenant_id, period_key, actor, "Re-opened")


@periods_group.command('list')
@click.argument('tenant_id')
@click.option('--status', type=click.Choice(['OPEN', 'CLOSED'], case_sensitive=False), default=None)
@with_appcontext
def list_periods_cli(tenant_id, status):
    """List recorded periods for a tenant."""
    periods = period_service.list_periods(tenant_id, status=status)
    if not periods:
        click.echo("No periods found.")
        return
    for period in periods:
        click.echo(f"{period.period_key:<12} {period.status:<8} closed_by={period.closed_by or '-'}")


@click.group('records')
def records_group():
    """Authoritative record inspection."""


@records_group.command('show')
@click.argument('tenant_id')
@click.argument('record_id')
@click.option('--history', is_flag=True, help='Include merge history')
@with_appcontext
def show_record_cli(tenant_id, record_id, history):
    """Print a server record as JSON."""
    record = store_service.get_server_record(tenant_id, record_id)
    if record is None:
        click.echo(f"FAIL Record {record_id} not found for tenant {tenant_id}")
        return
    click.echo(json.dumps(record.to_dict(include_history=history), indent=2))


@click.group('stock')
def stock_group():
    """Running stock totals."""


@stock_group.command('show')
@click.argument('tenant_id')
@click.option('--warehouse', 'warehouse_id', default=None, help='Filter by warehouse')
@with_appcontext
def show_stock_cli(tenant_id, warehouse_id):
    """List stock levels for a tenant."""
    levels = store_service.list_stock_levels(tenant_id, warehouse_id=warehouse_id)
    if not levels:
        click.echo("No stock levels found.")
        return
    for level in levels:
        click.echo(f"{level.warehouse_id:<16} {level.product_id:<16} {level.quantity!s:>14} {level.unit}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(tenants_group)
    app.cli.add_command(settings_group)
    app.cli.add_command(periods_group)
    app.cli.add_command(records_group)
    app.cli.add_command(stock_group)
