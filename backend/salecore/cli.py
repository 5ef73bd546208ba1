# Overview: Flask CLI command groups for bootstrap, stock and payment maintenance.

# backend/salecore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to "salecore:create_app" (PowerShell: $env:FLASK_APP="salecore:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent). Use "flask db upgrade" once migrations exist.
# - python -m flask system init --org "Org Name" --location "Main Shop" --tax-rate 0.16
#   Create a default organization and location if none exist.
#
# Stock:
# - python -m flask stock receive --org-id 1 --location-id 1 --product-id 1 --quantity 10 --unit-cost-cents 250 [--expiry-date 2026-12-31]
#   Record a new inbound batch.
# - python -m flask stock available --org-id 1 --location-id 1 --product-id 1
#   Show on-hand, reserved and available quantity with the batch breakdown.
#
# Payments:
# - python -m flask payments expire-stale
#   Expire mobile money payments with no callback before the timeout. Schedule this.

import click
from flask.cli import with_appcontext

from .errors import SaleEngineError
from .extensions import db
from .models import Location, Organization
from .services import inventory_service, payment_service
from .services.pricing_service import tax_rate_to_bps
from .time_utils import parse_iso_date


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("PASS Tables created")


@system_group.command('init')
@click.option('--org', 'org_name', default='Default Organization', help='Organization name')
@click.option('--org-code', default='DEFAULT', help='Organization code')
@click.option('--location', 'location_name', default='Main Shop', help='Location name')
@click.option('--tax-rate', default='0', help='Flat tax rate as a fraction, e.g. 0.16')
@with_appcontext
def init_system(org_name, org_code, location_name, tax_rate):
    """Create the default organization and location (idempotent)."""
    db.create_all()

    org = db.session.query(Organization).filter_by(code=org_code).first()
    if not org:
        org = Organization(name=org_name, code=org_code, is_active=True)
        db.session.add(org)
        db.session.commit()
        click.echo(f"PASS Created organization: {org.name} (ID: {org.id}, Code: {org.code})")
    else:
        click.echo(f"PASS Using existing organization: {org.name} (ID: {org.id})")

    location = db.session.query(Location).filter_by(org_id=org.id).first()
    if not location:
        try:
            bps = tax_rate_to_bps(tax_rate)
        except SaleEngineError as exc:
            raise click.BadParameter(exc.message, param_hint="--tax-rate")
        location = Location(org_id=org.id, name=location_name, code="MAIN", tax_rate_bps=bps)
        db.session.add(location)
        db.session.commit()
        click.echo(f"PASS Created location: {location.name} (ID: {location.id}, tax {location.tax_rate_bps} bps)")
    else:
        click.echo(f"PASS Using existing location: {location.name} (ID: {location.id})")


@click.group('stock')
def stock_group():
    """Batch stock commands."""


@stock_group.command('receive')
@click.option('--org-id', type=int, required=True)
@click.option('--location-id', type=int, required=True)
@click.option('--product-id', type=int, required=True)
@click.option('--variant-id', type=int, default=None)
@click.option('--quantity', type=int, required=True)
@click.option('--unit-cost-cents', type=int, required=True)
@click.option('--expiry-date', default=None, help='YYYY-MM-DD')
@click.option('--batch-number', default=None)
@with_appcontext
def receive_cli(org_id, location_id, product_id, variant_id, quantity, unit_cost_cents, expiry_date, batch_number):
    """Record a new inbound batch."""
    try:
        expiry = parse_iso_date(expiry_date, "expiry_date")
    except SaleEngineError:
        raise click.BadParameter("expected YYYY-MM-DD", param_hint="--expiry-date")

    try:
        batch = inventory_service.receive_batch(
            org_id=org_id,
            location_id=location_id,
            product_id=product_id,
            variant_id=variant_id,
            quantity=quantity,
            unit_cost_cents=unit_cost_cents,
            expiry_date=expiry,
            batch_number=batch_number,
        )
    except SaleEngineError as exc:
        click.echo(f"FAIL {exc.message} {exc.details}")
        raise SystemExit(1)

    click.echo(f"PASS Received batch {batch.id}: {batch.quantity} @ {batch.unit_cost_cents} cents")


@stock_group.command('available')
@click.option('--org-id', type=int, required=True)
@click.option('--location-id', type=int, required=True)
@click.option('--product-id', type=int, required=True)
@click.option('--variant-id', type=int, default=None)
@with_appcontext
def available_cli(org_id, location_id, product_id, variant_id):
    """Show stock for one product at one location."""
    summary = inventory_service.get_stock_summary(org_id, location_id, product_id, variant_id)

    click.echo(
        f"On hand: {summary['quantity_on_hand']}  Reserved: {summary['reserved_quantity']}  "
        f"Available: {summary['available_quantity']}  Expired: {summary['expired_quantity']}"
    )
    click.echo("="*80)
    click.echo(f"{'Batch':<8} {'Qty':<8} {'Reserved':<10} {'Cost':<10} {'Expiry':<12} {'Received'}")
    click.echo("="*80)
    for b in summary["batches"]:
        click.echo(
            f"{b['id']:<8} {b['quantity']:<8} {b['reserved_quantity']:<10} {b['unit_cost_cents']:<10} "
            f"{b['expiry_date'] or '-':<12} {b['received_at']}"
        )


@click.group('payments')
def payments_group():
    """Mobile money maintenance commands."""


@payments_group.command('expire-stale')
@with_appcontext
def expire_stale_cli():
    """Expire non-terminal mobile money payments past the timeout."""
    timeouts = payment_service.expire_stale_payments()
    for t in timeouts:
        click.echo(f"EXPIRED {t.details['transaction_ref']} (sale {t.details['sale_id']})")
    click.echo(f"PASS Expired {len(timeouts)} payment(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(payments_group)
