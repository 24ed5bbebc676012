# Overview: Flask CLI command groups for bootstrap, sweeps, and operator inspection.

# backend/settlement/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (dev only; use `flask db upgrade` elsewhere).
#
# Sellers and products:
# - python -m flask sellers create --name "Kedai Aina" --email aina@shop.my --frequency 30m
# - python -m flask sellers token --seller-id 1
#   Print the dashboard bearer token for a seller.
# - python -m flask products create --seller-id 1 --name "Batik Scarf" --price-cents 4500 --quantity 10
#
# Sweeps (normally triggered by the scheduler via /api/cron/*):
# - python -m flask orders expire
#   Cancel unpaid orders whose payment window closed and release their stock.
# - python -m flask reminders sweep
#   Send pending-receipt reminders to sellers whose cadence has elapsed.
#
# Operations:
# - python -m flask notifications retry --limit 50
#   Re-deliver queued/failed outbox emails.
# - python -m flask anomalies list [--all]
#   List reconciliation anomalies awaiting review.
# - python -m flask anomalies resolve 3 --note "Refunded by gateway"
#   Close an anomaly; the payment leaves the review queue once none remain open.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Product, Seller
from .security import seller_token
from .services import notification_service, reconciliation_service, reminder_service
from .services.ledger_service import list_anomalies, resolve_anomaly
from .services.reminder_service import CADENCES
from .validation import ConflictError, NotFoundError


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables for a fresh development database."""
    db.create_all()
    click.echo("PASS Database tables created")


@click.group('sellers')
def sellers_group():
    """Seller bootstrap commands."""


@sellers_group.command('create')
@click.option('--name', required=True, help='Display name')
@click.option('--email', required=True, help='Notification email')
@click.option('--frequency', type=click.Choice(list(CADENCES)), default='30m', help='Reminder cadence')
@with_appcontext
def create_seller_cli(name, email, frequency):
    """Create a seller and print its dashboard token."""
    existing = db.session.query(Seller).filter_by(email=email.lower()).first()
    if existing:
        click.echo(f"WARN  Seller with email {email} already exists (ID: {existing.id})")
        return

    seller = Seller(name=name, email=email.lower(), reminder_frequency=frequency, is_active=True)
    db.session.add(seller)
    db.session.commit()
    click.echo(f"PASS Created seller {seller.name} (ID: {seller.id})")
    click.echo(f"     Token: {seller_token(seller.id)}")


@sellers_group.command('token')
@click.option('--seller-id', type=int, required=True)
@with_appcontext
def seller_token_cli(seller_id):
    """Print the dashboard bearer token for a seller."""
    seller = db.session.get(Seller, seller_id)
    if seller is None:
        raise click.ClickException(f"Seller {seller_id} not found")
    click.echo(seller_token(seller.id))


@click.group('products')
def products_group():
    """Product bootstrap commands."""


@products_group.command('create')
@click.option('--seller-id', type=int, required=True)
@click.option('--name', required=True)
@click.option('--price-cents', type=click.IntRange(min=1), required=True)
@click.option('--shipping-cents', type=click.IntRange(min=0), default=0)
@click.option('--quantity', type=click.IntRange(min=0), default=0)
@with_appcontext
def create_product_cli(seller_id, name, price_cents, shipping_cents, quantity):
    """Create a product with initial stock."""
    if db.session.get(Seller, seller_id) is None:
        raise click.ClickException(f"Seller {seller_id} not found")

    product = Product(
        seller_id=seller_id,
        name=name,
        price_cents=price_cents,
        shipping_cents=shipping_cents,
        quantity=quantity,
        reserved_quantity=0,
        is_active=True,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {product.name} (ID: {product.id}, stock {product.quantity})")


@click.group('orders')
def orders_group():
    """Order sweeps."""


@orders_group.command('expire')
@with_appcontext
def expire_orders_cli():
    """Cancel unpaid orders whose payment window has closed."""
    summary = reconciliation_service.expire_unpaid_orders()
    click.echo(
        f"PASS Expired {len(summary['expired'])} order(s); "
        f"skipped {summary['skipped']}, errors {summary['errors']}"
    )


@click.group('reminders')
def reminders_group():
    """Pending-receipt reminders."""


@reminders_group.command('sweep')
@with_appcontext
def reminders_sweep_cli():
    """Send reminders to sellers whose cadence has elapsed."""
    summary = reminder_service.send_due_reminders()
    click.echo(
        f"PASS Reminded {len(summary['sent'])} seller(s); "
        f"throttled {summary['throttled']}, disabled {summary['disabled']}"
    )


@click.group('notifications')
def notifications_group():
    """Notification outbox commands."""


@notifications_group.command('retry')
@click.option('--limit', type=click.IntRange(min=1), default=50)
@with_appcontext
def retry_notifications_cli(limit):
    """Re-deliver queued and failed outbox emails."""
    summary = notification_service.retry_failed(limit)
    click.echo(f"PASS Sent {summary['sent']}, failed {summary['failed']}")


@click.group('anomalies')
def anomalies_group():
    """Reconciliation anomaly queue."""


@anomalies_group.command('list')
@click.option('--all', 'show_all', is_flag=True, help='Include resolved anomalies')
@click.option('--limit', type=click.IntRange(min=1), default=100)
@with_appcontext
def list_anomalies_cli(show_all, limit):
    """
    List anomalies flagged by the reconciliation engine.

    Example:
        flask anomalies list
        flask anomalies list --all
    """
    anomalies = list_anomalies(include_resolved=show_all, limit=limit)
    if not anomalies:
        click.echo("No anomalies found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Payment':<16} {'Kind':<20} {'Provider':<10} {'Resolved':<9} {'Detail'}")
    click.echo("="*100)
    for anomaly in anomalies:
        click.echo(
            f"{anomaly.id:<5} {anomaly.payment.reference:<16} {anomaly.kind:<20} "
            f"{anomaly.provider or '-':<10} {'yes' if anomaly.resolved else 'no':<9} {anomaly.detail}"
        )
    click.echo("="*100 + "\n")


@anomalies_group.command('resolve')
@click.argument('anomaly_id', type=int)
@click.option('--note', default=None, help='What was done about it')
@with_appcontext
def resolve_anomaly_cli(anomaly_id, note):
    """Mark an anomaly as dealt with."""
    try:
        anomaly = resolve_anomaly(anomaly_id, note)
    except (NotFoundError, ConflictError) as e:
        db.session.rollback()
        raise click.ClickException(str(e))

    click.echo(f"PASS Resolved anomaly {anomaly.id} on payment {anomaly.payment.reference}")
    if anomaly.payment.needs_review:
        click.echo("  Payment still has open anomalies.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sellers_group)
    app.cli.add_command(products_group)
    app.cli.add_command(orders_group)
    app.cli.add_command(reminders_group)
    app.cli.add_command(notifications_group)
    app.cli.add_command(anomalies_group)
