# Overview: Flask CLI commands for bootstrap and maintenance.

# backend/shopfront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask shop <command> [options]
#
# - python -m flask shop init-db
#   Create all tables (use "flask db upgrade" for migrated databases).
# - python -m flask shop seed-products
#   Insert a few demo products (skips existing titles).
# - python -m flask shop create-discount --code SAVE10 --type percentage --value 10
#   Create a discount code.
# - python -m flask shop issue-gift-card --amount 25.00 --recipient-email a@example.com
#   Issue an active promotional gift card.
# - python -m flask shop expire-gift-cards
#   Persist "expired" for cards past expires_at.
# - python -m flask shop generate-encryption-key
#   Print a fresh 64-hex-char ENCRYPTION_KEY.

import click
from flask import current_app
from flask.cli import with_appcontext

from .errors import ShopError
from .extensions import db
from .models import Product
from . import money
from .services import discount_service, gift_card_service
from .services.pii_codec import generate_key_hex


DEMO_PRODUCTS = [
    ("Infinity Cube", 899, 40),
    ("Pop It Rainbow", 499, 60),
    ("Spinner Ring", 1299, 25),
    ("Squishy Stress Ball", 350, 80),
]


@click.group('shop')
def shop_group():
    """Shopfront bootstrap and maintenance commands."""


@shop_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Tables created.")


@shop_group.command('seed-products')
@with_appcontext
def seed_products():
    created = 0
    for title, price_minor, stock in DEMO_PRODUCTS:
        if db.session.query(Product).filter_by(title=title).first():
            click.echo(f"WARN  Product '{title}' already exists, skipping...")
            continue
        db.session.add(Product(title=title, price_minor=price_minor, stock=stock, is_active=True))
        created += 1
    db.session.commit()
    click.echo(f"PASS Created {created} products")


@shop_group.command('create-discount')
@click.option('--code', required=True)
@click.option('--name', default=None, help='Defaults to the code')
@click.option('--type', 'discount_type', required=True, type=click.Choice(['percentage', 'fixed', 'free_delivery']))
@click.option('--value', default=None, help='Percent, or pounds for fixed')
@click.option('--min-order', default=None, help='Minimum order in pounds')
@click.option('--max-uses', default=None, type=int)
@click.option('--max-uses-per-customer', default=None, type=int)
@click.option('--expires-at', default=None, help='ISO-8601')
@with_appcontext
def create_discount(code, name, discount_type, value, min_order, max_uses, max_uses_per_customer, expires_at):
    try:
        discount = discount_service.create_discount({
            "code": code,
            "name": name or code,
            "discount_type": discount_type,
            "discount_value": value if value is not None else (0 if discount_type == "free_delivery" else None),
            "min_order_amount": min_order,
            "max_uses": max_uses,
            "max_uses_per_customer": max_uses_per_customer,
            "expires_at": expires_at,
        })
    except ShopError as e:
        db.session.rollback()
        raise click.ClickException(e.message)
    click.echo(f"PASS Created discount {discount.code} (ID: {discount.id})")


@shop_group.command('issue-gift-card')
@click.option('--amount', required=True, help='Pounds, e.g. 25.00')
@click.option('--recipient-email', default=None)
@click.option('--recipient-name', default=None)
@click.option('--notes', default=None)
@with_appcontext
def issue_gift_card(amount, recipient_email, recipient_name, notes):
    try:
        amount_minor = money.parse_major(amount, "amount")
    except ValueError as e:
        raise click.ClickException(str(e))
    try:
        card = gift_card_service.issue_promotional(
            amount_minor=amount_minor,
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            notes=notes,
            brand_name=current_app.config["BRAND_NAME"],
        )
    except ShopError as e:
        db.session.rollback()
        raise click.ClickException(e.message)
    click.echo(f"PASS Issued {card.code} for {money.format_major(card.initial_balance_minor)}")


@shop_group.command('expire-gift-cards')
@with_appcontext
def expire_gift_cards():
    count = gift_card_service.expire_overdue()
    click.echo(f"PASS Marked {count} gift card(s) expired")


@shop_group.command('generate-encryption-key')
def generate_encryption_key():
    click.echo(generate_key_hex())


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(shop_group)
