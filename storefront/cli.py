# storefront/cli.py
from datetime import timedelta
from decimal import Decimal

import click
from flask import current_app
from werkzeug.security import generate_password_hash

from .extensions import db
from .model import TokenPackage, User
from .model.types import as_uuid
from .services import design_service, token_ledger

DEFAULT_PACKAGES = [
    # name, tokens, price (INR), description
    ("Starter", 10, Decimal("99.00"), "Try the AI designer"),
    ("Growth", 50, Decimal("399.00"), "Regular design updates"),
    ("Pro", 150, Decimal("999.00"), "Frequent redesigns and experiments"),
]


@click.command("create-admin")
@click.option("--email", required=True)
@click.option("--password", required=True)
@click.option("--name", required=True)
def create_admin(email, password, name):
    email = email.strip().lower()
    if User.query.filter_by(email=email).first():
        click.echo("Email already exists"); return
    u = User(email=email, name=name, password_hash=generate_password_hash(password), role="admin")
    db.session.add(u); db.session.commit()
    click.echo(f"Admin created: {u.id} {u.email}")


@click.command("seed-token-packages")
def seed_token_packages():
    created = 0
    for order, (name, tokens, price, description) in enumerate(DEFAULT_PACKAGES):
        if TokenPackage.query.filter_by(name=name).first():
            continue
        db.session.add(TokenPackage(
            name=name, tokens_included=tokens, price=price, currency="INR",
            description=description, display_order=order, is_active=True,
        ))
        created += 1
    db.session.commit()
    click.echo(f"Token packages created: {created}")


@click.command("grant-tokens")
@click.option("--store-id", required=True)
@click.option("--tokens", required=True, type=int)
def grant_tokens(store_id, tokens):
    store_uuid = as_uuid(store_id)
    if not store_uuid:
        click.echo("Invalid store id"); return
    purchase = token_ledger.grant_tokens(
        store_uuid, tokens, expiry_days=current_app.config.get("TOKEN_EXPIRY_DAYS", 365))
    click.echo(f"Granted {tokens} tokens to store {store_id} (purchase {purchase.id})")


@click.command("sweep-tokens")
def sweep_tokens():
    ttl = timedelta(hours=current_app.config.get("PENDING_PURCHASE_TTL_HOURS", 24))
    totals = token_ledger.sweep_all(pending_ttl=ttl)
    click.echo(
        f"Swept {totals['stores']} stores: expired={totals['expired']} "
        f"deleted={totals['deleted']} abandoned_pending={totals['abandoned_pending']}"
    )


@click.command("purge-design-history")
@click.option("--days", type=int, default=None, help="Retention window in days")
def purge_design_history(days):
    days = days if days is not None else current_app.config.get("DESIGN_HISTORY_RETENTION_DAYS", 30)
    deleted = design_service.purge_history(older_than_days=days)
    click.echo(f"Deleted {deleted} design history rows older than {days} days")


def register_cli(app):
    app.cli.add_command(create_admin)
    app.cli.add_command(seed_token_packages)
    app.cli.add_command(grant_tokens)
    app.cli.add_command(sweep_tokens)
    app.cli.add_command(purge_design_history)
