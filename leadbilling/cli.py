import click
from flask.cli import with_appcontext

from leadbilling.billing import grace, ledger
from leadbilling.billing.tiers import Tier
from leadbilling.extensions import db
from leadbilling.models import Account


@click.group()
def billing():
    """Billing operations."""


@billing.command("sweep-grace")
@with_appcontext
def sweep_grace():
    """Downgrade every account whose payment grace period has expired."""
    downgraded = grace.sweep_expired()
    for account_id in downgraded:
        click.echo(f"Downgraded account_id={account_id} to free")
    click.echo(f"Grace sweep complete: {len(downgraded)} downgraded")


@billing.command("failed-events")
@click.option("--limit", type=int, default=50, show_default=True)
@with_appcontext
def failed_events(limit):
    rows = ledger.failed_events(limit=limit)
    if not rows:
        click.echo("No failed events")
        return
    for row in rows:
        click.echo(f"{row.created_at:%Y-%m-%d %H:%M:%S}  {row.event_id}  {row.type}  attempts={row.attempts}  {row.error_message or ''}")


@billing.command("create-account")
@click.option("--name", required=True)
@click.option("--email", default=None)
@click.option("--tier", type=click.Choice([t.value for t in Tier]), default=Tier.FREE.value, show_default=True)
@click.option("--customer-id", default=None, help="Existing Stripe customer id")
@with_appcontext
def create_account(name, email, tier, customer_id):
    if customer_id and db.session.query(Account).filter_by(stripe_customer_id=customer_id).count():
        raise click.ClickException("Customer already linked to an account")

    account = Account(name=name, billing_email=email, tier=tier, stripe_customer_id=customer_id)
    db.session.add(account)
    db.session.commit()
    click.echo(f"Account created id={account.id} name={account.name} tier={account.tier}")


def register_cli(app):
    app.cli.add_command(billing)
