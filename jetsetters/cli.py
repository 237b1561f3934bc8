"""
Jetsetters operator CLI
Manual reconciliation, payment polling, quote expiry and pricing inspection
"""

import asyncio
import click
from dotenv import load_dotenv

from .database import init_db, close_db, async_session_factory
from .errors import JetsettersError
from .redis_service import redis_service
from .integrations.arc_pay import get_gateway
from .integrations.email import get_notifier
from .services.pricing import PricingService, compute_total, policy_to_dict, to_decimal
from .services.payments import payment_to_dict
from .services.reconciliation import ReconciliationService
from .jobs.payment_poller import PaymentPoller
from .jobs.quote_expiry import check_quote_expiration

# Load environment variables
load_dotenv()


def _run(coro):
    async def wrapper():
        await init_db()
        try:
            return await coro
        finally:
            await redis_service.disconnect()
            await close_db()

    try:
        return asyncio.run(wrapper())
    except JetsettersError as e:
        raise click.ClickException(f"{type(e).__name__}: {e.message}")


@click.group()
def cli():
    """Jetsetters payments operator tool"""
    pass


@cli.command()
@click.option('--payment-id', help='Payment to reconcile')
@click.option('--order-id', help='Gateway order id to reconcile')
def reconcile(payment_id, order_id):
    """Bring one payment in line with ARC Pay"""
    if not payment_id and not order_id:
        raise click.UsageError("Give --payment-id or --order-id")

    async def run_reconcile():
        async with async_session_factory() as session:
            service = ReconciliationService(session, get_gateway(), redis_service, notifier=get_notifier())
            payment = await service.reconcile(payment_id=payment_id, order_id=order_id)
            data = payment_to_dict(payment)
            click.echo(f"🔄 Payment {data['id']} (order {data['order_id']}): {data['payment_status']}")
            click.echo(f"   Amount: {data['currency']} {data['amount']}  Refunded: {data['refunded_amount']}")

    _run(run_reconcile())


@cli.command()
@click.option('--limit', type=int, default=None, help='Maximum number of payments to check')
def poll(limit):
    """Reconcile every pending payment once"""
    async def run_poll():
        poller = PaymentPoller(get_gateway(), redis_service, notifier=get_notifier())
        summary = await poller.run_once(limit=limit)
        click.echo(
            f"Checked {summary['checked']}: {summary['completed']} completed, "
            f"{summary['failed']} failed, {summary['pending']} pending, {summary['errors']} errors"
        )

    _run(run_poll())


@cli.command('expire-quotes')
def expire_quotes():
    """Expire overdue quotes and send expiry warnings"""
    async def run_expiry():
        result = await check_quote_expiration(notifier=get_notifier())
        click.echo(f"⏳ Expired: {', '.join(result['expired']) or 'none'}")
        click.echo(f"   Expiring soon: {', '.join(result['expiring_soon']) or 'none'}")

    _run(run_expiry())


@cli.command()
@click.option('--service-type', help='Show one policy only')
@click.option('--base-amount', type=str, help='Preview the total for this base amount')
def pricing(service_type, base_amount):
    """Show pricing policies, optionally previewing a total"""
    async def run_pricing():
        async with async_session_factory() as session:
            service = PricingService(session)
            await service.seed_defaults()
            if service_type:
                policies = [await service.get_policy(service_type)]
            else:
                policies = await service.list_policies()

            for policy in policies:
                data = policy_to_dict(policy)
                line = (
                    f"{data['service_type']:<8} v{data['version']}  fixed {data['fixed_fee']}  "
                    f"{data['fee_percentage']}%"
                )
                if data['port_charge']:
                    line += f"  port {data['port_charge']}"
                if data['markup_percentage']:
                    line += f"  markup {data['markup_percentage']}%"
                click.echo(line)
                if base_amount:
                    figures = compute_total(policy.service_type, to_decimal(base_amount, "base_amount"), policy)
                    click.echo(f"         {base_amount} -> {figures['total']}")

    _run(run_pricing())


if __name__ == '__main__':
    cli()
