"""
Operator commands for the reconciliation core.
"""

import asyncio

import click

from checkout_portal.core.config import get_settings
from checkout_portal.core.logging import configure_logging
from checkout_portal.db.session import async_session_factory, engine, init_models
from checkout_portal.integrations.crm import ZohoCRMAdapter
from checkout_portal.models.user import UserRole
from checkout_portal.schemas.user import UserCreate
from checkout_portal.services.outbox_service import dispatch_pending_events
from checkout_portal.services.provisioning_service import sweep_stalled_checkouts
from checkout_portal.services.user_service import create_user, get_user_by_email


@click.group()
def cli():
    """Checkout portal operator CLI"""
    configure_logging(get_settings().log_level)


@cli.command()
def init_db():
    """Create all tables (development only; use alembic elsewhere)"""
    asyncio.run(_run(init_models()))
    click.echo("Tables created")


@cli.command()
@click.option("--limit", default=50, show_default=True, help="Maximum sessions to examine")
def sweep(limit: int):
    """Re-run provisioning for paid and signed sessions that never completed"""
    outcomes = asyncio.run(_run(_sweep(limit)))
    if not outcomes:
        click.echo("No stalled checkout sessions")
        return
    for item in outcomes:
        line = f"{item.checkout_session_id}: {item.outcome}"
        if item.status is not None:
            line += f" ({item.status.value})"
        if item.error:
            line += f" error={item.error}"
        click.echo(line)
    failed = sum(1 for item in outcomes if item.outcome == "failed")
    click.echo(f"Examined {len(outcomes)}, failed {failed}")


@cli.command()
@click.option("--limit", default=100, show_default=True)
def dispatch(limit: int):
    """Mark due customer notifications as dispatched"""
    dispatched = asyncio.run(_run(_dispatch(limit)))
    click.echo(f"Dispatched {dispatched} events")


@cli.command()
@click.option("--email", required=True)
@click.option("--full-name", required=True)
@click.password_option()
def create_operator(email: str, full_name: str, password: str):
    """Create a user with the operator role"""
    created = asyncio.run(_run(_create_operator(email, full_name, password)))
    click.echo(f"Created operator {email}" if created else f"User {email} already exists")


async def _run(coro):
    try:
        return await coro
    finally:
        await engine.dispose()


async def _sweep(limit: int):
    settings = get_settings()
    crm = ZohoCRMAdapter(
        base_url=settings.zoho_crm_base_url,
        access_token=settings.zoho_access_token,
        timeout_seconds=settings.provider_timeout_seconds,
    )
    try:
        async with async_session_factory() as session:
            return await sweep_stalled_checkouts(session, crm=crm, limit=limit)
    finally:
        await crm.close()


async def _dispatch(limit: int) -> int:
    async with async_session_factory() as session:
        dispatched = await dispatch_pending_events(session, limit=limit)
        await session.commit()
        return dispatched


async def _create_operator(email: str, full_name: str, password: str) -> bool:
    async with async_session_factory() as session:
        if await get_user_by_email(session, email):
            return False
        data = UserCreate(email=email, full_name=full_name, password=password)
        await create_user(session, data, roles=[UserRole.OPERATOR.value])
        await session.commit()
        return True


if __name__ == "__main__":
    cli()
