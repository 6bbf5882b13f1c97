"""Operator commands: schema bootstrap, queue draining and the hold reaper."""

import asyncio
import logging
from typing import Any, Optional

import click

from .config import get_settings
from .database import async_session, create_schema
from .infrastructure.queue import build_event_queue
from .infrastructure.redis import close_async_redis_client
from .infrastructure.repositories import sqlalchemy_unit_of_work
from .main import configure_logging
from .usecases import expiry as expiry_usecase
from .usecases import webhooks as webhook_usecase
from .usecases import worker as worker_usecase
from .utils.time import utc_now_naive

logger = logging.getLogger(__name__)


async def _drain_once(batch_size: int) -> int:
    queue = build_event_queue(get_settings())
    if queue is None:
        raise click.ClickException("REDIS_URL is not configured; there is no queue to drain")
    unit_of_work = sqlalchemy_unit_of_work(async_session)

    async def handle(event: dict[str, Any]) -> None:
        await webhook_usecase.process_payment_event(event, unit_of_work)

    return await worker_usecase.drain_queue(queue, handle, max_items=batch_size)


async def _sweep_once(limit: int) -> int:
    unit_of_work = sqlalchemy_unit_of_work(async_session)
    async with unit_of_work() as repos:
        return await expiry_usecase.sweep_expired_holds(
            repos.slots,
            repos.reservations,
            repos.events,
            now=utc_now_naive(),
            limit=limit,
        )


async def _run_forever(batch_size: int, limit: int, interval: float, drain: bool) -> None:
    try:
        while True:
            released = await _sweep_once(limit)
            processed = await _drain_once(batch_size) if drain else 0
            logger.debug("worker tick", extra={"released": released, "processed": processed})
            await asyncio.sleep(interval)
    finally:
        await close_async_redis_client()


@click.group()
def cli() -> None:
    """Slot reservation worker."""
    configure_logging(get_settings().log_level)


@cli.command("init-db")
def init_db() -> None:
    """Create missing tables."""
    asyncio.run(create_schema())
    click.echo("schema ready")


@cli.command("drain")
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Max events to apply.")
def drain(batch_size: Optional[int]) -> None:
    """Apply queued webhook events once."""
    settings = get_settings()
    size = min(batch_size or settings.worker_batch_size, settings.worker_max_batch_size)

    async def _main() -> int:
        try:
            return await _drain_once(size)
        finally:
            await close_async_redis_client()

    processed = asyncio.run(_main())
    click.echo(f"processed {processed}")


@cli.command("sweep")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max holds to expire.")
def sweep(limit: Optional[int]) -> None:
    """Expire holds past their deadline and release their slots."""
    released = asyncio.run(_sweep_once(limit or get_settings().worker_max_batch_size))
    click.echo(f"released {released}")


@cli.command("run")
@click.option("--interval", type=float, default=None, help="Seconds between passes.")
def run(interval: Optional[float]) -> None:
    """Sweep holds and drain the queue in a loop."""
    settings = get_settings()
    drain_enabled = settings.redis_url is not None
    if not drain_enabled:
        click.echo("REDIS_URL not set; only sweeping holds")
    try:
        asyncio.run(
            _run_forever(
                settings.worker_batch_size,
                settings.worker_max_batch_size,
                interval or settings.worker_poll_seconds,
                drain_enabled,
            )
        )
    except KeyboardInterrupt:
        click.echo("stopped")


if __name__ == "__main__":
    cli()
