"""Scheduled Finicity resync: a safety net for missed or failed webhooks."""

import asyncio
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.core.exceptions import ConfigurationError
from app.models.user import User
from app.services.finicity_auth import TokenCache
from app.services.finicity_client import FinicityClient
from app.services.reconcile import reconcile_all
from app.worker import celery_app

logger = logging.getLogger(__name__)


async def resync_all_customers(
    session_factory: async_sessionmaker[AsyncSession],
    client: FinicityClient,
    token_cache: TokenCache,
) -> dict:
    """Reconcile every connected user in turn; one failure does not stop the rest."""
    async with session_factory() as db:
        result = await db.execute(
            select(User.id).where(User.finicity_customer_id.is_not(None))
        )
        owner_ids: list[uuid.UUID] = list(result.scalars().all())

    stats = {"owners": len(owner_ids), "succeeded": 0, "skipped": 0, "failed": 0}
    for owner_id in owner_ids:
        async with session_factory() as db:
            try:
                outcome = await reconcile_all(owner_id, db, client, token_cache)
            except ConfigurationError:
                raise
            except Exception:
                logger.exception("Scheduled Finicity sync failed for user %s", owner_id)
                stats["failed"] += 1
                continue
        stats["succeeded" if outcome.status == "ok" else "skipped"] += 1

    logger.info("Scheduled Finicity sync finished: %s", stats)
    return stats


async def _run_scheduled_resync() -> dict:
    # Celery runs each task in a fresh event loop, so the engine is per-run
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    try:
        return await resync_all_customers(
            async_sessionmaker(engine, expire_on_commit=False),
            FinicityClient.from_settings(),
            TokenCache.from_settings(),
        )
    finally:
        await engine.dispose()


@celery_app.task(name="app.services.sync.sync_all_customers")
def sync_all_customers():
    """Iterate all users with a Finicity customer and resync each."""
    logger.info("Starting scheduled Finicity resync for all customers")
    return asyncio.run(_run_scheduled_resync())
