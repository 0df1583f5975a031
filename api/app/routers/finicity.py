"""Finicity bank connection router.

Finicity flow:
  1. The user asks for a Connect URL; a Finicity customer is created for them
     on first use and the id is stored on their user row.
  2. The user links their bank on Finicity's hosted Connect page.
  3. Finicity posts events to /finicity/webhook; every event carrying a
     customerId triggers a full reconciliation for that customer.
"""

import logging
import uuid
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.deps import get_current_user, get_finicity_client, get_token_cache
from app.core.exceptions import ConfigurationError, NotFoundError, ProviderRequestError
from app.models.user import User
from app.schemas.account import ConnectUrlResponse, SyncResponse
from app.services.customers import get_or_create_customer
from app.services.finicity_auth import TokenCache
from app.services.finicity_client import FinicityClient
from app.services.reconcile import reconcile_all

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.rate_limit_storage_uri)

router = APIRouter(prefix="/finicity", tags=["finicity"])


def _customer_id_from(payload: object) -> str | None:
    """Finicity sends customerId as a string or a number."""
    if not isinstance(payload, dict):
        return None
    value = payload.get("customerId")
    if value is None or isinstance(value, bool) or value == "":
        return None
    return str(value)


async def _owner_for_customer(db: AsyncSession, customer_id: str) -> uuid.UUID | None:
    result = await db.execute(
        select(User.id).where(User.finicity_customer_id == customer_id)
    )
    return result.scalars().first()


# ─── Endpoints ─────────────────────────────────────────────────────────────

@router.post("/connect-url", response_model=ConnectUrlResponse)
@limiter.limit("10/minute")
async def create_connect_url(
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: FinicityClient = Depends(get_finicity_client),
    cache: TokenCache = Depends(get_token_cache),
):
    if not settings.app_url:
        logger.error("APP_URL is not set; cannot build the Finicity redirect URI.")
        raise HTTPException(status_code=503, detail="The application's base URL is not configured")
    if not settings.finicity_webhook_url:
        logger.error("FINICITY_WEBHOOK_URL is not set.")
        raise HTTPException(status_code=503, detail="The Finicity webhook URL is not configured")

    try:
        token = await cache.get_token(client)
        customer_id = await get_or_create_customer(user.id, token, db, client)
        logger.info("Generating Finicity Connect URL for user %s", user.id)
        link = await client.generate_connect_url(
            token,
            customer_id,
            redirect_uri=f"{settings.app_url.rstrip('/')}/banking",
            webhook_url=settings.finicity_webhook_url,
        )
    except ConfigurationError:
        raise HTTPException(status_code=503, detail="Finicity is not configured")
    except ProviderRequestError:
        raise HTTPException(status_code=502, detail="Could not generate Finicity Connect URL")

    return ConnectUrlResponse(connect_url=link)


@router.post("/sync", response_model=SyncResponse)
async def sync_now(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    client: FinicityClient = Depends(get_finicity_client),
    cache: TokenCache = Depends(get_token_cache),
):
    if not user.finicity_customer_id:
        raise HTTPException(status_code=409, detail="No bank connection for this user")
    try:
        result = await reconcile_all(user.id, db, client, cache)
    except ConfigurationError:
        raise HTTPException(status_code=503, detail="Finicity is not configured")
    return SyncResponse(**asdict(result))


@router.post("/webhook", status_code=204)
async def finicity_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    client: FinicityClient = Depends(get_finicity_client),
    cache: TokenCache = Depends(get_token_cache),
):
    """Every event is treated as "something changed": resync the customer."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    customer_id = _customer_id_from(payload)
    event_type = payload.get("eventType") if isinstance(payload, dict) else None
    logger.info("Finicity webhook received (event=%s, customer=%s)", event_type, customer_id)
    if customer_id is None:
        return Response(status_code=204)

    try:
        owner_id = await _owner_for_customer(db, customer_id)
    except Exception:
        logger.exception("Finicity webhook owner lookup failed for customer %s", customer_id)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    if owner_id is None:
        logger.warning("Finicity webhook for unknown customer %s", customer_id)
        raise HTTPException(status_code=404, detail="No user for this customer")

    try:
        await reconcile_all(owner_id, db, client, cache)
    except NotFoundError:
        logger.warning("Finicity webhook owner %s vanished before sync", owner_id)
        raise HTTPException(status_code=404, detail="No user for this customer")
    except Exception:
        logger.exception("Finicity webhook sync failed for customer %s", customer_id)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return Response(status_code=204)
