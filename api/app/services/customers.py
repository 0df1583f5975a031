import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import NotFoundError
from app.models.user import User
from app.services.finicity_client import FinicityClient
from app.services.locks import owner_lock

logger = logging.getLogger(__name__)


async def get_or_create_customer(
    user_id: uuid.UUID,
    token: str,
    db: AsyncSession,
    client: FinicityClient,
) -> str:
    """Return the Finicity customer id for a user, creating it on first use.

    The id stored on the user row is the only idempotency check; Finicity is
    never searched for an existing customer. Overlapping callers for the same
    user are serialized so at most one customer is ever created.
    """
    async with owner_lock(user_id):
        return await provision_customer(user_id, token, db, client)


async def provision_customer(
    user_id: uuid.UUID,
    token: str,
    db: AsyncSession,
    client: FinicityClient,
) -> str:
    """Unlocked get-or-create; the caller must hold ``owner_lock(user_id)``."""
    # Re-read so a mapping committed by another session is seen
    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    if user.finicity_customer_id:
        logger.info("Found existing Finicity customer ID for user %s", user_id)
        return user.finicity_customer_id

    logger.info("Creating new Finicity customer for user %s", user_id)
    # Finicity requires a unique username
    username = user.email or f"verza-user-{user_id}"
    customer_id = await client.create_customer(
        token, username, customer_type=settings.finicity_customer_type
    )

    user.finicity_customer_id = customer_id
    await db.commit()
    logger.info("Saved new Finicity customer ID %s for user %s", customer_id, user_id)
    return customer_id
