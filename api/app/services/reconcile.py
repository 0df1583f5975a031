"""Full Finicity reconciliation pass for one local user.

Remote accounts are the anchor: if they cannot be listed nothing is touched.
Otherwise stale accounts are deleted, the rest upserted, and every account's
transaction history ingested, all inside one ``WriteBatch`` committed once,
so an observer never sees a half-applied pass.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import WriteBatch
from app.core.exceptions import NotFoundError, ProviderRequestError
from app.models.account import BankAccount
from app.models.user import User
from app.services.customers import provision_customer
from app.services.finicity_auth import TokenCache
from app.services.finicity_client import FinicityAccount, FinicityClient
from app.services.locks import owner_lock
from app.services.transactions import ingest_transactions

logger = logging.getLogger(__name__)

PROVIDER = "finicity"


@dataclass
class ReconcileResult:
    status: str  # ok | skipped
    accounts: int = 0
    accounts_deleted: int = 0
    transactions: int = 0


def _account_values(owner_id: uuid.UUID, acct: FinicityAccount, now: datetime) -> dict:
    return {
        "owner_id": owner_id,
        "name": acct.name,
        "official_name": acct.official_name,
        "masked_number": acct.number,
        "type": acct.type,
        "subtype": acct.detail.type if acct.detail else None,
        "balance": acct.balance,
        "provider": PROVIDER,
        "updated_at": now,
    }


async def reconcile_all(
    owner_id: uuid.UUID,
    db: AsyncSession,
    client: FinicityClient,
    token_cache: TokenCache,
    *,
    now: datetime | None = None,
) -> ReconcileResult:
    async with owner_lock(owner_id):
        return await _reconcile(
            owner_id, db, client, token_cache, now or datetime.now(timezone.utc)
        )


async def _reconcile(
    owner_id: uuid.UUID,
    db: AsyncSession,
    client: FinicityClient,
    token_cache: TokenCache,
    now: datetime,
) -> ReconcileResult:
    user = await db.get(User, owner_id, populate_existing=True)
    if user is None:
        raise NotFoundError(f"User {owner_id} not found")

    token = await token_cache.get_token(client)
    customer_id = user.finicity_customer_id or await provision_customer(
        owner_id, token, db, client
    )

    # ── 1. Remote accounts ───────────────────────────────────────────
    try:
        remote_accounts = await client.list_accounts(token, customer_id)
    except ProviderRequestError as exc:
        logger.error(
            "Account listing failed for customer %s; skipping sync pass: %s", customer_id, exc
        )
        return ReconcileResult(status="skipped")

    remote_ids = {a.id for a in remote_accounts}
    local_result = await db.execute(
        select(BankAccount.id).where(BankAccount.owner_id == owner_id)
    )
    local_ids = set(local_result.scalars().all())
    stale_ids = local_ids - remote_ids

    # ── 2. Diff into a single batch ──────────────────────────────────
    batch = WriteBatch(db)
    for account_id in sorted(stale_ids):
        batch.delete(BankAccount, account_id)
    for acct in remote_accounts:
        batch.set(
            BankAccount,
            acct.id,
            _account_values(owner_id, acct, now),
            on_create={"created_at": now},
        )

    # ── 3. Transactions for every remote account, same batch ─────────
    txn_count = 0
    for acct in remote_accounts:
        txn_count += await ingest_transactions(
            owner_id, customer_id, token, batch, client, account_id=acct.id, now=now
        )

    await batch.commit()
    logger.info(
        "Finicity sync for user %s: %d accounts, %d deleted, %d transactions",
        owner_id, len(remote_accounts), len(stale_ids), txn_count,
    )
    return ReconcileResult(
        status="ok",
        accounts=len(remote_accounts),
        accounts_deleted=len(stale_ids),
        transactions=txn_count,
    )
