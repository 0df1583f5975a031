"""Windowed, paginated transaction ingestion from Finicity.

Finicity rejects transaction queries spanning more than 180 days, so the
history is cut into windows and each window is paged through with
``start``/``limit``. A failed request abandons only its own window; the next
resync fetches it again and the id-keyed upserts make that harmless.
"""

import logging
import math
import uuid
from calendar import monthrange
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from app.core.config import settings
from app.core.database import WriteBatch
from app.core.exceptions import ProviderRequestError
from app.models.account import BankTransaction
from app.services.finicity_client import FinicityClient, FinicityTransaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncWindow:
    from_date: datetime
    to_date: datetime

    def epoch_range(self) -> tuple[int, int]:
        return int(self.from_date.timestamp()), int(self.to_date.timestamp())


def months_before(moment: datetime, months: int) -> datetime:
    """Same day-of-month ``months`` calendar months earlier, clamped to month end."""
    year, month0 = divmod(moment.year * 12 + moment.month - 1 - months, 12)
    month = month0 + 1
    day = min(moment.day, monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def build_windows(now: datetime, history_months: int, window_days: int) -> list[SyncWindow]:
    """Split ``history_months`` back from ``now`` into non-overlapping windows.

    Windows are at most ``window_days`` long and ordered newest first; the
    oldest one is clipped at the start of the history.
    """
    if window_days <= 0:
        raise ValueError("window_days must be positive")

    history_start = months_before(now, history_months)
    span = now - history_start
    count = max(1, math.ceil(span / timedelta(days=window_days)))

    windows: list[SyncWindow] = []
    to_date = now
    for _ in range(count):
        from_date = max(to_date - timedelta(days=window_days), history_start)
        windows.append(SyncWindow(from_date=from_date, to_date=to_date))
        if from_date <= history_start:
            break
        to_date = from_date - timedelta(seconds=1)
    return windows


def _transaction_values(
    owner_id: uuid.UUID, account_id: str, txn: FinicityTransaction
) -> dict:
    return {
        "owner_id": owner_id,
        "account_id": account_id,
        "posted_date": datetime.fromtimestamp(txn.posted_date, tz=timezone.utc),
        "description": txn.description,
        "amount": txn.amount,
        "currency": txn.currency_symbol or settings.finicity_default_currency,
    }


async def ingest_transactions(
    owner_id: uuid.UUID,
    customer_id: str,
    token: str,
    writer: WriteBatch,
    client: FinicityClient,
    *,
    account_id: str | None = None,
    now: datetime | None = None,
    history_months: int | None = None,
    window_days: int | None = None,
    page_limit: int | None = None,
) -> int:
    """Queue an upsert in ``writer`` for every transaction in the history.

    Returns the number of upserts queued. Never raises for provider failures.
    """
    now = now or datetime.now(timezone.utc)
    windows = build_windows(
        now,
        history_months if history_months is not None else settings.finicity_history_months,
        window_days or settings.finicity_window_days,
    )
    limit = page_limit or settings.finicity_page_limit

    queued = 0
    for window in windows:
        from_ts, to_ts = window.epoch_range()
        start = 1  # Finicity paging is 1-based
        while True:
            try:
                page = await client.list_transactions(
                    token,
                    customer_id,
                    from_ts,
                    to_ts,
                    start=start,
                    limit=limit,
                    account_id=account_id,
                )
            except ProviderRequestError as exc:
                logger.warning(
                    "Abandoning transaction window %s..%s for customer %s: %s",
                    window.from_date.date(), window.to_date.date(), customer_id, exc,
                )
                break

            for txn in page.transactions:
                txn_account_id = txn.account_id or account_id
                if not txn_account_id:
                    logger.warning("Skipping transaction %s with no account id", txn.id)
                    continue
                writer.set(
                    BankTransaction,
                    txn.id,
                    _transaction_values(owner_id, txn_account_id, txn),
                    on_create={"created_at": now},
                )
                queued += 1

            if not page.more_available or not page.received:
                break
            start += page.received

    return queued
