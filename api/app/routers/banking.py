from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.deps import get_current_user
from app.models.account import BankAccount, BankTransaction
from app.models.user import User
from app.schemas.account import BankAccountResponse, BankTransactionResponse

router = APIRouter(prefix="/banking", tags=["banking"])


@router.get("/accounts", response_model=list[BankAccountResponse])
async def list_accounts(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(BankAccount)
        .where(BankAccount.owner_id == user.id)
        .order_by(BankAccount.name)
    )
    return result.scalars().all()


@router.get("/transactions", response_model=list[BankTransactionResponse])
async def list_transactions(
    account_id: str | None = None,
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    query = select(BankTransaction).where(BankTransaction.owner_id == user.id)
    if account_id:
        query = query.where(BankTransaction.account_id == account_id)
    result = await db.execute(
        query.order_by(BankTransaction.posted_date.desc()).limit(limit).offset(offset)
    )
    return result.scalars().all()
