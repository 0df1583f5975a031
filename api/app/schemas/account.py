import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class BankAccountResponse(BaseModel):
    id: str
    owner_id: uuid.UUID
    name: str
    official_name: str | None
    masked_number: str | None
    type: str
    subtype: str | None
    balance: Decimal | None
    provider: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BankTransactionResponse(BaseModel):
    id: str
    account_id: str
    posted_date: datetime
    description: str
    amount: Decimal
    currency: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ConnectUrlResponse(BaseModel):
    connect_url: str


class SyncResponse(BaseModel):
    status: str
    accounts: int
    accounts_deleted: int
    transactions: int
