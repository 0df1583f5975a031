"""Async HTTP client for the Finicity open-banking aggregator.

Every call sends the partner app key; all calls except authentication also
carry the short-lived app token obtained from ``TokenCache``. Non-2xx
responses and transport failures surface as ``ProviderRequestError``.
"""

import logging
from decimal import Decimal
from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from app.core.config import settings
from app.core.exceptions import ConfigurationError, ProviderRequestError

logger = logging.getLogger(__name__)


# ─── Response models ───────────────────────────────────────────────────────────

class FinicityModel(BaseModel):
    # Finicity sends numeric ids on some endpoints and strings on others
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True, extra="ignore")


class AccountDetail(FinicityModel):
    type: str | None = None


class FinicityAccount(FinicityModel):
    id: str
    name: str = ""
    official_name: str | None = Field(default=None, alias="officialName")
    number: str | None = Field(
        default=None, validation_alias=AliasChoices("number", "accountNumberDisplay")
    )
    type: str = "unknown"
    detail: AccountDetail | None = None
    balance: Decimal | None = None


class FinicityTransaction(FinicityModel):
    id: str
    account_id: str | None = Field(default=None, alias="accountId")
    posted_date: int = Field(alias="postedDate")  # epoch seconds
    description: str = ""
    amount: Decimal
    currency_symbol: str | None = Field(default=None, alias="currencySymbol")


class TransactionPage(FinicityModel):
    transactions: list[FinicityTransaction] = Field(default_factory=list)
    # records on the page before malformed ones were dropped; drives paging
    received: int = 0
    displaying: int = 0
    more_available: bool = Field(default=False, alias="moreAvailable")


# ─── Client ────────────────────────────────────────────────────────────────────

class FinicityClient:
    def __init__(
        self,
        partner_id: str,
        partner_secret: str,
        app_key: str,
        base_url: str = "https://api.finicity.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.partner_id = partner_id
        self._partner_secret = partner_secret
        self._app_key = app_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, transport: httpx.AsyncBaseTransport | None = None) -> "FinicityClient":
        return cls(
            partner_id=settings.finicity_partner_id,
            partner_secret=settings.finicity_partner_secret,
            app_key=settings.finicity_app_key,
            base_url=settings.finicity_api_base_url,
            timeout=settings.finicity_timeout_seconds,
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.partner_id and self._partner_secret and self._app_key)

    def require_configured(self) -> None:
        if not self.configured:
            logger.error("Finicity credentials are not configured in environment variables.")
            raise ConfigurationError("The Finicity integration is not configured.")

    def _headers(self, token: str | None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Finicity-App-Key": self._app_key,
        }
        if token:
            headers["Finicity-App-Token"] = token
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.request(
                    method, path, headers=self._headers(token), json=json, params=params
                )
        except httpx.HTTPError as exc:
            logger.error("Finicity %s %s failed: %s", method, path, exc)
            raise ProviderRequestError(f"{method} {path} failed: {exc}") from exc

        if resp.is_error:
            logger.error(
                "Finicity %s %s returned %d: %s", method, path, resp.status_code, resp.text[:500]
            )
            raise ProviderRequestError(
                f"{method} {path} returned {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderRequestError(f"{method} {path} returned invalid JSON") from exc

    # ─── Endpoints ──────────────────────────────────────────────────────────

    async def authenticate(self) -> str:
        self.require_configured()
        data = await self._request(
            "POST",
            "/aggregation/v2/partners/authentication",
            json={"partnerId": self.partner_id, "partnerSecret": self._partner_secret},
        )
        token = data.get("token")
        if not token:
            raise ProviderRequestError("Authentication response did not include a token")
        return token

    async def create_customer(self, token: str, username: str, customer_type: str = "testing") -> str:
        data = await self._request(
            "POST",
            f"/aggregation/v2/customers/{customer_type}",
            token=token,
            json={"username": username},
        )
        if data.get("id") is None:
            raise ProviderRequestError("Customer creation response did not include an id")
        return str(data["id"])

    async def list_accounts(self, token: str, customer_id: str) -> list[FinicityAccount]:
        data = await self._request(
            "GET", f"/aggregation/v1/customers/{customer_id}/accounts", token=token
        )
        try:
            return [FinicityAccount.model_validate(a) for a in data.get("accounts") or []]
        except ValidationError as exc:
            raise ProviderRequestError(f"Unexpected account listing payload: {exc}") from exc

    async def list_transactions(
        self,
        token: str,
        customer_id: str,
        from_date: int,
        to_date: int,
        start: int = 1,
        limit: int = 1000,
        account_id: str | None = None,
    ) -> TransactionPage:
        if account_id:
            path = f"/aggregation/v4/customers/{customer_id}/accounts/{account_id}/transactions"
        else:
            path = f"/aggregation/v3/customers/{customer_id}/transactions"
        data = await self._request(
            "GET",
            path,
            token=token,
            params={"fromDate": from_date, "toDate": to_date, "start": start, "limit": limit},
        )
        raw = data.get("transactions") or []
        if not isinstance(raw, list):
            raise ProviderRequestError("Unexpected transaction listing payload: transactions is not a list")
        try:
            page = TransactionPage.model_validate({**data, "transactions": [], "received": len(raw)})
        except ValidationError as exc:
            raise ProviderRequestError(f"Unexpected transaction listing payload: {exc}") from exc

        for item in raw:
            try:
                page.transactions.append(FinicityTransaction.model_validate(item))
            except ValidationError as exc:
                txn_id = item.get("id") if isinstance(item, dict) else None
                logger.warning("Skipping malformed Finicity transaction %s: %s", txn_id, exc)
        return page

    async def generate_connect_url(
        self, token: str, customer_id: str, redirect_uri: str, webhook_url: str
    ) -> str:
        data = await self._request(
            "POST",
            "/connect/v2/generate",
            token=token,
            json={
                "partnerId": self.partner_id,
                "customerId": customer_id,
                "redirectUri": redirect_uri,
                "webhook": webhook_url,
                "webhookContentType": "application/json",
            },
        )
        link = data.get("link")
        if not link:
            raise ProviderRequestError("Connect response did not include a link")
        return link
