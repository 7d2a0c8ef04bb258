from dataclasses import dataclass, field
from decimal import Decimal
from enum import StrEnum
from functools import lru_cache
from typing import Any
from urllib.parse import unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from loguru import logger

from app import settings
from app.crud import SettlementCRUD, settlement_crud
from app.errors import GatewayError, GatewayTimeout
from app.locks import ChargeLock
from app.money import from_cents, to_cents
from app.scopes import SettlementScope


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return SettlementScope.ADMIN in self.scopes


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by Traefik after forwardAuth validation.
    The JWT has already been verified — we just trust these headers.
    NOTE: This only works behind Traefik. Run with that assumption.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("ledger:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


def require_any_scope(*accepted: str):
    """Passes when the caller holds at least one of `accepted`."""

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        if not any(s in current_user.scopes for s in accepted):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of: {', '.join(accepted)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_cancel_booking = require_any_scope(SettlementScope.CANCEL, SettlementScope.ADMIN)
can_write_charges = require_any_scope(SettlementScope.CHARGES_WRITE, SettlementScope.ADMIN)
can_dispute_charges = require_scopes(SettlementScope.DISPUTE)
can_read_ledger = require_scopes(SettlementScope.LEDGER_READ)
can_read_settlements = require_any_scope(SettlementScope.ADMIN_READ, SettlementScope.ADMIN)
can_process_settlements = require_any_scope(
    SettlementScope.ADMIN_PROCESS, SettlementScope.ADMIN
)
can_clear_charges = require_any_scope(SettlementScope.ADMIN_CLEAR, SettlementScope.ADMIN)
can_grant_balances = require_scopes(SettlementScope.ADMIN)


# ---------------------------------------------------------------------------
# PaymentsClient: the payment gateway, reached through payments-ms
# ---------------------------------------------------------------------------


class IntentStatus(StrEnum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"


@dataclass(frozen=True)
class IntentState:
    """Authoritative snapshot of a payment intent. Amounts in dollars."""

    id: str
    status: IntentStatus
    amount: Decimal
    amount_captured: Decimal
    amount_refunded: Decimal

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "IntentState":
        return cls(
            id=payload["id"],
            status=IntentStatus(payload["status"]),
            amount=from_cents(payload.get("amount")),
            amount_captured=from_cents(payload.get("amount_captured")),
            amount_refunded=from_cents(payload.get("amount_refunded")),
        )


@lru_cache(maxsize=1)
def _get_payments_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.payments_ms_url,
        timeout=httpx.Timeout(settings.GATEWAY_TIMEOUT_SECONDS),
        follow_redirects=True,
    )


class PaymentsClient:
    """
    Thin async wrapper around the payments-ms intent API.
    Amounts cross this boundary as integer cents.

    Unlike the notification sinks, errors here are never swallowed: a timeout
    raises GatewayTimeout (outcome unknown) and every other failure raises
    GatewayError, so the caller can leave a durable obligation behind.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_payments_http_client()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        try:
            resp = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise GatewayTimeout(f"payments-ms timed out on {method} {path}") from exc
        except httpx.RequestError as exc:
            raise GatewayError(f"payments-ms unreachable on {method} {path}: {exc}") from exc

        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail", resp.text)
            except ValueError:
                detail = resp.text
            logger.warning(
                "payments-ms {} {} returned {}: {}", method, path, resp.status_code, detail
            )
            raise GatewayError(f"payments-ms returned {resp.status_code}: {detail}")
        return resp.json() if resp.content else {}

    async def authorize(
        self,
        customer_ref: str,
        method_ref: str,
        amount: Decimal,
        metadata: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> IntentState:
        """Off-session authorization with manual capture."""
        payload = await self._request(
            "POST",
            "/intents",
            json={
                "customer": customer_ref,
                "payment_method": method_ref,
                "amount": to_cents(amount),
                "currency": "usd",
                "capture_method": "manual",
                "off_session": True,
                "metadata": {k: str(v) for k, v in metadata.items()},
            },
            idempotency_key=idempotency_key,
        )
        return IntentState.from_payload(payload)

    async def retrieve_status(self, intent_id: str) -> IntentState:
        payload = await self._request("GET", f"/intents/{intent_id}")
        return IntentState.from_payload(payload)

    async def capture(
        self,
        intent_id: str,
        amount: Decimal | None = None,
        idempotency_key: str | None = None,
    ) -> IntentState:
        body = {"amount_to_capture": to_cents(amount)} if amount is not None else {}
        payload = await self._request(
            "POST", f"/intents/{intent_id}/capture", json=body, idempotency_key=idempotency_key
        )
        return IntentState.from_payload(payload)

    async def cancel(self, intent_id: str, reason: str = "requested_by_customer") -> IntentState:
        payload = await self._request(
            "POST", f"/intents/{intent_id}/cancel", json={"cancellation_reason": reason}
        )
        return IntentState.from_payload(payload)

    async def refund(
        self,
        intent_id: str,
        amount: Decimal,
        metadata: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> str:
        """Returns the gateway refund id."""
        payload = await self._request(
            "POST",
            f"/intents/{intent_id}/refunds",
            json={
                "amount": to_cents(amount),
                "metadata": {k: str(v) for k, v in metadata.items()},
            },
            idempotency_key=idempotency_key,
        )
        return payload["id"]


_payments_client = PaymentsClient()


def get_payments_client() -> PaymentsClient:
    return _payments_client


# ---------------------------------------------------------------------------
# Store, config and locks
# ---------------------------------------------------------------------------


def get_store() -> SettlementCRUD:
    return settlement_crud


@lru_cache(maxsize=1)
def get_config() -> settings.SettlementConfig:
    return settings.SettlementConfig.from_env()


def get_charge_lock(
    config: settings.SettlementConfig = Depends(get_config),
) -> ChargeLock:
    return ChargeLock(ttl_seconds=config.lock_ttl_seconds)