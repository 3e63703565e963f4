from __future__ import annotations

import enum
import logging
import uuid
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import BaseModel

from stakeapi.config import Settings
from stakeapi.core.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


class PayoutStatus(str, enum.Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"
    FAILED = "failed"


class PayoutResult(BaseModel):
    status: PayoutStatus
    external_id: Optional[str] = None
    message: Optional[str] = None


class PaymentGateway(ABC):
    """Money in and out of the platform.

    ``deposit`` returns the gateway's external id or raises
    ``PaymentGatewayError``. ``payout`` reports its outcome instead of raising,
    because the withdrawal is already on the ledger by the time it runs.
    """

    name: str = "gateway"

    @abstractmethod
    async def deposit(self, user_id: str, amount: Decimal, metadata: dict) -> str:
        ...

    @abstractmethod
    async def payout(self, user_id: str, amount: Decimal, destination: str) -> PayoutResult:
        ...


class ManualPaymentGateway(PaymentGateway):
    """Back-office flow: deposits are accepted immediately, payouts are queued
    for an operator who later marks them disbursed."""

    name = "manual"

    async def deposit(self, user_id: str, amount: Decimal, metadata: dict) -> str:
        external_id = f"manual-dep-{uuid.uuid4().hex[:16]}"
        logger.info(f"Manual deposit {external_id}: user={user_id} amount={amount}")
        return external_id

    async def payout(self, user_id: str, amount: Decimal, destination: str) -> PayoutResult:
        external_id = f"manual-out-{uuid.uuid4().hex[:16]}"
        logger.info(
            f"Manual payout queued {external_id}: user={user_id} amount={amount} destination={destination}"
        )
        return PayoutResult(
            status=PayoutStatus.PENDING,
            external_id=external_id,
            message="Queued for manual disbursement",
        )


class HttpPaymentGateway(PaymentGateway):
    name = "http"

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = settings.PAYMENT_GATEWAY_URL.rstrip("/")
        self._timeout = httpx.Timeout(settings.PAYMENT_TIMEOUT_SECONDS, connect=5.0)
        self._api_key = settings.PAYMENT_GATEWAY_API_KEY
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        async with httpx.AsyncClient(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        ) as client:
            return await client.post(path, json=payload, headers=self._headers())

    async def deposit(self, user_id: str, amount: Decimal, metadata: dict) -> str:
        payload = {"user_id": user_id, "amount": str(amount), "metadata": metadata}
        try:
            response = await self._post("/v1/deposits", payload)
        except httpx.HTTPError as exc:
            logger.error(f"Deposit request failed for user {user_id}: {exc}")
            raise PaymentGatewayError("Payment gateway is unreachable. Please retry.") from exc

        if response.status_code not in (200, 201):
            logger.error(f"Deposit rejected for user {user_id}: {response.status_code} {response.text}")
            raise PaymentGatewayError(
                "Payment gateway rejected the deposit",
                details={"upstream_status": response.status_code},
            )
        try:
            external_id = response.json()["id"]
        except (ValueError, KeyError) as exc:
            raise PaymentGatewayError("Payment gateway returned an invalid response") from exc
        return str(external_id)

    async def payout(self, user_id: str, amount: Decimal, destination: str) -> PayoutResult:
        payload = {"user_id": user_id, "amount": str(amount), "destination": destination}
        try:
            response = await self._post("/v1/payouts", payload)
        except httpx.HTTPError as exc:
            logger.error(f"Payout request failed for user {user_id}: {exc}")
            return PayoutResult(status=PayoutStatus.FAILED, message=str(exc))

        if response.status_code not in (200, 201, 202):
            logger.error(f"Payout rejected for user {user_id}: {response.status_code} {response.text}")
            return PayoutResult(
                status=PayoutStatus.FAILED, message=f"upstream status {response.status_code}"
            )
        try:
            body = response.json()
            status = PayoutStatus(body.get("status", PayoutStatus.PENDING.value))
        except (ValueError, AttributeError):
            return PayoutResult(status=PayoutStatus.FAILED, message="invalid gateway response")
        return PayoutResult(status=status, external_id=body.get("id"), message=body.get("message"))

