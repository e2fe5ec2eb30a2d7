import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx
from fastapi import Request

from backend.app.core.time import utcnow
from backend.app.services.errors import PaymentNotSatisfied, PaymentVerificationError

logger = logging.getLogger(__name__)

PAYMENT_HEADER = "X-PAYMENT"


@dataclass(frozen=True)
class PaymentRequirement:
    amount_sats: int
    pay_to: str
    network: str
    resource: str
    token_type: str
    token_contract: dict
    nonce: str
    expires_at: datetime

    def to_challenge(self) -> dict:
        return {
            "maxAmountRequired": str(self.amount_sats),
            "resource": self.resource,
            "payTo": self.pay_to,
            "network": self.network,
            "nonce": self.nonce,
            "expiresAt": self.expires_at.isoformat(),
            "tokenType": self.token_type,
            "tokenContract": self.token_contract,
        }


@dataclass(frozen=True)
class PaymentReceipt:
    txid: str
    payer: str | None
    amount_sats: int


class PaymentGate:
    """x402 gate: challenges unpaid requests and settles signed payments.

    Settlement is delegated to a facilitator service; the gate only checks that
    the settled transfer covers the requirement.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        facilitator_url: str,
        pay_to: str,
        network: str,
        token_type: str,
        token_contract: dict,
        challenge_ttl_seconds: int = 300,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client = client
        self._facilitator_url = facilitator_url.rstrip("/")
        self._pay_to = pay_to
        self._network = network
        self._token_type = token_type
        self._token_contract = token_contract
        self._challenge_ttl = timedelta(seconds=challenge_ttl_seconds)
        self._timeout = httpx.Timeout(timeout_seconds)

    def build_requirement(self, *, amount_sats: int, resource: str) -> PaymentRequirement:
        return PaymentRequirement(
            amount_sats=amount_sats,
            pay_to=self._pay_to,
            network=self._network,
            resource=resource,
            token_type=self._token_type,
            token_contract=self._token_contract,
            nonce=secrets.token_hex(16),
            expires_at=utcnow() + self._challenge_ttl,
        )

    async def settle(self, request: Request, requirement: PaymentRequirement) -> PaymentReceipt:
        payment = request.headers.get(PAYMENT_HEADER)
        if not payment:
            raise PaymentNotSatisfied("Payment required", requirement.to_challenge())

        try:
            response = await self._client.post(
                f"{self._facilitator_url}/settle",
                json={"payment": payment, "paymentRequirements": requirement.to_challenge()},
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.error("Payment facilitator unreachable: %s", exc)
            raise PaymentVerificationError("Payment could not be verified") from exc

        if response.status_code >= 500:
            logger.error("Payment facilitator responded with %s", response.status_code)
            raise PaymentVerificationError("Payment could not be verified")

        try:
            data = response.json()
        except ValueError as exc:
            raise PaymentVerificationError("Payment could not be verified") from exc
        if not isinstance(data, dict):
            raise PaymentVerificationError("Payment could not be verified")

        if response.status_code != 200 or not data.get("success"):
            logger.info("Payment rejected: %s", data.get("error") or response.status_code)
            raise PaymentNotSatisfied(
                data.get("error") or "Payment was not settled", requirement.to_challenge()
            )

        try:
            amount = int(data.get("amount", 0))
        except (TypeError, ValueError):
            amount = 0
        pay_to = data.get("payTo", requirement.pay_to)
        if amount < requirement.amount_sats or pay_to != requirement.pay_to:
            logger.warning(
                "Settled payment %s does not cover requirement: %s sats to %s",
                data.get("txid"),
                amount,
                pay_to,
            )
            raise PaymentNotSatisfied("Payment amount insufficient", requirement.to_challenge())

        receipt = PaymentReceipt(
            txid=str(data.get("txid", "")), payer=data.get("payer"), amount_sats=amount
        )
        logger.info("Payment settled: %s (%s sats from %s)", receipt.txid, amount, receipt.payer)
        return receipt
