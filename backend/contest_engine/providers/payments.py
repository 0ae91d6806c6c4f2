import logging

from contest_engine.config import settings
from contest_engine.errors import ExternalServiceError
from contest_engine.providers.base import PaymentGateway
from contest_engine.providers.http_client import ResilientClient, decode_json

logger = logging.getLogger("contest_engine.payments")


class HttpPaymentGateway(PaymentGateway):
    """REST client for the payment collaborator.

    Requests carry an idempotency key derived from (kind, contest, user) so a
    retried transfer is never executed twice by the gateway.
    """

    def __init__(self, base_url: str | None = None, **client_kwargs):
        headers = {"Authorization": f"Bearer {settings.PAYMENT_GATEWAY_API_KEY}"} if settings.PAYMENT_GATEWAY_API_KEY else None
        self._client = ResilientClient(
            "payments",
            base_url=base_url or settings.PAYMENT_GATEWAY_BASE_URL,
            headers=headers,
            **client_kwargs,
        )

    async def _transfer(self, path: str, kind: str, user_id: str, amount: float, contest_id: str) -> str:
        resp = await self._client.post(
            path,
            json={"user_id": user_id, "amount": round(amount, 2), "contest_id": contest_id},
            headers={"Idempotency-Key": f"{kind}:{contest_id}:{user_id}"},
        )
        if resp.status_code not in (200, 201, 202):
            raise ExternalServiceError(
                f"payment gateway returned HTTP {resp.status_code} for {kind} {contest_id}/{user_id}",
                provider="payments",
            )
        payment_ref = decode_json(resp, "payments").get("payment_ref")
        if not payment_ref:
            raise ExternalServiceError("payment gateway response without payment_ref", provider="payments")
        logger.info("Payment %s requested: contest=%s user=%s amount=%.2f ref=%s",
                    kind, contest_id, user_id, amount, payment_ref)
        return str(payment_ref)

    async def request_payout(self, user_id: str, amount: float, contest_id: str) -> str:
        return await self._transfer("/payouts", "payout", user_id, amount, contest_id)

    async def request_refund(self, user_id: str, amount: float, contest_id: str) -> str:
        return await self._transfer("/refunds", "refund", user_id, amount, contest_id)

    @property
    def circuit_open(self) -> bool:
        return self._client.circuit.is_open

    async def aclose(self) -> None:
        await self._client.aclose()


payment_gateway: PaymentGateway = HttpPaymentGateway()
