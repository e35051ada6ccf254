import asyncio
import stripe
from fastapi.concurrency import run_in_threadpool
from hypemarket.config import settings
from hypemarket.core.exceptions import BadRequestException, ExternalFailureException
from hypemarket.integrations.payment_gateway import GatewayEvent, PaymentGateway, PaymentIntentRef, SettlementKind
from hypemarket.utils.logger import logger
from typing import Any, Dict

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = settings.STRIPE_MAX_RETRIES

EVENT_KINDS = {
    "payment_intent.succeeded": SettlementKind.SUCCEEDED,
    "payment_intent.payment_failed": SettlementKind.FAILED,
    "charge.dispute.created": SettlementKind.REVERSED,
}


class StripeGateway(PaymentGateway):
    """Stripe adapter. SDK calls are blocking, so each one runs in the threadpool."""

    def __init__(self, max_attempts: int = 3, retry_delay: float = 1.0):
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay

    async def _call(self, operation: str, fn, *args, **kwargs):
        delay = self.retry_delay
        for attempt in range(self.max_attempts):
            try:
                return await run_in_threadpool(fn, *args, **kwargs)
            except stripe.APIConnectionError as e:
                # Safe to repeat: every mutating call carries an idempotency key
                if attempt < self.max_attempts - 1:
                    logger.warning(f"Stripe {operation} attempt {attempt + 1} failed: {e}. Retrying...")
                    await asyncio.sleep(delay)
                    delay *= 2
                    continue
                logger.error(f"Stripe {operation} failed after {self.max_attempts} attempts: {e}")
                raise ExternalFailureException("Stripe", str(e))
            except stripe.StripeError as e:
                logger.error(f"Failed to {operation}: {e}")
                raise ExternalFailureException("Stripe", e.user_message or str(e))

    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> PaymentIntentRef:
        intent = await self._call(
            "create payment intent",
            stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            metadata={key: str(value) for key, value in (metadata or {}).items()},
            idempotency_key=idempotency_key,
        )
        return PaymentIntentRef(ref=intent["id"], client_secret=intent.get("client_secret"))

    async def retrieve_intent(self, payment_ref: str) -> PaymentIntentRef:
        intent = await self._call("retrieve payment intent", stripe.PaymentIntent.retrieve, payment_ref)
        return PaymentIntentRef(ref=intent["id"], client_secret=intent.get("client_secret"))

    async def cancel_intent(self, payment_ref: str) -> None:
        await self._call("cancel payment intent", stripe.PaymentIntent.cancel, payment_ref)

    async def account_payout_capable(self, account_id: str) -> bool:
        account = await self._call("retrieve connected account", stripe.Account.retrieve, account_id)
        return bool(account.get("payouts_enabled"))

    async def transfer(self, account_id: str, amount: int, currency: str, idempotency_key: str) -> str:
        transfer = await self._call(
            "create transfer",
            stripe.Transfer.create,
            amount=amount,
            currency=currency,
            destination=account_id,
            idempotency_key=idempotency_key,
        )
        return transfer["id"]

    async def refund(self, payment_ref: str, amount: int, idempotency_key: str) -> str:
        refund = await self._call(
            "create refund",
            stripe.Refund.create,
            payment_intent=payment_ref,
            amount=amount,
            idempotency_key=idempotency_key,
        )
        return refund["id"]

    def parse_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        try:
            event = stripe.Webhook.construct_event(payload, signature, settings.STRIPE_WEBHOOK_SECRET)
        except ValueError as e:
            logger.error(f"Invalid Stripe webhook payload: {e}")
            raise BadRequestException("Invalid webhook payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid Stripe webhook signature: {e}")
            raise BadRequestException("Invalid webhook signature")

        event_type = event["type"]
        data = event["data"]["object"]
        kind = EVENT_KINDS.get(event_type, SettlementKind.IGNORED)

        if event_type.startswith("payment_intent."):
            payment_ref = data.get("id")
            order_id = (data.get("metadata") or {}).get("order_id")
        else:
            payment_ref = data.get("payment_intent")
            order_id = None

        reason = None
        if kind == SettlementKind.FAILED:
            error = data.get("last_payment_error") or {}
            reason = error.get("message")
        elif kind == SettlementKind.REVERSED:
            reason = data.get("reason")

        return GatewayEvent(
            kind=kind, payment_ref=payment_ref, event_type=event_type, reason=reason, order_id=order_id,
        )


stripe_gateway = StripeGateway()
