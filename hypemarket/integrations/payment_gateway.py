from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class PaymentIntentRef:
    ref: str
    client_secret: Optional[str] = None


class SettlementKind(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REVERSED = "reversed"
    IGNORED = "ignored"


@dataclass(frozen=True)
class GatewayEvent:
    kind: SettlementKind
    payment_ref: Optional[str]
    event_type: str
    reason: Optional[str] = None
    order_id: Optional[str] = None


class PaymentGateway(ABC):
    """What the engine needs from a payment provider; every call may be slow."""

    @abstractmethod
    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        idempotency_key: str,
    ) -> PaymentIntentRef:
        ...

    @abstractmethod
    async def retrieve_intent(self, payment_ref: str) -> PaymentIntentRef:
        ...

    @abstractmethod
    async def cancel_intent(self, payment_ref: str) -> None:
        ...

    @abstractmethod
    async def account_payout_capable(self, account_id: str) -> bool:
        ...

    @abstractmethod
    async def transfer(self, account_id: str, amount: int, currency: str, idempotency_key: str) -> str:
        ...

    @abstractmethod
    async def refund(self, payment_ref: str, amount: int, idempotency_key: str) -> str:
        ...

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> GatewayEvent:
        ...
