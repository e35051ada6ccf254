from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from hypemarket.database import get_db
from hypemarket.api.deps import get_gateway, get_notifier
from hypemarket.core.exceptions import BadRequestException, ConflictException, NotFoundException
from hypemarket.integrations.payment_gateway import PaymentGateway
from hypemarket.services.notification_service import Notifier
from hypemarket.services.order_service import OrderService
from hypemarket.utils.logger import logger

router = APIRouter()


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Handle payment gateway settlement events"""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise BadRequestException("Missing signature")

    event = gateway.parse_webhook(payload, signature)

    try:
        order = await OrderService(db, gateway, notifier).apply_gateway_event(event)
    except NotFoundException:
        # Intents created outside the marketplace share the webhook endpoint
        logger.warning(f"Webhook {event.event_type} for unknown payment {event.payment_ref}")
        return {"received": True, "matched": False}
    except ConflictException as e:
        # Acknowledged so the gateway stops retrying; the order state already moved on
        logger.warning(f"Webhook {event.event_type} for {event.payment_ref} not applied: {e.detail}")
        return {"received": True, "matched": True, "applied": False}

    return {
        "received": True,
        "matched": order is not None,
        "status": order.status.value if order is not None else None,
    }
