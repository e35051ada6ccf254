from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from hypemarket.api.deps import get_gateway, get_notifier, guarded
from hypemarket.core.guards import (
    GuardContext,
    active_account,
    authenticated,
    authorize,
    require_buyer,
    require_seller,
)
from hypemarket.core.permissions import Role
from hypemarket.integrations.payment_gateway import PaymentGateway
from hypemarket.models.order import OrderStatus
from hypemarket.schemas.order import (
    DeliveryCreate,
    DeliveryHistoryResponse,
    DeliveryResponse,
    DisputeCreate,
    DisputeResolution,
    OrderResponse,
    OrderTimelineResponse,
    PaymentStartResponse,
    RevisionRequest,
    SellerStatsResponse,
    TimelineEntry,
)
from hypemarket.services.notification_service import Notifier
from hypemarket.services.order_service import OrderService

router = APIRouter()


def _service(ctx: GuardContext, gateway: PaymentGateway, notifier: Notifier) -> OrderService:
    return OrderService(ctx.db, gateway, notifier)


@router.post("/buy/{listing_id}", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def buy_now(
    listing_id: str,
    ctx: GuardContext = Depends(guarded(require_buyer)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Order a listing at its price without negotiating"""
    return await _service(ctx, gateway, notifier).buy_now(ctx.auth, listing_id)


@router.get("/purchases", response_model=List[OrderResponse])
async def list_purchases(
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    ctx: GuardContext = Depends(guarded(authenticated)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    return await _service(ctx, gateway, notifier).list_purchases(ctx.auth, order_status)


@router.get("/sales", response_model=List[OrderResponse])
async def list_sales(
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    ctx: GuardContext = Depends(guarded(authenticated)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    return await _service(ctx, gateway, notifier).list_sales(ctx.auth, order_status)


@router.get("/stats/seller", response_model=SellerStatsResponse)
async def seller_stats(
    ctx: GuardContext = Depends(guarded(require_seller)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Order counts and amounts per status for the calling seller"""
    return await _service(ctx, gateway, notifier).seller_stats(ctx.auth)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    ctx: GuardContext = Depends(guarded(authenticated)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    return await _service(ctx, gateway, notifier).get_order(ctx.auth, order_id)


@router.get("/{order_id}/timeline", response_model=OrderTimelineResponse)
async def get_order_timeline(
    order_id: str,
    ctx: GuardContext = Depends(guarded(authenticated)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    order, transitions = await _service(ctx, gateway, notifier).get_timeline(ctx.auth, order_id)
    return OrderTimelineResponse(
        order_id=order.id,
        current_status=order.status,
        timeline=[TimelineEntry.model_validate(entry) for entry in transitions],
    )


@router.get("/{order_id}/deliveries", response_model=DeliveryHistoryResponse)
async def list_order_deliveries(
    order_id: str,
    ctx: GuardContext = Depends(guarded(authenticated)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Every delivery the seller submitted, first to latest"""
    order, deliveries = await _service(ctx, gateway, notifier).list_deliveries(ctx.auth, order_id)
    return DeliveryHistoryResponse(
        order_id=order.id,
        status=order.status,
        revisions_used=order.revisions,
        revisions_left=order.revisions_left,
        deliveries=[DeliveryResponse.model_validate(delivery) for delivery in deliveries],
    )


@router.post("/{order_id}/pay", response_model=PaymentStartResponse)
async def start_payment(
    order_id: str,
    ctx: GuardContext = Depends(guarded(active_account)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Create the payment intent; settlement arrives through the payment webhook"""
    order, intent = await _service(ctx, gateway, notifier).start_payment(ctx.auth, order_id)
    return PaymentStartResponse(
        order_id=order.id,
        payment_ref=order.payment_ref or intent.ref,
        client_secret=intent.client_secret,
        amount=order.amount,
        currency=order.currency,
    )


@router.post("/{order_id}/start", response_model=OrderResponse)
async def start_work(
    order_id: str,
    ctx: GuardContext = Depends(guarded(active_account)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    return await _service(ctx, gateway, notifier).start_work(ctx.auth, order_id)


@router.post("/{order_id}/deliver", response_model=OrderResponse)
async def deliver_order(
    order_id: str,
    delivery: DeliveryCreate,
    ctx: GuardContext = Depends(guarded(active_account)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    return await _service(ctx, gateway, notifier).deliver(ctx.auth, order_id, delivery.message, delivery.files)


@router.post("/{order_id}/revision", response_model=OrderResponse)
async def request_revision(
    order_id: str,
    revision: RevisionRequest,
    ctx: GuardContext = Depends(guarded(active_account)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    return await _service(ctx, gateway, notifier).request_revision(ctx.auth, order_id, revision.notes)


@router.post("/{order_id}/complete", response_model=OrderResponse)
async def complete_order(
    order_id: str,
    ctx: GuardContext = Depends(guarded(active_account)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Accept the delivery and release the seller's proceeds into the ledger"""
    return await _service(ctx, gateway, notifier).complete(ctx.auth, order_id)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
async def cancel_order(
    order_id: str,
    ctx: GuardContext = Depends(guarded(active_account)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    return await _service(ctx, gateway, notifier).cancel(ctx.auth, order_id)


@router.post("/{order_id}/dispute", response_model=OrderResponse)
async def raise_dispute(
    order_id: str,
    dispute: DisputeCreate,
    ctx: GuardContext = Depends(guarded(active_account)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    return await _service(ctx, gateway, notifier).raise_dispute(ctx.auth, order_id, dispute.reason)


@router.post("/{order_id}/resolve", response_model=OrderResponse)
async def resolve_dispute(
    order_id: str,
    resolution: DisputeResolution,
    ctx: GuardContext = Depends(guarded(authorize(Role.SUBADMIN), active_account)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Refund the buyer or resume the order (subadmin and above)"""
    return await _service(ctx, gateway, notifier).resolve_dispute(
        ctx.auth, order_id, resolution.outcome, resolution.note
    )
