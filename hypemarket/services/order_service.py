"""
Escrow order lifecycle.

pending_payment -> paid -> in_progress -> delivered <-> in_revision
delivered -> completed (the only transition that credits the seller ledger)
pending_payment..in_revision, completed -> disputed -> refunded | back to work
pending_payment -> cancelled
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from uuid import UUID
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from hypemarket.config import settings
from hypemarket.core.exceptions import (
    BadRequestException,
    ConflictException,
    ExternalFailureException,
    ForbiddenException,
    NotFoundException,
    ReconciliationRequired,
)
from hypemarket.core.permissions import Role, has_min_tier, is_admin
from hypemarket.core.security import AuthContext
from hypemarket.integrations.payment_gateway import GatewayEvent, PaymentGateway, PaymentIntentRef, SettlementKind
from hypemarket.integrations.stripe_client import stripe_gateway
from hypemarket.models.marketplace import Listing, ListingAvailability, ListingStatus, Offer, OfferStatus
from hypemarket.models.notification import NotificationEvent
from hypemarket.models.order import (
    ACTIVE_ORDER_STATUSES,
    DISPUTABLE_ORDER_STATUSES,
    Order,
    OrderDelivery,
    OrderStatus,
    OrderType,
    StatusTransition,
)
from hypemarket.schemas.order import SellerStatsResponse, StatusSummary
from hypemarket.services.ledger_service import LedgerService
from hypemarket.services.listing_service import ListingService
from hypemarket.services.notification_service import Notifier, notification_service
from hypemarket.services.state_machine import compare_and_set, record_transition, reload, transition
from hypemarket.utils.helpers import calculate_platform_fee, utcnow
from hypemarket.utils.logger import logger
from hypemarket.utils.validators import parse_identifier, validate_delivery_files

REVERSIBLE_ORDER_STATUSES = (
    OrderStatus.PAID,
    OrderStatus.IN_PROGRESS,
    OrderStatus.DELIVERED,
    OrderStatus.IN_REVISION,
    OrderStatus.COMPLETED,
)


def _new_order(listing: Listing, buyer_id: UUID, amount: int, order_type: OrderType, offer_id: Optional[UUID] = None) -> Order:
    fee = calculate_platform_fee(amount, settings.PLATFORM_FEE_PERCENT)
    return Order(
        id=uuid.uuid4(),
        listing_id=listing.id,
        buyer_id=buyer_id,
        seller_id=listing.owner_id,
        origin_offer_id=offer_id,
        order_type=order_type,
        amount=amount,
        currency=listing.currency,
        platform_fee=fee,
        seller_amount=amount - fee,
        status=OrderStatus.PENDING_PAYMENT,
        revisions=0,
        max_revisions=listing.max_revisions,
        delivery_files=[],
    )


class OrderService:
    def __init__(self, db: AsyncSession, gateway: Optional[PaymentGateway] = None, notifier: Optional[Notifier] = None):
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.notifier = notifier or notification_service

    async def _load(self, order_id) -> Order:
        order_uuid = parse_identifier(order_id, "order_id")
        order = await self.db.get(Order, order_uuid, populate_existing=True)
        if not order:
            raise NotFoundException("Order", str(order_uuid))
        return order

    async def _by_payment_ref(self, payment_ref: str) -> Order:
        result = await self.db.execute(
            select(Order).where(Order.payment_ref == payment_ref).execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if not order:
            raise NotFoundException("Order", payment_ref)
        return order

    @staticmethod
    def _require_buyer(ctx: AuthContext, order: Order) -> None:
        if order.buyer_id != ctx.id and not is_admin(ctx.role):
            raise ForbiddenException("Only the buyer can perform this action")

    @staticmethod
    def _require_seller(ctx: AuthContext, order: Order) -> None:
        if order.seller_id != ctx.id and not is_admin(ctx.role):
            raise ForbiddenException("Only the seller can perform this action")

    @staticmethod
    def _require_party(ctx: AuthContext, order: Order) -> None:
        if ctx.id not in (order.buyer_id, order.seller_id) and not is_admin(ctx.role):
            raise ForbiddenException("Access denied")

    def _notify_parties(self, order: Order, event: NotificationEvent, **payload) -> None:
        payload = {"order_id": order.id, "status": order.status, **payload}
        self.notifier.notify(order.buyer_id, event, payload)
        self.notifier.notify(order.seller_id, event, payload)

    async def _commit_transition(self, order: Order, to_status: OrderStatus, **kwargs) -> Order:
        try:
            order = await transition(self.db, order, to_status, **kwargs)
            await self.db.commit()
        except ConflictException:
            await self.db.rollback()
            raise
        return order

    @staticmethod
    async def create_from_offer(db: AsyncSession, offer: Offer, listing: Listing, amount: int, actor_id: Optional[UUID] = None) -> Order:
        """Open the order for an accepted offer inside the caller's transaction."""
        order = _new_order(listing, offer.buyer_id, amount, OrderType.ACCEPTED_OFFER, offer_id=offer.id)
        db.add(order)
        record_transition(db, order, None, OrderStatus.PENDING_PAYMENT, actor_id=actor_id, note=f"offer {offer.id}")
        await db.flush()
        return order

    async def buy_now(self, ctx: AuthContext, listing_id) -> Order:
        listing_uuid = parse_identifier(listing_id, "listing_id")
        listing = await self.db.get(Listing, listing_uuid, populate_existing=True)
        if not listing:
            raise NotFoundException("Listing", str(listing_uuid))
        if listing.status != ListingStatus.ACTIVE:
            raise ConflictException("Listing is not available for purchase")
        if listing.owner_id == ctx.id:
            raise ConflictException("Cannot buy your own listing")

        order = _new_order(listing, ctx.id, listing.price, OrderType.DIRECT_PURCHASE)
        self.db.add(order)
        record_transition(self.db, order, None, OrderStatus.PENDING_PAYMENT, actor_id=ctx.id)
        await self.db.commit()
        await self.db.refresh(order)

        logger.info(f"Order created: {order.id} (buy now) on listing {listing.id} for {order.amount}")
        self.notifier.notify(listing.owner_id, NotificationEvent.ORDER_CREATED, {"order_id": order.id})
        return order

    async def get_order(self, ctx: AuthContext, order_id) -> Order:
        order = await self._load(order_id)
        self._require_party(ctx, order)
        return order

    async def list_purchases(self, ctx: AuthContext, status: Optional[OrderStatus] = None) -> List[Order]:
        query = select(Order).where(Order.buyer_id == ctx.id)
        if status:
            query = query.where(Order.status == status)
        result = await self.db.execute(query.order_by(Order.created_at.desc()))
        return list(result.scalars().all())

    async def list_sales(self, ctx: AuthContext, status: Optional[OrderStatus] = None) -> List[Order]:
        query = select(Order).where(Order.seller_id == ctx.id)
        if status:
            query = query.where(Order.status == status)
        result = await self.db.execute(query.order_by(Order.created_at.desc()))
        return list(result.scalars().all())

    async def start_payment(self, ctx: AuthContext, order_id) -> Tuple[Order, PaymentIntentRef]:
        """Create the payment intent for an unpaid order, or fetch the one on record.

        Once an intent is stored it is always retrieved by reference: the gateway
        forgets idempotency keys well before the payment window closes.
        """
        order = await self._load(order_id)
        order_id = order.id
        self._require_buyer(ctx, order)
        if order.status != OrderStatus.PENDING_PAYMENT:
            raise ConflictException(f"Order is {order.status.value}, payment can only start from pending_payment")

        if order.payment_ref:
            intent = await self.gateway.retrieve_intent(order.payment_ref)
            logger.info(f"Payment resumed for order {order.id}: {order.payment_ref}")
            return order, intent

        intent = await self.gateway.create_intent(
            order.amount,
            order.currency,
            {"order_id": order.id, "listing_id": order.listing_id, "buyer_id": order.buyer_id},
            idempotency_key=f"order-{order.id}",
        )

        stored = await compare_and_set(
            self.db, Order, order_id, OrderStatus.PENDING_PAYMENT,
            {"payment_ref": intent.ref, "updated_at": utcnow()},
            criteria=(Order.payment_ref.is_(None),),
        )
        if not stored:
            await self.db.rollback()
            order = await self._load(order_id)
            if order.status != OrderStatus.PENDING_PAYMENT:
                raise ConflictException(f"Order {order_id} changed concurrently (now {order.status.value})")
        else:
            await self.db.commit()
            order = await reload(self.db, Order, order_id)

        logger.info(f"Payment started for order {order.id}: {order.payment_ref}")
        return order, intent

    async def _order_for_payment(self, payment_ref: str, order_id=None) -> Order:
        try:
            return await self._by_payment_ref(payment_ref)
        except NotFoundException:
            if not order_id:
                raise
        try:
            order_uuid = parse_identifier(order_id, "order_id")
        except BadRequestException:
            raise NotFoundException("Order", payment_ref)
        order = await self.db.get(Order, order_uuid, populate_existing=True)
        if not order:
            raise NotFoundException("Order", payment_ref)
        logger.warning(f"Payment {payment_ref} matched order {order.id} by metadata (on record: {order.payment_ref})")
        return order

    async def _settle_during_dispute(self, order: Order, payment_ref: str) -> Optional[Order]:
        """Record money that arrives while an unpaid order is disputed.

        The order stays disputed but now counts as paid, so a refund resolution
        returns the money. Returns None when the dispute moved on first.
        """
        now = utcnow()
        stored = await compare_and_set(
            self.db, Order, order.id, OrderStatus.DISPUTED,
            {"paid_at": now, "disputed_from": OrderStatus.PAID, "updated_at": now},
            criteria=(
                Order.disputed_from == OrderStatus.PENDING_PAYMENT,
                Order.paid_at.is_(None),
                Order.payment_ref == payment_ref,
            ),
        )
        if not stored:
            await self.db.rollback()
            return None

        record_transition(
            self.db, order, OrderStatus.DISPUTED, OrderStatus.DISPUTED,
            note=f"payment {payment_ref} settled during dispute",
        )
        listing = await self.db.get(Listing, order.listing_id, populate_existing=True)
        if listing.availability == ListingAvailability.SINGLE:
            await ListingService.mark_sold(self.db, listing, note=f"order {order.id}")
        await self.db.commit()
        order = await reload(self.db, Order, order.id)

        logger.info(f"Payment {payment_ref} settled for disputed order {order.id}")
        self._notify_parties(order, NotificationEvent.ORDER_PAID)
        return order

    async def confirm_payment(self, payment_ref: str, order_id=None) -> Order:
        """Settle a successful payment; a repeated call for the same ref writes nothing.

        ``order_id`` comes from the intent metadata and finds the order when the
        settled intent is not the one on record.
        """
        order = await self._order_for_payment(payment_ref, order_id)
        order_id = order.id

        if (
            order.status == OrderStatus.DISPUTED
            and order.disputed_from == OrderStatus.PENDING_PAYMENT
            and order.paid_at is None
            and order.payment_ref == payment_ref
        ):
            settled = await self._settle_during_dispute(order, payment_ref)
            if settled is not None:
                return settled
            order = await self._load(order_id)

        if order.payment_ref != payment_ref and order.status != OrderStatus.PENDING_PAYMENT:
            await LedgerService.flag_for_reconciliation(
                self.db, order.seller_id, order.amount,
                f"Payment {payment_ref} settled for order on record with {order.payment_ref}", order_id=order.id,
            )
            return order
        if order.paid_at is None and order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            await LedgerService.flag_for_reconciliation(
                self.db, order.seller_id, order.amount,
                f"Payment {payment_ref} settled for {order.status.value} order", order_id=order.id,
            )
            return order
        if order.status != OrderStatus.PENDING_PAYMENT:
            logger.info(f"Duplicate payment confirmation for {payment_ref}, order {order.id} is {order.status.value}")
            return order

        ref_on_record = (
            Order.payment_ref == order.payment_ref if order.payment_ref else Order.payment_ref.is_(None)
        )
        try:
            order = await transition(
                self.db,
                order,
                OrderStatus.PAID,
                allowed=(OrderStatus.PENDING_PAYMENT,),
                note=f"payment {payment_ref}",
                values={"paid_at": utcnow(), "payment_ref": payment_ref},
                criteria=(ref_on_record,),
            )
        except ConflictException:
            # A concurrent confirmation won; report what it left behind
            await self.db.rollback()
            return await self._load(order_id)

        listing = await self.db.get(Listing, order.listing_id, populate_existing=True)
        if listing.availability == ListingAvailability.SINGLE:
            sold = await ListingService.mark_sold(self.db, listing, note=f"order {order.id}")
            if not sold:
                listing = await reload(self.db, Listing, listing.id)
                if listing.status == ListingStatus.SOLD:
                    # Sold to someone else first: park for a manual refund
                    order = await transition(
                        self.db,
                        order,
                        OrderStatus.DISPUTED,
                        allowed=(OrderStatus.PAID,),
                        note="listing already sold",
                        values={"dispute_reason": "Listing already sold", "disputed_from": OrderStatus.PAID},
                    )
        await self.db.commit()

        logger.info(f"Payment confirmed for order {order.id} ({payment_ref}), now {order.status.value}")
        event = NotificationEvent.ORDER_PAID if order.status == OrderStatus.PAID else NotificationEvent.ORDER_DISPUTED
        self._notify_parties(order, event)
        return order

    async def payment_failed(self, payment_ref: str, reason: Optional[str] = None) -> Order:
        """The order stays payable; the buyer may retry with the same intent."""
        order = await self._by_payment_ref(payment_ref)
        if order.status == OrderStatus.PENDING_PAYMENT:
            logger.warning(f"Payment failed for order {order.id}: {reason}")
            self.notifier.notify(order.buyer_id, NotificationEvent.PAYMENT_FAILED, {
                "order_id": order.id, "reason": reason,
            })
        return order

    async def payment_reversed(self, payment_ref: str, reason: Optional[str] = None) -> Order:
        order = await self._by_payment_ref(payment_ref)
        if order.status in (OrderStatus.DISPUTED, OrderStatus.REFUNDED):
            return order

        order = await self._commit_transition(
            order,
            OrderStatus.DISPUTED,
            allowed=REVERSIBLE_ORDER_STATUSES,
            note=f"payment reversed: {reason}",
            values={"dispute_reason": f"Payment reversed: {reason or 'unknown'}", "disputed_from": order.status},
        )
        self._notify_parties(order, NotificationEvent.ORDER_DISPUTED, reason=reason)
        return order

    async def apply_gateway_event(self, event: GatewayEvent) -> Optional[Order]:
        if event.kind == SettlementKind.IGNORED or not event.payment_ref:
            logger.info(f"Ignoring gateway event {event.event_type}")
            return None
        if event.kind == SettlementKind.SUCCEEDED:
            return await self.confirm_payment(event.payment_ref, event.order_id)
        if event.kind == SettlementKind.FAILED:
            return await self.payment_failed(event.payment_ref, event.reason)
        return await self.payment_reversed(event.payment_ref, event.reason)

    async def start_work(self, ctx: AuthContext, order_id) -> Order:
        order = await self._load(order_id)
        self._require_seller(ctx, order)
        order = await self._commit_transition(
            order, OrderStatus.IN_PROGRESS, allowed=(OrderStatus.PAID,),
            actor_id=ctx.id, values={"started_at": utcnow()},
        )
        self.notifier.notify(order.buyer_id, NotificationEvent.ORDER_STARTED, {"order_id": order.id})
        return order

    async def deliver(self, ctx: AuthContext, order_id, message: str, files: List[str]) -> Order:
        """Submit work; every submission is kept in the delivery history."""
        order = await self._load(order_id)
        self._require_seller(ctx, order)
        if not message or not message.strip():
            raise BadRequestException("Delivery message is required")
        files = validate_delivery_files(files)

        now = utcnow()
        try:
            order = await transition(
                self.db,
                order,
                OrderStatus.DELIVERED,
                allowed=(OrderStatus.IN_PROGRESS, OrderStatus.IN_REVISION),
                actor_id=ctx.id,
                values={
                    "delivery_message": message.strip(),
                    "delivery_files": list(files),
                    "delivered_at": now,
                },
            )
            previous = await self.db.scalar(
                select(func.count()).select_from(OrderDelivery).where(OrderDelivery.order_id == order.id)
            )
            self.db.add(OrderDelivery(
                order_id=order.id,
                seller_id=order.seller_id,
                buyer_id=order.buyer_id,
                revision_number=previous + 1,
                message=message.strip(),
                files=list(files),
                delivered_at=now,
            ))
            await self.db.commit()
        except ConflictException:
            await self.db.rollback()
            raise

        self.notifier.notify(order.buyer_id, NotificationEvent.ORDER_DELIVERED, {
            "order_id": order.id, "files": len(files), "revision_number": previous + 1,
        })
        return order

    async def list_deliveries(self, ctx: AuthContext, order_id) -> Tuple[Order, List[OrderDelivery]]:
        order = await self.get_order(ctx, order_id)
        result = await self.db.execute(
            select(OrderDelivery)
            .where(OrderDelivery.order_id == order.id)
            .order_by(OrderDelivery.revision_number)
        )
        return order, list(result.scalars().all())

    async def get_timeline(self, ctx: AuthContext, order_id) -> Tuple[Order, List[StatusTransition]]:
        """Every recorded status change of the order, oldest first."""
        order = await self.get_order(ctx, order_id)
        result = await self.db.execute(
            select(StatusTransition)
            .where(StatusTransition.entity_type == "order", StatusTransition.entity_id == order.id)
            .order_by(StatusTransition.created_at)
        )
        return order, list(result.scalars().all())

    async def seller_stats(self, ctx: AuthContext) -> SellerStatsResponse:
        result = await self.db.execute(
            select(Order.status, func.count(Order.id), func.coalesce(func.sum(Order.amount), 0))
            .where(Order.seller_id == ctx.id)
            .group_by(Order.status)
        )
        by_status = [
            StatusSummary(status=status, count=count, total_amount=total)
            for status, count, total in result.all()
        ]
        return SellerStatsResponse(
            total_orders=sum(row.count for row in by_status),
            total_revenue=sum(row.total_amount for row in by_status if row.status == OrderStatus.COMPLETED),
            pending_revenue=sum(row.total_amount for row in by_status if row.status in ACTIVE_ORDER_STATUSES),
            by_status=sorted(by_status, key=lambda row: row.status.value),
        )

    async def request_revision(self, ctx: AuthContext, order_id, notes: Optional[str] = None) -> Order:
        order = await self._load(order_id)
        self._require_buyer(ctx, order)
        if order.revisions >= order.max_revisions:
            raise ConflictException({
                "message": "No revisions left",
                "revisions": order.revisions,
                "max_revisions": order.max_revisions,
            })

        order = await self._commit_transition(
            order,
            OrderStatus.IN_REVISION,
            allowed=(OrderStatus.DELIVERED,),
            actor_id=ctx.id,
            note=notes,
            values={"revisions": Order.revisions + 1, "revision_notes": notes},
            criteria=(Order.revisions < Order.max_revisions,),
        )
        self.notifier.notify(order.seller_id, NotificationEvent.REVISION_REQUESTED, {
            "order_id": order.id, "revisions_left": order.revisions_left,
        })
        return order

    async def _complete(self, order: Order, actor_id: Optional[UUID] = None, note: Optional[str] = None) -> Order:
        now = utcnow()
        try:
            order = await transition(
                self.db, order, OrderStatus.COMPLETED, allowed=(OrderStatus.DELIVERED,),
                actor_id=actor_id, note=note, values={"completed_at": now},
            )
            await LedgerService.credit_order(self.db, order, now)
            await self.db.commit()
        except ConflictException:
            await self.db.rollback()
            raise

        logger.info(f"Order completed: {order.id}, seller {order.seller_id} credited {order.seller_amount}")
        self._notify_parties(order, NotificationEvent.ORDER_COMPLETED, seller_amount=order.seller_amount)
        return order

    async def complete(self, ctx: AuthContext, order_id) -> Order:
        order = await self._load(order_id)
        self._require_buyer(ctx, order)
        return await self._complete(order, actor_id=ctx.id)

    async def cancel(self, ctx: AuthContext, order_id) -> Order:
        order = await self._load(order_id)
        self._require_party(ctx, order)
        order = await self._commit_transition(
            order, OrderStatus.CANCELLED, allowed=(OrderStatus.PENDING_PAYMENT,),
            actor_id=ctx.id, values={"cancelled_at": utcnow()},
        )
        await self._cancel_intent(order)
        self._notify_parties(order, NotificationEvent.ORDER_CANCELLED)
        return order

    async def _cancel_intent(self, order: Order) -> None:
        if not order.payment_ref:
            return
        try:
            await self.gateway.cancel_intent(order.payment_ref)
        except ExternalFailureException as e:
            # A late success webhook still lands on the cancelled order and gets flagged
            logger.warning(f"Could not cancel payment intent {order.payment_ref} for order {order.id}: {e.detail}")

    async def raise_dispute(self, ctx: AuthContext, order_id, reason: str) -> Order:
        order = await self._load(order_id)
        self._require_party(ctx, order)
        if not reason or not reason.strip():
            raise BadRequestException("Dispute reason is required")

        order = await self._commit_transition(
            order,
            OrderStatus.DISPUTED,
            allowed=DISPUTABLE_ORDER_STATUSES,
            actor_id=ctx.id,
            note=reason,
            values={"dispute_reason": reason.strip(), "disputed_from": order.status},
        )
        self._notify_parties(order, NotificationEvent.ORDER_DISPUTED, reason=reason)
        return order

    async def resolve_dispute(self, ctx: AuthContext, order_id, outcome: str, note: Optional[str] = None) -> Order:
        """Manual resolution: refund the buyer, or put the order back where work continues."""
        if not has_min_tier(ctx.role, (Role.SUBADMIN,)):
            raise ForbiddenException("Insufficient permissions")
        order = await self._load(order_id)

        if outcome == "resume":
            if order.completed_at:
                target = OrderStatus.COMPLETED
            elif order.disputed_from == OrderStatus.PENDING_PAYMENT:
                target = OrderStatus.PENDING_PAYMENT
            else:
                target = OrderStatus.IN_PROGRESS
            order = await self._commit_transition(
                order, target, allowed=(OrderStatus.DISPUTED,), actor_id=ctx.id, note=note,
            )
            self._notify_parties(order, NotificationEvent.DISPUTE_RESOLVED, resolution="resume")
            return order

        if outcome != "refund":
            raise BadRequestException("Outcome must be 'refund' or 'resume'")

        order_id = order.id
        try:
            order = await transition(
                self.db, order, OrderStatus.REFUNDED, allowed=(OrderStatus.DISPUTED,),
                actor_id=ctx.id, note=note, values={"refunded_at": utcnow()},
            )
            await LedgerService.reverse_order_credit(self.db, order)
            await self.db.commit()
        except ReconciliationRequired as e:
            await self.db.rollback()
            await LedgerService.flag_for_reconciliation(
                self.db, e.seller_id, e.amount, e.reason, order_id=order_id,
            )
            raise
        except ConflictException:
            await self.db.rollback()
            raise

        if order.payment_ref and order.paid_at:
            try:
                await self.gateway.refund(order.payment_ref, order.amount, idempotency_key=f"refund-{order.id}")
            except ExternalFailureException:
                await LedgerService.flag_for_reconciliation(
                    self.db, order.seller_id, order.amount,
                    f"Gateway refund failed for payment {order.payment_ref}", order_id=order.id,
                )
                raise

        logger.info(f"Order refunded: {order.id} ({order.amount})")
        self._notify_parties(order, NotificationEvent.ORDER_REFUNDED, amount=order.amount)
        return order

    async def auto_complete_due(self, now: Optional[datetime] = None) -> int:
        """Sweep: delivered orders the buyer left unanswered past the acceptance window."""
        now = now or utcnow()
        cutoff = now - timedelta(days=settings.AUTO_ACCEPT_DAYS)
        result = await self.db.execute(
            select(Order.id).where(Order.status == OrderStatus.DELIVERED, Order.delivered_at <= cutoff)
        )
        completed = 0
        for order_id in result.scalars().all():
            order = await self._load(order_id)
            try:
                await self._complete(order, note="auto-accepted")
                completed += 1
            except ConflictException as e:
                logger.warning(f"Auto-complete skipped order {order_id}: {e.detail}")

        if completed:
            logger.info(f"Auto-completed {completed} orders")
        return completed

    async def cancel_unpaid(self, now: Optional[datetime] = None) -> int:
        """Sweep: cancel orders left unpaid past the payment window and expire their offer."""
        now = now or utcnow()
        cutoff = now - timedelta(hours=settings.PAYMENT_TIMEOUT_HOURS)
        result = await self.db.execute(
            select(Order.id).where(Order.status == OrderStatus.PENDING_PAYMENT, Order.created_at <= cutoff)
        )
        cancelled = 0
        for order_id in result.scalars().all():
            order = await self._load(order_id)
            try:
                order = await transition(
                    self.db, order, OrderStatus.CANCELLED, allowed=(OrderStatus.PENDING_PAYMENT,),
                    note="payment timeout", values={"cancelled_at": now},
                )
                if order.origin_offer_id:
                    offer = await self.db.get(Offer, order.origin_offer_id, populate_existing=True)
                    if offer and offer.status == OfferStatus.ACCEPTED:
                        await transition(
                            self.db, offer, OfferStatus.EXPIRED, allowed=(OfferStatus.ACCEPTED,),
                            note="order never paid",
                        )
                await self.db.commit()
            except ConflictException as e:
                await self.db.rollback()
                logger.warning(f"Payment-timeout cancel skipped order {order_id}: {e.detail}")
                continue

            cancelled += 1
            await self._cancel_intent(order)
            self._notify_parties(order, NotificationEvent.ORDER_CANCELLED, reason="payment timeout")

        if cancelled:
            logger.info(f"Cancelled {cancelled} unpaid orders")
        return cancelled
