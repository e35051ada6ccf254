"""
Offer negotiation between a buyer and a listing owner.

pending --counter--> countered
pending|countered --accept--> accepted (creates the order in the same transaction)
pending|countered --reject--> rejected
pending|countered --withdraw--> withdrawn (buyer)
pending|countered --expires_at passes--> expired (on read, or by the sweep)
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from hypemarket.config import settings
from hypemarket.core.exceptions import BadRequestException, ConflictException, ForbiddenException, NotFoundException
from hypemarket.core.permissions import is_admin
from hypemarket.core.security import AuthContext
from hypemarket.models.marketplace import Listing, ListingStatus, Offer, OfferStatus, OPEN_OFFER_STATUSES
from hypemarket.models.notification import NotificationEvent
from hypemarket.models.order import Order
from hypemarket.services.notification_service import Notifier, notification_service
from hypemarket.services.order_service import OrderService
from hypemarket.services.state_machine import compare_and_set, record_transition, reload, transition
from hypemarket.utils.helpers import utcnow
from hypemarket.utils.logger import logger
from hypemarket.utils.validators import parse_identifier


class OfferService:
    def __init__(self, db: AsyncSession, notifier: Optional[Notifier] = None):
        self.db = db
        self.notifier = notifier or notification_service

    async def _load(self, offer_id) -> Offer:
        offer_uuid = parse_identifier(offer_id, "offer_id")
        offer = await self.db.get(Offer, offer_uuid)
        if not offer:
            raise NotFoundException("Offer", str(offer_uuid))
        return offer

    async def _listing(self, listing_id) -> Listing:
        listing_uuid = parse_identifier(listing_id, "listing_id")
        listing = await self.db.get(Listing, listing_uuid, populate_existing=True)
        if not listing:
            raise NotFoundException("Listing", str(listing_uuid))
        return listing

    @staticmethod
    def check_amount(listing: Listing, amount: int) -> None:
        if amount < settings.MIN_OFFER_AMOUNT:
            raise BadRequestException({
                "message": f"Offer must be at least {settings.MIN_OFFER_AMOUNT}",
                "minimum": settings.MIN_OFFER_AMOUNT,
            })
        ceiling = listing.price * settings.OFFER_MAX_PRICE_MULTIPLIER
        if amount > ceiling:
            raise BadRequestException({
                "message": f"Offer cannot exceed {ceiling}",
                "ceiling": ceiling,
            })

    async def _reconcile_expiry(self, offer: Offer, now: Optional[datetime] = None) -> Offer:
        """Persist the expiry of an open offer whose deadline has passed."""
        now = now or utcnow()
        if offer.status not in OPEN_OFFER_STATUSES or offer.effective_status(now) != OfferStatus.EXPIRED:
            return offer
        offer_id = offer.id
        try:
            offer = await transition(
                self.db, offer, OfferStatus.EXPIRED, allowed=OPEN_OFFER_STATUSES, note="expired on read",
            )
            await self.db.commit()
        except ConflictException:
            # Someone else settled it first and nothing was written; a second read is safe
            return await reload(self.db, Offer, offer_id)

        self.notifier.notify(offer.buyer_id, NotificationEvent.OFFER_EXPIRED, {"offer_id": offer.id})
        return offer

    async def create(self, ctx: AuthContext, listing_id, amount: int, message: Optional[str] = None) -> Offer:
        listing = await self._listing(listing_id)

        if listing.status != ListingStatus.ACTIVE:
            raise ConflictException("Listing is not available for offers")
        if listing.owner_id == ctx.id:
            raise ConflictException("Cannot make offer on your own listing")
        self.check_amount(listing, amount)

        result = await self.db.execute(
            select(Offer).where(
                Offer.listing_id == listing.id,
                Offer.buyer_id == ctx.id,
                Offer.status.in_(OPEN_OFFER_STATUSES),
            )
        )
        for existing in result.scalars().all():
            existing = await self._reconcile_expiry(existing)
            if existing.status in OPEN_OFFER_STATUSES:
                raise ConflictException({
                    "message": "You already have an open offer on this listing",
                    "offer_id": str(existing.id),
                })

        offer = Offer(
            id=uuid.uuid4(),
            listing_id=listing.id,
            buyer_id=ctx.id,
            amount=amount,
            message=message or "",
            status=OfferStatus.PENDING,
            expires_at=utcnow() + timedelta(days=settings.OFFER_EXPIRY_DAYS),
        )
        self.db.add(offer)
        record_transition(self.db, offer, None, OfferStatus.PENDING, actor_id=ctx.id)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost the race against a concurrent offer from the same buyer
            await self.db.rollback()
            raise ConflictException("You already have an open offer on this listing")
        await self.db.refresh(offer)

        logger.info(f"Offer created: {offer.id} on listing {listing.id} for {amount}")
        self.notifier.notify(listing.owner_id, NotificationEvent.OFFER_RECEIVED, {
            "offer_id": offer.id, "listing_id": listing.id, "amount": amount,
        })
        return offer

    async def get(self, ctx: AuthContext, offer_id) -> Offer:
        offer = await self._load(offer_id)
        listing = await self._listing(offer.listing_id)
        if offer.buyer_id != ctx.id and listing.owner_id != ctx.id and not is_admin(ctx.role):
            raise ForbiddenException("Access denied")
        return await self._reconcile_expiry(offer)

    async def list_for_listing(self, ctx: AuthContext, listing_id, status: Optional[OfferStatus] = None) -> List[Offer]:
        listing = await self._listing(listing_id)
        if listing.owner_id != ctx.id and not is_admin(ctx.role):
            raise ForbiddenException("Only listing owner can view offers")

        result = await self.db.execute(
            select(Offer).where(Offer.listing_id == listing.id).order_by(Offer.created_at.desc())
        )
        offers = [await self._reconcile_expiry(o) for o in result.scalars().all()]
        return [o for o in offers if status is None or o.status == status]

    async def list_mine(self, ctx: AuthContext, status: Optional[OfferStatus] = None) -> List[Offer]:
        result = await self.db.execute(
            select(Offer).where(Offer.buyer_id == ctx.id).order_by(Offer.created_at.desc())
        )
        offers = [await self._reconcile_expiry(o) for o in result.scalars().all()]
        return [o for o in offers if status is None or o.status == status]

    async def accept(self, ctx: AuthContext, offer_id) -> Tuple[Offer, Order]:
        """Accept an open offer and open its order at the agreed amount.

        The owner accepts a pending offer; a countered offer may be accepted by
        either party at the counter amount.
        """
        offer = await self._reconcile_expiry(await self._load(offer_id))
        listing = await self._listing(offer.listing_id)

        is_owner = listing.owner_id == ctx.id
        if offer.status == OfferStatus.PENDING and not (is_owner or is_admin(ctx.role)):
            raise ForbiddenException("Only listing owner can accept offers")
        if offer.status == OfferStatus.COUNTERED and not (is_owner or offer.buyer_id == ctx.id or is_admin(ctx.role)):
            raise ForbiddenException("Only the buyer or listing owner can accept a counter offer")

        if listing.status != ListingStatus.ACTIVE:
            raise ConflictException("Listing is no longer available")

        amount = offer.agreed_amount
        now = utcnow()

        try:
            accepted = await transition(
                self.db,
                offer,
                OfferStatus.ACCEPTED,
                allowed=OPEN_OFFER_STATUSES,
                actor_id=ctx.id,
                values={"responded_at": now},
                criteria=(Offer.expires_at > now,),
            )
            # Conditional touch: fails if the listing was sold since we read it
            if not await compare_and_set(self.db, Listing, listing.id, ListingStatus.ACTIVE, {"updated_at": now}):
                raise ConflictException("Listing is no longer available")

            order = await OrderService.create_from_offer(self.db, accepted, listing, amount, actor_id=ctx.id)
            await self.db.commit()
        except ConflictException:
            await self.db.rollback()
            raise
        except IntegrityError:
            await self.db.rollback()
            raise ConflictException("An order already exists for this offer")

        logger.info(f"Offer accepted: {accepted.id}, order created: {order.id}")
        self.notifier.notify(accepted.buyer_id, NotificationEvent.OFFER_ACCEPTED, {
            "offer_id": accepted.id, "order_id": order.id, "amount": amount,
        })
        self.notifier.notify(listing.owner_id, NotificationEvent.ORDER_CREATED, {"order_id": order.id})
        return accepted, order

    async def reject(self, ctx: AuthContext, offer_id) -> Offer:
        offer = await self._reconcile_expiry(await self._load(offer_id))
        listing = await self._listing(offer.listing_id)

        is_owner = listing.owner_id == ctx.id or is_admin(ctx.role)
        if offer.status == OfferStatus.PENDING and not is_owner:
            raise ForbiddenException("Only listing owner can reject offers")
        if offer.status == OfferStatus.COUNTERED and not (is_owner or offer.buyer_id == ctx.id):
            raise ForbiddenException("Only the buyer or listing owner can reject a counter offer")

        try:
            offer = await transition(
                self.db, offer, OfferStatus.REJECTED, allowed=OPEN_OFFER_STATUSES,
                actor_id=ctx.id, values={"responded_at": utcnow()},
            )
            await self.db.commit()
        except ConflictException:
            await self.db.rollback()
            raise

        recipient = offer.buyer_id if ctx.id != offer.buyer_id else listing.owner_id
        self.notifier.notify(recipient, NotificationEvent.OFFER_REJECTED, {"offer_id": offer.id})
        return offer

    async def counter(self, ctx: AuthContext, offer_id, amount: int, message: Optional[str] = None) -> Offer:
        offer = await self._reconcile_expiry(await self._load(offer_id))
        listing = await self._listing(offer.listing_id)

        if listing.owner_id != ctx.id and not is_admin(ctx.role):
            raise ForbiddenException("Only listing owner can counter offers")
        if listing.status != ListingStatus.ACTIVE:
            raise ConflictException("Listing is no longer available")
        self.check_amount(listing, amount)

        now = utcnow()
        try:
            offer = await transition(
                self.db,
                offer,
                OfferStatus.COUNTERED,
                allowed=(OfferStatus.PENDING,),
                actor_id=ctx.id,
                values={
                    "counter_amount": amount,
                    "counter_message": message or f"Counter offer for {offer.amount}",
                    "countered_at": now,
                },
                criteria=(Offer.expires_at > now,),
            )
            await self.db.commit()
        except ConflictException:
            await self.db.rollback()
            raise

        logger.info(f"Offer countered: {offer.id} at {amount}")
        self.notifier.notify(offer.buyer_id, NotificationEvent.OFFER_COUNTERED, {
            "offer_id": offer.id, "amount": amount,
        })
        return offer

    async def withdraw(self, ctx: AuthContext, offer_id) -> Offer:
        offer = await self._reconcile_expiry(await self._load(offer_id))
        if offer.buyer_id != ctx.id and not is_admin(ctx.role):
            raise ForbiddenException("Only the buyer can withdraw an offer")

        try:
            offer = await transition(
                self.db, offer, OfferStatus.WITHDRAWN, allowed=OPEN_OFFER_STATUSES, actor_id=ctx.id,
            )
            await self.db.commit()
        except ConflictException:
            await self.db.rollback()
            raise

        listing = await self._listing(offer.listing_id)
        self.notifier.notify(listing.owner_id, NotificationEvent.OFFER_WITHDRAWN, {"offer_id": offer.id})
        return offer

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Sweep: persist expiry for every open offer past its deadline."""
        now = now or utcnow()
        result = await self.db.execute(
            select(Offer).where(
                Offer.status.in_(OPEN_OFFER_STATUSES),
                Offer.expires_at <= now,
            )
        )
        expired = 0
        for offer in result.scalars().all():
            if (await self._reconcile_expiry(offer, now)).status == OfferStatus.EXPIRED:
                expired += 1

        logger.info(f"Expired {expired} offers")
        return expired
