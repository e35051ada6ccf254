from typing import List, Optional
from uuid import UUID
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from hypemarket.config import settings
from hypemarket.core.exceptions import BadRequestException, ConflictException, ForbiddenException, NotFoundException
from hypemarket.core.guards import check_batch_ownership
from hypemarket.core.permissions import is_admin
from hypemarket.core.security import AuthContext
from hypemarket.models.marketplace import Listing, ListingStatus
from hypemarket.schemas.listing import ListingCreate, ListingUpdate
from hypemarket.services.state_machine import transition
from hypemarket.utils.helpers import utcnow
from hypemarket.utils.logger import logger
from hypemarket.utils.validators import parse_identifier, validate_currency

CREATABLE_STATUSES = (ListingStatus.DRAFT, ListingStatus.ACTIVE)
PUBLIC_STATUSES = (ListingStatus.ACTIVE, ListingStatus.SOLD)


class ListingService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load(self, listing_id) -> Listing:
        listing_uuid = parse_identifier(listing_id, "listing_id")
        listing = await self.db.get(Listing, listing_uuid)
        if not listing:
            raise NotFoundException("Listing", str(listing_uuid))
        return listing

    @staticmethod
    def _require_owner(ctx: AuthContext, listing: Listing) -> None:
        if listing.owner_id != ctx.id and not is_admin(ctx.role):
            raise ForbiddenException("Only the listing owner can modify this listing")

    async def create_listing(self, ctx: AuthContext, data: ListingCreate) -> Listing:
        if data.status not in CREATABLE_STATUSES:
            raise BadRequestException("Listings can only be created as draft or active")
        if not validate_currency(data.currency):
            raise BadRequestException(f"Unsupported currency: {data.currency}")

        listing = Listing(
            owner_id=ctx.id,
            title=data.title,
            description=data.description,
            price=data.price,
            currency=data.currency.lower(),
            status=data.status,
            listing_type=data.listing_type,
            availability=data.availability,
            max_revisions=data.max_revisions if data.max_revisions is not None else settings.DEFAULT_MAX_REVISIONS,
        )
        self.db.add(listing)
        await self.db.commit()
        await self.db.refresh(listing)

        logger.info(f"Listing created: {listing.id} by {ctx.id} ({listing.status.value})")
        return listing

    async def get_listing(self, ctx: AuthContext, listing_id) -> Listing:
        """Drafts and inactive listings are only visible to their owner and admins."""
        listing = await self._load(listing_id)
        if listing.status not in PUBLIC_STATUSES:
            if ctx.is_anonymous or (listing.owner_id != ctx.id and not is_admin(ctx.role)):
                raise NotFoundException("Listing", str(listing.id))
        return listing

    async def list_listings(self, owner_id: Optional[UUID] = None) -> List[Listing]:
        query = select(Listing)
        if owner_id:
            query = query.where(Listing.owner_id == owner_id)
        else:
            query = query.where(Listing.status == ListingStatus.ACTIVE)

        result = await self.db.execute(query.order_by(Listing.created_at.desc()))
        return list(result.scalars().all())

    async def update_listing(self, ctx: AuthContext, listing_id, data: ListingUpdate) -> Listing:
        listing = await self._load(listing_id)
        self._require_owner(ctx, listing)

        if listing.status == ListingStatus.SOLD:
            raise ConflictException("Sold listings cannot be modified")

        if data.title:
            listing.title = data.title
        if data.description is not None:
            listing.description = data.description
        if data.price:
            listing.price = data.price
        if data.max_revisions is not None:
            listing.max_revisions = data.max_revisions

        await self.db.commit()
        await self.db.refresh(listing)

        logger.info(f"Listing updated: {listing.id}")
        return listing

    async def _move(self, ctx: AuthContext, listing_id, to_status: ListingStatus, allowed) -> Listing:
        listing = await self._load(listing_id)
        self._require_owner(ctx, listing)
        listing = await transition(self.db, listing, to_status, allowed=allowed, actor_id=ctx.id)
        await self.db.commit()
        return listing

    async def publish(self, ctx: AuthContext, listing_id) -> Listing:
        return await self._move(ctx, listing_id, ListingStatus.ACTIVE, (ListingStatus.DRAFT,))

    async def activate(self, ctx: AuthContext, listing_id) -> Listing:
        return await self._move(ctx, listing_id, ListingStatus.ACTIVE, (ListingStatus.INACTIVE,))

    async def deactivate(self, ctx: AuthContext, listing_id) -> Listing:
        return await self._move(ctx, listing_id, ListingStatus.INACTIVE, (ListingStatus.ACTIVE,))

    async def batch_deactivate(self, ctx: AuthContext, ids: List[str]) -> List[Listing]:
        """Deactivate several listings at once; every id must belong to the caller."""
        listings = await check_batch_ownership(self.db, "listing", ids, ctx.id, "owner_id")

        updated = []
        for listing in listings:
            if listing.status != ListingStatus.ACTIVE:
                updated.append(listing)
                continue
            updated.append(await transition(
                self.db, listing, ListingStatus.INACTIVE, allowed=(ListingStatus.ACTIVE,), actor_id=ctx.id,
            ))
        await self.db.commit()

        logger.info(f"Batch deactivated {len(updated)} listings for {ctx.id}")
        return updated

    @staticmethod
    async def mark_sold(db: AsyncSession, listing: Listing, actor_id: Optional[UUID] = None, note: Optional[str] = None) -> bool:
        """Flip a single-unit listing to sold inside the caller's transaction.

        Returns False when the listing was already sold.
        """
        if listing.status == ListingStatus.SOLD:
            return False
        try:
            await transition(
                db,
                listing,
                ListingStatus.SOLD,
                allowed=(ListingStatus.ACTIVE, ListingStatus.INACTIVE),
                actor_id=actor_id,
                note=note,
                values={"sold_at": utcnow()},
            )
        except ConflictException:
            return False
        return True
