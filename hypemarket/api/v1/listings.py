from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from uuid import UUID
from hypemarket.database import get_db
from hypemarket.api.deps import get_optional_auth_context, guarded
from hypemarket.core.guards import GuardContext, active_account, authenticated, check_ownership, require_seller
from hypemarket.core.security import AuthContext
from hypemarket.schemas.listing import ListingBatchRequest, ListingCreate, ListingResponse, ListingUpdate
from hypemarket.services.listing_service import ListingService

router = APIRouter()


@router.post("", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
async def create_listing(
    listing_data: ListingCreate,
    ctx: GuardContext = Depends(guarded(require_seller)),
):
    """Create a listing as draft or directly active (sellers only)"""
    return await ListingService(ctx.db).create_listing(ctx.auth, listing_data)


@router.get("", response_model=List[ListingResponse])
async def list_listings(
    owner_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Active listings, or every listing of one owner"""
    return await ListingService(db).list_listings(owner_id=owner_id)


@router.get("/mine", response_model=List[ListingResponse])
async def my_listings(ctx: GuardContext = Depends(guarded(authenticated))):
    return await ListingService(ctx.db).list_listings(owner_id=ctx.auth.id)


@router.post("/batch/deactivate", response_model=List[ListingResponse])
async def batch_deactivate(
    batch: ListingBatchRequest,
    ctx: GuardContext = Depends(guarded(active_account)),
):
    """Deactivate several listings; fails with the full list of ids the caller does not own"""
    return await ListingService(ctx.db).batch_deactivate(ctx.auth, batch.ids)


@router.get("/{listing_id}", response_model=ListingResponse)
async def get_listing(
    listing_id: str,
    auth: AuthContext = Depends(get_optional_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await ListingService(db).get_listing(auth, listing_id)


@router.patch("/{listing_id}", response_model=ListingResponse)
async def update_listing(
    listing_id: str,
    listing_data: ListingUpdate,
    ctx: GuardContext = Depends(guarded(active_account, check_ownership("listing", id_source="listing_id"))),
):
    return await ListingService(ctx.db).update_listing(ctx.auth, listing_id, listing_data)


@router.post("/{listing_id}/publish", response_model=ListingResponse)
async def publish_listing(
    listing_id: str,
    ctx: GuardContext = Depends(guarded(active_account, check_ownership("listing", id_source="listing_id"))),
):
    return await ListingService(ctx.db).publish(ctx.auth, listing_id)


@router.post("/{listing_id}/activate", response_model=ListingResponse)
async def activate_listing(
    listing_id: str,
    ctx: GuardContext = Depends(guarded(active_account, check_ownership("listing", id_source="listing_id"))),
):
    return await ListingService(ctx.db).activate(ctx.auth, listing_id)


@router.post("/{listing_id}/deactivate", response_model=ListingResponse)
async def deactivate_listing(
    listing_id: str,
    ctx: GuardContext = Depends(guarded(active_account, check_ownership("listing", id_source="listing_id"))),
):
    return await ListingService(ctx.db).deactivate(ctx.auth, listing_id)
