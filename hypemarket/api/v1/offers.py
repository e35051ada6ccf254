from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
from hypemarket.api.deps import get_notifier, guarded
from hypemarket.core.guards import GuardContext, active_account, authenticated, require_buyer
from hypemarket.models.marketplace import OfferStatus
from hypemarket.schemas.offer import OfferCounter, OfferCreate, OfferResponse
from hypemarket.schemas.order import OfferAcceptResponse, OrderResponse
from hypemarket.services.notification_service import Notifier
from hypemarket.services.offer_service import OfferService

router = APIRouter()


@router.post("/listing/{listing_id}", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
async def create_offer(
    listing_id: str,
    offer_data: OfferCreate,
    ctx: GuardContext = Depends(guarded(require_buyer)),
    notifier: Notifier = Depends(get_notifier),
):
    """Make an offer on an active listing"""
    return await OfferService(ctx.db, notifier).create(ctx.auth, listing_id, offer_data.amount, offer_data.message)


@router.get("/listing/{listing_id}", response_model=List[OfferResponse])
async def list_listing_offers(
    listing_id: str,
    offer_status: Optional[OfferStatus] = Query(None, alias="status"),
    ctx: GuardContext = Depends(guarded(authenticated)),
    notifier: Notifier = Depends(get_notifier),
):
    """Offers received on a listing (owner only)"""
    return await OfferService(ctx.db, notifier).list_for_listing(ctx.auth, listing_id, offer_status)


@router.get("/mine", response_model=List[OfferResponse])
async def my_offers(
    offer_status: Optional[OfferStatus] = Query(None, alias="status"),
    ctx: GuardContext = Depends(guarded(authenticated)),
    notifier: Notifier = Depends(get_notifier),
):
    return await OfferService(ctx.db, notifier).list_mine(ctx.auth, offer_status)


@router.get("/{offer_id}", response_model=OfferResponse)
async def get_offer(
    offer_id: str,
    ctx: GuardContext = Depends(guarded(authenticated)),
    notifier: Notifier = Depends(get_notifier),
):
    return await OfferService(ctx.db, notifier).get(ctx.auth, offer_id)


@router.post("/{offer_id}/accept", response_model=OfferAcceptResponse)
async def accept_offer(
    offer_id: str,
    ctx: GuardContext = Depends(guarded(active_account)),
    notifier: Notifier = Depends(get_notifier),
):
    """Accept an offer (or a counter offer) and open its order"""
    offer, order = await OfferService(ctx.db, notifier).accept(ctx.auth, offer_id)
    return OfferAcceptResponse(offer_id=offer.id, order=OrderResponse.model_validate(order))


@router.post("/{offer_id}/reject", response_model=OfferResponse)
async def reject_offer(
    offer_id: str,
    ctx: GuardContext = Depends(guarded(active_account)),
    notifier: Notifier = Depends(get_notifier),
):
    return await OfferService(ctx.db, notifier).reject(ctx.auth, offer_id)


@router.post("/{offer_id}/counter", response_model=OfferResponse)
async def counter_offer(
    offer_id: str,
    counter: OfferCounter,
    ctx: GuardContext = Depends(guarded(active_account)),
    notifier: Notifier = Depends(get_notifier),
):
    return await OfferService(ctx.db, notifier).counter(ctx.auth, offer_id, counter.amount, counter.message)


@router.post("/{offer_id}/withdraw", response_model=OfferResponse)
async def withdraw_offer(
    offer_id: str,
    ctx: GuardContext = Depends(guarded(active_account)),
    notifier: Notifier = Depends(get_notifier),
):
    return await OfferService(ctx.db, notifier).withdraw(ctx.auth, offer_id)
