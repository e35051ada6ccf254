from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from hypemarket.core.exceptions import BadRequestException, ConflictException, ForbiddenException, NotFoundException
from hypemarket.integrations.payment_gateway import GatewayEvent, SettlementKind
from hypemarket.models.ledger import LedgerEntry, LedgerEntryStatus, ReconciliationIssue
from hypemarket.models.marketplace import Listing, ListingAvailability, ListingStatus, Offer, OfferStatus
from hypemarket.models.notification import NotificationEvent
from hypemarket.models.order import Order, OrderStatus, StatusTransition
from hypemarket.services.ledger_service import LedgerService
from hypemarket.services.offer_service import OfferService
from hypemarket.services.order_service import OrderService
from hypemarket.utils.helpers import utcnow
from tests.factories import auth_for, make_listing


async def _paid_order(service, buyer_ctx, listing_id):
    order = await service.buy_now(buyer_ctx, listing_id)
    order, _ = await service.start_payment(buyer_ctx, order.id)
    return await service.confirm_payment(order.payment_ref)


async def _delivered_order(service, buyer_ctx, seller_ctx, listing_id):
    order = await _paid_order(service, buyer_ctx, listing_id)
    await service.start_work(seller_ctx, order.id)
    return await service.deliver(seller_ctx, order.id, "First draft attached", ["https://cdn.example.com/logo-v1.png"])


async def _transitions(db, entity_id, to_status):
    return await db.scalar(
        select(func.count()).select_from(StatusTransition).where(
            StatusTransition.entity_id == entity_id, StatusTransition.to_status == to_status,
        )
    )


async def test_buy_now_full_lifecycle(db, buyer, seller, listing, gateway, notifier):
    buyer_ctx, seller_ctx, listing_id = auth_for(buyer), auth_for(seller), listing.id
    service = OrderService(db, gateway, notifier)

    order = await service.buy_now(buyer_ctx, listing_id)
    assert order.status == OrderStatus.PENDING_PAYMENT
    assert (order.amount, order.platform_fee, order.seller_amount) == (100, 10, 90)

    order, intent = await service.start_payment(buyer_ctx, order.id)
    assert order.payment_ref == intent.ref
    _, same_intent = await service.start_payment(buyer_ctx, order.id)
    assert same_intent.ref == intent.ref

    order = await service.confirm_payment(intent.ref)
    assert order.status == OrderStatus.PAID
    assert order.paid_at is not None
    assert (await db.get(Listing, listing_id, populate_existing=True)).status == ListingStatus.SOLD

    order = await service.start_work(seller_ctx, order.id)
    assert order.status == OrderStatus.IN_PROGRESS

    order = await service.deliver(seller_ctx, order.id, "Done", ["https://cdn.example.com/logo.png"])
    assert order.status == OrderStatus.DELIVERED
    assert order.delivery_files == ["https://cdn.example.com/logo.png"]

    order = await service.complete(buyer_ctx, order.id)
    assert order.status == OrderStatus.COMPLETED
    assert order.completed_at is not None

    balance = await LedgerService(db, gateway).get_balance(seller_ctx.id)
    assert balance.pending_balance == 90
    assert balance.available_balance == 0
    assert NotificationEvent.ORDER_COMPLETED in notifier.events_for(seller_ctx.id)


async def test_duplicate_payment_confirmation_is_a_no_op(db, buyer, listing, gateway, notifier):
    buyer_ctx = auth_for(buyer)
    service = OrderService(db, gateway, notifier)
    order = await _paid_order(service, buyer_ctx, listing.id)
    order_id, payment_ref = order.id, order.payment_ref

    again = await service.confirm_payment(payment_ref)

    assert again.status == OrderStatus.PAID
    assert await _transitions(db, order_id, "paid") == 1
    assert notifier.events_for(buyer_ctx.id).count(NotificationEvent.ORDER_PAID) == 1


async def test_payment_only_from_pending_payment(db, buyer, listing, gateway, notifier):
    buyer_ctx = auth_for(buyer)
    service = OrderService(db, gateway, notifier)
    order = await _paid_order(service, buyer_ctx, listing.id)

    with pytest.raises(ConflictException):
        await service.start_payment(buyer_ctx, order.id)


async def test_parties_are_enforced(db, buyer, other_buyer, seller, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    order = await service.buy_now(buyer_ctx, listing.id)

    with pytest.raises(ForbiddenException):
        await service.start_payment(seller_ctx, order.id)
    with pytest.raises(ForbiddenException):
        await service.get_order(auth_for(other_buyer), order.id)

    order, _ = await service.start_payment(buyer_ctx, order.id)
    await service.confirm_payment(order.payment_ref)
    with pytest.raises(ForbiddenException):
        await service.start_work(buyer_ctx, order.id)


async def test_cannot_buy_own_or_unavailable_listing(db, seller, buyer, listing, gateway, notifier):
    service = OrderService(db, gateway, notifier)
    draft = await make_listing(db, seller, status=ListingStatus.DRAFT)

    with pytest.raises(ConflictException):
        await service.buy_now(auth_for(seller), listing.id)
    with pytest.raises(ConflictException):
        await service.buy_now(auth_for(buyer), draft.id)


async def test_delivery_requires_files_and_message(db, buyer, seller, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    order = await _paid_order(service, buyer_ctx, listing.id)
    await service.start_work(seller_ctx, order.id)

    with pytest.raises(BadRequestException):
        await service.deliver(seller_ctx, order.id, "Done", [])
    with pytest.raises(BadRequestException):
        await service.deliver(seller_ctx, order.id, "Done", ["   "])
    with pytest.raises(BadRequestException):
        await service.deliver(seller_ctx, order.id, "  ", ["https://cdn.example.com/a.png"])

    order = await service.get_order(buyer_ctx, order.id)
    assert order.status == OrderStatus.IN_PROGRESS


async def test_revision_limit(db, buyer, seller, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    listing = await make_listing(db, seller, max_revisions=1)
    service = OrderService(db, gateway, notifier)
    order = await _delivered_order(service, buyer_ctx, seller_ctx, listing.id)

    order = await service.request_revision(buyer_ctx, order.id, "Make it blue")
    assert order.status == OrderStatus.IN_REVISION
    assert order.revisions == 1
    assert order.revision_notes == "Make it blue"
    assert NotificationEvent.REVISION_REQUESTED in notifier.events_for(seller_ctx.id)

    order = await service.deliver(seller_ctx, order.id, "Blue version", ["https://cdn.example.com/logo-v2.png"])
    with pytest.raises(ConflictException) as exc:
        await service.request_revision(buyer_ctx, order.id, "Now red")
    assert exc.value.detail["max_revisions"] == 1

    order = await service.complete(buyer_ctx, order.id)
    assert order.status == OrderStatus.COMPLETED


async def test_complete_only_from_delivered(db, buyer, listing, gateway, notifier):
    buyer_ctx, seller_id = auth_for(buyer), listing.owner_id
    service = OrderService(db, gateway, notifier)
    order_id = (await _paid_order(service, buyer_ctx, listing.id)).id

    with pytest.raises(ConflictException):
        await service.complete(buyer_ctx, order_id)

    assert (await LedgerService(db, gateway).get_balance(seller_id)).pending_balance == 0


async def test_cancel_unpaid_order(db, buyer, seller, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    order = await service.buy_now(buyer_ctx, listing.id)
    order, _ = await service.start_payment(buyer_ctx, order.id)
    order_id, payment_ref = order.id, order.payment_ref

    order = await service.cancel(buyer_ctx, order_id)
    assert order.status == OrderStatus.CANCELLED
    assert gateway.cancelled == [payment_ref]

    with pytest.raises(ConflictException):
        await service.start_work(seller_ctx, order_id)

    # A late success for a cancelled order is flagged once, never applied
    for _ in range(2):
        order = await service.confirm_payment(payment_ref)
        assert order.status == OrderStatus.CANCELLED
    issues = (await db.execute(select(ReconciliationIssue))).scalars().all()
    assert [issue.order_id for issue in issues] == [order_id]


async def test_paid_order_cannot_be_cancelled(db, buyer, listing, gateway, notifier):
    buyer_ctx = auth_for(buyer)
    service = OrderService(db, gateway, notifier)
    order_id = (await _paid_order(service, buyer_ctx, listing.id)).id

    with pytest.raises(ConflictException):
        await service.cancel(buyer_ctx, order_id)


async def test_payment_failure_keeps_order_payable(db, buyer, listing, gateway, notifier):
    buyer_ctx = auth_for(buyer)
    service = OrderService(db, gateway, notifier)
    order = await service.buy_now(buyer_ctx, listing.id)
    order, _ = await service.start_payment(buyer_ctx, order.id)

    order = await service.payment_failed(order.payment_ref, "card_declined")

    assert order.status == OrderStatus.PENDING_PAYMENT
    assert NotificationEvent.PAYMENT_FAILED in notifier.events_for(buyer_ctx.id)


async def test_ignored_gateway_events(db, gateway, notifier):
    event = GatewayEvent(kind=SettlementKind.IGNORED, payment_ref=None, event_type="charge.updated")
    assert await OrderService(db, gateway, notifier).apply_gateway_event(event) is None


async def test_second_payment_on_sold_listing_is_disputed(db, buyer, other_buyer, listing, gateway, notifier):
    first_ctx, second_ctx = auth_for(buyer), auth_for(other_buyer)
    service = OrderService(db, gateway, notifier)
    first = await service.buy_now(first_ctx, listing.id)
    second = await service.buy_now(second_ctx, listing.id)
    first, _ = await service.start_payment(first_ctx, first.id)
    second, _ = await service.start_payment(second_ctx, second.id)

    assert (await service.confirm_payment(first.payment_ref)).status == OrderStatus.PAID
    late = await service.confirm_payment(second.payment_ref)

    assert late.status == OrderStatus.DISPUTED
    assert late.disputed_from == OrderStatus.PAID
    assert late.dispute_reason == "Listing already sold"
    assert NotificationEvent.ORDER_DISPUTED in notifier.events_for(second_ctx.id)


async def test_unlimited_listing_is_never_sold(db, buyer, other_buyer, seller, gateway, notifier):
    listing = await make_listing(db, seller, availability=ListingAvailability.UNLIMITED)
    listing_id = listing.id
    service = OrderService(db, gateway, notifier)

    assert (await _paid_order(service, auth_for(buyer), listing_id)).status == OrderStatus.PAID
    assert (await _paid_order(service, auth_for(other_buyer), listing_id)).status == OrderStatus.PAID
    assert (await db.get(Listing, listing_id, populate_existing=True)).status == ListingStatus.ACTIVE


async def test_dispute_then_refund(db, buyer, seller, admin, listing, gateway, notifier):
    buyer_ctx, seller_ctx, admin_ctx = auth_for(buyer), auth_for(seller), auth_for(admin)
    service = OrderService(db, gateway, notifier)
    order = await _paid_order(service, buyer_ctx, listing.id)
    order_id, payment_ref = order.id, order.payment_ref
    await service.start_work(seller_ctx, order_id)

    with pytest.raises(BadRequestException):
        await service.raise_dispute(buyer_ctx, order_id, "  ")
    order = await service.raise_dispute(buyer_ctx, order_id, "Seller stopped responding")
    assert order.status == OrderStatus.DISPUTED
    assert order.disputed_from == OrderStatus.IN_PROGRESS

    with pytest.raises(ForbiddenException):
        await service.resolve_dispute(seller_ctx, order_id, "refund")
    with pytest.raises(BadRequestException):
        await service.resolve_dispute(admin_ctx, order_id, "split")

    order = await service.resolve_dispute(admin_ctx, order_id, "refund", "Buyer refunded in full")
    assert order.status == OrderStatus.REFUNDED
    assert order.refunded_at is not None
    assert gateway.refunds == [(payment_ref, 100, f"refund-{order_id}")]
    assert NotificationEvent.ORDER_REFUNDED in notifier.events_for(buyer_ctx.id)


async def test_dispute_resumes_work(db, buyer, seller, admin, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    order = await _delivered_order(service, buyer_ctx, seller_ctx, listing.id)

    await service.raise_dispute(seller_ctx, order.id, "Buyer asks for work outside the brief")
    order = await service.resolve_dispute(auth_for(admin), order.id, "resume")

    assert order.status == OrderStatus.IN_PROGRESS
    assert gateway.refunds == []


async def test_chargeback_after_completion_reverses_credit(db, buyer, seller, admin, listing, gateway, notifier):
    buyer_ctx, seller_ctx, admin_ctx = auth_for(buyer), auth_for(seller), auth_for(admin)
    service = OrderService(db, gateway, notifier)
    order = await _delivered_order(service, buyer_ctx, seller_ctx, listing.id)
    order = await service.complete(buyer_ctx, order.id)
    order_id = order.id

    order = await service.apply_gateway_event(GatewayEvent(
        kind=SettlementKind.REVERSED, payment_ref=order.payment_ref,
        event_type="charge.dispute.created", reason="fraudulent",
    ))
    assert order.status == OrderStatus.DISPUTED
    assert order.disputed_from == OrderStatus.COMPLETED
    # Completed orders cannot be disputed by the parties
    with pytest.raises(ConflictException):
        await service.raise_dispute(buyer_ctx, order_id, "Changed my mind")

    order = await service.resolve_dispute(admin_ctx, order_id, "refund")

    assert order.status == OrderStatus.REFUNDED
    balance = await LedgerService(db, gateway).get_balance(seller_ctx.id)
    assert balance.pending_balance == 0
    entry = await db.scalar(select(LedgerEntry).where(LedgerEntry.order_id == order_id))
    assert entry.status == LedgerEntryStatus.REVERSED


async def test_resume_after_chargeback_restores_completion(db, buyer, seller, admin, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    order = await _delivered_order(service, buyer_ctx, seller_ctx, listing.id)
    order = await service.complete(buyer_ctx, order.id)

    await service.payment_reversed(order.payment_ref, "duplicate")
    order = await service.resolve_dispute(auth_for(admin), order.id, "resume")

    assert order.status == OrderStatus.COMPLETED
    assert (await LedgerService(db, gateway).get_balance(seller_ctx.id)).pending_balance == 90


async def test_cancel_unpaid_sweep_expires_origin_offer(db, buyer, seller, listing, gateway, notifier):
    buyer_ctx = auth_for(buyer)
    offer = await OfferService(db, notifier).create(buyer_ctx, listing.id, 80)
    _, order = await OfferService(db, notifier).accept(auth_for(seller), offer.id)
    order_id, offer_id = order.id, offer.id
    service = OrderService(db, gateway, notifier)
    order, _ = await service.start_payment(buyer_ctx, order_id)
    payment_ref = order.payment_ref

    assert await service.cancel_unpaid() == 0

    await db.execute(
        update(Order).where(Order.id == order_id).values(created_at=utcnow() - timedelta(hours=49))
    )
    await db.commit()

    assert await service.cancel_unpaid() == 1
    assert (await service.get_order(buyer_ctx, order_id)).status == OrderStatus.CANCELLED
    assert (await db.get(Offer, offer_id, populate_existing=True)).status == OfferStatus.EXPIRED
    assert gateway.cancelled == [payment_ref]


async def test_auto_complete_sweep(db, buyer, seller, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    order_id = (await _delivered_order(service, buyer_ctx, seller_ctx, listing.id)).id

    assert await service.auto_complete_due() == 0

    await db.execute(
        update(Order).where(Order.id == order_id).values(delivered_at=utcnow() - timedelta(days=4))
    )
    await db.commit()

    assert await service.auto_complete_due() == 1
    assert (await service.get_order(buyer_ctx, order_id)).status == OrderStatus.COMPLETED
    assert (await LedgerService(db, gateway).get_balance(seller_ctx.id)).pending_balance == 90


async def test_purchases_and_sales(db, buyer, seller, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    await service.buy_now(buyer_ctx, listing.id)

    assert len(await service.list_purchases(buyer_ctx)) == 1
    assert len(await service.list_sales(seller_ctx)) == 1
    assert await service.list_purchases(seller_ctx) == []
    assert await service.list_sales(seller_ctx, OrderStatus.PAID) == []


async def test_start_payment_retrieves_the_intent_on_record(db, buyer, listing, gateway, notifier):
    buyer_ctx = auth_for(buyer)
    service = OrderService(db, gateway, notifier)
    order = await service.buy_now(buyer_ctx, listing.id)
    order, intent = await service.start_payment(buyer_ctx, order.id)
    order_id = order.id

    # The gateway has since forgotten the idempotency key
    gateway.intents.clear()
    order, again = await service.start_payment(buyer_ctx, order_id)

    assert again == intent
    assert order.payment_ref == intent.ref
    assert gateway.retrieved == [intent.ref]
    assert gateway.intents == {}


async def test_success_on_another_intent_is_matched_by_order_id(db, buyer, listing, gateway, notifier):
    buyer_ctx = auth_for(buyer)
    service = OrderService(db, gateway, notifier)
    order = await service.buy_now(buyer_ctx, listing.id)
    order, _ = await service.start_payment(buyer_ctx, order.id)
    order_id = order.id

    order = await service.apply_gateway_event(GatewayEvent(
        kind=SettlementKind.SUCCEEDED, payment_ref="pi_other", event_type="payment_intent.succeeded",
        order_id=str(order_id),
    ))
    assert order.status == OrderStatus.PAID
    assert order.payment_ref == "pi_other"

    # A further intent charged for the same order needs a human
    order = await service.confirm_payment("pi_third", str(order_id))
    assert order.status == OrderStatus.PAID
    issues = (await db.execute(select(ReconciliationIssue))).scalars().all()
    assert [(issue.order_id, issue.amount) for issue in issues] == [(order_id, 100)]


async def test_unmatched_success_without_order_id_is_not_found(db, gateway, notifier):
    service = OrderService(db, gateway, notifier)
    with pytest.raises(NotFoundException):
        await service.confirm_payment("pi_unknown", "not-a-uuid")


async def test_payment_settling_during_dispute_is_refunded(db, buyer, seller, admin, listing, gateway, notifier):
    buyer_ctx, admin_ctx, listing_id = auth_for(buyer), auth_for(admin), listing.id
    service = OrderService(db, gateway, notifier)
    order = await service.buy_now(buyer_ctx, listing_id)
    order, _ = await service.start_payment(buyer_ctx, order.id)
    order_id, payment_ref = order.id, order.payment_ref
    await service.raise_dispute(buyer_ctx, order_id, "Wrong listing")

    order = await service.confirm_payment(payment_ref)
    assert order.status == OrderStatus.DISPUTED
    assert order.paid_at is not None
    assert order.disputed_from == OrderStatus.PAID
    assert (await db.get(Listing, listing_id, populate_existing=True)).status == ListingStatus.SOLD

    # Repeating the event changes nothing
    order = await service.confirm_payment(payment_ref)
    assert await _transitions(db, order_id, OrderStatus.DISPUTED.value) == 2

    order = await service.resolve_dispute(admin_ctx, order_id, "refund")
    assert order.status == OrderStatus.REFUNDED
    assert gateway.refunds == [(payment_ref, 100, f"refund-{order_id}")]


async def test_resume_after_settlement_during_dispute_continues_work(db, buyer, admin, listing, gateway, notifier):
    buyer_ctx, admin_ctx = auth_for(buyer), auth_for(admin)
    service = OrderService(db, gateway, notifier)
    order = await service.buy_now(buyer_ctx, listing.id)
    order, _ = await service.start_payment(buyer_ctx, order.id)
    order_id, payment_ref = order.id, order.payment_ref
    await service.raise_dispute(buyer_ctx, order_id, "Unsure about scope")
    await service.confirm_payment(payment_ref)

    order = await service.resolve_dispute(admin_ctx, order_id, "resume")

    assert order.status == OrderStatus.IN_PROGRESS
    assert await service.cancel_unpaid(utcnow() + timedelta(days=3)) == 0


async def test_settlement_after_unpaid_refund_is_flagged_once(db, buyer, admin, listing, gateway, notifier):
    buyer_ctx, admin_ctx = auth_for(buyer), auth_for(admin)
    service = OrderService(db, gateway, notifier)
    order = await service.buy_now(buyer_ctx, listing.id)
    order, _ = await service.start_payment(buyer_ctx, order.id)
    order_id, payment_ref = order.id, order.payment_ref
    await service.raise_dispute(buyer_ctx, order_id, "Changed my mind")
    await service.resolve_dispute(admin_ctx, order_id, "refund")
    assert gateway.refunds == []

    for _ in range(2):
        order = await service.confirm_payment(payment_ref)
        assert order.status == OrderStatus.REFUNDED

    issues = (await db.execute(select(ReconciliationIssue))).scalars().all()
    assert [issue.order_id for issue in issues] == [order_id]
    assert not issues[0].resolved


async def test_redelivery_keeps_every_submission(db, buyer, seller, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    order = await _delivered_order(service, buyer_ctx, seller_ctx, listing.id)
    order_id = order.id

    await service.request_revision(buyer_ctx, order_id, "Darker blue please")
    await service.deliver(seller_ctx, order_id, "Second draft", ["https://cdn.example.com/logo-v2.png"])

    order, deliveries = await service.list_deliveries(buyer_ctx, order_id)
    assert order.delivery_files == ["https://cdn.example.com/logo-v2.png"]
    assert [(d.revision_number, d.message, d.files) for d in deliveries] == [
        (1, "First draft attached", ["https://cdn.example.com/logo-v1.png"]),
        (2, "Second draft", ["https://cdn.example.com/logo-v2.png"]),
    ]


async def test_timeline_lists_status_changes_in_order(db, buyer, seller, other_buyer, listing, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    order_id = (await _delivered_order(service, buyer_ctx, seller_ctx, listing.id)).id
    await service.complete(buyer_ctx, order_id)

    order, timeline = await service.get_timeline(seller_ctx, order_id)

    assert order.status == OrderStatus.COMPLETED
    assert [(entry.from_status, entry.to_status) for entry in timeline] == [
        (None, "pending_payment"),
        ("pending_payment", "paid"),
        ("paid", "in_progress"),
        ("in_progress", "delivered"),
        ("delivered", "completed"),
    ]
    with pytest.raises(ForbiddenException):
        await service.get_timeline(auth_for(other_buyer), order_id)


async def test_seller_stats(db, buyer, seller, gateway, notifier):
    buyer_ctx, seller_ctx = auth_for(buyer), auth_for(seller)
    service = OrderService(db, gateway, notifier)
    first = await make_listing(db, seller, price=100)
    second = await make_listing(db, seller, price=250)
    third = await make_listing(db, seller, price=40)
    first_id, second_id, third_id = first.id, second.id, third.id

    completed = await _delivered_order(service, buyer_ctx, seller_ctx, first_id)
    await service.complete(buyer_ctx, completed.id)
    await _paid_order(service, buyer_ctx, second_id)
    await service.buy_now(buyer_ctx, third_id)

    stats = await service.seller_stats(seller_ctx)

    assert stats.total_orders == 3
    assert stats.total_revenue == 100
    assert stats.pending_revenue == 250
    assert [(row.status, row.count) for row in stats.by_status] == [
        (OrderStatus.COMPLETED, 1),
        (OrderStatus.PAID, 1),
        (OrderStatus.PENDING_PAYMENT, 1),
    ]
