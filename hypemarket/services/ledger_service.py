"""
Seller balances: order credits, clearance, reversals and withdrawals.

For every seller, available + pending + total_withdrawn equals the net proceeds
of their credited (completed) orders. Withdrawals are counted in total_withdrawn
from the moment they are reserved and handed back if the transfer fails.
"""
import uuid
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from hypemarket.config import settings
from hypemarket.core.exceptions import (
    BadRequestException,
    ConflictException,
    ExternalFailureException,
    NotFoundException,
    ReconciliationRequired,
)
from hypemarket.core.security import AuthContext
from hypemarket.database import AsyncSessionLocal
from hypemarket.integrations.payment_gateway import PaymentGateway
from hypemarket.integrations.stripe_client import stripe_gateway
from hypemarket.models.ledger import (
    LedgerAccount,
    LedgerEntry,
    LedgerEntryStatus,
    ReconciliationIssue,
    WithdrawalRequest,
    WithdrawalStatus,
)
from hypemarket.models.notification import NotificationEvent
from hypemarket.models.order import Order
from hypemarket.schemas.ledger import BalanceResponse
from hypemarket.services.identity_service import IdentityService
from hypemarket.services.notification_service import Notifier, notification_service
from hypemarket.services.state_machine import compare_and_set, record_transition, transition
from hypemarket.utils.helpers import utcnow
from hypemarket.utils.logger import logger
from hypemarket.utils.validators import parse_identifier

# A withdrawal stuck in processing this long is driven again with the same idempotency key
STALE_PROCESSING_MINUTES = 15


class LedgerService:
    def __init__(self, db: AsyncSession, gateway: Optional[PaymentGateway] = None, notifier: Optional[Notifier] = None):
        self.db = db
        self.gateway = gateway or stripe_gateway
        self.notifier = notifier or notification_service

    @staticmethod
    async def _ensure_account(db: AsyncSession, seller_id: UUID) -> None:
        result = await db.execute(select(LedgerAccount.id).where(LedgerAccount.seller_id == seller_id))
        if result.scalar_one_or_none() is None:
            db.add(LedgerAccount(
                seller_id=seller_id,
                available_balance=0,
                pending_balance=0,
                total_withdrawn=0,
            ))
            await db.flush()

    @staticmethod
    async def _adjust(db: AsyncSession, seller_id: UUID, criteria=(), **deltas) -> bool:
        """Apply balance deltas in one UPDATE; False if ``criteria`` did not hold."""
        values = {name: getattr(LedgerAccount, name) + delta for name, delta in deltas.items()}
        values["updated_at"] = utcnow()
        result = await db.execute(
            update(LedgerAccount)
            .where(LedgerAccount.seller_id == seller_id, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def credit_order(db: AsyncSession, order: Order, now: Optional[datetime] = None) -> LedgerEntry:
        """Post the seller's proceeds of a completed order to pending_balance.

        Runs inside the caller's transaction; a second call for the same order
        returns the existing entry.
        """
        result = await db.execute(select(LedgerEntry).where(LedgerEntry.order_id == order.id))
        existing = result.scalar_one_or_none()
        if existing:
            logger.warning(f"Order {order.id} already credited by ledger entry {existing.id}")
            return existing

        now = now or utcnow()
        await LedgerService._ensure_account(db, order.seller_id)

        entry = LedgerEntry(
            id=uuid.uuid4(),
            seller_id=order.seller_id,
            order_id=order.id,
            gross_amount=order.amount,
            fee_amount=order.platform_fee,
            net_amount=order.seller_amount,
            status=LedgerEntryStatus.PENDING,
            clears_at=now + timedelta(days=settings.CLEARANCE_DAYS),
        )
        db.add(entry)
        await LedgerService._adjust(db, order.seller_id, pending_balance=order.seller_amount)

        logger.info(f"Ledger credit: order {order.id}, seller {order.seller_id}, net {order.seller_amount}")
        return entry

    @staticmethod
    async def reverse_order_credit(db: AsyncSession, order: Order) -> Optional[LedgerEntry]:
        """Take back the credit of a refunded order from whichever balance holds it.

        Raises ReconciliationRequired when that balance no longer covers it.
        """
        result = await db.execute(
            select(LedgerEntry).where(LedgerEntry.order_id == order.id).execution_options(populate_existing=True)
        )
        entry = result.scalar_one_or_none()
        if entry is None or entry.status == LedgerEntryStatus.REVERSED:
            return entry

        net = entry.net_amount
        if entry.status == LedgerEntryStatus.PENDING:
            debited = await LedgerService._adjust(
                db, entry.seller_id, (LedgerAccount.pending_balance >= net,), pending_balance=-net,
            )
        else:
            debited = await LedgerService._adjust(
                db, entry.seller_id, (LedgerAccount.available_balance >= net,), available_balance=-net,
            )
        if not debited:
            raise ReconciliationRequired(entry.seller_id, net, f"Refund of order {order.id} exceeds balance")

        if not await compare_and_set(
            db, LedgerEntry, entry.id, entry.status,
            {"status": LedgerEntryStatus.REVERSED, "reversed_at": utcnow()},
        ):
            raise ConflictException(f"Ledger entry {entry.id} changed concurrently; refresh and retry")

        logger.info(f"Ledger reversal: order {order.id}, seller {entry.seller_id}, net {net}")
        return entry

    @staticmethod
    async def flag_for_reconciliation(
        db: AsyncSession,
        seller_id: UUID,
        amount: int,
        reason: str,
        order_id: Optional[UUID] = None,
        withdrawal_id: Optional[UUID] = None,
    ) -> ReconciliationIssue:
        """Record an inconsistency for manual follow-up in its own commit.

        An unresolved issue with the same subject and reason is returned as is.
        """
        if order_id or withdrawal_id:
            result = await db.execute(
                select(ReconciliationIssue).where(
                    ReconciliationIssue.order_id.is_not_distinct_from(order_id),
                    ReconciliationIssue.withdrawal_id.is_not_distinct_from(withdrawal_id),
                    ReconciliationIssue.reason == reason[:500],
                    ReconciliationIssue.resolved.is_(False),
                )
            )
            existing = result.scalars().first()
            if existing:
                logger.info(f"Reconciliation issue {existing.id} already open: {reason}")
                return existing

        issue = ReconciliationIssue(
            seller_id=seller_id,
            order_id=order_id,
            withdrawal_id=withdrawal_id,
            amount=amount,
            reason=reason[:500],
        )
        db.add(issue)
        await db.commit()
        logger.error(f"Reconciliation required for seller {seller_id}: {reason} (amount {amount})")
        return issue

    async def release_matured(self, now: Optional[datetime] = None) -> int:
        """Move credits past their clearance date from pending to available."""
        now = now or utcnow()
        result = await self.db.execute(
            select(LedgerEntry.id, LedgerEntry.seller_id, LedgerEntry.net_amount).where(
                LedgerEntry.status == LedgerEntryStatus.PENDING,
                LedgerEntry.clears_at <= now,
            )
        )
        released = 0
        for entry_id, seller_id, net in result.all():
            cleared = await compare_and_set(
                self.db, LedgerEntry, entry_id, LedgerEntryStatus.PENDING,
                {"status": LedgerEntryStatus.CLEARED, "cleared_at": now},
            )
            if not cleared:
                await self.db.rollback()
                continue
            await self._adjust(self.db, seller_id, pending_balance=-net, available_balance=net)
            await self.db.commit()

            released += 1
            self.notifier.notify(seller_id, NotificationEvent.FUNDS_CLEARED, {"entry_id": entry_id, "amount": net})

        if released:
            logger.info(f"Released {released} matured ledger credits")
        return released

    async def get_balance(self, seller_id: UUID) -> BalanceResponse:
        result = await self.db.execute(
            select(LedgerAccount)
            .where(LedgerAccount.seller_id == seller_id)
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if not account:
            return BalanceResponse(seller_id=seller_id, currency=settings.CURRENCY)

        return BalanceResponse(
            seller_id=seller_id,
            available_balance=account.available_balance,
            pending_balance=account.pending_balance,
            total_withdrawn=account.total_withdrawn,
            currency=settings.CURRENCY,
        )

    async def request_withdrawal(self, ctx: AuthContext, amount: int) -> WithdrawalRequest:
        if amount < settings.MIN_WITHDRAWAL_AMOUNT:
            raise BadRequestException({
                "message": f"Minimum withdrawal is {settings.MIN_WITHDRAWAL_AMOUNT}",
                "minimum": settings.MIN_WITHDRAWAL_AMOUNT,
            })

        seller = await IdentityService.find_by_id(self.db, ctx.id)
        if not seller:
            raise NotFoundException("User", str(ctx.id))
        if not seller.payout_account_id:
            raise BadRequestException("No payout account connected")
        payout_account_id = seller.payout_account_id

        if not await self.gateway.account_payout_capable(payout_account_id):
            raise BadRequestException("Payout account is not enabled for payouts")

        balance = await self.get_balance(ctx.id)
        if amount > balance.available_balance:
            raise ConflictException({
                "message": "Insufficient available balance",
                "available_balance": balance.available_balance,
                "requested": amount,
            })

        reserved = await self._adjust(
            self.db, ctx.id, (LedgerAccount.available_balance >= amount,),
            available_balance=-amount, total_withdrawn=amount,
        )
        if not reserved:
            # Another withdrawal took the balance between our read and the update
            await self.db.rollback()
            raise ConflictException("Insufficient available balance")

        withdrawal = WithdrawalRequest(
            id=uuid.uuid4(),
            seller_id=ctx.id,
            amount=amount,
            currency=settings.CURRENCY,
            status=WithdrawalStatus.PENDING,
        )
        self.db.add(withdrawal)
        record_transition(self.db, withdrawal, None, WithdrawalStatus.PENDING, actor_id=ctx.id)
        await self.db.commit()
        await self.db.refresh(withdrawal)

        logger.info(f"Withdrawal requested: {withdrawal.id} by {ctx.id} for {amount}")
        self.notifier.notify(ctx.id, NotificationEvent.WITHDRAWAL_REQUESTED, {
            "withdrawal_id": withdrawal.id, "amount": amount,
        })
        return withdrawal

    async def process_withdrawal(self, withdrawal_id) -> WithdrawalRequest:
        """Drive a pending withdrawal through the external transfer to completed or failed."""
        withdrawal_uuid = parse_identifier(withdrawal_id, "withdrawal_id")
        withdrawal = await self.db.get(WithdrawalRequest, withdrawal_uuid, populate_existing=True)
        if not withdrawal:
            raise NotFoundException("Withdrawal", str(withdrawal_uuid))

        if withdrawal.status == WithdrawalStatus.PENDING:
            withdrawal = await transition(
                self.db, withdrawal, WithdrawalStatus.PROCESSING, allowed=(WithdrawalStatus.PENDING,),
            )
            await self.db.commit()
        elif withdrawal.status != WithdrawalStatus.PROCESSING:
            return withdrawal

        seller = await IdentityService.find_by_id(self.db, withdrawal.seller_id)
        payout_account_id = seller.payout_account_id if seller else None

        # The row is already processing; the transfer runs with no transaction open
        await self.db.commit()
        try:
            if not payout_account_id:
                raise ExternalFailureException("Payout", "No payout account connected")
            transfer_id = await self.gateway.transfer(
                payout_account_id,
                withdrawal.amount,
                withdrawal.currency,
                idempotency_key=f"withdrawal-{withdrawal.id}",
            )
        except ExternalFailureException as e:
            return await self._fail(withdrawal, str(e.detail))

        withdrawal = await transition(
            self.db,
            withdrawal,
            WithdrawalStatus.COMPLETED,
            allowed=(WithdrawalStatus.PROCESSING,),
            values={"transfer_id": transfer_id, "settled_at": utcnow()},
        )
        await self.db.commit()

        logger.info(f"Withdrawal completed: {withdrawal.id}, transfer {transfer_id}")
        self.notifier.notify(withdrawal.seller_id, NotificationEvent.WITHDRAWAL_COMPLETED, {
            "withdrawal_id": withdrawal.id, "amount": withdrawal.amount, "transfer_id": transfer_id,
        })
        return withdrawal

    async def _fail(self, withdrawal: WithdrawalRequest, reason: str) -> WithdrawalRequest:
        withdrawal = await transition(
            self.db,
            withdrawal,
            WithdrawalStatus.FAILED,
            allowed=(WithdrawalStatus.PROCESSING,),
            note=reason,
            values={"failure_reason": reason[:500], "settled_at": utcnow()},
        )
        restored = await self._adjust(
            self.db, withdrawal.seller_id, (LedgerAccount.total_withdrawn >= withdrawal.amount,),
            available_balance=withdrawal.amount, total_withdrawn=-withdrawal.amount,
        )
        if not restored:
            seller_id, amount, withdrawal_id = withdrawal.seller_id, withdrawal.amount, withdrawal.id
            await self.db.rollback()
            await self.flag_for_reconciliation(
                self.db, seller_id, amount, "Failed withdrawal could not be restored", withdrawal_id=withdrawal_id,
            )
            raise ConflictException("Failed withdrawal requires manual reconciliation")
        await self.db.commit()

        logger.warning(f"Withdrawal failed: {withdrawal.id}: {reason}")
        self.notifier.notify(withdrawal.seller_id, NotificationEvent.WITHDRAWAL_FAILED, {
            "withdrawal_id": withdrawal.id, "amount": withdrawal.amount, "reason": reason,
        })
        return withdrawal

    async def list_withdrawals(self, seller_id: UUID) -> List[WithdrawalRequest]:
        result = await self.db.execute(
            select(WithdrawalRequest)
            .where(WithdrawalRequest.seller_id == seller_id)
            .order_by(WithdrawalRequest.requested_at.desc())
        )
        return list(result.scalars().all())

    async def process_pending(self, now: Optional[datetime] = None) -> int:
        """Sweep: pending withdrawals, plus processing ones that were abandoned mid-transfer."""
        now = now or utcnow()
        stale = now - timedelta(minutes=STALE_PROCESSING_MINUTES)
        result = await self.db.execute(
            select(WithdrawalRequest.id).where(
                (WithdrawalRequest.status == WithdrawalStatus.PENDING)
                | (
                    (WithdrawalRequest.status == WithdrawalStatus.PROCESSING)
                    & (WithdrawalRequest.updated_at <= stale)
                )
            )
        )
        processed = 0
        for withdrawal_id in result.scalars().all():
            try:
                await self.process_withdrawal(withdrawal_id)
                processed += 1
            except ConflictException as e:
                await self.db.rollback()
                logger.warning(f"Skipped withdrawal {withdrawal_id}: {e.detail}")
        return processed


async def run_withdrawal(withdrawal_id: UUID, gateway: Optional[PaymentGateway] = None, notifier: Optional[Notifier] = None) -> None:
    """Background entry point: the request session is gone by the time this runs."""
    async with AsyncSessionLocal() as db:
        try:
            await LedgerService(db, gateway, notifier).process_withdrawal(withdrawal_id)
        except Exception as e:
            logger.error(f"Error processing withdrawal {withdrawal_id}: {e}")
