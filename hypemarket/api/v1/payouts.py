from fastapi import APIRouter, BackgroundTasks, Depends, status
from typing import List
from hypemarket.api.deps import get_gateway, get_notifier, guarded
from hypemarket.core.guards import GuardContext, require_seller
from hypemarket.integrations.payment_gateway import PaymentGateway
from hypemarket.schemas.ledger import BalanceResponse, WithdrawalCreate, WithdrawalResponse
from hypemarket.services.ledger_service import LedgerService, run_withdrawal
from hypemarket.services.notification_service import Notifier

router = APIRouter()


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    ctx: GuardContext = Depends(guarded(require_seller)),
    gateway: PaymentGateway = Depends(get_gateway),
):
    return await LedgerService(ctx.db, gateway).get_balance(ctx.auth.id)


@router.post("/withdraw", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED)
async def request_withdrawal(
    withdrawal_data: WithdrawalCreate,
    background_tasks: BackgroundTasks,
    ctx: GuardContext = Depends(guarded(require_seller)),
    gateway: PaymentGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    """Reserve funds from the available balance; the transfer runs after the response"""
    withdrawal = await LedgerService(ctx.db, gateway, notifier).request_withdrawal(ctx.auth, withdrawal_data.amount)
    background_tasks.add_task(run_withdrawal, withdrawal.id, gateway, notifier)
    return withdrawal


@router.get("/withdrawals", response_model=List[WithdrawalResponse])
async def list_withdrawals(
    ctx: GuardContext = Depends(guarded(require_seller)),
    gateway: PaymentGateway = Depends(get_gateway),
):
    return await LedgerService(ctx.db, gateway).list_withdrawals(ctx.auth.id)
