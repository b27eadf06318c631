"""Wallet endpoints: clearing-window balance, withdrawals, withdrawal history."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.identity import get_current_user_id, require_self
from app.auth.rate_limit import check_rate_limit
from app.database import get_db
from app.schemas.wallet import (
    PendingTransactionResponse,
    WalletBalanceResponse,
    WithdrawalCreateRequest,
    WithdrawalResponse,
    WithdrawalResultResponse,
)
from app.services import payments as payment_service
from app.services import withdrawals as withdrawal_service
from app.services.notifications import Notifier, get_notifier

router = APIRouter(
    prefix="/users/{user_id}/wallet", tags=["wallet"], dependencies=[Depends(check_rate_limit)],
)


@router.get("/balance", response_model=WalletBalanceResponse)
async def get_balance(
    user_id: uuid.UUID,
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> WalletBalanceResponse:
    """Pending (inside the clearing window) and available balances, in cents."""
    require_self(current_user_id, user_id)
    balance = await payment_service.get_wallet_balance(db, user_id)
    return WalletBalanceResponse(
        user_id=balance.user_id,
        pending_cents=balance.pending_cents,
        available_cents=balance.available_cents,
        withdrawn_cents=balance.withdrawn_cents,
        total_cents=balance.total_cents,
        transactions=[PendingTransactionResponse.model_validate(t) for t in balance.transactions],
    )


@router.post("/withdraw", response_model=WithdrawalResultResponse, status_code=201)
async def withdraw(
    user_id: uuid.UUID,
    data: WithdrawalCreateRequest | None = None,
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> WithdrawalResultResponse:
    """Withdraw available funds to the payout destination on file.

    Whole payments are withdrawn oldest first, so the amount sent can be less
    than the amount requested.
    """
    require_self(current_user_id, user_id)
    result = await withdrawal_service.process_withdrawal(
        db, user_id, data.amount_cents if data else None, notifier=notifier,
    )
    return WithdrawalResultResponse.model_validate(result)


@router.get("/withdrawals", response_model=list[WithdrawalResponse])
async def list_withdrawals(
    user_id: uuid.UUID,
    current_user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> list[WithdrawalResponse]:
    require_self(current_user_id, user_id)
    withdrawals = await withdrawal_service.get_withdrawal_history(db, user_id)
    return [WithdrawalResponse.model_validate(w) for w in withdrawals]
