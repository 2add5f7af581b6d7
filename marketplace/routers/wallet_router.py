from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..auth import get_current_producer
from ..crud import wallets as crud_wallets
from ..database import get_db
from ..errors import http_error
from ..models import User
from ..schemas import WalletOut, WithdrawalOut, WithdrawRequest

router = APIRouter(prefix="/wallet", tags=["wallet"])

RECENT_TRANSACTIONS = 20


@router.get("", response_model=WalletOut)
def get_wallet(
    current_user: User = Depends(get_current_producer),
    db: Session = Depends(get_db),
):
    try:
        wallet = crud_wallets.get_wallet_for_user(db, current_user)
    except ValueError as e:
        raise http_error(e)
    return {
        "id": wallet.id,
        "producer_id": wallet.producer_id,
        "balance": wallet.balance,
        "pending_balance": wallet.pending_balance,
        "total_earned": wallet.total_earned,
        "total_withdrawn": wallet.total_withdrawn,
        "transactions": wallet.transactions[:RECENT_TRANSACTIONS],
    }


@router.post("/withdraw", response_model=WithdrawalOut, status_code=status.HTTP_201_CREATED)
def withdraw(
    body: WithdrawRequest,
    current_user: User = Depends(get_current_producer),
    db: Session = Depends(get_db),
):
    """Ask for a payout of ``amount`` to the IBAN on the producer profile."""
    try:
        return crud_wallets.request_withdrawal(db, current_user, body.amount)
    except ValueError as e:
        raise http_error(e)
