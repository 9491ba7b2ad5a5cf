from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session
from app.core.database import get_db
from app.dependencies import get_current_user
from app.middlewares.rate_limit import limiter
from app.models import User
from app.schemas.wallet import (
    CreditOut,
    DepositRequest,
    DepositResponse,
    DepositWebhookPayload,
    TransactionOut,
    WebhookResult,
    WithdrawOut,
    WithdrawRequest,
)
from app.services.deposits import create_deposit_metadata, handle_deposit_webhook
from app.services.wallet import get_credit, list_transactions
from app.services.withdrawals import withdraw

router = APIRouter()


@router.post("/deposit", response_model=DepositResponse)
@limiter.limit("10/minute")
def create_deposit(request: Request, payload: DepositRequest, db: Session = Depends(get_db)):
    metadata = create_deposit_metadata(db, payload.wallet_address, payload.amount)
    return {"metadata": metadata}


@router.get("/credit", response_model=CreditOut)
def read_credit(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return {"credit": get_credit(db, user.id)}


@router.get("/transactions", response_model=list[TransactionOut])
def read_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return list_transactions(db, user.id, limit=limit)


@router.post("/webhook/deposit", response_model=WebhookResult)
def deposit_webhook(
    payload: DepositWebhookPayload,
    x_webhook_secret: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    return handle_deposit_webhook(db, payload, secret_header=x_webhook_secret)


@router.post("/withdraw", response_model=WithdrawOut)
@limiter.limit("5/minute")
def create_withdrawal(request: Request, payload: WithdrawRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return withdraw(db, user.id, payload.recipient_address, payload.amount)
