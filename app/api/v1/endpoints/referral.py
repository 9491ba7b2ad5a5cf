from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from app.core.database import get_db
from app.dependencies import get_current_user
from app.middlewares.rate_limit import limiter
from app.models import User
from app.schemas.referral import ReferralApplyOut, ReferralCodeRequest, ReferralStatsOut, ReferralValidateOut
from app.services.referral import apply_referral_code, get_referral_stats, mask_wallet, validate_referral_code

router = APIRouter()


@router.get("/stats", response_model=ReferralStatsOut)
def read_referral_stats(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_referral_stats(db, user.id, page=page, limit=limit)


@router.post("/validate", response_model=ReferralValidateOut)
@limiter.limit("20/minute")
def validate_code(request: Request, payload: ReferralCodeRequest, db: Session = Depends(get_db)):
    return validate_referral_code(db, payload.referral_code)


@router.post("/apply", response_model=ReferralApplyOut)
def apply_code(payload: ReferralCodeRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    referrer = apply_referral_code(db, user.id, payload.referral_code)
    return {"referrer_wallet": mask_wallet(referrer.wallet_address), "referrer_display_name": referrer.display_name}
