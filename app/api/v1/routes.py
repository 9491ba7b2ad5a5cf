from fastapi import APIRouter
from app.api.v1.endpoints import wallet, game, referral

router = APIRouter()

router.include_router(wallet.router, prefix="/wallet", tags=["wallet"])
router.include_router(game.router, prefix="/game", tags=["game"])
router.include_router(referral.router, prefix="/referral", tags=["referral"])
