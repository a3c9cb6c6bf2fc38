from fastapi import APIRouter

from .endpoints import health, observability, points, referrals

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(points.router)
router.include_router(referrals.router)
router.include_router(observability.router)
