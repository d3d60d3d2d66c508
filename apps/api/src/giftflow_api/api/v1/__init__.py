from fastapi import APIRouter

from .endpoints import (
    conditions,
    credits,
    events,
    gift_cards,
    health,
    observability,
    recipients,
    redemptions,
    webhooks,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(webhooks.router)
router.include_router(conditions.router)
router.include_router(gift_cards.router)
router.include_router(redemptions.router)
router.include_router(credits.router)
router.include_router(recipients.router)
router.include_router(events.router)
router.include_router(observability.router)
