from fastapi import APIRouter

from astralis_api.api.v1.endpoints import billing, chat, system

router = APIRouter()
router.include_router(billing.router)
router.include_router(chat.router)
router.include_router(system.router)
