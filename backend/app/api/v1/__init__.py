from fastapi import APIRouter

from app.api.v1.chat import router as chat_router
from app.api.v1.guide import router as guide_router

router = APIRouter(tags=["v1"])

router.include_router(guide_router)
router.include_router(chat_router)
