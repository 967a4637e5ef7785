"""API module."""

from fastapi import APIRouter

from .endpoints import cache, chat, knowledge

router = APIRouter()

# Include endpoint routers
router.include_router(chat.router, prefix="/chat", tags=["chat"])
router.include_router(knowledge.router, prefix="/knowledge", tags=["knowledge"])
router.include_router(cache.router, prefix="/cache", tags=["cache"])
