from app.guide.app.services import (
    ChatService,
    GuideService,
    GuideServiceError,
    get_chat_service,
    get_guide_service,
)

__all__ = [
    "ChatService",
    "GuideService",
    "GuideServiceError",
    "get_chat_service",
    "get_guide_service",
]
