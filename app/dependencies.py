from __future__ import annotations

from fastapi import Depends

from app.core.settings import Settings, get_settings
from app.services.chat_proxy_service import ChatProxyService
from app.services.sts_service import StsService


def get_chat_proxy_service(settings: Settings = Depends(get_settings)) -> ChatProxyService:
    return ChatProxyService(settings=settings)


def get_sts_service(settings: Settings = Depends(get_settings)) -> StsService:
    return StsService(settings=settings)
