from fastapi import FastAPI

from app.api import chat_proxy, health, upload
from app.core.cors import CORSHeadersMiddleware
from app.core.errors import install_exception_handlers
from app.core.logging import configure_logging
from app.core.settings import get_settings


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(title=settings.app_name)

    app.add_middleware(CORSHeadersMiddleware)
    install_exception_handlers(app)

    app.include_router(chat_proxy.router, prefix="/api")
    app.include_router(upload.router, prefix="/api")

    app.include_router(health.router)

    return app


app = create_app()
