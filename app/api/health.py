import logging
from typing import Any

from fastapi import APIRouter, Depends

from app.core.settings import Settings, get_settings


logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
def root_health_check(settings: Settings = Depends(get_settings)) -> dict[str, str]:
    return {"status": "running", "service": settings.app_name}


@router.get("/health")
def health_check(settings: Settings = Depends(get_settings)) -> dict[str, Any]:
    """Liveness plus a hint of which handlers can serve requests."""
    upload_configured = all(
        (
            settings.tencent_secret_id,
            settings.tencent_secret_key,
            settings.cos_region,
            settings.cos_bucket,
        )
    )
    checks = {
        "upstream_configured": bool(settings.upstream_api_key),
        "upload_configured": upload_configured,
    }
    if not all(checks.values()):
        logger.debug("Health check with incomplete configuration: %s", checks)
    return {"status": "ok", **checks}
