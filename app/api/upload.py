import logging

from fastapi import APIRouter, Depends

from app.core.errors import ProxyError, ProxyInternalError
from app.dependencies import get_sts_service
from app.models.upload import UploadTokenRequest, UploadTokenResponse
from app.services.sts_service import StsService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/upload", response_model=UploadTokenResponse)
async def upload_token_endpoint(
    request: UploadTokenRequest,
    sts_service: StsService = Depends(get_sts_service),
) -> UploadTokenResponse:
    """
    Exchange the server's cloud credentials for a temporary token that only
    allows uploading ``fileName`` under the configured prefix. The browser then
    uploads straight to COS with it.
    """
    try:
        return await sts_service.issue_upload_token(request.file_name)
    except ProxyError:
        raise
    except Exception as e:
        logger.exception("Upload token endpoint failed")
        raise ProxyInternalError(str(e))
