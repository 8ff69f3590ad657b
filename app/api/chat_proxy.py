import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from app.core.errors import ProxyError, ProxyInternalError
from app.dependencies import get_chat_proxy_service
from app.models.chat import ProxyRequest
from app.services.chat_proxy_service import SSE_HEADERS, ChatProxyService
from app.services.messages import validate_proxy_request

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/gemini-proxy", response_model=None)
async def chat_proxy_endpoint(
    request: ProxyRequest,
    proxy_service: ChatProxyService = Depends(get_chat_proxy_service),
) -> Response:
    """
    Forward a conversation to the upstream chat-completion API.

    With ``stream: false`` the upstream JSON is returned as-is. With
    ``stream: true`` the upstream SSE bytes are relayed to the client as they
    arrive and mirrored to the log.
    """
    logger.info("New request to /api/gemini-proxy")
    try:
        validate_proxy_request(request)
        logger.info("Requesting model: %s, stream: %s", request.model_id, request.stream)

        if request.stream:
            relay = await proxy_service.open_stream(request)
            return StreamingResponse(
                relay.client_stream(),
                status_code=200,
                media_type="text/event-stream",
                headers=SSE_HEADERS,
                background=BackgroundTask(relay.wait_closed),
            )

        logger.info("Sending non-streamed response to client...")
        data = await proxy_service.complete(request)
        return JSONResponse(status_code=200, content=data)
    except ProxyError:
        raise
    except Exception as e:
        logger.exception("Chat proxy endpoint failed")
        raise ProxyInternalError(str(e))
