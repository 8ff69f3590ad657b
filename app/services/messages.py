from __future__ import annotations

from collections.abc import Sequence

from app.core.errors import MalformedMessage, MissingField
from app.models.chat import (
    ConversationMessage,
    ProxyRequest,
    UpstreamMessage,
    UpstreamRequest,
)

ROLE_ALIASES = {"model": "assistant"}


def validate_proxy_request(request: ProxyRequest) -> ProxyRequest:
    # An empty history is allowed; only absence is an error.
    if request.conversation_history is None or not request.model_id:
        raise MissingField("Missing conversationHistory or modelId in request body.")
    return request


def first_text(message: ConversationMessage) -> str | None:
    for part in message.parts:
        if part.text is not None:
            return part.text
    return None


def to_upstream_messages(
    history: Sequence[ConversationMessage], system_instruction: str
) -> list[UpstreamMessage]:
    """Map the client's history onto chat-completion messages.

    The system instruction is always the first message, "model" turns become
    "assistant" and every other role is forwarded as-is.
    """
    messages = [UpstreamMessage(role="system", content=system_instruction)]

    for index, msg in enumerate(history):
        text = first_text(msg)
        if text is None:
            raise MalformedMessage(index)
        messages.append(
            UpstreamMessage(role=ROLE_ALIASES.get(msg.role, msg.role), content=text)
        )

    return messages


def build_upstream_request(
    request: ProxyRequest, system_instruction: str
) -> UpstreamRequest:
    request = validate_proxy_request(request)
    return UpstreamRequest(
        model=request.model_id,
        messages=to_upstream_messages(request.conversation_history, system_instruction),
        stream=request.stream,
    )
