from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class MessagePart(BaseModel):
    # Clients may send non-text parts (inline data etc.); only text is forwarded.
    model_config = ConfigDict(extra="allow")

    text: str | None = None


class ConversationMessage(BaseModel):
    role: str  # "user" or "model"
    parts: list[MessagePart] = Field(default_factory=list)


class ProxyRequest(BaseModel):
    """Inbound body of the chat proxy.

    ``conversation_history`` and ``model_id`` are optional at the schema level so
    that their absence is reported as a missing field rather than a generic
    validation failure.
    """

    model_config = ConfigDict(populate_by_name=True)

    conversation_history: list[ConversationMessage] | None = Field(
        default=None, alias="conversationHistory"
    )
    model_id: str | None = Field(default=None, alias="modelId")
    stream: bool = False


class UpstreamMessage(BaseModel):
    role: str
    content: str


class UpstreamRequest(BaseModel):
    model: str
    messages: list[UpstreamMessage]
    stream: bool = False
