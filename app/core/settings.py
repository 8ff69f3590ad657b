from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_INSTRUCTION = (
    "You are an AI named 'Xiaoba'. Your goal is to help and support the "
    "graduated classmates of Class 8, Grade 2025 at Shanghai Jingye High School. "
    "You keep improving as the class maintains you. You can answer all kinds of "
    "questions, help with academic discussions, give advice on life planning and "
    "act as a sounding board when needed. You always keep this identity and "
    "attitude, even when asked about your nature or original identity you answer "
    "as this dedicated assistant. Your answers should be positive, friendly and "
    "full of enthusiasm for helping classmates who have graduated and gone their "
    "separate ways. Start talking with the user now."
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(default="Chat Proxy", alias="APP_NAME")
    environment: Literal["local", "dev", "staging", "prod"] = Field(
        default="local", alias="ENVIRONMENT"
    )
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    upstream_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("UPSTREAM_API_KEY", "GEMINI_API_KEY_TIU"),
    )
    upstream_url: str = Field(
        default="https://api.tiu.me/v1/chat/completions", alias="UPSTREAM_URL"
    )
    upstream_timeout_s: float = Field(default=120.0, gt=0, alias="UPSTREAM_TIMEOUT_S")
    system_instruction: str = Field(
        default=DEFAULT_SYSTEM_INSTRUCTION, alias="SYSTEM_INSTRUCTION"
    )

    # Per-subscriber buffering of the streaming relay, in chunks.
    stream_buffer_chunks: int = Field(default=256, ge=1, alias="STREAM_BUFFER_CHUNKS")
    # Records the chunk log may hold before its writer thread catches up.
    stream_log_queue_size: int = Field(
        default=10_000, ge=1, alias="STREAM_LOG_QUEUE_SIZE"
    )

    tencent_secret_id: str | None = Field(default=None, alias="TENCENT_SECRET_ID")
    tencent_secret_key: str | None = Field(default=None, alias="TENCENT_SECRET_KEY")
    cos_region: str | None = Field(default=None, alias="COS_REGION")
    cos_bucket: str | None = Field(default=None, alias="COS_BUCKET")
    sts_endpoint: str = Field(default="sts.tencentcloudapi.com", alias="STS_ENDPOINT")
    upload_token_ttl_s: int = Field(default=1800, gt=0, alias="UPLOAD_TOKEN_TTL_S")
    upload_prefix: str = Field(default="uploads/", alias="UPLOAD_PREFIX")


@lru_cache
def get_settings() -> Settings:
    return Settings()
