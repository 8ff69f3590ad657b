from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class UploadTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str | None = Field(default=None, alias="fileName")


class TemporaryCredentials(BaseModel):
    """STS credentials, serialized with the field names the COS browser SDK expects."""

    model_config = ConfigDict(populate_by_name=True)

    tmp_secret_id: str = Field(alias="TmpSecretId")
    tmp_secret_key: str = Field(alias="TmpSecretKey")
    token: str = Field(alias="Token")


class UploadTokenResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    credentials: TemporaryCredentials
    expired_time: int = Field(alias="expiredTime")
