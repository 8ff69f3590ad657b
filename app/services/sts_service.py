from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from tencentcloud.common import credential
from tencentcloud.common.exception.tencent_cloud_sdk_exception import (
    TencentCloudSDKException,
)
from tencentcloud.common.profile.client_profile import ClientProfile
from tencentcloud.common.profile.http_profile import HttpProfile
from tencentcloud.sts.v20180813 import models as sts_models
from tencentcloud.sts.v20180813 import sts_client

from app.core.errors import ConfigError, InvalidField, MissingField, StorageTokenError
from app.core.settings import Settings, get_settings
from app.models.upload import TemporaryCredentials, UploadTokenResponse

logger = logging.getLogger(__name__)

FEDERATION_TOKEN_NAME = "cos-upload-permission"


def check_file_name(file_name: str | None) -> str:
    if not file_name:
        raise MissingField("fileName is required")
    if file_name.startswith("/") or "*" in file_name:
        raise InvalidField("fileName must be a relative object name without wildcards")
    if ".." in file_name.replace("\\", "/").split("/"):
        raise InvalidField("fileName must not contain '..' segments")
    return file_name


class StsService:
    """Issues temporary COS credentials scoped to a single upload."""

    def __init__(self, settings: Settings | None = None, client: Any | None = None):
        self._settings = settings or get_settings()

        required = {
            "TENCENT_SECRET_ID": self._settings.tencent_secret_id,
            "TENCENT_SECRET_KEY": self._settings.tencent_secret_key,
            "COS_REGION": self._settings.cos_region,
            "COS_BUCKET": self._settings.cos_bucket,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            logger.error("Upload storage not configured, missing: %s", ", ".join(missing))
            raise ConfigError(
                f"Upload storage not configured. Please set {', '.join(missing)}."
            )

        self._client = client or self._build_client()

    def _build_client(self) -> sts_client.StsClient:
        http_profile = HttpProfile()
        http_profile.endpoint = self._settings.sts_endpoint
        client_profile = ClientProfile()
        client_profile.httpProfile = http_profile

        cred = credential.Credential(
            self._settings.tencent_secret_id, self._settings.tencent_secret_key
        )
        return sts_client.StsClient(cred, self._settings.cos_region, client_profile)

    def build_policy(self, file_name: str) -> dict[str, Any]:
        bucket = self._settings.cos_bucket
        region = self._settings.cos_region
        # Bucket names end with the owning account's AppId, e.g. "photos-1250000000".
        app_id = bucket.split("-")[-1]
        resource = (
            f"qcs::cos:{region}:uid/{app_id}:{bucket}/"
            f"{self._settings.upload_prefix}{file_name}"
        )
        return {
            "version": "2.0",
            "statement": [
                {
                    "effect": "allow",
                    "action": ["cos:PutObject"],
                    "resource": [resource],
                }
            ],
        }

    async def issue_upload_token(self, file_name: str | None) -> UploadTokenResponse:
        file_name = check_file_name(file_name)

        request = sts_models.GetFederationTokenRequest()
        request.Name = FEDERATION_TOKEN_NAME
        request.Policy = json.dumps(self.build_policy(file_name))
        request.DurationSeconds = self._settings.upload_token_ttl_s

        def _send():
            return self._client.GetFederationToken(request)

        try:
            response = await asyncio.to_thread(_send)
        except TencentCloudSDKException as e:
            logger.exception("Error getting federation token")
            raise StorageTokenError(str(e)) from e

        logger.info(
            "Issued upload token for %s (expires at %s)", file_name, response.ExpiredTime
        )
        creds = response.Credentials
        return UploadTokenResponse(
            credentials=TemporaryCredentials(
                tmp_secret_id=creds.TmpSecretId,
                tmp_secret_key=creds.TmpSecretKey,
                token=creds.Token,
            ),
            expired_time=response.ExpiredTime,
        )
