"""
Object-key derivation and presigned URL issuance.

Uploaded documents never pass through this service: the client asks for a
presigned PUT URL scoped to a deterministic object key, uploads the bytes
straight to storage, and later submits the key as part of its registration
form. Keys are only as unique as the caller-supplied file name; a second
upload with the same name overwrites the first.
"""

import logging
import re
from enum import Enum
from typing import Any, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from intake.app.core.config import Settings
from intake.app.core.errors import (
    ConfigurationError,
    DependencyError,
    InvalidArgumentError,
)

logger = logging.getLogger("intake.object_keys")

KEY_PREFIX = "uploads"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
PRESIGN_EXPIRY_SECONDS = 900

OBJECT_KEY_PATTERN = re.compile(
    r"^uploads/(?P<registration_id>[^/]+)/(?P<folder>plates|general)/(?P<name>[^/]+)$"
)


class FileType(str, Enum):
    PLATE = "plate"
    GENERAL = "general"


def resolve_key(
    registration_id: str,
    file_type: str,
    file_name: str,
    employer_id: Optional[str] = None,
    plate_number: Optional[str] = None,
) -> str:
    """
    Map an upload request onto its storage object key.

        plate     uploads/{registration_id}/plates/{plate_number}_{file_name}
        general   uploads/{registration_id}/general/{file_name}
                  uploads/{registration_id}/general/{employer_id}_{file_name}

    Raises InvalidArgumentError for an unknown file type or a missing
    required part.
    """
    try:
        kind = FileType(file_type)
    except ValueError:
        raise InvalidArgumentError(
            "Invalid fileType",
            errors="fileType must be either 'plate' or 'general'",
        ) from None

    if not registration_id:
        raise InvalidArgumentError(
            "Missing registerId",
            errors="registerId is required",
        )
    if not file_name:
        raise InvalidArgumentError(
            "Missing fileName",
            errors="fileName is required",
        )

    if kind is FileType.PLATE:
        if not plate_number:
            raise InvalidArgumentError(
                "Missing plateNumber",
                errors="plateNumber is required for plate files",
            )
        return f"{KEY_PREFIX}/{registration_id}/plates/{plate_number}_{file_name}"

    if employer_id:
        return f"{KEY_PREFIX}/{registration_id}/general/{employer_id}_{file_name}"
    return f"{KEY_PREFIX}/{registration_id}/general/{file_name}"


def is_object_key(key: str, registration_id: Optional[str] = None) -> bool:
    """
    Check that `key` has the shape produced by resolve_key, optionally
    scoped to one registration. Object existence is not checked.
    """
    match = OBJECT_KEY_PATTERN.match(key)
    if match is None:
        return False
    if registration_id and match.group("registration_id") != registration_id:
        return False
    return True


class ObjectKeyResolver:
    """
    Issues presigned PUT/GET URLs on an S3-compatible object store.

    Signing is a local computation; no request reaches the store. The
    boto3 client is created on first use so that a deployment without
    storage credentials still serves every other endpoint.
    """

    def __init__(
        self,
        settings: Settings,
        s3_client: Optional[Any] = None,
    ) -> None:
        self.settings = settings
        self.expires_in = settings.presign_expiry_seconds or PRESIGN_EXPIRY_SECONDS
        self._s3_client = s3_client

    resolve_key = staticmethod(resolve_key)

    @property
    def bucket_name(self) -> str:
        if not self.settings.oss_bucket_name:
            raise ConfigurationError("OSS_BUCKET_NAME")
        return self.settings.oss_bucket_name

    @property
    def s3_client(self) -> Any:
        if self._s3_client is None:
            self._s3_client = self._build_client()
        return self._s3_client

    def _build_client(self) -> Any:
        settings = self.settings
        if not settings.oss_endpoint:
            raise ConfigurationError("OSS_ENDPOINT")
        if not settings.oss_access_key_id:
            raise ConfigurationError("OSS_ACCESS_KEY_ID")
        secret = settings.oss_access_key_secret.get_secret_value()
        if not secret:
            raise ConfigurationError("OSS_ACCESS_KEY_SECRET")

        endpoint = settings.oss_endpoint
        if "://" not in endpoint:
            endpoint = f"https://{endpoint}"

        return boto3.client(
            "s3",
            endpoint_url=endpoint,
            region_name=settings.oss_region or None,
            aws_access_key_id=settings.oss_access_key_id,
            aws_secret_access_key=secret,
            config=BotoConfig(
                signature_version="s3v4",
                s3={"addressing_style": "virtual"},
            ),
        )

    def sign_upload(
        self,
        object_key: str,
        content_type: Optional[str] = None,
    ) -> str:
        """Presigned PUT URL for `object_key`; the content type is signed."""
        return self._sign(
            "put_object",
            {
                "Bucket": self.bucket_name,
                "Key": object_key,
                "ContentType": content_type or DEFAULT_CONTENT_TYPE,
            },
            http_method="PUT",
        )

    def sign_download(self, object_key: str) -> str:
        """Presigned GET URL for `object_key`."""
        return self._sign(
            "get_object",
            {"Bucket": self.bucket_name, "Key": object_key},
            http_method="GET",
        )

    def _sign(self, operation: str, params: dict, http_method: str) -> str:
        client = self.s3_client
        try:
            url = client.generate_presigned_url(
                operation,
                Params=params,
                ExpiresIn=self.expires_in,
                HttpMethod=http_method,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error(
                "presign_failed",
                extra={
                    "operation": operation,
                    "object_key": params.get("Key"),
                    "error": str(exc),
                },
            )
            raise DependencyError(
                "Failed to generate signed URL",
                errors=str(exc),
            ) from exc

        logger.info(
            "presigned_url_issued",
            extra={
                "operation": operation,
                "object_key": params.get("Key"),
                "expires_in": self.expires_in,
            },
        )
        return url
