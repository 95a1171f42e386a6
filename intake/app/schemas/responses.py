"""
Response models for the intake HTTP surface.

Every JSON response is wrapped in APIResponse. Fields left as None are
omitted from the serialized body.
"""

from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")


class APIResponse(BaseModel, Generic[T]):
    success: bool
    message: str
    data: Optional[T] = None
    errors: Optional[Any] = None


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Upload authorization
# ---------------------------------------------------------------------------

class UploadTokenRequest(_CamelModel):
    turnstile_token: str = Field(default="", alias="turnstileToken")


class UploadTokenData(_CamelModel):
    upload_token: str = Field(alias="uploadToken")
    expires_in: int = Field(
        alias="expiresIn",
        description="Seconds until the upload token expires",
    )


class PresignedUploadData(BaseModel):
    url: str
    key: str


class PresignedDownloadData(_CamelModel):
    download_url: str = Field(alias="downloadUrl")
    key: str


# ---------------------------------------------------------------------------
# Registrations
# ---------------------------------------------------------------------------

class ResidentRegisterData(_CamelModel):
    register_id: str = Field(alias="registerID")


class CompanyRegisterData(_CamelModel):
    register_id: str = Field(alias="registerID")
    employer_id: str = Field(alias="employerID")


class ResidentFinalizeData(_CamelModel):
    resident_name: str = Field(alias="residentName")
    nats_response: Any = Field(alias="natsResponse")


class CompanyFinalizeData(_CamelModel):
    id: str
    nats_response: Any = Field(alias="natsResponse")


# ---------------------------------------------------------------------------
# Direct uploads and client configuration
# ---------------------------------------------------------------------------

class LocalUploadData(_CamelModel):
    status: str = "success"
    filename: str
    bytes: int
    saved_path: str = Field(alias="savedPath")
    project_id: str = Field(alias="projectId")


class ClientConfigData(_CamelModel):
    max_general_files: str = Field(alias="maxGeneralFiles")
    max_plate_numbers: str = Field(alias="maxPlateNumbers")
    concurrent_uploads: str = Field(alias="concurrentUploads")
