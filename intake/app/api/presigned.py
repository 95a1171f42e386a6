from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from intake.app.api.deps import UploadTokenGuard, get_object_keys
from intake.app.api.responses import success_response
from intake.app.core.errors import InvalidArgumentError
from intake.app.schemas.responses import PresignedDownloadData, PresignedUploadData
from intake.app.services.object_keys import ObjectKeyResolver

router = APIRouter(prefix="/presigned", tags=["Presigned URLs"])


# =============================================================================
# GET /presigned
# =============================================================================

@router.get(
    "",
    summary="Presigned PUT URL for one registration document",
)
async def get_presigned_upload_url(
    _captcha_token: UploadTokenGuard,
    object_keys: Annotated[ObjectKeyResolver, Depends(get_object_keys)],
    register_id: Annotated[str, Query(alias="registerId")] = "",
    file_type: Annotated[str, Query(alias="fileType")] = "",
    file_name: Annotated[str, Query(alias="fileName")] = "",
    employer_id: Annotated[Optional[str], Query(alias="employerId")] = None,
    plate_number: Annotated[Optional[str], Query(alias="plateNumber")] = None,
    content_type: Annotated[Optional[str], Query(alias="contentType")] = None,
) -> JSONResponse:
    """
    Resolve the object key for the upload and sign a PUT URL for it.

    Requires a valid upload token. The content type, when given, is part
    of the signature and must be sent unchanged with the upload.
    """
    key = object_keys.resolve_key(
        register_id,
        file_type,
        file_name,
        employer_id=employer_id,
        plate_number=plate_number,
    )
    url = object_keys.sign_upload(key, content_type)

    return success_response(
        "Presigned URL generated successfully",
        PresignedUploadData(url=url, key=key),
    )


# =============================================================================
# GET /presigned/download
# =============================================================================

@router.get(
    "/download",
    summary="Presigned GET URL for an uploaded document",
)
async def get_presigned_download_url(
    object_keys: Annotated[ObjectKeyResolver, Depends(get_object_keys)],
    key: Annotated[str, Query()] = "",
) -> JSONResponse:
    if not key:
        raise InvalidArgumentError("Missing key", errors="key is required")

    url = object_keys.sign_download(key)

    return success_response(
        "Download URL generated successfully",
        PresignedDownloadData(download_url=url, key=key),
    )
