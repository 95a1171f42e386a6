import logging
from pathlib import Path
from typing import Annotated, Callable

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException

from intake.app.api.deps import get_local_store
from intake.app.api.responses import success_response
from intake.app.core.errors import ClientInputError, InvalidArgumentError
from intake.app.schemas.responses import LocalUploadData
from intake.app.services.local_storage import LocalUploadStore

logger = logging.getLogger("intake.api")

router = APIRouter(prefix="/registers/company", tags=["Direct Uploads"])

LocalStore = Annotated[LocalUploadStore, Depends(get_local_store)]


async def _first_file_part(request: Request) -> UploadFile:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("multipart/form-data"):
        raise ClientInputError(
            "Invalid multipart form data",
            errors="request Content-Type isn't multipart/form-data",
        )
    try:
        form = await request.form()
    except (MultiPartException, StarletteHTTPException) as exc:
        detail = getattr(exc, "message", None) or getattr(exc, "detail", str(exc))
        raise ClientInputError("Invalid multipart form data", errors=detail) from exc

    for _, value in form.multi_items():
        if isinstance(value, UploadFile):
            if not value.filename:
                raise InvalidArgumentError("Invalid file name", errors="filename is required")
            return value
    raise ClientInputError("No file parts found")


async def _store(
    request: Request,
    store: LocalUploadStore,
    registration_id: str,
    destination: Callable[[str], Path],
) -> LocalUploadData:
    part = await _first_file_part(request)
    try:
        try:
            path = destination(part.filename)
        except ValueError as exc:
            logger.warning(
                "local_upload_path_rejected",
                extra={"register_id": registration_id, "upload_filename": part.filename},
            )
            raise InvalidArgumentError("Invalid upload path", errors=str(exc)) from exc

        stored = await store.save(part, path)
    finally:
        await part.close()

    return LocalUploadData(
        filename=stored.filename,
        bytes=stored.bytes,
        saved_path=stored.saved_path,
        project_id=registration_id,
    )


@router.post(
    "/{registration_id}/plates/{plate_number}",
    summary="Upload a plate document to local storage",
)
async def upload_plate_file(
    request: Request,
    registration_id: str,
    plate_number: str,
    store: LocalStore,
) -> JSONResponse:
    data = await _store(
        request,
        store,
        registration_id,
        lambda filename: store.plate_path(registration_id, plate_number, filename),
    )
    return success_response("Plate file uploaded successfully", data)


@router.post(
    "/{registration_id}/general",
    summary="Upload a general company document to local storage",
)
async def upload_general_file(
    request: Request,
    registration_id: str,
    store: LocalStore,
) -> JSONResponse:
    data = await _store(
        request,
        store,
        registration_id,
        lambda filename: store.general_path(registration_id, filename),
    )
    return success_response("General file uploaded successfully", data)
