from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from intake.app.api.deps import get_app_settings
from intake.app.api.responses import success_response
from intake.app.core.config import Settings
from intake.app.schemas.responses import ClientConfigData

router = APIRouter(tags=["Client Configuration"])


@router.get("/config", summary="Upload limits consumed by the web client")
async def get_client_config(
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> JSONResponse:
    # Values are strings on the wire.
    return success_response(
        "Configuration retrieved successfully",
        ClientConfigData(
            max_general_files=str(settings.max_general_files),
            max_plate_numbers=str(settings.max_plate_numbers),
            concurrent_uploads=str(settings.concurrent_uploads),
        ),
    )
