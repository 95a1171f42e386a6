from typing import Any, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from intake.app.schemas.responses import APIResponse


def _render(envelope: APIResponse, status_code: int) -> JSONResponse:
    # Only the envelope's own optional members are dropped; None values
    # inside data (e.g. a null broker reply) are kept.
    content = envelope.model_dump(include={"success", "message"})
    if envelope.data is not None:
        content["data"] = jsonable_encoder(envelope.data, by_alias=True)
    if envelope.errors is not None:
        content["errors"] = jsonable_encoder(envelope.errors)
    return JSONResponse(status_code=status_code, content=content)


def success_response(
    message: str,
    data: Optional[Any] = None,
    status_code: int = 200,
) -> JSONResponse:
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    return _render(
        APIResponse(success=True, message=message, data=data),
        status_code,
    )


def error_response(
    status_code: int,
    message: str,
    errors: Optional[Any] = None,
) -> JSONResponse:
    return _render(
        APIResponse(success=False, message=message, errors=errors),
        status_code,
    )
