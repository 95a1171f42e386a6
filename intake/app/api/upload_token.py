"""
CAPTCHA-to-upload-token exchange.

The client solves a Turnstile challenge, posts the widget token here and
receives a short-lived upload token that admits presigned-URL requests.
"""

import json
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from intake.app.api.deps import (
    FORM_CONTENT_TYPES,
    get_captcha_verifier,
    get_upload_tokens,
)
from intake.app.api.responses import success_response
from intake.app.core.errors import ClientInputError
from intake.app.schemas.responses import UploadTokenData, UploadTokenRequest
from intake.app.services.captcha import CaptchaVerifier
from intake.app.services.upload_tokens import UploadTokenIssuer

router = APIRouter(tags=["Upload Authorization"])


async def _read_token_request(request: Request) -> UploadTokenRequest:
    content_type = request.headers.get("content-type", "")
    try:
        if content_type.startswith(FORM_CONTENT_TYPES):
            form = await request.form()
            return UploadTokenRequest.model_validate(dict(form))
        body = await request.body()
        if not body:
            return UploadTokenRequest()
        return UploadTokenRequest.model_validate(json.loads(body))
    except (ValueError, ValidationError) as exc:
        raise ClientInputError("Invalid request format", errors=str(exc)) from exc


@router.post(
    "/upload-token",
    summary="Exchange a verified CAPTCHA token for an upload token",
)
async def create_upload_token(
    request: Request,
    verifier: Annotated[CaptchaVerifier, Depends(get_captcha_verifier)],
    upload_tokens: Annotated[UploadTokenIssuer, Depends(get_upload_tokens)],
) -> JSONResponse:
    payload = await _read_token_request(request)

    if not payload.turnstile_token:
        raise ClientInputError("Turnstile token is required")

    client_ip = request.client.host if request.client else ""
    if not await verifier.verify(payload.turnstile_token, client_ip):
        raise ClientInputError("Invalid Turnstile token")

    issued = upload_tokens.issue(payload.turnstile_token)

    return success_response(
        "Upload token generated successfully",
        UploadTokenData(
            upload_token=issued.token,
            expires_in=issued.expires_at - issued.issued_at,
        ),
    )
