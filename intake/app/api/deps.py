"""
Request-scoped dependency providers.

Long-lived collaborators are built once in the application lifespan and
stored on app.state; the providers below hand them to route handlers.
"""

import logging
from typing import Annotated, Optional

from fastapi import Depends, Request

from intake.app.core.config import Settings
from intake.app.core.errors import UnauthorizedError
from intake.app.services.captcha import CaptchaVerifier
from intake.app.services.finalizer import RegistrationFinalizer
from intake.app.services.local_storage import LocalUploadStore
from intake.app.services.object_keys import ObjectKeyResolver
from intake.app.services.upload_tokens import UploadTokenIssuer

logger = logging.getLogger("intake.api")

UPLOAD_TOKEN_PARAM = "uploadToken"
UPLOAD_TOKEN_COOKIE = "upload_token"

FORM_CONTENT_TYPES = (
    "application/x-www-form-urlencoded",
    "multipart/form-data",
)


# =============================================================================
# Service providers
# =============================================================================

def get_app_settings(request: Request) -> Settings:
    settings: Optional[Settings] = getattr(request.app.state, "settings", None)
    if settings is None:
        raise RuntimeError("settings not initialized")
    return settings


def get_captcha_verifier(request: Request) -> CaptchaVerifier:
    return request.app.state.captcha_verifier


def get_upload_tokens(request: Request) -> UploadTokenIssuer:
    return request.app.state.upload_tokens


def get_object_keys(request: Request) -> ObjectKeyResolver:
    return request.app.state.object_keys


def get_finalizer(request: Request) -> RegistrationFinalizer:
    return request.app.state.finalizer


def get_local_store(request: Request) -> LocalUploadStore:
    return request.app.state.local_store


# =============================================================================
# Upload token gate
# =============================================================================

async def extract_upload_token(request: Request) -> str:
    """
    Locate an upload token on the request.

    Sources in order: query parameter, form field (form-encoded and
    multipart bodies only), bearer Authorization header, cookie. The first
    non-empty value wins; "" when none is present.
    """
    token = request.query_params.get(UPLOAD_TOKEN_PARAM, "")
    if token:
        return token

    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        value = form.get(UPLOAD_TOKEN_PARAM)
        if isinstance(value, str) and value:
            return value

    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()

    return request.cookies.get(UPLOAD_TOKEN_COOKIE, "")


async def require_upload_token(
    request: Request,
    upload_tokens: Annotated[UploadTokenIssuer, Depends(get_upload_tokens)],
) -> str:
    """
    Admit the request only when it carries a valid upload token.

    Returns the raw CAPTCHA token the upload token was issued for.
    """
    token = await extract_upload_token(request)
    if not token:
        logger.info("upload_token_missing", extra={"path": request.url.path})
        raise UnauthorizedError("Upload token is required")

    valid, raw_captcha_token = upload_tokens.validate(token)
    if not valid:
        raise UnauthorizedError("Invalid or expired upload token")

    return raw_captcha_token


UploadTokenGuard = Annotated[str, Depends(require_upload_token)]
