import logging
import sys
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from intake.app.api.client_config import router as client_config_router
from intake.app.api.presigned import router as presigned_router
from intake.app.api.registers import router as registers_router
from intake.app.api.responses import error_response
from intake.app.api.upload_token import router as upload_token_router
from intake.app.api.uploads import router as uploads_router
from intake.app.core.config import Settings, get_settings
from intake.app.core.errors import IntakeError
from intake.app.core.logging import configure_logging
from intake.app.services.broker import Broker, NatsBroker
from intake.app.services.captcha import VERIFY_TIMEOUT_SECONDS, CaptchaVerifier
from intake.app.services.finalizer import RegistrationFinalizer
from intake.app.services.local_storage import LocalUploadStore
from intake.app.services.object_keys import ObjectKeyResolver
from intake.app.services.upload_tokens import UploadTokenIssuer

logger = logging.getLogger("intake.main")


def get_app_version() -> str:
    try:
        return version("registration-intake")
    except PackageNotFoundError:
        return "0.1.0"


def _build_lifespan(
    settings: Optional[Settings],
    broker: Optional[Broker],
    http_client: Optional[httpx.AsyncClient],
    object_keys: Optional[ObjectKeyResolver],
):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Build the shared collaborators and tear them down on shutdown.

        Guarantees:
        - Fail-fast startup if the broker is unreachable
        - One persistent HTTP client for the CAPTCHA provider
        - Storage, CAPTCHA and subject settings are checked per request
        """
        app_settings = settings or get_settings()
        configure_logging(app_settings.log_level)

        logger.info(
            "intake_startup_begin",
            extra={"service": "intake", "version": get_app_version()},
        )

        app.state.settings = app_settings

        # ------------------------------------------------------------------
        # Broker connection (FAIL FAST)
        # ------------------------------------------------------------------
        owns_broker = broker is None
        if owns_broker:
            try:
                app.state.broker = await NatsBroker.connect(app_settings.nats_url)
            except Exception:
                logger.exception(
                    "nats_connection_failed",
                    extra={"url": app_settings.nats_url or "default"},
                )
                raise
        else:
            app.state.broker = broker

        # ------------------------------------------------------------------
        # Persistent HTTP client for CAPTCHA verification
        # ------------------------------------------------------------------
        owns_http_client = http_client is None
        app.state.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=VERIFY_TIMEOUT_SECONDS, connect=5.0),
            headers={"User-Agent": f"registration-intake/{get_app_version()}"},
        )

        app.state.captcha_verifier = CaptchaVerifier(
            secret_key=app_settings.turnstile_secret_key.get_secret_value(),
            http_client=app.state.http_client,
            verify_url=app_settings.turnstile_verify_url,
        )
        app.state.upload_tokens = UploadTokenIssuer(app_settings.signing_secret())
        app.state.object_keys = object_keys or ObjectKeyResolver(app_settings)
        app.state.finalizer = RegistrationFinalizer(app_settings, app.state.broker)
        app.state.local_store = LocalUploadStore(app_settings.upload_dir)

        logger.info("intake_startup_complete")

        try:
            yield
        finally:
            logger.info("intake_shutdown_begin")

            if owns_http_client:
                try:
                    await app.state.http_client.aclose()
                except Exception:
                    logger.warning("http_client_shutdown_failed")

            if owns_broker:
                try:
                    await app.state.broker.close()
                except Exception:
                    logger.warning("broker_shutdown_failed")

    return lifespan


# =============================================================================
# Exception handlers
# =============================================================================

async def handle_intake_error(request: Request, exc: IntakeError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        extra={
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_type": type(exc).__name__,
            "error": str(exc),
        },
    )
    return error_response(exc.status_code, exc.message, exc.errors)


async def handle_http_error(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    return error_response(exc.status_code, str(exc.detail))


async def handle_request_validation_error(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ())),
            "message": error.get("msg", ""),
        }
        for error in exc.errors()
    ]
    return error_response(400, "Invalid input format", errors)


# =============================================================================
# Application factory
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    broker: Optional[Broker] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    object_keys: Optional[ObjectKeyResolver] = None,
) -> FastAPI:
    """
    Application factory for the registration intake API.

    Collaborators passed in are used as-is and are not closed on
    shutdown; anything omitted is built from settings in the lifespan.
    """
    app = FastAPI(
        title="Registration Intake API",
        description=(
            "CAPTCHA-gated document uploads and registration "
            "finalization over NATS request/reply."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        lifespan=_build_lifespan(settings, broker, http_client, object_keys),
    )

    cors_origins = (settings or get_settings()).cors_allow_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(IntakeError, handle_intake_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)

    app.include_router(client_config_router)
    app.include_router(upload_token_router)
    app.include_router(presigned_router)
    app.include_router(registers_router)
    app.include_router(uploads_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness probe",
    )
    async def health_check():
        """
        Reports that the process is up.

        Does NOT contact the broker, the CAPTCHA provider or storage.
        """
        return JSONResponse(
            content={
                "status": "ok",
                "service": "intake",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
            }
        )

    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
