"""
Registration endpoints.

The plain POST endpoints validate a form and hand out a registration id
the client uses to scope its document uploads. The finalize endpoints
forward the completed form to the backend over the broker and relay its
reply.
"""

import logging
import uuid
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from intake.app.api.deps import get_finalizer
from intake.app.api.responses import success_response
from intake.app.schemas.registration import ApplicantKind
from intake.app.schemas.responses import (
    CompanyFinalizeData,
    CompanyRegisterData,
    ResidentFinalizeData,
    ResidentRegisterData,
)
from intake.app.services.finalizer import RegistrationFinalizer, bind_and_validate

logger = logging.getLogger("intake.api")

router = APIRouter(prefix="/registers", tags=["Registrations"])

Finalizer = Annotated[RegistrationFinalizer, Depends(get_finalizer)]


# =============================================================================
# Resident
# =============================================================================

@router.post("/resident", summary="Validate a resident form and open a registration")
async def create_resident_register(request: Request) -> JSONResponse:
    form = bind_and_validate(ApplicantKind.RESIDENT, await request.body())
    register_id = str(uuid.uuid4())

    logger.info(
        "resident_registration_opened",
        extra={"register_id": register_id},
    )
    return success_response(
        "Resident registration form validated successfully",
        ResidentRegisterData(register_id=register_id),
    )


@router.post("/resident/finalize", summary="Forward a resident registration")
async def finalize_resident_register(
    request: Request,
    finalizer: Finalizer,
) -> JSONResponse:
    result = await finalizer.finalize(ApplicantKind.RESIDENT, await request.body())

    return success_response(
        "Resident registration finalized successfully",
        ResidentFinalizeData(
            resident_name=result.form.resident_name,
            nats_response=result.reply,
        ),
    )


# =============================================================================
# Company
# =============================================================================

@router.post("/company", summary="Validate a company form and obtain an employer id")
async def create_company_register(
    request: Request,
    finalizer: Finalizer,
) -> JSONResponse:
    form = bind_and_validate(ApplicantKind.COMPANY, await request.body())
    employer_id = await finalizer.request_employer_id()
    register_id = str(uuid.uuid4())

    logger.info(
        "company_registration_opened",
        extra={
            "register_id": register_id,
            "employer_id": employer_id,
            "plates": [plate.plate_number for plate in form.company_plates],
        },
    )
    return success_response(
        "Company registration initiated successfully",
        CompanyRegisterData(register_id=register_id, employer_id=employer_id),
    )


@router.post("/company/finalize", summary="Forward a company registration")
async def finalize_company_register(
    request: Request,
    finalizer: Finalizer,
) -> JSONResponse:
    result = await finalizer.finalize(ApplicantKind.COMPANY, await request.body())

    return success_response(
        "Company registration finalized successfully",
        CompanyFinalizeData(
            id=result.form.company_registration_number,
            nats_response=result.reply,
        ),
    )
