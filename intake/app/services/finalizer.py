"""
Registration finalization over broker request/reply.

Each finalize call walks one request through

    Received -> Bound -> Validated -> Normalized -> Dispatched -> Replied

and stops at Failed on the first error. There are no retries and no
deduplication: the broker is asked exactly once per call, and two identical
submissions are two independent requests.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from intake.app.core.config import Settings
from intake.app.core.errors import (
    BindError,
    BrokerTimeoutError,
    ConfigurationError,
    DependencyError,
    FormValidationError,
    IntakeError,
)
from intake.app.schemas.registration import (
    FORM_MODELS,
    SCOPE_CONTEXT_KEY,
    ApplicantKind,
    CompanyRegistration,
    RegistrationForm,
    ResidentRegistration,
)
from intake.app.services.broker import Broker

logger = logging.getLogger("intake.finalizer")

BROKER_TIMEOUT_SECONDS = 10.0

# Pydantic error types that mean the body does not have the form's shape
# at all, as opposed to a well-shaped value breaking a constraint.
BIND_ERROR_TYPES = frozenset(
    {
        "json_invalid",
        "json_type",
        "model_type",
        "model_attributes_type",
        "dict_type",
        "list_type",
        "string_type",
        "string_unicode",
    }
)

MSG_REQUIRED = "This field is required"
MSG_EMAIL = "Invalid email format"
MSG_TOO_SHORT = "Too short"
MSG_TOO_LONG = "Too long"
MSG_INVALID = "Invalid value"


class FinalizationStage(str, Enum):
    RECEIVED = "received"
    BOUND = "bound"
    VALIDATED = "validated"
    NORMALIZED = "normalized"
    DISPATCHED = "dispatched"
    REPLIED = "replied"
    FAILED = "failed"


@dataclass
class FinalizationResult:
    form: RegistrationForm
    subject: str
    payload: Dict[str, Any]
    reply: Any
    reply_is_json: bool


# ---------------------------------------------------------------------------
# Bind and validate
# ---------------------------------------------------------------------------

def _field_name(loc: tuple) -> str:
    return ".".join(str(part) for part in loc) or "body"


def _field_message(error: dict) -> str:
    kind = error["type"]
    value = error.get("input")

    if kind == "missing" or value == "":
        return MSG_REQUIRED
    if kind == "string_too_short":
        return MSG_TOO_SHORT
    if kind == "string_too_long":
        return MSG_TOO_LONG
    if kind == "value_error" and "email" in error.get("msg", "").lower():
        return MSG_EMAIL
    return MSG_INVALID


def collect_field_errors(exc: ValidationError) -> list[dict[str, str]]:
    """Flatten a pydantic ValidationError into {field, message} entries."""
    return [
        {"field": _field_name(error["loc"]), "message": _field_message(error)}
        for error in exc.errors()
    ]


def bind_and_validate(
    kind: ApplicantKind,
    payload: Union[bytes, str, Dict[str, Any]],
) -> RegistrationForm:
    """
    Bind a raw JSON body (or an already decoded mapping) to the form of
    `kind` and enforce its declarative constraints.

    Document keys are checked against the scope named in the body itself.

    Raises BindError when the body is not a JSON object of the right shape
    and FormValidationError with one entry per offending field otherwise.
    """
    model = FORM_MODELS[ApplicantKind(kind)]
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise BindError(errors=[{"field": "body", "message": str(exc)}]) from exc

    context = {SCOPE_CONTEXT_KEY: model.scope_of(payload)}
    try:
        return model.model_validate(payload, context=context)
    except ValidationError as exc:
        bind_errors = [
            {"field": _field_name(e["loc"]), "message": e["msg"]}
            for e in exc.errors()
            if e["type"] in BIND_ERROR_TYPES
        ]
        if bind_errors:
            raise BindError(errors=bind_errors) from exc
        raise FormValidationError(collect_field_errors(exc)) from exc


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def normalize_resident(form: ResidentRegistration) -> Dict[str, Any]:
    plate = form.resident_plate
    files = form.resident_supporting_files
    return {
        "nric": form.nric_number,
        "tinNumber": form.tin_number,
        "fullName": form.resident_name,
        "email": form.contact_email,
        "contactNumber": form.contact_number,
        "address1": form.resident_address_line1,
        "address2": form.resident_address_line2,
        "vehicleNum": plate.plate_number,
        "vehicleClass": plate.vehicle_type,
        "vehiclePath": plate.vehicle_path,
        "spaPath": files.spa_path,
        "electricBillPath": files.electric_bill_path,
    }


def normalize_company(form: CompanyRegistration) -> Dict[str, Any]:
    """
    Flatten a company form into the employer payload.

    The backend stores each vehicle+owner pairing as an individual, so
    every plate becomes one individual carrying the company's contact
    identity and the plate's own documents.
    """
    individuals = [
        {
            "fullName": form.contact_person,
            "email": form.contact_email,
            "contactNumber": form.contact_number,
            "address1": form.company_address_line1,
            "address2": form.company_address_line2,
            "nric": plate.nric_number,
            "vehicleNum": plate.plate_number,
            "tinNumber": form.tin_number,
            "vehicleClass": plate.vehicle_type,
            "spaPath": plate.spa_path,
            "electricBillPath": plate.electric_bill_path,
            "vehiclePath": plate.vehicle_path,
        }
        for plate in form.company_plates
    ]
    files = form.company_supporting_files
    return {
        "employerID": form.employer_id,
        "companyRegNum": form.company_registration_number,
        "tinNumber": form.tin_number,
        "employerName": form.company_name,
        "contactPerson": form.contact_person,
        "contactNumber": form.contact_number,
        "email": form.contact_email,
        "address1": form.company_address_line1,
        "address2": form.company_address_line2,
        "individuals": individuals,
        "companySupportingFiles": {
            "ssmPath": files.ssm_path,
            "electricBillPath": files.electric_bill_path,
            "vehiclePath": files.vehicle_path,
        },
    }


NORMALIZERS: Dict[ApplicantKind, Callable[[Any], Dict[str, Any]]] = {
    ApplicantKind.RESIDENT: normalize_resident,
    ApplicantKind.COMPANY: normalize_company,
}


def decode_reply(data: bytes) -> Tuple[Any, bool]:
    """
    JSON value of a broker reply, or its text when it is not JSON.

    The flag tells the two apart, since a JSON string reply also decodes
    to str.
    """
    try:
        return json.loads(data), True
    except ValueError:
        return data.decode("utf-8", errors="replace"), False


# ---------------------------------------------------------------------------
# Finalizer
# ---------------------------------------------------------------------------

class RegistrationFinalizer:
    """
    Validates, normalizes and forwards registrations to the backend.

    The broker timeout is enforced here with asyncio.wait_for, so a broker
    client that ignores its own timeout still cannot hold a request open.
    """

    def __init__(
        self,
        settings: Settings,
        broker: Broker,
        timeout: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self.broker = broker
        self.timeout = timeout or settings.broker_timeout_seconds or BROKER_TIMEOUT_SECONDS

    # -- subjects ------------------------------------------------------------

    def _subject(self, prefix: str, prefix_setting: str) -> str:
        if not prefix:
            raise ConfigurationError(prefix_setting)
        if not self.settings.site_code:
            raise ConfigurationError("SITE_CODE")
        return f"{prefix}.{self.settings.site_code}"

    def subject_for(self, kind: ApplicantKind) -> str:
        if kind is ApplicantKind.RESIDENT:
            return self._subject(
                self.settings.register_individual_subject,
                "REGISTER_INDIVIDUAL_SUBJECT",
            )
        return self._subject(
            self.settings.register_employer_subject,
            "REGISTER_EMPLOYER_SUBJECT",
        )

    # -- transport -----------------------------------------------------------

    async def _request(self, subject: str, data: bytes) -> bytes:
        try:
            return await asyncio.wait_for(
                self.broker.request(subject, data, self.timeout),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise BrokerTimeoutError(
                "Failed to send NATS message",
                errors=f"no reply on {subject} within {self.timeout:g}s",
            ) from exc

    # -- operations ----------------------------------------------------------

    async def finalize(
        self,
        kind: ApplicantKind,
        payload: Union[bytes, str, Dict[str, Any], RegistrationForm],
    ) -> FinalizationResult:
        kind = ApplicantKind(kind)
        stage = FinalizationStage.RECEIVED
        try:
            if isinstance(payload, BaseModel):
                form = payload
            else:
                form = bind_and_validate(kind, payload)
            stage = FinalizationStage.VALIDATED

            normalized = NORMALIZERS[kind](form)
            stage = FinalizationStage.NORMALIZED

            subject = self.subject_for(kind)
            data = json.dumps(normalized).encode("utf-8")

            stage = FinalizationStage.DISPATCHED
            logger.info(
                "registration_dispatched",
                extra={"kind": kind.value, "subject": subject},
            )
            raw_reply = await self._request(subject, data)

            reply, reply_is_json = decode_reply(raw_reply)
            stage = FinalizationStage.REPLIED
        except IntakeError as exc:
            if isinstance(exc, FormValidationError):
                stage = FinalizationStage.BOUND
            logger.warning(
                "registration_finalize_failed",
                extra={
                    "kind": kind.value,
                    "stage": stage.value,
                    "final_stage": FinalizationStage.FAILED.value,
                    "error": exc.message,
                },
            )
            raise

        logger.info(
            "registration_finalized",
            extra={
                "kind": kind.value,
                "subject": subject,
                "stage": stage.value,
                "reply_is_json": reply_is_json,
            },
        )
        return FinalizationResult(
            form=form,
            subject=subject,
            payload=normalized,
            reply=reply,
            reply_is_json=reply_is_json,
        )

    async def request_employer_id(self) -> str:
        """
        Ask the backend for a fresh employer identifier.

        The reply must be a JSON object whose "data" member is a string.
        """
        subject = self._subject(
            self.settings.register_employer_id_subject,
            "REGISTER_EMPLOYER_ID_SUBJECT",
        )
        raw_reply = await self._request(subject, b"")

        try:
            reply = json.loads(raw_reply)
        except ValueError as exc:
            raise DependencyError(
                "Failed to parse NATS response",
                errors=str(exc),
            ) from exc

        employer_id = reply.get("data") if isinstance(reply, dict) else None
        if not isinstance(employer_id, str):
            raise DependencyError(
                "Invalid response format",
                errors="Missing or invalid ID",
            )

        logger.info("employer_id_issued", extra={"subject": subject})
        return employer_id
