"""
Registration form schemas.

A registration is a tagged variant: ResidentRegistration or
CompanyRegistration. The two shapes share no base class; each has its
own normalization function in the finalizer.

Field names follow the JSON contract of the web client (camelCase
aliases). Declarative constraints (required, min/max length, email) are
enforced by pydantic; document-key fields are additionally checked for
object-key format, and for registration scope when the scope is passed
in the validation context under SCOPE_CONTEXT_KEY. Strings are checked
and forwarded exactly as received.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, ClassVar, List, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    ValidationInfo,
)
from pydantic_core import PydanticCustomError

from intake.app.services.object_keys import is_object_key


class ApplicantKind(str, Enum):
    RESIDENT = "resident"
    COMPANY = "company"


SCOPE_CONTEXT_KEY = "registration_scope"


# ---------------------------------------------------------------------------
# Reusable field types
# ---------------------------------------------------------------------------

def _issued_object_key(value: str, info: ValidationInfo) -> str:
    scope = (info.context or {}).get(SCOPE_CONTEXT_KEY)
    if value and not is_object_key(value, scope):
        raise PydanticCustomError(
            "object_key",
            "not an object key issued for this registration",
            {"scope": scope or ""},
        )
    return value


ObjectKeyField = Annotated[
    str,
    AfterValidator(_issued_object_key),
    Field(
        default="",
        description=(
            "Object key previously issued by GET /presigned for this "
            "registration; empty when the document was not uploaded"
        ),
    ),
]

OptionalText = Annotated[str, Field(default="")]


def _form_config() -> ConfigDict:
    return ConfigDict(
        populate_by_name=True,
        extra="ignore",
    )


# ---------------------------------------------------------------------------
# Resident
# ---------------------------------------------------------------------------

class ResidentPlate(BaseModel):
    model_config = _form_config()

    plate_number: OptionalText = Field(default="", alias="plateNumber")
    vehicle_type: OptionalText = Field(default="", alias="vehicleType")
    vehicle_path: ObjectKeyField = Field(default="", alias="vehiclePath")


class ResidentSupportingFiles(BaseModel):
    model_config = _form_config()

    spa_path: ObjectKeyField = Field(default="", alias="spaPath")
    electric_bill_path: ObjectKeyField = Field(default="", alias="electricBillPath")


class ResidentRegistration(BaseModel):
    """Resident enrollment: one applicant, one vehicle."""

    model_config = _form_config()

    kind: ClassVar[ApplicantKind] = ApplicantKind.RESIDENT

    register_id: Optional[str] = Field(default=None, alias="registerID")
    resident_name: str = Field(alias="residentName", min_length=3, max_length=50)
    contact_number: str = Field(alias="contactNumber", min_length=2, max_length=10)
    contact_email: EmailStr = Field(alias="contactEmail")
    resident_address_line1: str = Field(
        alias="residentAddressLine1", min_length=5, max_length=100
    )
    resident_address_line2: str = Field(
        default="", alias="residentAddressLine2", max_length=100
    )
    nric_number: OptionalText = Field(default="", alias="nricNumber")
    tin_number: OptionalText = Field(default="", alias="tinNumber")
    resident_plate: ResidentPlate = Field(
        default_factory=ResidentPlate, alias="residentPlate"
    )
    resident_supporting_files: ResidentSupportingFiles = Field(
        default_factory=ResidentSupportingFiles, alias="residentSupportingFiles"
    )

    @classmethod
    def scope_of(cls, data: Any) -> Optional[str]:
        """Registration scope of a raw form body: its registerID."""
        if not isinstance(data, dict):
            return None
        register_id = data.get("registerID")
        return register_id if isinstance(register_id, str) and register_id else None


# ---------------------------------------------------------------------------
# Company
# ---------------------------------------------------------------------------

class CompanyPlate(BaseModel):
    """One vehicle and the identity of the person registered with it."""

    model_config = _form_config()

    nric_number: OptionalText = Field(default="", alias="nricNumber")
    plate_number: OptionalText = Field(default="", alias="plateNumber")
    vehicle_type: OptionalText = Field(default="", alias="vehicleType")
    spa_path: ObjectKeyField = Field(default="", alias="spaPath")
    electric_bill_path: ObjectKeyField = Field(default="", alias="electricBillPath")
    vehicle_path: ObjectKeyField = Field(default="", alias="vehiclePath")


class CompanySupportingFiles(BaseModel):
    model_config = _form_config()

    ssm_path: ObjectKeyField = Field(default="", alias="ssmPath")
    electric_bill_path: ObjectKeyField = Field(default="", alias="electricBillPath")
    vehicle_path: ObjectKeyField = Field(default="", alias="vehiclePath")


class CompanyRegistration(BaseModel):
    """
    Company enrollment: company identity plus an ordered list of plates.

    The employer identifier is obtained from the backend by
    POST /registers/company before uploads start, and doubles as the
    registration scope of the company's object keys unless registerID is
    given explicitly.
    """

    model_config = _form_config()

    kind: ClassVar[ApplicantKind] = ApplicantKind.COMPANY

    register_id: Optional[str] = Field(default=None, alias="registerID")
    employer_id: OptionalText = Field(default="", alias="employerID")
    company_registration_number: OptionalText = Field(
        default="", alias="companyRegistrationNumber"
    )
    tin_number: OptionalText = Field(default="", alias="tinNumber")
    company_name: OptionalText = Field(default="", alias="companyName")
    contact_person: OptionalText = Field(default="", alias="contactPerson")
    contact_number: OptionalText = Field(default="", alias="contactNumber")
    contact_email: EmailStr = Field(alias="contactEmail")
    company_address_line1: str = Field(
        alias="companyAddressLine1", min_length=5, max_length=100
    )
    company_address_line2: str = Field(
        default="", alias="companyAddressLine2", max_length=100
    )
    company_plates: List[CompanyPlate] = Field(
        default_factory=list, alias="companyPlates"
    )
    company_supporting_files: CompanySupportingFiles = Field(
        default_factory=CompanySupportingFiles, alias="companySupportingFiles"
    )

    @classmethod
    def scope_of(cls, data: Any) -> Optional[str]:
        """Registration scope of a raw form body: registerID, else employerID."""
        if not isinstance(data, dict):
            return None
        for alias in ("registerID", "employerID"):
            value = data.get(alias)
            if isinstance(value, str) and value:
                return value
        return None


RegistrationForm = Union[ResidentRegistration, CompanyRegistration]

FORM_MODELS: dict[ApplicantKind, type[BaseModel]] = {
    ApplicantKind.RESIDENT: ResidentRegistration,
    ApplicantKind.COMPANY: CompanyRegistration,
}
