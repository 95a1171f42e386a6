import json

import pytest

from intake.app.core.errors import (
    BindError,
    BrokerTimeoutError,
    ConfigurationError,
    DependencyError,
    FormValidationError,
)
from intake.app.schemas.registration import ApplicantKind
from intake.app.services.finalizer import (
    RegistrationFinalizer,
    bind_and_validate,
    decode_reply,
    normalize_company,
)
from intake.tests.fixtures.fakes import (
    FakeBroker,
    company_form,
    make_settings,
    resident_form,
)

pytestmark = pytest.mark.anyio


def make_finalizer(broker=None, timeout=None, **settings):
    return RegistrationFinalizer(
        make_settings(**settings),
        broker or FakeBroker(),
        timeout=timeout,
    )


# ---------------------------------------------------------------------------
# Bind and validate
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "body",
    [b"", b"{not json", b"[1, 2]", json.dumps({"residentName": 42}).encode()],
    ids=["empty", "malformed", "array", "wrong-type"],
)
def test_malformed_body_is_bind_error(body):
    with pytest.raises(BindError) as excinfo:
        bind_and_validate(ApplicantKind.RESIDENT, body)

    assert excinfo.value.status_code == 400
    assert excinfo.value.message == "Invalid input format"


def test_validation_collects_one_message_per_field():
    body = resident_form(
        residentName="Al",
        contactNumber="",
        contactEmail="not-an-email",
        residentAddressLine2="x" * 101,
    )
    del body["residentAddressLine1"]

    with pytest.raises(FormValidationError) as excinfo:
        bind_and_validate(ApplicantKind.RESIDENT, body)

    messages = {e["field"]: e["message"] for e in excinfo.value.field_errors}
    assert excinfo.value.message == "Validation failed"
    assert messages == {
        "residentName": "Too short",
        "contactNumber": "This field is required",
        "contactEmail": "Invalid email format",
        "residentAddressLine1": "This field is required",
        "residentAddressLine2": "Too long",
    }


def test_document_key_from_another_registration_rejected():
    body = resident_form(register_id="r1")
    body["residentSupportingFiles"]["spaPath"] = "uploads/r2/general/spa.pdf"

    with pytest.raises(FormValidationError) as excinfo:
        bind_and_validate(ApplicantKind.RESIDENT, body)

    assert excinfo.value.field_errors == [
        {"field": "residentSupportingFiles.spaPath", "message": "Invalid value"}
    ]


def test_document_key_must_be_object_key():
    body = company_form()
    body["companyPlates"][1]["vehiclePath"] = "../../etc/passwd"

    with pytest.raises(FormValidationError) as excinfo:
        bind_and_validate(ApplicantKind.COMPANY, body)

    assert excinfo.value.field_errors[0]["field"] == "companyPlates.1.vehiclePath"


def test_every_bad_document_key_reported():
    body = resident_form(register_id="r1")
    body["residentPlate"]["vehiclePath"] = "uploads/r2/plates/WXY1234_front.jpg"
    body["residentSupportingFiles"]["spaPath"] = "/etc/passwd"

    with pytest.raises(FormValidationError) as excinfo:
        bind_and_validate(ApplicantKind.RESIDENT, json.dumps(body).encode())

    assert sorted(e["field"] for e in excinfo.value.field_errors) == [
        "residentPlate.vehiclePath",
        "residentSupportingFiles.spaPath",
    ]


def test_document_key_errors_reported_with_field_errors():
    body = company_form(companyAddressLine1="Lot")
    body["companySupportingFiles"]["ssmPath"] = "uploads/E7/general/E7_ssm.pdf"
    body["companyPlates"][0]["spaPath"] = "uploads/E9/other/E9_spa1.pdf"

    with pytest.raises(FormValidationError) as excinfo:
        bind_and_validate(ApplicantKind.COMPANY, body)

    messages = {e["field"]: e["message"] for e in excinfo.value.field_errors}
    assert messages == {
        "companyAddressLine1": "Too short",
        "companySupportingFiles.ssmPath": "Invalid value",
        "companyPlates.0.spaPath": "Invalid value",
    }


def test_lengths_counted_on_text_as_sent():
    padded = resident_form(residentName=" Al ", contactNumber=" 012345678 ")

    with pytest.raises(FormValidationError) as excinfo:
        bind_and_validate(ApplicantKind.RESIDENT, padded)

    assert excinfo.value.field_errors == [
        {"field": "contactNumber", "message": "Too long"}
    ]

    form = bind_and_validate(ApplicantKind.RESIDENT, resident_form(residentName=" Al "))
    assert form.resident_name == " Al "


def test_empty_document_keys_allowed():
    body = resident_form()
    body["residentPlate"]["vehiclePath"] = ""

    form = bind_and_validate(ApplicantKind.RESIDENT, body)

    assert form.resident_plate.vehicle_path == ""


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def test_company_with_two_plates_yields_two_individuals():
    form = bind_and_validate(ApplicantKind.COMPANY, company_form())

    payload = normalize_company(form)

    assert payload["employerID"] == "E9"
    assert payload["companyRegNum"] == "202001234567"
    assert payload["employerName"] == "Maju Logistics Sdn Bhd"
    assert len(payload["individuals"]) == 2

    first, second = payload["individuals"]
    for individual in (first, second):
        assert individual["fullName"] == "Lim Wei Jie"
        assert individual["email"] == "ops@majulogistics.com.my"
        assert individual["contactNumber"] == "0387654321"
        assert individual["address1"] == "Lot 5, Jalan Industri 3"
        assert individual["address2"] == "Shah Alam"
        assert individual["tinNumber"] == "C2584563201"

    assert first["vehicleNum"] == "BKL1001"
    assert first["nric"] == "850505-10-1111"
    assert first["vehicleClass"] == "van"
    assert first["spaPath"] == "uploads/E9/general/E9_spa1.pdf"
    assert first["vehiclePath"] == "uploads/E9/plates/BKL1001_grant.pdf"
    assert second["vehicleNum"] == "BKL2002"
    assert second["vehiclePath"] == "uploads/E9/plates/BKL2002_grant.pdf"

    assert payload["companySupportingFiles"] == {
        "ssmPath": "uploads/E9/general/E9_ssm.pdf",
        "electricBillPath": "uploads/E9/general/E9_bill.pdf",
        "vehiclePath": "",
    }


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

async def test_resident_dispatched_on_site_subject():
    broker = FakeBroker(reply=b'{"status":"accepted","id":17}')
    finalizer = make_finalizer(broker)

    result = await finalizer.finalize(
        ApplicantKind.RESIDENT,
        json.dumps(resident_form()).encode(),
    )

    assert [r.subject for r in broker.requests] == ["register.individual.SITE01"]
    sent = broker.requests[0].json()
    assert sent == {
        "nric": "900101-14-5678",
        "tinNumber": "IG1234567",
        "fullName": "Aisyah Rahman",
        "email": "aisyah@mail.com.my",
        "contactNumber": "0123456789",
        "address1": "12 Jalan Mawar",
        "address2": "Taman Melati",
        "vehicleNum": "WXY1234",
        "vehicleClass": "car",
        "vehiclePath": "uploads/r1/plates/WXY1234_front.jpg",
        "spaPath": "uploads/r1/general/spa.pdf",
        "electricBillPath": "uploads/r1/general/bill.pdf",
    }
    assert result.reply == {"status": "accepted", "id": 17}


async def test_company_dispatched_on_employer_subject():
    broker = FakeBroker()
    finalizer = make_finalizer(broker)

    await finalizer.finalize(ApplicantKind.COMPANY, company_form())

    assert broker.requests[0].subject == "register.employer.SITE01"
    assert len(broker.requests[0].json()["individuals"]) == 2


async def test_non_json_reply_passed_through_as_text():
    broker = FakeBroker(reply=b"accepted \xff")
    finalizer = make_finalizer(broker)

    result = await finalizer.finalize(ApplicantKind.RESIDENT, resident_form())

    assert result.reply == "accepted \ufffd"
    assert result.reply_is_json is False


async def test_json_string_reply_is_json():
    finalizer = make_finalizer(FakeBroker(reply=b'"queued"'))

    result = await finalizer.finalize(ApplicantKind.RESIDENT, resident_form())

    assert result.reply == "queued"
    assert result.reply_is_json is True


def test_reply_decoding():
    assert decode_reply(b'["a", 1]') == (["a", 1], True)
    assert decode_reply(b"null") == (None, True)
    assert decode_reply(b'"ok"') == ("ok", True)
    assert decode_reply(b"ok") == ("ok", False)
    assert decode_reply(b"") == ("", False)


async def test_identical_payloads_are_not_deduplicated():
    broker = FakeBroker()
    finalizer = make_finalizer(broker)
    body = json.dumps(company_form()).encode()

    await finalizer.finalize(ApplicantKind.COMPANY, body)
    await finalizer.finalize(ApplicantKind.COMPANY, body)

    assert len(broker.requests) == 2
    assert broker.requests[0].payload == broker.requests[1].payload


async def test_slow_broker_bounded_by_finalizer_timeout():
    broker = FakeBroker(delay=5.0)
    finalizer = make_finalizer(broker, timeout=0.05)

    with pytest.raises(BrokerTimeoutError) as excinfo:
        await finalizer.finalize(ApplicantKind.RESIDENT, resident_form())

    assert isinstance(excinfo.value, DependencyError)
    assert excinfo.value.status_code == 500
    assert excinfo.value.message == "Failed to send NATS message"
    assert len(broker.requests) == 1


async def test_broker_timeout_not_retried():
    broker = FakeBroker(raise_timeout=True)
    finalizer = make_finalizer(broker)

    with pytest.raises(BrokerTimeoutError):
        await finalizer.finalize(ApplicantKind.COMPANY, company_form())

    assert len(broker.requests) == 1


async def test_invalid_form_never_reaches_broker():
    broker = FakeBroker()
    finalizer = make_finalizer(broker)

    with pytest.raises(FormValidationError):
        await finalizer.finalize(
            ApplicantKind.RESIDENT,
            resident_form(contactEmail="nope"),
        )

    assert broker.requests == []


@pytest.mark.parametrize(
    "kind, missing, env_name",
    [
        (ApplicantKind.RESIDENT, "register_individual_subject", "REGISTER_INDIVIDUAL_SUBJECT"),
        (ApplicantKind.COMPANY, "register_employer_subject", "REGISTER_EMPLOYER_SUBJECT"),
        (ApplicantKind.RESIDENT, "site_code", "SITE_CODE"),
    ],
)
async def test_configuration_gaps_fail_before_dispatch(kind, missing, env_name):
    broker = FakeBroker()
    finalizer = make_finalizer(broker, **{missing: ""})
    form = resident_form() if kind is ApplicantKind.RESIDENT else company_form()

    with pytest.raises(ConfigurationError) as excinfo:
        await finalizer.finalize(kind, form)

    assert excinfo.value.message == f"Missing {env_name} environment variable"
    assert broker.requests == []


# ---------------------------------------------------------------------------
# Employer id
# ---------------------------------------------------------------------------

async def test_employer_id_requested_with_empty_body():
    broker = FakeBroker(reply=b'{"data": "EMP-0042"}')
    finalizer = make_finalizer(broker)

    assert await finalizer.request_employer_id() == "EMP-0042"
    assert broker.requests[0].subject == "register.employer.id.SITE01"
    assert broker.requests[0].payload == b""


@pytest.mark.parametrize(
    "reply, message",
    [
        (b"plain text", "Failed to parse NATS response"),
        (b'{"data": 42}', "Invalid response format"),
        (b'{"id": "EMP-1"}', "Invalid response format"),
        (b'["EMP-1"]', "Invalid response format"),
    ],
)
async def test_malformed_employer_id_reply(reply, message):
    finalizer = make_finalizer(FakeBroker(reply=reply))

    with pytest.raises(DependencyError) as excinfo:
        await finalizer.request_employer_id()

    assert excinfo.value.message == message
