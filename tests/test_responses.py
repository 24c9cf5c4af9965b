from flags_gateway.models import EvaluationResult, Flag, LookupStatus, Reason, Scope, SecretMenu, SecretMenuStyle
from flags_gateway.responses import (
    ErrorCode,
    degraded_response,
    legacy_response,
    ofrep_bulk,
    ofrep_bulk_error,
    ofrep_error,
    ofrep_single,
    ofrep_success,
)

SCOPE = Scope("p1", "a1", "e1")
ON = Flag(id="1", name="feature-flag-1", enabled=True, last_changed="2024-06-01 10:00:00")
OFF = Flag(id="2", name="feature-flag-2", enabled=False)


def _result(*flags, status=LookupStatus.FOUND):
    return EvaluationResult(scope=SCOPE, status=status, flags=list(flags))


def test_legacy_shape():
    body = legacy_response(_result(ON, OFF), 60)
    assert body == {
        "intervalAllowed": 60,
        "flags": [
            {"enabled": True, "details": {"name": "feature-flag-1", "id": "1", "lastChanged": "2024-06-01 10:00:00"}},
            {"enabled": False, "details": {"name": "feature-flag-2", "id": "2"}},
        ],
    }


def test_legacy_secret_menu_is_included_when_given():
    menu = SecretMenu(sequence=["up", "down"], styles=[SecretMenuStyle("button", "color: red")])
    body = legacy_response(_result(ON), 30, menu)
    assert body["secretMenu"] == {"sequence": ["up", "down"], "styles": [{"name": "button", "value": "color: red"}]}


def test_degraded_payload():
    assert degraded_response(900) == {"intervalAllowed": 900, "flags": []}


def test_ofrep_success_envelope():
    assert ofrep_success("feature-flag-1", ON) == {
        "key": "feature-flag-1",
        "reason": "STATIC",
        "variant": "enabled",
        "value": True,
        "metadata": {"flagId": "1"},
    }
    assert ofrep_success("feature-flag-2", OFF)["variant"] == "disabled"


def test_ofrep_single_not_found_and_canceled_are_404():
    for status in (LookupStatus.NOT_FOUND, LookupStatus.CANCELED):
        code, body = ofrep_single("missing-flag", _result(status=status))
        assert code == 404
        assert body["key"] == "missing-flag"
        assert body["errorCode"] == "FLAG_NOT_FOUND"
        assert body["reason"] == Reason.ERROR.value


def test_ofrep_single_keeps_requested_key():
    code, body = ofrep_single("FEATURE-FLAG-1", _result(ON))
    assert code == 200
    assert body["key"] == "FEATURE-FLAG-1"
    assert body["value"] is True


def test_ofrep_error_omits_empty_details():
    assert ofrep_error("k", ErrorCode.PARSE_ERROR) == {"key": "k", "errorCode": "PARSE_ERROR", "reason": "ERROR"}


def test_ofrep_bulk():
    assert ofrep_bulk(_result(ON, OFF))["flags"] == [ofrep_success("feature-flag-1", ON), ofrep_success("feature-flag-2", OFF)]
    assert ofrep_bulk(None) == {"flags": []}
    assert ofrep_bulk_error(ErrorCode.INVALID_CONTEXT, "missing scope") == {
        "flags": [],
        "errorCode": "INVALID_CONTEXT",
        "errorDetails": "missing scope",
    }


def test_both_encodings_agree_on_values():
    result = _result(ON, OFF)
    legacy = {f["details"]["name"]: f["enabled"] for f in legacy_response(result, 60)["flags"]}
    ofrep = {f["key"]: f["value"] for f in ofrep_bulk(result)["flags"]}
    assert legacy == ofrep
