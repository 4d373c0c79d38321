from dunnoauth.logging import _redact_pii, get_correlation_id, set_correlation_id


def test_credentials_are_masked():
    event = {
        "event": "login",
        "password": "s3cret!!42",
        "access_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
        "error_code": "unauthorized",
        "user_id": "1234-5678",
    }

    redacted = _redact_pii(None, "info", dict(event))

    assert redacted["password"] == "s3***42"
    assert redacted["access_token"].startswith("ey***")
    assert redacted["error_code"] == "unauthorized"
    assert redacted["user_id"] == "1234-5678"
    assert redacted["event"] == "login"


def test_compound_credential_keys_are_masked():
    event = {
        "new_password": "n3w!!pass99",
        "jwt_secret": "x" * 48,
        "Temp_Token": "eyJ.temp.sig",
        "recovery_code": "ABCDE12345",
        "totp": "123456",
        "tokens": ["eyJ.a.b"],
        "pin": "1234",
    }

    redacted = _redact_pii(None, "warning", dict(event))

    assert redacted["new_password"] == "n3***99"
    assert redacted["jwt_secret"] == "xx***xx"
    assert redacted["Temp_Token"] == "ey***ig"
    assert redacted["recovery_code"] == "AB***45"
    assert redacted["totp"] == "12***56"
    assert redacted["tokens"] == ["eyJ.a.b"]
    assert redacted["pin"] == "1234"


def test_short_values_left_alone():
    assert _redact_pii(None, "info", {"password": "abcd"}) == {"password": "abcd"}


def test_correlation_id_round_trip():
    cid = set_correlation_id("req-1")
    assert cid == "req-1"
    assert get_correlation_id() == "req-1"
    assert set_correlation_id() != "req-1"
