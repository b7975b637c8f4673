from archauth.logging import _redact_pii


def _redact(**event):
    return _redact_pii(None, "info", dict(event))


def test_secret_values_are_masked():
    event = _redact(refresh_token="abcdefghijkl", email="someone@example.com", password="hunter22")
    assert event["refresh_token"] == "ab***kl"
    assert event["email"] == "so***om"
    assert event["password"] == "hu***22"


def test_prefix_and_metadata_keys_pass_through():
    event = _redact(token_prefix="abcdefgh", token_type="refresh", error_type="StoreUnavailable")
    assert event == {
        "token_prefix": "abcdefgh",
        "token_type": "refresh",
        "error_type": "StoreUnavailable",
    }


def test_short_values_are_left_alone():
    assert _redact(token="abc") == {"token": "abc"}
