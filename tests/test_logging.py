import pytest

from youandme_auth.logging import (
    _add_correlation_id,
    _redact_pii,
    correlation_id_var,
    mask_email,
    set_correlation_id,
)


def _process(**fields):
    return _redact_pii(None, "info", dict(fields))


class TestRedaction:
    @pytest.mark.parametrize(
        "key", ["password", "access_token", "refresh_token", "temp_token", "secret", "code"]
    )
    def test_credentials_fully_masked(self, key):
        assert _process(**{key: "hunter2-long-value"})[key] == "[redacted]"

    def test_counts_and_identifiers_kept(self):
        event = _process(
            event="auth_state_cleanup", tokens=3, cleaned=5, token_id="jti-123", status_code=401
        )
        assert event["tokens"] == 3
        assert event["token_id"] == "jti-123"
        assert event["status_code"] == 401

    def test_email_keeps_domain(self):
        assert _process(email="alice@example.com")["email"] == "a***@example.com"
        assert _process(target_email="bob@example.com")["target_email"] == "b***@example.com"

    def test_email_without_domain(self):
        assert mask_email("alice") == "a***"

    def test_authorization_header_case_insensitive(self):
        assert _process(Authorization="Bearer abc.def.ghi")["Authorization"] == "[redacted]"


class TestCorrelationId:
    def test_added_to_events(self):
        token = correlation_id_var.set(None)
        try:
            cid = set_correlation_id("req-42")
            assert cid == "req-42"
            assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"
        finally:
            correlation_id_var.reset(token)

    def test_generated_when_missing(self):
        token = correlation_id_var.set(None)
        try:
            assert len(set_correlation_id()) == 36
        finally:
            correlation_id_var.reset(token)

    def test_absent_outside_a_request(self):
        token = correlation_id_var.set(None)
        try:
            assert "correlation_id" not in _add_correlation_id(None, "info", {"event": "x"})
        finally:
            correlation_id_var.reset(token)
