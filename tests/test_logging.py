from fineguard.logging import (
    _add_correlation_id,
    _hash_emails,
    _redact_pii,
    get_correlation_id,
    hash_email,
    set_correlation_id,
)


class TestRedaction:
    def test_credential_material_is_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "Traffic@2024x",
                "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
                "mfa_secret": "JBSWY3DPEHPK3PXP",
                "code": "123456",
            },
        )
        assert event["password"] == "Tr***4x"
        assert "payload" not in event["refresh_token"]
        assert "JBSWY3DPEHPK3PXP" not in event["mfa_secret"]
        assert event["code"] != "123456"
        assert event["event"] == "login_failed"

    def test_short_and_non_string_values(self):
        event = _redact_pii(None, "info", {"secret": "abc", "token_count": 3, "password": None})
        assert event["secret"] == "***"
        assert event["token_count"] == "***"
        assert event["password"] is None

    def test_allowlisted_keys_pass_through(self):
        event = _redact_pii(
            None,
            "info",
            {"email_hash": "abcdef0123456789", "error_code": "account_locked", "token_kind": "reset"},
        )
        assert event == {
            "email_hash": "abcdef0123456789",
            "error_code": "account_locked",
            "token_kind": "reset",
        }


class TestEmailHashing:
    def test_raw_email_replaced_by_hash(self):
        event = _hash_emails(None, "info", {"event": "identity_created", "email": "Juan@Example.PH"})
        assert "email" not in event
        assert event["email_hash"] == hash_email("juan@example.ph")

    def test_existing_hash_kept(self):
        event = _hash_emails(None, "info", {"email_hash": "precomputed", "to_email": "a@b.ph"})
        assert event == {"email_hash": "precomputed"}


class TestCorrelation:
    def test_correlation_id_added(self):
        cid = set_correlation_id("req-42")
        assert get_correlation_id() == "req-42"
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid

    def test_generated_correlation_id(self):
        assert len(set_correlation_id()) == 36


def test_hash_email_is_stable_and_case_insensitive():
    assert hash_email("Juan@Example.PH") == hash_email(" juan@example.ph ")
    assert len(hash_email("juan@example.ph")) == 16
    assert "juan" not in hash_email("juan@example.ph")


def test_hash_email_accepts_lone_surrogates():
    assert len(hash_email("\ud800@example.ph")) == 16
