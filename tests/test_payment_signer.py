"""Tests for request signing and webhook signature verification."""

import pytest

from app.services.payments.errors import SignatureInvalid
from app.services.payments.signer import (
    EMPTY,
    OpaAuthSigner,
    TimestampedHmacSigner,
    VerificationPolicy,
)

NOW = 1_760_000_000
CONTENT_TYPE = "application/json; charset=UTF-8"
PATH = "/api/v1/payments/webhooks/qr_wallet_a"
BODY = b'{"merchant_order_id":"abc","state":"COMPLETED"}'


def _opa_signer(secret: str = "api-secret") -> OpaAuthSigner:
    return OpaAuthSigner("api-key", secret, skew_seconds=120, clock=lambda: NOW)


def _reason(exc_info) -> str:
    return exc_info.value.reason


class TestOpaAuthSigner:
    def test_sign_and_verify_round_trip(self):
        signer = _opa_signer()
        header = signer.sign("POST", PATH, "nonce123", NOW, BODY, CONTENT_TYPE)

        assert header.startswith("hmac OPA-Auth:api-key:")
        signer.verify(header, BODY, method="POST", path=PATH, content_type=CONTENT_TYPE)

    def test_content_digest_is_empty_without_body(self):
        assert OpaAuthSigner.content_digest(None, None) == EMPTY
        assert OpaAuthSigner.content_digest(CONTENT_TYPE, b"") == EMPTY
        assert OpaAuthSigner.content_digest(CONTENT_TYPE, BODY) != EMPTY

    def test_build_headers_uses_fresh_nonce(self):
        signer = _opa_signer()
        first = signer.build_headers("POST", "/v2/codes", BODY, CONTENT_TYPE)
        second = signer.build_headers("POST", "/v2/codes", BODY, CONTENT_TYPE)

        assert first["Authorization"] != second["Authorization"]
        assert first["Content-Type"] == CONTENT_TYPE

    def test_replayed_request_outside_window_rejected_with_valid_mac(self):
        signer = _opa_signer()
        old = NOW - 121
        header = signer.sign("POST", PATH, "nonce123", old, BODY, CONTENT_TYPE)

        with pytest.raises(SignatureInvalid) as exc_info:
            signer.verify(header, BODY, method="POST", path=PATH, content_type=CONTENT_TYPE)
        assert _reason(exc_info) == "timestamp_out_of_window"

    def test_timestamp_at_window_edge_accepted(self):
        signer = _opa_signer()
        header = signer.sign("POST", PATH, "nonce123", NOW - 120, BODY, CONTENT_TYPE)

        signer.verify(header, BODY, method="POST", path=PATH, content_type=CONTENT_TYPE)

    def test_future_timestamp_outside_window_rejected(self):
        signer = _opa_signer()
        header = signer.sign("POST", PATH, "nonce123", NOW + 300, BODY, CONTENT_TYPE)

        with pytest.raises(SignatureInvalid):
            signer.verify(header, BODY, method="POST", path=PATH, content_type=CONTENT_TYPE)

    def test_tampered_body_rejected(self):
        signer = _opa_signer()
        header = signer.sign("POST", PATH, "nonce123", NOW, BODY, CONTENT_TYPE)

        with pytest.raises(SignatureInvalid) as exc_info:
            signer.verify(
                header,
                BODY.replace(b"COMPLETED", b"CANCELED"),
                method="POST",
                path=PATH,
                content_type=CONTENT_TYPE,
            )
        assert _reason(exc_info) == "mac_mismatch"

    def test_wrong_secret_rejected(self):
        header = _opa_signer("other-secret").sign(
            "POST", PATH, "nonce123", NOW, BODY, CONTENT_TYPE
        )

        with pytest.raises(SignatureInvalid):
            _opa_signer().verify(
                header, BODY, method="POST", path=PATH, content_type=CONTENT_TYPE
            )

    def test_declared_timestamp_must_match_header(self):
        signer = _opa_signer()
        header = signer.sign("POST", PATH, "nonce123", NOW, BODY, CONTENT_TYPE)

        with pytest.raises(SignatureInvalid) as exc_info:
            signer.verify(
                header, BODY, NOW - 5, method="POST", path=PATH, content_type=CONTENT_TYPE
            )
        assert _reason(exc_info) == "timestamp_mismatch"

    @pytest.mark.parametrize(
        "header",
        [None, "", "Bearer abc", "hmac OPA-Auth:only:three:parts"],
    )
    def test_malformed_header_rejected(self, header):
        with pytest.raises(SignatureInvalid) as exc_info:
            _opa_signer().verify(header, BODY, method="POST", path=PATH)
        assert _reason(exc_info) == "malformed_header"

    def test_unconfigured_secret_rejects_everything(self):
        signer = _opa_signer(secret="")
        header = signer.sign("POST", PATH, "nonce123", NOW, BODY, CONTENT_TYPE)

        with pytest.raises(SignatureInvalid) as exc_info:
            signer.verify(header, BODY, method="POST", path=PATH, content_type=CONTENT_TYPE)
        assert _reason(exc_info) == "secret_not_configured"

    def test_every_failure_has_the_same_message(self):
        signer = _opa_signer()
        old_header = signer.sign("POST", PATH, "n", NOW - 500, BODY, CONTENT_TYPE)
        messages = set()
        for header in (None, old_header, "hmac OPA-Auth:x:y:z:1:empty"):
            with pytest.raises(SignatureInvalid) as exc_info:
                signer.verify(header, BODY, method="POST", path=PATH, content_type=CONTENT_TYPE)
            messages.add(str(exc_info.value))
        assert messages == {"Signature verification failed"}


class TestTimestampedHmacSigner:
    def _signer(self, secret: str = "whsec_test") -> TimestampedHmacSigner:
        return TimestampedHmacSigner(secret, skew_seconds=120, clock=lambda: NOW)

    def test_sign_and_verify_round_trip(self):
        signer = self._signer()
        header = signer.sign(BODY)

        assert header.startswith(f"t={NOW},v1=")
        signer.verify(header, BODY)

    def test_replay_121_seconds_old_rejected(self):
        signer = self._signer()
        header = signer.sign(BODY, timestamp=NOW - 121)

        with pytest.raises(SignatureInvalid) as exc_info:
            signer.verify(header, BODY)
        assert _reason(exc_info) == "timestamp_out_of_window"

    def test_any_matching_v1_signature_accepted(self):
        signer = self._signer()
        valid = signer.sign(BODY).split(",")[1]
        header = f"t={NOW},v1=deadbeef,{valid}"

        signer.verify(header, BODY)

    def test_tampered_body_rejected(self):
        signer = self._signer()
        header = signer.sign(BODY)

        with pytest.raises(SignatureInvalid) as exc_info:
            signer.verify(header, BODY + b" ")
        assert _reason(exc_info) == "mac_mismatch"

    @pytest.mark.parametrize("header", ["v1=abc", "t=,v1=abc", "t=123"])
    def test_malformed_header_rejected(self, header):
        with pytest.raises(SignatureInvalid):
            self._signer().verify(header, BODY)

    def test_missing_header_rejected(self):
        with pytest.raises(SignatureInvalid) as exc_info:
            self._signer().verify(None, BODY)
        assert _reason(exc_info) == "missing_header"

    def test_unconfigured_secret_rejected(self):
        header = self._signer().sign(BODY)

        with pytest.raises(SignatureInvalid) as exc_info:
            self._signer(secret="").verify(header, BODY)
        assert _reason(exc_info) == "secret_not_configured"


def test_verification_policy_from_setting():
    assert VerificationPolicy.from_setting(" Always ") is VerificationPolicy.always
    assert VerificationPolicy.from_setting("never") is VerificationPolicy.never
    with pytest.raises(ValueError):
        VerificationPolicy.from_setting("sometimes")
