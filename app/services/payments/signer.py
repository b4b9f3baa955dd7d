"""Request signing and webhook signature verification.

Two schemes are supported:

* ``OpaAuthSigner`` implements the OPA-Auth HMAC protocol used by the QR
  wallet A API, both for outbound requests and for its callbacks.
* ``TimestampedHmacSigner`` covers providers that sign the raw webhook body
  as ``t=<epoch>,v1=<hex hmac>``.

Both reject timestamps outside the configured skew window and raise a
single ``SignatureInvalid`` for every failure mode. The specific reason is
only logged.
"""

from __future__ import annotations

import base64
import enum
import hashlib
import hmac
import secrets
import time
from typing import Callable

from app.services.payments.errors import SignatureInvalid

EMPTY = "empty"
OPA_AUTH_PREFIX = "hmac OPA-Auth:"
DEFAULT_SKEW_SECONDS = 120


class VerificationPolicy(enum.Enum):
    always = "always"
    never = "never"

    @classmethod
    def from_setting(cls, value: str) -> "VerificationPolicy":
        return cls(value.strip().lower())


def _to_bytes(value: bytes | str | None) -> bytes | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


def _check_skew(epoch: int, now: float, skew_seconds: int) -> None:
    if abs(now - epoch) > skew_seconds:
        raise SignatureInvalid("timestamp_out_of_window")


class OpaAuthSigner:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        skew_seconds: int = DEFAULT_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.skew_seconds = skew_seconds
        self.clock = clock

    @staticmethod
    def content_digest(content_type: str | None, body: bytes | str | None) -> str:
        """base64(MD5(content_type + body)), or ``"empty"`` without a body."""
        raw = _to_bytes(body)
        if not raw or not content_type:
            return EMPTY
        digest = hashlib.md5()
        digest.update(content_type.encode("utf-8"))
        digest.update(raw)
        return base64.b64encode(digest.digest()).decode("ascii")

    @staticmethod
    def string_to_sign(
        path: str,
        method: str,
        nonce: str,
        epoch: int,
        content_type: str | None,
        digest: str,
    ) -> str:
        return "\n".join(
            [path, method.upper(), nonce, str(epoch), content_type or EMPTY, digest or EMPTY]
        )

    def _mac(self, message: str) -> str:
        mac = hmac.new(
            self.api_secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256
        ).digest()
        return base64.b64encode(mac).decode("ascii")

    def sign(
        self,
        method: str,
        path: str,
        nonce: str,
        timestamp: int,
        body: bytes | str | None = None,
        content_type: str | None = None,
    ) -> str:
        digest = self.content_digest(content_type, body)
        message = self.string_to_sign(path, method, nonce, timestamp, content_type, digest)
        mac = self._mac(message)
        return f"{OPA_AUTH_PREFIX}{self.api_key}:{mac}:{nonce}:{timestamp}:{digest}"

    def build_headers(
        self,
        method: str,
        path: str,
        body: bytes | str | None = None,
        content_type: str | None = None,
    ) -> dict[str, str]:
        nonce = secrets.token_hex(12)
        epoch = int(self.clock())
        headers = {"Authorization": self.sign(method, path, nonce, epoch, body, content_type)}
        if content_type and body:
            headers["Content-Type"] = content_type
        return headers

    def verify(
        self,
        header: str | None,
        raw_body: bytes | str | None,
        declared_timestamp: int | None = None,
        *,
        method: str,
        path: str,
        content_type: str | None = None,
        now: float | None = None,
    ) -> None:
        """Raise ``SignatureInvalid`` unless ``header`` authenticates the request."""
        if not self.api_secret:
            raise SignatureInvalid("secret_not_configured")
        if not header or not header.startswith(OPA_AUTH_PREFIX):
            raise SignatureInvalid("malformed_header")
        parts = header[len(OPA_AUTH_PREFIX):].split(":")
        if len(parts) != 5:
            raise SignatureInvalid("malformed_header")
        api_key, supplied_mac, nonce, epoch_raw, supplied_digest = parts
        try:
            epoch = int(epoch_raw)
        except ValueError as exc:
            raise SignatureInvalid("malformed_timestamp") from exc
        if declared_timestamp is not None and int(declared_timestamp) != epoch:
            raise SignatureInvalid("timestamp_mismatch")
        _check_skew(epoch, self.clock() if now is None else now, self.skew_seconds)

        digest = self.content_digest(content_type, raw_body)
        expected_mac = self._mac(
            self.string_to_sign(path, method, nonce, epoch, content_type, digest)
        )
        # Evaluate every comparison so timing does not depend on which part differs.
        key_ok = hmac.compare_digest(api_key.encode(), self.api_key.encode())
        digest_ok = hmac.compare_digest(supplied_digest.encode(), digest.encode())
        mac_ok = hmac.compare_digest(supplied_mac.encode(), expected_mac.encode())
        if not (key_ok and digest_ok and mac_ok):
            raise SignatureInvalid("mac_mismatch")


class TimestampedHmacSigner:
    """``t=<epoch>,v1=<hex HMAC-SHA256(secret, "<epoch>.<body>")>``."""

    def __init__(
        self,
        secret: str,
        skew_seconds: int = DEFAULT_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.skew_seconds = skew_seconds
        self.clock = clock

    def _mac(self, timestamp: int, body: bytes) -> str:
        payload = str(timestamp).encode("ascii") + b"." + body
        return hmac.new(self.secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    def sign(self, body: bytes | str, timestamp: int | None = None) -> str:
        epoch = int(self.clock()) if timestamp is None else int(timestamp)
        return f"t={epoch},v1={self._mac(epoch, _to_bytes(body) or b'')}"

    @staticmethod
    def _parse(header: str) -> tuple[int, list[str]]:
        epoch: int | None = None
        signatures: list[str] = []
        for item in header.split(","):
            name, sep, value = item.strip().partition("=")
            if not sep:
                continue
            if name == "t":
                try:
                    epoch = int(value)
                except ValueError as exc:
                    raise SignatureInvalid("malformed_timestamp") from exc
            elif name == "v1":
                signatures.append(value)
        if epoch is None or not signatures:
            raise SignatureInvalid("malformed_header")
        return epoch, signatures

    def verify(
        self,
        header: str | None,
        raw_body: bytes | str | None,
        declared_timestamp: int | None = None,
        *,
        now: float | None = None,
    ) -> None:
        if not self.secret:
            raise SignatureInvalid("secret_not_configured")
        if not header:
            raise SignatureInvalid("missing_header")
        epoch, signatures = self._parse(header)
        if declared_timestamp is not None and int(declared_timestamp) != epoch:
            raise SignatureInvalid("timestamp_mismatch")
        _check_skew(epoch, self.clock() if now is None else now, self.skew_seconds)
        expected = self._mac(epoch, _to_bytes(raw_body) or b"")
        matched = False
        for candidate in signatures:
            if hmac.compare_digest(candidate.encode(), expected.encode()):
                matched = True
        if not matched:
            raise SignatureInvalid("mac_mismatch")
