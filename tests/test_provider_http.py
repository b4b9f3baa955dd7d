"""Tests for the bounded-time provider HTTP client."""

import httpx
import pytest

from app.services.payments.errors import ProviderError, ProviderTimeout, ProviderUnavailable
from app.services.payments.http import ProviderHttpClient


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _client(handler, clock=None, **kwargs) -> ProviderHttpClient:
    clock = clock or FakeClock()
    options = {"max_attempts": 2, "backoff_seconds": 0.5, "total_budget_seconds": 5.0}
    options.update(kwargs)
    return ProviderHttpClient(
        "card",
        "https://provider.test/v1/",
        transport=httpx.MockTransport(handler),
        sleep=clock.sleep,
        clock=clock,
        **options,
    )


def test_successful_request_returns_response():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"id": "pi_1"})

    response = _client(handler).request("GET", "/payment_intents/pi_1", operation="poll_status")

    assert response.json() == {"id": "pi_1"}
    assert seen == ["https://provider.test/v1/payment_intents/pi_1"]


def test_server_error_retried_once_with_backoff():
    clock = FakeClock()
    responses = iter([httpx.Response(503), httpx.Response(200, json={"ok": True})])

    response = _client(lambda request: next(responses), clock=clock).request(
        "POST", "/payment_intents", operation="initiate", json_body={"amount": 5000}
    )

    assert response.status_code == 200
    assert clock.sleeps == [0.5]


def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(402, json={"error": "card_declined"})

    with pytest.raises(ProviderError) as exc_info:
        _client(handler).request("POST", "/payment_intents", operation="initiate")

    assert exc_info.value.status_code == 402
    assert exc_info.value.retryable is False
    assert len(calls) == 1


def test_repeated_timeouts_raise_provider_timeout():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(ProviderTimeout) as exc_info:
        _client(handler).request("GET", "/charges/ch_1", operation="poll_status")

    assert exc_info.value.retryable is True
    assert len(calls) == 2


def test_repeated_server_errors_raise_unavailable():
    with pytest.raises(ProviderUnavailable) as exc_info:
        _client(lambda request: httpx.Response(500)).request(
            "GET", "/charges/ch_1", operation="poll_status"
        )

    assert not isinstance(exc_info.value, ProviderTimeout)


def test_transport_error_raises_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(ProviderUnavailable):
        _client(handler, max_attempts=1).request("GET", "/ping", operation="ping")


def test_time_budget_stops_retries():
    clock = FakeClock()
    calls = []

    def slow_handler(request):
        calls.append(request)
        clock.now += 0.8
        return httpx.Response(503)

    client = _client(slow_handler, clock=clock, max_attempts=3, total_budget_seconds=1.0)

    with pytest.raises(ProviderTimeout):
        client.request("GET", "/payments/pay_1", operation="poll_status")

    assert len(calls) == 1
    assert clock.sleeps == []


def test_sign_called_for_every_attempt():
    signatures = []
    responses = iter([httpx.Response(502), httpx.Response(200, json={})])

    def sign():
        signatures.append(len(signatures))
        return {"Authorization": f"sig-{len(signatures)}"}

    seen_headers = []

    def handler(request):
        seen_headers.append(request.headers["Authorization"])
        return next(responses)

    _client(handler).request("POST", "/v2/codes", operation="initiate", sign=sign)

    assert seen_headers == ["sig-1", "sig-2"]
