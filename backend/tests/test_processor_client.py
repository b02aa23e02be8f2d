import httpx
import pytest

from escrowrail.api_gateway.services.processor_client import (
    HttpProcessorClient,
    ProcessorDeclinedError,
    ProcessorUnavailableError,
)


def _client(tmp_path, handler):
    http = httpx.Client(base_url="http://processor", transport=httpx.MockTransport(handler))
    return HttpProcessorClient("http://processor", str(tmp_path), http_client=http)


def test_authorize_sends_idempotency_key(tmp_path):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"intent_ref": "pi_1", "status": "requires_capture"})

    result = _client(tmp_path, handler).authorize(5000, "EUR", "pm_card_visa", "bkg_1|held_in_escrow|1")

    assert result.intent_ref == "pi_1"
    assert seen[0].url.path == "/intents"
    assert seen[0].headers["Idempotency-Key"] == "bkg_1|held_in_escrow|1"


def test_decline_carries_processor_code(tmp_path):
    def handler(request):
        return httpx.Response(402, json={"code": "insufficient_funds", "message": "Authorization declined"})

    client = _client(tmp_path, handler)
    with pytest.raises(ProcessorDeclinedError) as exc:
        client.authorize(5000, "EUR", "pm_insufficient_funds", "k")
    assert exc.value.code == "insufficient_funds"
    assert client.health()["failure_count"] == 0


def test_server_errors_are_transient(tmp_path):
    def handler(request):
        return httpx.Response(503, json={"detail": "down"})

    with pytest.raises(ProcessorUnavailableError):
        _client(tmp_path, handler).capture("pi_1", "bkg_1|released")


def test_timeouts_are_transient(tmp_path):
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ProcessorUnavailableError):
        _client(tmp_path, handler).refund("pi_1", 5000, "bkg_1|refunded")


def test_breaker_opens_after_repeated_failures(tmp_path):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    client = _client(tmp_path, handler)
    for _ in range(5):
        with pytest.raises(ProcessorUnavailableError):
            client.capture("pi_1", "k")

    with pytest.raises(ProcessorUnavailableError, match="OPEN"):
        client.capture("pi_1", "k")
    assert len(calls) == 5
    assert client.health()["circuit_state"] == "open"
