"""HTTP client for the external payment processor, with circuit breaker integration."""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

import httpx
from pydantic import BaseModel

from escrowrail.shared.correlation import get_correlation_id
from escrowrail.api_gateway.services.circuit_breaker import CircuitBreaker, CircuitOpenError

logger = logging.getLogger("escrowrail.processor_client")

PROCESSOR_ID = "processor"


class ProcessorError(Exception):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Processor error: {detail}")


class ProcessorDeclinedError(ProcessorError):
    """The processor refused the operation for good (card declined, insufficient funds, ...)."""

    def __init__(self, code: str, detail: str = ""):
        self.code = code
        super().__init__(detail or code)


class ProcessorUnavailableError(ProcessorError):
    """Timeouts, connection failures, 5xx and rate limiting; worth retrying."""


class ProcessorResult(BaseModel):
    intent_ref: str
    status: str
    refund_ref: Optional[str] = None


class HttpProcessorClient:

    def __init__(self, base_url: str, data_dir: str, timeout: float = 5.0,
                 http_client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.breaker = CircuitBreaker(PROCESSOR_ID, data_dir)
        self._http_client = http_client

    @contextmanager
    def _client(self) -> Iterator[httpx.Client]:
        if self._http_client is not None:
            yield self._http_client
            return
        with httpx.Client(base_url=self.base_url, timeout=self.timeout) as client:
            yield client

    def _post(self, path: str, body: dict, idempotency_key: str) -> dict:
        if not self.breaker.can_execute():
            raise ProcessorUnavailableError(str(CircuitOpenError(PROCESSOR_ID)))

        try:
            with self._client() as client:
                resp = client.post(
                    path,
                    json=body,
                    headers={
                        "Idempotency-Key": idempotency_key,
                        "X-Correlation-Id": get_correlation_id(),
                    },
                    timeout=self.timeout,
                )
        except httpx.TimeoutException:
            self.breaker.record_failure()
            raise ProcessorUnavailableError(f"{path} timed out after {self.timeout}s")
        except httpx.TransportError as e:
            self.breaker.record_failure()
            raise ProcessorUnavailableError(f"{path} transport error: {e}")

        if resp.status_code == 429 or resp.status_code >= 500:
            self.breaker.record_failure()
            raise ProcessorUnavailableError(f"{path} returned {resp.status_code}")

        # A decline is a healthy processor answering "no".
        self.breaker.record_success()
        if resp.status_code >= 400:
            try:
                data = resp.json()
            except ValueError:
                data = {}
            code = data.get("code") or "processor_rejected"
            raise ProcessorDeclinedError(code, data.get("message", resp.text))
        return resp.json()

    def authorize(self, amount: int, currency: str, payment_method_ref: str,
                  idempotency_key: str, metadata: Optional[dict] = None) -> ProcessorResult:
        data = self._post(
            "/intents",
            {
                "amount": amount,
                "currency": currency,
                "payment_method_ref": payment_method_ref,
                "capture_method": "manual",
                "metadata": metadata or {},
            },
            idempotency_key,
        )
        return ProcessorResult(**data)

    def capture(self, intent_ref: str, idempotency_key: str) -> ProcessorResult:
        data = self._post(f"/intents/{intent_ref}/capture", {}, idempotency_key)
        return ProcessorResult(**data)

    def refund(self, intent_ref: str, amount: Optional[int], idempotency_key: str) -> ProcessorResult:
        data = self._post(f"/intents/{intent_ref}/refund", {"amount": amount}, idempotency_key)
        return ProcessorResult(**data)

    def health(self) -> dict:
        state = self.breaker.get_state()
        return {
            "processor_id": PROCESSOR_ID,
            "circuit_state": state.get("circuit_state", "closed"),
            "failure_count": state.get("failure_count", 0),
            "success_count": state.get("success_count", 0),
            "last_failure_at": state.get("last_failure_at"),
            "last_success_at": state.get("last_success_at"),
        }
