"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements the payment gateway and notification sender ports
using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream (payment provider, messaging gateway) to
    avoid hammering unhealthy dependencies, with HALF_OPEN probing after a
    timeout.
- Retry policy with exponential backoff for connection errors and 5xx.
    Timeouts are not retried: the provider call runs inside the checkout
    transaction and its latency must stay bounded.
- Error mapping: provider failures surface as ``ProviderCommunicationError``
    carrying the provider's error body, messaging failures as
    ``NotificationError``.
"""

import logging
import threading
import time
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    NotificationError,
    NotifierPort,
    PaymentAck,
    PaymentGatewayPort,
    PaymentRequest,
    ProviderCommunicationError,
    format_amount,
)

logger = logging.getLogger(__name__)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe opens the circuit again.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Check and update state before a protected call.

        Raises:
            RuntimeError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-downstream instances
_payments_cb = _breaker("payments")
_messaging_cb = _breaker("messaging")


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry on connection-level errors and HTTP 5xx, never on timeouts."""
    if exc is not None:
        return not isinstance(exc, httpx.TimeoutException)
    return resp is not None and 500 <= resp.status_code < 600


def _backoff(tries: int, base: float) -> None:
    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
    time.sleep(min(base * (2 ** (tries - 1)), cap))


def _json_or_text(resp: httpx.Response):
    try:
        return resp.json()
    except ValueError:
        return resp.text


# ---------------- Payment provider adapter ---------------- #

class HttpPaymentGatewayClient(PaymentGatewayPort):
    """HTTP client for an M-Pesa style C2B payment provider.

    The request body uses the provider's ``input_*`` fields and the
    third-party reference doubles as the provider-side deduplication key,
    so retrying a request after a 5xx cannot charge the customer twice.
    Business mappings:

    - 200/201 → ``PaymentAck`` built from the ``output_*`` fields.
    - 200/201 whose body is not a JSON object → ``ProviderCommunicationError``
      with the raw text as provider payload.
    - any other 4xx/5xx (after retries) → ``ProviderCommunicationError``
      carrying the provider's body and its ``output_ResponseDesc``.
    - transport errors, timeouts and an open circuit →
      ``ProviderCommunicationError`` without a provider body.
    """

    def __init__(
        self,
        api_url: str,
        auth_token: str = "",
        service_provider_code: str = "",
        origin: str = "*",
        timeout: float | None = None,
        verify: bool = True,
        breaker: CircuitBreaker | None = None,
    ):
        self.api_url = api_url
        self.auth_token = auth_token
        self.service_provider_code = service_provider_code
        self.origin = origin
        self.timeout = timeout or getattr(settings, "PAYMENT_TIMEOUT_SECS", 30.0)
        self.verify = verify
        self.breaker = breaker or _payments_cb

    def _payload(self, request: PaymentRequest) -> dict:
        return {
            "input_TransactionReference": request.reference,
            "input_CustomerMSISDN": request.phone,
            "input_Amount": format_amount(request.amount),
            "input_ThirdPartyReference": request.reference,
            "input_ServiceProviderCode": self.service_provider_code,
        }

    def initiate(self, request: PaymentRequest) -> PaymentAck:
        """Submit the payment initiation request.

        Raises:
            ProviderCommunicationError: See class docstring.
        """
        payload = self._payload(request)
        max_retries, backoff = _retry_policy()
        tries = 0

        try:
            state = self.breaker.before_call()
        except RuntimeError as e:
            raise ProviderCommunicationError("The payment service is temporarily unavailable.", detail=str(e))

        extras = {"Origin": self.origin, "X-Circuit-State": state, "X-Retry-Count": "0"}
        if self.auth_token:
            extras["Authorization"] = f"Bearer {self.auth_token}"
        headers = _request_headers(extras)
        logger.info("payment initiation", extra={"reference": request.reference, "amount": payload["input_Amount"]})

        try:
            with httpx.Client(timeout=self.timeout, verify=self.verify) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.post(self.api_url, json=payload, headers=headers)
                        if resp.status_code in (200, 201):
                            self.breaker.on_success()
                            return self._ack(resp)
                        if 400 <= resp.status_code < 500:
                            # Business rejection, not a circuit failure
                            self.breaker.on_success()
                            raise self._rejected(resp)
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= max_retries or not _should_retry(resp, exc):
                        self.breaker.on_failure()
                        if exc is not None:
                            logger.warning("payment provider unreachable", extra={"reference": request.reference, "error": repr(exc)})
                            raise ProviderCommunicationError(detail=repr(exc)) from exc
                        raise self._rejected(resp)

                    _backoff(tries, backoff)
        finally:
            self.breaker.on_finish()

    def _ack(self, resp: httpx.Response) -> PaymentAck:
        data = _json_or_text(resp)
        if not isinstance(data, dict):
            logger.warning("unreadable payment acknowledgment", extra={"status_code": resp.status_code})
            raise ProviderCommunicationError(
                "The payment service sent an unreadable response.", provider_payload=resp.text
            )
        return PaymentAck(
            conversation_id=data.get("output_ConversationID"),
            response_code=data.get("output_ResponseCode"),
            response_description=data.get("output_ResponseDesc"),
            raw=data,
        )

    def _rejected(self, resp: httpx.Response) -> ProviderCommunicationError:
        body = _json_or_text(resp)
        reason = None
        if isinstance(body, dict):
            reason = body.get("output_ResponseDesc") or body.get("output_error")
        logger.warning("payment provider error", extra={"status_code": resp.status_code, "provider_body": body})
        message = f"Payment transaction failed: {reason}" if reason else None
        return ProviderCommunicationError(message, provider_payload=body)


# ---------------- Messaging adapter ---------------- #

class HttpNotificationSender(NotifierPort):
    """HTTP client for the messaging gateway.

    The sender owns one ``httpx.Client`` for its whole lifetime. Reconnect
    policy: when a send fails at the transport level the client is closed
    and recreated, and the message is retried once on the fresh
    connection. Any remaining failure raises ``NotificationError``; the
    services log it and carry on. Timeouts are short because callers are
    waiting on an HTTP response.
    """

    def __init__(self, base_url: str, timeout: float | None = None, breaker: CircuitBreaker | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or getattr(settings, "NOTIFY_TIMEOUT_SECS", 3.0)
        self.breaker = breaker or _messaging_cb
        self._lock = threading.Lock()
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(timeout=self.timeout)
            return self._client

    def _reconnect(self) -> httpx.Client:
        with self._lock:
            if self._client is not None:
                self._client.close()
            self._client = httpx.Client(timeout=self.timeout)
            return self._client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def send(self, to: str, text: str) -> None:
        try:
            self.breaker.before_call()
        except RuntimeError as e:
            raise NotificationError(str(e))

        payload = {"to": to, "text": text}
        url = f"{self.base_url}/messages"
        headers = _request_headers()
        try:
            try:
                resp = self._get_client().post(url, json=payload, headers=headers)
            except httpx.TransportError:
                logger.info("messaging connection lost, reconnecting")
                resp = self._reconnect().post(url, json=payload, headers=headers)
            if resp.status_code >= 400:
                raise NotificationError(f"messaging gateway answered {resp.status_code}")
        except httpx.HTTPError as e:
            self.breaker.on_failure()
            raise NotificationError(repr(e)) from e
        except NotificationError:
            self.breaker.on_failure()
            raise
        else:
            self.breaker.on_success()
        finally:
            self.breaker.on_finish()
