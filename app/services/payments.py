import time
import logging
import httpx
from app.core.config import get_settings


settings = get_settings()
logger = logging.getLogger(__name__)


class PaymentApiError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, raw: str | None = None, retry_after: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.raw = raw
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429

    @property
    def ambiguous(self) -> bool:
        """True when the transfer may have gone through despite the error."""
        if self.status_code is None or self.status_code >= 500:
            return True
        return 200 <= self.status_code < 300

    def to_meta(self) -> dict:
        return {
            "message": self.message,
            "status": self.status_code,
            "raw": (self.raw or "")[:500] or None,
        }


class PaymentClient:
    """Client for the external service that signs and sends withdrawal transfers."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None, retry_count: int | None = None):
        self.base_url = str(base_url if base_url is not None else settings.payment_base_url or "").strip()
        self.timeout = settings.payment_timeout_seconds if timeout is None else timeout
        self.retry_count = max(0, int(settings.payment_retry_count if retry_count is None else retry_count))

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _extract_error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict):
            for key in ("message", "detail", "error"):
                value = data.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        text = (response.text or "").strip()
        return text[:300] if text else f"HTTP {response.status_code}"

    def _retry_after(self, response: httpx.Response) -> int | None:
        try:
            data = response.json()
        except ValueError:
            data = {}
        value = data.get("retryAfter") if isinstance(data, dict) else None
        value = value or response.headers.get("Retry-After")
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def transfer(self, recipient_address: str, amount: str, idempotency_key: str) -> dict:
        """POST a transfer; the idempotency key lets the service drop our own retries."""
        if not self.configured:
            raise PaymentApiError("Payment service is not configured", status_code=503)
        payload = {"recipientAddress": recipient_address, "amount": amount}
        headers = {"Content-Type": "application/json", "Idempotency-Key": idempotency_key}
        last_exc = None
        for attempt in range(self.retry_count + 1):
            start = time.time()
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.base_url, json=payload, headers=headers)
                duration_ms = round((time.time() - start) * 1000, 2)
                logger.info("Payment API POST transfer status=%s duration=%sms", response.status_code, duration_ms)
                if response.status_code >= 400:
                    raise PaymentApiError(
                        self._extract_error_message(response),
                        status_code=response.status_code,
                        raw=response.text,
                        retry_after=self._retry_after(response) if response.status_code == 429 else None,
                    )
                try:
                    data = response.json()
                except ValueError as exc:
                    raise PaymentApiError("Payment service returned invalid JSON response.", status_code=response.status_code, raw=response.text) from exc
                if not isinstance(data, dict) or not data.get("success") or not data.get("signature"):
                    raise PaymentApiError("Payment service responded without success status", status_code=response.status_code, raw=response.text)
                return data
            except PaymentApiError as exc:
                last_exc = exc
                # 4xx other than 429 is a definitive rejection.
                if not exc.retryable or attempt >= self.retry_count:
                    raise
                time.sleep(0.5 * (attempt + 1))
            except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
                last_exc = PaymentApiError("Unable to reach payment service.", raw=str(exc))
                if attempt >= self.retry_count:
                    raise last_exc from exc
                time.sleep(0.5 * (attempt + 1))
        raise last_exc
