"""Payment gateway adapters.

The ledger only sees the three calls of ``GatewayAdapter``. HTTP adapters
retry transient failures themselves and report anything they cannot recover
from as ``GatewayError``.
"""

import hashlib
import hmac
import logging
import uuid
from decimal import Decimal
from typing import Any, Protocol

import httpx

from cargo_dispatch.core.exceptions import (
    GatewayError,
    NetworkError,
    ServiceUnavailableError,
    TransientError,
)
from cargo_dispatch.core.retry import RetryConfig, with_retry_sync

logger = logging.getLogger(__name__)


class GatewayAdapter(Protocol):
    def create_intent(self, amount: Decimal, currency: str, metadata: dict[str, Any]) -> str: ...

    def verify(self, gateway_ref: str, signature: str) -> bool: ...

    def refund(self, gateway_ref: str, amount: Decimal) -> str: ...


def sign_reference(secret: str, gateway_ref: str) -> str:
    """HMAC-SHA256 signature a gateway attaches to a successful checkout."""
    return hmac.new(secret.encode(), gateway_ref.encode(), hashlib.sha256).hexdigest()


class HttpGatewayAdapter:
    """JSON-over-HTTP gateway client with bounded retries and a call timeout."""

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        secret: str,
        timeout: float = 10.0,
        retry_config: RetryConfig | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self._secret = secret
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    def create_intent(self, amount: Decimal, currency: str, metadata: dict[str, Any]) -> str:
        data = self._call(
            "create_intent",
            "/v1/intents",
            {"amount": str(amount), "currency": currency, "metadata": metadata},
        )
        return str(data["id"])

    def verify(self, gateway_ref: str, signature: str) -> bool:
        if not self._secret:
            raise GatewayError(f"{self.name} gateway has no signing secret configured")
        expected = sign_reference(self._secret, gateway_ref)
        return hmac.compare_digest(expected, signature)

    def refund(self, gateway_ref: str, amount: Decimal) -> str:
        data = self._call(
            "refund",
            f"/v1/intents/{gateway_ref}/refunds",
            {"amount": str(amount)},
        )
        return str(data["id"])

    def _call(self, operation: str, path: str, body: dict[str, Any]) -> dict[str, Any]:
        # One idempotency key per logical call so retries cannot double-charge.
        headers = {**self._headers, "Idempotency-Key": uuid.uuid4().hex}
        try:
            return with_retry_sync(
                lambda: self._post(path, body, headers),
                config=self.retry_config,
                operation_name=f"{self.name}.{operation}",
            )
        except TransientError as e:
            raise GatewayError(
                f"{self.name} {operation} failed after retries: {e.message}",
                {"gateway": self.name, "operation": operation},
            ) from e

    def _post(self, path: str, body: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            response = self._client.post(f"{self.base_url}{path}", json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise ServiceUnavailableError(f"Gateway returned {response.status_code}")
        if response.status_code >= 400:
            raise GatewayError(
                f"{self.name} rejected request with {response.status_code}",
                {"gateway": self.name, "status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayError(
                f"{self.name} returned a non-JSON body",
                {"gateway": self.name, "status_code": response.status_code},
            ) from e
        if not isinstance(data, dict) or "id" not in data:
            raise GatewayError(f"{self.name} response is missing an id", {"gateway": self.name})
        return data

    def close(self) -> None:
        self._client.close()


class CashGatewayAdapter:
    """Cash on delivery: nothing to call, the driver collects the money."""

    name = "cod"

    def create_intent(self, amount: Decimal, currency: str, metadata: dict[str, Any]) -> str:
        return f"cod_{uuid.uuid4().hex[:16]}"

    def verify(self, gateway_ref: str, signature: str) -> bool:
        return True

    def refund(self, gateway_ref: str, amount: Decimal) -> str:
        logger.info(f"Cash refund of {amount} recorded for {gateway_ref}")
        return f"cod_refund_{uuid.uuid4().hex[:16]}"
