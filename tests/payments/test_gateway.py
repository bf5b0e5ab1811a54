import json
from decimal import Decimal

import httpx
import pytest

from cargo_dispatch.core.exceptions import GatewayError, NetworkError
from cargo_dispatch.core.retry import RetryConfig
from cargo_dispatch.payment import PaymentGateway, PaymentMethod, PaymentStatus
from cargo_dispatch.payments.gateway import (
    CashGatewayAdapter,
    HttpGatewayAdapter,
    sign_reference,
)
from cargo_dispatch.payments.ledger import PaymentLedger

FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0.0)


def make_adapter(handler, secret="whsec_test", retry_config=FAST_RETRY):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpGatewayAdapter(
        name="razorpay",
        base_url="https://gateway.test/",
        api_key="key_test",
        secret=secret,
        timeout=1.0,
        retry_config=retry_config,
        client=client,
    )


@pytest.mark.unit
class TestHttpGatewayAdapter:
    def test_create_intent(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "pi_123", "status": "created"})

        adapter = make_adapter(handler)

        ref = adapter.create_intent(Decimal("450"), "INR", {"payment_id": "PAY_1"})

        assert ref == "pi_123"
        request = requests[0]
        assert request.url == "https://gateway.test/v1/intents"
        assert request.headers["Authorization"] == "Bearer key_test"
        assert request.headers["Idempotency-Key"]
        assert json.loads(request.content) == {
            "amount": "450",
            "currency": "INR",
            "metadata": {"payment_id": "PAY_1"},
        }

    def test_retries_reuse_idempotency_key(self):
        keys = []

        def handler(request: httpx.Request) -> httpx.Response:
            keys.append(request.headers["Idempotency-Key"])
            if len(keys) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"id": "pi_retry"})

        adapter = make_adapter(handler)

        assert adapter.create_intent(Decimal("100"), "INR", {}) == "pi_retry"
        assert len(keys) == 3
        assert len(set(keys)) == 1

    def test_separate_calls_use_new_keys(self):
        keys = []

        def handler(request: httpx.Request) -> httpx.Response:
            keys.append(request.headers["Idempotency-Key"])
            return httpx.Response(200, json={"id": "pi_x"})

        adapter = make_adapter(handler)
        adapter.create_intent(Decimal("100"), "INR", {})
        adapter.create_intent(Decimal("100"), "INR", {})

        assert keys[0] != keys[1]

    def test_persistent_unavailability_becomes_gateway_error(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        adapter = make_adapter(handler)

        with pytest.raises(GatewayError) as exc_info:
            adapter.create_intent(Decimal("100"), "INR", {})

        assert len(calls) == 3
        assert exc_info.value.details == {"gateway": "razorpay", "operation": "create_intent"}

    def test_rate_limited_is_retried(self):
        responses = iter([httpx.Response(429), httpx.Response(200, json={"id": "pi_ok"})])

        adapter = make_adapter(lambda request: next(responses))

        assert adapter.create_intent(Decimal("100"), "INR", {}) == "pi_ok"

    def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, json={"error": "bad amount"})

        adapter = make_adapter(handler)

        with pytest.raises(GatewayError) as exc_info:
            adapter.create_intent(Decimal("100"), "INR", {})

        assert len(calls) == 1
        assert exc_info.value.details["status_code"] == 400

    def test_transport_errors_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused")

        adapter = make_adapter(handler)

        with pytest.raises(GatewayError) as exc_info:
            adapter.create_intent(Decimal("100"), "INR", {})

        assert len(calls) == 3
        assert isinstance(exc_info.value.__cause__, NetworkError)

    def test_timeout_is_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out")

        adapter = make_adapter(handler, retry_config=RetryConfig(max_attempts=1, base_delay=0.0))

        with pytest.raises(GatewayError) as exc_info:
            adapter.create_intent(Decimal("100"), "INR", {})

        assert "timed out" in exc_info.value.message

    def test_missing_id(self):
        adapter = make_adapter(lambda request: httpx.Response(200, json={"status": "ok"}))

        with pytest.raises(GatewayError):
            adapter.create_intent(Decimal("100"), "INR", {})

    def test_non_json_body(self):
        adapter = make_adapter(lambda request: httpx.Response(200, text="<html>ok</html>"))

        with pytest.raises(GatewayError) as exc_info:
            adapter.create_intent(Decimal("100"), "INR", {})

        assert exc_info.value.details == {"gateway": "razorpay", "status_code": 200}

    def test_json_list_body(self):
        adapter = make_adapter(lambda request: httpx.Response(200, json=[{"id": "pi_1"}]))

        with pytest.raises(GatewayError):
            adapter.create_intent(Decimal("100"), "INR", {})

    def test_refund(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": "rf_9"})

        adapter = make_adapter(handler)

        assert adapter.refund("pi_123", Decimal("120")) == "rf_9"
        assert requests[0].url.path == "/v1/intents/pi_123/refunds"
        assert json.loads(requests[0].content) == {"amount": "120"}

    def test_verify_signature(self):
        adapter = make_adapter(lambda request: httpx.Response(500))

        assert adapter.verify("pi_123", sign_reference("whsec_test", "pi_123"))
        assert not adapter.verify("pi_123", sign_reference("whsec_test", "pi_456"))
        assert not adapter.verify("pi_123", "not-a-signature")

    def test_verify_without_secret(self):
        adapter = make_adapter(lambda request: httpx.Response(500), secret="")

        with pytest.raises(GatewayError):
            adapter.verify("pi_123", "sig")


@pytest.mark.unit
class TestCashGatewayAdapter:
    def test_references(self):
        adapter = CashGatewayAdapter()

        ref = adapter.create_intent(Decimal("100"), "INR", {})

        assert ref.startswith("cod_")
        assert adapter.refund(ref, Decimal("100")).startswith("cod_refund_")
        assert adapter.create_intent(Decimal("100"), "INR", {}) != ref

    def test_verify_always_true(self):
        assert CashGatewayAdapter().verify("cod_abc", "")


@pytest.mark.unit
def test_sign_reference_is_deterministic():
    assert sign_reference("secret", "pi_1") == sign_reference("secret", "pi_1")
    assert sign_reference("secret", "pi_1") != sign_reference("other", "pi_1")
    assert len(sign_reference("secret", "pi_1")) == 64


def test_malformed_gateway_reply_fails_payment(session_maker, mock_notifier, clock):
    adapter = make_adapter(lambda request: httpx.Response(200, text="<html>ok</html>"))
    ledger = PaymentLedger(
        session_maker,
        {PaymentGateway.RAZORPAY: adapter, PaymentGateway.COD: CashGatewayAdapter()},
        notifier=mock_notifier,
        clock=clock,
    )
    payment = ledger.initiate("BK_1", "cust_1", Decimal("500"), PaymentMethod.UPI)

    with pytest.raises(GatewayError):
        ledger.begin_gateway_payment(payment.payment_id)

    assert ledger.get(payment.payment_id).status == PaymentStatus.FAILED
