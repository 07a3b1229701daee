"""Tests for the simulated, Stripe and Creem payment backends."""
from __future__ import annotations

import json
import socket
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from urllib import error as urllib_error
from urllib.parse import parse_qs, urlsplit

import pytest
import stripe

from backend.app.payments import (
    BillingType,
    CallbackEventType,
    CheckoutSessionParams,
    ConfigurationError,
    ProviderType,
    UpstreamError,
    ValidationError,
)
from backend.app.payments.providers import (
    CHECKOUT_SESSION_PLACEHOLDER,
    MOCK_SESSION_PREFIX,
    CreemPaymentProvider,
    MockPaymentProvider,
    StripePaymentProvider,
    compute_signature,
    is_placeholder,
)
from backend.app.payments.providers.creem import CREEM_TEST_API_URL, build_request_id, parse_request_id


def _params(plan_id: str = "credits_100", account_id: str = "42") -> CheckoutSessionParams:
    return CheckoutSessionParams(
        account_id=account_id,
        account_email="reader@example.com",
        plan_id=plan_id,
        locale="en",
        success_url=f"https://app.example.com/en/payment/success?session_id={CHECKOUT_SESSION_PLACEHOLDER}",
        cancel_url="https://app.example.com/en?canceled=true",
    )


def test_is_placeholder_detects_unresolved_templates():
    assert is_placeholder(CHECKOUT_SESSION_PLACEHOLDER)
    assert is_placeholder("{SESSION}")
    assert not is_placeholder("cs_test_123")
    assert not is_placeholder(None)


# Simulated backend ---------------------------------------------------------


def test_mock_checkout_redirects_to_local_payment_page():
    provider = MockPaymentProvider()

    session = provider.create_checkout_session(_params("credits_100"))

    assert session.provider == ProviderType.MOCK
    assert session.logical_id.startswith(MOCK_SESSION_PREFIX)
    parts = urlsplit(session.redirect_url)
    assert parts.path == "/en/payment/mock"
    query = parse_qs(parts.query)
    assert query["session_id"] == [session.logical_id]
    assert query["plan_id"] == ["credits_100"]
    assert query["user_id"] == ["42"]
    assert query["credits"] == ["100"]
    assert query["amount"] == ["99"]
    assert query["provider"] == ["mock"]
    assert session.metadata["billing_type"] == "one_time"


def test_mock_verification_echoes_created_session():
    provider = MockPaymentProvider()
    session = provider.create_checkout_session(_params("credits_100", account_id="u1"))

    first = provider.verify_payment(session.logical_id)
    second = provider.verify_payment(session.logical_id)

    assert first == second
    assert first.succeeded
    assert first.account_id == "u1"
    assert first.plan_id == "credits_100"
    assert first.credit_grant == 100
    assert first.billing_type == BillingType.ONE_TIME
    assert first.amount_minor_units == 99


def test_mock_verification_of_unknown_session_reports_demo_values():
    result = MockPaymentProvider().verify_payment("mock_session_abc")

    assert result.succeeded
    assert result.plan_id == "pro"
    assert result.credit_grant == 800
    assert result.billing_type == BillingType.RECURRING
    assert result.account_id is None


def test_mock_verification_rejects_foreign_identifiers():
    result = MockPaymentProvider().verify_payment("cs_test_123")

    assert not result.succeeded
    assert result.failure_reason


def test_mock_callback_without_secret_is_rejected():
    provider = MockPaymentProvider()
    session = provider.create_checkout_session(_params("credits_500", account_id="u9"))
    body = json.dumps({"id": "evt_1", "type": "checkout.completed", "data": {"session_id": session.logical_id}})

    assert provider.handle_callback(body.encode("utf-8")) is None
    assert provider.handle_callback(body.encode("utf-8"), compute_signature("", body)) is None


def test_signed_mock_callback_merges_stored_session(make_config):
    provider = MockPaymentProvider(make_config(MOCK_WEBHOOK_SECRET="s3cret"))
    session = provider.create_checkout_session(_params("credits_500", account_id="u9"))
    body = json.dumps(
        {"id": "evt_1", "type": "checkout.completed", "data": {"session_id": session.logical_id}}
    ).encode("utf-8")

    event = provider.handle_callback(body, compute_signature("s3cret", body))

    assert event is not None
    assert event.event_id == "evt_1"
    assert event.event_type == CallbackEventType.CHECKOUT_COMPLETED
    assert event.logical_id == session.logical_id
    assert event.extracted_metadata["account_id"] == "u9"
    assert event.extracted_metadata["plan_id"] == "credits_500"


def test_mock_callback_enforces_signature_when_secret_configured(make_config):
    provider = MockPaymentProvider(make_config(MOCK_WEBHOOK_SECRET="s3cret"))
    body = json.dumps({"type": "payment.completed", "metadata": {"account_id": "u1"}}).encode("utf-8")

    assert provider.handle_callback(body) is None
    assert provider.handle_callback(body, "deadbeef") is None

    event = provider.handle_callback(body, compute_signature("s3cret", body))
    assert event is not None
    assert event.event_type == CallbackEventType.PAYMENT_COMPLETED
    assert event.extracted_metadata == {"account_id": "u1"}


def test_mock_callback_handles_unparseable_and_unknown_events(make_config):
    provider = MockPaymentProvider(make_config(MOCK_WEBHOOK_SECRET="s3cret"))
    unknown = json.dumps({"type": "customer.updated"}).encode("utf-8")

    assert provider.handle_callback(b"not json", compute_signature("s3cret", b"not json")) is None
    assert provider.handle_callback(b"[1, 2]", compute_signature("s3cret", b"[1, 2]")) is None
    event = provider.handle_callback(unknown, compute_signature("s3cret", unknown))
    assert event is not None
    assert event.event_type == CallbackEventType.IGNORED


# Stripe backend ------------------------------------------------------------


class FakeStripeClient:
    """Stand-in for the ``stripe`` module's checkout and webhook surface."""

    def __init__(self) -> None:
        self.created: List[Dict[str, Any]] = []
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.event: Optional[Dict[str, Any]] = None
        self.create_error: Optional[Exception] = None
        self.checkout = SimpleNamespace(Session=SimpleNamespace(create=self._create, retrieve=self._retrieve))
        self.Webhook = SimpleNamespace(construct_event=self._construct_event)

    def _create(self, **kwargs: Any) -> Dict[str, Any]:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(kwargs)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1", "metadata": kwargs["metadata"]}

    def _retrieve(self, session_id: str, api_key: str) -> Dict[str, Any]:
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: {session_id}", "id")
        return self.sessions[session_id]

    def _construct_event(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        if signature != "t=1,v1=good":
            raise stripe.SignatureVerificationError("bad signature", signature)
        assert secret == "whsec_test"
        assert self.event is not None
        return self.event


@pytest.fixture
def stripe_config(make_config):
    return make_config(
        ENABLED_PAYMENT_PROVIDERS="stripe,mock",
        STRIPE_SECRET_KEY="sk_test_key",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        STRIPE_PRICE_ID_PRO="price_pro_monthly",
    )


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


def test_stripe_calls_use_configured_timeout(make_config, fake_stripe):
    StripePaymentProvider(make_config(PAYMENT_HTTP_TIMEOUT="4"), client=fake_stripe)

    assert isinstance(fake_stripe.default_http_client, stripe.RequestsClient)
    assert fake_stripe.default_http_client._timeout == 4.0


def test_stripe_requires_secret_and_webhook_secret(make_config, fake_stripe):
    provider = StripePaymentProvider(make_config(STRIPE_SECRET_KEY="sk_test_key"), client=fake_stripe)

    assert not provider.is_configured()
    with pytest.raises(ConfigurationError):
        provider.create_checkout_session(_params())


def test_stripe_subscription_checkout_uses_price_id(stripe_config, fake_stripe):
    provider = StripePaymentProvider(stripe_config, client=fake_stripe)

    session = provider.create_checkout_session(_params("pro"))

    request = fake_stripe.created[0]
    assert session.logical_id == "cs_test_1"
    assert session.redirect_url == "https://checkout.stripe.test/cs_test_1"
    assert request["api_key"] == "sk_test_key"
    assert request["mode"] == "subscription"
    assert request["line_items"] == [{"price": "price_pro_monthly", "quantity": 1}]
    assert request["client_reference_id"] == "42"
    assert request["customer_email"] == "reader@example.com"
    assert request["subscription_data"]["metadata"]["plan_id"] == "pro"
    assert request["metadata"]["credit_grant"] == "800"
    assert request["success_url"] == (
        "https://app.example.com/en/payment/success?session_id={CHECKOUT_SESSION_ID}&provider=stripe"
    )


def test_stripe_one_time_checkout_falls_back_to_inline_price(stripe_config, fake_stripe):
    provider = StripePaymentProvider(stripe_config, client=fake_stripe)

    provider.create_checkout_session(_params("credits_500"))

    request = fake_stripe.created[0]
    assert request["mode"] == "payment"
    assert "subscription_data" not in request
    price_data = request["line_items"][0]["price_data"]
    assert price_data["unit_amount"] == 399
    assert price_data["currency"] == "usd"
    assert "recurring" not in price_data


def test_stripe_connection_failure_is_upstream_error(stripe_config, fake_stripe):
    fake_stripe.create_error = stripe.APIConnectionError("network down")
    provider = StripePaymentProvider(stripe_config, client=fake_stripe)

    with pytest.raises(UpstreamError):
        provider.create_checkout_session(_params())


def test_stripe_verification_reads_session_metadata(stripe_config, fake_stripe):
    fake_stripe.sessions["cs_paid"] = {
        "id": "cs_paid",
        "payment_status": "paid",
        "amount_total": 99,
        "currency": "usd",
        "client_reference_id": "42",
        "metadata": {"plan_id": "credits_100", "credit_grant": "100", "billing_type": "one_time"},
    }
    provider = StripePaymentProvider(stripe_config, client=fake_stripe)

    result = provider.verify_payment("cs_paid")

    assert result.succeeded
    assert result.account_id == "42"
    assert result.credit_grant == 100
    assert result.billing_type == BillingType.ONE_TIME
    assert result.amount_minor_units == 99
    assert result.currency == "USD"


def test_stripe_verification_of_unpaid_or_unknown_session_fails(stripe_config, fake_stripe):
    fake_stripe.sessions["cs_open"] = {"id": "cs_open", "payment_status": "unpaid", "metadata": {}}
    provider = StripePaymentProvider(stripe_config, client=fake_stripe)

    assert not provider.verify_payment("cs_open").succeeded
    unknown = provider.verify_payment("cs_missing")
    assert not unknown.succeeded
    assert unknown.failure_reason == "Unknown checkout session"


def test_stripe_callback_normalizes_checkout_completion(stripe_config, fake_stripe):
    fake_stripe.event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_paid",
                "payment_status": "paid",
                "client_reference_id": "42",
                "customer_details": {"email": "reader@example.com"},
                "amount_total": 599,
                "currency": "usd",
                "metadata": {"plan_id": "pro", "billing_type": "recurring"},
            }
        },
    }
    provider = StripePaymentProvider(stripe_config, client=fake_stripe)

    event = provider.handle_callback(b"{}", "t=1,v1=good")

    assert event is not None
    assert event.event_type == CallbackEventType.CHECKOUT_COMPLETED
    assert event.logical_id == "cs_paid"
    assert event.extracted_metadata["account_id"] == "42"
    assert event.extracted_metadata["customer_email"] == "reader@example.com"
    assert event.extracted_metadata["amount_minor_units"] == "599"
    assert event.extracted_metadata["currency"] == "USD"


def test_stripe_callback_maps_invoice_events(stripe_config, fake_stripe):
    provider = StripePaymentProvider(stripe_config, client=fake_stripe)
    invoice = {
        "id": "in_1",
        "billing_reason": "subscription_cycle",
        "customer_email": "reader@example.com",
        "subscription_details": {"metadata": {"account_id": "42", "plan_id": "pro"}},
    }

    fake_stripe.event = {"id": "evt_2", "type": "invoice.payment_succeeded", "data": {"object": invoice}}
    renewal = provider.handle_callback(b"{}", "t=1,v1=good")
    assert renewal.event_type == CallbackEventType.SUBSCRIPTION_RENEWED
    assert renewal.logical_id == "in_1"
    assert renewal.extracted_metadata["plan_id"] == "pro"

    fake_stripe.event = {
        "id": "evt_3",
        "type": "invoice.payment_succeeded",
        "data": {"object": {**invoice, "billing_reason": "subscription_create"}},
    }
    assert provider.handle_callback(b"{}", "t=1,v1=good").event_type == CallbackEventType.IGNORED

    fake_stripe.event = {"id": "evt_4", "type": "invoice.payment_failed", "data": {"object": invoice}}
    assert provider.handle_callback(b"{}", "t=1,v1=good").event_type == CallbackEventType.PAYMENT_FAILED


def test_stripe_callback_rejects_bad_or_missing_signature(stripe_config, fake_stripe):
    fake_stripe.event = {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {}}}
    provider = StripePaymentProvider(stripe_config, client=fake_stripe)

    assert provider.handle_callback(b"{}", None) is None
    assert provider.handle_callback(b"{}", "t=1,v1=forged") is None


# Creem backend -------------------------------------------------------------


class FakeResponse:
    def __init__(self, payload: Any) -> None:
        self._body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc_info: Any) -> bool:
        return False


class FakeOpener:
    """Replays canned responses in order and records each request."""

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.requests: List[Any] = []
        self.timeouts: List[Optional[float]] = []

    def __call__(self, request: Any, timeout: Optional[float] = None) -> FakeResponse:
        self.requests.append(request)
        self.timeouts.append(timeout)
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, FakeResponse):
            return response
        return FakeResponse(response)


@pytest.fixture
def creem_config(make_config):
    return make_config(
        ENABLED_PAYMENT_PROVIDERS="creem,mock",
        CREEM_API_KEY="creem_test_key",
        CREEM_WEBHOOK_SECRET="creem_whsec",
        CREEM_PRODUCT_ID_PRO="prod_pro",
        CREEM_PRODUCT_ID_CREDITS_100="prod_100",
        PAYMENT_HTTP_TIMEOUT="4",
    )


def _http_error(code: int) -> urllib_error.HTTPError:
    return urllib_error.HTTPError(f"{CREEM_TEST_API_URL}/v1/checkouts", code, "error", None, None)


def test_request_id_round_trips_plan_ids_with_underscores():
    token = build_request_id("user_7", "credits_500", now_ms=1700000000000)

    assert token == "user_7_credits_500_1700000000000"
    assert parse_request_id(token) == ("user_7", "credits_500")
    assert parse_request_id("42_pro_1700000000000") == ("42", "pro")
    assert parse_request_id("42_gold_1700000000000") == ("42", "gold")
    assert parse_request_id("garbage") == (None, None)
    assert parse_request_id(None) == (None, None)


def test_creem_configuration_is_plan_keyed(make_config):
    assert not CreemPaymentProvider(make_config(CREEM_API_KEY="key")).is_configured()
    assert CreemPaymentProvider(make_config(CREEM_API_KEY="key", CREEM_PRODUCT_ID_PRO="prod")).is_configured()
    assert not CreemPaymentProvider(make_config(CREEM_PRODUCT_ID_PRO="prod")).is_configured()


def test_creem_checkout_posts_product_and_request_token(creem_config):
    opener = FakeOpener({"id": "ch_1", "checkout_url": "https://creem.test/ch_1", "status": "pending"})
    provider = CreemPaymentProvider(creem_config, urlopen=opener, clock=lambda: 1700000000.0)

    session = provider.create_checkout_session(_params("credits_100"))

    request = opener.requests[0]
    body = json.loads(request.data.decode("utf-8"))
    assert request.full_url == f"{CREEM_TEST_API_URL}/v1/checkouts"
    assert request.get_method() == "POST"
    assert request.get_header("X-api-key") == "creem_test_key"
    assert opener.timeouts == [4.0]
    assert body["product_id"] == "prod_100"
    assert body["request_id"] == "42_credits_100_1700000000000"
    assert body["metadata"]["account_id"] == "42"
    assert body["customer"] == {"email": "reader@example.com"}
    assert session.logical_id == "ch_1"
    assert session.redirect_url == "https://creem.test/ch_1"
    assert session.provider == ProviderType.CREEM


class StalledResponse(FakeResponse):
    def __init__(self) -> None:
        super().__init__({})

    def read(self) -> bytes:
        raise socket.timeout("timed out")


def test_creem_read_timeouts_and_resets_are_upstream_errors(creem_config):
    provider = CreemPaymentProvider(
        creem_config,
        urlopen=FakeOpener(StalledResponse(), StalledResponse(), ConnectionResetError("reset by peer")),
    )

    with pytest.raises(UpstreamError):
        provider.create_checkout_session(_params("credits_100"))
    with pytest.raises(UpstreamError):
        provider.verify_payment("ch_slow")
    assert provider.cancel_subscription("sub_1") is False


def test_creem_checkout_without_product_mapping_is_configuration_error(creem_config):
    provider = CreemPaymentProvider(creem_config, urlopen=FakeOpener())

    with pytest.raises(ConfigurationError) as exc_info:
        provider.create_checkout_session(_params("credits_500"))
    assert exc_info.value.code == "missing_product_mapping"


def test_creem_checkout_network_failure_is_upstream_error(creem_config):
    provider = CreemPaymentProvider(creem_config, urlopen=FakeOpener(urllib_error.URLError("unreachable")))

    with pytest.raises(UpstreamError):
        provider.create_checkout_session(_params("credits_100"))


def test_creem_verification_accepts_json_string_metadata(creem_config):
    opener = FakeOpener(
        {
            "id": "ch_1",
            "status": "completed",
            "metadata": json.dumps({"account_id": "42", "plan_id": "pro"}),
            "order": {"amount": 599, "currency": "usd"},
        }
    )
    provider = CreemPaymentProvider(creem_config, urlopen=opener)

    result = provider.verify_payment("ch_1")

    assert opener.requests[0].full_url == f"{CREEM_TEST_API_URL}/v1/checkouts?checkout_id=ch_1"
    assert result.succeeded
    assert result.account_id == "42"
    assert result.plan_id == "pro"
    assert result.credit_grant == 800
    assert result.billing_type == BillingType.RECURRING
    assert result.amount_minor_units == 599
    assert result.currency == "USD"


def test_creem_verification_recovers_context_from_request_token(creem_config):
    opener = FakeOpener({"id": "ch_2", "status": "completed", "request_id": "user_7_credits_500_1700000000000"})
    provider = CreemPaymentProvider(creem_config, urlopen=opener)

    result = provider.verify_payment("ch_2")

    assert result.succeeded
    assert result.account_id == "user_7"
    assert result.plan_id == "credits_500"
    assert result.credit_grant == 500
    assert result.billing_type == BillingType.ONE_TIME


def test_creem_verification_failures(creem_config):
    provider = CreemPaymentProvider(
        creem_config,
        urlopen=FakeOpener({"id": "ch_3", "status": "pending"}, _http_error(404), _http_error(500), TimeoutError("slow")),
    )

    assert provider.verify_payment("ch_3").failure_reason == "Payment not completed"
    assert provider.verify_payment("ch_missing").failure_reason == "Unknown checkout"
    with pytest.raises(UpstreamError):
        provider.verify_payment("ch_4")
    with pytest.raises(UpstreamError):
        provider.verify_payment("ch_5")


def test_creem_callback_verifies_hmac_and_maps_events(creem_config):
    provider = CreemPaymentProvider(creem_config)
    payload = {
        "id": "evt_10",
        "eventType": "subscription.paid",
        "object": {
            "id": "sub_1",
            "last_transaction_id": "tran_9",
            "customer": {"email": "reader@example.com"},
            "metadata": {"account_id": "42", "plan_id": "pro"},
        },
    }
    body = json.dumps(payload).encode("utf-8")

    assert provider.handle_callback(body, "0" * 64) is None
    event = provider.handle_callback(body, compute_signature("creem_whsec", body))

    assert event is not None
    assert event.event_type == CallbackEventType.SUBSCRIPTION_RENEWED
    assert event.logical_id == "tran_9"
    assert event.extracted_metadata["customer_email"] == "reader@example.com"
    assert event.extracted_metadata["credit_grant"] == "800"


@pytest.mark.parametrize(
    "event_type,expected",
    [
        ("checkout.completed", CallbackEventType.CHECKOUT_COMPLETED),
        ("subscription.canceled", CallbackEventType.SUBSCRIPTION_CANCELLED),
        ("subscription.expired", CallbackEventType.SUBSCRIPTION_CANCELLED),
        ("subscription.past_due", CallbackEventType.PAYMENT_FAILED),
        ("refund.created", CallbackEventType.IGNORED),
    ],
)
def test_creem_event_type_mapping(creem_config, event_type, expected):
    provider = CreemPaymentProvider(creem_config)
    body = json.dumps({"id": "evt", "eventType": event_type, "object": {"id": "obj_1"}}).encode("utf-8")

    event = provider.handle_callback(body, compute_signature("creem_whsec", body))

    assert event.event_type == expected


def test_creem_subscription_management(creem_config):
    opener = FakeOpener({"id": "sub_1", "status": "canceled"}, {"id": "sub_1"}, urllib_error.URLError("down"))
    provider = CreemPaymentProvider(creem_config, urlopen=opener)

    assert provider.cancel_subscription("sub_1") is True
    assert provider.upgrade_subscription("sub_1", "pro") is True
    assert provider.cancel_subscription("sub_1") is False
    assert opener.requests[0].full_url.endswith("/v1/subscriptions/sub_1/cancel")
    assert json.loads(opener.requests[1].data.decode("utf-8"))["product_id"] == "prod_pro"
    with pytest.raises(ValidationError):
        provider.upgrade_subscription("sub_1", "platinum")
