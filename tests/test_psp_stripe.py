"""Stripe gateway behaviour with the SDK calls stubbed out."""
from __future__ import annotations

from types import SimpleNamespace

import pytest
import stripe

from gametrust.config import Settings
from gametrust.services.payment_gateway import SandboxGateway, build_payment_gateway
from gametrust.services.psp_stripe import StripeGateway
from gametrust.utils.errors import PaymentProviderError


@pytest.fixture
def stripe_settings():
    return Settings(PAYMENT_PROVIDER="stripe", STRIPE_SECRET_KEY="sk_test_123", CURRENCY="usd")


@pytest.fixture
def stripe_gateway(monkeypatch, stripe_settings):
    # Keep module-level SDK configuration from leaking between tests.
    monkeypatch.setattr(stripe, "api_key", None, raising=False)
    monkeypatch.setattr(stripe, "max_network_retries", 0, raising=False)
    monkeypatch.setattr(stripe, "default_http_client", None, raising=False)
    return StripeGateway(stripe_settings)


def test_gateway_configures_sdk(stripe_gateway):
    assert stripe.api_key == "sk_test_123"
    assert stripe.max_network_retries == 0
    assert stripe_gateway.currency == "usd"


def test_missing_secret_key_is_rejected():
    with pytest.raises(RuntimeError):
        StripeGateway(Settings(PAYMENT_PROVIDER="stripe", STRIPE_SECRET_KEY=None))


def test_hold_creates_confirmed_payment_intent(monkeypatch, stripe_gateway):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(id="pi_123", status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

    result = stripe_gateway.hold("cus_buyer", 70000, idempotency_key="order:1:HOLD")

    assert result.ok is True
    assert result.external_ref == "pi_123"
    assert captured["amount"] == 70000
    assert captured["customer"] == "cus_buyer"
    assert captured["confirm"] is True
    assert captured["idempotency_key"] == "order:1:HOLD"


def test_hold_requiring_action_is_not_ok(monkeypatch, stripe_gateway):
    monkeypatch.setattr(
        stripe.PaymentIntent,
        "create",
        lambda **kwargs: SimpleNamespace(id="pi_456", status="requires_action"),
    )

    result = stripe_gateway.hold("cus_buyer", 100, idempotency_key="order:2:HOLD")

    assert result.ok is False
    assert result.external_ref == "pi_456"


def test_card_decline_returns_failed_hold(monkeypatch, stripe_gateway):
    def declined(**kwargs):
        raise stripe.CardError("Your card was declined.", None, "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "create", declined)

    result = stripe_gateway.hold("cus_buyer", 100, idempotency_key="order:3:HOLD")

    assert result.ok is False
    assert result.external_ref is None


def test_release_creates_connect_transfer(monkeypatch, stripe_gateway):
    captured = {}

    def fake_transfer(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(id="tr_789")

    monkeypatch.setattr(stripe.Transfer, "create", fake_transfer)

    assert stripe_gateway.release("pi_123", 50000, payee_id="acct_seller", idempotency_key="order:1:RELEASE")
    assert captured["destination"] == "acct_seller"
    assert captured["transfer_group"] == "pi_123"
    assert captured["amount"] == 50000


def test_refund_against_payment_intent(monkeypatch, stripe_gateway):
    captured = {}

    def fake_refund(**kwargs):
        captured.update(kwargs)
        return SimpleNamespace(id="re_1", status="pending")

    monkeypatch.setattr(stripe.Refund, "create", fake_refund)

    assert stripe_gateway.refund("pi_123", 20000, idempotency_key="order:1:PARTIAL_REFUND") is True
    assert captured == {"payment_intent": "pi_123", "amount": 20000, "idempotency_key": "order:1:PARTIAL_REFUND"}


def test_connection_errors_are_transient(monkeypatch, stripe_gateway):
    def unreachable(**kwargs):
        raise stripe.APIConnectionError("Network is unreachable")

    monkeypatch.setattr(stripe.Transfer, "create", unreachable)

    with pytest.raises(PaymentProviderError) as excinfo:
        stripe_gateway.release("pi_123", 100, payee_id="acct_seller", idempotency_key="order:9:RELEASE")
    assert excinfo.value.transient is True


def test_invalid_requests_are_fatal(monkeypatch, stripe_gateway):
    def missing(**kwargs):
        raise stripe.InvalidRequestError("No such payment_intent", "payment_intent", code="resource_missing")

    monkeypatch.setattr(stripe.Refund, "create", missing)

    with pytest.raises(PaymentProviderError) as excinfo:
        stripe_gateway.refund("pi_missing", 100, idempotency_key="order:9:REFUND")
    assert excinfo.value.transient is False
    assert excinfo.value.details["stripe_code"] == "resource_missing"


def test_build_payment_gateway_selects_provider(monkeypatch, stripe_settings):
    monkeypatch.setattr(stripe, "api_key", None, raising=False)
    monkeypatch.setattr(stripe, "default_http_client", None, raising=False)

    assert isinstance(build_payment_gateway(Settings()), SandboxGateway)
    assert isinstance(build_payment_gateway(stripe_settings), StripeGateway)
