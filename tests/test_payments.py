from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from conftest import WEBHOOK_SECRET, intent_event, sign_payload
from threadly.errors import DependencyError, ValidationError
from threadly.payments import StripeGateway, platform_fee


@pytest.mark.parametrize("amount, expected", [(4500, 225), (1000, 50), (999, 50), (10, 1), (1, 0)])
def test_platform_fee_rounds_half_up(amount, expected):
    assert platform_fee(amount, 5) == expected


def test_intent_routes_funds_to_connected_seller():
    gateway = StripeGateway("sk_test_x", fee_percent=5)
    fake_intent = SimpleNamespace(id="pi_123", client_secret="pi_123_secret")

    with patch("threadly.payments.stripe.PaymentIntent.create", return_value=fake_intent) as create:
        intent = gateway.create_checkout_intent(4500, {"order_id": 7}, destination_account="acct_1")

    assert intent.intent_id == "pi_123"
    assert intent.client_secret == "pi_123_secret"
    params = create.call_args.kwargs
    assert params["amount"] == 4500
    assert params["metadata"] == {"order_id": "7"}
    assert params["application_fee_amount"] == 225
    assert params["transfer_data"] == {"destination": "acct_1"}
    assert params["description"] == "Order #7"


def test_intent_without_connected_account_has_no_fee():
    gateway = StripeGateway("sk_test_x")
    fake_intent = SimpleNamespace(id="pi_1", client_secret="s")
    with patch("threadly.payments.stripe.PaymentIntent.create", return_value=fake_intent) as create:
        gateway.create_checkout_intent(4500, {"order_id": 7})
    assert "application_fee_amount" not in create.call_args.kwargs
    assert "transfer_data" not in create.call_args.kwargs


def test_stripe_failure_is_a_dependency_error():
    gateway = StripeGateway("sk_test_x")
    with patch(
        "threadly.payments.stripe.PaymentIntent.create",
        side_effect=stripe.APIConnectionError("network down"),
    ):
        with pytest.raises(DependencyError):
            gateway.create_checkout_intent(4500, {"order_id": 7})


def test_unconfigured_gateway():
    with pytest.raises(DependencyError):
        StripeGateway("").create_checkout_intent(4500, {})


def test_construct_event_verifies_signature():
    gateway = StripeGateway("sk_test_x", webhook_secret=WEBHOOK_SECRET)
    payload = intent_event("payment_intent.succeeded", "evt_1", order_id=3, amount=4500)

    event = gateway.construct_event(payload, sign_payload(payload))
    assert event["id"] == "evt_1"
    assert event["data"]["object"]["metadata"]["order_id"] == "3"

    with pytest.raises(ValidationError) as excinfo:
        gateway.construct_event(payload, sign_payload(payload, secret="whsec_wrong"))
    assert excinfo.value.code == "invalid_signature"

    with pytest.raises(ValidationError) as excinfo:
        gateway.construct_event(payload, None)
    assert excinfo.value.code == "missing_signature"
