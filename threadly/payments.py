"""
Payment gateway adapter (Stripe).

The order core only needs two things from the gateway: a checkout intent for a
reserved order and verified webhook events. Stripe Connect onboarding for
sellers lives here too because it is the same SDK and credentials.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional

import stripe

from .errors import DependencyError, ValidationError

logger = logging.getLogger(__name__)


@dataclass
class CheckoutIntent:
    intent_id: str
    client_secret: str


def platform_fee(amount: int, percent: int) -> int:
    fee = (Decimal(amount) * Decimal(percent) / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(fee)


class StripeGateway:
    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        currency: str = "usd",
        fee_percent: int = 5,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.fee_percent = fee_percent

    def _required(self) -> None:
        if not self.secret_key:
            raise DependencyError("Stripe is not configured. Set STRIPE_SECRET_KEY.")

    def create_checkout_intent(
        self,
        amount: int,
        metadata: Dict[str, str],
        destination_account: Optional[str] = None,
    ) -> CheckoutIntent:
        """Create a PaymentIntent for ``amount`` minor units.

        When the seller has a connected account the funds are routed to it,
        minus the platform fee.
        """
        self._required()
        params = {
            "amount": int(amount),
            "currency": self.currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        if destination_account:
            params["application_fee_amount"] = platform_fee(amount, self.fee_percent)
            params["transfer_data"] = {"destination": destination_account}
        if "order_id" in metadata:
            params["description"] = f"Order #{metadata['order_id']}"

        try:
            intent = stripe.PaymentIntent.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe PaymentIntent creation failed: %s", e)
            raise DependencyError("Payment provider is unavailable, please try again") from e
        return CheckoutIntent(intent_id=intent.id, client_secret=intent.client_secret)

    def construct_event(self, payload: bytes, sig_header: Optional[str]) -> dict:
        """Verify the Stripe-Signature header and return the decoded event body."""
        if not self.webhook_secret:
            raise DependencyError("STRIPE_WEBHOOK_SECRET is not configured")
        if not sig_header:
            raise ValidationError("Missing Stripe-Signature header", code="missing_signature")
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=sig_header, secret=self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise ValidationError("Webhook signature verification failed", code="invalid_signature") from e
        except ValueError as e:
            raise ValidationError("Webhook payload is not valid JSON", code="invalid_payload") from e
        return json.loads(payload)

    def create_connect_account(self, email: Optional[str], country: str) -> str:
        self._required()
        try:
            account = stripe.Account.create(
                api_key=self.secret_key,
                type="express",
                country=country,
                email=email,
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                business_type="individual",
            )
        except stripe.StripeError as e:
            logger.error("Stripe Connect account creation failed: %s", e)
            raise DependencyError("Payment provider is unavailable, please try again") from e
        return account.id

    def create_onboarding_link(self, account_id: str, refresh_url: str, return_url: str) -> str:
        self._required()
        try:
            link = stripe.AccountLink.create(
                api_key=self.secret_key,
                account=account_id,
                refresh_url=refresh_url,
                return_url=return_url,
                type="account_onboarding",
            )
        except stripe.StripeError as e:
            logger.error("Stripe account link creation failed for %s: %s", account_id, e)
            raise DependencyError("Payment provider is unavailable, please try again") from e
        return link.url

    def account_status(self, account_id: str) -> dict:
        self._required()
        try:
            account = stripe.Account.retrieve(account_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            logger.error("Stripe account lookup failed for %s: %s", account_id, e)
            raise DependencyError("Payment provider is unavailable, please try again") from e
        return {
            "account_id": account.id,
            "charges_enabled": bool(account.charges_enabled),
            "payouts_enabled": bool(account.payouts_enabled),
            "details_submitted": bool(account.details_submitted),
        }
