"""
Pytest configuration and shared fakes for the calculator tests.
"""
import hashlib
import hmac
import json
import threading
import time
from dataclasses import replace
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from revcalc.core.catalog import default_catalog
from revcalc.core.checkout import CheckoutMachine
from revcalc.core.config import POLICY_EMBEDDED, Settings
from revcalc.core.payments import PaymentDeclinedError, PaymentOrchestrator, ProviderCheckout, ProviderIntent

WEBHOOK_SECRET = "whsec_test_secret"

FULL_LEAD = {
    "name": "Jane Citizen",
    "email": "Jane@Example.com",
    "phone": "0400 000 000",
    "role": "Practice owner",
    "business_name": "Citizen Physio Pty Ltd",
    "tax_id": "12 345 678 901",
    "entity_type": "company",
    "address": "1 Example St",
    "region": "NSW",
    "postcode": "2000",
    "website": "https://citizenphysio.example",
}

LEAD_SUBSET = {key: FULL_LEAD[key] for key in ("name", "email", "phone", "business_name")}


class FakeStripeGateway:
    """In-memory stand-in for StripeGateway.

    Creates are deduped by idempotency key, and reusing a key with different
    parameters is refused the way Stripe refuses it.
    """

    def __init__(self):
        self.customers = {}
        self.checkouts = {}
        self.checkout_params = {}
        self.intents = {}
        self.products = []
        self.subscriptions = []
        self.subscription_params = []
        self.fail_with = None
        self.fail_after_create = None
        self._results = {}
        self._lock = threading.Lock()

    def _once(self, key, factory, params=None):
        fingerprint = json.dumps(params, sort_keys=True, default=str)
        with self._lock:
            if key not in self._results:
                self._results[key] = (fingerprint, factory())
            first, result = self._results[key]
        if first != fingerprint:
            raise PaymentDeclinedError(
                "Keys for idempotent requests can only be used with the same parameters they were first used with."
            )
        return result

    def _created(self, result):
        # The object exists on the provider side even though the caller sees a failure.
        if self.fail_after_create is not None:
            raise self.fail_after_create
        return result

    def find_customer(self, email):
        return self.customers.get(email)

    def create_customer(self, email, name, phone, metadata, idempotency_key):
        def make():
            customer_id = f"cus_test_{len(self.customers) + 1}"
            self.customers[email] = customer_id
            return customer_id

        return self._once(idempotency_key, make)

    def create_checkout_session(self, idempotency_key, **params):
        if self.fail_with is not None:
            raise self.fail_with

        def make():
            checkout_id = f"cs_test_{len(self.checkouts) + 1}"
            amount = sum(item["price_data"]["unit_amount"] * item["quantity"] for item in params["line_items"])
            checkout = ProviderCheckout(
                id=checkout_id,
                url=f"https://checkout.stripe.test/{checkout_id}",
                status="open",
                payment_status="unpaid",
                amount_total=amount,
                currency=params["line_items"][0]["price_data"]["currency"],
            )
            self.checkouts[checkout_id] = checkout
            self.checkout_params[checkout_id] = params
            return checkout

        return self._created(self._once(idempotency_key, make, params))

    def retrieve_checkout_session(self, session_id):
        return self.checkouts[session_id]

    def complete_checkout(self, session_id, amount=None):
        checkout = self.checkouts[session_id]
        self.checkouts[session_id] = replace(
            checkout,
            status="complete",
            payment_status="paid",
            amount_total=checkout.amount_total if amount is None else amount,
            customer_id="cus_hosted_1",
            subscription_id=f"sub_hosted_{session_id}",
        )

    def expire_checkout(self, session_id):
        self.checkouts[session_id] = replace(self.checkouts[session_id], status="expired")

    def create_payment_intent(self, idempotency_key, **params):
        if self.fail_with is not None:
            raise self.fail_with

        def make():
            intent_id = f"pi_test_{len(self.intents) + 1}"
            intent = ProviderIntent(
                id=intent_id,
                status="requires_payment_method",
                amount=params["amount"],
                currency=params["currency"],
                client_secret=f"{intent_id}_secret_test",
                customer_id=params.get("customer"),
            )
            self.intents[intent_id] = intent
            return intent

        return self._created(self._once(idempotency_key, make, params))

    def retrieve_payment_intent(self, intent_id):
        return self.intents[intent_id]

    def succeed_intent(self, intent_id):
        self.intents[intent_id] = replace(
            self.intents[intent_id],
            status="succeeded",
            payment_method_id="pm_card_visa",
            error_message=None,
        )

    def decline_intent(self, intent_id, message="Your card was declined."):
        self.intents[intent_id] = replace(
            self.intents[intent_id],
            status="requires_payment_method",
            error_message=message,
        )

    def create_product(self, name, description, metadata, idempotency_key):
        def make():
            product_id = f"prod_test_{len(self.products) + 1}"
            self.products.append(product_id)
            return product_id

        return self._once(idempotency_key, make)

    def create_subscription(
        self,
        customer_id,
        product_id,
        unit_amount,
        currency,
        trial_period_days,
        default_payment_method,
        metadata,
        idempotency_key,
    ):
        if self.fail_with is not None:
            raise self.fail_with

        def make():
            subscription_id = f"sub_test_{len(self.subscriptions) + 1}"
            self.subscriptions.append(subscription_id)
            self.subscription_params.append(
                {
                    "customer": customer_id,
                    "product": product_id,
                    "unit_amount": unit_amount,
                    "currency": currency,
                    "trial_period_days": trial_period_days,
                    "default_payment_method": default_payment_method,
                }
            )
            return subscription_id

        return self._once(idempotency_key, make)


class RecordingSink:
    """Collects CRM events instead of posting them."""

    def __init__(self):
        self.events = []

    def fire(self, event):
        self.events.append(event)

    async def drain(self):
        return None

    def kinds(self):
        return [event.kind for event in self.events]


@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_fake",
        stripe_publishable_key="pk_test_fake",
        stripe_webhook_secret=WEBHOOK_SECRET,
        tax_rate=Decimal("0.10"),
        min_monthly_spend=50_000,
        currency="aud",
        public_url="https://calc.example",
        session_secret="test-session-secret",
        payment_timeout=5.0,
    )


@pytest.fixture
def embedded_settings(settings):
    return replace(settings, payment_policy=POLICY_EMBEDDED)


@pytest.fixture
def gateway():
    return FakeStripeGateway()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def make_machine(catalog, gateway, sink):
    def build(settings):
        return CheckoutMachine(catalog, settings, PaymentOrchestrator(gateway, settings), sink)

    return build


@pytest.fixture
def machine(make_machine, settings):
    return make_machine(settings)


@pytest.fixture
def embedded_machine(make_machine, embedded_settings):
    return make_machine(embedded_settings)


@pytest.fixture
def sign():
    """Builds a Stripe-Signature header the way Stripe signs webhook bodies."""

    def build(payload, secret=WEBHOOK_SECRET, timestamp=None):
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{payload}".encode("utf-8")
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    return build


@pytest.fixture
def client(settings, gateway, sink):
    """TestClient for revcalc.main:app wired to the fake gateway and sink."""
    from revcalc.main import app, configure

    configure(app, settings=settings, gateway=gateway, sink=sink)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def full_lead():
    return dict(FULL_LEAD)


@pytest.fixture
def lead_subset():
    return dict(LEAD_SUBSET)


@pytest.fixture
def embedded_client(embedded_settings, gateway, sink):
    from revcalc.main import app, configure

    configure(app, settings=embedded_settings, gateway=gateway, sink=sink)
    with TestClient(app) as test_client:
        yield test_client
