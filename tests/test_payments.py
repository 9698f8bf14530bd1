"""
Embedded card payments, deferred subscriptions and the Stripe gateway adapter.
"""
import asyncio
import time
from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe

from revcalc.core.checkout import CheckoutState
from revcalc.core.crm import EVENT_PAYMENT
from revcalc.core.models import LeadProfile, Selection
from revcalc.core.payments import (
    PaymentDeclinedError,
    PaymentNotConfiguredError,
    PaymentOrchestrator,
    PaymentUnavailableError,
    StripeGateway,
    payment_metadata,
)
from revcalc.core.quote import compute_quote, split_tax


def _pending(machine, full_lead, lead_subset):
    session = machine.start()
    machine.capture_lead(session, LeadProfile(**lead_subset))
    handle = asyncio.run(machine.begin_payment(session, LeadProfile(**full_lead), accept_terms=True))
    return session, handle


def test_embedded_payment_returns_client_secret(embedded_machine, gateway, full_lead, lead_subset):
    session, handle = _pending(embedded_machine, full_lead, lead_subset)
    quote = embedded_machine.quote_for(session)

    assert session.state == CheckoutState.PAYMENT_PENDING
    assert handle.policy == "embedded"
    assert handle.amount == quote.grand_total
    assert handle.client_secret == f"{session.payment.provider_id}_secret_test"
    assert handle.to_dict()["publishable_key"] == "pk_test_fake"
    assert gateway.intents[session.payment.provider_id].amount == quote.grand_total
    assert session.payment.customer_id == gateway.customers["jane@example.com"]


def test_existing_customer_is_reused(embedded_machine, gateway, full_lead, lead_subset):
    gateway.customers["jane@example.com"] = "cus_existing"

    session, _ = _pending(embedded_machine, full_lead, lead_subset)

    assert session.payment.customer_id == "cus_existing"
    assert gateway.intents[session.payment.provider_id].customer_id == "cus_existing"


def test_retry_reuses_the_same_intent(embedded_machine, gateway, full_lead, lead_subset):
    session, handle = _pending(embedded_machine, full_lead, lead_subset)

    again = asyncio.run(embedded_machine.begin_payment(session))

    assert len(gateway.intents) == 1
    assert again.client_secret == handle.client_secret
    assert session.payment.attempt == 2


def test_declined_retry_keeps_the_same_intent(embedded_machine, gateway, full_lead, lead_subset):
    session, handle = _pending(embedded_machine, full_lead, lead_subset)
    gateway.decline_intent(session.payment.provider_id)

    again = asyncio.run(embedded_machine.begin_payment(session))

    assert len(gateway.intents) == 1
    assert again.client_secret == handle.client_secret
    assert session.payment.idempotency_key == f"{session.id}:intent:1"


def test_edit_after_failed_intent_start_charges_the_new_quote(embedded_machine, gateway, full_lead, lead_subset):
    session = embedded_machine.start()
    embedded_machine.capture_lead(session, LeadProfile(**lead_subset))
    gateway.fail_after_create = PaymentUnavailableError("The payment provider did not respond in time.")

    with pytest.raises(PaymentUnavailableError):
        asyncio.run(embedded_machine.begin_payment(session, LeadProfile(**full_lead), accept_terms=True))

    gateway.fail_after_create = None
    embedded_machine.edit_selection(session, toggles=["review"])
    embedded_machine.capture_lead(session, LeadProfile(**lead_subset))
    handle = asyncio.run(embedded_machine.begin_payment(session, LeadProfile(**full_lead), accept_terms=True))

    assert len(gateway.intents) == 2
    assert session.payment.idempotency_key == f"{session.id}:intent:2"
    assert gateway.intents[session.payment.provider_id].amount == session.quote.grand_total
    assert handle.amount == session.quote.grand_total


def test_double_confirmation_charges_once_and_subscribes_once(embedded_machine, gateway, sink, full_lead, lead_subset):
    session, _ = _pending(embedded_machine, full_lead, lead_subset)
    quote = embedded_machine.quote_for(session)
    gateway.succeed_intent(session.payment.provider_id)

    asyncio.run(embedded_machine.confirm_payment(session))
    asyncio.run(embedded_machine.confirm_payment(session))

    assert session.state == CheckoutState.PAYMENT_CONFIRMED
    assert len(gateway.intents) == 1
    assert gateway.subscriptions == [session.subscription_id]
    assert sink.kinds().count(EVENT_PAYMENT) == 1

    params = gateway.subscription_params[0]
    assert params["unit_amount"] == quote.monthly_cost + split_tax(quote).recurring
    assert params["trial_period_days"] == 30
    assert params["default_payment_method"] == "pm_card_visa"
    assert params["customer"] == session.payment.customer_id


def test_concurrent_confirmations_converge(embedded_machine, gateway, sink, full_lead, lead_subset):
    session, _ = _pending(embedded_machine, full_lead, lead_subset)
    gateway.succeed_intent(session.payment.provider_id)

    async def both():
        await asyncio.gather(
            embedded_machine.confirm_payment(session),
            embedded_machine.confirm_payment(session),
        )

    asyncio.run(both())

    assert session.state == CheckoutState.PAYMENT_CONFIRMED
    assert len(gateway.subscriptions) == 1
    assert sink.kinds().count(EVENT_PAYMENT) == 1


def test_declined_card_surfaces_provider_message(embedded_machine, gateway, full_lead, lead_subset):
    session, _ = _pending(embedded_machine, full_lead, lead_subset)
    gateway.decline_intent(session.payment.provider_id, "Your card has insufficient funds.")

    with pytest.raises(PaymentDeclinedError) as excinfo:
        asyncio.run(embedded_machine.confirm_payment(session))

    assert str(excinfo.value) == "Your card has insufficient funds."
    assert session.state == CheckoutState.PAYMENT_PENDING
    assert session.payment_error == "Your card has insufficient funds."
    assert gateway.subscriptions == []


def test_subscription_failure_keeps_payment_and_can_retry(embedded_machine, gateway, sink, full_lead, lead_subset):
    session, _ = _pending(embedded_machine, full_lead, lead_subset)
    gateway.succeed_intent(session.payment.provider_id)
    gateway.fail_with = PaymentUnavailableError("Stripe is unreachable")

    with pytest.raises(PaymentUnavailableError):
        asyncio.run(embedded_machine.confirm_payment(session))
    assert session.state == CheckoutState.PAYMENT_CONFIRMED
    assert session.subscription_id is None
    assert sink.kinds().count(EVENT_PAYMENT) == 1

    gateway.fail_with = None
    asyncio.run(embedded_machine.confirm_payment(session))

    assert session.subscription_id == "sub_test_1"
    assert sink.kinds().count(EVENT_PAYMENT) == 1


def test_slow_provider_times_out(embedded_settings, catalog, full_lead):
    class SlowGateway:
        def find_customer(self, email):
            time.sleep(0.3)
            return None

    orchestrator = PaymentOrchestrator(SlowGateway(), replace(embedded_settings, payment_timeout=0.05))
    quote = compute_quote(Selection.default(catalog), catalog)

    with pytest.raises(PaymentUnavailableError):
        asyncio.run(orchestrator.start("chk_1", quote, LeadProfile(**full_lead)))


def test_hosted_line_items_sum_to_grand_total(settings, gateway, catalog, full_lead):
    orchestrator = PaymentOrchestrator(gateway, settings)
    quote = compute_quote(Selection.default(catalog), catalog, tax_rate=settings.tax_rate)

    items = orchestrator._hosted_line_items(quote)

    assert sum(item["price_data"]["unit_amount"] for item in items) == quote.grand_total
    assert items[0]["price_data"]["recurring"] == {"interval": "month"}
    assert "recurring" not in items[1]["price_data"]
    assert items[0]["price_data"]["unit_amount"] == 374_000


def test_payment_metadata_carries_lead_and_totals(catalog, full_lead):
    quote = compute_quote(Selection(catalog, ["receptionist", "review"]), catalog)
    metadata = payment_metadata("chk_1", quote, LeadProfile(**full_lead).cleaned())

    assert metadata["checkout_id"] == "chk_1"
    assert metadata["bot_ids"] == "receptionist,review"
    assert metadata["lead_email"] == "jane@example.com"
    assert metadata["total_monthly"] == "1100.00"
    assert all(isinstance(value, str) for value in metadata.values())


def test_gateway_without_key_is_not_configured():
    gateway = StripeGateway("")

    with patch("revcalc.core.payments.stripe.Customer.list") as listing:
        with pytest.raises(PaymentNotConfiguredError):
            gateway.find_customer("jane@example.com")
    listing.assert_not_called()


def test_gateway_translates_stripe_errors():
    gateway = StripeGateway("sk_test_x")

    with patch(
        "revcalc.core.payments.stripe.Customer.list",
        side_effect=stripe.APIConnectionError("network down"),
    ):
        with pytest.raises(PaymentUnavailableError):
            gateway.find_customer("jane@example.com")

    with patch(
        "revcalc.core.payments.stripe.PaymentIntent.retrieve",
        side_effect=stripe.CardError("Your card was declined.", None, "card_declined"),
    ):
        with pytest.raises(PaymentDeclinedError) as excinfo:
            gateway.retrieve_payment_intent("pi_1")
    assert "declined" in str(excinfo.value)


def test_gateway_reads_provider_objects():
    gateway = StripeGateway("sk_test_x")
    session = SimpleNamespace(
        id="cs_1",
        url=None,
        status="complete",
        payment_status="paid",
        amount_total=1234,
        currency="aud",
        customer="cus_1",
        subscription=SimpleNamespace(id="sub_1"),
    )

    with patch("revcalc.core.payments.stripe.checkout.Session.retrieve", return_value=session) as retrieve:
        checkout = gateway.retrieve_checkout_session("cs_1")

    retrieve.assert_called_once_with(api_key="sk_test_x", id="cs_1")
    assert checkout.amount_total == 1234
    assert checkout.customer_id == "cus_1"
    assert checkout.subscription_id == "sub_1"

    status = PaymentOrchestrator.checkout_status(checkout)
    assert status.paid and not status.pending
