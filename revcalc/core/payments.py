"""Payment orchestration against Stripe.

Two policies share one interface:

- hosted: a Stripe Checkout session in subscription mode whose first invoice
  carries the setup fee, the first month and the GST; the customer is
  redirected to Stripe and the webhook confirms the payment.
- embedded: a single PaymentIntent for the grand total confirmed by the card
  element on our page, followed by a subscription whose first charge lands one
  billing cycle later.

Amounts always come from the frozen server-side quote.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

import stripe

from .config import POLICY_EMBEDDED, POLICY_HOSTED, Settings
from .models import LeadProfile
from .money import cents_to_str
from .quote import Quote, split_tax

logger = logging.getLogger(__name__)

SUBSCRIPTION_PRODUCT_NAME = "AI bot subscription"
SETUP_PRODUCT_NAME = "One-time setup fee"


class PaymentError(RuntimeError):
    code = "payment_failed"
    status_code = 402


class PaymentDeclinedError(PaymentError):
    code = "payment_failed"
    status_code = 402


class PaymentUnavailableError(PaymentError):
    code = "payment_provider_unavailable"
    status_code = 502


class PaymentNotConfiguredError(PaymentError):
    code = "payments_not_configured"
    status_code = 503


class PaymentIntegrityError(PaymentError):
    code = "payment_amount_mismatch"
    status_code = 409


@dataclass(frozen=True)
class ProviderCheckout:
    id: str
    url: Optional[str]
    status: Optional[str]
    payment_status: Optional[str]
    amount_total: int
    currency: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class ProviderIntent:
    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PaymentReference:
    policy: str
    provider_id: str
    idempotency_key: str
    attempt: int = 1
    customer_id: Optional[str] = None
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None


@dataclass(frozen=True)
class PaymentStatus:
    provider_id: str
    paid: bool
    pending: bool
    amount: int
    currency: str
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    subscription_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PaymentHandle:
    policy: str
    amount: int
    currency: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None
    publishable_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "policy": self.policy,
            "amount": self.amount,
            "currency": self.currency,
        }
        if self.redirect_url:
            data["url"] = self.redirect_url
        if self.client_secret:
            data["client_secret"] = self.client_secret
            data["publishable_key"] = self.publishable_key or ""
        return data


def _id_of(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return getattr(value, "id", None)


def _error_message(exc: Exception) -> str:
    return getattr(exc, "user_message", None) or str(exc) or "Payment failed."


class StripeGateway:
    """Synchronous Stripe calls returning plain dataclasses.

    Stripe errors are translated into the PaymentError family here so the
    orchestrator never depends on the SDK's exception types.
    """

    def __init__(self, api_key: str):
        self.api_key = (api_key or "").strip()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _request(self, call: Callable[..., Any], **params: Any) -> Any:
        if not self.api_key:
            raise PaymentNotConfiguredError("STRIPE_SECRET_KEY is not set. Configure env and restart.")
        try:
            return call(api_key=self.api_key, **params)
        except stripe.CardError as exc:
            raise PaymentDeclinedError(_error_message(exc)) from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise PaymentUnavailableError(_error_message(exc)) from exc
        except stripe.AuthenticationError as exc:
            raise PaymentNotConfiguredError(_error_message(exc)) from exc
        except stripe.StripeError as exc:
            raise PaymentDeclinedError(_error_message(exc)) from exc

    def find_customer(self, email: str) -> Optional[str]:
        result = self._request(stripe.Customer.list, email=email, limit=1)
        data = getattr(result, "data", None) or []
        return _id_of(data[0]) if data else None

    def create_customer(self, email: str, name: str, phone: str, metadata: Dict[str, str], idempotency_key: str) -> str:
        customer = self._request(
            stripe.Customer.create,
            email=email,
            name=name,
            phone=phone,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return customer.id

    def create_checkout_session(self, idempotency_key: str, **params: Any) -> ProviderCheckout:
        session = self._request(stripe.checkout.Session.create, idempotency_key=idempotency_key, **params)
        return self._checkout(session)

    def retrieve_checkout_session(self, session_id: str) -> ProviderCheckout:
        return self._checkout(self._request(stripe.checkout.Session.retrieve, id=session_id))

    def create_payment_intent(self, idempotency_key: str, **params: Any) -> ProviderIntent:
        intent = self._request(stripe.PaymentIntent.create, idempotency_key=idempotency_key, **params)
        return self._intent(intent)

    def retrieve_payment_intent(self, intent_id: str) -> ProviderIntent:
        return self._intent(self._request(stripe.PaymentIntent.retrieve, id=intent_id))

    def create_product(self, name: str, description: str, metadata: Dict[str, str], idempotency_key: str) -> str:
        product = self._request(
            stripe.Product.create,
            name=name,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return product.id

    def create_subscription(
        self,
        customer_id: str,
        product_id: str,
        unit_amount: int,
        currency: str,
        trial_period_days: int,
        default_payment_method: Optional[str],
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> str:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [
                {
                    "price_data": {
                        "currency": currency,
                        "product": product_id,
                        "unit_amount": unit_amount,
                        "recurring": {"interval": "month"},
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
        }
        if trial_period_days > 0:
            params["trial_period_days"] = trial_period_days
        if default_payment_method:
            params["default_payment_method"] = default_payment_method
        subscription = self._request(stripe.Subscription.create, idempotency_key=idempotency_key, **params)
        return subscription.id

    @staticmethod
    def _checkout(session: Any) -> ProviderCheckout:
        return ProviderCheckout(
            id=session.id,
            url=getattr(session, "url", None),
            status=getattr(session, "status", None),
            payment_status=getattr(session, "payment_status", None),
            amount_total=int(getattr(session, "amount_total", 0) or 0),
            currency=str(getattr(session, "currency", "") or ""),
            customer_id=_id_of(getattr(session, "customer", None)),
            subscription_id=_id_of(getattr(session, "subscription", None)),
        )

    @staticmethod
    def _intent(intent: Any) -> ProviderIntent:
        last_error = getattr(intent, "last_payment_error", None)
        return ProviderIntent(
            id=intent.id,
            status=str(getattr(intent, "status", "") or ""),
            amount=int(getattr(intent, "amount", 0) or 0),
            currency=str(getattr(intent, "currency", "") or ""),
            client_secret=getattr(intent, "client_secret", None),
            customer_id=_id_of(getattr(intent, "customer", None)),
            payment_method_id=_id_of(getattr(intent, "payment_method", None)),
            error_message=getattr(last_error, "message", None) if last_error else None,
        )


def payment_metadata(checkout_id: str, quote: Quote, lead: LeadProfile) -> Dict[str, str]:
    return {
        "checkout_id": checkout_id,
        "bot_ids": ",".join(quote.item_ids),
        "lead_name": lead.name,
        "lead_email": lead.email,
        "lead_phone": lead.phone,
        "lead_business": lead.business_name,
        "lead_website": lead.website,
        "total_monthly": cents_to_str(quote.monthly_cost),
        "total_setup": cents_to_str(quote.setup_cost),
        "total_tax": cents_to_str(quote.tax),
        "total_due_today": cents_to_str(quote.grand_total),
        "projected_monthly_revenue": cents_to_str(quote.total_benefit),
    }


class PaymentOrchestrator:
    def __init__(self, gateway: Any, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    @property
    def policy(self) -> str:
        return self.settings.payment_policy

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self.settings.payment_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("PAYMENT_PROVIDER_TIMEOUT call=%s", getattr(fn, "__name__", fn))
            raise PaymentUnavailableError("The payment provider did not respond in time. Please try again.") from exc

    async def start(
        self,
        checkout_id: str,
        quote: Quote,
        lead: LeadProfile,
        attempt: int = 1,
        previous: Optional[PaymentReference] = None,
    ) -> PaymentReference:
        """Opens a provider payment, or hands back `previous` once the caller found it still payable.

        `attempt` is unique per call for a checkout; idempotency keys embed it so
        a retry after a failed or edited attempt never collides with stale
        parameters on the provider side.
        """
        if quote.grand_total <= 0:
            raise PaymentDeclinedError("Nothing to charge for an empty quote.")
        if previous is not None and previous.policy == self.policy:
            logger.info(
                "PAYMENT_RESUMED policy=%s checkout_id=%s provider_id=%s attempt=%d",
                previous.policy,
                checkout_id,
                previous.provider_id,
                attempt,
            )
            return replace(previous, attempt=attempt)
        if self.policy == POLICY_EMBEDDED:
            return await self._start_embedded(checkout_id, quote, lead, attempt)
        return await self._start_hosted(checkout_id, quote, lead, attempt)

    @staticmethod
    def reusable(reference: PaymentReference, status: PaymentStatus) -> bool:
        """Whether an unpaid provider object can still take the customer's money.

        An open Checkout Session is reused so two payable sessions never exist
        at once; an expired one is replaced. A declined PaymentIntent accepts
        another card, so it is always reused.
        """
        if status.paid:
            return False
        if reference.policy == POLICY_EMBEDDED:
            return True
        return status.pending

    def handle(self, reference: PaymentReference, quote: Quote) -> PaymentHandle:
        return PaymentHandle(
            policy=reference.policy,
            amount=quote.grand_total,
            currency=quote.currency,
            redirect_url=reference.redirect_url,
            client_secret=reference.client_secret,
            publishable_key=self.settings.stripe_publishable_key if reference.client_secret else None,
        )

    async def status(self, reference: PaymentReference) -> PaymentStatus:
        if reference.policy == POLICY_EMBEDDED:
            intent = await self._call(self.gateway.retrieve_payment_intent, reference.provider_id)
            return self.intent_status(intent)
        checkout = await self._call(self.gateway.retrieve_checkout_session, reference.provider_id)
        return self.checkout_status(checkout)

    @staticmethod
    def intent_status(intent: ProviderIntent) -> PaymentStatus:
        paid = intent.status == "succeeded"
        pending = intent.status in ("processing", "requires_action", "requires_confirmation", "requires_capture")
        error = None
        if not paid and not pending:
            error = intent.error_message or "Your payment was not completed. Please try another card."
        return PaymentStatus(
            provider_id=intent.id,
            paid=paid,
            pending=pending,
            amount=intent.amount,
            currency=intent.currency,
            customer_id=intent.customer_id,
            payment_method_id=intent.payment_method_id,
            error_message=error,
        )

    @staticmethod
    def checkout_status(checkout: ProviderCheckout) -> PaymentStatus:
        paid = checkout.status == "complete" and checkout.payment_status in ("paid", "no_payment_required")
        error = None
        if checkout.status == "expired":
            error = "The checkout page expired before payment. Please start the payment again."
        return PaymentStatus(
            provider_id=checkout.id,
            paid=paid,
            pending=not paid and error is None,
            amount=checkout.amount_total,
            currency=checkout.currency,
            customer_id=checkout.customer_id,
            subscription_id=checkout.subscription_id,
            error_message=error,
        )

    async def create_subscription(
        self,
        checkout_id: str,
        quote: Quote,
        lead: LeadProfile,
        reference: PaymentReference,
        payment_method_id: Optional[str] = None,
    ) -> str:
        """Recurring charge that starts one billing cycle after today's payment."""
        if not reference.customer_id:
            raise PaymentDeclinedError("No Stripe customer is attached to this payment.")
        split = split_tax(quote)
        metadata = payment_metadata(checkout_id, quote, lead)
        metadata["payment_type"] = "recurring_monthly"
        product_id = await self._call(
            self.gateway.create_product,
            SUBSCRIPTION_PRODUCT_NAME,
            ", ".join(line.name for line in quote.lines),
            metadata,
            f"{checkout_id}:product",
        )
        subscription_id = await self._call(
            self.gateway.create_subscription,
            reference.customer_id,
            product_id,
            quote.monthly_cost + split.recurring,
            quote.currency,
            self.settings.subscription_trial_days,
            payment_method_id,
            metadata,
            f"{checkout_id}:subscription",
        )
        logger.info(
            "SUBSCRIPTION_CREATED checkout_id=%s subscription_id=%s monthly=%s",
            checkout_id,
            subscription_id,
            quote.monthly_cost + split.recurring,
        )
        return subscription_id

    async def _start_hosted(
        self,
        checkout_id: str,
        quote: Quote,
        lead: LeadProfile,
        attempt: int,
    ) -> PaymentReference:
        idempotency_key = f"{checkout_id}:checkout:{attempt}"
        metadata = payment_metadata(checkout_id, quote, lead)
        base = self.settings.public_url
        count = len(quote.lines)
        checkout = await self._call(
            self.gateway.create_checkout_session,
            idempotency_key,
            mode="subscription",
            line_items=self._hosted_line_items(quote),
            customer_email=lead.email or None,
            client_reference_id=checkout_id,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=f"{base}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base}/?cancelled=true",
            billing_address_collection="auto",
            custom_text={
                "submit": {
                    "message": (
                        f"You're locking in {count} AI bot{'s' if count != 1 else ''} for your practice. "
                        "The setup fee, first month and GST are charged today; "
                        "your monthly subscription renews from next month."
                    )
                }
            },
        )
        if checkout.amount_total and checkout.amount_total != quote.grand_total:
            logger.error(
                "PAYMENT_AMOUNT_MISMATCH checkout_id=%s provider=%s quoted=%s",
                checkout_id,
                checkout.amount_total,
                quote.grand_total,
            )
            raise PaymentIntegrityError("The payment amount does not match your quote. Please contact us.")
        logger.info(
            "PAYMENT_STARTED policy=hosted checkout_id=%s session_id=%s attempt=%d amount=%s",
            checkout_id,
            checkout.id,
            attempt,
            quote.grand_total,
        )
        return PaymentReference(
            policy=POLICY_HOSTED,
            provider_id=checkout.id,
            idempotency_key=idempotency_key,
            attempt=attempt,
            customer_id=checkout.customer_id,
            redirect_url=checkout.url,
        )

    def _hosted_line_items(self, quote: Quote) -> List[Dict[str, Any]]:
        split = split_tax(quote)
        names = ", ".join(line.name for line in quote.lines)
        items: List[Dict[str, Any]] = [
            {
                "price_data": {
                    "currency": quote.currency,
                    "product_data": {
                        "name": SUBSCRIPTION_PRODUCT_NAME,
                        "description": f"Monthly, GST included: {names}",
                    },
                    "unit_amount": quote.monthly_cost + split.recurring,
                    "recurring": {"interval": "month"},
                },
                "quantity": 1,
            }
        ]
        one_time = quote.setup_cost + split.one_time
        if one_time > 0:
            items.append(
                {
                    "price_data": {
                        "currency": quote.currency,
                        "product_data": {
                            "name": SETUP_PRODUCT_NAME,
                            "description": f"Setup, GST included, for: {names}",
                        },
                        "unit_amount": one_time,
                    },
                    "quantity": 1,
                }
            )
        return items

    async def _start_embedded(
        self,
        checkout_id: str,
        quote: Quote,
        lead: LeadProfile,
        attempt: int,
    ) -> PaymentReference:
        customer_id = await self._call(self.gateway.find_customer, lead.email)
        if not customer_id:
            customer_id = await self._call(
                self.gateway.create_customer,
                lead.email,
                lead.name,
                lead.phone,
                {"checkout_id": checkout_id, "business_name": lead.business_name},
                f"{checkout_id}:customer:{attempt}",
            )

        idempotency_key = f"{checkout_id}:intent:{attempt}"
        intent = await self._call(
            self.gateway.create_payment_intent,
            idempotency_key,
            amount=quote.grand_total,
            currency=quote.currency,
            customer=customer_id,
            metadata=payment_metadata(checkout_id, quote, lead),
            setup_future_usage="off_session",
            automatic_payment_methods={"enabled": True},
            receipt_email=lead.email or None,
            description=f"AI bots setup, first month and GST ({', '.join(quote.item_ids)})",
        )
        if intent.amount != quote.grand_total:
            logger.error(
                "PAYMENT_AMOUNT_MISMATCH checkout_id=%s provider=%s quoted=%s",
                checkout_id,
                intent.amount,
                quote.grand_total,
            )
            raise PaymentIntegrityError("The payment amount does not match your quote. Please contact us.")
        logger.info(
            "PAYMENT_STARTED policy=embedded checkout_id=%s intent_id=%s customer_id=%s amount=%s",
            checkout_id,
            intent.id,
            customer_id,
            quote.grand_total,
        )
        return PaymentReference(
            policy=POLICY_EMBEDDED,
            provider_id=intent.id,
            idempotency_key=idempotency_key,
            attempt=attempt,
            customer_id=customer_id,
            client_secret=intent.client_secret,
        )
