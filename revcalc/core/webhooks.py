"""Stripe webhook reconciliation.

Handles:
- checkout.session.completed (hosted checkout)
- payment_intent.succeeded (embedded card element)

Every other event type is acknowledged and ignored, as are payments this
service did not open: intents raised by subscription invoices (renewals, the
first invoice of a hosted checkout) and objects without our checkout id.
Each provider object is reconciled at most once per process.
"""
from __future__ import annotations

import json
import logging
from collections import OrderedDict
from typing import Any, Dict, Optional, Tuple

import stripe

from .checkout import CheckoutMachine
from .config import Settings
from .crm import NotificationSink, payment_event_from_metadata
from .models import CheckoutError
from .payments import PaymentError, PaymentOrchestrator, PaymentStatus, ProviderCheckout, ProviderIntent
from .store import CheckoutStore

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300
LEDGER_SIZE = 10_000

HANDLED_EVENTS = ("checkout.session.completed", "payment_intent.succeeded")


class WebhookVerificationError(ValueError):
    code = "invalid_signature"


def _id_of(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return None


def _status_from_object(event_type: str, obj: Dict[str, Any]) -> PaymentStatus:
    if event_type == "checkout.session.completed":
        return PaymentOrchestrator.checkout_status(
            ProviderCheckout(
                id=str(obj.get("id") or ""),
                url=None,
                status=obj.get("status"),
                payment_status=obj.get("payment_status"),
                amount_total=int(obj.get("amount_total") or 0),
                currency=str(obj.get("currency") or ""),
                customer_id=_id_of(obj.get("customer")),
                subscription_id=_id_of(obj.get("subscription")),
            )
        )
    return PaymentOrchestrator.intent_status(
        ProviderIntent(
            id=str(obj.get("id") or ""),
            status=str(obj.get("status") or ""),
            amount=int(obj.get("amount_received") or obj.get("amount") or 0),
            currency=str(obj.get("currency") or ""),
            customer_id=_id_of(obj.get("customer")),
            payment_method_id=_id_of(obj.get("payment_method")),
        )
    )


def _foreign_reason(event_type: str, obj: Dict[str, Any], checkout_id: Optional[str]) -> Optional[str]:
    """Why a handled event type still does not belong to one of our checkouts."""
    if event_type == "payment_intent.succeeded" and obj.get("invoice"):
        return "invoice"
    if not checkout_id:
        return "no_checkout_id"
    return None


class WebhookReconciler:
    def __init__(
        self,
        settings: Settings,
        store: CheckoutStore,
        machine: CheckoutMachine,
        sink: NotificationSink,
        ledger_size: int = LEDGER_SIZE,
    ):
        self.settings = settings
        self.store = store
        self.machine = machine
        self.sink = sink
        self.ledger_size = ledger_size
        self._ledger: "OrderedDict[str, str]" = OrderedDict()

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Checks the Stripe-Signature header and returns the parsed event."""
        secret = self.settings.stripe_webhook_secret
        if not secret:
            logger.warning("SECURITY webhook signature rejected reason=no_webhook_secret")
            raise WebhookVerificationError("Webhook secret is not configured.")
        if not signature:
            logger.warning("SECURITY webhook signature rejected reason=missing_header")
            raise WebhookVerificationError("Missing Stripe-Signature header.")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            logger.warning("SECURITY webhook signature rejected reason=undecodable_body")
            raise WebhookVerificationError("Webhook body is not valid UTF-8.") from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature, secret, tolerance=SIGNATURE_TOLERANCE_SECONDS)
        except stripe.SignatureVerificationError as exc:
            logger.warning("SECURITY webhook signature rejected reason=%s", exc)
            raise WebhookVerificationError("Invalid webhook signature.") from exc
        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise WebhookVerificationError("Webhook body is not valid JSON.") from exc
        if not isinstance(event, dict):
            raise WebhookVerificationError("Webhook body is not an event object.")
        return event

    def seen(self, object_id: str) -> bool:
        return object_id in self._ledger

    def _record(self, object_id: str, event_id: str) -> None:
        self._ledger[object_id] = event_id
        while len(self._ledger) > self.ledger_size:
            self._ledger.popitem(last=False)

    async def handle(self, event: Dict[str, Any]) -> Tuple[str, Optional[str]]:
        """Reconciles one verified event; returns (outcome, checkout_id)."""
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        object_id = str(obj.get("id") or "")
        checkout_id = str(metadata.get("checkout_id") or obj.get("client_reference_id") or "") or None
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s object_id=%s checkout_id=%s",
            event_id,
            event_type,
            object_id,
            checkout_id,
        )

        if event_type not in HANDLED_EVENTS:
            return "ignored", checkout_id
        if not object_id:
            return "ignored", checkout_id
        reason = _foreign_reason(event_type, obj, checkout_id)
        if reason:
            logger.info("WEBHOOK_IGNORED event_id=%s object_id=%s reason=%s", event_id, object_id, reason)
            return "ignored", checkout_id
        if self.seen(object_id):
            logger.info("WEBHOOK_DUPLICATE event_id=%s object_id=%s", event_id, object_id)
            return "duplicate", checkout_id

        status = _status_from_object(event_type, obj)
        if not status.paid:
            logger.info("WEBHOOK_UNPAID event_id=%s object_id=%s", event_id, object_id)
            return "unpaid", checkout_id

        # Recorded before the first await so a concurrent redelivery is a duplicate.
        self._record(object_id, event_id)

        session = self.store.get(checkout_id)
        if session is None:
            email = str((obj.get("customer_details") or {}).get("email") or obj.get("receipt_email") or "")
            self.sink.fire(payment_event_from_metadata(metadata, object_id, email=email))
            logger.info("WEBHOOK_RECONCILED event_id=%s checkout_id=%s source=metadata", event_id, checkout_id)
            return "reconciled", checkout_id

        try:
            await self.machine.mark_paid(session, status, source="webhook")
        except (CheckoutError, PaymentError) as exc:
            logger.error(
                "WEBHOOK_RECONCILE_FAILED event_id=%s checkout_id=%s error=%s",
                event_id,
                checkout_id,
                exc,
            )
            return "failed", checkout_id
        logger.info("WEBHOOK_RECONCILED event_id=%s checkout_id=%s source=session", event_id, checkout_id)
        return "reconciled", checkout_id
