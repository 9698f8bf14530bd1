from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional, Set

from .catalog import Catalog
from .config import POLICY_EMBEDDED, Settings
from .crm import EVENT_CONTRACT, EVENT_LEAD, EVENT_PAYMENT, NotificationSink, contract_event, lead_event, payment_event
from .models import (
    LEAD_CAPTURE_FIELDS,
    PAYMENT_FIELDS,
    CheckoutValidationError,
    InvalidTransitionError,
    LeadProfile,
    QuoteFrozenError,
    Selection,
    SignatureArtifact,
)
from .money import format_money
from .payments import (
    PaymentDeclinedError,
    PaymentError,
    PaymentHandle,
    PaymentIntegrityError,
    PaymentOrchestrator,
    PaymentReference,
    PaymentStatus,
)
from .quote import Quote, compute_quote

logger = logging.getLogger(__name__)


class CheckoutState(str, Enum):
    BROWSING = "browsing"
    LEAD_CAPTURED = "lead_captured"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    CONTRACT_SIGNED = "contract_signed"


EDITABLE_STATES = (CheckoutState.BROWSING, CheckoutState.LEAD_CAPTURED)
PAID_STATES = (CheckoutState.PAYMENT_CONFIRMED, CheckoutState.CONTRACT_SIGNED)


@dataclass
class CheckoutSession:
    id: str
    selection: Selection
    state: CheckoutState = CheckoutState.BROWSING
    quote: Optional[Quote] = None
    lead: LeadProfile = field(default_factory=LeadProfile)
    terms_accepted: bool = False
    payment: Optional[PaymentReference] = None
    payment_error: Optional[str] = None
    subscription_id: Optional[str] = None
    signature: Optional[SignatureArtifact] = None
    paid_via: Optional[str] = None
    attempts: int = 0
    starting: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    fired: Set[str] = field(default_factory=set)

    def touch(self) -> None:
        self.updated_at = time.time()


class CheckoutMachine:
    """Drives a checkout from browsing to a signed agreement.

    Guards run before any mutation, so a rejected call leaves the session as
    it was. The quote is recomputed on demand until payment starts; from then
    on the frozen copy on the session is the only source of amounts.
    """

    def __init__(
        self,
        catalog: Catalog,
        settings: Settings,
        payments: PaymentOrchestrator,
        sink: NotificationSink,
    ):
        self.catalog = catalog
        self.settings = settings
        self.payments = payments
        self.sink = sink

    def start(self, selection: Optional[Selection] = None) -> CheckoutSession:
        session = CheckoutSession(
            id=secrets.token_urlsafe(16),
            selection=selection if selection is not None else Selection.default(self.catalog),
        )
        logger.info("CHECKOUT_STARTED checkout_id=%s items=%s", session.id, ",".join(session.selection.item_ids))
        return session

    def quote_for(self, session: CheckoutSession) -> Quote:
        if session.quote is not None:
            return session.quote
        return compute_quote(
            session.selection,
            self.catalog,
            tax_rate=self.settings.tax_rate,
            currency=self.settings.currency,
        )

    def edit_selection(
        self,
        session: CheckoutSession,
        toggles: Iterable[str] = (),
        parameters: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> Quote:
        if session.state not in EDITABLE_STATES:
            raise QuoteFrozenError("The quote is locked once payment has started.")
        working = session.selection.copy()
        for item_id in toggles:
            working.toggle(item_id)
        for item_id, values in (parameters or {}).items():
            for key, value in values.items():
                working.set_parameter(item_id, key, value)

        session.selection = working
        if session.state == CheckoutState.LEAD_CAPTURED:
            session.state = CheckoutState.BROWSING
        session.touch()
        return self.quote_for(session)

    def capture_lead(self, session: CheckoutSession, lead: LeadProfile) -> CheckoutSession:
        if session.state not in EDITABLE_STATES:
            raise InvalidTransitionError("Your details are locked once payment has started.")
        quote = self.quote_for(session)
        self._ensure_minimum(quote)
        lead = lead.cleaned()
        missing = lead.missing(LEAD_CAPTURE_FIELDS)
        if missing:
            raise CheckoutValidationError("Please complete your contact details.", missing)

        session.lead = lead
        session.state = CheckoutState.LEAD_CAPTURED
        session.touch()
        logger.info(
            "LEAD_CAPTURED checkout_id=%s email=%s monthly=%s",
            session.id,
            lead.email,
            quote.monthly_cost,
        )
        session.fired.add(EVENT_LEAD)
        self.sink.fire(lead_event(lead, quote, session.id))
        return session

    async def begin_payment(
        self,
        session: CheckoutSession,
        lead: Optional[LeadProfile] = None,
        accept_terms: bool = False,
    ) -> PaymentHandle:
        if session.state == CheckoutState.PAYMENT_PENDING:
            return await self._retry_payment(session)
        if session.state == CheckoutState.BROWSING:
            raise InvalidTransitionError("Please enter your contact details before paying.")
        if session.state in PAID_STATES:
            raise InvalidTransitionError("This checkout has already been paid.")

        merged = self._merge_lead(session.lead, lead)
        missing = merged.missing(PAYMENT_FIELDS)
        if not accept_terms:
            missing.append("accept_terms")
        if missing:
            raise CheckoutValidationError("Please complete the payment details and accept the terms.", missing)
        quote = self.quote_for(session)
        self._ensure_minimum(quote)

        # Lock before the first await so concurrent edits see a frozen quote.
        previous_lead = session.lead
        session.selection.freeze()
        session.quote = quote
        session.lead = merged
        session.terms_accepted = True
        session.state = CheckoutState.PAYMENT_PENDING
        attempt = self._next_attempt(session)
        try:
            reference = await self.payments.start(session.id, quote, merged, attempt=attempt)
        except PaymentError as exc:
            session.selection.thaw()
            session.quote = None
            session.lead = previous_lead
            session.terms_accepted = False
            session.state = CheckoutState.LEAD_CAPTURED
            session.payment_error = str(exc)
            session.touch()
            logger.warning("PAYMENT_START_FAILED checkout_id=%s error=%s", session.id, exc)
            raise

        session.payment = reference
        session.payment_error = None
        session.touch()
        return self.payments.handle(reference, quote)

    async def _retry_payment(self, session: CheckoutSession) -> PaymentHandle:
        """Hands back the current provider payment while it can still be paid.

        A new one is opened only when the current one is dead (an expired
        Checkout Session), so at most one payable provider object exists.
        """
        if session.payment is None or session.quote is None or session.starting:
            raise InvalidTransitionError("Payment is already being started for this checkout.")
        session.starting = True
        try:
            current = session.payment
            status = await self.payments.status(current)
            if status.paid:
                await self.mark_paid(session, status, source="client")
                raise InvalidTransitionError("This checkout has already been paid.")
            previous = current if self.payments.reusable(current, status) else None
            attempt = self._next_attempt(session)
            reference = await self.payments.start(
                session.id,
                session.quote,
                session.lead,
                attempt=attempt,
                previous=previous,
            )
        except PaymentError as exc:
            session.payment_error = str(exc)
            session.touch()
            logger.warning("PAYMENT_RETRY_FAILED checkout_id=%s error=%s", session.id, exc)
            raise
        finally:
            session.starting = False
        session.payment = reference
        session.payment_error = None
        session.touch()
        return self.payments.handle(reference, session.quote)

    async def confirm_payment(self, session: CheckoutSession, reference: Optional[str] = None) -> CheckoutSession:
        """Asks the provider what happened; the client's word is never taken for it."""
        if session.state in PAID_STATES:
            if self._needs_subscription(session):
                status = await self.payments.status(session.payment)
                await self._ensure_subscription(session, status.payment_method_id)
            return session
        if session.state != CheckoutState.PAYMENT_PENDING or session.payment is None:
            raise InvalidTransitionError("There is no payment in progress for this checkout.")
        if reference and reference != session.payment.provider_id:
            raise CheckoutValidationError("The payment reference does not belong to this checkout.", ["reference"])

        status = await self.payments.status(session.payment)
        if status.paid:
            await self.mark_paid(session, status, source="client")
            return session
        if status.pending:
            return session

        message = status.error_message or "Your payment was not completed."
        session.payment_error = message
        session.touch()
        logger.info("PAYMENT_DECLINED checkout_id=%s error=%s", session.id, message)
        raise PaymentDeclinedError(message)

    async def mark_paid(self, session: CheckoutSession, status: PaymentStatus, source: str) -> CheckoutSession:
        """Single convergence point for client confirmation and webhooks.

        Safe to call any number of times; the payment CRM event fires once.
        """
        current = session.payment.provider_id if session.payment is not None else None
        if status.provider_id != current:
            logger.error(
                "PAYMENT_REFERENCE_MISMATCH checkout_id=%s reference=%s current=%s state=%s source=%s",
                session.id,
                status.provider_id,
                current,
                session.state.value,
                source,
            )
            raise PaymentIntegrityError("This payment is not the current payment for your checkout. Please contact us.")
        if session.state == CheckoutState.PAYMENT_PENDING:
            expected = session.quote.grand_total if session.quote is not None else None
            if status.amount != expected:
                logger.error(
                    "PAYMENT_AMOUNT_MISMATCH checkout_id=%s provider=%s quoted=%s source=%s",
                    session.id,
                    status.amount,
                    expected,
                    source,
                )
                raise PaymentIntegrityError("The paid amount does not match your quote. Please contact us.")
            session.state = CheckoutState.PAYMENT_CONFIRMED
            session.paid_via = source
            session.payment_error = None
            if status.subscription_id:
                session.subscription_id = status.subscription_id
            if session.payment is not None and status.customer_id and not session.payment.customer_id:
                session.payment = replace(session.payment, customer_id=status.customer_id)
            session.touch()
            logger.info(
                "PAYMENT_CONFIRMED checkout_id=%s reference=%s amount=%s source=%s",
                session.id,
                status.provider_id,
                status.amount,
                source,
            )
        elif session.state not in PAID_STATES:
            raise InvalidTransitionError("There is no payment in progress for this checkout.")

        if EVENT_PAYMENT not in session.fired:
            session.fired.add(EVENT_PAYMENT)
            self.sink.fire(
                payment_event(
                    session.lead,
                    self.quote_for(session),
                    session.id,
                    status.provider_id,
                    subscription_id=session.subscription_id,
                )
            )
        await self._ensure_subscription(session, status.payment_method_id)
        return session

    def sign_contract(self, session: CheckoutSession, signature: Optional[SignatureArtifact]) -> CheckoutSession:
        if session.state == CheckoutState.CONTRACT_SIGNED:
            raise InvalidTransitionError("The agreement has already been signed.")
        if session.state != CheckoutState.PAYMENT_CONFIRMED:
            raise InvalidTransitionError("The agreement can be signed once payment is confirmed.")
        if signature is None:
            raise CheckoutValidationError("Please draw or type your signature.", ["signature"])

        session.signature = signature
        session.state = CheckoutState.CONTRACT_SIGNED
        session.touch()
        logger.info(
            "CONTRACT_SIGNED checkout_id=%s kind=%s email=%s",
            session.id,
            signature.kind,
            session.lead.email,
        )
        session.fired.add(EVENT_CONTRACT)
        self.sink.fire(
            contract_event(
                session.lead,
                self.quote_for(session),
                session.id,
                signature,
                provider_reference=session.payment.provider_id if session.payment else "",
            )
        )
        return session

    def describe(self, session: CheckoutSession) -> Dict[str, Any]:
        quote = self.quote_for(session)
        payment = session.payment
        return {
            "id": session.id,
            "state": session.state.value,
            "selection": session.selection.to_dict(),
            "quote": quote.to_dict(),
            "lead": session.lead.model_dump(),
            "terms_accepted": session.terms_accepted,
            "payment": {
                "policy": payment.policy,
                "reference": payment.provider_id,
                "attempt": payment.attempt,
            }
            if payment
            else None,
            "payment_error": session.payment_error,
            "subscription_id": session.subscription_id,
            "signed_at": session.signature.signed_at.isoformat() if session.signature else None,
        }

    def _ensure_minimum(self, quote: Quote) -> None:
        minimum = self.settings.min_monthly_spend
        if quote.is_empty or quote.monthly_cost < minimum:
            raise CheckoutValidationError(
                f"Select at least {format_money(minimum)} per month of bots to continue.",
                ["selection"],
            )

    @staticmethod
    def _next_attempt(session: CheckoutSession) -> int:
        session.attempts += 1
        return session.attempts

    @staticmethod
    def _merge_lead(current: LeadProfile, supplied: Optional[LeadProfile]) -> LeadProfile:
        if supplied is None:
            return current.cleaned()
        data = current.model_dump()
        for key, value in supplied.model_dump().items():
            if (value or "").strip():
                data[key] = value
        return LeadProfile(**data).cleaned()

    @staticmethod
    def _needs_subscription(session: CheckoutSession) -> bool:
        return (
            session.payment is not None
            and session.payment.policy == POLICY_EMBEDDED
            and not session.subscription_id
        )

    async def _ensure_subscription(self, session: CheckoutSession, payment_method_id: Optional[str]) -> None:
        if not self._needs_subscription(session):
            return
        try:
            subscription_id = await self.payments.create_subscription(
                session.id,
                self.quote_for(session),
                session.lead,
                session.payment,
                payment_method_id=payment_method_id,
            )
        except PaymentError as exc:
            session.payment_error = str(exc)
            session.touch()
            logger.error("SUBSCRIPTION_FAILED checkout_id=%s error=%s", session.id, exc)
            raise
        session.subscription_id = subscription_id
        session.touch()
