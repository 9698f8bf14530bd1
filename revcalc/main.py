from __future__ import annotations

import logging
import os
import urllib.parse
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

import sys

if __package__ in (None, ""):
    sys.path.append(str(Path(__file__).resolve().parent.parent))

from revcalc.core.catalog import DEFAULT_SELECTION, catalog_payload, default_catalog
from revcalc.core.checkout import CheckoutMachine, CheckoutSession, CheckoutState
from revcalc.core.config import Settings, _session_secret, load_settings
from revcalc.core.crm import NotificationSink
from revcalc.core.models import (
    CheckoutError,
    CheckoutValidationError,
    ConfirmRequest,
    LeadRequest,
    PaymentRequest,
    Selection,
    SelectionEdit,
    SelectionInput,
    SignatureArtifact,
    SignatureInput,
    StartCheckoutRequest,
)
from revcalc.core.money import format_money
from revcalc.core.payments import PaymentError, PaymentOrchestrator, StripeGateway
from revcalc.core.quote import compute_quote
from revcalc.core.store import CheckoutStore
from revcalc.core.webhooks import WebhookReconciler, WebhookVerificationError

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
SESSION_MAX_AGE = 60 * 60 * 24 * 14
SESSION_CHECKOUTS_KEY = "checkout_ids"
MAX_CHECKOUTS_PER_COOKIE = 5


def configure(
    target: FastAPI,
    settings: Optional[Settings] = None,
    gateway: Any = None,
    sink: Optional[NotificationSink] = None,
) -> None:
    settings = settings or load_settings()
    catalog = default_catalog()
    if sink is None:
        sink = NotificationSink(
            settings.crm_webhook_url,
            settings.contract_webhook_url,
            timeout=settings.crm_timeout,
        )
    if gateway is None:
        gateway = StripeGateway(settings.stripe_secret_key)
    payments = PaymentOrchestrator(gateway, settings)
    machine = CheckoutMachine(catalog, settings, payments, sink)
    store = CheckoutStore(settings.checkout_ttl)

    target.state.settings = settings
    target.state.catalog = catalog
    target.state.sink = sink
    target.state.payments = payments
    target.state.machine = machine
    target.state.store = store
    target.state.reconciler = WebhookReconciler(settings, store, machine, sink)


@asynccontextmanager
async def lifespan(target: FastAPI):
    if not hasattr(target.state, "machine"):
        configure(target)
    settings: Settings = target.state.settings
    logger.info(
        "STARTUP policy=%s payments_configured=%s crm_configured=%s",
        settings.payment_policy,
        settings.payments_configured,
        bool(settings.crm_webhook_url),
    )
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET not set - webhooks will be rejected")
    yield
    await target.state.sink.drain()


app = FastAPI(title="AI Revenue Calculator", version="0.1.0", lifespan=lifespan)

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
templates.env.filters["money"] = format_money

app.add_middleware(
    SessionMiddleware,
    secret_key=_session_secret(),
    same_site="lax",
    https_only=bool(os.getenv("SESSION_COOKIE_SECURE"))
    or os.getenv("APP_PUBLIC_URL", "").strip().lower().startswith("https://"),
    max_age=SESSION_MAX_AGE,
)


def _clean_booking_url(value: str) -> str:
    raw = (value or "").strip()
    if raw in ("", "#"):
        return ""
    # Prevent a redirect loop if someone configures /booking itself.
    if raw.startswith("/booking"):
        return ""
    return raw


def _error(code: str, status_code: int, detail: Any = None, **extra: Any) -> JSONResponse:
    body = {"ok": False, "error": code}
    if detail is not None:
        body["detail"] = detail
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def _error_response(exc: Exception) -> JSONResponse:
    if isinstance(exc, CheckoutValidationError):
        return _error(exc.code, 400, str(exc), fields=exc.fields)
    if isinstance(exc, CheckoutError):
        return _error(exc.code, 409, str(exc))
    if isinstance(exc, PaymentError):
        return _error(exc.code, exc.status_code, str(exc))
    raise exc


def _owned_ids(request: Request) -> List[str]:
    return [str(item) for item in request.session.get(SESSION_CHECKOUTS_KEY) or []]


def _bind(request: Request, checkout_id: str) -> None:
    owned = [item for item in _owned_ids(request) if item != checkout_id]
    owned.append(checkout_id)
    request.session[SESSION_CHECKOUTS_KEY] = owned[-MAX_CHECKOUTS_PER_COOKIE:]


def _load(request: Request, checkout_id: str) -> Tuple[Optional[CheckoutSession], Optional[JSONResponse]]:
    session = request.app.state.store.get(checkout_id)
    if session is None:
        return None, _error("checkout_not_found", 404)
    if checkout_id not in _owned_ids(request):
        return None, _error("checkout_not_owned", 403)
    return session, None


def _checkout_body(request: Request, session: CheckoutSession, **extra: Any) -> dict:
    body = {"ok": True, "checkout": request.app.state.machine.describe(session)}
    body.update(extra)
    return body


@app.get("/", response_class=HTMLResponse)
async def home(request: Request, cancelled: bool = False):
    state = request.app.state
    quote = compute_quote(
        Selection.default(state.catalog),
        state.catalog,
        tax_rate=state.settings.tax_rate,
        currency=state.settings.currency,
    )
    return templates.TemplateResponse(
        "index.html",
        {
            "request": request,
            "items": state.catalog.list_items(),
            "default_selection": DEFAULT_SELECTION,
            "quote": quote,
            "min_monthly_spend": state.settings.min_monthly_spend,
            "policy": state.settings.payment_policy,
            "publishable_key": state.settings.stripe_publishable_key,
            "cancelled": cancelled,
        },
    )


@app.get("/health", response_class=JSONResponse)
async def health(request: Request):
    settings: Settings = request.app.state.settings
    return {
        "ok": True,
        "policy": settings.payment_policy,
        "payments_configured": settings.payments_configured,
        "crm_configured": bool(settings.crm_webhook_url),
    }


@app.get("/api/catalog", response_class=JSONResponse)
async def catalog_view(request: Request):
    state = request.app.state
    return {
        "ok": True,
        "items": catalog_payload(state.catalog),
        "default_selection": list(DEFAULT_SELECTION),
        "tax_rate": str(state.settings.tax_rate),
        "currency": state.settings.currency,
        "min_monthly_spend": state.settings.min_monthly_spend,
    }


@app.post("/api/quote", response_class=JSONResponse)
async def quote_view(request: Request, payload: SelectionInput):
    state = request.app.state
    selection = Selection.from_input(state.catalog, payload)
    quote = compute_quote(
        selection,
        state.catalog,
        tax_rate=state.settings.tax_rate,
        currency=state.settings.currency,
    )
    return {
        "ok": True,
        "quote": quote.to_dict(),
        "meets_minimum": not quote.is_empty and quote.monthly_cost >= state.settings.min_monthly_spend,
    }


@app.post("/api/checkout", response_class=JSONResponse)
async def start_checkout(request: Request, payload: Optional[StartCheckoutRequest] = None):
    state = request.app.state
    selection = Selection.from_input(state.catalog, payload.selection if payload else None)
    session = state.machine.start(selection)
    state.store.add(session)
    _bind(request, session.id)
    return JSONResponse(_checkout_body(request, session), status_code=201)


@app.get("/api/checkout/{checkout_id}", response_class=JSONResponse)
async def get_checkout(request: Request, checkout_id: str):
    session, failure = _load(request, checkout_id)
    if failure:
        return failure
    return _checkout_body(request, session)


@app.patch("/api/checkout/{checkout_id}/selection", response_class=JSONResponse)
async def edit_selection(request: Request, checkout_id: str, payload: SelectionEdit):
    session, failure = _load(request, checkout_id)
    if failure:
        return failure
    try:
        request.app.state.machine.edit_selection(session, payload.toggle, payload.params)
    except CheckoutError as exc:
        return _error_response(exc)
    return _checkout_body(request, session)


@app.post("/api/checkout/{checkout_id}/lead", response_class=JSONResponse)
async def capture_lead(request: Request, checkout_id: str, payload: LeadRequest):
    session, failure = _load(request, checkout_id)
    if failure:
        return failure
    try:
        request.app.state.machine.capture_lead(session, payload.lead)
    except CheckoutError as exc:
        return _error_response(exc)
    return _checkout_body(request, session)


@app.post("/api/checkout/{checkout_id}/payment", response_class=JSONResponse)
async def begin_payment(request: Request, checkout_id: str, payload: PaymentRequest):
    session, failure = _load(request, checkout_id)
    if failure:
        return failure
    # Security: amounts come from the server-side quote, never from the client.
    try:
        handle = await request.app.state.machine.begin_payment(
            session,
            lead=payload.lead,
            accept_terms=payload.accept_terms,
        )
    except (CheckoutError, PaymentError) as exc:
        return _error_response(exc)
    return _checkout_body(request, session, payment=handle.to_dict())


@app.post("/api/checkout/{checkout_id}/confirm", response_class=JSONResponse)
async def confirm_payment(request: Request, checkout_id: str, payload: Optional[ConfirmRequest] = None):
    session, failure = _load(request, checkout_id)
    if failure:
        return failure
    try:
        await request.app.state.machine.confirm_payment(session, payload.reference if payload else None)
    except (CheckoutError, PaymentError) as exc:
        return _error_response(exc)
    return _checkout_body(request, session)


@app.post("/api/checkout/{checkout_id}/signature", response_class=JSONResponse)
async def sign_contract(request: Request, checkout_id: str, payload: SignatureInput):
    session, failure = _load(request, checkout_id)
    if failure:
        return failure
    try:
        request.app.state.machine.sign_contract(session, SignatureArtifact.from_input(payload))
    except CheckoutError as exc:
        return _error_response(exc)
    return _checkout_body(request, session)


@app.post("/api/webhooks/stripe", response_class=JSONResponse)
async def stripe_webhook(request: Request):
    reconciler: WebhookReconciler = request.app.state.reconciler
    payload = await request.body()
    try:
        event = reconciler.verify(payload, request.headers.get("stripe-signature"))
    except WebhookVerificationError as exc:
        return _error(exc.code, 400, str(exc))
    outcome, checkout_id = await reconciler.handle(event)
    return {"ok": True, "outcome": outcome, "checkout_id": checkout_id}


@app.get("/success", response_class=HTMLResponse)
async def success_page(request: Request, session_id: str = ""):
    state = request.app.state
    reference = (session_id or "").strip()
    checkout = None
    error = ""
    for checkout_id in reversed(_owned_ids(request)):
        candidate = state.store.get(checkout_id)
        if candidate is not None and candidate.payment and candidate.payment.provider_id == reference:
            checkout = candidate
            break
    if checkout is not None and checkout.state == CheckoutState.PAYMENT_PENDING:
        try:
            await state.machine.confirm_payment(checkout, reference)
        except (CheckoutError, PaymentError) as exc:
            error = str(exc)
    return templates.TemplateResponse(
        "success.html",
        {
            "request": request,
            "reference": reference,
            "checkout": checkout,
            "quote": state.machine.quote_for(checkout) if checkout else None,
            "confirmed": checkout is not None and checkout.state
            in (CheckoutState.PAYMENT_CONFIRMED, CheckoutState.CONTRACT_SIGNED),
            "error": error,
        },
    )


@app.get("/booking")
async def booking_redirect(request: Request, name: str = "", email: str = ""):
    booking_url = _clean_booking_url(request.app.state.settings.booking_url)
    if not booking_url:
        return RedirectResponse(url="/#book", status_code=302)
    prefill = {key: value for key, value in (("name", name.strip()), ("email", email.strip())) if value}
    if prefill:
        separator = "&" if "?" in booking_url else "?"
        booking_url = f"{booking_url}{separator}{urllib.parse.urlencode(prefill)}"
    return RedirectResponse(url=booking_url, status_code=302)
