from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import httpx

from .models import LeadProfile, SignatureArtifact
from .money import cents_to_str
from .quote import Quote

logger = logging.getLogger(__name__)

EVENT_LEAD = "lead"
EVENT_PAYMENT = "payment"
EVENT_CONTRACT = "contract"

SOURCE_LEAD_FORM = "AI Revenue Calculator - Lead Form"
SOURCE_CHECKOUT = "AI Revenue Calculator - Stripe Checkout"
SOURCE_CONTRACT = "AI Revenue Calculator - Service Agreement"


@dataclass(frozen=True)
class CrmEvent:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


def _contact_fields(lead: LeadProfile) -> Dict[str, Any]:
    return {
        "firstName": lead.first_name or lead.name,
        "lastName": lead.last_name,
        "email": lead.email,
        "phone": lead.phone,
        "companyName": lead.business_name,
        "website": lead.website,
        "address1": lead.address,
        "state": lead.region,
        "postalCode": lead.postcode,
    }


def _quote_fields(quote: Quote) -> Dict[str, str]:
    return {
        "bot_ids": ", ".join(quote.item_ids),
        "monthly_investment": cents_to_str(quote.monthly_cost),
        "setup_fee": cents_to_str(quote.setup_cost),
        "gst": cents_to_str(quote.tax),
        "total_due_today": cents_to_str(quote.grand_total),
        "projected_monthly_revenue": cents_to_str(quote.total_benefit),
    }


def _business_fields(lead: LeadProfile) -> Dict[str, str]:
    return {
        "role": lead.role,
        "legal_business_name": lead.business_name,
        "abn": lead.tax_id,
        "entity_type": lead.entity_type,
    }


def lead_event(lead: LeadProfile, quote: Quote, checkout_id: str) -> CrmEvent:
    custom = _quote_fields(quote)
    custom.update(_business_fields(lead))
    custom.update(
        {
            "checkout_id": checkout_id,
            "payment_status": "lead - not yet paid",
            "source": SOURCE_LEAD_FORM,
        }
    )
    payload = _contact_fields(lead)
    payload["customField"] = custom
    payload["tags"] = ["AI Calculator Lead"] + [f"interested:{item_id}" for item_id in quote.item_ids]
    return CrmEvent(kind=EVENT_LEAD, payload=payload)


def payment_event(
    lead: LeadProfile,
    quote: Quote,
    checkout_id: str,
    provider_reference: str,
    subscription_id: Optional[str] = None,
) -> CrmEvent:
    custom = _quote_fields(quote)
    custom.update(_business_fields(lead))
    custom.update(
        {
            "checkout_id": checkout_id,
            "stripe_reference": provider_reference,
            "stripe_subscription_id": subscription_id or "",
            "payment_status": "paid",
            "source": SOURCE_CHECKOUT,
        }
    )
    payload = _contact_fields(lead)
    payload["customField"] = custom
    payload["tags"] = ["AI Bot Customer", "Stripe Paid"] + [f"bot:{item_id}" for item_id in quote.item_ids]
    return CrmEvent(kind=EVENT_PAYMENT, payload=payload)


def payment_event_from_metadata(metadata: Dict[str, Any], provider_reference: str, email: str = "") -> CrmEvent:
    """Payment event for a webhook whose checkout is no longer held in memory."""
    name = str(metadata.get("lead_name") or "")
    parts = name.split()
    bot_ids = [item for item in str(metadata.get("bot_ids") or "").split(",") if item]
    payload: Dict[str, Any] = {
        "firstName": parts[0] if parts else name,
        "lastName": " ".join(parts[1:]),
        "email": str(metadata.get("lead_email") or email or ""),
        "phone": str(metadata.get("lead_phone") or ""),
        "companyName": str(metadata.get("lead_business") or ""),
        "website": str(metadata.get("lead_website") or ""),
        "customField": {
            "bot_ids": ", ".join(bot_ids),
            "monthly_investment": str(metadata.get("total_monthly") or ""),
            "setup_fee": str(metadata.get("total_setup") or ""),
            "gst": str(metadata.get("total_tax") or ""),
            "total_due_today": str(metadata.get("total_due_today") or ""),
            "projected_monthly_revenue": str(metadata.get("projected_monthly_revenue") or ""),
            "checkout_id": str(metadata.get("checkout_id") or ""),
            "stripe_reference": provider_reference,
            "payment_status": "paid",
            "source": SOURCE_CHECKOUT,
        },
        "tags": ["AI Bot Customer", "Stripe Paid"] + [f"bot:{item_id}" for item_id in bot_ids],
    }
    return CrmEvent(kind=EVENT_PAYMENT, payload=payload)


def contract_event(
    lead: LeadProfile,
    quote: Quote,
    checkout_id: str,
    signature: SignatureArtifact,
    provider_reference: str = "",
) -> CrmEvent:
    custom = _quote_fields(quote)
    custom.update(_business_fields(lead))
    custom.update(
        {
            "checkout_id": checkout_id,
            "stripe_reference": provider_reference,
            "payment_status": "paid",
            "contract_status": "signed",
            "contract_signed_at": signature.signed_at.isoformat(),
            "signature_type": signature.kind,
            "signed_name": signature.typed_name or lead.name,
            "signature_image": signature.image_base64 or "",
            "return_ratio": str(quote.return_ratio),
            "payback_months": "" if quote.payback_months is None else str(quote.payback_months),
            "source": SOURCE_CONTRACT,
        }
    )
    payload = _contact_fields(lead)
    payload["customField"] = custom
    payload["tags"] = ["AI Bot Customer", "Contract Signed"] + [f"bot:{item_id}" for item_id in quote.item_ids]
    return CrmEvent(kind=EVENT_CONTRACT, payload=payload)


class NotificationSink:
    """Best-effort forwarding of lead, payment and contract events to the CRM.

    ``fire`` never blocks and never raises; delivery problems are logged.
    """

    def __init__(
        self,
        webhook_url: str = "",
        contract_webhook_url: str = "",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = (webhook_url or "").strip()
        self.contract_webhook_url = (contract_webhook_url or "").strip() or self.webhook_url
        self.timeout = timeout
        self._transport = transport
        self._pending: Set[asyncio.Task] = set()

    def url_for(self, event: CrmEvent) -> str:
        if event.kind == EVENT_CONTRACT:
            return self.contract_webhook_url
        return self.webhook_url

    def fire(self, event: CrmEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("CRM_DELIVERY_SKIPPED kind=%s reason=no_event_loop", event.kind)
            return
        task = loop.create_task(self.deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def deliver(self, event: CrmEvent) -> bool:
        url = self.url_for(event)
        if not url:
            logger.warning("CRM_DELIVERY_SKIPPED kind=%s reason=no_webhook_url", event.kind)
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=event.payload)
        except httpx.HTTPError as exc:
            logger.error("CRM_DELIVERY_FAILED kind=%s error=%s", event.kind, exc)
            return False
        except Exception:
            logger.exception("CRM_DELIVERY_FAILED kind=%s", event.kind)
            return False
        if response.status_code >= 300:
            logger.error(
                "CRM_DELIVERY_FAILED kind=%s status=%s body=%s",
                event.kind,
                response.status_code,
                response.text[:400],
            )
            return False
        logger.info("CRM_DELIVERED kind=%s email=%s", event.kind, event.payload.get("email", ""))
        return True

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending(self) -> List[asyncio.Task]:
        return list(self._pending)
