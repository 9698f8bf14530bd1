from __future__ import annotations

import base64
import binascii
import re
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

from .catalog import DEFAULT_SELECTION, Catalog

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

LEAD_CAPTURE_FIELDS = ("name", "email", "phone", "business_name")
PAYMENT_FIELDS = (
    "name",
    "email",
    "phone",
    "role",
    "business_name",
    "tax_id",
    "entity_type",
    "address",
    "region",
    "postcode",
)


class CheckoutError(ValueError):
    code = "checkout_error"


class CheckoutValidationError(CheckoutError):
    code = "validation_failed"

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = list(fields or [])


class InvalidTransitionError(CheckoutError):
    code = "invalid_transition"


class QuoteFrozenError(CheckoutError):
    code = "quote_frozen"


class LeadProfile(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    role: str = ""
    business_name: str = ""
    tax_id: str = ""
    entity_type: str = ""
    address: str = ""
    region: str = ""
    postcode: str = ""
    website: str = ""

    def cleaned(self) -> "LeadProfile":
        data = {key: (value or "").strip() for key, value in self.model_dump().items()}
        data["email"] = data["email"].lower()
        return LeadProfile(**data)

    def missing(self, fields: Iterable[str]) -> List[str]:
        fields = tuple(fields)
        missing = [key for key in fields if not (getattr(self, key) or "").strip()]
        email = (self.email or "").strip()
        if "email" in fields and email and not EMAIL_PATTERN.match(email):
            missing.append("email")
        return missing

    @property
    def first_name(self) -> str:
        parts = (self.name or "").split()
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        return " ".join((self.name or "").split()[1:])


class SignatureInput(BaseModel):
    image_base64: Optional[str] = None
    typed_name: Optional[str] = None


class SignatureArtifact(BaseModel):
    image_base64: Optional[str] = None
    typed_name: Optional[str] = None
    signed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def kind(self) -> str:
        return "drawn" if self.image_base64 else "typed"

    @classmethod
    def from_input(cls, payload: SignatureInput) -> Optional["SignatureArtifact"]:
        """Returns None when neither a decodable image nor a typed name is present."""
        image = _normalise_image(payload.image_base64)
        typed = (payload.typed_name or "").strip()
        if not image and not typed:
            return None
        return cls(image_base64=image, typed_name=typed or None)


def _normalise_image(raw: Optional[str]) -> Optional[str]:
    value = (raw or "").strip()
    if not value:
        return None
    if value.startswith("data:"):
        _, _, value = value.partition(",")
    try:
        decoded = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None
    if not decoded:
        return None
    return value


class SelectionInput(BaseModel):
    item_ids: List[str] = Field(default_factory=list)
    params: Dict[str, Dict[str, float]] = Field(default_factory=dict)


class SelectionEdit(BaseModel):
    toggle: List[str] = Field(default_factory=list)
    params: Dict[str, Dict[str, float]] = Field(default_factory=dict)


class StartCheckoutRequest(BaseModel):
    selection: Optional[SelectionInput] = None


class LeadRequest(BaseModel):
    lead: LeadProfile


class PaymentRequest(BaseModel):
    lead: Optional[LeadProfile] = None
    accept_terms: bool = False


class ConfirmRequest(BaseModel):
    reference: Optional[str] = None


class Selection:
    """Customer's chosen items and their slider values.

    Ids are kept in the order they were chosen and may include ids the
    catalog does not know; the quote engine skips those.
    """

    def __init__(self, catalog: Catalog, item_ids: Iterable[str] = (), params: Optional[Mapping[str, Mapping[str, object]]] = None):
        self._catalog = catalog
        self._item_ids: List[str] = []
        self._params: Dict[str, Dict[str, float]] = {}
        self._frozen = False
        supplied = params or {}
        for item_id in item_ids:
            if item_id in self._item_ids:
                continue
            self._item_ids.append(item_id)
            item = catalog.get(item_id)
            if item is not None:
                self._params[item_id] = item.resolve_params(supplied.get(item_id))

    @classmethod
    def default(cls, catalog: Catalog) -> "Selection":
        return cls(catalog, DEFAULT_SELECTION)

    @classmethod
    def from_input(cls, catalog: Catalog, payload: Optional[SelectionInput]) -> "Selection":
        if payload is None:
            return cls.default(catalog)
        return cls(catalog, payload.item_ids, payload.params)

    @property
    def item_ids(self) -> List[str]:
        return list(self._item_ids)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def params_for(self, item_id: str) -> Dict[str, float]:
        return dict(self._params.get(item_id, {}))

    def toggle(self, item_id: str) -> bool:
        """Adds or removes an item; returns True when it ends up selected."""
        self._ensure_mutable()
        if item_id in self._item_ids:
            self._item_ids.remove(item_id)
            self._params.pop(item_id, None)
            return False
        self._item_ids.append(item_id)
        item = self._catalog.get(item_id)
        if item is not None:
            self._params[item_id] = item.defaults()
        return True

    def set_parameter(self, item_id: str, key: str, value: float) -> float:
        self._ensure_mutable()
        item = self._catalog.get(item_id)
        if item is None or item_id not in self._item_ids:
            raise CheckoutValidationError(f"Item {item_id} is not selected.", [item_id])
        spec = next((p for p in item.parameters if p.key == key), None)
        if spec is None:
            raise CheckoutValidationError(f"Unknown parameter {key} for {item_id}.", [f"{item_id}.{key}"])
        clamped = spec.clamp(value)
        self._params[item_id][key] = clamped
        return clamped

    def copy(self) -> "Selection":
        clone = Selection(self._catalog)
        clone._item_ids = list(self._item_ids)
        clone._params = {key: dict(values) for key, values in self._params.items()}
        clone._frozen = self._frozen
        return clone

    def freeze(self) -> None:
        self._frozen = True

    def thaw(self) -> None:
        self._frozen = False

    def to_dict(self) -> dict:
        return {
            "item_ids": self.item_ids,
            "params": {key: dict(values) for key, values in self._params.items()},
            "frozen": self._frozen,
        }

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise QuoteFrozenError("The quote is locked once payment has started.")
