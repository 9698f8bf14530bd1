from __future__ import annotations

import math
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .money import dollars_to_cents

BenefitFormula = Callable[[Mapping[str, float]], float]


@dataclass(frozen=True)
class ParameterSpec:
    key: str
    label: str
    default: float
    unit: str
    minimum: float
    maximum: float
    step: float
    prefix: str = ""
    suffix: str = ""

    def clamp(self, value: object) -> float:
        try:
            number = float(value)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return float(self.default)
        if not math.isfinite(number):
            return float(self.default)
        return min(self.maximum, max(self.minimum, number))


@dataclass(frozen=True)
class CatalogItem:
    id: str
    name: str
    category: str
    monthly_price: int  # cents
    setup_fee: int  # cents
    description: str
    icon: str
    parameters: Tuple[ParameterSpec, ...]
    formula: BenefitFormula = field(repr=False, compare=False)

    def defaults(self) -> Dict[str, float]:
        return {spec.key: float(spec.default) for spec in self.parameters}

    def resolve_params(self, params: Optional[Mapping[str, object]]) -> Dict[str, float]:
        """Every declared key, defaulted when missing and clamped to its domain."""
        supplied = params or {}
        resolved: Dict[str, float] = {}
        for spec in self.parameters:
            if spec.key in supplied:
                resolved[spec.key] = spec.clamp(supplied[spec.key])
            else:
                resolved[spec.key] = float(spec.default)
        return resolved

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "monthly_price": self.monthly_price,
            "setup_fee": self.setup_fee,
            "description": self.description,
            "icon": self.icon,
            "parameters": [
                {
                    "key": spec.key,
                    "label": spec.label,
                    "default": spec.default,
                    "unit": spec.unit,
                    "min": spec.minimum,
                    "max": spec.maximum,
                    "step": spec.step,
                    "prefix": spec.prefix,
                    "suffix": spec.suffix,
                }
                for spec in self.parameters
            ],
        }


def estimate_benefit(item: CatalogItem, params: Optional[Mapping[str, object]] = None) -> int:
    """Estimated monthly revenue benefit in cents, never negative."""
    dollars = item.formula(item.resolve_params(params))
    return max(0, dollars_to_cents(dollars))


class Catalog:
    """Immutable, ordered table of sellable items."""

    def __init__(self, items: Iterable[CatalogItem]):
        ordered = tuple(items)
        index: Dict[str, CatalogItem] = {}
        for item in ordered:
            if item.id in index:
                raise ValueError(f"Duplicate catalog item id: {item.id}")
            index[item.id] = item
        self._items = ordered
        self._index = index

    def list_items(self) -> Tuple[CatalogItem, ...]:
        return self._items

    def get(self, item_id: str) -> Optional[CatalogItem]:
        return self._index.get(item_id)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._index

    def __iter__(self):
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)


def _p(
    key: str,
    label: str,
    default: float,
    unit: str,
    minimum: float,
    maximum: float,
    step: float,
    prefix: str = "",
    suffix: str = "",
) -> ParameterSpec:
    return ParameterSpec(key, label, default, unit, minimum, maximum, step, prefix, suffix)


# Prices are AUD ex-GST, in cents.
BOTS: Tuple[CatalogItem, ...] = (
    CatalogItem(
        id="receptionist",
        name="AI Receptionist",
        category="Phase 1",
        monthly_price=100_000,
        setup_fee=200_000,
        description="Answers every call, triages and books patients 24/7",
        icon="📞",
        parameters=(
            _p("missedCalls", "Missed calls per month", 500, "calls not answered", 0, 2000, 10),
            _p("callConversion", "Call to booking conversion", 20, "of answered calls become bookings", 5, 60, 1, suffix="%"),
            _p("firstVisitFee", "Average first visit fee", 150, "per new patient visit", 50, 500, 10, prefix="$"),
        ),
        formula=lambda i: i["missedCalls"] * 0.65 * (i["callConversion"] / 100) * i["firstVisitFee"],
    ),
    CatalogItem(
        id="sick-day",
        name="Sick Day Rescheduler",
        category="Phase 2",
        monthly_price=10_000,
        setup_fee=50_000,
        description="Auto-calls and reschedules all patients when a physio is out",
        icon="🤒",
        parameters=(
            _p("sickDays", "Sick days across all physios/year", 6, "total sick days per year", 0, 50, 1),
            _p("apptsPerDay", "Appointments per physio/day", 8, "average daily bookings", 1, 20, 1),
            _p("rescheduleRate", "Rescheduled successfully", 70, "of patients rebook same week", 20, 95, 5, suffix="%"),
            _p("avgApptFee", "Average appointment fee", 100, "per rescheduled appointment", 50, 300, 10, prefix="$"),
        ),
        formula=lambda i: (i["sickDays"] * i["apptsPerDay"] * (i["rescheduleRate"] / 100) * i["avgApptFee"]) / 12,
    ),
    CatalogItem(
        id="retention",
        name="Retention Bot",
        category="Phase 3",
        monthly_price=60_000,
        setup_fee=150_000,
        description="Keeps patients on their full recommended treatment course",
        icon="🔄",
        parameters=(
            _p("activePatients", "Active patients per month", 100, "patients in active treatment", 10, 1000, 10),
            _p("dropOffRate", "Current drop-off rate", 40, "leave before completing course", 10, 80, 5, suffix="%"),
            _p("followUpFee", "Average follow-up visit fee", 100, "per follow-up session", 50, 300, 10, prefix="$"),
            _p("visitsPerCourse", "Visits per treatment course", 6, "avg sessions per full course", 2, 15, 1),
        ),
        formula=lambda i: i["activePatients"] * (i["dropOffRate"] / 100) * 0.3 * (i["visitsPerCourse"] * 0.5) * i["followUpFee"],
    ),
    CatalogItem(
        id="review",
        name="Review Bot",
        category="Add-on",
        monthly_price=10_000,
        setup_fee=50_000,
        description="Automatically prompts happy patients for Google reviews to win new business",
        icon="⭐",
        parameters=(
            _p("monthlyPatients", "Patients seen per month", 80, "total monthly patient visits", 10, 500, 10),
            _p("reviewValue", "Value of a new Google review", 300, "avg revenue per new patient from reviews", 100, 1000, 50, prefix="$"),
        ),
        formula=lambda i: i["monthlyPatients"] * 0.15 * i["reviewValue"],
    ),
    CatalogItem(
        id="nurture",
        name="New Patient Nurture",
        category="Add-on",
        monthly_price=60_000,
        setup_fee=150_000,
        description="Converts 20-30% more enquiries who didn't book immediately",
        icon="🌱",
        parameters=(
            _p("unconverted", "Unconverted enquiries/month", 30, "people who enquired but didn't book", 5, 200, 5),
            _p("currentConv", "Current enquiry conversion rate", 10, "currently converting without nurture", 0, 50, 5, suffix="%"),
            _p("nurtureVisitFee", "First visit fee", 150, "per new patient first visit", 50, 500, 10, prefix="$"),
        ),
        formula=lambda i: max(0.0, i["unconverted"] * 0.25 - i["unconverted"] * (i["currentConv"] / 100)) * i["nurtureVisitFee"],
    ),
    CatalogItem(
        id="reactivation",
        name="DB Reactivation",
        category="Add-on",
        monthly_price=100_000,
        setup_fee=200_000,
        description="Monthly outreach to lapsed patients to bring them back",
        icon="📊",
        parameters=(
            _p("lapsedPatients", "Lapsed patients in database", 200, "patients not seen in 6+ months", 50, 5000, 50),
            _p("reactivationFee", "First visit fee", 150, "per returning patient first visit", 50, 500, 10, prefix="$"),
        ),
        formula=lambda i: i["lapsedPatients"] * 0.03 * i["reactivationFee"],
    ),
    CatalogItem(
        id="waitlist",
        name="Waitlist & Cancellation Filler",
        category="Add-on",
        monthly_price=40_000,
        setup_fee=100_000,
        description="Fills cancelled appointment slots automatically from your waitlist",
        icon="⏱️",
        parameters=(
            _p("cancellations", "Cancellations per month", 40, "last-minute cancellations", 5, 200, 5),
            _p("waitlistApptValue", "Average appointment value", 100, "per filled appointment", 50, 300, 10, prefix="$"),
        ),
        formula=lambda i: i["cancellations"] * 0.45 * i["waitlistApptValue"],
    ),
    CatalogItem(
        id="intake",
        name="Pre-Visit Intake Bot",
        category="Add-on",
        monthly_price=30_000,
        setup_fee=100_000,
        description="Collects patient history, symptoms & insurance info before their first visit",
        icon="📋",
        parameters=(
            _p("newPatientsMonth", "New patients per month", 30, "new patients arriving", 5, 200, 5),
            _p("timeSaved", "Minutes saved per patient", 10, "admin time saved per intake", 5, 30, 5),
            _p("hourlyRate", "Physio hourly rate (cost)", 80, "staff cost per hour", 40, 200, 10, prefix="$"),
        ),
        formula=lambda i: (i["newPatientsMonth"] * i["timeSaved"] / 60) * i["hourlyRate"],
    ),
    CatalogItem(
        id="postop",
        name="Post-Treatment Check-In",
        category="Add-on",
        monthly_price=40_000,
        setup_fee=100_000,
        description="Automated follow-up after treatment milestones to drive rebookings",
        icon="💬",
        parameters=(
            _p("discharged", "Patients discharged per month", 40, "patients finishing treatment", 5, 200, 5),
            _p("rebookRate", "Rebook rate from check-ins", 15, "return for additional treatment", 5, 40, 5, suffix="%"),
            _p("rebookValue", "Average rebooking value", 100, "per returning patient", 50, 300, 10, prefix="$"),
        ),
        formula=lambda i: i["discharged"] * (i["rebookRate"] / 100) * i["rebookValue"],
    ),
    CatalogItem(
        id="referral",
        name="Referral Program Bot",
        category="Add-on",
        monthly_price=30_000,
        setup_fee=100_000,
        description="Turns happy patients into your best source of new business",
        icon="🤝",
        parameters=(
            _p("happyPatients", "Satisfied patients per month", 60, "patients likely to refer", 10, 300, 10),
            _p("referralRate", "Expected referral rate", 8, "who actually refer someone", 2, 25, 1, suffix="%"),
            _p("referralValue", "Value of a referred patient", 400, "lifetime value of referral", 100, 1000, 50, prefix="$"),
        ),
        formula=lambda i: i["happyPatients"] * (i["referralRate"] / 100) * i["referralValue"],
    ),
    CatalogItem(
        id="reminders",
        name="Smart Appointment Reminders",
        category="Add-on",
        monthly_price=20_000,
        setup_fee=50_000,
        description="Conversational reminders that slash no-shows by 60%+",
        icon="🔔",
        parameters=(
            _p("monthlyAppts", "Monthly appointments", 300, "total scheduled appointments", 50, 2000, 50),
            _p("noShowRate", "Current no-show rate", 12, "of patients who don't show", 2, 30, 1, suffix="%"),
            _p("reminderApptValue", "Average appointment value", 100, "per recovered appointment", 50, 300, 10, prefix="$"),
        ),
        formula=lambda i: i["monthlyAppts"] * (i["noShowRate"] / 100) * 0.6 * i["reminderApptValue"],
    ),
)

DEFAULT_SELECTION: Tuple[str, ...] = (
    "receptionist",
    "sick-day",
    "retention",
    "review",
    "nurture",
    "reactivation",
)


@lru_cache(maxsize=1)
def default_catalog() -> Catalog:
    return Catalog(BOTS)


def list_items() -> Tuple[CatalogItem, ...]:
    return default_catalog().list_items()


def catalog_payload(catalog: Catalog) -> List[dict]:
    return [item.to_dict() for item in catalog.list_items()]
