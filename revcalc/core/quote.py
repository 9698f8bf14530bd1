from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from .catalog import Catalog, estimate_benefit
from .config import DEFAULT_CURRENCY, DEFAULT_TAX_RATE
from .models import Selection
from .money import round_cents, round_half_up


@dataclass(frozen=True)
class QuoteLine:
    item_id: str
    name: str
    monthly_price: int
    setup_fee: int
    benefit: int


@dataclass(frozen=True)
class Quote:
    lines: Tuple[QuoteLine, ...]
    monthly_cost: int
    setup_cost: int
    total_benefit: int
    net_gain: int
    return_ratio: float
    payback_months: Optional[int]
    tax_base: int
    tax: int
    grand_total: int
    tax_rate: Decimal
    currency: str

    @property
    def item_ids(self) -> Tuple[str, ...]:
        return tuple(line.item_id for line in self.lines)

    @property
    def annual_uplift(self) -> int:
        return self.total_benefit * 12

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def to_dict(self) -> dict:
        return {
            "lines": [
                {
                    "item_id": line.item_id,
                    "name": line.name,
                    "monthly_price": line.monthly_price,
                    "setup_fee": line.setup_fee,
                    "benefit": line.benefit,
                }
                for line in self.lines
            ],
            "monthly_cost": self.monthly_cost,
            "setup_cost": self.setup_cost,
            "total_benefit": self.total_benefit,
            "annual_uplift": self.annual_uplift,
            "net_gain": self.net_gain,
            "return_ratio": self.return_ratio,
            "payback_months": self.payback_months,
            "tax_base": self.tax_base,
            "tax": self.tax,
            "tax_rate": str(self.tax_rate),
            "grand_total": self.grand_total,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class TaxSplit:
    recurring: int
    one_time: int


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def compute_quote(
    selection: Selection,
    catalog: Catalog,
    tax_rate: Decimal = DEFAULT_TAX_RATE,
    currency: str = DEFAULT_CURRENCY,
) -> Quote:
    """Aggregate totals for a selection; all money in integer cents.

    Ids missing from the catalog are skipped. Tax is rounded once on the
    first-period base (setup + one month), never per line.
    """
    lines = []
    for item_id in selection.item_ids:
        item = catalog.get(item_id)
        if item is None:
            continue
        lines.append(
            QuoteLine(
                item_id=item.id,
                name=item.name,
                monthly_price=item.monthly_price,
                setup_fee=item.setup_fee,
                benefit=estimate_benefit(item, selection.params_for(item_id)),
            )
        )

    monthly_cost = sum(line.monthly_price for line in lines)
    setup_cost = sum(line.setup_fee for line in lines)
    total_benefit = sum(line.benefit for line in lines)
    net_gain = total_benefit - monthly_cost

    return_ratio = 0.0
    if monthly_cost > 0:
        return_ratio = float(round_half_up(total_benefit / Decimal(monthly_cost), 2))

    payback_months: Optional[int] = None
    if net_gain > 0:
        payback_months = _ceil_div(setup_cost, net_gain)

    tax_base = setup_cost + monthly_cost
    tax = round_cents(tax_base * tax_rate)

    return Quote(
        lines=tuple(lines),
        monthly_cost=monthly_cost,
        setup_cost=setup_cost,
        total_benefit=total_benefit,
        net_gain=net_gain,
        return_ratio=return_ratio,
        payback_months=payback_months,
        tax_base=tax_base,
        tax=tax,
        grand_total=tax_base + tax,
        tax_rate=tax_rate,
        currency=currency,
    )


def split_tax(quote: Quote) -> TaxSplit:
    """Assigns the aggregate tax to the recurring and one-time charges.

    The recurring share is what every later month carries; the one-time
    share absorbs the rounding remainder so both add up to ``quote.tax``.
    """
    recurring = min(quote.tax, round_cents(quote.monthly_cost * quote.tax_rate))
    return TaxSplit(recurring=recurring, one_time=quote.tax - recurring)
