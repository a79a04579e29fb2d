"""
Billable-pages pricing.

Pure functions: identical inputs always give identical, Decimal-exact output.
Words-per-page, the page rounding step and the complexity multiplier table
come from settings; callers may pass overrides (staff recalculation, tests).

    billable_pages = ceil_to_step(word_count / words_per_page * multiplier, step)
    line_total     = round_cents(billable_pages * base_rate)
    subtotal       = line_total + certification + rush_fee (if rush) + delivery_fee
    tax_amount     = round_cents(sum of tax components)
    total          = subtotal + tax_amount
"""

from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Mapping, Optional, Sequence, Union

from pydantic import BaseModel

from quotedesk.config import settings
from quotedesk.errors import ValidationFailed

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

Number = Union[Decimal, int, float, str]


class TaxComponent(BaseModel):
    """One tax line. Compound taxes apply on subtotal plus the taxes before them."""
    name: str = "tax"
    rate: Decimal
    is_compound: bool = False


class PriceBreakdown(BaseModel):
    """Price of a single document (or a single pricing request)."""
    word_count: int
    complexity: str
    complexity_multiplier: Decimal
    billable_pages: Decimal
    base_rate: Decimal
    translation_line_total: Decimal
    certification_total: Decimal
    rush_fee: Decimal
    delivery_fee: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


class DocumentLine(BaseModel):
    """Priced document used when aggregating a whole quote."""
    billable_pages: Decimal
    line_total: Decimal
    certification_price: Decimal = ZERO


class QuoteTotals(BaseModel):
    """
    Quote-level totals.
    `subtotal` excludes certification so that
    total == subtotal + certification_total + tax_amount.
    """
    translation_total: Decimal
    certification_total: Decimal
    rush_fee: Decimal
    delivery_fee: Decimal
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal
    billable_pages: Decimal
    document_count: int

    def as_calculated_totals(self) -> dict:
        """JSON-safe breakdown for quotes.calculated_totals."""
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in self.model_dump().items()}


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 0.05 from dragging binary noise in
    return Decimal(str(value))


def round_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def ceil_to_step(value: Decimal, step: Decimal) -> Decimal:
    """Round up to the next multiple of step (0.01 -> 4.4444 becomes 4.45)."""
    if step <= 0:
        raise ValidationFailed(f"Rounding step must be positive, got {step}")
    units = (value / step).to_integral_value(rounding=ROUND_CEILING)
    return (units * step).quantize(step)


def complexity_multiplier(
    complexity: str,
    multipliers: Optional[Mapping[str, Number]] = None,
) -> Decimal:
    table = multipliers if multipliers is not None else settings.COMPLEXITY_MULTIPLIERS
    key = (complexity or "").strip().lower()
    if key not in table:
        raise ValidationFailed(
            f"Unknown complexity '{complexity}'. Expected one of {sorted(table)}"
        )
    return to_decimal(table[key])


def billable_pages(
    word_count: int,
    multiplier: Decimal,
    words_per_page: Optional[int] = None,
    step: Optional[Decimal] = None,
) -> Decimal:
    wpp = words_per_page or settings.WORDS_PER_PAGE
    if word_count < 0:
        raise ValidationFailed(f"word_count must be >= 0, got {word_count}")
    # multiply before dividing so exact results (450 words, medium -> 2.3) stay exact
    raw = Decimal(word_count) * multiplier / Decimal(wpp)
    return ceil_to_step(raw, to_decimal(step or settings.BILLABLE_PAGE_STEP))


def compute_tax(subtotal: Decimal, taxes: Sequence[TaxComponent]) -> Decimal:
    """Simple taxes apply to subtotal; compound taxes also to the taxes accrued before them."""
    accrued = ZERO
    for component in taxes:
        base = subtotal + accrued if component.is_compound else subtotal
        accrued += base * to_decimal(component.rate)
    return round_cents(accrued)


def _resolve_taxes(tax_rate: Optional[Number], taxes: Optional[Sequence[TaxComponent]]) -> list[TaxComponent]:
    if taxes is not None:
        return list(taxes)
    rate = settings.DEFAULT_TAX_RATE if tax_rate is None else to_decimal(tax_rate)
    return [TaxComponent(rate=rate)]


def compute_pricing(
    word_count: int,
    complexity: str,
    *,
    base_rate: Optional[Number] = None,
    certification_price: Optional[Number] = None,
    is_rush: bool = False,
    rush_fee: Optional[Number] = None,
    delivery_fee: Optional[Number] = None,
    tax_rate: Optional[Number] = None,
    taxes: Optional[Sequence[TaxComponent]] = None,
    words_per_page: Optional[int] = None,
    step: Optional[Number] = None,
    multipliers: Optional[Mapping[str, Number]] = None,
) -> PriceBreakdown:
    """
    Price one document.

    >>> compute_pricing(1000, "easy", base_rate=65, tax_rate="0.05").total
    Decimal('303.71')
    """
    multiplier = complexity_multiplier(complexity, multipliers)
    pages = billable_pages(
        word_count, multiplier, words_per_page,
        to_decimal(step) if step is not None else None,
    )
    rate = to_decimal(base_rate) if base_rate is not None else settings.DEFAULT_BASE_RATE

    line_total = round_cents(pages * rate)
    certification = round_cents(to_decimal(certification_price))
    rush = round_cents(to_decimal(rush_fee)) if is_rush else ZERO
    delivery = round_cents(to_decimal(delivery_fee))

    subtotal = line_total + certification + rush + delivery
    tax_amount = compute_tax(subtotal, _resolve_taxes(tax_rate, taxes))

    return PriceBreakdown(
        word_count=word_count,
        complexity=complexity.strip().lower(),
        complexity_multiplier=multiplier,
        billable_pages=pages,
        base_rate=rate,
        translation_line_total=line_total,
        certification_total=certification,
        rush_fee=rush,
        delivery_fee=delivery,
        subtotal=subtotal,
        tax_amount=tax_amount,
        total=subtotal + tax_amount,
    )


def aggregate_quote(
    lines: Sequence[DocumentLine],
    *,
    is_rush: bool = False,
    rush_fee: Optional[Number] = None,
    delivery_fee: Optional[Number] = None,
    tax_rate: Optional[Number] = None,
    taxes: Optional[Sequence[TaxComponent]] = None,
) -> QuoteTotals:
    """Sum per-document lines into quote totals; tax is computed once on the pre-tax sum."""
    translation_total = round_cents(sum((to_decimal(l.line_total) for l in lines), ZERO))
    certification_total = round_cents(sum((to_decimal(l.certification_price) for l in lines), ZERO))
    pages = sum((to_decimal(l.billable_pages) for l in lines), ZERO)
    rush = round_cents(to_decimal(rush_fee)) if is_rush else ZERO
    delivery = round_cents(to_decimal(delivery_fee))

    resolved = _resolve_taxes(tax_rate, taxes)
    subtotal = translation_total + rush + delivery
    tax_amount = compute_tax(subtotal + certification_total, resolved)

    return QuoteTotals(
        translation_total=translation_total,
        certification_total=certification_total,
        rush_fee=rush,
        delivery_fee=delivery,
        subtotal=subtotal,
        tax_rate=sum((to_decimal(t.rate) for t in resolved), ZERO),
        tax_amount=tax_amount,
        total=subtotal + certification_total + tax_amount,
        billable_pages=pages,
        document_count=len(lines),
    )
