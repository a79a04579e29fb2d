"""
Tests for the billable-pages pricing calculator.
"""

from decimal import Decimal

import pytest

from quotedesk.errors import ValidationFailed
from quotedesk.pricing.calculator import (
    DocumentLine,
    TaxComponent,
    aggregate_quote,
    billable_pages,
    ceil_to_step,
    complexity_multiplier,
    compute_pricing,
    compute_tax,
)


class TestCeilToStep:
    """Billable pages always round up to the step."""

    def test_rounds_up_to_cent(self):
        assert ceil_to_step(Decimal("4.4444"), Decimal("0.01")) == Decimal("4.45")

    def test_exact_value_unchanged(self):
        assert ceil_to_step(Decimal("2.3"), Decimal("0.01")) == Decimal("2.30")

    def test_coarser_step(self):
        assert ceil_to_step(Decimal("4.4444"), Decimal("0.25")) == Decimal("4.50")

    def test_non_positive_step_rejected(self):
        with pytest.raises(ValidationFailed):
            ceil_to_step(Decimal("1"), Decimal("0"))


class TestComplexityMultiplier:

    def test_configured_table(self):
        assert complexity_multiplier("easy") == Decimal("1.0")
        assert complexity_multiplier("medium") == Decimal("1.15")
        assert complexity_multiplier("hard") == Decimal("1.25")

    def test_case_and_whitespace_insensitive(self):
        assert complexity_multiplier("  Hard ") == Decimal("1.25")

    def test_unknown_complexity_rejected(self):
        with pytest.raises(ValidationFailed):
            complexity_multiplier("extreme")

    def test_override_table(self):
        assert complexity_multiplier("hard", {"hard": "1.5"}) == Decimal("1.5")


class TestBillablePages:

    def test_medium_450_words_is_exactly_2_3_pages(self):
        assert billable_pages(450, Decimal("1.15")) == Decimal("2.30")

    def test_easy_1000_words(self):
        assert billable_pages(1000, Decimal("1.0")) == Decimal("4.45")

    def test_zero_words(self):
        assert billable_pages(0, Decimal("1.25")) == Decimal("0.00")

    def test_negative_words_rejected(self):
        with pytest.raises(ValidationFailed):
            billable_pages(-1, Decimal("1.0"))

    def test_custom_words_per_page(self):
        assert billable_pages(500, Decimal("1.0"), words_per_page=250) == Decimal("2.00")


class TestComputeTax:

    def test_simple_rate(self):
        assert compute_tax(Decimal("289.25"), [TaxComponent(rate=Decimal("0.05"))]) == Decimal("14.46")

    def test_compound_tax_applies_on_prior_taxes(self):
        taxes = [
            TaxComponent(name="gst", rate=Decimal("0.05")),
            TaxComponent(name="qst", rate=Decimal("0.09975"), is_compound=True),
        ]
        # 5.00 + 105.00 * 0.09975 = 15.47375
        assert compute_tax(Decimal("100.00"), taxes) == Decimal("15.47")

    def test_no_taxes(self):
        assert compute_tax(Decimal("100.00"), []) == Decimal("0.00")


class TestComputePricing:

    def test_reference_document(self):
        price = compute_pricing(1000, "easy", base_rate=65, tax_rate="0.05")
        assert price.billable_pages == Decimal("4.45")
        assert price.translation_line_total == Decimal("289.25")
        assert price.tax_amount == Decimal("14.46")
        assert price.total == Decimal("303.71")

    def test_medium_document_line_total(self):
        price = compute_pricing(450, "medium", base_rate=Decimal("65.00"), tax_rate=0)
        assert price.billable_pages == Decimal("2.30")
        assert price.translation_line_total == Decimal("149.50")
        assert price.total == Decimal("149.50")

    def test_fees_and_certification(self):
        price = compute_pricing(
            1000, "easy",
            base_rate=65, certification_price=50, is_rush=True, rush_fee=25,
            delivery_fee=10, tax_rate="0.05",
        )
        assert price.subtotal == Decimal("374.25")
        assert price.tax_amount == Decimal("18.71")
        assert price.total == Decimal("392.96")

    def test_rush_fee_ignored_when_not_rush(self):
        price = compute_pricing(225, "easy", base_rate=65, rush_fee=25, tax_rate=0)
        assert price.rush_fee == Decimal("0.00")
        assert price.total == Decimal("65.00")

    def test_default_rate_and_tax_from_settings(self):
        price = compute_pricing(1000, "easy")
        assert price.base_rate == Decimal("65.00")
        assert price.total == Decimal("303.71")

    def test_deterministic(self):
        first = compute_pricing(777, "hard", base_rate="72.50", tax_rate="0.13")
        second = compute_pricing(777, "hard", base_rate="72.50", tax_rate="0.13")
        assert first == second

    def test_float_inputs_do_not_leak_binary_noise(self):
        price = compute_pricing(1000, "easy", base_rate=65.0, tax_rate=0.05)
        assert price.total == Decimal("303.71")


class TestAggregateQuote:

    def test_sums_lines_and_taxes_once(self):
        lines = [
            DocumentLine(billable_pages=Decimal("4.45"), line_total=Decimal("289.25")),
            DocumentLine(
                billable_pages=Decimal("2.30"), line_total=Decimal("149.50"),
                certification_price=Decimal("40.00"),
            ),
        ]
        totals = aggregate_quote(lines, delivery_fee="10.00", tax_rate="0.05")
        assert totals.translation_total == Decimal("438.75")
        assert totals.certification_total == Decimal("40.00")
        assert totals.subtotal == Decimal("448.75")
        assert totals.tax_amount == Decimal("24.44")
        assert totals.total == Decimal("513.19")
        assert totals.billable_pages == Decimal("6.75")
        assert totals.document_count == 2

    def test_total_identity(self):
        lines = [DocumentLine(billable_pages=Decimal("1.00"), line_total=Decimal("65.00"), certification_price=Decimal("35.00"))]
        totals = aggregate_quote(lines, is_rush=True, rush_fee="20.00", tax_rate="0.13")
        assert totals.total == totals.subtotal + totals.certification_total + totals.tax_amount

    def test_empty_quote(self):
        totals = aggregate_quote([], tax_rate="0.05")
        assert totals.total == Decimal("0.00")
        assert totals.document_count == 0

    def test_calculated_totals_are_json_safe(self):
        totals = aggregate_quote([DocumentLine(billable_pages=Decimal("1.00"), line_total=Decimal("65.00"))], tax_rate="0.05")
        data = totals.as_calculated_totals()
        assert data["total"] == "68.25"
        assert data["document_count"] == 1
