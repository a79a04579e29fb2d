"""
Quote totals derived from analysis rows through the pricing calculator.
"""

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.models.tables import AIAnalysisResult, Quote
from quotedesk.pricing.calculator import DocumentLine, QuoteTotals, TaxComponent, aggregate_quote

logger = structlog.get_logger(__name__)


def quote_taxes(quote: Quote) -> list[TaxComponent]:
    return [TaxComponent(name="tax", rate=quote.tax_rate, is_compound=quote.tax_is_compound)]


async def recalculate_quote_totals(session: AsyncSession, quote: Quote) -> QuoteTotals:
    """
    Re-derive subtotal, certification, fees, tax and total from the quote's
    analysis rows. Staged on the session; the caller commits.
    """
    rows = (await session.execute(
        select(AIAnalysisResult).where(AIAnalysisResult.quote_id == quote.id)
    )).scalars().all()

    lines = [
        DocumentLine(
            billable_pages=row.billable_pages,
            line_total=row.line_total,
            certification_price=row.certification_price,
        )
        for row in rows
    ]
    totals = aggregate_quote(
        lines,
        is_rush=quote.is_rush,
        rush_fee=quote.rush_fee,
        delivery_fee=quote.delivery_fee,
        taxes=quote_taxes(quote),
    )
    word_count = sum(row.word_count or 0 for row in rows)

    quote.subtotal = totals.subtotal
    quote.certification_total = totals.certification_total
    quote.tax_amount = totals.tax_amount
    quote.total = totals.total
    quote.calculated_totals = {**totals.as_calculated_totals(), "word_count": word_count}

    logger.info(
        "quote_totals_recalculated",
        quote_id=str(quote.id),
        document_count=totals.document_count,
        total=str(totals.total),
    )
    return totals
