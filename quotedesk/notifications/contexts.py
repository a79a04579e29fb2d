"""
Template contexts built from ORM rows.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.models.tables import Customer, Quote, as_utc


class Recipient:
    __slots__ = ("email", "name")

    def __init__(self, email: Optional[str], name: Optional[str]):
        self.email = email
        self.name = name


async def quote_recipient(session: AsyncSession, quote: Quote) -> Recipient:
    if quote.customer_id is None:
        return Recipient(None, None)
    customer = await session.get(Customer, quote.customer_id)
    if customer is None:
        return Recipient(None, None)
    return Recipient(customer.email, customer.full_name)


def quote_context(quote: Quote, recipient: Optional[Recipient] = None, **extra) -> dict:
    totals = quote.calculated_totals or {}
    expires_at = as_utc(quote.expires_at)
    context = {
        "quote_id": str(quote.id),
        "quote_number": quote.quote_number,
        "customer_name": recipient.name if recipient else None,
        "total": f"{quote.total:.2f}",
        "billable_pages": totals.get("billable_pages"),
        "document_count": totals.get("document_count"),
        "expires_at": expires_at.strftime("%B %d, %Y") if expires_at else None,
    }
    context.update(extra)
    return context
