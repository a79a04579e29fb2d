"""
/api/v1/orders endpoints.
Staff cancellation with refund handling.
"""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.dependencies import get_db, get_dispatcher, get_stripe_client, verify_api_key
from quotedesk.errors import ValidationFailed
from quotedesk.notifications.dispatcher import NotificationDispatcher
from quotedesk.orders.cancellation import CancellationRequest, cancel_order
from quotedesk.payments.stripe_client import StripeClient
from quotedesk.schemas.orders import CancelOrderRequest, CancelOrderResponse

router = APIRouter(prefix="/api/v1/orders", tags=["orders"], dependencies=[Depends(verify_api_key)])


@router.post("/{order_id}/cancel", response_model=CancelOrderResponse)
async def cancel(
    order_id: uuid.UUID,
    body: CancelOrderRequest,
    session: AsyncSession = Depends(get_db),
    stripe: StripeClient = Depends(get_stripe_client),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Cancel an order and refund it.
    The cancellation is recorded before any refund call; a gateway failure
    comes back as refundStatus "failed" with stripeError, not as an HTTP error.
    """
    if body.order_id is not None and body.order_id != order_id:
        raise ValidationFailed("orderId in body does not match the URL")

    req = CancellationRequest(order_id=order_id, **body.model_dump(exclude={"order_id"}))
    result = await cancel_order(session, req, stripe=stripe, dispatcher=dispatcher)
    return CancelOrderResponse.model_validate(result.model_dump())
