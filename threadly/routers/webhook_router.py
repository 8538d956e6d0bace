import logging

from fastapi import APIRouter, Depends, Header
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from .. import orders, schemas
from ..database import get_db
from ..dependencies import get_gateway, get_publisher, raw_body
from ..errors import NotFoundError, ValidationError
from ..messaging import EventPublisher
from ..models import OrderStatus
from ..payments import StripeGateway

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/webhooks",
    tags=["Webhooks"]
)


@router.post("/payments", response_model=schemas.WebhookAck)
def payment_webhook(
    payload: bytes = Depends(raw_body),
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Stripe calls this. Delivery is at-least-once and unordered; every branch is safe to replay."""
    raw_event = gateway.construct_event(payload, stripe_signature)

    event_type = raw_event.get("type")
    event_id = raw_event.get("id")
    if event_type not in schemas.HANDLED_PAYMENT_EVENTS:
        logger.info("Ignoring unhandled Stripe event %s (%s)", event_id, event_type)
        return {"received": True, "handled": False, "event_id": event_id, "detail": "ignored"}

    try:
        event = schemas.payment_event_adapter.validate_python(raw_event)
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed payment event",
            code="invalid_payload",
            details=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e

    intent = event.data.object
    order_id = intent.metadata.order_id
    if order_id is None:
        logger.warning("Payment event %s has no order_id metadata", event.id)
        return {"received": True, "handled": False, "event_id": event.id, "detail": "no order metadata"}

    try:
        if isinstance(event, schemas.PaymentSucceededEvent):
            amount = intent.amount_received if intent.amount_received is not None else intent.amount
            order, changed = orders.confirm_payment(
                db,
                order_id=order_id,
                event_id=event.id,
                payment_id=intent.id,
                amount=amount,
            )
        else:
            reason = intent.last_payment_error.message if intent.last_payment_error else None
            order, changed = orders.fail_payment(
                db,
                order_id=order_id,
                event_id=event.id,
                reason=reason,
                event_type=event.type,
            )
    except NotFoundError:
        # acknowledge so the provider stops retrying an event we can never apply
        logger.warning("Payment event %s references unknown order %s", event.id, order_id)
        return {"received": True, "handled": False, "event_id": event.id, "detail": "unknown order"}

    if changed:
        orders.notify_status_change(publisher, order, OrderStatus.PENDING.value)
    return {
        "received": True,
        "handled": changed,
        "event_id": event.id,
        "detail": order.status.value,
    }
