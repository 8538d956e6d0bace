import datetime as dt
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.orm import Session

from .. import orders, reservations, schemas
from ..auth import get_current_admin, get_current_user
from ..config import Settings, get_settings
from ..database import get_db
from ..dependencies import get_gateway, get_publisher
from ..errors import DependencyError
from ..messaging import EventPublisher
from ..models import OrderStatus, User
from ..payments import StripeGateway

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


@router.post("/checkout", response_model=schemas.Envelope[schemas.CheckoutOut], status_code=status.HTTP_201_CREATED)
def checkout(
    body: schemas.CheckoutRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Reserve the product and open a payment intent for it.

    The order stays PENDING until the payment webhook confirms it. If the
    payment intent cannot be created the reservation is undone.
    """
    order, product = reservations.reserve(
        db,
        product_id=body.product_id,
        buyer_id=current_user.id,
        shipping_address_id=body.shipping_address_id,
    )

    try:
        intent = gateway.create_checkout_intent(
            amount=order.amount,
            metadata={
                "order_id": order.id,
                "buyer_id": order.buyer_id,
                "product_id": order.product_id,
            },
            destination_account=order.seller.stripe_account_id,
        )
    except DependencyError:
        orders.cancel(db, order.id, current_user, reason="Payment intent creation failed")
        raise

    order.payment_intent_id = intent.intent_id
    db.commit()
    db.refresh(order)
    db.refresh(product)

    publisher.notify_user(
        order.seller_id,
        "order.created",
        order_id=order.id,
        product_id=order.product_id,
        buyer_id=order.buyer_id,
        amount=order.amount,
    )
    return {
        "success": True,
        "data": {
            "order": order,
            "product": product,
            "client_secret": intent.client_secret,
            "payment_intent_id": intent.intent_id,
        },
    }


@router.get("", response_model=schemas.Envelope[schemas.Page[schemas.OrderOut]])
def list_orders(
    role: Optional[Literal["buyer", "seller"]] = Query(None),
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items, total = orders.list_orders(
        db,
        user_id=current_user.id,
        role=role,
        status=order_status,
        skip=skip,
        limit=limit,
    )
    return {
        "success": True,
        "data": {"items": items, "pagination": {"total": total, "skip": skip, "limit": limit}},
    }


@router.post("/sweep", response_model=schemas.Envelope[schemas.SweepOut])
def sweep_stale_orders(
    body: Optional[schemas.SweepRequest] = Body(None),
    current_admin: User = Depends(get_current_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Cancel checkouts left PENDING past the payment window. Meant for an external scheduler."""
    minutes = (body.max_age_minutes if body else None) or settings.pending_order_ttl_minutes
    cancelled_ids = orders.cancel_stale_orders(db, max_age=dt.timedelta(minutes=minutes))
    for order_id in cancelled_ids:
        orders.notify_status_change(publisher, orders.get_order_or_404(db, order_id), OrderStatus.PENDING.value)
    return {"success": True, "data": {"cancelled_order_ids": cancelled_ids}}


@router.get("/{order_id}", response_model=schemas.Envelope[schemas.OrderOut])
def get_order(
    order_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    order = orders.get_order_for_user(db, order_id, current_user)
    return {"success": True, "data": order}


@router.post("/{order_id}/ship", response_model=schemas.Envelope[schemas.OrderOut])
def ship_order(
    order_id: int,
    body: Optional[schemas.ShipRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    order = orders.ship(
        db,
        order_id,
        current_user,
        tracking_number=body.tracking_number if body else None,
        carrier=body.carrier if body else None,
    )
    orders.notify_status_change(publisher, order, OrderStatus.PAID.value)
    return {"success": True, "data": order, "message": "Order marked as shipped"}


@router.post("/{order_id}/deliver", response_model=schemas.Envelope[schemas.OrderOut])
def deliver_order(
    order_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    order = orders.deliver(db, order_id, current_user)
    orders.notify_status_change(publisher, order, OrderStatus.SHIPPED.value)
    return {"success": True, "data": order, "message": "Order marked as delivered"}


@router.post("/{order_id}/cancel", response_model=schemas.Envelope[schemas.OrderOut])
def cancel_order(
    order_id: int,
    body: Optional[schemas.CancelRequest] = Body(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    previous = orders.get_order_or_404(db, order_id).status.value
    order, changed = orders.cancel(db, order_id, current_user, reason=body.reason if body else None)
    if not changed:
        return {"success": True, "data": order, "message": "Order already cancelled"}
    orders.notify_status_change(publisher, order, previous)
    return {"success": True, "data": order, "message": "Order cancelled"}
