"""
Order state machine.

    PENDING --(payment confirmed)--> PAID --(seller ships)--> SHIPPED --(confirm)--> DELIVERED
    PENDING|PAID --(payment failed, expiry, buyer/seller/admin)--> CANCELLED

Every transition is a conditional UPDATE on the order's current status, so a
lost race shows up as zero updated rows and is reported as a conflict.
"""
import datetime as dt
import logging
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud
from .errors import AuthorizationError, InvalidTransition, NotFoundError
from .messaging import EventPublisher
from .models import (
    Order,
    OrderStatus,
    Payment,
    ProcessedPaymentEvent,
    Product,
    ProductStatus,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = (OrderStatus.PENDING, OrderStatus.PAID)

# product status a cancelled order leaves behind it
_HELD_PRODUCT_STATUS = {
    OrderStatus.PENDING: ProductStatus.RESERVED,
    OrderStatus.PAID: ProductStatus.SOLD,
}


# -----------------------------
# Lookups
# -----------------------------


def get_order_or_404(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if order is None:
        raise NotFoundError(f"Order with id {order_id} not found", code="order_not_found")
    return order


def get_order_for_user(db: Session, order_id: int, user: User) -> Order:
    order = get_order_or_404(db, order_id)
    if user.id not in (order.buyer_id, order.seller_id) and not user.is_admin:
        raise AuthorizationError("You do not have access to this order")
    return order


def list_orders(
    db: Session,
    user_id: int,
    role: Optional[str] = None,
    status: Optional[OrderStatus] = None,
    skip: int = 0,
    limit: int = 20,
) -> Tuple[List[Order], int]:
    query = db.query(Order)
    if role == "buyer":
        query = query.filter(Order.buyer_id == user_id)
    elif role == "seller":
        query = query.filter(Order.seller_id == user_id)
    else:
        query = query.filter(or_(Order.buyer_id == user_id, Order.seller_id == user_id))
    if status is not None:
        query = query.filter(Order.status == status)
    total = query.count()
    items = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(skip).limit(limit).all()
    return items, total


# -----------------------------
# Transitions
# -----------------------------


def _move(db: Session, order: Order, source: OrderStatus, target: OrderStatus, values: dict) -> bool:
    """Conditional UPDATE source -> target; the caller owns the commit."""
    updated = (
        db.query(Order)
        .filter(Order.id == order.id, Order.status == source)
        .update({Order.status: target, **values}, synchronize_session=False)
    )
    return updated > 0


def _lost_race(db: Session, order: Order, target: OrderStatus) -> InvalidTransition:
    db.rollback()
    db.refresh(order)
    return InvalidTransition(order.id, order.status.value, target.value)


def _cancel(db: Session, order: Order, reason: Optional[str]) -> bool:
    """Cancel a PENDING or PAID order and release its product.

    Returns False when the order was already CANCELLED. Pending work already
    in ``db`` (e.g. a claimed payment event) commits together with the
    cancellation.
    """
    if order.status == OrderStatus.CANCELLED:
        return False
    previous = order.status
    if previous not in CANCELLABLE_STATUSES:
        raise InvalidTransition(order.id, previous.value, OrderStatus.CANCELLED.value)

    moved = _move(
        db,
        order,
        previous,
        OrderStatus.CANCELLED,
        {Order.cancelled_at: utcnow(), Order.cancellation_reason: reason},
    )
    if not moved:
        error = _lost_race(db, order, OrderStatus.CANCELLED)
        if order.status == OrderStatus.CANCELLED:
            return False
        raise error

    held = _HELD_PRODUCT_STATUS[previous]
    released = (
        db.query(Product)
        .filter(Product.id == order.product_id, Product.status == held)
        .update({Product.status: ProductStatus.AVAILABLE}, synchronize_session=False)
    )
    db.commit()
    db.refresh(order)

    if released == 0:
        product = crud.get_product(db, order.product_id)
        found = product.status.value if product is not None else "missing"
        crud.record_inconsistency(
            db,
            kind="release_skipped",
            detail=f"cancelled order expected product {held.value}, found {found}; left untouched",
            order_id=order.id,
            product_id=order.product_id,
        )
    if previous == OrderStatus.PAID:
        logger.warning("Order %s cancelled after payment; refund required", order.id)
    logger.info("Order %s cancelled (was %s): %s", order.id, previous.value, reason)
    return True


def cancel(db: Session, order_id: int, actor: User, reason: Optional[str] = None) -> Tuple[Order, bool]:
    """Cancel on behalf of the buyer, the seller or an admin.

    Cancelling an order that is already CANCELLED returns it unchanged.
    """
    order = get_order_or_404(db, order_id)
    if actor.id not in (order.buyer_id, order.seller_id) and not actor.is_admin:
        raise AuthorizationError("Only the buyer, the seller or an admin can cancel this order")
    changed = _cancel(db, order, reason)
    return order, changed


def ship(
    db: Session,
    order_id: int,
    actor: User,
    tracking_number: Optional[str] = None,
    carrier: Optional[str] = None,
) -> Order:
    order = get_order_or_404(db, order_id)
    if actor.id != order.seller_id:
        raise AuthorizationError("Only the seller can ship this order")
    if order.status != OrderStatus.PAID:
        raise InvalidTransition(order.id, order.status.value, OrderStatus.SHIPPED.value)

    values = {Order.shipped_at: utcnow()}
    if tracking_number:
        values[Order.tracking_number] = tracking_number
    if carrier:
        values[Order.carrier] = carrier
    if not _move(db, order, OrderStatus.PAID, OrderStatus.SHIPPED, values):
        raise _lost_race(db, order, OrderStatus.SHIPPED)
    db.commit()
    db.refresh(order)
    logger.info("Order %s shipped (tracking=%s)", order.id, tracking_number)
    return order


def deliver(db: Session, order_id: int, actor: User) -> Order:
    order = get_order_or_404(db, order_id)
    if actor.id not in (order.buyer_id, order.seller_id):
        raise AuthorizationError("Only the buyer or the seller can confirm delivery")
    if order.status != OrderStatus.SHIPPED:
        raise InvalidTransition(order.id, order.status.value, OrderStatus.DELIVERED.value)

    if not _move(db, order, OrderStatus.SHIPPED, OrderStatus.DELIVERED, {Order.delivered_at: utcnow()}):
        raise _lost_race(db, order, OrderStatus.DELIVERED)
    db.commit()
    db.refresh(order)
    logger.info("Order %s delivered", order.id)
    return order


# -----------------------------
# Payment callbacks
# -----------------------------


def _claim_event(db: Session, order_id: int, event_id: str, event_type: str) -> bool:
    """Add the event to the ledger inside the current transaction; False if already applied."""
    db.add(ProcessedPaymentEvent(order_id=order_id, event_id=event_id, event_type=event_type))
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        return False
    return True


def _settle_without_transition(db: Session, order: Order, event_id: str, event_type: str) -> None:
    if not _claim_event(db, order.id, event_id, event_type):
        return
    db.commit()
    if order.status == OrderStatus.CANCELLED and event_type == "payment_intent.succeeded":
        crud.record_inconsistency(
            db,
            kind="payment_for_cancelled_order",
            detail=f"payment captured for cancelled order (event {event_id}); refund required",
            order_id=order.id,
            product_id=order.product_id,
        )
    else:
        logger.info("Ignoring %s %s for order %s in status %s", event_type, event_id, order.id, order.status.value)


def confirm_payment(
    db: Session,
    order_id: int,
    event_id: str,
    payment_id: str,
    amount: Optional[int] = None,
) -> Tuple[Order, bool]:
    """Apply a payment confirmation at most once per (order_id, event_id).

    Returns the order and whether it moved to PAID.
    """
    event_type = "payment_intent.succeeded"
    order = get_order_or_404(db, order_id)

    if order.status != OrderStatus.PENDING:
        _settle_without_transition(db, order, event_id, event_type)
        return order, False

    if not _claim_event(db, order.id, event_id, event_type):
        logger.info("Duplicate payment event %s for order %s", event_id, order.id)
        db.refresh(order)
        return order, False

    captured = order.amount if amount is None else int(amount)
    moved = _move(
        db,
        order,
        OrderStatus.PENDING,
        OrderStatus.PAID,
        {Order.paid_at: utcnow(), Order.payment_intent_id: payment_id},
    )
    if not moved:
        # cancelled or confirmed concurrently; re-run against the current status
        db.rollback()
        db.refresh(order)
        _settle_without_transition(db, order, event_id, event_type)
        return order, False

    sold = (
        db.query(Product)
        .filter(Product.id == order.product_id, Product.status == ProductStatus.RESERVED)
        .update({Product.status: ProductStatus.SOLD}, synchronize_session=False)
    )
    db.add(Payment(order_id=order.id, stripe_payment_id=payment_id, amount=captured, status="completed"))
    db.commit()
    db.refresh(order)

    if sold == 0:
        crud.record_inconsistency(
            db,
            kind="product_not_reserved",
            detail="paid order's product was not RESERVED; left untouched",
            order_id=order.id,
            product_id=order.product_id,
        )
    if captured != order.amount:
        crud.record_inconsistency(
            db,
            kind="amount_mismatch",
            detail=f"captured {captured}, order amount {order.amount}",
            order_id=order.id,
            product_id=order.product_id,
        )
    logger.info("Order %s paid (payment=%s)", order.id, payment_id)
    return order, True


def fail_payment(
    db: Session,
    order_id: int,
    event_id: str,
    reason: Optional[str] = None,
    event_type: str = "payment_intent.payment_failed",
) -> Tuple[Order, bool]:
    """Cancel a PENDING order whose payment failed; ignored in any other status."""
    order = get_order_or_404(db, order_id)
    if order.status != OrderStatus.PENDING:
        _settle_without_transition(db, order, event_id, event_type)
        return order, False

    if not _claim_event(db, order.id, event_id, event_type):
        db.refresh(order)
        return order, False
    try:
        changed = _cancel(db, order, reason or "Payment failed")
    except InvalidTransition:
        # paid concurrently; the failure is stale
        _settle_without_transition(db, order, event_id, event_type)
        return order, False
    if not changed:
        # cancelled concurrently; the lost race rolled back the claim
        _settle_without_transition(db, order, event_id, event_type)
    return order, changed


# -----------------------------
# Stale checkout sweep
# -----------------------------


def cancel_stale_orders(
    db: Session,
    max_age: dt.timedelta,
    now: Optional[dt.datetime] = None,
) -> List[int]:
    """Cancel PENDING orders created before ``now - max_age``; returns the ids cancelled."""
    cutoff = (now or utcnow()) - max_age
    stale_ids = [
        row.id
        for row in db.query(Order.id)
        .filter(Order.status == OrderStatus.PENDING, Order.created_at < cutoff)
        .order_by(Order.id)
        .all()
    ]

    cancelled = []
    for order_id in stale_ids:
        order = get_order_or_404(db, order_id)
        try:
            if _cancel(db, order, "Checkout expired"):
                cancelled.append(order_id)
        except InvalidTransition:
            logger.info("Stale order %s changed status during sweep, skipping", order_id)
    if cancelled:
        logger.info("Cancelled %d stale pending orders", len(cancelled))
    return cancelled


# -----------------------------
# Notifications
# -----------------------------


def notify_status_change(publisher: EventPublisher, order: Order, previous: Optional[str] = None) -> None:
    for user_id in (order.buyer_id, order.seller_id):
        publisher.notify_user(
            user_id,
            "order.status_changed",
            order_id=order.id,
            product_id=order.product_id,
            status=order.status.value,
            previous_status=previous,
        )
