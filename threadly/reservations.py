"""
Reservation guard.

Flips a product from AVAILABLE to RESERVED with a single conditional UPDATE
and creates the PENDING order in the same transaction. A failure after the
flip rolls both back; if the product still ends up RESERVED without a live
order it is released by a compensating conditional UPDATE, and if that fails
too the problem is written to the inconsistency log.
"""
import logging
from typing import Optional, Tuple

from sqlalchemy import exists
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .errors import NotAvailable, SelfPurchase
from .models import LIVE_ORDER_STATUSES, Order, OrderStatus, Product, ProductStatus

logger = logging.getLogger(__name__)


def reserve(
    db: Session,
    product_id: int,
    buyer_id: int,
    shipping_address_id: Optional[int] = None,
) -> Tuple[Order, Product]:
    """Reserve ``product_id`` for ``buyer_id`` and open a PENDING order for it.

    Raises ProductNotFound, SelfPurchase, NotAvailable, or NotFoundError for a
    shipping address the buyer does not own. Nothing is written when any of
    them is raised.
    """
    product = crud.get_product_or_404(db, product_id)
    if product.seller_id == buyer_id:
        raise SelfPurchase(product_id)
    if shipping_address_id is not None:
        crud.get_user_address(db, buyer_id, shipping_address_id)

    flipped = (
        db.query(Product)
        .filter(Product.id == product_id, Product.status == ProductStatus.AVAILABLE)
        .update({Product.status: ProductStatus.RESERVED}, synchronize_session=False)
    )
    if flipped == 0:
        db.rollback()
        db.refresh(product)
        logger.info("Product %s not available for buyer %s (%s)", product_id, buyer_id, product.status.value)
        raise NotAvailable(product_id, product.status.value)

    try:
        # price read under the reservation so the snapshot matches what was reserved
        db.refresh(product)
        order = Order(
            buyer_id=buyer_id,
            seller_id=product.seller_id,
            product_id=product.id,
            amount=product.price,
            status=OrderStatus.PENDING,
            shipping_address_id=shipping_address_id,
        )
        db.add(order)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        _compensate(db, product_id, str(e.orig))
        # another live order already holds the product
        raise NotAvailable(product_id) from e
    except SQLAlchemyError as e:
        db.rollback()
        _compensate(db, product_id, str(e))
        raise

    db.refresh(order)
    db.refresh(product)
    logger.info("Order %s reserved product %s for buyer %s (amount=%s)", order.id, product_id, buyer_id, order.amount)
    return order, product


def release_unbacked_reservation(db: Session, product_id: int) -> bool:
    """RESERVED -> AVAILABLE, only when no live order references the product."""
    live_order = exists().where(
        Order.product_id == product_id,
        Order.status.in_(LIVE_ORDER_STATUSES),
    )
    released = (
        db.query(Product)
        .filter(
            Product.id == product_id,
            Product.status == ProductStatus.RESERVED,
            ~live_order,
        )
        .update({Product.status: ProductStatus.AVAILABLE}, synchronize_session=False)
    )
    db.commit()
    return released > 0


def _compensate(db: Session, product_id: int, reason: str) -> None:
    try:
        if release_unbacked_reservation(db, product_id):
            logger.warning("Released stranded reservation on product %s after failure: %s", product_id, reason)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Compensation failed for product %s", product_id)
        try:
            crud.record_inconsistency(
                db,
                kind="reservation_compensation_failed",
                detail=f"{reason}; release failed: {e}",
                product_id=product_id,
            )
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not record inconsistency for product %s", product_id)
