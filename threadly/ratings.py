import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import AlreadyReviewed, AuthorizationError, ValidationError
from .models import Order, OrderStatus, Review, User
from .orders import get_order_or_404

logger = logging.getLogger(__name__)


def mean_rating(ratings: Iterable[int]) -> Optional[Decimal]:
    """Arithmetic mean rounded half-up to one decimal; None for no ratings."""
    values = [int(r) for r in ratings]
    if not values:
        return None
    mean = Decimal(sum(values)) / Decimal(len(values))
    return mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


def recompute_rating(db: Session, seller_id: int) -> Optional[Decimal]:
    """Recalculate the seller's average from every review; the caller commits."""
    ratings = [row.rating for row in db.query(Review.rating).filter(Review.reviewed_id == seller_id).all()]
    average = mean_rating(ratings)
    db.query(User).filter(User.id == seller_id).update({User.average_rating: average}, synchronize_session=False)
    return average


def create_review(
    db: Session,
    reviewer: User,
    order_id: int,
    rating: int,
    comment: Optional[str] = None,
) -> Review:
    order = get_order_or_404(db, order_id)
    if order.buyer_id != reviewer.id:
        raise AuthorizationError("Only the buyer can review this order")
    if order.status != OrderStatus.DELIVERED:
        raise ValidationError(
            "Can only review delivered orders",
            code="order_not_delivered",
            details={"order_id": order.id, "status": order.status.value},
        )
    if db.query(Review.id).filter(Review.order_id == order.id).first() is not None:
        raise AlreadyReviewed(order.id)

    review = Review(
        order_id=order.id,
        reviewer_id=reviewer.id,
        reviewed_id=order.seller_id,
        rating=rating,
        comment=comment,
    )
    db.add(review)
    try:
        db.flush()
        average = recompute_rating(db, order.seller_id)
        db.commit()
    except IntegrityError as e:
        # concurrent review for the same order
        db.rollback()
        raise AlreadyReviewed(order.id) from e

    db.refresh(review)
    logger.info("Review %s on order %s; seller %s now rated %s", review.id, order.id, order.seller_id, average)
    return review


def list_reviews(
    db: Session,
    seller_id: Optional[int] = None,
    product_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 20,
) -> Tuple[List[Review], int, Optional[Decimal]]:
    if seller_id is None and product_id is None:
        raise ValidationError("Either seller_id or product_id is required", code="missing_filter")

    query = db.query(Review)
    if seller_id is not None:
        query = query.filter(Review.reviewed_id == seller_id)
    if product_id is not None:
        query = query.join(Order, Order.id == Review.order_id).filter(Order.product_id == product_id)

    total = query.count()
    items = query.order_by(Review.created_at.desc(), Review.id.desc()).offset(skip).limit(limit).all()
    average = mean_rating(r.rating for r in query.with_entities(Review.rating).all())
    return items, total, average
