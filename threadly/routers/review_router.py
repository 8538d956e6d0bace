from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import ratings, schemas
from ..auth import get_current_user
from ..cache import ProfileCache
from ..database import get_db
from ..dependencies import get_cache, get_publisher
from ..messaging import EventPublisher
from ..models import User

router = APIRouter(
    prefix="/reviews",
    tags=["Reviews"]
)


@router.get("", response_model=schemas.Envelope[schemas.ReviewListOut])
def list_reviews(
    seller_id: Optional[int] = Query(None, gt=0),
    product_id: Optional[int] = Query(None, gt=0),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total, average = ratings.list_reviews(
        db,
        seller_id=seller_id,
        product_id=product_id,
        skip=skip,
        limit=limit,
    )
    return {
        "success": True,
        "data": {
            "items": items,
            "pagination": {"total": total, "skip": skip, "limit": limit},
            "average_rating": float(average) if average is not None else None,
        },
    }


@router.post("", response_model=schemas.Envelope[schemas.ReviewOut], status_code=status.HTTP_201_CREATED)
def create_review(
    review: schemas.ReviewCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: Optional[ProfileCache] = Depends(get_cache),
    publisher: EventPublisher = Depends(get_publisher),
):
    """Review a delivered order. One review per order, by its buyer only."""
    db_review = ratings.create_review(
        db,
        reviewer=current_user,
        order_id=review.order_id,
        rating=review.rating,
        comment=review.comment,
    )
    if cache is not None:
        cache.invalidate_user(db_review.reviewed_id)
    publisher.notify_user(
        db_review.reviewed_id,
        "review.created",
        review_id=db_review.id,
        order_id=db_review.order_id,
        reviewer_id=db_review.reviewer_id,
        rating=db_review.rating,
    )
    return {"success": True, "data": db_review, "message": "Review submitted successfully"}
