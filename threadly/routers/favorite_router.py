from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import crud, schemas, toggles
from ..auth import get_current_user
from ..database import get_db
from ..dependencies import get_publisher
from ..messaging import EventPublisher
from ..models import Favorite, User

router = APIRouter(
    prefix="/favorites",
    tags=["Favorites"]
)


@router.get("", response_model=schemas.Envelope[schemas.Page[schemas.ProductOut]])
def list_favorites(
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    items, total = toggles.get_favorite_products(db, current_user.id, skip=skip, limit=limit)
    return {
        "success": True,
        "data": {"items": items, "pagination": {"total": total, "skip": skip, "limit": limit}},
    }


@router.post("", response_model=schemas.Envelope[schemas.FavoriteStateOut])
def toggle_favorite(
    body: schemas.FavoriteToggle,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    favorited = toggles.toggle_favorite(db, current_user.id, body.product_id)
    if favorited:
        product = crud.get_product(db, body.product_id)
        if product.seller_id != current_user.id:
            publisher.notify_user(
                product.seller_id,
                "favorite.created",
                product_id=product.id,
                by_user_id=current_user.id,
            )
    return {
        "success": True,
        "data": {
            "product_id": body.product_id,
            "favorited": favorited,
            "favorites": crud.count_favorites(db, body.product_id),
        },
        "message": "Added to favorites" if favorited else "Removed from favorites",
    }


@router.get("/{product_id}", response_model=schemas.Envelope[schemas.FavoriteStateOut])
def favorite_status(
    product_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    crud.get_product_or_404(db, product_id)
    return {
        "success": True,
        "data": {
            "product_id": product_id,
            "favorited": toggles.is_present(db, Favorite, user_id=current_user.id, product_id=product_id),
            "favorites": crud.count_favorites(db, product_id),
        },
    }
