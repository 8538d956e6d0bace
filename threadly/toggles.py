"""Create-if-absent / delete-if-present toggles for favorites and follows."""
import logging
from typing import Type

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import NotFoundError, ProductNotFound, ValidationError
from .models import Base, Favorite, Follow, Product, User

logger = logging.getLogger(__name__)


def toggle(db: Session, model: Type[Base], **key) -> bool:
    """Flip existence of the row identified by ``key``; returns True when it now exists.

    A concurrent insert of the same row resolves to "present".
    """
    existing = db.query(model).filter_by(**key).first()
    if existing is not None:
        db.delete(existing)
        db.commit()
        return False

    db.add(model(**key))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug("%s %s created concurrently", model.__name__, key)
    return True


def is_present(db: Session, model: Type[Base], **key) -> bool:
    return db.query(model.id).filter_by(**key).first() is not None


def count(db: Session, model: Type[Base], **key) -> int:
    return int(db.query(func.count(model.id)).filter_by(**key).scalar() or 0)


# -----------------------------
# Favorites
# -----------------------------


def toggle_favorite(db: Session, user_id: int, product_id: int) -> bool:
    if db.query(Product.id).filter(Product.id == product_id).first() is None:
        raise ProductNotFound(product_id)
    return toggle(db, Favorite, user_id=user_id, product_id=product_id)


def get_favorite_products(db: Session, user_id: int, skip: int = 0, limit: int = 20):
    query = (
        db.query(Product)
        .join(Favorite, Favorite.product_id == Product.id)
        .filter(Favorite.user_id == user_id)
    )
    total = query.count()
    items = query.order_by(Favorite.created_at.desc(), Favorite.id.desc()).offset(skip).limit(limit).all()
    return items, total


# -----------------------------
# Follows
# -----------------------------


def toggle_follow(db: Session, follower_id: int, following_id: int) -> bool:
    if follower_id == following_id:
        raise ValidationError("You cannot follow yourself", code="self_follow")
    if db.query(User.id).filter(User.id == following_id).first() is None:
        raise NotFoundError(f"User with id {following_id} not found", code="user_not_found")
    return toggle(db, Follow, follower_id=follower_id, following_id=following_id)


def _follow_page(db: Session, user_id: int, joined_on, filtered_on, skip: int, limit: int):
    if db.query(User.id).filter(User.id == user_id).first() is None:
        raise NotFoundError(f"User with id {user_id} not found", code="user_not_found")
    query = (
        db.query(User, Follow.created_at)
        .join(Follow, joined_on == User.id)
        .filter(filtered_on == user_id)
    )
    total = query.count()
    rows = query.order_by(Follow.created_at.desc(), Follow.id.desc()).offset(skip).limit(limit).all()
    return rows, total


def get_following(db: Session, user_id: int, skip: int = 0, limit: int = 20):
    """Users ``user_id`` follows, most recent first, as (user, followed_at) rows."""
    return _follow_page(db, user_id, Follow.following_id, Follow.follower_id, skip, limit)


def get_followers(db: Session, user_id: int, skip: int = 0, limit: int = 20):
    return _follow_page(db, user_id, Follow.follower_id, Follow.following_id, skip, limit)
