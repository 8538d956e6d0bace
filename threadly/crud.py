import logging
from typing import List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import ConflictError, NotFoundError, ProductNotFound
from .models import (
    Address,
    Favorite,
    Follow,
    InconsistencyEvent,
    Order,
    OrderStatus,
    Product,
    ProductStatus,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)


# -----------------------------
# Users
# -----------------------------


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_clerk_id(db: Session, clerk_id: str) -> Optional[User]:
    return db.query(User).filter(User.clerk_id == clerk_id).first()


def upsert_user_from_identity(db: Session, clerk_id: str, profile: dict) -> User:
    """Map an identity-provider subject to an internal user, creating it on first sight.

    The very first user ever created becomes an admin.
    """
    user = get_user_by_clerk_id(db, clerk_id)
    if user is None:
        is_first_user = db.query(User.id).first() is None
        user = User(
            clerk_id=clerk_id,
            email=profile.get("email"),
            first_name=profile.get("first_name"),
            last_name=profile.get("last_name"),
            image_url=profile.get("image_url"),
            role=UserRole.ADMIN if is_first_user else UserRole.USER,
        )
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            # concurrent first request for the same subject
            db.rollback()
            user = get_user_by_clerk_id(db, clerk_id)
            if user is None:
                raise
            return user
        db.refresh(user)
        logger.info("Created user %s for identity %s", user.id, clerk_id)
        return user

    changed = False
    for field in ("email", "first_name", "last_name", "image_url"):
        value = profile.get(field)
        if value and getattr(user, field) != value:
            setattr(user, field, value)
            changed = True
    if changed:
        db.commit()
        db.refresh(user)
    return user


def build_profile(db: Session, user_id: int) -> Optional[dict]:
    user = get_user(db, user_id)
    if user is None:
        return None
    followers = db.query(func.count(Follow.id)).filter(Follow.following_id == user_id).scalar() or 0
    following = db.query(func.count(Follow.id)).filter(Follow.follower_id == user_id).scalar() or 0
    active_listings = (
        db.query(func.count(Product.id))
        .filter(Product.seller_id == user_id, Product.status == ProductStatus.AVAILABLE)
        .scalar()
        or 0
    )
    total_sales = (
        db.query(func.count(Order.id))
        .filter(
            Order.seller_id == user_id,
            Order.status.in_([OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED]),
        )
        .scalar()
        or 0
    )
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "image_url": user.image_url,
        "average_rating": float(user.average_rating) if user.average_rating is not None else None,
        "followers": int(followers),
        "following": int(following),
        "active_listings": int(active_listings),
        "total_sales": int(total_sales),
    }


def set_stripe_account(db: Session, user: User, account_id: str) -> User:
    user.stripe_account_id = account_id
    db.commit()
    db.refresh(user)
    return user


# -----------------------------
# Products
# -----------------------------


def create_product(db: Session, seller_id: int, product_data: dict) -> Product:
    db_product = Product(**product_data, seller_id=seller_id, status=ProductStatus.AVAILABLE)
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    logger.info("Product %s listed by seller %s", db_product.id, seller_id)
    return db_product


def get_product(db: Session, product_id: int) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def get_product_or_404(db: Session, product_id: int) -> Product:
    product = get_product(db, product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return product


def get_products(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    category: Optional[str] = None,
    seller_id: Optional[int] = None,
    status: Optional[ProductStatus] = ProductStatus.AVAILABLE,
) -> Tuple[List[Product], int]:
    query = db.query(Product)
    if status is not None:
        query = query.filter(Product.status == status)
    if seller_id is not None:
        query = query.filter(Product.seller_id == seller_id)
    if category:
        query = query.filter(func.lower(Product.category) == category.strip().lower())
    if search:
        search_pattern = f"%{search.strip()}%"
        query = query.filter(
            or_(
                Product.title.ilike(search_pattern),
                Product.description.ilike(search_pattern),
                Product.brand.ilike(search_pattern),
                Product.category.ilike(search_pattern),
            )
        )
    total = query.count()
    items = query.order_by(Product.created_at.desc(), Product.id.desc()).offset(skip).limit(limit).all()
    return items, total


def count_favorites(db: Session, product_id: int) -> int:
    return int(db.query(func.count(Favorite.id)).filter(Favorite.product_id == product_id).scalar() or 0)


def update_product(db: Session, product: Product, update_data: dict) -> Product:
    """Edit a listing; only allowed while nobody holds it."""
    if not update_data:
        return product
    updated = (
        db.query(Product)
        .filter(Product.id == product.id, Product.status == ProductStatus.AVAILABLE)
        .update(update_data, synchronize_session=False)
    )
    if updated == 0:
        db.rollback()
        db.refresh(product)
        raise ConflictError(
            f"Product cannot be edited while {product.status.value}",
            code="product_locked",
            details={"product_id": product.id, "status": product.status.value},
        )
    db.commit()
    db.refresh(product)
    return product


def remove_product(db: Session, product: Product) -> Product:
    """Soft-remove a listing (AVAILABLE -> REMOVED). Products referenced by orders are never deleted."""
    if product.status == ProductStatus.REMOVED:
        return product
    updated = (
        db.query(Product)
        .filter(Product.id == product.id, Product.status == ProductStatus.AVAILABLE)
        .update({Product.status: ProductStatus.REMOVED}, synchronize_session=False)
    )
    if updated == 0:
        db.rollback()
        db.refresh(product)
        raise ConflictError(
            "Product has an active order and cannot be removed",
            code="product_locked",
            details={"product_id": product.id, "status": product.status.value},
        )
    db.commit()
    db.refresh(product)
    logger.info("Product %s removed", product.id)
    return product


# -----------------------------
# Addresses
# -----------------------------


def get_addresses(db: Session, user_id: int) -> List[Address]:
    return (
        db.query(Address)
        .filter(Address.user_id == user_id)
        .order_by(Address.is_default.desc(), Address.created_at.desc(), Address.id.desc())
        .all()
    )


def get_user_address(db: Session, user_id: int, address_id: int) -> Address:
    address = db.query(Address).filter(Address.id == address_id).first()
    if address is None or address.user_id != user_id:
        raise NotFoundError(f"Address with id {address_id} not found")
    return address


def _unset_other_defaults(db: Session, user_id: int, address_type, exclude_id: Optional[int] = None) -> None:
    query = db.query(Address).filter(
        Address.user_id == user_id,
        Address.type == address_type,
        Address.is_default.is_(True),
    )
    if exclude_id is not None:
        query = query.filter(Address.id != exclude_id)
    query.update({Address.is_default: False}, synchronize_session=False)


def create_address(db: Session, user_id: int, address_data: dict) -> Address:
    if address_data.get("is_default"):
        _unset_other_defaults(db, user_id, address_data["type"])
    address = Address(**address_data, user_id=user_id)
    db.add(address)
    db.commit()
    db.refresh(address)
    return address


def update_address(db: Session, address: Address, update_data: dict) -> Address:
    if update_data.get("is_default") is True:
        address_type = update_data.get("type") or address.type
        _unset_other_defaults(db, address.user_id, address_type, exclude_id=address.id)
    elif "type" in update_data and update_data["type"] != address.type and address.is_default:
        # moving a default to another type must not leave two defaults there
        _unset_other_defaults(db, address.user_id, update_data["type"], exclude_id=address.id)

    for key, value in update_data.items():
        setattr(address, key, value)
    db.commit()
    db.refresh(address)
    return address


def delete_address(db: Session, address: Address) -> None:
    in_use = (
        db.query(Order.id)
        .filter(Order.shipping_address_id == address.id)
        .first()
    )
    if in_use is not None:
        raise ConflictError(
            "Address is used by an order and cannot be deleted",
            code="address_in_use",
            details={"address_id": address.id},
        )
    db.delete(address)
    db.commit()


# -----------------------------
# Reconciliation log
# -----------------------------


def record_inconsistency(
    db: Session,
    kind: str,
    detail: str,
    order_id: Optional[int] = None,
    product_id: Optional[int] = None,
) -> InconsistencyEvent:
    """Persist an inconsistency in its own commit; callers must not have pending work in ``db``."""
    logger.error("Inconsistency [%s] order=%s product=%s: %s", kind, order_id, product_id, detail)
    event = InconsistencyEvent(kind=kind, detail=detail, order_id=order_id, product_id=product_id)
    db.add(event)
    db.commit()
    return event


def get_inconsistencies(db: Session, unresolved_only: bool = True) -> List[InconsistencyEvent]:
    query = db.query(InconsistencyEvent)
    if unresolved_only:
        query = query.filter(InconsistencyEvent.resolved.is_(False))
    return query.order_by(InconsistencyEvent.id).all()
