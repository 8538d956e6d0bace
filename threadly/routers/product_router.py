from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_user
from ..database import get_db
from ..errors import AuthorizationError
from ..models import ProductStatus, User

router = APIRouter(
    prefix="/products",
    tags=["Products"]
)


def _detail(db: Session, product) -> dict:
    data = schemas.ProductOut.model_validate(product).model_dump()
    data["favorites"] = crud.count_favorites(db, product.id)
    return data


@router.post("", response_model=schemas.Envelope[schemas.ProductOut], status_code=status.HTTP_201_CREATED)
def create_product(
    product: schemas.ProductCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List a new item for sale. The item starts AVAILABLE."""
    db_product = crud.create_product(db, seller_id=current_user.id, product_data=product.model_dump())
    return {"success": True, "data": db_product, "message": "Product created successfully"}


@router.get("", response_model=schemas.Envelope[schemas.Page[schemas.ProductOut]])
def list_products(
    search: Optional[str] = Query(None, max_length=100),
    category: Optional[str] = Query(None, max_length=50),
    seller_id: Optional[int] = Query(None, gt=0),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    items, total = crud.get_products(
        db,
        skip=skip,
        limit=limit,
        search=search,
        category=category,
        seller_id=seller_id,
    )
    return {
        "success": True,
        "data": {"items": items, "pagination": {"total": total, "skip": skip, "limit": limit}},
    }


@router.get("/{product_id}", response_model=schemas.Envelope[schemas.ProductDetailOut])
def get_product(product_id: int, db: Session = Depends(get_db)):
    product = crud.get_product_or_404(db, product_id)
    return {"success": True, "data": _detail(db, product)}


@router.patch("/{product_id}", response_model=schemas.Envelope[schemas.ProductDetailOut])
def update_product(
    product_id: int,
    product_update: schemas.ProductUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    product = crud.get_product_or_404(db, product_id)
    if product.seller_id != current_user.id:
        raise AuthorizationError("Only the seller can edit this product")
    update_data = product_update.model_dump(exclude_unset=True, exclude_none=True)
    product = crud.update_product(db, product, update_data)
    return {"success": True, "data": _detail(db, product)}


@router.delete("/{product_id}", response_model=schemas.Envelope[schemas.ProductOut])
def remove_product(
    product_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Take a listing down. Products with orders are kept for history, so this is a soft removal."""
    product = crud.get_product_or_404(db, product_id)
    if product.seller_id != current_user.id and not current_user.is_admin:
        raise AuthorizationError("Only the seller can remove this product")
    if product.status == ProductStatus.REMOVED:
        return {"success": True, "data": product, "message": "Product already removed"}
    product = crud.remove_product(db, product)
    return {"success": True, "data": product, "message": "Product removed"}
