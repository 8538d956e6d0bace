from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_user
from ..database import get_db
from ..models import User

router = APIRouter(
    prefix="/addresses",
    tags=["Addresses"]
)


@router.get("", response_model=schemas.Envelope[List[schemas.AddressOut]])
def list_addresses(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": True, "data": crud.get_addresses(db, current_user.id)}


@router.post("", response_model=schemas.Envelope[schemas.AddressOut], status_code=status.HTTP_201_CREATED)
def create_address(
    address: schemas.AddressCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Add an address. A new default replaces the previous default of the same type."""
    db_address = crud.create_address(db, current_user.id, address.model_dump())
    return {"success": True, "data": db_address, "message": "Address created successfully"}


@router.get("/{address_id}", response_model=schemas.Envelope[schemas.AddressOut])
def get_address(
    address_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": True, "data": crud.get_user_address(db, current_user.id, address_id)}


@router.put("/{address_id}", response_model=schemas.Envelope[schemas.AddressOut])
def update_address(
    address_id: int,
    address_update: schemas.AddressUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    address = crud.get_user_address(db, current_user.id, address_id)
    update_data = address_update.model_dump(exclude_unset=True)
    address = crud.update_address(db, address, update_data)
    return {"success": True, "data": address, "message": "Address updated successfully"}


@router.delete("/{address_id}", response_model=schemas.Envelope[None])
def delete_address(
    address_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    address = crud.get_user_address(db, current_user.id, address_id)
    crud.delete_address(db, address)
    return {"success": True, "data": None, "message": "Address deleted successfully"}
