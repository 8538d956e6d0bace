from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import crud, schemas, toggles
from ..auth import get_current_user
from ..cache import ProfileCache
from ..database import get_db
from ..dependencies import get_cache, get_publisher
from ..errors import NotFoundError
from ..messaging import EventPublisher
from ..models import Follow, User

router = APIRouter(
    prefix="/users",
    tags=["Users"]
)


def _load_profile(db: Session, cache: Optional[ProfileCache], user_id: int) -> dict:
    def loader():
        return crud.build_profile(db, user_id)

    profile = cache.get_or_load(user_id, loader) if cache is not None else loader()
    if profile is None:
        raise NotFoundError(f"User with id {user_id} not found", code="user_not_found")
    return profile


@router.get("/me", response_model=schemas.Envelope[schemas.MeOut])
def read_me(current_user: User = Depends(get_current_user)):
    return {"success": True, "data": current_user}


@router.get("/{user_id}", response_model=schemas.Envelope[schemas.ProfileOut])
def read_profile(
    user_id: int,
    db: Session = Depends(get_db),
    cache: Optional[ProfileCache] = Depends(get_cache),
):
    """Public seller profile with follower and sales counts. Served from the profile cache when enabled."""
    return {"success": True, "data": _load_profile(db, cache, user_id)}


@router.get("/{user_id}/follow", response_model=schemas.Envelope[schemas.FollowStateOut])
def follow_status(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if crud.get_user(db, user_id) is None:
        raise NotFoundError(f"User with id {user_id} not found", code="user_not_found")
    return {
        "success": True,
        "data": {
            "user_id": user_id,
            "following": toggles.is_present(db, Follow, follower_id=current_user.id, following_id=user_id),
            "followers": toggles.count(db, Follow, following_id=user_id),
        },
    }


@router.post("/{user_id}/follow", response_model=schemas.Envelope[schemas.FollowStateOut])
def toggle_follow(
    user_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: Optional[ProfileCache] = Depends(get_cache),
    publisher: EventPublisher = Depends(get_publisher),
):
    following = toggles.toggle_follow(db, follower_id=current_user.id, following_id=user_id)
    if cache is not None:
        cache.invalidate_user(current_user.id, user_id)
    if following:
        publisher.notify_user(user_id, "follow.created", follower_id=current_user.id)
    return {
        "success": True,
        "data": {
            "user_id": user_id,
            "following": following,
            "followers": toggles.count(db, Follow, following_id=user_id),
        },
        "message": "Followed" if following else "Unfollowed",
    }


def _follow_list(rows, total: int, skip: int, limit: int) -> dict:
    items = [
        {**schemas.UserOut.model_validate(user).model_dump(), "followed_at": followed_at}
        for user, followed_at in rows
    ]
    return {"items": items, "pagination": {"total": total, "skip": skip, "limit": limit}}


@router.get("/{user_id}/following", response_model=schemas.Envelope[schemas.Page[schemas.FollowUserOut]])
def list_following(
    user_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    rows, total = toggles.get_following(db, user_id, skip=skip, limit=limit)
    return {"success": True, "data": _follow_list(rows, total, skip, limit)}


@router.get("/{user_id}/followers", response_model=schemas.Envelope[schemas.Page[schemas.FollowUserOut]])
def list_followers(
    user_id: int,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    rows, total = toggles.get_followers(db, user_id, skip=skip, limit=limit)
    return {"success": True, "data": _follow_list(rows, total, skip, limit)}
