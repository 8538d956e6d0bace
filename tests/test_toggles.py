import pytest

from threadly import toggles
from threadly.errors import NotFoundError, ProductNotFound, ValidationError
from threadly.models import Favorite, Follow


def test_favorite_toggle_flips_and_counts(db, users, product):
    assert toggles.toggle_favorite(db, users.buyer.id, product.id) is True
    assert toggles.toggle_favorite(db, users.other.id, product.id) is True
    assert toggles.count(db, Favorite, product_id=product.id) == 2
    assert toggles.is_present(db, Favorite, user_id=users.buyer.id, product_id=product.id)

    assert toggles.toggle_favorite(db, users.buyer.id, product.id) is False
    assert toggles.count(db, Favorite, product_id=product.id) == 1
    assert not toggles.is_present(db, Favorite, user_id=users.buyer.id, product_id=product.id)


def test_favorite_unknown_product(db, users):
    with pytest.raises(ProductNotFound):
        toggles.toggle_favorite(db, users.buyer.id, 12345)


def test_concurrent_insert_resolves_to_present(db, users, product, session_factory):
    # the other request wins the insert between our lookup and our commit
    other_session = session_factory()
    other_session.add(Favorite(user_id=users.buyer.id, product_id=product.id))

    original_query = db.query

    class _RaceOnce:
        done = False

    def racing_query(*entities, **kwargs):
        if not _RaceOnce.done and entities and entities[0] is Favorite:
            _RaceOnce.done = True
            other_session.commit()
            return original_query(Favorite).filter(Favorite.id == -1)
        return original_query(*entities, **kwargs)

    db.query = racing_query
    try:
        assert toggles.toggle(db, Favorite, user_id=users.buyer.id, product_id=product.id) is True
    finally:
        db.query = original_query
        other_session.close()

    assert toggles.count(db, Favorite, user_id=users.buyer.id, product_id=product.id) == 1


def test_follow_toggle(db, users):
    assert toggles.toggle_follow(db, users.buyer.id, users.seller.id) is True
    assert toggles.count(db, Follow, following_id=users.seller.id) == 1
    assert toggles.count(db, Follow, follower_id=users.buyer.id) == 1

    assert toggles.toggle_follow(db, users.buyer.id, users.seller.id) is False
    assert toggles.count(db, Follow, following_id=users.seller.id) == 0


def test_cannot_follow_self(db, users):
    with pytest.raises(ValidationError):
        toggles.toggle_follow(db, users.buyer.id, users.buyer.id)


def test_follow_unknown_user(db, users):
    with pytest.raises(NotFoundError):
        toggles.toggle_follow(db, users.buyer.id, 4242)
