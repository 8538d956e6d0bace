import datetime as dt

import pytest

from conftest import make_product
from threadly import orders, reservations
from threadly.errors import AuthorizationError, InvalidTransition
from threadly.models import (
    InconsistencyEvent,
    Order,
    OrderStatus,
    Payment,
    ProcessedPaymentEvent,
    Product,
    ProductStatus,
)


@pytest.fixture
def pending_order(db, users, product):
    order, _ = reservations.reserve(db, product.id, users.buyer.id)
    return order


def _product_status(db, product_id):
    db.expire_all()
    return db.get(Product, product_id).status


def _inconsistencies(db, kind=None):
    query = db.query(InconsistencyEvent)
    if kind:
        query = query.filter(InconsistencyEvent.kind == kind)
    return query.all()


# -----------------------------
# Payment confirmation
# -----------------------------


def test_confirm_payment_marks_paid_and_sells_product(db, pending_order):
    order, changed = orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)

    assert changed is True
    assert order.status == OrderStatus.PAID
    assert order.paid_at is not None
    assert _product_status(db, order.product_id) == ProductStatus.SOLD
    payment = db.query(Payment).filter(Payment.order_id == order.id).one()
    assert payment.amount == 4500
    assert payment.stripe_payment_id == "pi_1"


def test_duplicate_confirmation_is_a_no_op(db, pending_order):
    orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)
    order, changed = orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)

    assert changed is False
    assert order.status == OrderStatus.PAID
    assert db.query(Payment).count() == 1
    assert db.query(ProcessedPaymentEvent).count() == 1


def test_second_distinct_event_after_paid_is_recorded_not_applied(db, pending_order):
    orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)
    order, changed = orders.confirm_payment(db, pending_order.id, "evt_2", "pi_1", 4500)

    assert changed is False
    assert order.status == OrderStatus.PAID
    assert db.query(ProcessedPaymentEvent).count() == 2
    assert db.query(Payment).count() == 1


def test_confirmation_for_cancelled_order_logs_inconsistency(db, users, pending_order):
    orders.cancel(db, pending_order.id, users.buyer, reason="changed my mind")
    order, changed = orders.confirm_payment(db, pending_order.id, "evt_late", "pi_1", 4500)

    assert changed is False
    assert order.status == OrderStatus.CANCELLED
    assert _product_status(db, order.product_id) == ProductStatus.AVAILABLE
    assert len(_inconsistencies(db, "payment_for_cancelled_order")) == 1

    # replay of the same late event does not log twice
    orders.confirm_payment(db, pending_order.id, "evt_late", "pi_1", 4500)
    assert len(_inconsistencies(db, "payment_for_cancelled_order")) == 1


def test_amount_mismatch_is_recorded(db, pending_order):
    order, changed = orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4000)

    assert changed is True
    assert order.status == OrderStatus.PAID
    assert len(_inconsistencies(db, "amount_mismatch")) == 1


def test_payment_failure_cancels_pending_order(db, pending_order):
    order, changed = orders.fail_payment(db, pending_order.id, "evt_fail", reason="card declined")

    assert changed is True
    assert order.status == OrderStatus.CANCELLED
    assert order.cancellation_reason == "card declined"
    assert _product_status(db, order.product_id) == ProductStatus.AVAILABLE


def test_payment_failure_after_paid_is_ignored(db, pending_order):
    orders.confirm_payment(db, pending_order.id, "evt_ok", "pi_1", 4500)
    order, changed = orders.fail_payment(db, pending_order.id, "evt_fail")

    assert changed is False
    assert order.status == OrderStatus.PAID
    assert _product_status(db, order.product_id) == ProductStatus.SOLD


def test_payment_failure_is_recorded_when_cancel_wins_the_race(db, pending_order, monkeypatch):
    def cancelled_elsewhere(session, order, reason):
        # the concurrent cancel commits first; this one rolls back with nothing moved
        session.rollback()
        session.query(Order).filter(Order.id == order.id).update(
            {Order.status: OrderStatus.CANCELLED}, synchronize_session=False
        )
        session.commit()
        session.refresh(order)
        return False

    monkeypatch.setattr(orders, "_cancel", cancelled_elsewhere)
    order, changed = orders.fail_payment(db, pending_order.id, "evt_fail")

    assert changed is False
    assert order.status == OrderStatus.CANCELLED
    ledger = db.query(ProcessedPaymentEvent).filter_by(order_id=order.id, event_id="evt_fail").all()
    assert len(ledger) == 1


# -----------------------------
# Cancellation
# -----------------------------


def test_cancel_is_idempotent_and_releases_once(db, users, pending_order):
    order, changed = orders.cancel(db, pending_order.id, users.buyer)
    assert changed is True
    assert order.cancelled_at is not None
    assert _product_status(db, order.product_id) == ProductStatus.AVAILABLE

    # someone else reserves the product in between; a retried cancel must not free it
    second, _ = reservations.reserve(db, order.product_id, users.other.id)
    order, changed = orders.cancel(db, pending_order.id, users.buyer)

    assert changed is False
    assert order.status == OrderStatus.CANCELLED
    assert _product_status(db, order.product_id) == ProductStatus.RESERVED
    assert db.get(Order, second.id).status == OrderStatus.PENDING


def test_cancel_paid_order_releases_sold_product(db, users, pending_order):
    orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)
    order, changed = orders.cancel(db, pending_order.id, users.admin, reason="fraud check")

    assert changed is True
    assert order.status == OrderStatus.CANCELLED
    assert _product_status(db, order.product_id) == ProductStatus.AVAILABLE


def test_cancel_leaves_unexpected_product_state_untouched(db, users, pending_order):
    db.query(Product).filter(Product.id == pending_order.product_id).update({Product.status: ProductStatus.REMOVED})
    db.commit()

    order, changed = orders.cancel(db, pending_order.id, users.seller)

    assert changed is True
    assert order.status == OrderStatus.CANCELLED
    assert _product_status(db, order.product_id) == ProductStatus.REMOVED
    events = _inconsistencies(db, "release_skipped")
    assert len(events) == 1
    assert events[0].order_id == order.id
    assert "REMOVED" in events[0].detail


def test_cancel_by_stranger_forbidden(db, users, pending_order):
    with pytest.raises(AuthorizationError):
        orders.cancel(db, pending_order.id, users.other)


def test_cannot_cancel_shipped_order(db, users, pending_order):
    orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)
    orders.ship(db, pending_order.id, users.seller, tracking_number="1Z999")

    with pytest.raises(InvalidTransition) as excinfo:
        orders.cancel(db, pending_order.id, users.buyer)
    assert excinfo.value.details["status"] == "SHIPPED"


# -----------------------------
# Fulfilment
# -----------------------------


def test_ship_and_deliver(db, users, pending_order):
    orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)

    shipped = orders.ship(db, pending_order.id, users.seller, tracking_number="1Z999", carrier="UPS")
    assert shipped.status == OrderStatus.SHIPPED
    assert shipped.tracking_number == "1Z999"
    assert shipped.carrier == "UPS"

    delivered = orders.deliver(db, pending_order.id, users.buyer)
    assert delivered.status == OrderStatus.DELIVERED
    assert delivered.delivered_at is not None


def test_only_seller_ships(db, users, pending_order):
    orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)
    with pytest.raises(AuthorizationError):
        orders.ship(db, pending_order.id, users.buyer)


def test_ship_requires_paid(db, users, pending_order):
    with pytest.raises(InvalidTransition):
        orders.ship(db, pending_order.id, users.seller)


def test_deliver_requires_shipped(db, users, pending_order):
    orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)
    with pytest.raises(InvalidTransition):
        orders.deliver(db, pending_order.id, users.buyer)


def test_terminal_states_do_not_move(db, users, pending_order):
    orders.cancel(db, pending_order.id, users.buyer)
    with pytest.raises(InvalidTransition):
        orders.ship(db, pending_order.id, users.seller)
    order, changed = orders.confirm_payment(db, pending_order.id, "evt_1", "pi_1", 4500)
    assert changed is False
    assert order.status == OrderStatus.CANCELLED


# -----------------------------
# Stale sweep
# -----------------------------


def test_cancel_stale_orders_only_touches_old_pending(db, users):
    old_product = make_product(db, users.seller, title="Old checkout")
    fresh_product = make_product(db, users.seller, title="Fresh checkout")
    paid_product = make_product(db, users.seller, title="Paid checkout")

    old, _ = reservations.reserve(db, old_product.id, users.buyer.id)
    fresh, _ = reservations.reserve(db, fresh_product.id, users.buyer.id)
    paid, _ = reservations.reserve(db, paid_product.id, users.buyer.id)
    orders.confirm_payment(db, paid.id, "evt_paid", "pi_paid", paid.amount)

    long_ago = dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=2)
    db.query(Order).filter(Order.id.in_([old.id, paid.id])).update(
        {Order.created_at: long_ago}, synchronize_session=False
    )
    db.commit()

    cancelled = orders.cancel_stale_orders(db, max_age=dt.timedelta(minutes=30))

    assert cancelled == [old.id]
    db.expire_all()
    assert db.get(Order, old.id).status == OrderStatus.CANCELLED
    assert db.get(Order, old.id).cancellation_reason == "Checkout expired"
    assert db.get(Order, fresh.id).status == OrderStatus.PENDING
    assert db.get(Order, paid.id).status == OrderStatus.PAID
    assert db.get(Product, old_product.id).status == ProductStatus.AVAILABLE

    assert orders.cancel_stale_orders(db, max_age=dt.timedelta(minutes=30)) == []


def test_list_orders_by_role(db, users, pending_order):
    as_buyer, total = orders.list_orders(db, users.buyer.id, role="buyer")
    assert total == 1 and as_buyer[0].id == pending_order.id

    as_seller, total = orders.list_orders(db, users.seller.id, role="seller")
    assert total == 1

    _, total = orders.list_orders(db, users.buyer.id, role="seller")
    assert total == 0

    _, total = orders.list_orders(db, users.buyer.id, status=OrderStatus.PAID)
    assert total == 0
