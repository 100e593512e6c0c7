"""Tests for the order state machine (no store involved)."""
from decimal import Decimal

import pytest

from quickcare.errors import InvalidTransitionError, PreconditionNotMetError
from quickcare.models import UNASSIGNED_STATUSES, DeliveryStatus, Order, OrderLineItem, OrderStatus, PaymentStatus
from quickcare.order_state import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    check_prescription_verifiable,
    is_claimable,
    next_delivery_status,
    next_status,
)

HAPPY_PATH = [
    ("confirm", OrderStatus.CONFIRMED),
    ("start_preparing", OrderStatus.PREPARING),
    ("mark_ready", OrderStatus.READY_FOR_PICKUP),
    ("dispatch", OrderStatus.PICKED_UP),
    ("start_transit", OrderStatus.IN_TRANSIT),
    ("deliver", OrderStatus.DELIVERED),
]
ACTIONS = [action for action, _ in HAPPY_PATH] + ["cancel"]


def make_order(status=OrderStatus.PENDING, prescription=False, **fields) -> Order:
    items = [
        OrderLineItem(medicine_id="m1", medicine_name="Paracetamol 500mg", quantity=2, unit_price=Decimal("25")),
        OrderLineItem(
            medicine_id="m2",
            medicine_name="Amoxicillin 250mg",
            quantity=1,
            unit_price=Decimal("85"),
            prescription_required=prescription,
        ),
    ]
    return Order.create(
        items,
        customer_id="cust-1",
        delivery_address="123 Main St",
        delivery_phone="+91 9876543210",
        status=status,
        **fields,
    )


def test_happy_path_walks_every_status_in_order():
    order = make_order()
    trace = [order.status]
    for action, expected in HAPPY_PATH:
        if action == "dispatch":
            order = order.model_copy(update={"delivery_partner_id": "dp-a"})
        new = next_status(order, action)
        assert new == expected
        order = order.model_copy(update={"status": new})
        trace.append(new)
    assert trace == [
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.PICKED_UP,
        OrderStatus.IN_TRANSIT,
        OrderStatus.DELIVERED,
    ]


@pytest.mark.parametrize("status", list(OrderStatus))
@pytest.mark.parametrize("action", ACTIONS)
def test_every_status_action_pair_is_decided(status, action):
    """Each (status, action) either yields the table's target or raises a lifecycle error."""
    bound = action == "dispatch" or status not in UNASSIGNED_STATUSES
    order = make_order(status=status, delivery_partner_id="dp-a" if bound else None)
    if action in VALID_TRANSITIONS[status]:
        assert next_status(order, action) == VALID_TRANSITIONS[status][action]
    else:
        with pytest.raises(InvalidTransitionError) as exc:
            next_status(order, action)
        assert exc.value.current_status == status.value
        assert exc.value.action == action


def test_terminal_statuses_have_no_exits():
    for status in TERMINAL_STATUSES:
        assert VALID_TRANSITIONS[status] == {}


@pytest.mark.parametrize("status", [OrderStatus.PENDING, OrderStatus.CONFIRMED])
def test_cancel_allowed_from_pending_and_confirmed(status):
    assert next_status(make_order(status=status), "cancel") == OrderStatus.CANCELLED


def test_cancel_rejected_once_preparation_started():
    with pytest.raises(InvalidTransitionError):
        next_status(make_order(status=OrderStatus.PREPARING), "cancel")


def test_cancel_rejected_when_partner_assigned():
    order = make_order(status=OrderStatus.CONFIRMED, delivery_partner_id="dp-a")
    with pytest.raises(InvalidTransitionError):
        next_status(order, "cancel")


def test_confirm_requires_payment_not_failed():
    with pytest.raises(PreconditionNotMetError):
        next_status(make_order(payment_status=PaymentStatus.FAILED), "confirm")
    assert next_status(make_order(payment_status=PaymentStatus.PAID), "confirm") == OrderStatus.CONFIRMED


def test_mark_ready_blocked_by_unverified_prescription():
    order = make_order(status=OrderStatus.PREPARING, prescription=True)
    with pytest.raises(PreconditionNotMetError):
        next_status(order, "mark_ready")

    verified = order.model_copy(update={"prescription_verified": True})
    assert next_status(verified, "mark_ready") == OrderStatus.READY_FOR_PICKUP


def test_mark_ready_without_prescription_items_needs_no_verification():
    order = make_order(status=OrderStatus.PREPARING, prescription=False)
    assert next_status(order, "mark_ready") == OrderStatus.READY_FOR_PICKUP


def test_dispatch_requires_claimed_order():
    with pytest.raises(PreconditionNotMetError):
        next_status(make_order(status=OrderStatus.READY_FOR_PICKUP), "dispatch")


def test_verify_prescription_only_before_ready():
    check_prescription_verifiable(make_order(status=OrderStatus.PREPARING, prescription=True))
    with pytest.raises(InvalidTransitionError):
        check_prescription_verifiable(make_order(status=OrderStatus.READY_FOR_PICKUP, prescription=True))


def test_is_claimable():
    assert is_claimable(make_order(status=OrderStatus.READY_FOR_PICKUP))
    assert not is_claimable(make_order(status=OrderStatus.PREPARING))
    assert not is_claimable(make_order(status=OrderStatus.READY_FOR_PICKUP, delivery_partner_id="dp-a"))
    assert not is_claimable(make_order(status=OrderStatus.READY_FOR_PICKUP, prescription=True))


def test_delivery_advances_one_step_at_a_time():
    assert next_delivery_status(DeliveryStatus.ASSIGNED, DeliveryStatus.PICKED_UP) == DeliveryStatus.PICKED_UP
    assert next_delivery_status(DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT) == DeliveryStatus.IN_TRANSIT
    with pytest.raises(InvalidTransitionError):
        next_delivery_status(DeliveryStatus.ASSIGNED, DeliveryStatus.DELIVERED)
    with pytest.raises(InvalidTransitionError):
        next_delivery_status(DeliveryStatus.DELIVERED, DeliveryStatus.DELIVERED)


def test_order_total_must_match_items_and_fee():
    order = make_order(delivery_fee=Decimal("25"))
    assert order.total_amount == Decimal("160")
    with pytest.raises(ValueError):
        Order(**{**order.model_dump(), "total_amount": Decimal("150")})


@pytest.mark.parametrize("status", [OrderStatus.PICKED_UP, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED])
def test_handed_over_order_needs_a_partner(status):
    with pytest.raises(ValueError):
        make_order(status=status)
    assert make_order(status=status, delivery_partner_id="dp-a").status == status


@pytest.mark.parametrize("status", sorted(UNASSIGNED_STATUSES, key=list(OrderStatus).index))
def test_unassigned_statuses_allow_no_partner(status):
    assert make_order(status=status).delivery_partner_id is None
