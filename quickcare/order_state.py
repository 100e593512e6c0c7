"""
Order lifecycle state machine. Valid transitions enforce business rules.

pending -> confirmed -> preparing -> ready_for_pickup -> picked_up -> in_transit -> delivered
pending | confirmed -> cancelled
"""
from quickcare.errors import InvalidTransitionError, PreconditionNotMetError
from quickcare.models import DeliveryStatus, Order, OrderStatus, PaymentStatus

# Current status -> {action: next status}
VALID_TRANSITIONS: dict[OrderStatus, dict[str, OrderStatus]] = {
    OrderStatus.PENDING: {"confirm": OrderStatus.CONFIRMED, "cancel": OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {"start_preparing": OrderStatus.PREPARING, "cancel": OrderStatus.CANCELLED},
    OrderStatus.PREPARING: {"mark_ready": OrderStatus.READY_FOR_PICKUP},
    OrderStatus.READY_FOR_PICKUP: {"dispatch": OrderStatus.PICKED_UP},
    OrderStatus.PICKED_UP: {"start_transit": OrderStatus.IN_TRANSIT},
    OrderStatus.IN_TRANSIT: {"deliver": OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {},  # terminal
    OrderStatus.CANCELLED: {},  # terminal
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# Prescription verification is accepted until the order is ready
PRESCRIPTION_EDITABLE_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
})

# Delivery status -> the only status it may advance to
DELIVERY_TRANSITIONS: dict[DeliveryStatus, DeliveryStatus | None] = {
    DeliveryStatus.ASSIGNED: DeliveryStatus.PICKED_UP,
    DeliveryStatus.PICKED_UP: DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.IN_TRANSIT: DeliveryStatus.DELIVERED,
    DeliveryStatus.DELIVERED: None,  # terminal
}

# Order action applied alongside each delivery advance
DELIVERY_ORDER_ACTIONS: dict[DeliveryStatus, str] = {
    DeliveryStatus.PICKED_UP: "dispatch",
    DeliveryStatus.IN_TRANSIT: "start_transit",
    DeliveryStatus.DELIVERED: "deliver",
}


def is_valid_transition(current_status: OrderStatus, action: str) -> bool:
    """True if action is a legal edge out of current_status (guards not considered)."""
    return action in VALID_TRANSITIONS.get(current_status, {})


def next_status(order: Order, action: str) -> OrderStatus:
    """
    Resolve (current status, action) to the next status, or raise.
    InvalidTransitionError for an illegal edge, PreconditionNotMetError for an unmet guard.
    Pure: never touches the order.
    """
    if not is_valid_transition(order.status, action):
        raise InvalidTransitionError(current_status=order.status.value, action=action)
    if action == "cancel" and order.delivery_partner_id is not None:
        raise InvalidTransitionError(current_status=order.status.value, action=action)
    if action == "confirm" and order.payment_status == PaymentStatus.FAILED:
        raise PreconditionNotMetError("payment failed; order cannot be confirmed")
    if action == "mark_ready" and order.prescription_blocked:
        raise PreconditionNotMetError("prescription must be verified before the order is ready")
    if action == "dispatch" and order.delivery_partner_id is None:
        raise PreconditionNotMetError("no delivery partner has claimed the order")
    return VALID_TRANSITIONS[order.status][action]


def check_prescription_verifiable(order: Order) -> None:
    if order.status not in PRESCRIPTION_EDITABLE_STATUSES:
        raise InvalidTransitionError(current_status=order.status.value, action="verify_prescription")


def is_claimable(order: Order) -> bool:
    return (
        order.status == OrderStatus.READY_FOR_PICKUP
        and order.delivery_partner_id is None
        and not order.prescription_blocked
    )


def next_delivery_status(current: DeliveryStatus, requested: DeliveryStatus) -> DeliveryStatus:
    """Deliveries advance one step at a time; anything else is an invalid transition."""
    allowed = DELIVERY_TRANSITIONS.get(current)
    if allowed is None or requested != allowed:
        raise InvalidTransitionError(current_status=current.value, action=f"advance_to_{requested.value}")
    return allowed
