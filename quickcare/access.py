"""
Role-scoped visibility and mutation rules.
Every check here runs before the state machine and before any store write.
"""
from quickcare.errors import ForbiddenError
from quickcare.models import Actor, Delivery, Medicine, Order, Role
from quickcare.order_state import is_claimable

ORDER_ACTIONS_BY_ROLE: dict[Role, frozenset[str]] = {
    Role.CUSTOMER: frozenset({"place_order", "cancel", "attach_prescription"}),
    Role.STORE_MANAGER: frozenset({
        "confirm",
        "start_preparing",
        "mark_ready",
        "verify_prescription",
        "cancel",
        "dispatch",
        "record_payment",
    }),
    Role.DELIVERY_PARTNER: frozenset({"claim", "advance_delivery"}),
}

# Fields never shown to a role
HIDDEN_ORDER_FIELDS: dict[Role, set[str]] = {
    Role.CUSTOMER: set(),
    Role.STORE_MANAGER: set(),
    Role.DELIVERY_PARTNER: {"prescription_url", "payment_status"},
}


def require_role(actor: Actor, *roles: Role) -> None:
    if actor.role not in roles:
        raise ForbiddenError(f"{actor.role.value} may not perform this operation")


def manages_order(actor: Actor, order: Order, scope: str) -> bool:
    if scope == "global":
        return True
    return any(item.manager_id == actor.id for item in order.items)


def can_read_order(actor: Actor, order: Order, scope: str = "global") -> bool:
    if actor.role == Role.CUSTOMER:
        return order.customer_id == actor.id
    if actor.role == Role.STORE_MANAGER:
        return manages_order(actor, order, scope)
    if actor.role == Role.DELIVERY_PARTNER:
        return order.delivery_partner_id == actor.id or is_claimable(order)
    return False


def check_can_read_order(actor: Actor, order: Order, scope: str = "global") -> None:
    if not can_read_order(actor, order, scope):
        raise ForbiddenError(f"order {order.id} is not visible to {actor.role.value} {actor.id}")


def check_can_mutate_order(actor: Actor, order: Order, action: str, scope: str = "global") -> None:
    """Role must be allowed the action and the actor must be related to the order."""
    if action not in ORDER_ACTIONS_BY_ROLE.get(actor.role, frozenset()):
        raise ForbiddenError(f"{actor.role.value} may not {action} orders")
    if actor.role == Role.CUSTOMER and order.customer_id != actor.id:
        raise ForbiddenError(f"order {order.id} belongs to another customer")
    if actor.role == Role.STORE_MANAGER and not manages_order(actor, order, scope):
        raise ForbiddenError(f"order {order.id} is outside the store of manager {actor.id}")
    if actor.role == Role.DELIVERY_PARTNER and action == "advance_delivery" and order.delivery_partner_id != actor.id:
        raise ForbiddenError(f"order {order.id} is not assigned to partner {actor.id}")


def check_delivery_owner(actor: Actor, delivery: Delivery) -> None:
    if actor.role != Role.DELIVERY_PARTNER or delivery.delivery_partner_id != actor.id:
        raise ForbiddenError(f"delivery {delivery.id} is not assigned to {actor.id}")


def check_owns_medicine(actor: Actor, medicine: Medicine) -> None:
    require_role(actor, Role.STORE_MANAGER)
    if medicine.manager_id != actor.id:
        raise ForbiddenError(f"medicine {medicine.id} belongs to another store manager")


def order_view(actor: Actor, order: Order) -> dict:
    """Order as a JSON-ready dict with the fields the actor's role may see."""
    return order.model_dump(mode="json", exclude=HIDDEN_ORDER_FIELDS.get(actor.role, set()))
