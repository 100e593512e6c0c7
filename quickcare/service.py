"""
Order lifecycle operations for customers, store managers and delivery partners.

Every operation takes the acting user explicitly. Order of checks, always:
role/relationship (ForbiddenError) -> state machine (InvalidTransitionError,
PreconditionNotMetError) -> one conditional write -> change notification.
Nothing is written when a check fails.
"""
import logging
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal

from quickcare.access import (
    check_can_mutate_order,
    check_can_read_order,
    check_delivery_owner,
    check_owns_medicine,
    require_role,
)
from quickcare.config import Settings
from quickcare.errors import (
    AlreadyAssignedError,
    InvalidTransitionError,
    NotClaimableError,
    NotFoundError,
    PreconditionNotMetError,
)
from quickcare.metrics import (
    delivery_claims_total,
    order_transitions_rejected_total,
    order_transitions_total,
    orders_placed_total,
)
from quickcare.models import (
    Actor,
    Delivery,
    DeliveryStatus,
    EarningsPeriod,
    Medicine,
    MedicineRequest,
    MedicineUpdate,
    Order,
    OrderLineItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PlaceOrderRequest,
    Profile,
    Role,
    utcnow,
)
from quickcare.notifier import ChangeNotifier, notify
from quickcare.order_state import (
    DELIVERY_ORDER_ACTIONS,
    PRESCRIPTION_EDITABLE_STATUSES,
    check_prescription_verifiable,
    is_claimable,
    next_delivery_status,
    next_status,
)
from quickcare.store import OrderStore, StockChange

logger = logging.getLogger(__name__)


def _guard_snapshot(order: Order) -> dict:
    """Every field a transition guard reads; the write only lands if none of them moved."""
    return {
        "status": order.status,
        "delivery_partner_id": order.delivery_partner_id,
        "payment_status": order.payment_status,
        "prescription_url": order.prescription_url,
        "prescription_verified": order.prescription_verified,
    }


def _stock_changes(order: Order, sign: int) -> list[StockChange]:
    quantities: Counter[str] = Counter()
    for item in order.items:
        quantities[item.medicine_id] += item.quantity
    return [(medicine_id, sign * qty) for medicine_id, qty in sorted(quantities.items())]


def earnings_window(period: EarningsPeriod, now: datetime) -> tuple[datetime | None, datetime | None]:
    """[start, end) of an earnings period; None means unbounded."""
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return today, None
    if period == "yesterday":
        return today - timedelta(days=1), today
    if period == "week":
        return today - timedelta(days=7), None
    if period == "month":
        return today - timedelta(days=30), None
    return None, None


def _within(moment: datetime | None, start: datetime | None, end: datetime | None) -> bool:
    if moment is None:
        return start is None and end is None
    return (start is None or moment >= start) and (end is None or moment < end)


class OrderLifecycleService:
    def __init__(self, store: OrderStore, notifier: ChangeNotifier, settings: Settings):
        self.store = store
        self.notifier = notifier
        self.settings = settings

    # -- profiles --------------------------------------------------------

    async def create_profile(self, user_id: str, full_name: str, role: Role, phone: str | None = None) -> Profile:
        profile = await self.store.insert_profile(Profile(id=user_id, full_name=full_name, phone=phone, role=role))
        logger.info("Created %s profile %s", role.value, user_id)
        return profile

    async def resolve_actor(self, user_id: str) -> Actor:
        profile = await self.store.get_profile(user_id)
        if profile is None:
            raise NotFoundError(f"no profile for user {user_id}")
        return profile.as_actor()

    async def get_profile(self, actor: Actor) -> Profile:
        profile = await self.store.get_profile(actor.id)
        if profile is None:
            raise NotFoundError(f"no profile for user {actor.id}")
        return profile

    # -- catalog ---------------------------------------------------------

    async def create_medicine(self, actor: Actor, request: MedicineRequest) -> Medicine:
        require_role(actor, Role.STORE_MANAGER)
        medicine = await self.store.insert_medicine(Medicine(manager_id=actor.id, **request.model_dump()))
        await notify(self.notifier, "medicines", "INSERT", medicine)
        return medicine

    async def _load_medicine(self, medicine_id: str) -> Medicine:
        medicine = await self.store.get_medicine(medicine_id)
        if medicine is None:
            raise NotFoundError(f"medicine {medicine_id} not found")
        return medicine

    async def update_medicine(self, actor: Actor, medicine_id: str, update: MedicineUpdate) -> Medicine:
        check_owns_medicine(actor, await self._load_medicine(medicine_id))
        changes = update.model_dump(exclude_unset=True)
        if not changes:
            return await self._load_medicine(medicine_id)
        medicine = await self.store.update_medicine(medicine_id, changes)
        if medicine is None:
            raise NotFoundError(f"medicine {medicine_id} not found")
        await notify(self.notifier, "medicines", "UPDATE", medicine)
        return medicine

    async def delete_medicine(self, actor: Actor, medicine_id: str) -> None:
        medicine = await self._load_medicine(medicine_id)
        check_owns_medicine(actor, medicine)
        if not await self.store.delete_medicine(medicine_id):
            raise NotFoundError(f"medicine {medicine_id} not found")
        await notify(self.notifier, "medicines", "DELETE", medicine)

    async def list_medicines(self, actor: Actor, category: str | None = None) -> list[Medicine]:
        """Customers browse what is in stock; managers see their whole inventory."""
        if actor.role == Role.CUSTOMER:
            return await self.store.list_medicines(in_stock_only=True, category=category)
        require_role(actor, Role.STORE_MANAGER)
        return await self.store.list_medicines(manager_id=actor.id, category=category)

    # -- orders: reads ---------------------------------------------------

    async def _load_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    async def get_order(self, actor: Actor, order_id: str) -> Order:
        order = await self._load_order(order_id)
        check_can_read_order(actor, order, self.settings.store_manager_scope)
        return order

    async def list_orders(self, actor: Actor, status: OrderStatus | None = None) -> list[Order]:
        if actor.role == Role.CUSTOMER:
            return await self.store.list_orders(customer_id=actor.id, status=status)
        if actor.role == Role.STORE_MANAGER:
            manager_id = actor.id if self.settings.store_manager_scope == "store" else None
            return await self.store.list_orders(manager_id=manager_id, status=status)
        return await self.store.list_orders(delivery_partner_id=actor.id, status=status)

    # -- orders: customer ------------------------------------------------

    async def place_order(self, actor: Actor, request: PlaceOrderRequest) -> Order:
        require_role(actor, Role.CUSTOMER)
        quantities: Counter[str] = Counter()
        for requested in request.items:
            quantities[requested.medicine_id] += requested.quantity

        items = []
        for medicine_id, quantity in quantities.items():
            medicine = await self._load_medicine(medicine_id)
            if medicine.stock < quantity:
                raise PreconditionNotMetError(
                    f"only {medicine.stock} of {medicine.name} in stock, {quantity} requested"
                )
            items.append(OrderLineItem(
                medicine_id=medicine.id,
                medicine_name=medicine.name,
                quantity=quantity,
                unit_price=medicine.price,
                prescription_required=medicine.prescription_required,
                manager_id=medicine.manager_id,
            ))

        order = Order.create(
            items,
            delivery_fee=self.settings.delivery_fee_for(request.delivery_type.value),
            customer_id=actor.id,
            delivery_address=request.delivery_address,
            delivery_phone=request.delivery_phone,
            notes=request.notes,
            payment_method=request.payment_method,
            delivery_type=request.delivery_type,
            prescription_url=request.prescription_url,
        )
        await self.store.insert_order(order)
        orders_placed_total.labels(delivery_type=order.delivery_type.value).inc()
        logger.info("Order %s placed by %s: %d item(s), total=%s", order.id, actor.id, len(items), order.total_amount)
        await notify(self.notifier, "orders", "INSERT", order)
        return order

    async def attach_prescription(self, actor: Actor, order_id: str, prescription_url: str) -> Order:
        """A new prescription image always needs a fresh verification."""
        order = await self._load_order(order_id)
        check_can_mutate_order(actor, order, "attach_prescription", self.settings.store_manager_scope)
        if order.status not in PRESCRIPTION_EDITABLE_STATUSES:
            raise InvalidTransitionError(current_status=order.status.value, action="attach_prescription")
        return await self._write(
            order,
            "attach_prescription",
            {"prescription_url": prescription_url, "prescription_verified": False},
        )

    # -- orders: state machine -------------------------------------------

    async def _write(
        self,
        order: Order,
        action: str,
        changes: dict,
        stock_changes: list[StockChange] | None = None,
    ) -> Order:
        """Conditional write against the order exactly as it was validated."""
        updated = await self.store.update_order(order.id, _guard_snapshot(order), changes, stock_changes)
        if updated is None:
            # someone else moved the order between our read and our write
            current = await self._load_order(order.id)
            order_transitions_rejected_total.labels(action=action, reason="conflict").inc()
            raise InvalidTransitionError(current_status=current.status.value, action=action)
        await notify(self.notifier, "orders", "UPDATE", updated)
        return updated

    async def _transition(self, actor: Actor, order_id: str, action: str) -> Order:
        order = await self._load_order(order_id)
        check_can_mutate_order(actor, order, action, self.settings.store_manager_scope)
        try:
            new_status = next_status(order, action)
        except InvalidTransitionError:
            order_transitions_rejected_total.labels(action=action, reason="invalid_transition").inc()
            raise
        except PreconditionNotMetError:
            order_transitions_rejected_total.labels(action=action, reason="precondition").inc()
            raise

        stock_changes = None
        if action == "confirm":
            stock_changes = _stock_changes(order, -1)
        elif action == "cancel" and order.status == OrderStatus.CONFIRMED:
            # stock was taken at confirmation; give it back
            stock_changes = _stock_changes(order, +1)

        try:
            updated = await self._write(order, action, {"status": new_status}, stock_changes)
        except PreconditionNotMetError:
            order_transitions_rejected_total.labels(action=action, reason="stock").inc()
            raise
        order_transitions_total.labels(action=action, to_status=new_status.value).inc()
        logger.info("Order %s: %s -> %s (%s by %s)", order_id, order.status.value, new_status.value, action, actor.id)
        return updated

    async def confirm(self, actor: Actor, order_id: str) -> Order:
        return await self._transition(actor, order_id, "confirm")

    async def start_preparing(self, actor: Actor, order_id: str) -> Order:
        return await self._transition(actor, order_id, "start_preparing")

    async def mark_ready(self, actor: Actor, order_id: str) -> Order:
        return await self._transition(actor, order_id, "mark_ready")

    async def cancel(self, actor: Actor, order_id: str) -> Order:
        return await self._transition(actor, order_id, "cancel")

    async def verify_prescription(self, actor: Actor, order_id: str) -> Order:
        order = await self._load_order(order_id)
        check_can_mutate_order(actor, order, "verify_prescription", self.settings.store_manager_scope)
        check_prescription_verifiable(order)
        if order.prescription_verified:
            return order
        updated = await self._write(order, "verify_prescription", {"prescription_verified": True})
        logger.info("Order %s: prescription verified by %s", order_id, actor.id)
        return updated

    async def record_payment(self, actor: Actor, order_id: str, payment_status: PaymentStatus) -> Order:
        order = await self._load_order(order_id)
        check_can_mutate_order(actor, order, "record_payment", self.settings.store_manager_scope)
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransitionError(current_status=order.status.value, action="record_payment")
        updated = await self._write(order, "record_payment", {"payment_status": payment_status})
        logger.info("Order %s: payment %s recorded by %s", order_id, payment_status.value, actor.id)
        return updated

    async def dispatch(self, actor: Actor, order_id: str) -> tuple[Order, Delivery]:
        """Store hands a claimed order to its delivery partner."""
        order = await self._load_order(order_id)
        check_can_mutate_order(actor, order, "dispatch", self.settings.store_manager_scope)
        next_status(order, "dispatch")
        delivery = await self.store.get_delivery(order_id)
        if delivery is None:
            raise PreconditionNotMetError(f"order {order_id} has no delivery record")
        return await self._advance(actor, order, delivery, DeliveryStatus.PICKED_UP)

    # -- deliveries ------------------------------------------------------

    async def available_orders(self, actor: Actor) -> list[Order]:
        require_role(actor, Role.DELIVERY_PARTNER)
        return await self.store.list_orders(claimable=True)

    async def current_deliveries(self, actor: Actor) -> list[tuple[Order, Delivery]]:
        require_role(actor, Role.DELIVERY_PARTNER)
        current = []
        for delivery in await self.store.list_deliveries(actor.id):
            if delivery.status == DeliveryStatus.DELIVERED:
                continue
            current.append((await self._load_order(delivery.order_id), delivery))
        return current

    async def claim_order(self, actor: Actor, order_id: str) -> tuple[Order, Delivery]:
        require_role(actor, Role.DELIVERY_PARTNER)
        order = await self._load_order(order_id)
        check_can_mutate_order(actor, order, "claim")
        if order.delivery_partner_id is not None:
            delivery_claims_total.labels(outcome="already_assigned").inc()
            raise AlreadyAssignedError(f"order {order_id} is already assigned")
        if not is_claimable(order):
            delivery_claims_total.labels(outcome="not_claimable").inc()
            raise NotClaimableError(f"order {order_id} is {order.status.value}, not claimable")

        delivery = Delivery(order_id=order_id, delivery_partner_id=actor.id, earnings=order.delivery_fee)
        try:
            result = await self.store.claim_order(order_id, actor.id, delivery)
        except AlreadyAssignedError:
            delivery_claims_total.labels(outcome="already_assigned").inc()
            raise
        if result is None:
            current = await self._load_order(order_id)
            if current.delivery_partner_id is not None:
                delivery_claims_total.labels(outcome="already_assigned").inc()
                raise AlreadyAssignedError(f"order {order_id} was claimed by another partner")
            delivery_claims_total.labels(outcome="not_claimable").inc()
            raise NotClaimableError(f"order {order_id} is no longer claimable")

        claimed, delivery = result
        delivery_claims_total.labels(outcome="claimed").inc()
        logger.info("Order %s claimed by partner %s (earnings=%s)", order_id, actor.id, delivery.earnings)
        await notify(self.notifier, "orders", "UPDATE", claimed)
        await notify(self.notifier, "deliveries", "INSERT", delivery)
        return claimed, delivery

    async def advance_delivery(
        self,
        actor: Actor,
        order_id: str,
        status: DeliveryStatus,
        estimated_delivery_time: datetime | None = None,
    ) -> tuple[Order, Delivery]:
        require_role(actor, Role.DELIVERY_PARTNER)
        delivery = await self.store.get_delivery(order_id)
        if delivery is None:
            raise NotFoundError(f"no delivery for order {order_id}")
        check_delivery_owner(actor, delivery)
        order = await self._load_order(order_id)
        check_can_mutate_order(actor, order, "advance_delivery")
        return await self._advance(actor, order, delivery, status, estimated_delivery_time)

    async def _advance(
        self,
        actor: Actor,
        order: Order,
        delivery: Delivery,
        status: DeliveryStatus,
        estimated_delivery_time: datetime | None = None,
    ) -> tuple[Order, Delivery]:
        new_delivery_status = next_delivery_status(delivery.status, status)
        action = DELIVERY_ORDER_ACTIONS[new_delivery_status]
        new_order_status = next_status(order, action)

        changes: dict = {"status": new_delivery_status}
        if estimated_delivery_time is not None:
            changes["estimated_delivery_time"] = estimated_delivery_time
        order_changes: dict = {"status": new_order_status}
        if new_delivery_status == DeliveryStatus.DELIVERED:
            changes["delivered_at"] = utcnow()
            if order.payment_method == PaymentMethod.COD and order.payment_status == PaymentStatus.PENDING:
                order_changes["payment_status"] = PaymentStatus.PAID

        result = await self.store.update_delivery(
            order.id,
            delivery.status,
            changes,
            {**_guard_snapshot(order), "delivery_partner_id": delivery.delivery_partner_id},
            order_changes,
        )
        if result is None:
            current = await self.store.get_delivery(order.id)
            current_status = current.status.value if current else None
            raise InvalidTransitionError(current_status=current_status, action=f"advance_to_{status.value}")

        updated_order, updated_delivery = result
        order_transitions_total.labels(action=action, to_status=new_order_status.value).inc()
        logger.info(
            "Delivery %s for order %s: %s -> %s (by %s)",
            delivery.id,
            order.id,
            delivery.status.value,
            new_delivery_status.value,
            actor.id,
        )
        await notify(self.notifier, "orders", "UPDATE", updated_order)
        await notify(self.notifier, "deliveries", "UPDATE", updated_delivery)
        return updated_order, updated_delivery

    async def earnings_summary(self, actor: Actor, period: EarningsPeriod = "all") -> dict:
        """
        Completed deliveries and earnings within period (by delivery time, UTC days),
        plus what is still in progress regardless of period.
        """
        require_role(actor, Role.DELIVERY_PARTNER)
        start, end = earnings_window(period, utcnow())
        completed, active = [], []
        for delivery in await self.store.list_deliveries(actor.id):
            if delivery.status != DeliveryStatus.DELIVERED:
                active.append(delivery)
            elif _within(delivery.delivered_at, start, end):
                completed.append(delivery)
        return {
            "period": period,
            "completed_deliveries": len(completed),
            "active_deliveries": len(active),
            "total_earnings": sum((d.earnings for d in completed), Decimal("0")),
            "pending_earnings": sum((d.earnings for d in active), Decimal("0")),
        }
