"""
Shared helpers for the test-suite: an in-memory service and a seeded cast of users and medicines.
"""
from dataclasses import dataclass
from decimal import Decimal

from quickcare.config import Settings
from quickcare.models import (
    Actor,
    Medicine,
    MedicineRequest,
    Order,
    OrderItemRequest,
    PlaceOrderRequest,
    Role,
)
from quickcare.notifier import InMemoryNotifier
from quickcare.service import OrderLifecycleService
from quickcare.store import InMemoryOrderStore


def make_settings(**overrides) -> Settings:
    values = {"store_backend": "memory", "notifier_backend": "memory", "resubscribe_delay_sec": 0.0}
    values.update(overrides)
    return Settings(**values)


def make_service(**overrides) -> OrderLifecycleService:
    return OrderLifecycleService(InMemoryOrderStore(), InMemoryNotifier(), make_settings(**overrides))


@dataclass
class Cast:
    customer: Actor
    other_customer: Actor
    manager: Actor
    other_manager: Actor
    partner_a: Actor
    partner_b: Actor
    paracetamol: Medicine  # ₹25, no prescription
    amoxicillin: Medicine  # ₹85, prescription required
    cetirizine: Medicine  # ₹45, other store


async def seed(service: OrderLifecycleService) -> Cast:
    actors = {}
    for user_id, name, role in [
        ("cust-1", "John Doe", Role.CUSTOMER),
        ("cust-2", "Jane Smith", Role.CUSTOMER),
        ("mgr-1", "Sector 15 Pharmacy", Role.STORE_MANAGER),
        ("mgr-2", "Sector 22 Pharmacy", Role.STORE_MANAGER),
        ("dp-a", "Ravi", Role.DELIVERY_PARTNER),
        ("dp-b", "Amit", Role.DELIVERY_PARTNER),
    ]:
        profile = await service.create_profile(user_id, name, role, phone="+91 9876543210")
        actors[user_id] = profile.as_actor()

    paracetamol = await service.create_medicine(
        actors["mgr-1"],
        MedicineRequest(name="Paracetamol 500mg", category="Pain Relief", price=Decimal("25"), stock=100),
    )
    amoxicillin = await service.create_medicine(
        actors["mgr-1"],
        MedicineRequest(
            name="Amoxicillin 250mg",
            category="Antibiotics",
            price=Decimal("85"),
            stock=10,
            prescription_required=True,
        ),
    )
    cetirizine = await service.create_medicine(
        actors["mgr-2"],
        MedicineRequest(name="Cetirizine 10mg", category="Allergy", price=Decimal("45"), stock=5),
    )
    return Cast(
        customer=actors["cust-1"],
        other_customer=actors["cust-2"],
        manager=actors["mgr-1"],
        other_manager=actors["mgr-2"],
        partner_a=actors["dp-a"],
        partner_b=actors["dp-b"],
        paracetamol=paracetamol,
        amoxicillin=amoxicillin,
        cetirizine=cetirizine,
    )


def order_request(*items: tuple[Medicine, int], **fields) -> PlaceOrderRequest:
    values = {
        "delivery_address": "123 Main St, Sector 15, Gurgaon",
        "delivery_phone": "+91 9876543210",
    }
    values.update(fields)
    return PlaceOrderRequest(
        items=[OrderItemRequest(medicine_id=m.id, quantity=q) for m, q in items],
        **values,
    )


async def order_to_ready(service: OrderLifecycleService, cast: Cast, order: Order) -> Order:
    """Walk a freshly placed order to ready_for_pickup as the store manager."""
    await service.confirm(cast.manager, order.id)
    await service.start_preparing(cast.manager, order.id)
    if order.requires_prescription:
        await service.verify_prescription(cast.manager, order.id)
    return await service.mark_ready(cast.manager, order.id)
