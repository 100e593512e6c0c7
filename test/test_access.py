"""Role-scoped reads and mutations."""
from decimal import Decimal

import pydantic
import pytest

from _helper import make_service, order_request, order_to_ready, seed
from quickcare.access import order_view
from quickcare.errors import ForbiddenError, NotFoundError
from quickcare.models import MedicineRequest, MedicineUpdate, OrderStatus


@pytest.mark.asyncio
async def test_customer_cannot_read_or_cancel_someone_elses_order(service, cast):
    order = await service.place_order(cast.customer, order_request((cast.paracetamol, 1)))

    with pytest.raises(ForbiddenError):
        await service.get_order(cast.other_customer, order.id)
    with pytest.raises(ForbiddenError):
        await service.cancel(cast.other_customer, order.id)
    assert (await service.store.get_order(order.id)).status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_missing_order_is_not_found(service, cast):
    with pytest.raises(NotFoundError):
        await service.get_order(cast.customer, "ORD123")


@pytest.mark.asyncio
async def test_customer_lists_only_own_orders(service, cast):
    mine = await service.place_order(cast.customer, order_request((cast.paracetamol, 1)))
    await service.place_order(cast.other_customer, order_request((cast.paracetamol, 1)))

    orders = await service.list_orders(cast.customer)
    assert [o.id for o in orders] == [mine.id]


@pytest.mark.asyncio
async def test_customer_cannot_drive_store_transitions(service, cast):
    order = await service.place_order(cast.customer, order_request((cast.paracetamol, 1)))
    with pytest.raises(ForbiddenError):
        await service.confirm(cast.customer, order.id)
    with pytest.raises(ForbiddenError):
        await service.verify_prescription(cast.customer, order.id)


@pytest.mark.asyncio
async def test_forbidden_checked_before_state_machine(service, cast):
    """A preparing order can't be cancelled anyway, but the wrong role hears Forbidden first."""
    order = await service.place_order(cast.customer, order_request((cast.paracetamol, 1)))
    await service.confirm(cast.manager, order.id)
    await service.start_preparing(cast.manager, order.id)

    with pytest.raises(ForbiddenError):
        await service.cancel(cast.partner_a, order.id)


@pytest.mark.asyncio
async def test_global_scope_manager_sees_every_order(service, cast):
    await service.place_order(cast.customer, order_request((cast.paracetamol, 1)))
    await service.place_order(cast.customer, order_request((cast.cetirizine, 1)))

    assert len(await service.list_orders(cast.manager)) == 2


@pytest.mark.asyncio
async def test_store_scope_limits_manager_to_own_medicines():
    service = make_service(store_manager_scope="store")
    cast = await seed(service)
    own = await service.place_order(cast.customer, order_request((cast.paracetamol, 1)))
    other = await service.place_order(cast.customer, order_request((cast.cetirizine, 1)))

    assert [o.id for o in await service.list_orders(cast.manager)] == [own.id]
    with pytest.raises(ForbiddenError):
        await service.get_order(cast.manager, other.id)
    with pytest.raises(ForbiddenError):
        await service.confirm(cast.manager, other.id)
    confirmed = await service.confirm(cast.other_manager, other.id)
    assert confirmed.status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_partner_sees_claimable_and_own_orders_only(service, cast):
    pending = await service.place_order(cast.customer, order_request((cast.paracetamol, 1)))
    ready = await order_to_ready(
        service, cast, await service.place_order(cast.customer, order_request((cast.paracetamol, 1)))
    )

    with pytest.raises(ForbiddenError):
        await service.get_order(cast.partner_a, pending.id)
    assert (await service.get_order(cast.partner_a, ready.id)).id == ready.id

    await service.claim_order(cast.partner_a, ready.id)
    assert (await service.get_order(cast.partner_a, ready.id)).delivery_partner_id == cast.partner_a.id
    with pytest.raises(ForbiddenError):
        await service.get_order(cast.partner_b, ready.id)
    assert [o.id for o in await service.list_orders(cast.partner_a)] == [ready.id]


@pytest.mark.asyncio
async def test_partner_view_hides_prescription_image(service, cast):
    order = await service.place_order(
        cast.customer, order_request((cast.amoxicillin, 1), prescription_url="rx/abc.jpg")
    )
    assert order_view(cast.customer, order)["prescription_url"] == "rx/abc.jpg"
    assert "prescription_url" not in order_view(cast.partner_a, order)


@pytest.mark.asyncio
async def test_catalog_visibility(service, cast):
    await service.update_medicine(cast.manager, cast.amoxicillin.id, MedicineUpdate(stock=0))

    customer_view = {m.name for m in await service.list_medicines(cast.customer)}
    assert "Amoxicillin 250mg" not in customer_view
    assert {"Paracetamol 500mg", "Cetirizine 10mg"} <= customer_view

    manager_view = {m.name for m in await service.list_medicines(cast.manager)}
    assert manager_view == {"Paracetamol 500mg", "Amoxicillin 250mg"}

    with pytest.raises(ForbiddenError):
        await service.list_medicines(cast.partner_a)


@pytest.mark.asyncio
async def test_only_owning_manager_edits_medicine(service, cast):
    with pytest.raises(ForbiddenError):
        await service.update_medicine(cast.other_manager, cast.paracetamol.id, MedicineUpdate(price=Decimal("1")))
    with pytest.raises(ForbiddenError):
        await service.delete_medicine(cast.other_manager, cast.paracetamol.id)
    with pytest.raises(ForbiddenError):
        await service.create_medicine(cast.customer, MedicineRequest(name="Aspirin", price=Decimal("10")))

    await service.delete_medicine(cast.manager, cast.paracetamol.id)
    assert await service.store.get_medicine(cast.paracetamol.id) is None


def test_medicine_update_rejects_null_required_fields():
    with pytest.raises(pydantic.ValidationError):
        MedicineUpdate(stock=None)
    with pytest.raises(pydantic.ValidationError):
        MedicineUpdate(price=None)
    update = MedicineUpdate(description=None, stock=3)
    assert update.model_dump(exclude_unset=True) == {"description": None, "stock": 3}
