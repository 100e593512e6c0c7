from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, Response

from quickcare.dependencies import get_actor, get_service
from quickcare.models import Actor, MedicineRequest, MedicineUpdate
from quickcare.service import OrderLifecycleService

router = APIRouter(prefix="/medicines", tags=["medicines"])


@router.get("")
async def list_medicines(
    category: str | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    """Customers get the in-stock catalog; store managers get their own inventory."""
    medicines = await service.list_medicines(actor, category=category)
    return JSONResponse(status_code=200, content=[m.model_dump(mode="json") for m in medicines])


@router.post("")
async def create_medicine(
    body: MedicineRequest,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    medicine = await service.create_medicine(actor, body)
    return JSONResponse(status_code=201, content=medicine.model_dump(mode="json"))


@router.patch("/{medicine_id}")
async def update_medicine(
    medicine_id: str,
    body: MedicineUpdate,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    medicine = await service.update_medicine(actor, medicine_id, body)
    return JSONResponse(status_code=200, content=medicine.model_dump(mode="json"))


@router.delete("/{medicine_id}")
async def delete_medicine(
    medicine_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> Response:
    await service.delete_medicine(actor, medicine_id)
    return Response(status_code=204)
