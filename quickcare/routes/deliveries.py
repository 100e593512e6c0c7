from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from quickcare.access import order_view
from quickcare.dependencies import get_actor, get_service
from quickcare.models import Actor, DeliveryStatus, EarningsPeriod
from quickcare.service import OrderLifecycleService

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


class AdvanceDeliveryBody(BaseModel):
    status: DeliveryStatus = Field(..., description="Next delivery status; one step at a time")
    estimated_delivery_time: datetime | None = None


@router.get("/available")
async def available_orders(
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    """Ready, unassigned orders any delivery partner may claim."""
    orders = await service.available_orders(actor)
    return JSONResponse(status_code=200, content=[order_view(actor, o) for o in orders])


@router.get("/current")
async def current_deliveries(
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    current = await service.current_deliveries(actor)
    return JSONResponse(
        status_code=200,
        content=[
            {"order": order_view(actor, order), "delivery": delivery.model_dump(mode="json")}
            for order, delivery in current
        ],
    )


@router.get("/earnings")
async def earnings(
    period: EarningsPeriod = Query(default="all"),
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    """Delivered count and earnings for all time, today, yesterday, the last week or month."""
    summary = await service.earnings_summary(actor, period=period)
    return JSONResponse(
        status_code=200,
        content={k: str(v) if not isinstance(v, int) else v for k, v in summary.items()},
    )


@router.post("/{order_id}/claim")
async def claim_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    """
    Bind the caller to the order. Exactly one of several concurrent claims wins;
    the others get 409 already_assigned.
    """
    order, delivery = await service.claim_order(actor, order_id)
    return JSONResponse(
        status_code=201,
        content={"order": order_view(actor, order), "delivery": delivery.model_dump(mode="json")},
    )


@router.post("/{order_id}/status")
async def advance_delivery(
    order_id: str,
    body: AdvanceDeliveryBody,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    order, delivery = await service.advance_delivery(
        actor,
        order_id,
        body.status,
        estimated_delivery_time=body.estimated_delivery_time,
    )
    return JSONResponse(
        status_code=200,
        content={"order": order_view(actor, order), "delivery": delivery.model_dump(mode="json")},
    )
