import json

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from quickcare.access import order_view
from quickcare.dependencies import get_actor, get_service
from quickcare.errors import OrderLifecycleError
from quickcare.models import Actor, Order, OrderStatus, PaymentStatus, PlaceOrderRequest
from quickcare.service import OrderLifecycleService
from quickcare.tracking import track_order

router = APIRouter(prefix="/orders", tags=["orders"])


class PaymentBody(BaseModel):
    payment_status: PaymentStatus


class PrescriptionBody(BaseModel):
    prescription_url: str = Field(..., min_length=1, description="Reference returned by the file store")


def _order_response(actor: Actor, order: Order, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=order_view(actor, order))


@router.post("")
async def place_order(
    body: PlaceOrderRequest,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    order = await service.place_order(actor, body)
    return _order_response(actor, order, status_code=201)


@router.get("")
async def list_orders(
    status: OrderStatus | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    """Orders visible to the caller: own orders (customer), store orders (manager), assigned orders (partner)."""
    orders = await service.list_orders(actor, status=status)
    return JSONResponse(status_code=200, content=[order_view(actor, o) for o in orders])


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    return _order_response(actor, await service.get_order(actor, order_id))


@router.post("/{order_id}/confirm")
async def confirm_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    return _order_response(actor, await service.confirm(actor, order_id))


@router.post("/{order_id}/prepare")
async def start_preparing(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    return _order_response(actor, await service.start_preparing(actor, order_id))


@router.post("/{order_id}/ready")
async def mark_ready(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    return _order_response(actor, await service.mark_ready(actor, order_id))


@router.post("/{order_id}/verify-prescription")
async def verify_prescription(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    return _order_response(actor, await service.verify_prescription(actor, order_id))


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    return _order_response(actor, await service.cancel(actor, order_id))


@router.post("/{order_id}/dispatch")
async def dispatch_order(
    order_id: str,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    order, delivery = await service.dispatch(actor, order_id)
    return JSONResponse(
        status_code=200,
        content={"order": order_view(actor, order), "delivery": delivery.model_dump(mode="json")},
    )


@router.post("/{order_id}/payment")
async def record_payment(
    order_id: str,
    body: PaymentBody,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    return _order_response(actor, await service.record_payment(actor, order_id, body.payment_status))


@router.post("/{order_id}/prescription")
async def attach_prescription(
    order_id: str,
    body: PrescriptionBody,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    return _order_response(actor, await service.attach_prescription(actor, order_id, body.prescription_url))


@router.get("/{order_id}/events")
async def order_events(
    order_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> StreamingResponse:
    """
    Server-sent events: one `data:` line per order snapshot until the order is terminal
    or the client goes away. Errors after the stream started are sent as an `error` event.
    """
    await service.get_order(actor, order_id)

    async def stream():
        tracker = track_order(service, actor, order_id)
        try:
            async for order in tracker:
                if await request.is_disconnected():
                    break
                yield f"data: {json.dumps(order_view(actor, order))}\n\n"
        except OrderLifecycleError as e:
            yield f"event: error\ndata: {json.dumps({'error': e.code, 'detail': str(e)})}\n\n"
        finally:
            await tracker.aclose()

    return StreamingResponse(stream(), media_type="text/event-stream")
