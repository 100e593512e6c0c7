"""
FastAPI dependencies: the lifecycle service and the acting user.
The X-User-Id header carries the identity established by the identity provider; the role
always comes from the stored profile, never from the request.
"""
from fastapi import Depends, Header, HTTPException, Request, status

from quickcare.errors import NotFoundError
from quickcare.models import Actor
from quickcare.service import OrderLifecycleService


def get_service(request: Request) -> OrderLifecycleService:
    return request.app.state.service


async def get_actor(
    x_user_id: str | None = Header(default=None),
    service: OrderLifecycleService = Depends(get_service),
) -> Actor:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
    try:
        return await service.resolve_actor(x_user_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unknown user; create a profile first")
