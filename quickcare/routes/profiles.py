from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from quickcare.dependencies import get_actor, get_service
from quickcare.models import Actor, Role
from quickcare.service import OrderLifecycleService

router = APIRouter(prefix="/profiles", tags=["profiles"])


class CreateProfileBody(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str | None = None
    role: Role = Field(..., description="Fixed for the lifetime of the account")


@router.post("")
async def create_profile(
    body: CreateProfileBody,
    x_user_id: str | None = Header(default=None),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    """Signup: bind a role and display name to the authenticated identity."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
    profile = await service.create_profile(x_user_id, body.full_name, body.role, phone=body.phone)
    return JSONResponse(status_code=201, content=profile.model_dump(mode="json"))


@router.get("/me")
async def my_profile(
    actor: Actor = Depends(get_actor),
    service: OrderLifecycleService = Depends(get_service),
) -> JSONResponse:
    profile = await service.get_profile(actor)
    return JSONResponse(status_code=200, content=profile.model_dump(mode="json"))
