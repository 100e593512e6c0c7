"""
Records persisted by the store: profiles, medicines, orders (with line items) and deliveries.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_order_id() -> str:
    return f"ORD{uuid.uuid4().hex[:12].upper()}"


def new_delivery_id() -> str:
    return f"DEL{uuid.uuid4().hex[:12].upper()}"


class Role(str, Enum):
    CUSTOMER = "customer"
    STORE_MANAGER = "store_manager"
    DELIVERY_PARTNER = "delivery_partner"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


EarningsPeriod = Literal["all", "today", "yesterday", "week", "month"]

# Statuses an order may hold while no delivery partner is bound to it
UNASSIGNED_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY_FOR_PICKUP,
    OrderStatus.CANCELLED,
})


class DeliveryStatus(str, Enum):
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    COD = "cod"
    ONLINE = "online"


class DeliveryType(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    EMERGENCY = "emergency"


class Actor(BaseModel):
    """Who is performing an operation. Passed explicitly into every service call."""
    model_config = ConfigDict(frozen=True)

    id: str
    role: Role


class Profile(BaseModel):
    id: str = Field(..., description="Same identifier as the authentication identity")
    full_name: str
    phone: str | None = None
    role: Role
    created_at: datetime = Field(default_factory=utcnow)

    def as_actor(self) -> Actor:
        return Actor(id=self.id, role=self.role)


class Medicine(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str | None = None
    category: str | None = None
    manufacturer: str | None = None
    price: Decimal = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    prescription_required: bool = False
    manager_id: str
    image_url: str | None = Field(None, description="Opaque reference to the stored photo")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class OrderLineItem(BaseModel):
    """Snapshot of a medicine at the time the order was placed. Never changes afterwards."""
    model_config = ConfigDict(frozen=True)

    medicine_id: str
    medicine_name: str
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    prescription_required: bool = False
    manager_id: str | None = None

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class Order(BaseModel):
    id: str = Field(default_factory=new_order_id)
    customer_id: str
    items: list[OrderLineItem] = Field(..., min_length=1)
    delivery_fee: Decimal = Field(Decimal("0"), ge=0)
    total_amount: Decimal
    delivery_address: str
    delivery_phone: str
    notes: str | None = None
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    delivery_type: DeliveryType = DeliveryType.STANDARD
    prescription_url: str | None = None
    prescription_verified: bool = False
    delivery_partner_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_total(self) -> "Order":
        expected = self.subtotal + self.delivery_fee
        if self.total_amount != expected:
            raise ValueError(f"total_amount {self.total_amount} != items {self.subtotal} + fee {self.delivery_fee}")
        return self

    @model_validator(mode="after")
    def _check_partner(self) -> "Order":
        if self.delivery_partner_id is None and self.status not in UNASSIGNED_STATUSES:
            raise ValueError(f"an order in status {self.status.value!r} must have a delivery partner")
        return self

    @classmethod
    def create(cls, items: list[OrderLineItem], delivery_fee: Decimal = Decimal("0"), **fields) -> "Order":
        total = sum((item.subtotal for item in items), Decimal("0")) + delivery_fee
        return cls(items=items, delivery_fee=delivery_fee, total_amount=total, **fields)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.subtotal for item in self.items), Decimal("0"))

    @property
    def requires_prescription(self) -> bool:
        return any(item.prescription_required for item in self.items)

    @property
    def prescription_blocked(self) -> bool:
        return self.requires_prescription and not self.prescription_verified


class Delivery(BaseModel):
    id: str = Field(default_factory=new_delivery_id)
    order_id: str
    delivery_partner_id: str
    status: DeliveryStatus = DeliveryStatus.ASSIGNED
    earnings: Decimal = Field(Decimal("0"), ge=0)
    estimated_delivery_time: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ChangeEvent(BaseModel):
    """Row-level change notification, one per written row."""
    table: str
    event: str  # INSERT | UPDATE | DELETE
    row: dict
    at: datetime = Field(default_factory=utcnow)


# Inputs accepted by the service layer


class OrderItemRequest(BaseModel):
    medicine_id: str
    quantity: int = Field(..., gt=0)


class PlaceOrderRequest(BaseModel):
    items: list[OrderItemRequest] = Field(..., min_length=1)
    delivery_address: str = Field(..., min_length=1)
    delivery_phone: str = Field(..., min_length=1)
    notes: str | None = None
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    delivery_type: DeliveryType = DeliveryType.STANDARD
    prescription_url: str | None = None


class MedicineRequest(BaseModel):
    name: str
    description: str | None = None
    category: str | None = None
    manufacturer: str | None = None
    price: Decimal = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    prescription_required: bool = False
    image_url: str | None = None


class MedicineUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    category: str | None = None
    manufacturer: str | None = None
    price: Decimal | None = Field(None, ge=0)
    stock: int | None = Field(None, ge=0)
    prescription_required: bool | None = None
    image_url: str | None = None

    @field_validator("name", "price", "stock", "prescription_required")
    @classmethod
    def _not_null(cls, value):
        # omit a field to leave it unchanged; null would clear a required column
        if value is None:
            raise ValueError("may be omitted but not null")
        return value
