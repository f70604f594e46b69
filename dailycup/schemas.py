from pydantic import BaseModel, Field, field_validator
from typing import List, Optional, Literal
from datetime import datetime


class ItemIn(BaseModel):
    id: Optional[str] = None
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1, le=100)
    notes: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v):
        return None if v is None else str(v)


class CustomerIn(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None


class OrderCreate(BaseModel):
    items: List[ItemIn] = Field(default_factory=list)
    total: float = 0
    customer: CustomerIn = Field(default_factory=CustomerIn)
    paymentMethod: str = "xendit"
    deliveryMethod: Literal["dine-in", "takeaway", "delivery"] = "takeaway"
    discount: float = Field(default=0, ge=0)
    deliveryFee: float = Field(default=0, ge=0)
    notes: Optional[str] = None


class OrderCreated(BaseModel):
    success: bool = True
    orderId: str
    order_number: str
    invoice_url: Optional[str] = None
    redirect: Optional[str] = None


class OrderItemOut(BaseModel):
    id: int
    product_id: Optional[str]
    product_name: str
    unit_price: float
    quantity: int
    subtotal: float

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    user_id: Optional[int]
    customer_name: str
    customer_email: Optional[str]
    customer_phone: Optional[str]
    status: str
    payment_status: str
    payment_method: str
    subtotal: float
    discount: float
    delivery_fee: float
    final_amount: float
    delivery_method: str
    delivery_address: Optional[str]
    delivery_lat: Optional[float]
    delivery_lng: Optional[float]
    geocode_status: str
    geocode_attempts: int
    courier_id: Optional[int]
    departure_photo_url: Optional[str]
    arrival_photo_url: Optional[str]
    created_at: datetime
    assigned_at: Optional[datetime]
    pickup_time: Optional[datetime]
    delivery_time: Optional[datetime]
    paid_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    items: List[OrderItemOut] = Field(default_factory=list)

    class Config:
        from_attributes = True


class StatusUpdateIn(BaseModel):
    status: str
    notes: Optional[str] = None


class CODRequest(BaseModel):
    """POST /cod body; action-specific fields are validated by each handler."""
    order_id: str
    action: str
    status: Optional[str] = None
    notes: Optional[str] = None
    amount: Optional[float] = None
    receiver_name: Optional[str] = None
    receiver_relation: Optional[str] = None
    payment_notes: Optional[str] = None
    courier_name: Optional[str] = None
    courier_phone: Optional[str] = None
    tracking_number: Optional[str] = None
    admin_notes: Optional[str] = None


class CODHistoryOut(BaseModel):
    status: str
    actor: str
    notes: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class CODTrackingOut(BaseModel):
    order_number: str
    status: str
    courier_name: Optional[str]
    courier_phone: Optional[str]
    tracking_number: Optional[str]
    notes: Optional[str]
    admin_notes: Optional[str]
    confirmed_at: Optional[datetime]
    packed_at: Optional[datetime]
    out_for_delivery_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    payment_received: bool
    payment_received_at: Optional[datetime]
    payment_amount: Optional[float]
    receiver_name: Optional[str]
    receiver_relation: Optional[str]
    history: List[CODHistoryOut] = Field(default_factory=list)


class CourierCreate(BaseModel):
    name: str
    phone: Optional[str] = None
    vehicle_type: Optional[str] = None
    rating: float = Field(default=5.0, ge=0, le=5)


class CourierOut(BaseModel):
    id: int
    name: str
    phone: Optional[str]
    vehicle_type: Optional[str]
    status: str
    rating: float
    total_deliveries: int
    is_active: bool

    class Config:
        from_attributes = True


class AvailabilityIn(BaseModel):
    status: Literal["available", "offline"]


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0)
    speed: Optional[float] = Field(default=None, ge=0)


class AssignIn(BaseModel):
    courier_id: Optional[int] = None


class PositionEvent(BaseModel):
    lat: float
    lng: float
    timestamp: datetime
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None


class TrackingSnapshot(BaseModel):
    order_number: str
    status: str
    progress: int
    courier: Optional[CourierOut] = None
    location: Optional[PositionEvent] = None
    destination: Optional[dict] = None
    distance_km: Optional[float] = None
    eta_minutes: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)


class GeocodeFailureOut(BaseModel):
    order_number: str
    delivery_address: Optional[str]
    geocode_status: str
    geocode_attempts: int
    geocode_error: Optional[str]


class AuditEntryOut(BaseModel):
    id: int
    action: str
    actor: Optional[str]
    level: str
    order_ref: Optional[str]
    meta: Optional[dict] = None
    created_at: datetime
