"""
Request bodies, one per operation, validated at the HTTP boundary before reaching the state machine.
"""
from datetime import date, time
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

ServiceType = Literal["courier", "notary"]
ProofKind = Literal["pickup", "delivery"]


class CreateOrderBody(BaseModel):
    service_type: ServiceType
    customer_name: str | None = None
    customer_email: str | None = Field(default=None, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    customer_phone: str | None = None
    pickup_address: str | None = None
    delivery_address: str = Field(..., min_length=1, description="Delivery or appointment address")
    scheduled_date: date | None = None
    scheduled_time: time | None = None
    total_amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    currency: str | None = Field(default=None, min_length=3, max_length=3, description="Defaults to DEFAULT_CURRENCY")

    @field_validator("currency")
    @classmethod
    def lower_currency(cls, v: str | None) -> str | None:
        return v.lower() if v else v

    @model_validator(mode="after")
    def courier_needs_pickup(self) -> "CreateOrderBody":
        if self.service_type == "courier" and not (self.pickup_address or "").strip():
            raise ValueError("pickup_address is required for courier orders")
        return self


class AdminCreateOrderBody(CreateOrderBody):
    prepaid_note: str | None = Field(default=None, description="Skip review and payment; order enters dispatch")

    @field_validator("prepaid_note")
    @classmethod
    def prepaid_note_not_blank(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("prepaid_note must not be blank")
        return v.strip() if v else v


class ApproveBody(BaseModel):
    total_amount: Decimal | None = Field(default=None, gt=0, max_digits=10, decimal_places=2)


class RejectBody(BaseModel):
    reason: str | None = None


class MarkPaidBody(BaseModel):
    note: str = Field(..., min_length=1, description="Justification for bypassing the payment provider")

    @field_validator("note")
    @classmethod
    def note_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("note must not be blank")
        return v.strip()


class AssignBody(BaseModel):
    driver_id: str | None = Field(default=None, description="Omit to pick the least recently assigned driver")


class ProofBody(BaseModel):
    kind: ProofKind
    photo_url: str | None = None
    confirmed: bool = False

    @model_validator(mode="after")
    def artifact_present(self) -> "ProofBody":
        if not self.photo_url and not self.confirmed:
            raise ValueError("either photo_url or confirmed=true is required")
        return self


class LocationBody(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    order_id: str | None = None


class DriverLoginBody(BaseModel):
    email: str = Field(..., min_length=3)


class CreateDriverBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str | None = None
    active: bool = True
    verified: bool = False


class UpdateDriverBody(BaseModel):
    name: str | None = None
    phone: str | None = None
    active: bool | None = None
    verified: bool | None = None
