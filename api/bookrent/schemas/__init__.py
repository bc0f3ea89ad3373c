"""Pydantic schemas for API serialisation."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from bookrent.models.payment import PaymentIntent, PaymentMethodType

# --- Auth ---


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    first_name: str
    last_name: str
    role: str


# --- Booking ---


class BookingCreate(BaseModel):
    reference_code: str = Field(min_length=1, max_length=50)
    client_name: str
    client_email: EmailStr | None = None
    car_model: str | None = None
    delivery_datetime: datetime | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    amount_total: Decimal = Field(ge=0)
    payment_amount_percent: int = Field(default=100, ge=0, le=100)
    security_deposit_amount: Decimal = Field(default=Decimal("0"), ge=0)
    notes: str | None = None


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    reference_code: str
    client_name: str
    client_email: str | None
    car_model: str | None
    delivery_datetime: datetime | None
    currency: str
    amount_total: Decimal
    amount_paid: Decimal
    payment_amount_percent: int
    security_deposit_amount: Decimal
    status: str
    cancelled_at: datetime | None
    deleted_at: datetime | None
    created_at: datetime


# --- Payment ---


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    payment_intent: str
    payment_method_type: str
    amount: Decimal
    fee_percentage: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    currency: str
    payment_link_status: str
    payment_link_url: str | None
    payment_link_expires_at: datetime | None
    gateway_session_id: str | None
    gateway_transaction_id: str | None
    paid_at: datetime | None
    receipt_url: str | None


class PaymentCalculateRequest(BaseModel):
    booking_id: int
    payment_intent: PaymentIntent
    payment_method_type: PaymentMethodType
    amount_override: Decimal | None = Field(default=None, gt=0)


class PaymentCalculateOut(BaseModel):
    original_amount: Decimal
    fee_percentage: Decimal
    fee_amount: Decimal
    total_amount: Decimal


class PaymentLinkCreate(BaseModel):
    booking_id: int
    payment_intent: PaymentIntent = PaymentIntent.CLIENT_PAYMENT
    payment_method_type: PaymentMethodType = PaymentMethodType.VISA_MASTERCARD
    amount: Decimal | None = Field(default=None, gt=0)
    expiry_hours: int | None = Field(default=None, ge=1, le=720)
    description: str | None = None


class BankTransferCreate(BaseModel):
    booking_id: int
    payment_intent: PaymentIntent = PaymentIntent.CLIENT_PAYMENT
    amount: Decimal | None = Field(default=None, gt=0)


class BankTransferConfirm(BaseModel):
    payment_id: int


class BankTransferConfirmOut(BaseModel):
    success: bool
    message: str
    receipt_url: str | None


class PaymentRequirementsOut(BaseModel):
    required_down_payment: Decimal
    amount_paid: Decimal
    down_payment_met: bool
    fully_paid: bool
    can_confirm: bool
    payment_progress_percent: int
    remaining_amount: Decimal


class ReminderTriggerOut(BaseModel):
    booking_id: int
    scheduled: bool
    scheduled_in_minutes: int | None = None
    hours_until_delivery: float | None = None


class FollowupLinksOut(BaseModel):
    created_links: list[int]
    balance_amount: Decimal
    security_deposit_amount: Decimal
    authorization_id: int | None
    reused_authorization: bool


# --- Security deposit ---


class DepositAuthorizeRequest(BaseModel):
    booking_id: int
    amount: Decimal | None = Field(default=None, gt=0)
    payment_method_type: PaymentMethodType | None = None


class DepositAuthorizeOut(BaseModel):
    authorization_id: int
    external_authorization_id: str
    authorization_url: str | None
    expires_at: datetime
    reused_existing: bool


class DepositCapture(BaseModel):
    amount: Decimal = Field(gt=0)
    reason: str = Field(min_length=1)


class DepositAuthorizationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    amount: Decimal
    currency: str
    authorization_id: str
    gateway_transaction_id: str | None
    status: str
    authorized_at: datetime | None
    expires_at: datetime
    captured_amount: Decimal | None
    capture_reason: str | None
    captured_at: datetime | None
    released_at: datetime | None
