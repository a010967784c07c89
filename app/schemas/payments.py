from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class BillingAddress(BaseModel):
    # Checked for blanks in the route so the client gets one 400 listing every missing field
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipcode: Optional[str] = None
    country: Optional[str] = None


class CustomerDetails(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None


class CreatePaymentRequest(BaseModel):
    billing: BillingAddress
    customer: CustomerDetails = CustomerDetails()
    plan_id: Optional[str] = None


class CreatePaymentResponse(BaseModel):
    payment_link: str
    payment_id: Optional[str] = None
    total_amount: Optional[int] = None
    plan_id: str


class VerifyPaymentRequest(BaseModel):
    payment_id: str


class VerifyPaymentResponse(BaseModel):
    already_processed: bool
    status: str
    message: str


class PaymentRecordResponse(BaseModel):
    id: int
    external_payment_id: str
    amount: int
    currency: str
    status: str
    plan_id: Optional[str] = None
    credits_granted: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PaymentHistoryResponse(BaseModel):
    payments: List[PaymentRecordResponse]


class RecordPaymentRequest(BaseModel):
    """Admin entry for a payment the webhook could not apply."""

    payment_id: str
    user_id: Optional[int] = None
    email: Optional[EmailStr] = None
    plan_id: Optional[str] = None
    credits: Optional[int] = Field(None, gt=0)
    amount: Optional[int] = None
    currency: Optional[str] = None
    payer_name: Optional[str] = None


class RecordPaymentResponse(BaseModel):
    applied: bool
    status: str
    payment_id: str
    user_id: int
    credits_granted: int
    new_balance: int
