from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class DodoCustomer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None


class DodoPaymentData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment_id: str
    status: Optional[str] = None
    total_amount: Optional[int] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    customer: DodoCustomer = DodoCustomer()
    metadata: Dict[str, Any] = {}

    @property
    def paid_amount(self) -> Optional[int]:
        return self.total_amount if self.total_amount is not None else self.amount


class DodoWebhookEvent(BaseModel):
    """Dodo payload shape: {"type": "...", "data": {...}}"""

    model_config = ConfigDict(extra="ignore")

    type: str
    business_id: Optional[str] = None
    data: DodoPaymentData


class IdentityEmailAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    email_address: str


class IdentityUserData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email_addresses: List[IdentityEmailAddress] = []
    primary_email_address_id: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    deleted: Optional[bool] = None

    @property
    def primary_email(self) -> Optional[str]:
        for address in self.email_addresses:
            if address.id and address.id == self.primary_email_address_id:
                return address.email_address
        return self.email_addresses[0].email_address if self.email_addresses else None

    @property
    def full_name(self) -> Optional[str]:
        name = " ".join(part for part in (self.first_name, self.last_name) if part).strip()
        return name or None


class IdentityWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    data: IdentityUserData
