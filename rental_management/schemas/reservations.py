from typing import Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, model_validator


MIN_QUANTITY = 1
MAX_QUANTITY = 99
MIN_IDEMPOTENCY_KEY_LENGTH = 10
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class CustomerDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=200)
    email: Optional[str] = Field(default=None, max_length=255, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(default=None, min_length=3, max_length=30)

    @model_validator(mode="after")
    def _require_contact_channel(self):
        if not self.email and not self.phone:
            raise ValueError("customer needs an email or a phone number")
        return self


class CreateHoldRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    unitTypeId: str = Field(min_length=1, max_length=36)
    providerId: str = Field(min_length=1, max_length=36)
    startDate: AwareDatetime
    endDate: AwareDatetime
    idempotencyKey: Optional[str] = Field(default=None, min_length=MIN_IDEMPOTENCY_KEY_LENGTH, max_length=255)
    quantity: int = Field(default=1, ge=MIN_QUANTITY, le=MAX_QUANTITY)
    customer: CustomerDto
    totalPrice: Optional[float] = Field(default=None, ge=0)
    depositPaid: bool = False
    notes: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _require_ordered_window(self):
        if not self.startDate < self.endDate:
            raise ValueError("endDate must be after startDate")
        return self


class ConfirmRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    paymentReference: Optional[str] = Field(default=None, max_length=255)


class CancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = Field(default=None, max_length=500)


class IssueRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    override: bool = False
    overrideReason: Optional[str] = Field(default=None, max_length=500)


class ReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    damaged: bool = False
    notes: Optional[str] = Field(default=None, max_length=1000)


class AssignAssetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    assetId: str = Field(min_length=1, max_length=36)
