from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from oddsly_billing.policy import PlanType, SubscriptionStatus


class CreatePaymentIntentRequest(BaseModel):
    amount: int = Field(gt=0)
    isTrialPeriod: bool = False
    userId: str = Field(min_length=1)
    email: Optional[str] = None
    interval: Optional[Literal["month", "year"]] = None


class CreatePaymentIntentResponse(BaseModel):
    clientSecret: str
    paymentIntentId: str


class ConfirmPaymentRequest(BaseModel):
    userId: str = Field(min_length=1)
    paymentIntentId: str = Field(min_length=1)


class CancelSubscriptionRequest(BaseModel):
    userId: str = Field(min_length=1)


class CancelSubscriptionResponse(BaseModel):
    message: str
    endDate: str


class LaunchRequest(BaseModel):
    userId: Optional[str] = None


class SubscriptionSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    type: PlanType = Field(validation_alias="plan_type")
    status: SubscriptionStatus
    startDate: datetime = Field(validation_alias="start_date")
    endDate: datetime = Field(validation_alias="end_date")
    paymentId: str = Field(validation_alias="payment_id")
    amount: int
    autoRenew: bool = Field(validation_alias="auto_renew")


class PaymentSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: str
    amount: int
    date: datetime
    type: PlanType = Field(validation_alias="plan_type")
    status: str


class LaunchResponse(BaseModel):
    state: str
    route: str
    reason: Optional[str] = None
    renewed: bool = False
    subscription: Optional[SubscriptionSchema] = None


class ConfirmPaymentResponse(BaseModel):
    status: str
    subscription: Optional[SubscriptionSchema] = None


class BillingSummaryResponse(BaseModel):
    subscription: Optional[SubscriptionSchema] = None
    history: List[SubscriptionSchema]
    payments: List[PaymentSchema]
