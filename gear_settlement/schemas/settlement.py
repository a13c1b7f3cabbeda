from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class DepositChargeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: float
    reason: str
    notes: Optional[str] = None


class DepositReleaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None


class CreatePayoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    feeRate: Optional[float] = None


class PayoutStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["pending", "processing", "paid", "failed"]
    notes: Optional[str] = None


class PayoutBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    threshold: Optional[float] = None
    feeRate: Optional[float] = None
