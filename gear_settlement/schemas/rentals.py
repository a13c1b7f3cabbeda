from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    gearID: int
    startTime: datetime
    endTime: datetime
    location: Optional[str] = None
    protectionType: Literal["standard", "premium"] = "standard"
    insuranceCost: float = 0


class ScheduleReturnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    meetingTime: datetime


class InspectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None
    hasDamage: bool = False
    damageDescription: Optional[str] = None
    photos: List[str] = []


class ReadyForPickupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None


class ConfirmReceiptRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    hasDamage: bool = False
    description: Optional[str] = None
    photos: List[str] = []


class OpenDisputeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: str
    photos: List[str] = []


class ResolveDisputeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    outcome: Literal["cleared", "partial_charge", "full_charge"]
    amount: Optional[float] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


class RatingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rating: int
    review: Optional[str] = None


class ExtensionRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    additionalDays: int
    notes: Optional[str] = None


class ExtensionDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None
