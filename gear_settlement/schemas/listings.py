from typing import Optional

from pydantic import BaseModel, ConfigDict


class ListingUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ownerID: str
    title: Optional[str] = None
    dailyRate: float
    depositAmount: float = 0
