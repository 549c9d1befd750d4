from pydantic import BaseModel, Field
from typing import Optional

class ReenableCounts(BaseModel):
    enabled: int
    failed: int

class PaymentResult(BaseModel):
    status: str
    transaction_id: Optional[int] = None
    reactivated: Optional[str] = None
    reenable: Optional[ReenableCounts] = None
    detail: Optional[str] = None

class CardDecisionRequest(BaseModel):
    operator: str = Field(min_length=1, max_length=64)
    note: Optional[str] = Field(default=None, max_length=255)
