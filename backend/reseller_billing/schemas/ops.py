from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

class RemoteResultOut(BaseModel):
    success: bool
    attempts: int
    last_error: Optional[str] = None

class ConfigOpResult(BaseModel):
    outcome: str  # ok|remote_failed|failed
    message: str
    config_id: int
    remote: Optional[RemoteResultOut] = None
    cost_charged: int = 0
    bytes_charged: int = 0

class UpdateLimitsRequest(BaseModel):
    traffic_limit_gb: float = Field(gt=0, le=100000)
    expires_at: Optional[datetime] = None
    max_clients: Optional[int] = Field(default=None, ge=1, le=1000)
    node_ids: Optional[List[int]] = None

class ReenableRequest(BaseModel):
    reason: str = Field(default="wallet", pattern="^(wallet|traffic)$")

class ReenableResult(BaseModel):
    reseller_id: int
    enabled: int
    failed: int

class LedgerEntryOut(BaseModel):
    id: int
    reseller_config_id: Optional[int] = None
    action_type: str
    charged_bytes: int
    amount_charged: int
    price_per_gb: int
    wallet_balance_before: int
    wallet_balance_after: int
    created_at: datetime

class LedgerOut(BaseModel):
    reseller_id: int
    wallet_balance: int
    entries: List[LedgerEntryOut]
    chain_breaks: List[int] = []
