from pydantic import BaseModel, Field
from typing import Optional, Dict, List

from models import (
    Batch, BatchStatus, GeoLocation, QRPayload, Role,
    TransactionRecord, Unit,
)

class RegisterHarvest(BaseModel):
    farmer_id: str = Field(..., min_length=1, max_length=64)
    herb_type: str
    quantity: float = Field(..., gt=0)
    unit: Unit = Unit.KG
    location: Optional[GeoLocation] = None
    notes: str = ""
    photo_ref: Optional[str] = None
    batch_id: Optional[str] = None  # AYUR-YYYYMMDD-NNN, assigned when omitted

class StatusUpdate(BaseModel):
    actor: str = Field(..., min_length=1)
    role: Role = Role.DISTRIBUTOR
    status: BatchStatus
    notes: str = ""

class TransferBatch(BaseModel):
    actor: str = Field(..., min_length=1)
    role: Role = Role.DISTRIBUTOR
    new_owner: str = Field(..., min_length=1)
    new_owner_role: Role = Role.RETAILER
    notes: str = ""

class ScanRequest(BaseModel):
    code: str = Field(..., min_length=1)

class RegisterResult(BaseModel):
    batch: Batch
    transaction: TransactionRecord
    qr_payload: QRPayload
    trace_url: str

class TransactionResult(BaseModel):
    batch: Batch
    transaction: TransactionRecord

class BatchSummary(BaseModel):
    batch: Batch
    total_events: int
    verified: bool

class ChainCheck(BaseModel):
    batch_id: str
    verified: bool
    events: int
    reason: Optional[str] = None

class BatchList(BaseModel):
    items: List[Batch]
    total: int

class StatusCounts(BaseModel):
    owner: Optional[str] = None
    counts: Dict[str, int]

class ErrorBody(BaseModel):
    error: str
    detail: str
    message: str
    batch_id: Optional[str] = None

