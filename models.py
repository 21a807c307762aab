from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

HERB_CATALOG = (
    "Ashwagandha",
    "Turmeric",
    "Tulsi",
    "Brahmi",
    "Neem",
    "Amla",
    "Giloy",
    "Shatavari",
    "Moringa",
    "Licorice",
)


class Unit(str, Enum):
    KG = "kg"
    TONS = "tons"
    POUNDS = "pounds"


class Role(str, Enum):
    FARMER = "farmer"
    DISTRIBUTOR = "distributor"
    RETAILER = "retailer"
    CONSUMER = "consumer"


class BatchStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class TransactionKind(str, Enum):
    REGISTERED = "Registered"
    TRANSFERRED = "Transferred"
    STATUS_CHANGED = "StatusChanged"


# ---------- Payloads (one per kind) ----------
class GeoLocation(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: Optional[str] = None


class RegistrationPayload(BaseModel):
    herb_type: str
    quantity: float = Field(..., gt=0)
    unit: Unit = Unit.KG
    location: Optional[GeoLocation] = None
    notes: str = ""
    photo_ref: Optional[str] = None

    @field_validator("herb_type")
    @classmethod
    def _known_herb(cls, v: str) -> str:
        if v not in HERB_CATALOG:
            raise ValueError(f"unknown herb type {v!r}")
        return v


class StatusPayload(BaseModel):
    status: BatchStatus
    notes: str = ""


class TransferPayload(BaseModel):
    new_owner: str
    new_owner_role: Role = Role.RETAILER
    notes: str = ""


PAYLOAD_MODELS = {
    TransactionKind.REGISTERED: RegistrationPayload,
    TransactionKind.STATUS_CHANGED: StatusPayload,
    TransactionKind.TRANSFERRED: TransferPayload,
}


# ---------- Ledger entries ----------
class TransactionRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: TransactionKind
    actor: str
    actor_role: Role
    payload: Dict[str, Any] = Field(default_factory=dict)
    batch_id: Optional[str] = None


class TransactionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    batch_id: str
    kind: TransactionKind
    actor: str
    actor_role: Role
    payload: Dict[str, Any]
    prev_hash: str
    hash: str
    timestamp: datetime


# ---------- Derived views ----------
class Batch(BaseModel):
    """Current view of a batch, folded from its transaction history."""

    model_config = ConfigDict(frozen=True)

    id: str
    herb_type: str
    quantity: float
    unit: Unit
    origin_owner: str
    current_owner: str
    current_owner_role: Role
    status: BatchStatus
    verified_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    location: Optional[GeoLocation] = None
    notes: str = ""
    photo_ref: Optional[str] = None
    transaction_count: int = 1
    last_hash: str


class TraceEntry(BaseModel):
    sequence: int
    kind: TransactionKind
    actor: str
    actor_role: Role
    timestamp: datetime
    description: str
    hash: str


class ProductTrace(BaseModel):
    batch: Batch
    verified: bool
    entries: List[TraceEntry]


class QRPayload(BaseModel):
    batchId: str
    herbType: str
    quantity: float
    unit: Unit
    farmer: str
    createdAt: datetime

    def compact(self) -> str:
        return self.model_dump_json()
