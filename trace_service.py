import json
from typing import Dict, List, Optional

from errors import UnknownBatch
from ledger import Ledger
from models import (
    Batch,
    BatchStatus,
    ProductTrace,
    QRPayload,
    TraceEntry,
    TransactionKind,
    TransactionRecord,
)
from utils import first_broken_link


def describe(record: TransactionRecord) -> str:
    """One-line, consumer-facing description of a ledger entry."""
    p = record.payload
    if record.kind is TransactionKind.REGISTERED:
        text = f"{p['quantity']:g} {p['unit']} of {p['herb_type']} harvested and registered by {record.actor}"
        location = p.get("location") or {}
        if location.get("address"):
            text += f" at {location['address']}"
        return text
    if record.kind is TransactionKind.STATUS_CHANGED:
        status = p["status"]
        verb = {
            BatchStatus.VERIFIED.value: "Verified",
            BatchStatus.REJECTED.value: "Rejected",
            BatchStatus.PENDING.value: "Sent back for re-review",
        }[status]
        text = f"{verb} by {record.actor}"
    else:
        text = f"Transferred from {record.actor} to {p['new_owner']} ({p['new_owner_role']})"
    if p.get("notes"):
        text += f": {p['notes']}"
    return text


class TraceQueryService:
    """Read-only queries over the ledger and its provenance index."""

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self.index = ledger.index

    def get_batch(self, batch_id: str) -> Batch:
        batch = self.ledger.state(batch_id)
        if batch is None:
            raise UnknownBatch(batch_id)
        return batch

    def find_batch(self, batch_id: str) -> Optional[Batch]:
        return self.ledger.state(batch_id)

    def audit_trail(self, batch_id: str) -> List[TraceEntry]:
        history = self.ledger.history(batch_id)
        if not history:
            raise UnknownBatch(batch_id)
        return [self._entry(r) for r in history]

    def trace(self, batch_id: str) -> ProductTrace:
        # fold and trail from one snapshot so they agree with each other
        history = self.ledger.history(batch_id)
        if not history:
            raise UnknownBatch(batch_id)
        return ProductTrace(
            batch=self.ledger.state_machine.fold(history),
            verified=first_broken_link(history) is None,
            entries=[self._entry(r) for r in history],
        )

    @staticmethod
    def _entry(record: TransactionRecord) -> TraceEntry:
        return TraceEntry(
            sequence=record.id,
            kind=record.kind,
            actor=record.actor,
            actor_role=record.actor_role,
            timestamp=record.timestamp,
            description=describe(record),
            hash=record.hash,
        )

    # ---------- dashboards ----------
    def _batches(self, batch_ids) -> List[Batch]:
        out = []
        for batch_id in batch_ids:
            batch = self.ledger.state(batch_id)
            if batch is not None:
                out.append(batch)
        out.sort(key=lambda b: b.created_at, reverse=True)
        return out

    def batches_owned_by(self, identity: str) -> List[Batch]:
        return self._batches(self.index.batches_owned_by(identity))

    def batches_registered_by(self, farmer: str) -> List[Batch]:
        return self._batches(self.index.batches_registered_by(farmer))

    def batches_with_status(self, status: BatchStatus) -> List[Batch]:
        return self._batches(self.index.batches_with_status(status))

    def status_counts(self, identity: Optional[str] = None) -> Dict[str, int]:
        if identity is None:
            batch_ids = self.ledger.batch_ids()
        else:
            batch_ids = set(self.index.batches_owned_by(identity))
            batch_ids.update(self.index.batches_registered_by(identity))
        counts = {s.value: 0 for s in BatchStatus}
        for batch_id in batch_ids:
            status = self.index.status_of(batch_id)
            if status is not None:
                counts[status.value] += 1
        counts["total"] = sum(counts.values())
        return counts

    # ---------- QR ----------
    def qr_payload(self, batch_id: str) -> QRPayload:
        batch = self.get_batch(batch_id)
        return QRPayload(
            batchId=batch.id,
            herbType=batch.herb_type,
            quantity=batch.quantity,
            unit=batch.unit,
            farmer=batch.origin_owner,
            createdAt=batch.created_at,
        )

    @staticmethod
    def decode_qr(text: str) -> str:
        """Batch id from scanned text: a compact QR payload or a bare id."""
        text = (text or "").strip()
        if text.startswith("{"):
            try:
                return QRPayload.model_validate(json.loads(text)).batchId
            except ValueError as e:
                raise UnknownBatch(text) from e
        return text

    def lookup_qr(self, text: str) -> ProductTrace:
        return self.trace(self.decode_qr(text))
