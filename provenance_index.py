from threading import Lock
from typing import Dict, FrozenSet, List, Set, Tuple

from models import BatchStatus, Role, TransactionKind, TransactionRecord


class ProvenanceIndex:
    """Lookup tables derived from the ledger.

    Only ever fed by ``on_append``; it can be thrown away and rebuilt from the
    ledger at any time.
    """

    def __init__(self):
        self._lock = Lock()
        self._last_seq = 0
        self._seen: Set[int] = set()                    # tx ids already folded in
        self._tx_by_batch: Dict[str, List[int]] = {}    # batch_id -> [tx id]
        self._owned: Dict[str, Set[str]] = {}           # owner -> {batch_id}
        self._owner_of: Dict[str, str] = {}             # batch_id -> owner
        self._role_of: Dict[str, Role] = {}             # batch_id -> holder role
        self._status_of: Dict[str, BatchStatus] = {}    # batch_id -> status
        self._registered_by: Dict[str, List[str]] = {}  # farmer -> [batch_id]

    @classmethod
    def rebuild(cls, ledger) -> "ProvenanceIndex":
        """Fresh index built by replaying every batch history in the ledger."""
        index = cls()
        for batch_id in ledger.batch_ids():
            for record in ledger.history(batch_id):
                index.on_append(record)
        return index

    def on_append(self, record: TransactionRecord) -> None:
        with self._lock:
            # replaying a record already seen is a no-op, in any order
            if record.id in self._seen:
                return
            self._seen.add(record.id)
            self._last_seq = max(self._last_seq, record.id)
            batch_id = record.batch_id
            self._tx_by_batch.setdefault(batch_id, []).append(record.id)

            if record.kind is TransactionKind.REGISTERED:
                self._move(batch_id, record.actor, record.actor_role)
                self._status_of[batch_id] = BatchStatus.PENDING
                self._registered_by.setdefault(record.actor, []).append(batch_id)
            elif record.kind is TransactionKind.STATUS_CHANGED:
                self._status_of[batch_id] = BatchStatus(record.payload["status"])
            elif record.kind is TransactionKind.TRANSFERRED:
                self._move(batch_id, record.payload["new_owner"],
                           Role(record.payload["new_owner_role"]))

    def _move(self, batch_id: str, owner: str, role: Role) -> None:
        prev = self._owner_of.get(batch_id)
        if prev is not None:
            held = self._owned.get(prev)
            if held is not None:
                held.discard(batch_id)
                if not held:
                    del self._owned[prev]
        self._owned.setdefault(owner, set()).add(batch_id)
        self._owner_of[batch_id] = owner
        self._role_of[batch_id] = role

    # ---------- lookups ----------
    @property
    def last_sequence(self) -> int:
        return self._last_seq

    def transaction_ids_for(self, batch_id: str) -> Tuple[int, ...]:
        with self._lock:
            return tuple(self._tx_by_batch.get(batch_id, ()))

    def batches_owned_by(self, identity: str) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._owned.get(identity, ()))

    def batches_registered_by(self, farmer: str) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._registered_by.get(farmer, ()))

    def batches_with_status(self, status: BatchStatus) -> FrozenSet[str]:
        with self._lock:
            return frozenset(b for b, s in self._status_of.items() if s == status)

    def batches_held_by_role(self, role: Role) -> FrozenSet[str]:
        with self._lock:
            return frozenset(b for b, r in self._role_of.items() if r == role)

    def owner_of(self, batch_id: str):
        with self._lock:
            return self._owner_of.get(batch_id)

    def status_of(self, batch_id: str):
        with self._lock:
            return self._status_of.get(batch_id)

    def snapshot(self) -> dict:
        """Plain-dict dump, used to compare a live index with a rebuilt one."""
        with self._lock:
            return {
                "transactions": {b: list(ids) for b, ids in self._tx_by_batch.items()},
                "owned": {o: sorted(bs) for o, bs in self._owned.items()},
                "status": {b: s.value for b, s in self._status_of.items()},
                "roles": {b: r.value for b, r in self._role_of.items()},
                "registered": {f: list(bs) for f, bs in self._registered_by.items()},
            }
