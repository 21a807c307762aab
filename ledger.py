import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from errors import ChainIntegrityViolation, InvalidPayload, LedgerError, UnknownBatch
from models import Batch, TransactionKind, TransactionRecord, TransactionRequest
from provenance_index import ProvenanceIndex
from state_machine import BatchStateMachine
from utils import GENESIS, BatchIdGenerator, compute_hash, first_broken_link, verify_chain

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Ledger:
    """Append-only, hash-chained transaction log for herb batches.

    ``append`` is the only mutator. Appends to one batch are serialized by a
    per-batch lock held across validate-then-write; the sequence counter and
    the stores are guarded by a short global lock so the index sees records in
    sequence order. Readers get tuple snapshots of copied records.
    """

    def __init__(
        self,
        index: Optional[ProvenanceIndex] = None,
        id_generator: Optional[BatchIdGenerator] = None,
        state_machine: Optional[BatchStateMachine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.index = index if index is not None else ProvenanceIndex()
        self.id_generator = id_generator or BatchIdGenerator()
        self.state_machine = state_machine or BatchStateMachine()
        self._clock = clock

        self._seq = 0
        self._records: List[TransactionRecord] = []
        self._chains: Dict[str, List[TransactionRecord]] = {}

        self._store_lock = Lock()
        self._locks_guard = Lock()
        self._batch_locks: Dict[str, Lock] = {}
        self._register_lock = Lock()

    def __len__(self) -> int:
        return len(self._records)

    def _lock_for(self, batch_id: str) -> Lock:
        with self._locks_guard:
            lock = self._batch_locks.get(batch_id)
            if lock is None:
                lock = self._batch_locks[batch_id] = Lock()
            return lock

    # ---------- writes ----------
    def register(self, request: TransactionRequest,
                 sequence_hint: Optional[int] = None) -> TransactionRecord:
        """Append a Registered request, assigning a batch id if it has none.

        Every registration, with or without an id, holds the registration
        lock from id choice through the append.
        """
        if request.kind is not TransactionKind.REGISTERED:
            raise InvalidPayload(f"register() got a {request.kind.value} request",
                                 request.batch_id)
        with self._register_lock:
            if not request.batch_id:
                batch_id = self.id_generator.new_batch_id(self._clock(), self.exists, sequence_hint)
                request = request.model_copy(update={"batch_id": batch_id})
            return self._commit(request)

    def append(self, request: TransactionRequest) -> TransactionRecord:
        """Validate ``request`` and append it to its batch's chain.

        Raises a LedgerError subclass on any violated rule; the ledger is
        unchanged in that case.
        """
        if request.kind is TransactionKind.REGISTERED:
            return self.register(request)
        if not request.batch_id:
            raise InvalidPayload(f"{request.kind.value} request without a batch id")
        return self._commit(request)

    def _commit(self, request: TransactionRequest) -> TransactionRecord:
        batch_id = request.batch_id
        with self._lock_for(batch_id):
            chain = self._chains.get(batch_id, ())
            state = self.state_machine.fold(chain)
            try:
                payload = self.state_machine.validate(state, request)
            except LedgerError as e:
                logger.warning("rejected %s on %s by %s: %s",
                               request.kind.value, batch_id, request.actor, e.code)
                raise
            record = self._append_record(request, payload)

        logger.info("appended #%d %s on %s by %s (%s)",
                    record.id, record.kind.value, batch_id, record.actor, record.hash[:12])
        return record

    def _append_record(self, request: TransactionRequest, payload: dict) -> TransactionRecord:
        batch_id = request.batch_id
        with self._store_lock:
            chain = self._chains.get(batch_id)
            prev = chain[-1] if chain else None
            prev_hash = prev.hash if prev else GENESIS
            ts = self._clock()
            if prev is not None and ts < prev.timestamp:
                ts = prev.timestamp
            record = TransactionRecord(
                id=self._seq + 1,
                batch_id=batch_id,
                kind=request.kind,
                actor=request.actor,
                actor_role=request.actor_role,
                payload=payload,
                prev_hash=prev_hash,
                hash=compute_hash(batch_id, request.kind, request.actor, payload, prev_hash, ts),
                timestamp=ts,
            )
            self._seq = record.id
            self._chains.setdefault(batch_id, []).append(record)
            self._records.append(record)
            self.index.on_append(record)
        return record

    # ---------- reads ----------
    def exists(self, batch_id: str) -> bool:
        return batch_id in self._chains

    def batch_ids(self) -> Tuple[str, ...]:
        with self._store_lock:
            return tuple(self._chains)

    def records(self) -> Tuple[TransactionRecord, ...]:
        with self._store_lock:
            stored = tuple(self._records)
        return tuple(r.model_copy(deep=True) for r in stored)

    def history(self, batch_id: str) -> Tuple[TransactionRecord, ...]:
        """Copies of the batch's records, oldest first.

        Records are frozen but their payload dicts are not, so callers get
        deep copies and can never reach the stored chain.
        """
        with self._store_lock:
            stored = tuple(self._chains.get(batch_id, ()))
        return tuple(r.model_copy(deep=True) for r in stored)

    def state(self, batch_id: str) -> Optional[Batch]:
        return self.state_machine.fold(self.history(batch_id))

    def verify_chain(self, batch_id: str) -> bool:
        return verify_chain(self.history(batch_id))

    def check_chain(self, batch_id: str) -> None:
        history = self.history(batch_id)
        if not history:
            raise UnknownBatch(batch_id)
        broken = first_broken_link(history)
        if broken is not None:
            position, reason = broken
            logger.error("chain integrity violation on %s at record %d: %s",
                         batch_id, position, reason)
            raise ChainIntegrityViolation(batch_id, position, reason)
