"""Batch lifecycle rules.

A batch has no state of its own: everything here is computed by folding its
transaction history. ``Unregistered`` is represented by ``None``.

    Unregistered -> Pending -> Verified | Rejected
    Verified | Rejected -> Pending      (re-review)

Ownership moves independently of status, but only while the batch is
Verified, and only by its current holder. The one exception is the first
hand-off: while the registering farmer still holds the batch, the distributor
that verified it may dispatch it. ``verified_by`` is cleared on every
transfer, so that exception is used up once the batch has moved.
"""
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, ValidationError

from errors import (
    DuplicateRegistration,
    IllegalStatusActor,
    IllegalStatusTransition,
    InvalidPayload,
    NotCurrentOwner,
    NotVerifiedForTransfer,
    SelfTransfer,
    StatusUnchanged,
    UnknownBatch,
)
from models import (
    PAYLOAD_MODELS,
    Batch,
    BatchStatus,
    RegistrationPayload,
    Role,
    StatusPayload,
    TransactionKind,
    TransactionRecord,
    TransactionRequest,
    TransferPayload,
)
from utils import parse_batch_id

STATUS_TRANSITIONS = {
    BatchStatus.PENDING: {BatchStatus.VERIFIED, BatchStatus.REJECTED},
    BatchStatus.VERIFIED: {BatchStatus.PENDING},
    BatchStatus.REJECTED: {BatchStatus.PENDING},
}

STATUS_ROLES = {Role.DISTRIBUTOR}


def _parse(kind: TransactionKind, payload: Dict[str, Any], batch_id: Optional[str]) -> BaseModel:
    try:
        return PAYLOAD_MODELS[kind].model_validate(payload)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidPayload(f"invalid {kind.value} payload: {problems}", batch_id) from e


class BatchStateMachine:

    def fold(self, history: Iterable[TransactionRecord]) -> Optional[Batch]:
        state = None
        for record in history:
            state = self.apply(state, record)
        return state

    def validate(self, state: Optional[Batch], request: TransactionRequest) -> Dict[str, Any]:
        """Check ``request`` against the current state.

        Returns the canonical payload to store, or raises the LedgerError
        naming the rule that was broken.
        """
        kind = request.kind
        batch_id = request.batch_id
        if kind is TransactionKind.REGISTERED:
            return self._check_registration(state, request)

        if state is None:
            raise UnknownBatch(batch_id)
        payload = _parse(kind, request.payload, batch_id)
        if kind is TransactionKind.STATUS_CHANGED:
            self._check_status_change(state, request, payload)
        else:
            self._check_transfer(state, request, payload)
        return payload.model_dump(mode="json")

    def _check_registration(self, state: Optional[Batch], request: TransactionRequest) -> Dict[str, Any]:
        batch_id = request.batch_id
        if not batch_id:
            raise InvalidPayload("registration requires a batch id")
        if state is not None:
            raise DuplicateRegistration(batch_id)
        try:
            parse_batch_id(batch_id)
        except ValueError as e:
            raise InvalidPayload(str(e), batch_id) from e
        payload = _parse(TransactionKind.REGISTERED, request.payload, batch_id)
        return payload.model_dump(mode="json")

    def _check_status_change(self, state: Batch, request: TransactionRequest,
                             payload: StatusPayload) -> None:
        if request.actor_role not in STATUS_ROLES:
            raise IllegalStatusActor(state.id, request.actor, request.actor_role.value)
        if payload.status == state.status:
            raise StatusUnchanged(state.id, state.status.value)
        if payload.status not in STATUS_TRANSITIONS[state.status]:
            raise IllegalStatusTransition(state.id, state.status.value, payload.status.value)

    def _check_transfer(self, state: Batch, request: TransactionRequest,
                        payload: TransferPayload) -> None:
        if state.status is not BatchStatus.VERIFIED:
            raise NotVerifiedForTransfer(state.id, state.status.value)
        if request.actor != state.current_owner and not self._may_dispatch(state, request.actor):
            raise NotCurrentOwner(state.id, request.actor, state.current_owner)
        if not payload.new_owner.strip():
            raise InvalidPayload("transfer requires a recipient", state.id)
        if payload.new_owner == state.current_owner:
            raise SelfTransfer(state.id, state.current_owner)

    @staticmethod
    def _may_dispatch(state: Batch, actor: str) -> bool:
        # the verifying distributor ships a batch its farmer still holds
        return (
            state.verified_by is not None
            and state.verified_by == actor
            and state.current_owner == state.origin_owner
            and state.current_owner_role is Role.FARMER
        )

    def apply(self, state: Optional[Batch], record: TransactionRecord) -> Batch:
        """Fold one already-validated record into the batch view."""
        if record.kind is TransactionKind.REGISTERED:
            p = RegistrationPayload.model_validate(record.payload)
            return Batch(
                id=record.batch_id,
                herb_type=p.herb_type,
                quantity=p.quantity,
                unit=p.unit,
                origin_owner=record.actor,
                current_owner=record.actor,
                current_owner_role=record.actor_role,
                status=BatchStatus.PENDING,
                created_at=record.timestamp,
                updated_at=record.timestamp,
                location=p.location,
                notes=p.notes,
                photo_ref=p.photo_ref,
                transaction_count=1,
                last_hash=record.hash,
            )

        if state is None:
            raise UnknownBatch(record.batch_id)
        update = {
            "updated_at": record.timestamp,
            "transaction_count": state.transaction_count + 1,
            "last_hash": record.hash,
        }
        if record.kind is TransactionKind.STATUS_CHANGED:
            status = BatchStatus(record.payload["status"])
            update["status"] = status
            update["verified_by"] = record.actor if status is BatchStatus.VERIFIED else None
        else:
            update["current_owner"] = record.payload["new_owner"]
            update["current_owner_role"] = Role(record.payload["new_owner_role"])
            update["verified_by"] = None
        return state.model_copy(update=update)
