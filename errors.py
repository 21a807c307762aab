from typing import Optional


class LedgerError(Exception):
    """Base class for every rejection the ledger can produce.

    ``code`` is stable and meant for callers that map errors to user
    messages; ``batch_id`` is set whenever the error concerns one batch.
    """

    code = "ledger_error"

    def __init__(self, message: str, batch_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.batch_id = batch_id

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, "batch_id": self.batch_id}


class UnknownBatch(LedgerError):
    code = "unknown_batch"

    def __init__(self, batch_id: str):
        super().__init__(f"batch {batch_id} does not exist", batch_id)


class DuplicateRegistration(LedgerError):
    code = "duplicate_registration"

    def __init__(self, batch_id: str):
        super().__init__(f"batch {batch_id} is already registered", batch_id)


class IllegalStatusActor(LedgerError):
    code = "illegal_status_actor"

    def __init__(self, batch_id: str, actor: str, role: str):
        super().__init__(
            f"{actor} ({role}) may not change the status of batch {batch_id}", batch_id
        )
        self.actor = actor
        self.role = role


class IllegalStatusTransition(LedgerError):
    code = "illegal_status_transition"

    def __init__(self, batch_id: str, current: str, target: str):
        super().__init__(
            f"batch {batch_id} cannot move from {current} to {target}", batch_id
        )
        self.current = current
        self.target = target


class StatusUnchanged(LedgerError):
    code = "status_unchanged"

    def __init__(self, batch_id: str, status: str):
        super().__init__(f"batch {batch_id} is already {status}", batch_id)
        self.status = status


class NotVerifiedForTransfer(LedgerError):
    code = "not_verified_for_transfer"

    def __init__(self, batch_id: str, status: str):
        super().__init__(
            f"batch {batch_id} is {status}; only verified batches can be transferred",
            batch_id,
        )
        self.status = status


class NotCurrentOwner(LedgerError):
    code = "not_current_owner"

    def __init__(self, batch_id: str, actor: str, owner: str):
        super().__init__(
            f"{actor} does not hold batch {batch_id} (current owner: {owner})", batch_id
        )
        self.actor = actor
        self.owner = owner


class SelfTransfer(LedgerError):
    code = "self_transfer"

    def __init__(self, batch_id: str, owner: str):
        super().__init__(f"batch {batch_id} is already owned by {owner}", batch_id)
        self.owner = owner


class InvalidPayload(LedgerError):
    code = "invalid_payload"


class BatchIdExhausted(LedgerError):
    code = "batch_id_exhausted"

    def __init__(self, prefix: str, day: str, attempts: int):
        super().__init__(
            f"no free batch id for {prefix}-{day} after {attempts} attempts"
        )


class ChainIntegrityViolation(LedgerError):
    code = "chain_integrity_violation"

    def __init__(self, batch_id: str, position: int, reason: str):
        super().__init__(
            f"chain of batch {batch_id} broken at record {position}: {reason}", batch_id
        )
        self.position = position
        self.reason = reason


# One message per code; SelfTransfer and NotVerifiedForTransfer need different guidance.
USER_MESSAGES = {
    UnknownBatch.code: "This batch ID doesn't exist in our system.",
    DuplicateRegistration.code: "A batch with this ID has already been registered.",
    IllegalStatusActor.code: "Only distributors can verify or reject a batch.",
    IllegalStatusTransition.code: "Send the batch back for re-review before changing its status.",
    StatusUnchanged.code: "The batch already has this status.",
    NotVerifiedForTransfer.code: "The batch must be verified before it can be transferred.",
    NotCurrentOwner.code: "You no longer hold this batch. Refresh and try again.",
    SelfTransfer.code: "Choose a recipient other than the current owner.",
    InvalidPayload.code: "Some of the submitted details are invalid.",
    BatchIdExhausted.code: "No batch ID is available right now. Please try again.",
    ChainIntegrityViolation.code: "The history of this batch failed verification.",
}


def user_message(err: LedgerError) -> str:
    return USER_MESSAGES.get(err.code, err.message)
