"""Shared fixtures: a fresh ledger per test, driven by a stepping clock."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from ledger import Ledger
from models import BatchStatus, Role, TransactionKind, TransactionRequest
from trace_service import TraceQueryService
from utils import BatchIdGenerator

BATCH_ID = "AYUR-20240115-042"


class StepClock:
    """Returns a new instant, ``step`` later, on every call."""

    def __init__(self, start=datetime(2024, 1, 15, 8, 0, tzinfo=timezone.utc),
                 step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now += self.step
        return current


def registration(batch_id=BATCH_ID, farmer="farmer-1", herb="Ashwagandha",
                 quantity=10, unit="kg", **extra):
    payload = {"herb_type": herb, "quantity": quantity, "unit": unit}
    payload.update(extra)
    return TransactionRequest(
        kind=TransactionKind.REGISTERED,
        actor=farmer,
        actor_role=Role.FARMER,
        batch_id=batch_id,
        payload=payload,
    )


def status_change(status, batch_id=BATCH_ID, actor="distributor-1",
                  role=Role.DISTRIBUTOR, notes=""):
    return TransactionRequest(
        kind=TransactionKind.STATUS_CHANGED,
        actor=actor,
        actor_role=role,
        batch_id=batch_id,
        payload={"status": BatchStatus(status).value, "notes": notes},
    )


def transfer(new_owner, batch_id=BATCH_ID, actor="distributor-1",
             role=Role.DISTRIBUTOR, new_owner_role=Role.RETAILER, notes=""):
    return TransactionRequest(
        kind=TransactionKind.TRANSFERRED,
        actor=actor,
        actor_role=role,
        batch_id=batch_id,
        payload={"new_owner": new_owner, "new_owner_role": Role(new_owner_role).value,
                 "notes": notes},
    )


def tamper(ledger, batch_id, position, **payload_changes):
    """Rewrite a stored record's payload in place, leaving its hash stale."""
    chain = ledger._chains[batch_id]
    record = chain[position]
    chain[position] = record.model_copy(update={"payload": {**record.payload, **payload_changes}})


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def ledger(clock):
    return Ledger(id_generator=BatchIdGenerator(seed=7), clock=clock)


@pytest.fixture
def trace(ledger):
    return TraceQueryService(ledger)


@pytest.fixture
def verified_batch(ledger):
    """AYUR-20240115-042 registered by farmer-1 and verified by distributor-1."""
    ledger.append(registration())
    ledger.append(status_change("verified"))
    return BATCH_ID


@pytest.fixture
def client(ledger):
    from app import app, get_ledger

    app.dependency_overrides[get_ledger] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()
