"""Tests for the read-side trace queries."""

import json

import pytest

from conftest import BATCH_ID, registration, status_change, tamper, transfer
from errors import UnknownBatch
from models import BatchStatus, TransactionKind


@pytest.fixture
def traced(ledger):
    ledger.append(registration(
        location={"lat": 26.91, "lng": 75.78, "address": "Farm Location, Jaipur"},
        notes="Sun-dried roots",
    ))
    ledger.append(status_change("verified", notes="Lab report OK"))
    ledger.append(transfer("retailer-9"))
    return BATCH_ID


def test_get_batch(trace, traced):
    batch = trace.get_batch(traced)
    assert batch.current_owner == "retailer-9"
    assert batch.status is BatchStatus.VERIFIED
    assert batch.location.address == "Farm Location, Jaipur"
    assert batch.transaction_count == 3


def test_get_unknown_batch(trace):
    with pytest.raises(UnknownBatch) as exc:
        trace.get_batch("AYUR-20240115-999")
    assert exc.value.code == "unknown_batch"
    assert trace.find_batch("AYUR-20240115-999") is None


def test_audit_trail_reads_like_a_story(trace, traced):
    entries = trace.audit_trail(traced)
    assert [e.kind for e in entries] == [
        TransactionKind.REGISTERED, TransactionKind.STATUS_CHANGED, TransactionKind.TRANSFERRED,
    ]
    assert entries[0].description == (
        "10 kg of Ashwagandha harvested and registered by farmer-1 at Farm Location, Jaipur"
    )
    assert entries[1].description == "Verified by distributor-1: Lab report OK"
    assert entries[2].description == "Transferred from distributor-1 to retailer-9 (retailer)"


def test_re_review_is_described(ledger, trace):
    ledger.append(registration())
    ledger.append(status_change("rejected"))
    ledger.append(status_change("pending", notes="new sample"))
    descriptions = [e.description for e in trace.audit_trail(BATCH_ID)]
    assert descriptions[1] == "Rejected by distributor-1"
    assert descriptions[2] == "Sent back for re-review by distributor-1: new sample"


def test_trace_flags_tampering(ledger, trace, traced):
    assert trace.trace(traced).verified is True
    tamper(ledger, traced, 0, quantity=100)
    result = trace.trace(traced)
    assert result.verified is False
    assert len(result.entries) == 3


def test_qr_payload_is_enough_to_look_up(trace, traced):
    payload = trace.qr_payload(traced)
    assert payload.batchId == traced
    assert payload.herbType == "Ashwagandha"
    assert payload.farmer == "farmer-1"

    text = payload.compact()
    assert json.loads(text)["batchId"] == traced
    assert trace.lookup_qr(text).batch.id == traced


def test_lookup_by_bare_id(trace, traced):
    assert trace.lookup_qr(f"  {traced} ").batch.current_owner == "retailer-9"


@pytest.mark.parametrize("code", ["AYUR-20240115-999", '{"batchId": 5}', "{not json"])
def test_lookup_unknown_code(trace, traced, code):
    with pytest.raises(UnknownBatch):
        trace.lookup_qr(code)


def test_dashboards(ledger, trace):
    ledger.append(registration())
    ledger.append(registration(batch_id="AYUR-20240115-043", herb="Neem"))
    ledger.append(registration(batch_id="AYUR-20240115-044", herb="Amla"))
    ledger.append(status_change("verified"))
    ledger.append(status_change("rejected", batch_id="AYUR-20240115-043"))
    ledger.append(transfer("retailer-9"))

    assert [b.id for b in trace.batches_owned_by("farmer-1")] == [
        "AYUR-20240115-044", "AYUR-20240115-043",
    ]
    assert len(trace.batches_registered_by("farmer-1")) == 3
    assert [b.id for b in trace.batches_with_status(BatchStatus.VERIFIED)] == [BATCH_ID]

    assert trace.status_counts() == {"pending": 1, "verified": 1, "rejected": 1, "total": 3}
    assert trace.status_counts("farmer-1")["total"] == 3
    assert trace.status_counts("retailer-9") == {
        "pending": 0, "verified": 1, "rejected": 0, "total": 1,
    }
    assert trace.status_counts("nobody")["total"] == 0
