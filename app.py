import os
import io
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Depends, Request, Response, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import qrcode

from errors import ChainIntegrityViolation, LedgerError, UnknownBatch, user_message
from ledger import Ledger
from models import (
    BatchStatus, ProductTrace, Role, TraceEntry, TransactionKind, TransactionRecord,
    TransactionRequest,
)
from schemas import (
    RegisterHarvest, StatusUpdate, TransferBatch, ScanRequest,
    RegisterResult, TransactionResult, BatchSummary, ChainCheck, BatchList,
    StatusCounts, ErrorBody,
)
from trace_service import TraceQueryService
from utils import BatchIdGenerator, DEFAULT_PREFIX

# ---------- Config ----------
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
BATCH_ID_PREFIX = os.getenv("BATCH_ID_PREFIX", DEFAULT_PREFIX)
BATCH_ID_SEED = os.getenv("BATCH_ID_SEED")

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Herb Provenance Ledger", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------- Ledger ----------
def create_ledger() -> Ledger:
    seed = int(BATCH_ID_SEED) if BATCH_ID_SEED else None
    return Ledger(id_generator=BatchIdGenerator(prefix=BATCH_ID_PREFIX, seed=seed))

_ledger = create_ledger()

def get_ledger() -> Ledger:
    return _ledger

def get_trace(ledger: Ledger = Depends(get_ledger)) -> TraceQueryService:
    return TraceQueryService(ledger)

# ---------- Errors ----------
ERROR_STATUS = {
    "unknown_batch": 404,
    "duplicate_registration": 409,
    "illegal_status_actor": 403,
    "illegal_status_transition": 409,
    "status_unchanged": 409,
    "not_verified_for_transfer": 409,
    "not_current_owner": 409,
    "self_transfer": 422,
    "invalid_payload": 422,
    "batch_id_exhausted": 503,
    "chain_integrity_violation": 500,
}

def _errors(*status_codes):
    return {code: {"model": ErrorBody} for code in status_codes}

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    body = ErrorBody(message=user_message(exc), **exc.to_dict())
    return JSONResponse(status_code=ERROR_STATUS.get(exc.code, 400), content=body.model_dump())

# ---------- Helpers ----------
def _trace_url(batch_id: str) -> str:
    return f"{BASE_URL}/product-trace?batch_id={batch_id}"

def _result(ledger: Ledger, record: TransactionRecord) -> TransactionResult:
    return TransactionResult(batch=ledger.state(record.batch_id), transaction=record)

# ---------- Farmer ----------
@app.post("/api/harvests", response_model=RegisterResult, status_code=201,
          responses=_errors(409, 422, 503))
def register_harvest(body: RegisterHarvest,
                     ledger: Ledger = Depends(get_ledger),
                     trace: TraceQueryService = Depends(get_trace)):
    payload = body.model_dump(mode="json", exclude={"farmer_id", "batch_id"})
    record = ledger.register(TransactionRequest(
        kind=TransactionKind.REGISTERED,
        actor=body.farmer_id,
        actor_role=Role.FARMER,
        batch_id=body.batch_id,
        payload=payload,
    ))
    return RegisterResult(
        batch=trace.get_batch(record.batch_id),
        transaction=record,
        qr_payload=trace.qr_payload(record.batch_id),
        trace_url=_trace_url(record.batch_id),
    )

# ---------- Distributor ----------
@app.post("/api/batches/{batch_id}/status", response_model=TransactionResult,
          responses=_errors(403, 404, 409, 422))
def update_status(batch_id: str, body: StatusUpdate, ledger: Ledger = Depends(get_ledger)):
    record = ledger.append(TransactionRequest(
        kind=TransactionKind.STATUS_CHANGED,
        actor=body.actor,
        actor_role=body.role,
        batch_id=batch_id,
        payload={"status": body.status.value, "notes": body.notes},
    ))
    return _result(ledger, record)

@app.post("/api/batches/{batch_id}/transfer", response_model=TransactionResult,
          responses=_errors(404, 409, 422))
def transfer_batch(batch_id: str, body: TransferBatch, ledger: Ledger = Depends(get_ledger)):
    record = ledger.append(TransactionRequest(
        kind=TransactionKind.TRANSFERRED,
        actor=body.actor,
        actor_role=body.role,
        batch_id=batch_id,
        payload={
            "new_owner": body.new_owner,
            "new_owner_role": body.new_owner_role.value,
            "notes": body.notes,
        },
    ))
    return _result(ledger, record)

# ---------- Reads ----------
@app.get("/api/batches/{batch_id}", response_model=BatchSummary,
         responses=_errors(404))
def get_batch_summary(batch_id: str,
                      ledger: Ledger = Depends(get_ledger),
                      trace: TraceQueryService = Depends(get_trace)):
    batch = trace.get_batch(batch_id)
    return BatchSummary(
        batch=batch,
        total_events=batch.transaction_count,
        verified=ledger.verify_chain(batch_id),
    )

@app.get("/api/batches/{batch_id}/history", response_model=list[TransactionRecord],
         responses=_errors(404))
def batch_history(batch_id: str, ledger: Ledger = Depends(get_ledger)):
    history = ledger.history(batch_id)
    if not history:
        raise UnknownBatch(batch_id)
    return list(history)

@app.get("/api/batches/{batch_id}/trace", response_model=ProductTrace,
         responses=_errors(404))
def batch_trace(batch_id: str, trace: TraceQueryService = Depends(get_trace)):
    return trace.trace(batch_id)

@app.get("/api/batches/{batch_id}/audit", response_model=list[TraceEntry],
         responses=_errors(404))
def batch_audit(batch_id: str, trace: TraceQueryService = Depends(get_trace)):
    return trace.audit_trail(batch_id)

@app.get("/api/batches/{batch_id}/verify", response_model=ChainCheck,
         responses=_errors(404))
def verify_batch(batch_id: str, ledger: Ledger = Depends(get_ledger)):
    events = len(ledger.history(batch_id))
    try:
        ledger.check_chain(batch_id)
    except ChainIntegrityViolation as e:
        return ChainCheck(batch_id=batch_id, verified=False, events=events, reason=e.message)
    return ChainCheck(batch_id=batch_id, verified=True, events=events)

@app.get("/api/batches/{batch_id}/qrcode", responses=_errors(404))
def batch_qrcode(batch_id: str, trace: TraceQueryService = Depends(get_trace)):
    payload = trace.qr_payload(batch_id)
    img = qrcode.make(payload.compact())
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")

@app.post("/api/scan", response_model=ProductTrace, responses=_errors(404))
def scan(body: ScanRequest, trace: TraceQueryService = Depends(get_trace)):
    return trace.lookup_qr(body.code)

# ---------- Dashboards ----------
@app.get("/api/owners/{identity}/batches", response_model=BatchList)
def owned_batches(identity: str,
                  registered: bool = Query(False, description="list batches the farmer registered"),
                  trace: TraceQueryService = Depends(get_trace)):
    if registered:
        items = trace.batches_registered_by(identity)
    else:
        items = trace.batches_owned_by(identity)
    return BatchList(items=items, total=len(items))

@app.get("/api/batches", response_model=BatchList)
def list_batches(status: Optional[BatchStatus] = None,
                 trace: TraceQueryService = Depends(get_trace)):
    if status is not None:
        items = trace.batches_with_status(status)
    else:
        items = [trace.get_batch(b) for b in trace.ledger.batch_ids()]
        items.sort(key=lambda b: b.created_at, reverse=True)
    return BatchList(items=items, total=len(items))

@app.get("/api/stats", response_model=StatusCounts)
def stats(owner: Optional[str] = None, trace: TraceQueryService = Depends(get_trace)):
    return StatusCounts(owner=owner, counts=trace.status_counts(owner))

# ---------- Demo data ----------
@app.get("/api/seed")
def seed(ledger: Ledger = Depends(get_ledger)):
    today = datetime.now(timezone.utc)
    default_id = f"{BATCH_ID_PREFIX}-{today:%Y%m%d}-001"
    if ledger.exists(default_id):
        return {"status": "exists", "batch_id": default_id}

    register_harvest(RegisterHarvest(
        farmer_id="farmer-1",
        herb_type="Ashwagandha",
        quantity=10,
        unit="kg",
        location={"lat": 26.9124, "lng": 75.7873, "address": "Farm Location, Jaipur"},
        notes="Sun-dried roots",
        batch_id=default_id,
    ), ledger, TraceQueryService(ledger))
    update_status(default_id, StatusUpdate(
        actor="distributor-1", status=BatchStatus.VERIFIED, notes="Lab report OK"), ledger)
    transfer_batch(default_id, TransferBatch(
        actor="distributor-1", new_owner="retailer-9", new_owner_role=Role.RETAILER), ledger)
    logger.info("seeded demo batch %s", default_id)
    return {"status": "seeded", "batch_id": default_id}

@app.get("/")
def root(ledger: Ledger = Depends(get_ledger)):
    return {"service": "Herb Provenance Ledger", "batches": len(ledger.batch_ids()),
            "transactions": len(ledger)}
