import hashlib
import json
import random
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from errors import BatchIdExhausted

GENESIS = "GENESIS"
DEFAULT_PREFIX = "AYUR"
SUFFIX_SPACE = 1000

BATCH_ID_RE = re.compile(r"^(?P<prefix>[A-Z]+)-(?P<day>\d{8})-(?P<suffix>\d{3,})$")


def _iso(ts: Union[str, datetime]) -> str:
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.astimezone(timezone.utc).isoformat()
    return ts


def _kind(kind: Any) -> str:
    return getattr(kind, "value", kind)


def compute_hash(
    batch_id: str,
    kind: Any,
    actor: str,
    payload: Dict[str, Any],
    prev_hash: str,
    timestamp: Union[str, datetime],
) -> str:
    block = json.dumps({
        "batch_id": batch_id,
        "kind": _kind(kind),
        "actor": actor,
        "payload": payload,
        "prev_hash": prev_hash,
        "timestamp": _iso(timestamp),
    }, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(block.encode("utf-8")).hexdigest()


def record_hash(record) -> str:
    return compute_hash(
        record.batch_id, record.kind, record.actor,
        record.payload, record.prev_hash, record.timestamp,
    )


def first_broken_link(records: Iterable) -> Optional[Tuple[int, str]]:
    """Return (position, reason) of the first bad record, or None for a sound chain."""
    prev = GENESIS
    prev_ts = None
    for i, rec in enumerate(records):
        if rec.prev_hash != prev:
            return i, "prev_hash does not match the preceding record"
        if record_hash(rec) != rec.hash:
            return i, "stored hash does not match record contents"
        if prev_ts is not None and rec.timestamp < prev_ts:
            return i, "timestamp earlier than the preceding record"
        prev = rec.hash
        prev_ts = rec.timestamp
    return None


def verify_chain(records: Iterable) -> bool:
    return first_broken_link(records) is None


def parse_batch_id(batch_id: str) -> Tuple[str, date, int]:
    m = BATCH_ID_RE.match(batch_id or "")
    if not m:
        raise ValueError(f"malformed batch id: {batch_id!r}")
    day = datetime.strptime(m.group("day"), "%Y%m%d").date()
    return m.group("prefix"), day, int(m.group("suffix"))


class BatchIdGenerator:
    """Builds ids of the form ``AYUR-20240115-042``.

    The suffix comes from ``sequence_hint`` when one is given, otherwise it is
    sampled from a seedable RNG. Ids already taken are re-sampled; once
    ``max_attempts`` candidates have collided the generator gives up with
    ``BatchIdExhausted`` instead of handing out a duplicate.
    """

    def __init__(self, prefix: str = DEFAULT_PREFIX, seed: Optional[int] = None,
                 max_attempts: int = 50):
        self.prefix = prefix
        self.max_attempts = max_attempts
        self._rng = random.Random(seed)

    @staticmethod
    def _day(now: datetime) -> str:
        day = now.astimezone(timezone.utc) if now.tzinfo else now
        return f"{day:%Y%m%d}"

    def format(self, now: datetime, suffix: int) -> str:
        return f"{self.prefix}-{self._day(now)}-{suffix:03d}"

    def new_batch_id(self, now: datetime, exists: Callable[[str], bool],
                     sequence_hint: Optional[int] = None) -> str:
        tried = set()
        if sequence_hint is not None:
            candidate = self.format(now, sequence_hint % SUFFIX_SPACE)
            if not exists(candidate):
                return candidate
            tried.add(candidate)
        while len(tried) < self.max_attempts:
            candidate = self.format(now, self._rng.randrange(SUFFIX_SPACE))
            if candidate in tried:
                continue
            if not exists(candidate):
                return candidate
            tried.add(candidate)
        raise BatchIdExhausted(self.prefix, self._day(now), len(tried))
