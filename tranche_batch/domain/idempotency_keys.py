"""
Idempotency key and request fingerprint derivation.  ZERO I/O.

A key identifies "the same submission"; a fingerprint identifies "the same
request content".  Reusing a key with a different fingerprint is a
RequestConflictError, never a cache hit.
"""

from __future__ import annotations

import re
from datetime import date

from tranche_batch.domain.types import ExecutionRequest
from tranche_kernel.utils.hashing import hash_payload

MAX_KEY_LENGTH = 128

_DISALLOWED = re.compile(r"[^A-Za-z0-9_:\-]")


def compute_request_fingerprint(request: ExecutionRequest) -> str:
    """SHA-256 over the canonical content of a request.

    The client key, correlation id and execution id are transport metadata
    and do not contribute.
    """
    records = None
    if request.records is not None:
        records = {
            code: [dict(r) for r in rows] for code, rows in request.records.items()
        }
    return hash_payload({
        "job_config_id": request.job_config_id,
        "business_date": request.business_date,
        "parameters": request.parameters,
        "records": records,
    })


def normalize_client_key(key: str) -> str:
    """Sanitize a caller-supplied key: safe characters, uppercase, bounded length."""
    cleaned = _DISALLOWED.sub("_", key.strip()).upper()
    if not cleaned:
        raise ValueError("idempotency key must not be empty")
    return cleaned[:MAX_KEY_LENGTH]


def derive_idempotency_key(job_config_id: str, business_date: date, fingerprint: str) -> str:
    """``<JOB>:<yyyymmdd>:<first 16 hex of fingerprint>``."""
    job_part = _DISALLOWED.sub("_", job_config_id).upper()
    suffix = f":{business_date:%Y%m%d}:{fingerprint[:16].upper()}"
    return job_part[: MAX_KEY_LENGTH - len(suffix)] + suffix
