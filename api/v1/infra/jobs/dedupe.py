"""
Deduplication keys for job submissions.

Two requests that would do the same work hash to the same key regardless of
ordering or letter case in their payload, so resubmitting a batch returns the
job that already exists instead of queueing a copy.
"""

import hashlib
import json
from typing import Any

from api.v1.infra.jobs.kinds import JobType


def _normalize_bulk_pdf(payload: dict[str, Any]) -> dict[str, Any]:
    keys = {
        f"{order.get('matchId', '')}:{order.get('officialId', '')}"
        for order in payload.get("orders") or []
        if isinstance(order, dict)
    }
    return {"orders": sorted(keys)}


def _normalize_recipient(recipient: dict[str, Any]) -> dict[str, Any]:
    return {
        "email": str(recipient.get("email", "")).strip().lower(),
        "name": recipient.get("name"),
        "variables": recipient.get("variables") or {},
        "matchId": recipient.get("matchId"),
        "officialId": recipient.get("officialId"),
    }


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _normalize_bulk_email(payload: dict[str, Any]) -> dict[str, Any]:
    recipients = {
        _canonical(_normalize_recipient(recipient))
        for recipient in payload.get("recipients") or []
        if isinstance(recipient, dict)
    }
    return {
        "recipients": [json.loads(entry) for entry in sorted(recipients)],
        "template": payload.get("template"),
        "subject": payload.get("subject"),
        "html": bool(payload.get("html", False)),
        "variables": payload.get("variables") or {},
        "attach_mission_order": bool(payload.get("attach_mission_order", False)),
    }


def _normalize_export(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "dataset": payload.get("dataset"),
        "columns": payload.get("columns"),
        "rows": payload.get("rows"),
    }


_NORMALIZERS = {
    JobType.MISSION_ORDERS_BULK_PDF.value: _normalize_bulk_pdf,
    JobType.MISSION_ORDERS_BULK_EMAIL.value: _normalize_bulk_email,
    JobType.EXPORTS_TABLE.value: _normalize_export,
}


def normalize_payload(job_type: str, payload: dict[str, Any]) -> Any:
    """Reduce a payload to the parts that identify the work it describes."""
    normalizer = _NORMALIZERS.get(str(getattr(job_type, "value", job_type)))
    if normalizer is None:
        return payload
    return normalizer(payload)


def compute_dedupe_key(job_type: str, payload: dict[str, Any]) -> str:
    """SHA-256 hex digest of the canonical JSON of type and normalized payload."""
    job_type = str(getattr(job_type, "value", job_type))
    canonical = _canonical(
        {"type": job_type, "normalized": normalize_payload(job_type, payload)}
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
