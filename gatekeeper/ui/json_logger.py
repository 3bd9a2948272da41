import json
import os
import datetime
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, Optional

from gatekeeper.models.request import AccessRequest

SCHEMA_VERSION = "2.0"


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return value.astimezone(datetime.timezone.utc).isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize(v) for v in value]
    return value


def to_serializable_dict(obj) -> dict:
    """
    Helper to convert dataclasses to dictionaries.
    Timestamps become ISO 8601 strings and enums their plain values.
    """
    data = asdict(obj) if is_dataclass(obj) else dict(obj)
    return _normalize(data)


def log_request_event(event_type: str, req: AccessRequest, output_dir: str = "audit_logs",
                      details: Optional[Dict[str, Any]] = None) -> str:
    """
    Writes a lifecycle event (AccessRequested, AccessApproved, ...) to a durable JSON file.
    Returns the filepath of the created artifact.
    """
    os.makedirs(output_dir, exist_ok=True)

    timestamp = datetime.datetime.now(datetime.timezone.utc)
    log_entry = {
        "schema_version": SCHEMA_VERSION,
        "timestamp": timestamp.isoformat(),
        "event_type": event_type,
        "correlation_id": req.id,
        "request": to_serializable_dict(req),
        "details": _normalize(details or {}),
    }

    # Format: audit_logs/20260203T101500.123456Z_42_AccessApproved.json
    filename = f"{timestamp.strftime('%Y%m%dT%H%M%S.%fZ')}_{req.id}_{event_type}.json"
    filepath = os.path.join(output_dir, filename)

    with open(filepath, 'w') as f:
        json.dump(log_entry, f, indent=2)

    return filepath
