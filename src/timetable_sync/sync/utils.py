"""
Stateless hashing and payload-comparison helpers.
"""

import hashlib
import json
from typing import Any

# Payload keys compared when deciding whether a remote copy diverged.
PAYLOAD_FIELDS = (
    "summary",
    "description",
    "location",
    "start",
    "end",
    "colorId",
    "reminders",
    "recurrence",
)


def compute_hash(data: Any) -> str:
    """SHA256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def compute_fingerprint(*parts: str | None) -> str:
    """Return a 16-char hex SHA-256 fingerprint of the joined parts."""
    joined = "\x1f".join(p or "" for p in parts)
    return hashlib.sha256(joined.encode()).hexdigest()[:16]


def request_fingerprint(owner_id: str, request_data: dict[str, Any]) -> str:
    return compute_hash({"owner": owner_id, "request": request_data})[:32]


def _comparable(name: str, value: Any) -> Any:
    if not value:
        return None
    if name == "recurrence":
        # Stores may reorder RRULE parts when they serialize a rule.
        return sorted(tuple(sorted(rule.split(";"))) for rule in value)
    return value


def differing_fields(local: dict[str, Any], remote: dict[str, Any]) -> set[str]:
    """Payload fields whose values differ between the two payloads.

    Missing and empty values compare equal so a remote that drops empty
    properties does not look modified.
    """
    changed = set()
    for name in PAYLOAD_FIELDS:
        if _comparable(name, local.get(name)) != _comparable(name, remote.get(name)):
            changed.add(name)
    return changed


def payload_digest(payload: dict[str, Any]) -> str:
    """32-char hash of the compared payload fields, ignoring the version token."""
    compared = {name: _comparable(name, payload.get(name)) for name in PAYLOAD_FIELDS}
    return compute_hash(compared)[:32]
