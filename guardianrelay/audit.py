"""
Append-Only, Tamper-Evident Audit Trail (Hash-Chained).

Every decision the escalation engine takes -- ranking, each send attempt,
each expiry, each escalation wave, each contact response and the final
resolution -- is recorded as a structured, append-only audit entry.
Entries are linked via a SHA-256 hash chain: if any entry is modified
after the fact, ``verify_chain()`` reports the first broken link.

Queries and exports are scoped by ``emergency_id``.  Exports redact
contact PII (names, phone numbers, addresses, coordinates) so that a
session can be reviewed without disclosing who was contacted or where the
user was.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Every auditable action of the escalation engine."""

    # Trigger and ranking
    EMERGENCY_TRIGGERED = "EMERGENCY_TRIGGERED"
    CONTACTS_RANKED = "CONTACTS_RANKED"
    NO_ELIGIBLE_CONTACTS = "NO_ELIGIBLE_CONTACTS"

    # Dispatch
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    NOTIFICATION_EXPIRED = "NOTIFICATION_EXPIRED"

    # Escalation
    ESCALATION_WAVE = "ESCALATION_WAVE"

    # Responses and resolution
    CONTACT_RESPONDED = "CONTACT_RESPONDED"
    HELP_CONFIRMED = "HELP_CONFIRMED"
    EMERGENCY_RESOLVED = "EMERGENCY_RESOLVED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit log entry with a hash link to its predecessor."""

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp of the event.",
    )
    emergency_id: str = Field(
        ...,
        description="Emergency this entry belongs to -- the query scope.",
    )
    actor_id: str = Field(
        default="SYSTEM",
        description="Who caused the event: 'SYSTEM' or a contact id.",
    )
    event_type: AuditEventType = Field(...)
    target_entity: str = Field(
        default="",
        description="Identifier of the target (notification id, contact id).",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry in the chain."
        ),
    )

    def canonical_bytes(self) -> bytes:
        """Deterministic byte representation for hashing."""
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "emergency_id": self.emergency_id,
            "actor_id": self.actor_id,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# PII redaction
# ---------------------------------------------------------------------------

_PII_PATTERNS: dict[str, re.Pattern] = {
    "coordinates": re.compile(r"-?\d{1,3}\.\d{4,},\s*-?\d{1,3}\.\d{4,}"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"\+?\d{0,3}[-. ]?\(?\d{3}\)?[-. ]?\d{3}[-. ]?\d{4}\b"),
}

_PII_KEYS = {"name", "contact_name", "phone", "contact_phone", "phone_number",
             "address", "latitude", "longitude", "message", "email"}


def redact_pii_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace contact PII in audit metadata with ``[REDACTED]`` markers.

    Args:
        metadata: The original metadata dictionary.

    Returns:
        A new dictionary; the input is left untouched.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PII_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted_value = value
            for pattern_name, pattern in _PII_PATTERNS.items():
                redacted_value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", redacted_value)
            redacted[key] = redacted_value
        elif isinstance(value, dict):
            redacted[key] = redact_pii_from_metadata(value)
        elif isinstance(value, list):
            redacted[key] = [
                redact_pii_from_metadata(v) if isinstance(v, dict) else v
                for v in value
            ]
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit log with SHA-256 hash chaining.

    There are no ``update()`` or ``delete()`` methods.  ``query()`` and
    ``export_for_review()`` are always scoped by ``emergency_id``.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []  # parallel list of computed hashes

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry, linking it to the previous one."""
        entry.previous_hash = self._hashes[-1] if self._hashes else ""
        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        return entry

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` -- ``broken_at`` is the index of the
            first broken link, or None if the chain is intact.
        """
        for i, entry in enumerate(self._entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != self._entries[i - 1].compute_hash():
                return (False, i)

            if self._hashes[i] != entry.compute_hash():
                return (False, i)

        return (True, None)

    def query(
        self,
        emergency_id: str,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Entries for one emergency, optionally filtered (copies)."""
        results = []
        for entry in self._entries:
            if entry.emergency_id != emergency_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(self, emergency_id: str) -> dict[str, Any]:
        """JSON-serializable export of one emergency's trail, PII redacted."""
        redacted_entries = []
        for entry in self.query(emergency_id):
            entry_dict = entry.model_dump()
            entry_dict["metadata"] = redact_pii_from_metadata(entry.metadata)
            entry_dict["timestamp"] = entry.timestamp.isoformat()
            entry_dict["event_type"] = entry.event_type.value
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "emergency_id": emergency_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": redacted_entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
