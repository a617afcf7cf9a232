"""
Storage Boundary -- document codec and in-memory reference stores.

Contacts and notifications travel to and from the document database as
camelCase maps.  The codec in this module is the only place that knows
that format: every document is decoded into a validated model, and any
document that cannot be decoded raises ``RecordDecodeError``.  Unknown
enum strings are errors, not defaults -- a silently defaulted status could
hide a corrupt record during a live emergency.

The in-memory stores implement the collaborator interfaces on top of the
codec so that every save and load goes through the same encode/decode path
a database-backed store would use.  Listing a user's contacts decodes each
document on its own, so one corrupt contact never hides the others.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, TypeVar

from pydantic import ValidationError

from guardianrelay.interfaces import (
    ContactRepository,
    EmergencyStore,
    LocationHistory,
    NotificationStore,
)
from guardianrelay.models import (
    Contact,
    ContactLocation,
    ContactResponse,
    EmergencyLocation,
    EmergencyNotification,
    LocationSample,
    NotificationMethod,
    NotificationStatus,
    PlaceType,
)

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=enum.Enum)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RecordDecodeError(ValueError):
    """Raised when a stored document does not match its schema."""

    def __init__(self, kind: str, record_id: str, reason: str) -> None:
        super().__init__(f"Cannot decode {kind} '{record_id}': {reason}")
        self.kind = kind
        self.record_id = record_id
        self.reason = reason


class EmergencyNotFoundError(LookupError):
    """Raised when an emergency id is not known to the emergency store."""
    pass


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _encode_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _decode_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    raise TypeError(f"expected ISO-8601 string, got {type(value).__name__}")


def _decode_enum(enum_cls: type[E], value: Any, field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise ValueError(f"{field}={value!r} is not one of {allowed}") from None


def _require(doc: dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if k not in doc]
    if missing:
        raise KeyError(f"missing field(s) {missing}")


# ---------------------------------------------------------------------------
# Notification codec
# ---------------------------------------------------------------------------

def notification_to_document(notification: EmergencyNotification) -> dict[str, Any]:
    """Encode a notification as a document body (id excluded)."""
    return {
        "emergencyId": notification.emergency_id,
        "contactId": notification.contact_id,
        "contactName": notification.contact_name,
        "contactPhone": notification.contact_phone,
        "message": notification.message,
        "sentAt": _encode_dt(notification.sent_at),
        "status": notification.status.value,
        "respondedAt": _encode_dt(notification.responded_at),
        "response": notification.response.value if notification.response else None,
        "retryCount": notification.retry_count,
        "nextRetryAt": _encode_dt(notification.next_retry_at),
        "method": notification.method.value,
        "priorityScore": notification.priority_score,
    }


def notification_from_document(
    doc: dict[str, Any], notification_id: str
) -> EmergencyNotification:
    """Decode a notification document.

    Raises:
        RecordDecodeError: If a field is missing, mistyped or carries an
            unknown enum value.
    """
    try:
        _require(doc, "emergencyId", "contactId", "message", "sentAt", "status", "method")
        response = doc.get("response")
        return EmergencyNotification(
            notification_id=notification_id,
            emergency_id=doc["emergencyId"],
            contact_id=doc["contactId"],
            contact_name=doc.get("contactName", ""),
            contact_phone=doc.get("contactPhone", ""),
            message=doc["message"],
            sent_at=_decode_dt(doc["sentAt"]),
            status=_decode_enum(NotificationStatus, doc["status"], "status"),
            responded_at=_decode_dt(doc.get("respondedAt")),
            response=(
                _decode_enum(ContactResponse, response, "response")
                if response is not None else None
            ),
            retry_count=doc.get("retryCount", 0),
            next_retry_at=_decode_dt(doc.get("nextRetryAt")),
            method=_decode_enum(NotificationMethod, doc["method"], "method"),
            priority_score=doc.get("priorityScore", 0.0),
        )
    except (KeyError, TypeError, ValueError) as exc:
        # ValidationError is a ValueError subclass
        raise RecordDecodeError("notification", notification_id, str(exc)) from exc


# ---------------------------------------------------------------------------
# Contact codec
# ---------------------------------------------------------------------------

def _sample_to_document(sample: LocationSample) -> dict[str, Any]:
    return {
        "latitude": sample.latitude,
        "longitude": sample.longitude,
        "address": sample.address,
        "timestamp": _encode_dt(sample.timestamp),
        "timeSpentMs": int(sample.time_spent / timedelta(milliseconds=1)),
        "placeType": sample.place_type.value if sample.place_type else None,
    }


def _sample_from_document(doc: dict[str, Any]) -> LocationSample:
    _require(doc, "latitude", "longitude", "timestamp")
    place_type = doc.get("placeType")
    return LocationSample(
        latitude=doc["latitude"],
        longitude=doc["longitude"],
        address=doc.get("address"),
        timestamp=_decode_dt(doc["timestamp"]),
        time_spent=timedelta(milliseconds=doc.get("timeSpentMs") or 0),
        place_type=(
            _decode_enum(PlaceType, place_type, "placeType")
            if place_type is not None else None
        ),
    )


def contact_to_document(contact: Contact) -> dict[str, Any]:
    """Encode a contact as a document body (id excluded)."""
    location = contact.last_known_location
    return {
        "name": contact.name,
        "phoneNumber": contact.phone_number,
        "relationship": contact.relationship,
        "isPrimary": contact.is_primary,
        "lastKnownLocation": (
            {
                "latitude": location.latitude,
                "longitude": location.longitude,
                "address": location.address,
                "timestamp": _encode_dt(location.timestamp),
                "accuracy": location.accuracy,
            }
            if location is not None else None
        ),
        "lastActiveTime": _encode_dt(contact.last_active_time),
        "fcmToken": contact.push_token,
        "hasApp": contact.has_app,
        "recentLocations": [_sample_to_document(s) for s in contact.recent_locations],
        "frequentTimeZones": list(contact.frequent_time_zones),
    }


def contact_from_document(doc: dict[str, Any], contact_id: str) -> Contact:
    """Decode a contact document.

    Score fields persisted by older clients (``priorityScore`` and friends)
    are ignored; the engine always recomputes them.

    Raises:
        RecordDecodeError: If the document does not match the contact schema.
    """
    try:
        _require(doc, "name", "phoneNumber")
        raw_location = doc.get("lastKnownLocation")
        location = None
        if raw_location is not None:
            _require(raw_location, "latitude", "longitude", "timestamp")
            location = ContactLocation(
                latitude=raw_location["latitude"],
                longitude=raw_location["longitude"],
                address=raw_location.get("address"),
                timestamp=_decode_dt(raw_location["timestamp"]),
                accuracy=raw_location.get("accuracy") or 0.0,
            )
        return Contact(
            contact_id=contact_id,
            name=doc["name"],
            phone_number=doc["phoneNumber"],
            relationship=doc.get("relationship", ""),
            is_primary=doc.get("isPrimary", False),
            last_known_location=location,
            last_active_time=_decode_dt(doc.get("lastActiveTime")),
            push_token=doc.get("fcmToken"),
            has_app=doc.get("hasApp", False),
            recent_locations=[
                _sample_from_document(s) for s in doc.get("recentLocations") or []
            ],
            frequent_time_zones=list(doc.get("frequentTimeZones") or []),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise RecordDecodeError("contact", contact_id, str(exc)) from exc


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------

class InMemoryContactRepository(ContactRepository):
    """Contacts kept as encoded documents, grouped by user id."""

    def __init__(self, contacts: Iterable[Contact] = (), user_id: Optional[str] = None) -> None:
        self._documents: dict[Optional[str], list[tuple[str, dict[str, Any]]]] = {}
        for contact in contacts:
            self.add(contact, user_id)

    def add(self, contact: Contact, user_id: Optional[str] = None) -> None:
        self.add_document(contact.contact_id, contact_to_document(contact), user_id)

    def add_document(
        self, contact_id: str, doc: dict[str, Any], user_id: Optional[str] = None
    ) -> None:
        """Store a raw contact document as the mobile client wrote it."""
        self._documents.setdefault(user_id, []).append((contact_id, doc))

    async def list_enhanced_contacts(self, user_id: Optional[str]) -> list[Contact]:
        contacts = []
        for contact_id, doc in self._documents.get(user_id, []):
            contact = _decode_contact_leniently(doc, contact_id)
            if contact is not None:
                contacts.append(contact)
        return contacts


def _decode_contact_leniently(doc: dict[str, Any], contact_id: str) -> Optional[Contact]:
    """Decode one contact of a list without failing the whole list.

    Location samples that do not decode are dropped, so a corrupt history
    only costs the contact its closeness score.  A contact that still does
    not decode is skipped.
    """
    try:
        return contact_from_document(doc, contact_id)
    except RecordDecodeError as exc:
        error = exc

    raw_samples = doc.get("recentLocations")
    if isinstance(raw_samples, list):
        samples = []
        for raw in raw_samples:
            try:
                _sample_from_document(raw)
            except (KeyError, TypeError, ValueError):
                continue
            samples.append(raw)
        dropped = len(raw_samples) - len(samples)
        if dropped:
            try:
                contact = contact_from_document({**doc, "recentLocations": samples}, contact_id)
            except RecordDecodeError:
                pass
            else:
                logger.warning(
                    "Dropped %d undecodable location sample(s) of contact %s: %s",
                    dropped,
                    contact_id,
                    error,
                )
                return contact

    logger.error("Skipping contact %s: %s", contact_id, error)
    return None


class InMemoryLocationHistory(LocationHistory):
    """Location samples grouped by user id."""

    def __init__(self, samples: Iterable[LocationSample] = (), user_id: Optional[str] = None) -> None:
        self._samples: dict[Optional[str], list[LocationSample]] = {}
        for sample in samples:
            self.add(sample, user_id)

    def add(self, sample: LocationSample, user_id: Optional[str] = None) -> None:
        self._samples.setdefault(user_id, []).append(sample)

    async def recent(self, user_id: Optional[str], limit: int) -> list[LocationSample]:
        samples = sorted(
            self._samples.get(user_id, []), key=lambda s: s.timestamp, reverse=True
        )
        return samples[:limit]


class InMemoryNotificationStore(NotificationStore):
    """Notifications kept as encoded documents, in insertion order."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}

    async def save(self, notification: EmergencyNotification) -> None:
        self._documents[notification.notification_id] = notification_to_document(notification)

    async def mark_expired(
        self, emergency_id: str, contact_id: str
    ) -> Optional[EmergencyNotification]:
        latest = self._latest(emergency_id, contact_id)
        if latest is None or not latest.can_transition_to(NotificationStatus.EXPIRED):
            return None
        updated = latest.transition_to(NotificationStatus.EXPIRED)
        await self.save(updated)
        return updated

    async def update_response(
        self, emergency_id: str, contact_id: str, response: ContactResponse
    ) -> Optional[EmergencyNotification]:
        latest = self._latest(emergency_id, contact_id)
        if latest is None or not latest.can_transition_to(NotificationStatus.RESPONDED):
            return None
        updated = latest.transition_to(NotificationStatus.RESPONDED, response=response)
        await self.save(updated)
        return updated

    async def notified_contacts(self, emergency_id: str) -> list[EmergencyNotification]:
        return self._for_emergency(emergency_id)

    def get(self, notification_id: str) -> EmergencyNotification:
        """Load one notification by id (raises KeyError if absent)."""
        return notification_from_document(self._documents[notification_id], notification_id)

    def raw_document(self, notification_id: str) -> dict[str, Any]:
        """The stored document, for inspection and fault injection."""
        return self._documents[notification_id]

    def _for_emergency(self, emergency_id: str) -> list[EmergencyNotification]:
        notifications = [
            notification_from_document(doc, notification_id)
            for notification_id, doc in self._documents.items()
            if doc.get("emergencyId") == emergency_id
        ]
        return sorted(notifications, key=lambda n: n.sent_at)

    def _latest(self, emergency_id: str, contact_id: str) -> Optional[EmergencyNotification]:
        matches = [
            n for n in self._for_emergency(emergency_id) if n.contact_id == contact_id
        ]
        return matches[-1] if matches else None

    def __len__(self) -> int:
        return len(self._documents)


class InMemoryEmergencyStore(EmergencyStore):
    """Emergency locations keyed by emergency id."""

    def __init__(self) -> None:
        self._emergencies: dict[str, EmergencyLocation] = {}

    def add(self, emergency_id: str, location: EmergencyLocation) -> None:
        self._emergencies[emergency_id] = location

    async def get(self, emergency_id: str) -> EmergencyLocation:
        try:
            return self._emergencies[emergency_id]
        except KeyError:
            raise EmergencyNotFoundError(f"Unknown emergency '{emergency_id}'") from None
