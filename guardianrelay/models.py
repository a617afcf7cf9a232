"""
Core data models for the GuardianRelay escalation engine.

Contacts are owned by an external contact store and are read-only here.
The engine annotates them with derived scores for the duration of one
emergency evaluation by wrapping them in ``ScoredContact`` -- the
store-of-record ``Contact`` is never mutated.

Notifications are owned by the dispatch coordinator and follow a strict
lifecycle::

    sent -> {delivered | failed} -> {responded | expired}

Enum values match the document-store wire values of the mobile client
(``recentlyActive``, ``pushNotification``, ``onMyWay`` ...).
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Availability(str, enum.Enum):
    """Coarse estimate of whether a contact can respond right now.

    * ``ACTIVE``               -- seen within the last 15 minutes.
    * ``RECENTLY_ACTIVE``      -- seen within the last hour.
    * ``LIKELY_AVAILABLE``     -- awake hours in the contact's time zone.
    * ``POSSIBLY_UNAVAILABLE`` -- sleeping hours in the contact's time zone.
    * ``UNAVAILABLE``          -- stale for a week or more; never dispatched.
    * ``UNKNOWN``              -- not enough signal to decide.
    """

    ACTIVE = "active"
    RECENTLY_ACTIVE = "recentlyActive"
    LIKELY_AVAILABLE = "likelyAvailable"
    POSSIBLY_UNAVAILABLE = "possiblyUnavailable"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class NotificationMethod(str, enum.Enum):
    """Channel used for a single send attempt."""

    PUSH = "pushNotification"
    SMS = "sms"
    CALL = "phoneCall"
    EMAIL = "email"


class NotificationStatus(str, enum.Enum):
    """Lifecycle states of an emergency notification.

    ``READ`` is part of the stored vocabulary but is never entered by the
    engine itself.
    """

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    RESPONDED = "responded"
    FAILED = "failed"
    EXPIRED = "expired"


class ContactResponse(str, enum.Enum):
    """A contact's answer to an emergency notification."""

    WILL_HELP = "willHelp"
    CANNOT_HELP = "cannotHelp"
    ON_MY_WAY = "onMyWay"
    CALLED_AUTHORITIES = "calledAuthorities"
    NO_RESPONSE = "noResponse"

    @property
    def confirms_help(self) -> bool:
        """Whether this response stops escalation for the whole emergency."""
        return self in _HELP_CONFIRMING_RESPONSES


_HELP_CONFIRMING_RESPONSES = frozenset({
    ContactResponse.WILL_HELP,
    ContactResponse.ON_MY_WAY,
    ContactResponse.CALLED_AUTHORITIES,
})


class PlaceType(str, enum.Enum):
    """Classification of a historical location sample."""

    HOME = "home"
    WORK = "work"
    OTHER = "other"


class SessionState(str, enum.Enum):
    """Lifecycle states of a per-emergency escalation session."""

    IDLE = "IDLE"
    NOTIFYING = "NOTIFYING"
    WAITING = "WAITING"
    ESCALATING = "ESCALATING"
    RESOLVED = "RESOLVED"


class ResolutionReason(str, enum.Enum):
    """Why a session reached ``RESOLVED``."""

    HELP_CONFIRMED = "help_confirmed"
    EXHAUSTED = "exhausted"
    MANUAL = "manual"
    NO_ELIGIBLE_CONTACTS = "no_eligible_contacts"


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

class GeoPoint(BaseModel):
    """A bare latitude/longitude pair in decimal degrees."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class ContactLocation(GeoPoint):
    """Last known fix reported by a contact's companion app."""

    timestamp: datetime = Field(
        ...,
        description="When the fix was taken (UTC).",
    )
    accuracy: float = Field(
        default=0.0,
        ge=0,
        description="Horizontal accuracy in meters.",
    )
    address: Optional[str] = Field(default=None)


class LocationSample(GeoPoint):
    """A historical location sample used for virtual closeness."""

    timestamp: datetime = Field(...)
    time_spent: timedelta = Field(
        default=timedelta(0),
        description="How long the person stayed at this location.",
    )
    place_type: Optional[PlaceType] = Field(default=None)
    address: Optional[str] = Field(default=None)


class EmergencyLocation(GeoPoint):
    """Where the emergency was triggered, as stored by the emergency store."""

    address: str = Field(default="")


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------

class Contact(BaseModel):
    """An emergency contact as supplied by the external contact store."""

    contact_id: str = Field(..., min_length=1)
    name: str = Field(...)
    phone_number: str = Field(...)
    relationship: str = Field(default="")
    is_primary: bool = Field(default=False)
    last_known_location: Optional[ContactLocation] = Field(default=None)
    last_active_time: Optional[datetime] = Field(
        default=None,
        description="Last time the contact was active in the companion app.",
    )
    has_app: bool = Field(
        default=False,
        description="Whether the contact runs the companion app.",
    )
    push_token: Optional[str] = Field(
        default=None,
        description="Push routing token; only meaningful when has_app is set.",
    )
    recent_locations: list[LocationSample] = Field(
        default_factory=list,
        description="Bounded list of recent location samples.",
    )
    frequent_time_zones: list[str] = Field(
        default_factory=list,
        description="IANA time zone names the contact is frequently observed in.",
    )


class ContactScores(BaseModel):
    """Engine-owned derived scores, recomputed on every scoring pass."""

    proximity: float = Field(default=0.0, ge=0, le=1)
    virtual_closeness: float = Field(default=0.0, ge=0, le=1)
    activity: float = Field(default=0.0, ge=0, le=1)
    priority: float = Field(default=0.0, ge=0, le=1)


class ScoredContact(BaseModel):
    """A contact annotated with transient scores and an availability class."""

    contact: Contact
    scores: ContactScores = Field(default_factory=ContactScores)
    availability: Availability = Field(default=Availability.UNKNOWN)

    @property
    def contact_id(self) -> str:
        return self.contact.contact_id

    @property
    def priority_score(self) -> float:
        return self.scores.priority


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

NOTIFICATION_TRANSITIONS: dict[NotificationStatus, set[NotificationStatus]] = {
    NotificationStatus.SENT: {NotificationStatus.DELIVERED, NotificationStatus.FAILED},
    NotificationStatus.DELIVERED: {NotificationStatus.RESPONDED, NotificationStatus.EXPIRED},
    NotificationStatus.READ: set(),
    NotificationStatus.RESPONDED: set(),  # terminal
    NotificationStatus.FAILED: set(),  # terminal
    NotificationStatus.EXPIRED: set(),  # terminal
}


class InvalidNotificationTransition(Exception):
    """Raised when a notification status change is not permitted."""
    pass


def _new_notification_id() -> str:
    return f"notif_{uuid.uuid4().hex}"


class EmergencyNotification(BaseModel):
    """One send attempt to one contact for one emergency."""

    notification_id: str = Field(default_factory=_new_notification_id)
    emergency_id: str = Field(..., min_length=1)
    contact_id: str = Field(..., min_length=1)
    contact_name: str = Field(default="")
    contact_phone: str = Field(default="")
    message: str = Field(...)
    method: NotificationMethod = Field(...)
    sent_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    status: NotificationStatus = Field(default=NotificationStatus.SENT)
    responded_at: Optional[datetime] = Field(default=None)
    response: Optional[ContactResponse] = Field(default=None)
    retry_count: int = Field(default=0, ge=0)
    next_retry_at: Optional[datetime] = Field(default=None)
    priority_score: float = Field(
        default=0.0,
        ge=0,
        le=1,
        description="Snapshot of the contact's priority score at send time.",
    )

    @field_validator("response")
    @classmethod
    def response_only_when_responded(cls, v, info):
        status = info.data.get("status")
        if v is not None and status not in (NotificationStatus.RESPONDED, None):
            raise ValueError(
                f"response '{v.value}' is only valid on a responded notification"
            )
        return v

    @property
    def is_pending(self) -> bool:
        """Awaiting a response or timeout."""
        return self.status in (NotificationStatus.SENT, NotificationStatus.DELIVERED)

    def can_transition_to(self, target: NotificationStatus) -> bool:
        return target in NOTIFICATION_TRANSITIONS.get(self.status, set())

    def transition_to(
        self,
        target: NotificationStatus,
        *,
        response: Optional[ContactResponse] = None,
        at: Optional[datetime] = None,
    ) -> "EmergencyNotification":
        """Return a copy of this notification moved to ``target``.

        Raises:
            InvalidNotificationTransition: If the lifecycle forbids the step.
            ValueError: If ``target`` is RESPONDED and no response is given.
        """
        if not self.can_transition_to(target):
            allowed = NOTIFICATION_TRANSITIONS.get(self.status, set())
            raise InvalidNotificationTransition(
                f"Cannot transition notification {self.notification_id} from "
                f"{self.status.value} to {target.value}. "
                f"Allowed transitions: {sorted(s.value for s in allowed)}"
            )
        update: dict = {"status": target}
        if target == NotificationStatus.RESPONDED:
            if response is None:
                raise ValueError("A responded notification requires a response value.")
            update["response"] = response
            update["responded_at"] = at or datetime.now(timezone.utc)
        return self.model_copy(update=update)
