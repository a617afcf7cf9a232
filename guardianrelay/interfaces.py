"""
Collaborator interfaces consumed by the escalation engine.

The surrounding application provides concrete implementations backed by
its document database, location service and messaging providers.
``guardianrelay.stores`` and ``guardianrelay.transports`` ship in-memory
and stub implementations for tests and local runs.

All methods are coroutines: every collaborator call is I/O.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from guardianrelay.models import (
    Contact,
    ContactResponse,
    EmergencyLocation,
    EmergencyNotification,
    LocationSample,
    NotificationMethod,
)


class ContactRepository(ABC):
    """Read-only source of a user's emergency contacts."""

    @abstractmethod
    async def list_enhanced_contacts(self, user_id: Optional[str]) -> list[Contact]:
        """Return the user's contacts in store order.

        A contact whose record cannot be decoded is left out or degraded;
        it never fails the whole list.
        """


class LocationHistory(ABC):
    """Recent location samples of the triggering user."""

    @abstractmethod
    async def recent(self, user_id: Optional[str], limit: int) -> list[LocationSample]:
        """Return at most ``limit`` samples, newest first."""


class Transport(ABC):
    """Delivers a message to a contact over one channel."""

    @abstractmethod
    async def send(
        self, method: NotificationMethod, contact: Contact, message: str
    ) -> bool:
        """Return True when the provider accepted the message.

        Send timeouts and provider-side retries are the transport's concern.
        """


class NotificationStore(ABC):
    """Persistence for emergency notifications."""

    @abstractmethod
    async def save(self, notification: EmergencyNotification) -> None:
        """Insert or replace a notification by ``notification_id``."""

    @abstractmethod
    async def mark_expired(
        self, emergency_id: str, contact_id: str
    ) -> Optional[EmergencyNotification]:
        """Expire the contact's pending notification.

        Returns the updated notification, or None when there is nothing
        left to expire (already responded, failed or expired).
        """

    @abstractmethod
    async def update_response(
        self, emergency_id: str, contact_id: str, response: ContactResponse
    ) -> Optional[EmergencyNotification]:
        """Record a contact's response on its pending notification.

        Returns the updated notification, or None when the notification is
        no longer awaiting a response.
        """

    @abstractmethod
    async def notified_contacts(self, emergency_id: str) -> list[EmergencyNotification]:
        """All notifications recorded for an emergency, oldest first."""


class EmergencyStore(ABC):
    """Read access to triggered emergencies."""

    @abstractmethod
    async def get(self, emergency_id: str) -> EmergencyLocation:
        """Return the emergency's location and address."""
