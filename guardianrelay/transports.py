"""
Transport Capabilities -- one delivery capability per notification method.

``TransportRegistry`` implements the engine's ``Transport`` interface by
routing each send to the capability registered for its method.  A method
without a registered capability fails the send rather than raising, so an
unconfigured channel (email, typically) shows up as a failed notification.

``StubTransport`` is an in-process capability that records what it was
asked to deliver.  It makes no external calls; production deployments
register capabilities backed by their push, SMS and telephony providers.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from guardianrelay.interfaces import Transport
from guardianrelay.models import Contact, NotificationMethod

logger = logging.getLogger(__name__)


class ChannelTransport(ABC):
    """Delivery capability for a single channel."""

    @abstractmethod
    async def deliver(self, contact: Contact, message: str) -> bool:
        """Return True when the provider accepted the message."""


class DeliveryRecord:
    """One delivery attempt seen by a ``StubTransport``."""

    def __init__(self, contact_id: str, destination: str, message: str, succeeded: bool) -> None:
        self.contact_id = contact_id
        self.destination = destination
        self.message = message
        self.succeeded = succeeded
        self.attempted_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return (
            f"DeliveryRecord(contact_id='{self.contact_id}', "
            f"destination='{self.destination}', succeeded={self.succeeded})"
        )


class StubTransport(ChannelTransport):
    """Records deliveries in memory instead of contacting a provider.

    Args:
        succeed: Default outcome of every delivery.
        failing_contacts: Contact ids whose deliveries always fail.
        error: If set, raised on every delivery (simulates a provider outage).
    """

    def __init__(
        self,
        succeed: bool = True,
        failing_contacts: Optional[set[str]] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.succeed = succeed
        self.failing_contacts = set(failing_contacts or ())
        self.error = error
        self.deliveries: list[DeliveryRecord] = []

    async def deliver(self, contact: Contact, message: str) -> bool:
        if self.error is not None:
            raise self.error
        succeeded = self.succeed and contact.contact_id not in self.failing_contacts
        self.deliveries.append(DeliveryRecord(
            contact_id=contact.contact_id,
            destination=contact.push_token or contact.phone_number,
            message=message,
            succeeded=succeeded,
        ))
        return succeeded

    def delivered_to(self) -> list[str]:
        """Contact ids with a successful delivery, in attempt order."""
        return [d.contact_id for d in self.deliveries if d.succeeded]


class TransportRegistry(Transport):
    """Routes sends to per-method capabilities."""

    def __init__(self) -> None:
        self._capabilities: dict[NotificationMethod, ChannelTransport] = {}

    def register(self, method: NotificationMethod, capability: ChannelTransport) -> None:
        self._capabilities[method] = capability

    def capability_for(self, method: NotificationMethod) -> Optional[ChannelTransport]:
        return self._capabilities.get(method)

    async def send(
        self, method: NotificationMethod, contact: Contact, message: str
    ) -> bool:
        capability = self._capabilities.get(method)
        if capability is None:
            logger.warning(
                "No transport registered for %s; send to contact %s failed",
                method.value,
                contact.contact_id,
            )
            return False
        if method == NotificationMethod.PUSH and not contact.push_token:
            logger.warning("Contact %s has no push token", contact.contact_id)
            return False
        return await capability.deliver(contact, message)

    def __contains__(self, method: NotificationMethod) -> bool:
        return method in self._capabilities


def stub_registry(**kwargs) -> tuple[TransportRegistry, dict[NotificationMethod, StubTransport]]:
    """Registry with a ``StubTransport`` for push, SMS and call.

    Email is left unregistered.  Keyword arguments go to every stub.
    """
    registry = TransportRegistry()
    stubs: dict[NotificationMethod, StubTransport] = {}
    for method in (NotificationMethod.PUSH, NotificationMethod.SMS, NotificationMethod.CALL):
        stubs[method] = StubTransport(**kwargs)
        registry.register(method, stubs[method])
    return registry, stubs
