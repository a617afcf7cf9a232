"""
Dispatch Coordinator -- sends one alert to one contact.

For every send attempt the coordinator:

1. records a notification in ``sent`` status and persists it, so an
   in-flight record is always retrievable;
2. invokes the transport for the selected method;
3. moves the record to ``delivered`` or ``failed`` and persists it again;
4. on delivery only, arms the contact's response-timeout timer.

Exactly one notification per attempt, exactly one timer per successful
send, none on failure.  Failed sends are not retried here; retry and
backoff belong to the transport.

Transport and store errors never escape ``send()``: a transport error is
a failed notification, a store error is logged and the in-memory record is
still returned.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from guardianrelay.audit import AuditEntry, AuditEventType, AuditLog
from guardianrelay.config import DEFAULT_SETTINGS, EngineSettings
from guardianrelay.interfaces import NotificationStore, Transport
from guardianrelay.messages import with_location_link
from guardianrelay.models import (
    EmergencyLocation,
    EmergencyNotification,
    NotificationMethod,
    NotificationStatus,
    ScoredContact,
)
from guardianrelay.timers import TimerKey, TimerRegistry

logger = logging.getLogger(__name__)

ResponseTimeoutHandler = Callable[[str, str], Awaitable[None]]


class DispatchCoordinator:
    """Sends notifications and arms per-contact response deadlines.

    Args:
        transport: Delivery capability for every method.
        store: Notification persistence.
        timers: Timer registry shared with the escalation controller.
        on_response_timeout: Coroutine called with ``(emergency_id,
            contact_id)`` when a delivered notification gets no answer in
            time.
        settings: Engine settings (response timeout).
        audit_log: Audit trail for send outcomes.
    """

    def __init__(
        self,
        transport: Transport,
        store: NotificationStore,
        timers: TimerRegistry,
        on_response_timeout: ResponseTimeoutHandler,
        settings: EngineSettings = DEFAULT_SETTINGS,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._transport = transport
        self._store = store
        self._timers = timers
        self._on_response_timeout = on_response_timeout
        self._settings = settings
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._clock = clock

    async def send(
        self,
        emergency_id: str,
        scored: ScoredContact,
        message: str,
        method: NotificationMethod,
        location: EmergencyLocation,
    ) -> EmergencyNotification:
        """Send ``message`` to one contact and return the notification record."""
        contact = scored.contact
        notification = EmergencyNotification(
            emergency_id=emergency_id,
            contact_id=contact.contact_id,
            contact_name=contact.name,
            contact_phone=contact.phone_number,
            message=message,
            method=method,
            sent_at=self._clock(),
            priority_score=scored.priority_score,
        )
        await self._persist(notification)

        outgoing = message
        if method == NotificationMethod.SMS:
            outgoing = with_location_link(message, location.latitude, location.longitude)

        try:
            delivered = await self._transport.send(method, contact, outgoing)
        except Exception:
            logger.warning(
                "Transport %s raised for contact %s in emergency %s",
                method.value,
                contact.contact_id,
                emergency_id,
                exc_info=True,
            )
            delivered = False

        target = NotificationStatus.DELIVERED if delivered else NotificationStatus.FAILED
        notification = notification.transition_to(target)
        await self._persist(notification)

        if delivered:
            self._arm_response_timer(emergency_id, contact.contact_id)
            logger.info(
                "Notified contact %s via %s for emergency %s",
                contact.contact_id,
                method.value,
                emergency_id,
            )
        else:
            logger.warning(
                "Notification to contact %s via %s failed for emergency %s",
                contact.contact_id,
                method.value,
                emergency_id,
            )

        self._audit_log.append(AuditEntry(
            emergency_id=emergency_id,
            actor_id="SYSTEM",
            event_type=(
                AuditEventType.NOTIFICATION_SENT if delivered
                else AuditEventType.NOTIFICATION_FAILED
            ),
            target_entity=notification.notification_id,
            metadata={
                "contact_id": contact.contact_id,
                "method": method.value,
                "availability": scored.availability.value,
                "priority_score": scored.priority_score,
                "phone": contact.phone_number,
            },
        ))
        return notification

    def _arm_response_timer(self, emergency_id: str, contact_id: str) -> None:
        async def _fire() -> None:
            await self._on_response_timeout(emergency_id, contact_id)

        self._timers.schedule(
            TimerKey.response(emergency_id, contact_id),
            self._settings.response_timeout_seconds,
            _fire,
        )

    async def _persist(self, notification: EmergencyNotification) -> None:
        try:
            await self._store.save(notification)
        except Exception:
            logger.error(
                "Failed to persist notification %s (%s)",
                notification.notification_id,
                notification.status.value,
                exc_info=True,
            )
