"""
Escalation Controller -- per-emergency notification state machine.

This module owns the lifecycle of every triggered emergency as an explicit
state machine, one session per ``emergency_id``:

    IDLE -> NOTIFYING -> WAITING -> ESCALATING -> NOTIFYING -> WAITING ...
                                \\-> RESOLVED

**Trigger.**  Rank all contacts, notify the top three, arm the first wave
timer (five minutes).

**Wave timer.**  While the escalation level is below the maximum and
un-notified contacts remain, notify up to two more, bump the level and
arm the next wave timer (three minutes).  Otherwise expire every
notification still awaiting an answer, cancel the remaining timers and
resolve the emergency as exhausted.

**Per-contact timeout.**  Mark that contact's notification expired.  The
wave timer alone drives escalation.

**Response.**  Cancel the responder's timer.  A help-confirming response
(``willHelp``, ``onMyWay``, ``calledAuthorities``) cancels every timer of
the emergency and resolves it; the escalation level is kept as history.

Transitions of one emergency are serialized by a per-emergency lock;
different emergencies never share a lock.  Collaborator failures are
converted into degraded state and never abort the state machine, so the
public entry points do not raise because of a store or transport error.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from guardianrelay.audit import AuditEntry, AuditEventType, AuditLog
from guardianrelay.channels import select_channel
from guardianrelay.config import DEFAULT_SETTINGS, EngineSettings
from guardianrelay.dispatch import DispatchCoordinator
from guardianrelay.interfaces import (
    ContactRepository,
    EmergencyStore,
    LocationHistory,
    NotificationStore,
    Transport,
)
from guardianrelay.messages import build_alert_message, build_escalation_message
from guardianrelay.models import (
    ContactResponse,
    EmergencyLocation,
    ResolutionReason,
    ScoredContact,
    SessionState,
)
from guardianrelay.scoring import ScoringEngine
from guardianrelay.timers import TimerKey, TimerKind, TimerRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.IDLE: {SessionState.NOTIFYING, SessionState.RESOLVED},
    SessionState.NOTIFYING: {SessionState.WAITING, SessionState.RESOLVED},
    SessionState.WAITING: {SessionState.ESCALATING, SessionState.RESOLVED},
    SessionState.ESCALATING: {SessionState.NOTIFYING, SessionState.RESOLVED},
    SessionState.RESOLVED: set(),  # terminal state
}


class InvalidSessionTransition(Exception):
    """Raised when a session state transition is not permitted."""
    pass


# ---------------------------------------------------------------------------
# Emergency session
# ---------------------------------------------------------------------------

class EmergencySession(BaseModel):
    """Escalation state of one emergency.

    ``notified_contact_ids`` only grows, and a contact appears in it at
    most once.  ``escalation_level`` only grows; resolving a session keeps
    the level as a record of how far escalation went.
    """

    emergency_id: str = Field(..., min_length=1)
    user_id: Optional[str] = Field(default=None)
    location: EmergencyLocation
    custom_message: Optional[str] = Field(default=None)
    state: SessionState = Field(default=SessionState.IDLE)
    escalation_level: int = Field(default=0, ge=0)
    ranked_contacts: list[ScoredContact] = Field(
        default_factory=list,
        description="Dispatch order captured at trigger time.",
    )
    notified_contact_ids: list[str] = Field(default_factory=list)
    waves: list[list[str]] = Field(
        default_factory=list,
        description="Contact ids notified per wave; index 0 is the initial batch.",
    )
    triggered_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    resolved_at: Optional[datetime] = Field(default=None)
    resolution_reason: Optional[ResolutionReason] = Field(default=None)

    def has_notified(self, contact_id: str) -> bool:
        return contact_id in self.notified_contact_ids

    def next_candidates(self, limit: int) -> list[ScoredContact]:
        """Highest-ranked contacts not notified yet."""
        pending = [s for s in self.ranked_contacts if not self.has_notified(s.contact_id)]
        return pending[:limit]

    @property
    def is_resolved(self) -> bool:
        return self.state == SessionState.RESOLVED


# ---------------------------------------------------------------------------
# Escalation controller
# ---------------------------------------------------------------------------

class EscalationController:
    """Runs the notification and escalation lifecycle of emergencies.

    One controller owns the session registry, the timer registry and the
    dispatch coordinator.  Inject it where emergencies are triggered;
    nothing here is module-global.

    Args:
        contacts: Source of the user's emergency contacts.
        transport: Delivery capability for every notification method.
        notifications: Notification persistence.
        emergencies: Emergency location lookup (used by escalation waves).
        location_history: The user's recent locations; optional, virtual
            closeness scores 0.0 without it.
        settings: Engine settings.
        scoring: Scoring engine; built from ``settings`` when omitted.
        audit_log: Audit trail; a private one is created when omitted.
        clock: Source of the current UTC time.
    """

    def __init__(
        self,
        contacts: ContactRepository,
        transport: Transport,
        notifications: NotificationStore,
        emergencies: EmergencyStore,
        location_history: Optional[LocationHistory] = None,
        settings: EngineSettings = DEFAULT_SETTINGS,
        scoring: Optional[ScoringEngine] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._contacts = contacts
        self._notifications = notifications
        self._emergencies = emergencies
        self._location_history = location_history
        self._settings = settings
        self._scoring = scoring or ScoringEngine(settings)
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._clock = clock
        self._timers = TimerRegistry()
        self._dispatcher = DispatchCoordinator(
            transport=transport,
            store=notifications,
            timers=self._timers,
            on_response_timeout=self.handle_response_timeout,
            settings=settings,
            audit_log=self._audit_log,
            clock=clock,
        )
        self._sessions: dict[str, EmergencySession] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def timers(self) -> TimerRegistry:
        return self._timers

    # -- entry points --

    async def trigger_emergency_notifications(
        self,
        emergency_id: str,
        latitude: float,
        longitude: float,
        address: str,
        custom_message: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        """Rank contacts, notify the first wave and arm escalation.

        Returns without dispatching when no contact is eligible.  A second
        trigger for an emergency that already has a session is ignored.
        """
        async with self._lock_for(emergency_id):
            if emergency_id in self._sessions:
                logger.warning(
                    "Emergency %s already triggered; ignoring repeat trigger", emergency_id
                )
                return

            now = self._clock()
            location = EmergencyLocation(
                latitude=latitude, longitude=longitude, address=address
            )
            session = EmergencySession(
                emergency_id=emergency_id,
                user_id=user_id,
                location=location,
                custom_message=custom_message,
                triggered_at=now,
            )
            self._sessions[emergency_id] = session
            logger.info("Triggering emergency notifications for %s", emergency_id)
            self._emit_audit(
                AuditEventType.EMERGENCY_TRIGGERED,
                session,
                metadata={
                    "address": address,
                    "latitude": latitude,
                    "longitude": longitude,
                    "custom_message": custom_message is not None,
                },
            )

            session.ranked_contacts = await self._prioritize(session, now)
            if not session.ranked_contacts:
                logger.info("No eligible contacts for emergency %s", emergency_id)
                self._emit_audit(AuditEventType.NO_ELIGIBLE_CONTACTS, session)
                self._resolve(session, ResolutionReason.NO_ELIGIBLE_CONTACTS)
                return

            self._transition(session, SessionState.NOTIFYING)
            wave = session.next_candidates(self._settings.initial_batch_size)
            message = custom_message or build_alert_message(
                address,
                latitude,
                longitude,
                at=now,
                response_minutes=self._response_minutes(),
            )
            # Anchored to wave initiation, not to send completion.
            self._arm_wave_timer(emergency_id, self._settings.first_wave_delay_seconds)
            await self._dispatch_wave(session, wave, message, location, now)
            self._transition(session, SessionState.WAITING)

    async def handle_contact_response(
        self,
        emergency_id: str,
        contact_id: str,
        response: ContactResponse,
    ) -> None:
        """Record a contact's response; confirmed help resolves the emergency.

        Calling this twice with the same arguments has the same effect as
        calling it once.
        """
        async with self._lock_for(emergency_id):
            self._timers.cancel(TimerKey.response(emergency_id, contact_id))

            session = self._sessions.get(emergency_id)
            if session is not None and not session.has_notified(contact_id):
                logger.warning(
                    "Ignoring response from contact %s who was not notified for %s",
                    contact_id,
                    emergency_id,
                )
                return

            try:
                updated = await self._notifications.update_response(
                    emergency_id, contact_id, response
                )
            except Exception:
                logger.error(
                    "Failed to record response of contact %s for emergency %s",
                    contact_id,
                    emergency_id,
                    exc_info=True,
                )
                updated = None

            if updated is not None:
                logger.info(
                    "Contact %s responded %s to emergency %s",
                    contact_id,
                    response.value,
                    emergency_id,
                )
                if session is not None:
                    self._emit_audit(
                        AuditEventType.CONTACT_RESPONDED,
                        session,
                        actor_id=contact_id,
                        target_entity=updated.notification_id,
                        metadata={"response": response.value},
                    )
            else:
                logger.debug(
                    "Notification of contact %s for %s already settled; response %s not recorded",
                    contact_id,
                    emergency_id,
                    response.value,
                )

            if not response.confirms_help:
                return

            cancelled = self._timers.cancel_emergency(emergency_id)
            if session is None or session.is_resolved:
                return
            logger.info(
                "Help confirmed for emergency %s by contact %s; cancelled %d timer(s)",
                emergency_id,
                contact_id,
                cancelled,
            )
            self._emit_audit(
                AuditEventType.HELP_CONFIRMED,
                session,
                actor_id=contact_id,
                metadata={"response": response.value, "timers_cancelled": cancelled},
            )
            self._resolve(session, ResolutionReason.HELP_CONFIRMED)

    async def resolve_emergency(self, emergency_id: str) -> None:
        """Resolve an emergency on request of the calling subsystem.

        Cancels every live timer of the emergency.  Safe to call repeatedly.
        """
        async with self._lock_for(emergency_id):
            session = self._sessions.get(emergency_id)
            if session is None:
                self._timers.cancel_emergency(emergency_id)
                return
            self._resolve(session, ResolutionReason.MANUAL)

    # -- timer handlers --

    async def handle_response_timeout(self, emergency_id: str, contact_id: str) -> None:
        """A delivered notification got no answer in time: expire it."""
        async with self._lock_for(emergency_id):
            await self._expire_notification(emergency_id, contact_id)

    async def handle_wave_timeout(self, emergency_id: str) -> None:
        """Nobody confirmed help in time: notify the next contacts."""
        async with self._lock_for(emergency_id):
            session = self._sessions.get(emergency_id)
            if session is None or session.state != SessionState.WAITING:
                return

            if session.escalation_level >= self._settings.max_escalation_level:
                logger.info(
                    "Emergency %s reached escalation level %d; no further waves",
                    emergency_id,
                    session.escalation_level,
                )
                await self._exhaust(session)
                return

            wave = session.next_candidates(self._settings.escalation_batch_size)
            if not wave:
                logger.info("No more contacts to escalate to for emergency %s", emergency_id)
                await self._exhaust(session)
                return

            self._transition(session, SessionState.ESCALATING)
            session.escalation_level += 1
            level = session.escalation_level
            logger.info("Escalating emergency %s to level %d", emergency_id, level)

            now = self._clock()
            location = await self._current_location(session)
            message = build_escalation_message(
                location.address,
                location.latitude,
                location.longitude,
                level,
                at=now,
                response_minutes=self._response_minutes(),
            )
            self._emit_audit(
                AuditEventType.ESCALATION_WAVE,
                session,
                metadata={
                    "escalation_level": level,
                    "contact_ids": [s.contact_id for s in wave],
                },
            )

            self._transition(session, SessionState.NOTIFYING)
            self._arm_wave_timer(emergency_id, self._settings.subsequent_wave_delay_seconds)
            await self._dispatch_wave(session, wave, message, location, now)
            self._transition(session, SessionState.WAITING)

    # -- queries --

    def get_session(self, emergency_id: str) -> Optional[EmergencySession]:
        """A snapshot of an emergency's session, or None if never triggered."""
        session = self._sessions.get(emergency_id)
        return session.model_copy(deep=True) if session is not None else None

    def active_emergencies(self) -> list[str]:
        return [eid for eid, s in self._sessions.items() if not s.is_resolved]

    def evict_resolved(self) -> list[str]:
        """Drop resolved sessions and their locks from memory.

        Resolved sessions are retained until this is called so that reports
        can still be built from them.  A session is only evicted once it has
        no live timers and nobody holds its lock.  Returns the evicted ids.
        """
        evicted = []
        for emergency_id, session in list(self._sessions.items()):
            lock = self._locks.get(emergency_id)
            if (
                not session.is_resolved
                or self._timers.armed_keys(emergency_id)
                or (lock is not None and lock.locked())
            ):
                continue
            del self._sessions[emergency_id]
            self._locks.pop(emergency_id, None)
            evicted.append(emergency_id)
        if evicted:
            logger.debug("Evicted %d resolved emergencies", len(evicted))
        return evicted

    async def shutdown(self) -> None:
        """Cancel every timer of every emergency."""
        await self._timers.shutdown()
        logger.info("Escalation controller stopped")

    # -- helpers --

    def _lock_for(self, emergency_id: str) -> asyncio.Lock:
        lock = self._locks.get(emergency_id)
        if lock is None:
            lock = self._locks[emergency_id] = asyncio.Lock()
        return lock

    def _transition(self, session: EmergencySession, target: SessionState) -> None:
        allowed = _VALID_TRANSITIONS.get(session.state, set())
        if target not in allowed:
            raise InvalidSessionTransition(
                f"Cannot transition emergency {session.emergency_id} from "
                f"{session.state.value} to {target.value}. "
                f"Allowed transitions: {[s.value for s in allowed]}"
            )
        session.state = target

    def _resolve(self, session: EmergencySession, reason: ResolutionReason) -> None:
        if session.is_resolved:
            return
        cancelled = self._timers.cancel_emergency(session.emergency_id)
        self._transition(session, SessionState.RESOLVED)
        session.resolved_at = self._clock()
        session.resolution_reason = reason
        logger.info(
            "Emergency %s resolved (%s) at escalation level %d",
            session.emergency_id,
            reason.value,
            session.escalation_level,
        )
        self._emit_audit(
            AuditEventType.EMERGENCY_RESOLVED,
            session,
            metadata={
                "reason": reason.value,
                "escalation_level": session.escalation_level,
                "notified_count": len(session.notified_contact_ids),
                "timers_cancelled": cancelled,
            },
        )

    async def _exhaust(self, session: EmergencySession) -> None:
        """No further wave: settle outstanding notifications and resolve."""
        for key in self._timers.armed_keys(session.emergency_id):
            if key.kind == TimerKind.RESPONSE and self._timers.cancel(key):
                await self._expire_notification(session.emergency_id, key.contact_id)
        self._resolve(session, ResolutionReason.EXHAUSTED)

    async def _expire_notification(self, emergency_id: str, contact_id: str) -> None:
        try:
            expired = await self._notifications.mark_expired(emergency_id, contact_id)
        except Exception:
            logger.error(
                "Failed to expire notification of contact %s for emergency %s",
                contact_id,
                emergency_id,
                exc_info=True,
            )
            return

        if expired is None:
            logger.debug(
                "Notification of contact %s for %s already settled", contact_id, emergency_id
            )
            return

        logger.info(
            "Response timeout for contact %s in emergency %s", contact_id, emergency_id
        )
        session = self._sessions.get(emergency_id)
        if session is not None:
            self._emit_audit(
                AuditEventType.NOTIFICATION_EXPIRED,
                session,
                target_entity=expired.notification_id,
                metadata={"contact_id": contact_id},
            )

    async def _prioritize(
        self, session: EmergencySession, now: datetime
    ) -> list[ScoredContact]:
        try:
            contacts = await self._contacts.list_enhanced_contacts(session.user_id)
        except Exception:
            logger.error(
                "Failed to load contacts for emergency %s", session.emergency_id, exc_info=True
            )
            return []

        history = []
        if self._location_history is not None:
            try:
                history = await self._location_history.recent(
                    session.user_id, self._settings.history_limit
                )
            except Exception:
                logger.warning(
                    "Failed to load location history for emergency %s",
                    session.emergency_id,
                    exc_info=True,
                )

        ranked = self._scoring.rank_contacts(session.location, contacts, now, history)
        eligible = self._scoring.filter_for_dispatch(ranked)
        self._emit_audit(
            AuditEventType.CONTACTS_RANKED,
            session,
            metadata={
                "ranked": [
                    {
                        "contact_id": s.contact_id,
                        "priority_score": s.priority_score,
                        "availability": s.availability.value,
                    }
                    for s in ranked
                ],
                "eligible_contact_ids": [s.contact_id for s in eligible],
            },
        )
        return eligible

    async def _dispatch_wave(
        self,
        session: EmergencySession,
        wave: list[ScoredContact],
        message: str,
        location: EmergencyLocation,
        now: datetime,
    ) -> None:
        sends = []
        batch: list[str] = []
        for scored in wave:
            if session.has_notified(scored.contact_id):
                continue
            session.notified_contact_ids.append(scored.contact_id)
            batch.append(scored.contact_id)
            current = self._scoring.refresh_availability(scored, now)
            sends.append(self._dispatcher.send(
                session.emergency_id,
                current,
                message,
                select_channel(current),
                location,
            ))
        session.waves.append(batch)
        # Started in ranked order; completion order is up to the transports.
        results = await asyncio.gather(*sends, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(
                    "Dispatch failed for emergency %s",
                    session.emergency_id,
                    exc_info=result,
                )

    async def _current_location(self, session: EmergencySession) -> EmergencyLocation:
        try:
            return await self._emergencies.get(session.emergency_id)
        except Exception:
            logger.warning(
                "Failed to load emergency %s; using trigger-time location",
                session.emergency_id,
                exc_info=True,
            )
            return session.location

    def _arm_wave_timer(self, emergency_id: str, delay: float) -> None:
        async def _fire() -> None:
            await self.handle_wave_timeout(emergency_id)

        self._timers.schedule(TimerKey.wave(emergency_id), delay, _fire)

    def _response_minutes(self) -> int:
        return max(1, round(self._settings.response_timeout_seconds / 60))

    def _emit_audit(
        self,
        event_type: AuditEventType,
        session: EmergencySession,
        actor_id: str = "SYSTEM",
        target_entity: str = "",
        metadata: Optional[dict] = None,
    ) -> None:
        self._audit_log.append(AuditEntry(
            emergency_id=session.emergency_id,
            actor_id=actor_id,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata or {},
        ))
