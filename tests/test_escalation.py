"""
Tests for guardianrelay.escalation -- per-emergency escalation controller.

Covers: initial wave of three in rank order, escalation waves of two up to
level three, exhaustion when contacts run out, help confirmation cancelling
every timer, idempotent responses, late responses after expiry, responses
from contacts never notified, repeat triggers, no eligible contacts,
collaborator failure isolation including corrupt contact records,
per-emergency isolation, manual resolution, eviction of resolved sessions,
and real sub-second timers driving the whole lifecycle.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from guardianrelay.audit import AuditEventType
from guardianrelay.config import EngineSettings
from guardianrelay.escalation import EscalationController, InvalidSessionTransition
from guardianrelay.interfaces import ContactRepository, NotificationStore
from guardianrelay.models import (
    Contact,
    ContactLocation,
    ContactResponse,
    EmergencyLocation,
    NotificationMethod,
    NotificationStatus,
    ResolutionReason,
    SessionState,
)
from guardianrelay.stores import (
    InMemoryContactRepository,
    InMemoryEmergencyStore,
    InMemoryNotificationStore,
    contact_to_document,
)
from guardianrelay.timers import TimerKey
from guardianrelay.transports import StubTransport, TransportRegistry, stub_registry

NOW = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)
ORIGIN_LAT = 37.7749
ORIGIN_LON = -122.4194
ADDRESS = "1 Market St, San Francisco"
USER = "user-1"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class _Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _make_contact(
    contact_id: str,
    km: float = 0.5,
    minutes_idle: float = 10,
    is_primary: bool = False,
    has_app: bool = True,
) -> Contact:
    return Contact(
        contact_id=contact_id,
        name=f"Contact {contact_id}",
        phone_number=f"+1555000{len(contact_id):04d}",
        is_primary=is_primary,
        last_known_location=ContactLocation(
            latitude=ORIGIN_LAT + km / 111.0,
            longitude=ORIGIN_LON,
            timestamp=NOW,
        ),
        last_active_time=NOW - timedelta(minutes=minutes_idle),
        has_app=has_app,
        push_token=f"token-{contact_id}" if has_app else None,
    )


def _make_stale_contact(contact_id: str) -> Contact:
    return Contact(
        contact_id=contact_id,
        name=f"Stale {contact_id}",
        phone_number="+15550009999",
        last_active_time=NOW - timedelta(days=10),
    )


def _make_ranked_contacts(count: int) -> list[Contact]:
    """Contacts c1..cN, each farther away than the previous one."""
    distances = [0.5, 2, 7, 15, 30]
    return [
        _make_contact(f"c{i + 1}", km=distances[min(i, len(distances) - 1)] + i * 0.01)
        for i in range(count)
    ]


class _Rig:
    """A controller wired to in-memory stores and stub transports."""

    def __init__(
        self,
        contacts: list[Contact],
        settings: EngineSettings | None = None,
        transport=None,
        notifications: NotificationStore | None = None,
        contact_repo: ContactRepository | None = None,
    ) -> None:
        self.clock = _Clock()
        self.registry, self.stubs = stub_registry()
        self.notifications = notifications or InMemoryNotificationStore()
        self.emergencies = InMemoryEmergencyStore()
        self.controller = EscalationController(
            contacts=contact_repo or InMemoryContactRepository(contacts, user_id=USER),
            transport=transport or self.registry,
            notifications=self.notifications,
            emergencies=self.emergencies,
            settings=settings or EngineSettings(),
            clock=self.clock,
        )

    async def trigger(self, emergency_id: str = "em-1", **kwargs) -> None:
        self.emergencies.add(
            emergency_id,
            EmergencyLocation(latitude=ORIGIN_LAT, longitude=ORIGIN_LON, address=ADDRESS),
        )
        await self.controller.trigger_emergency_notifications(
            emergency_id, ORIGIN_LAT, ORIGIN_LON, ADDRESS, user_id=USER, **kwargs
        )

    async def statuses(self, emergency_id: str = "em-1") -> dict[str, NotificationStatus]:
        return {
            n.contact_id: n.status
            for n in await self.notifications.notified_contacts(emergency_id)
        }

    def session(self, emergency_id: str = "em-1"):
        return self.controller.get_session(emergency_id)


class _FailingContacts(ContactRepository):
    async def list_enhanced_contacts(self, user_id):
        raise ConnectionError("contact store unavailable")


class _FailingNotificationStore(InMemoryNotificationStore):
    async def save(self, notification):
        raise ConnectionError("notification store unavailable")


# ---------------------------------------------------------------------------
# 1. Trigger and initial wave
# ---------------------------------------------------------------------------

class TestTrigger:
    @pytest.mark.asyncio
    async def test_notifies_top_three_in_rank_order(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()

        session = rig.session()
        assert session.state == SessionState.WAITING
        assert session.escalation_level == 0
        assert session.notified_contact_ids == ["c1", "c2", "c3"]
        assert [s.contact_id for s in session.ranked_contacts] == ["c1", "c2", "c3", "c4", "c5"]
        assert rig.stubs[NotificationMethod.PUSH].delivered_to() == ["c1", "c2", "c3"]
        assert await rig.statuses() == {
            "c1": NotificationStatus.DELIVERED,
            "c2": NotificationStatus.DELIVERED,
            "c3": NotificationStatus.DELIVERED,
        }
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_arms_wave_timer_and_one_response_timer_per_delivery(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()

        timers = rig.controller.timers
        assert timers.is_armed(TimerKey.wave("em-1"))
        for cid in ("c1", "c2", "c3"):
            assert timers.is_armed(TimerKey.response("em-1", cid))
        assert not timers.is_armed(TimerKey.response("em-1", "c4"))
        assert len(timers.armed_keys("em-1")) == 4
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_fewer_contacts_than_batch(self):
        rig = _Rig(_make_ranked_contacts(2))
        await rig.trigger()

        assert rig.session().notified_contact_ids == ["c1", "c2"]
        assert rig.session().state == SessionState.WAITING
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_initial_message_carries_address_and_coordinates(self):
        rig = _Rig(_make_ranked_contacts(1))
        await rig.trigger()

        message = rig.stubs[NotificationMethod.PUSH].deliveries[0].message
        assert message.startswith("EMERGENCY ALERT")
        assert ADDRESS in message
        assert "37.774900, -122.419400" in message
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_custom_message_replaces_template(self):
        rig = _Rig(_make_ranked_contacts(2))
        await rig.trigger(custom_message="Fell while hiking, need help")

        messages = [d.message for d in rig.stubs[NotificationMethod.PUSH].deliveries]
        assert messages == ["Fell while hiking, need help"] * 2
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_repeat_trigger_is_ignored(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()
        await rig.trigger()

        assert len(rig.notifications) == 3
        assert rig.session().notified_contact_ids == ["c1", "c2", "c3"]
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_unavailable_contact_never_notified(self):
        contacts = [_make_stale_contact("stale"), *_make_ranked_contacts(2)]
        rig = _Rig(contacts)
        await rig.trigger()

        session = rig.session()
        assert "stale" not in [s.contact_id for s in session.ranked_contacts]
        assert session.notified_contact_ids == ["c1", "c2"]
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_trigger_audit_trail(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.trigger()

        events = [e.event_type for e in rig.controller.audit_log.query("em-1")]
        assert events[:2] == [
            AuditEventType.EMERGENCY_TRIGGERED,
            AuditEventType.CONTACTS_RANKED,
        ]
        assert events.count(AuditEventType.NOTIFICATION_SENT) == 3
        valid, broken_at = rig.controller.audit_log.verify_chain()
        assert valid is True
        assert broken_at is None
        await rig.controller.shutdown()


# ---------------------------------------------------------------------------
# 2. No eligible contacts
# ---------------------------------------------------------------------------

class TestNoEligibleContacts:
    @pytest.mark.asyncio
    async def test_only_unavailable_contacts(self):
        rig = _Rig([_make_stale_contact("s1"), _make_stale_contact("s2")])
        await rig.trigger()

        session = rig.session()
        assert session.state == SessionState.RESOLVED
        assert session.resolution_reason == ResolutionReason.NO_ELIGIBLE_CONTACTS
        assert session.notified_contact_ids == []
        assert len(rig.notifications) == 0
        assert rig.controller.timers.armed_keys("em-1") == []
        assert rig.controller.audit_log.query(
            "em-1", event_type=AuditEventType.NO_ELIGIBLE_CONTACTS
        )

    @pytest.mark.asyncio
    async def test_empty_contact_list(self):
        rig = _Rig([])
        await rig.trigger()

        assert rig.session().resolution_reason == ResolutionReason.NO_ELIGIBLE_CONTACTS

    @pytest.mark.asyncio
    async def test_contact_store_failure_does_not_raise(self):
        rig = _Rig([], contact_repo=_FailingContacts())
        await rig.trigger()

        assert rig.session().state == SessionState.RESOLVED
        assert rig.session().resolution_reason == ResolutionReason.NO_ELIGIBLE_CONTACTS


# ---------------------------------------------------------------------------
# 3. Escalation waves
# ---------------------------------------------------------------------------

class TestEscalationWaves:
    @pytest.mark.asyncio
    async def test_five_contacts_then_exhausted(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()

        await rig.controller.handle_wave_timeout("em-1")
        session = rig.session()
        assert session.escalation_level == 1
        assert session.notified_contact_ids == ["c1", "c2", "c3", "c4", "c5"]
        assert session.state == SessionState.WAITING
        assert rig.controller.timers.is_armed(TimerKey.wave("em-1"))

        await rig.controller.handle_wave_timeout("em-1")
        session = rig.session()
        assert session.state == SessionState.RESOLVED
        assert session.resolution_reason == ResolutionReason.EXHAUSTED
        assert session.escalation_level == 1
        assert len(rig.notifications) == 5
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_level_never_exceeds_three(self):
        rig = _Rig([_make_contact(f"c{i:02d}", km=0.5 + i) for i in range(12)])
        await rig.trigger()

        for _ in range(5):
            await rig.controller.handle_wave_timeout("em-1")

        session = rig.session()
        assert session.escalation_level == 3
        assert len(session.notified_contact_ids) == 3 + 3 * 2
        assert session.resolution_reason == ResolutionReason.EXHAUSTED
        assert [len(batch) for batch in session.waves] == [3, 2, 2, 2]
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_exhaustion_expires_outstanding_and_cancels_every_timer(self):
        rig = _Rig(_make_ranked_contacts(4))
        await rig.trigger()
        await rig.controller.handle_contact_response("em-1", "c1", ContactResponse.CANNOT_HELP)
        await rig.controller.handle_wave_timeout("em-1")
        await rig.controller.handle_wave_timeout("em-1")

        assert rig.session().resolution_reason == ResolutionReason.EXHAUSTED
        assert rig.controller.timers.armed_keys("em-1") == []
        assert await rig.statuses() == {
            "c1": NotificationStatus.RESPONDED,
            "c2": NotificationStatus.EXPIRED,
            "c3": NotificationStatus.EXPIRED,
            "c4": NotificationStatus.EXPIRED,
        }
        audit = rig.controller.audit_log
        assert len(audit.query("em-1", event_type=AuditEventType.NOTIFICATION_EXPIRED)) == 3
        events = [e.event_type for e in audit.query("em-1")]
        assert events[-1] == AuditEventType.EMERGENCY_RESOLVED

    @pytest.mark.asyncio
    async def test_no_contact_notified_twice(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()
        await rig.controller.handle_wave_timeout("em-1")
        await rig.controller.handle_wave_timeout("em-1")

        contact_ids = [
            n.contact_id for n in await rig.notifications.notified_contacts("em-1")
        ]
        assert sorted(contact_ids) == ["c1", "c2", "c3", "c4", "c5"]
        assert len(set(rig.session().notified_contact_ids)) == 5
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_wave_uses_escalation_message(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()
        await rig.controller.handle_wave_timeout("em-1")

        deliveries = rig.stubs[NotificationMethod.PUSH].deliveries
        assert [d.contact_id for d in deliveries[3:]] == ["c4", "c5"]
        assert "Escalation Level 1" in deliveries[3].message
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_wave_reads_current_emergency_location(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()
        rig.emergencies.add(
            "em-1",
            EmergencyLocation(latitude=37.80, longitude=-122.41, address="Pier 39"),
        )
        await rig.controller.handle_wave_timeout("em-1")

        message = rig.stubs[NotificationMethod.PUSH].deliveries[-1].message
        assert "Pier 39" in message
        assert "37.800000, -122.410000" in message
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_wave_falls_back_to_trigger_location(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.controller.trigger_emergency_notifications(
            "em-missing", ORIGIN_LAT, ORIGIN_LON, ADDRESS, user_id=USER
        )
        await rig.controller.handle_wave_timeout("em-missing")

        session = rig.session("em-missing")
        assert session.escalation_level == 1
        assert ADDRESS in rig.stubs[NotificationMethod.PUSH].deliveries[-1].message
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_wave_reclassifies_availability(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()
        rig.clock.advance(minutes=40)  # idle 50 minutes: recentlyActive
        await rig.controller.handle_wave_timeout("em-1")

        sms = rig.stubs[NotificationMethod.SMS]
        assert sms.delivered_to() == ["c4", "c5"]
        assert "https://maps.google.com/?q=" in sms.deliveries[0].message
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_wave_timeout_for_unknown_emergency_is_noop(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.controller.handle_wave_timeout("nope")

        assert rig.session("nope") is None
        assert len(rig.notifications) == 0


# ---------------------------------------------------------------------------
# 4. Contact responses
# ---------------------------------------------------------------------------

class TestContactResponses:
    @pytest.mark.asyncio
    async def test_on_my_way_cancels_all_timers_and_resolves(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()
        rig.clock.advance(minutes=1)

        await rig.controller.handle_contact_response("em-1", "c2", ContactResponse.ON_MY_WAY)

        session = rig.session()
        assert session.state == SessionState.RESOLVED
        assert session.resolution_reason == ResolutionReason.HELP_CONFIRMED
        assert rig.controller.timers.armed_keys("em-1") == []
        statuses = await rig.statuses()
        assert statuses["c2"] == NotificationStatus.RESPONDED

        # A wave timer that slipped through must not escalate.
        await rig.controller.handle_wave_timeout("em-1")
        assert rig.session().escalation_level == 0
        assert len(rig.notifications) == 3

    @pytest.mark.asyncio
    async def test_cannot_help_keeps_escalation_running(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()

        await rig.controller.handle_contact_response("em-1", "c1", ContactResponse.CANNOT_HELP)

        session = rig.session()
        assert session.state == SessionState.WAITING
        timers = rig.controller.timers
        assert not timers.is_armed(TimerKey.response("em-1", "c1"))
        assert timers.is_armed(TimerKey.response("em-1", "c2"))
        assert timers.is_armed(TimerKey.wave("em-1"))
        assert (await rig.statuses())["c1"] == NotificationStatus.RESPONDED
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_duplicate_response_is_idempotent(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.trigger()

        await rig.controller.handle_contact_response("em-1", "c1", ContactResponse.WILL_HELP)
        first = rig.session()
        first_statuses = await rig.statuses()
        await rig.controller.handle_contact_response("em-1", "c1", ContactResponse.WILL_HELP)

        assert rig.session() == first
        assert await rig.statuses() == first_statuses
        log = rig.controller.audit_log
        assert len(log.query("em-1", event_type=AuditEventType.HELP_CONFIRMED)) == 1
        assert len(log.query("em-1", event_type=AuditEventType.EMERGENCY_RESOLVED)) == 1

    @pytest.mark.asyncio
    async def test_response_from_contact_never_notified_is_ignored(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()

        await rig.controller.handle_contact_response("em-1", "c5", ContactResponse.WILL_HELP)

        assert rig.session().state == SessionState.WAITING
        assert rig.controller.audit_log.query(
            "em-1", event_type=AuditEventType.CONTACT_RESPONDED
        ) == []
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_late_help_after_expiry_still_resolves(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.trigger()
        await rig.controller.handle_response_timeout("em-1", "c1")

        await rig.controller.handle_contact_response("em-1", "c1", ContactResponse.WILL_HELP)

        assert (await rig.statuses())["c1"] == NotificationStatus.EXPIRED
        assert rig.session().resolution_reason == ResolutionReason.HELP_CONFIRMED

    @pytest.mark.asyncio
    async def test_resolution_keeps_escalation_level(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()
        await rig.controller.handle_wave_timeout("em-1")

        await rig.controller.handle_contact_response(
            "em-1", "c4", ContactResponse.CALLED_AUTHORITIES
        )

        session = rig.session()
        assert session.escalation_level == 1
        assert session.resolved_at is not None

    @pytest.mark.asyncio
    async def test_responses_are_audited_with_contact_as_actor(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.trigger()
        await rig.controller.handle_contact_response("em-1", "c3", ContactResponse.ON_MY_WAY)

        entries = rig.controller.audit_log.query("em-1", actor_id="c3")
        assert [e.event_type for e in entries] == [
            AuditEventType.CONTACT_RESPONDED,
            AuditEventType.HELP_CONFIRMED,
        ]


# ---------------------------------------------------------------------------
# 5. Per-contact response timeout
# ---------------------------------------------------------------------------

class TestResponseTimeout:
    @pytest.mark.asyncio
    async def test_marks_notification_expired_without_escalating(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger()

        await rig.controller.handle_response_timeout("em-1", "c1")

        assert (await rig.statuses())["c1"] == NotificationStatus.EXPIRED
        session = rig.session()
        assert session.state == SessionState.WAITING
        assert session.escalation_level == 0
        assert rig.controller.audit_log.query(
            "em-1", event_type=AuditEventType.NOTIFICATION_EXPIRED
        )
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_timeout_after_response_changes_nothing(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.trigger()
        await rig.controller.handle_contact_response("em-1", "c1", ContactResponse.CANNOT_HELP)

        await rig.controller.handle_response_timeout("em-1", "c1")

        assert (await rig.statuses())["c1"] == NotificationStatus.RESPONDED
        assert rig.controller.audit_log.query(
            "em-1", event_type=AuditEventType.NOTIFICATION_EXPIRED
        ) == []
        await rig.controller.shutdown()


# ---------------------------------------------------------------------------
# 6. Failure isolation
# ---------------------------------------------------------------------------

class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_one_failed_send_does_not_stop_the_wave(self):
        registry, stubs = stub_registry(failing_contacts={"c2"})
        rig = _Rig(_make_ranked_contacts(5), transport=registry)
        await rig.trigger()

        assert await rig.statuses() == {
            "c1": NotificationStatus.DELIVERED,
            "c2": NotificationStatus.FAILED,
            "c3": NotificationStatus.DELIVERED,
        }
        session = rig.session()
        assert "c2" in session.notified_contact_ids
        assert not rig.controller.timers.is_armed(TimerKey.response("em-1", "c2"))
        assert rig.controller.timers.is_armed(TimerKey.wave("em-1"))
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_transport_outage_marks_all_failed(self):
        registry = TransportRegistry()
        registry.register(NotificationMethod.PUSH, StubTransport(error=RuntimeError("down")))
        rig = _Rig(_make_ranked_contacts(3), transport=registry)
        await rig.trigger()

        statuses = await rig.statuses()
        assert set(statuses.values()) == {NotificationStatus.FAILED}
        assert rig.session().state == SessionState.WAITING
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_notification_store_outage_still_delivers(self):
        rig = _Rig(_make_ranked_contacts(3), notifications=_FailingNotificationStore())
        await rig.trigger()

        assert rig.stubs[NotificationMethod.PUSH].delivered_to() == ["c1", "c2", "c3"]
        assert rig.session().state == SessionState.WAITING
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_corrupt_history_only_degrades_that_contact(self):
        contacts = _make_ranked_contacts(4)
        repo = InMemoryContactRepository(contacts[:3], user_id=USER)
        doc = contact_to_document(contacts[3])
        doc["recentLocations"] = [{
            "latitude": ORIGIN_LAT,
            "longitude": ORIGIN_LON,
            "timestamp": doc["lastActiveTime"],
            "placeType": "gym",
        }]
        repo.add_document("c4", doc, USER)
        rig = _Rig([], contact_repo=repo)
        await rig.trigger()

        session = rig.session()
        assert session.state == SessionState.WAITING
        assert session.notified_contact_ids == ["c1", "c2", "c3"]
        assert [s.contact_id for s in session.ranked_contacts] == ["c1", "c2", "c3", "c4"]
        assert session.ranked_contacts[3].scores.virtual_closeness == 0.0
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_undecodable_contact_is_skipped(self):
        repo = InMemoryContactRepository(_make_ranked_contacts(2), user_id=USER)
        repo.add_document("broken", {"name": "No Phone"}, USER)
        rig = _Rig([], contact_repo=repo)
        await rig.trigger()

        session = rig.session()
        assert session.notified_contact_ids == ["c1", "c2"]
        assert "broken" not in [s.contact_id for s in session.ranked_contacts]
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_emergencies_are_isolated(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger("em-1")
        await rig.trigger("em-2")

        await rig.controller.handle_contact_response("em-1", "c1", ContactResponse.WILL_HELP)

        assert rig.session("em-1").state == SessionState.RESOLVED
        assert rig.session("em-2").state == SessionState.WAITING
        assert rig.controller.timers.is_armed(TimerKey.wave("em-2"))
        assert rig.controller.active_emergencies() == ["em-2"]
        await rig.controller.shutdown()


# ---------------------------------------------------------------------------
# 7. Manual resolution, snapshots and shutdown
# ---------------------------------------------------------------------------

class TestLifecycleControls:
    @pytest.mark.asyncio
    async def test_manual_resolution_cancels_timers(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.trigger()

        await rig.controller.resolve_emergency("em-1")
        await rig.controller.resolve_emergency("em-1")

        assert rig.session().resolution_reason == ResolutionReason.MANUAL
        assert rig.controller.timers.armed_keys("em-1") == []
        assert len(rig.controller.audit_log.query(
            "em-1", event_type=AuditEventType.EMERGENCY_RESOLVED
        )) == 1

    @pytest.mark.asyncio
    async def test_resolving_unknown_emergency_is_noop(self):
        rig = _Rig([])
        await rig.controller.resolve_emergency("nope")
        assert rig.session("nope") is None

    @pytest.mark.asyncio
    async def test_get_session_returns_snapshot(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.trigger()

        snapshot = rig.session()
        snapshot.notified_contact_ids.append("intruder")
        snapshot.state = SessionState.RESOLVED

        assert "intruder" not in rig.session().notified_contact_ids
        assert rig.session().state == SessionState.WAITING
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_every_timer(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger("em-1")
        await rig.trigger("em-2")

        await rig.controller.shutdown()
        assert len(rig.controller.timers) == 0

    @pytest.mark.asyncio
    async def test_evict_resolved_drops_only_settled_sessions(self):
        rig = _Rig(_make_ranked_contacts(5))
        await rig.trigger("em-1")
        await rig.trigger("em-2")
        await rig.controller.resolve_emergency("em-1")

        assert rig.controller.evict_resolved() == ["em-1"]
        assert rig.session("em-1") is None
        assert rig.session("em-2").state == SessionState.WAITING
        assert rig.controller.evict_resolved() == []
        await rig.controller.shutdown()

    @pytest.mark.asyncio
    async def test_late_response_after_eviction_is_harmless(self):
        rig = _Rig(_make_ranked_contacts(3))
        await rig.trigger()
        await rig.controller.resolve_emergency("em-1")
        rig.controller.evict_resolved()

        await rig.controller.handle_contact_response("em-1", "c2", ContactResponse.ON_MY_WAY)

        assert rig.session() is None
        assert rig.controller.timers.armed_keys("em-1") == []
        assert (await rig.statuses())["c2"] == NotificationStatus.RESPONDED

    def test_resolved_is_terminal(self):
        from guardianrelay.escalation import EmergencySession

        controller = _Rig([]).controller
        session = EmergencySession(
            emergency_id="em-1",
            location=EmergencyLocation(latitude=0, longitude=0),
            state=SessionState.RESOLVED,
        )
        with pytest.raises(InvalidSessionTransition):
            controller._transition(session, SessionState.NOTIFYING)


# ---------------------------------------------------------------------------
# 8. Real timers
# ---------------------------------------------------------------------------

def _fast_settings() -> EngineSettings:
    return EngineSettings(
        response_timeout_seconds=0.05,
        first_wave_delay_seconds=0.1,
        subsequent_wave_delay_seconds=0.1,
    )


class TestRealTimers:
    @pytest.mark.asyncio
    async def test_unanswered_emergency_escalates_then_exhausts(self):
        rig = _Rig(_make_ranked_contacts(5), settings=_fast_settings())
        await rig.trigger()

        await asyncio.sleep(0.8)

        session = rig.session()
        assert session.state == SessionState.RESOLVED
        assert session.resolution_reason == ResolutionReason.EXHAUSTED
        assert session.escalation_level == 1
        statuses = await rig.statuses()
        assert set(statuses) == {"c1", "c2", "c3", "c4", "c5"}
        assert set(statuses.values()) == {NotificationStatus.EXPIRED}
        assert len(rig.controller.timers) == 0

    @pytest.mark.asyncio
    async def test_help_before_first_wave_stops_escalation(self):
        settings = EngineSettings(first_wave_delay_seconds=0.2)
        rig = _Rig(_make_ranked_contacts(5), settings=settings)
        await rig.trigger()

        await rig.controller.handle_contact_response("em-1", "c1", ContactResponse.ON_MY_WAY)
        await asyncio.sleep(0.4)

        session = rig.session()
        assert session.escalation_level == 0
        assert session.notified_contact_ids == ["c1", "c2", "c3"]
        assert len(rig.notifications) == 3
        await rig.controller.shutdown()
