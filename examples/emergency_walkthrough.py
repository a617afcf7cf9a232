"""
Synthetic Scenario: Emergency Contact Escalation Walkthrough
============================================================

This script runs the full GuardianRelay escalation workflow on synthetic
contacts with timers scaled down to seconds.  No real person, phone
number or location is used.

Steps demonstrated:
  1. Load engine settings from YAML
  2. Register synthetic contacts and the user's location history
  3. Trigger an emergency and inspect the ranking
  4. Watch a failed send and an escalation wave happen on their own
  5. Confirm help from a contact added by the wave
  6. Generate an Emergency Session Report
  7. Export the audit trail for review

Usage:
    python -m examples.emergency_walkthrough
    # or: python examples/emergency_walkthrough.py
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from guardianrelay.config import EngineSettings, load_settings_from_yaml
from guardianrelay.escalation import EscalationController
from guardianrelay.models import (
    Contact,
    ContactLocation,
    ContactResponse,
    EmergencyLocation,
    LocationSample,
    PlaceType,
)
from guardianrelay.report import generate_session_report
from guardianrelay.stores import (
    InMemoryContactRepository,
    InMemoryEmergencyStore,
    InMemoryLocationHistory,
    InMemoryNotificationStore,
)
from guardianrelay.transports import stub_registry

USER_ID = "user_demo"
EMERGENCY_ID = "emergency_demo"
HOME = (37.7749, -122.4194)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _synthetic_contacts(now: datetime) -> list[Contact]:
    def located(km: float) -> ContactLocation:
        return ContactLocation(latitude=HOME[0] + km / 111.0, longitude=HOME[1], timestamp=now)

    home_visit = LocationSample(
        latitude=HOME[0],
        longitude=HOME[1],
        timestamp=now - timedelta(days=2),
        time_spent=timedelta(hours=6),
        place_type=PlaceType.HOME,
    )
    return [
        Contact(
            contact_id="sam", name="Sam (synthetic)", phone_number="+15550000001",
            relationship="partner", is_primary=True, last_known_location=located(0.4),
            last_active_time=now - timedelta(minutes=5), has_app=True, push_token="tok-sam",
            recent_locations=[home_visit],
        ),
        Contact(
            contact_id="riley", name="Riley (synthetic)", phone_number="+15550000002",
            relationship="neighbor", last_known_location=located(0.8),
            last_active_time=now - timedelta(minutes=40),
        ),
        Contact(
            contact_id="jordan", name="Jordan (synthetic)", phone_number="+15550000003",
            relationship="friend", last_known_location=located(3),
            last_active_time=now - timedelta(hours=3),
        ),
        Contact(
            contact_id="casey", name="Casey (synthetic)", phone_number="+15550000004",
            relationship="coworker", last_known_location=located(12),
            last_active_time=now - timedelta(hours=8), has_app=True, push_token="tok-casey",
        ),
        Contact(
            contact_id="morgan", name="Morgan (synthetic)", phone_number="+15550000005",
            relationship="sibling", last_known_location=located(30),
            last_active_time=now - timedelta(days=2),
        ),
        Contact(
            contact_id="alex", name="Alex (synthetic)", phone_number="+15550000006",
            relationship="old roommate", last_active_time=now - timedelta(days=30),
        ),
    ]


async def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    _banner("GuardianRelay Synthetic Scenario: Emergency Escalation")
    print("All contacts, numbers and locations in this demo are synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Load engine settings
    # ------------------------------------------------------------------
    _banner("Step 1: Load Engine Settings")

    sample_yaml = Path(__file__).parent / "engine.yaml"
    if sample_yaml.exists():
        settings = load_settings_from_yaml(sample_yaml)
        print(f"Loaded settings from {sample_yaml.name}")
    else:
        settings = EngineSettings(
            response_timeout_seconds=2,
            first_wave_delay_seconds=1.5,
            subsequent_wave_delay_seconds=1,
        )
        print("Using inline settings")
    print(f"  Initial batch: {settings.initial_batch_size}, "
          f"per wave: {settings.escalation_batch_size}, "
          f"max level: {settings.max_escalation_level}")

    # ------------------------------------------------------------------
    # Step 2: Synthetic contacts and history
    # ------------------------------------------------------------------
    _banner("Step 2: Register Synthetic Contacts")

    now = datetime.now(timezone.utc)
    contacts = _synthetic_contacts(now)
    history = InMemoryLocationHistory(
        [LocationSample(
            latitude=HOME[0], longitude=HOME[1], timestamp=now - timedelta(days=1),
            time_spent=timedelta(hours=10), place_type=PlaceType.HOME,
        )],
        user_id=USER_ID,
    )
    # Jordan's phone number is unreachable in this scenario.
    registry, stubs = stub_registry(failing_contacts={"jordan"})
    notifications = InMemoryNotificationStore()
    emergencies = InMemoryEmergencyStore()

    controller = EscalationController(
        contacts=InMemoryContactRepository(contacts, user_id=USER_ID),
        transport=registry,
        notifications=notifications,
        emergencies=emergencies,
        location_history=history,
        settings=settings,
    )
    for contact in contacts:
        print(f"  {contact.contact_id:<8} {contact.relationship}")

    # ------------------------------------------------------------------
    # Step 3: Trigger
    # ------------------------------------------------------------------
    _banner("Step 3: Trigger Emergency")

    emergencies.add(
        EMERGENCY_ID,
        EmergencyLocation(latitude=HOME[0], longitude=HOME[1], address="100 Synthetic Ave"),
    )
    await controller.trigger_emergency_notifications(
        EMERGENCY_ID, HOME[0], HOME[1], "100 Synthetic Ave", user_id=USER_ID
    )
    session = controller.get_session(EMERGENCY_ID)
    print("Dispatch order:")
    for scored in session.ranked_contacts:
        print(f"  {scored.contact_id:<8} priority={scored.priority_score:.2f} "
              f"availability={scored.availability.value}")
    print(f"Wave 0 notified: {session.notified_contact_ids}")

    # ------------------------------------------------------------------
    # Step 4: Let the timers run
    # ------------------------------------------------------------------
    _banner("Step 4: No One Confirms -- Escalation")

    await asyncio.sleep(settings.first_wave_delay_seconds + 0.2)
    session = controller.get_session(EMERGENCY_ID)
    print(f"Escalation level: {session.escalation_level}")
    print(f"Notified so far: {session.notified_contact_ids}")

    # ------------------------------------------------------------------
    # Step 5: Help confirmed
    # ------------------------------------------------------------------
    _banner("Step 5: Contact Confirms Help")

    responder = session.waves[-1][0]
    await controller.handle_contact_response(EMERGENCY_ID, responder, ContactResponse.ON_MY_WAY)
    session = controller.get_session(EMERGENCY_ID)
    print(f"{responder} is on their way")
    print(f"State: {session.state.value} ({session.resolution_reason.value})")
    print(f"Live timers: {len(controller.timers.armed_keys(EMERGENCY_ID))}")

    # ------------------------------------------------------------------
    # Step 6: Session report
    # ------------------------------------------------------------------
    _banner("Step 6: Emergency Session Report")

    report = generate_session_report(
        session, await notifications.notified_contacts(EMERGENCY_ID)
    )
    print(json.dumps(report.to_dict(), indent=2))

    # ------------------------------------------------------------------
    # Step 7: Audit export
    # ------------------------------------------------------------------
    _banner("Step 7: Audit Trail Export (PII Redacted)")

    export = controller.audit_log.export_for_review(EMERGENCY_ID)
    print(f"Entries: {export['export_metadata']['entry_count']}")
    print(f"Chain integrity: {export['export_metadata']['chain_integrity']}")
    for entry in export["entries"]:
        print(f"  {entry['event_type']:<22} actor={entry['actor_id']}")

    await controller.shutdown()
    _banner("Walkthrough Complete")


if __name__ == "__main__":
    asyncio.run(main())
