"""
Emergency Session Report Generator.

Builds a structured after-action summary of one emergency from its session
and its notification records: who was notified in which wave and how, what
each contact answered, and why escalation ended.  Intended for the user
and for support staff reviewing how an emergency played out.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from guardianrelay.escalation import EmergencySession
from guardianrelay.models import EmergencyNotification, NotificationStatus


class SessionReport:
    """A structured summary of one emergency session."""

    def __init__(
        self,
        emergency_id: str,
        state: str,
        resolution_reason: str | None,
        escalation_level: int,
        triggered_at: str,
        resolved_at: str | None,
        ranked: list[dict[str, Any]],
        contacts: list[dict[str, Any]],
        history: list[dict[str, Any]],
        status_counts: dict[str, int],
        responder_id: str | None,
        generated_at: str,
    ) -> None:
        self.emergency_id = emergency_id
        self.state = state
        self.resolution_reason = resolution_reason
        self.escalation_level = escalation_level
        self.triggered_at = triggered_at
        self.resolved_at = resolved_at
        self.ranked = ranked
        self.contacts = contacts
        self.history = history
        self.status_counts = status_counts
        self.responder_id = responder_id
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize the report to a dictionary."""
        return {
            "report_type": "Emergency Session Report",
            "emergency_id": self.emergency_id,
            "state": self.state,
            "resolution_reason": self.resolution_reason,
            "escalation_level": self.escalation_level,
            "triggered_at": self.triggered_at,
            "resolved_at": self.resolved_at,
            "ranked": self.ranked,
            "contacts": self.contacts,
            "history": self.history,
            "status_counts": self.status_counts,
            "responder_id": self.responder_id,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"SessionReport(emergency_id={self.emergency_id}, "
            f"state={self.state}, level={self.escalation_level})"
        )


def generate_session_report(
    session: EmergencySession,
    notifications: Iterable[EmergencyNotification],
) -> SessionReport:
    """Generate a session report.

    Args:
        session: Snapshot of the emergency session.
        notifications: The emergency's notification records, in any order.
            Records of other emergencies are ignored.

    Returns:
        A ``SessionReport``; contacts are listed in notification order.
    """
    own = sorted(
        (n for n in notifications if n.emergency_id == session.emergency_id),
        key=lambda n: n.sent_at,
    )
    latest = {n.contact_id: n for n in own}
    waves = _wave_numbers(session)

    contacts = []
    for contact_id in session.notified_contact_ids:
        notification = latest.get(contact_id)
        contacts.append({
            "contact_id": contact_id,
            "wave": waves.get(contact_id, 0),
            "method": notification.method.value if notification else None,
            "status": notification.status.value if notification else None,
            "response": (
                notification.response.value
                if notification and notification.response else None
            ),
            "priority_score": notification.priority_score if notification else None,
        })

    status_counts = {status.value: 0 for status in NotificationStatus}
    for notification in latest.values():
        status_counts[notification.status.value] += 1

    helpers = sorted(
        (n for n in latest.values() if n.response is not None and n.response.confirms_help),
        key=lambda n: n.responded_at or n.sent_at,
    )
    responder = helpers[0].contact_id if helpers else None

    return SessionReport(
        emergency_id=session.emergency_id,
        state=session.state.value,
        resolution_reason=(
            session.resolution_reason.value if session.resolution_reason else None
        ),
        escalation_level=session.escalation_level,
        triggered_at=session.triggered_at.isoformat(),
        resolved_at=session.resolved_at.isoformat() if session.resolved_at else None,
        ranked=[
            {
                "contact_id": s.contact_id,
                "availability": s.availability.value,
                **s.scores.model_dump(),
            }
            for s in session.ranked_contacts
        ],
        contacts=contacts,
        history=[
            {
                "notification_id": n.notification_id,
                "contact_id": n.contact_id,
                "method": n.method.value,
                "status": n.status.value,
                "sent_at": n.sent_at.isoformat(),
                "responded_at": n.responded_at.isoformat() if n.responded_at else None,
            }
            for n in own
        ],
        status_counts=status_counts,
        responder_id=responder,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _wave_numbers(session: EmergencySession) -> dict[str, int]:
    """Map each notified contact to its wave (0 = initial batch)."""
    return {
        contact_id: index
        for index, batch in enumerate(session.waves)
        for contact_id in batch
    }
