"""
Channel Selector -- picks one notification channel per send attempt.

Decision order, first match wins:

1. Companion app installed, push token present and contact ``ACTIVE``
   -> push notification.
2. ``LIKELY_AVAILABLE`` or ``RECENTLY_ACTIVE`` -> SMS.
3. Primary contact or ``POSSIBLY_UNAVAILABLE`` -> voice call; urgency
   justifies waking the callee.
4. Otherwise -> SMS.

Pure function; the escalation controller calls it again for every wave
because a contact's availability may have changed in between.
"""

from __future__ import annotations

from guardianrelay.models import Availability, NotificationMethod, ScoredContact


def select_channel(scored: ScoredContact) -> NotificationMethod:
    contact = scored.contact
    availability = scored.availability

    if contact.has_app and contact.push_token and availability == Availability.ACTIVE:
        return NotificationMethod.PUSH

    if availability in (Availability.LIKELY_AVAILABLE, Availability.RECENTLY_ACTIVE):
        return NotificationMethod.SMS

    if contact.is_primary or availability == Availability.POSSIBLY_UNAVAILABLE:
        return NotificationMethod.CALL

    return NotificationMethod.SMS
