"""
Scoring Engine -- ranks emergency contacts by likely usefulness.

Each contact receives three sub-scores in [0, 1] and a combined priority:

* **proximity** -- bucketed great-circle distance between the emergency and
  the contact's last known fix.  Coarse buckets avoid false precision from
  stale GPS fixes.
* **virtual closeness** -- how often the user's and the contact's recent
  location histories overlap, and for how long.
* **activity** -- recency of the contact's last activity in the companion
  app.
* **priority** -- ``0.4 * proximity + 0.3 * closeness + 0.3 * activity``
  plus a flat bonus for primary contacts, clamped to [0, 1].

An availability class is derived alongside the numeric scores and feeds the
channel selector.

Scoring never fails the pipeline: any error inside a sub-score degrades
that sub-score to 0.0 and is logged.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Iterable, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from guardianrelay.config import DEFAULT_SETTINGS, EngineSettings
from guardianrelay.models import (
    Availability,
    Contact,
    ContactScores,
    GeoPoint,
    LocationSample,
    ScoredContact,
)

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0

_ACTIVITY_STEPS: list[tuple[timedelta, float]] = [
    (timedelta(minutes=30), 1.0),
    (timedelta(hours=2), 0.8),
    (timedelta(hours=12), 0.6),
    (timedelta(days=1), 0.4),
    (timedelta(days=7), 0.2),
]

_ACTIVE_WINDOW = timedelta(minutes=15)
_RECENTLY_ACTIVE_WINDOW = timedelta(hours=1)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points, in meters."""
    rlat1 = math.radians(lat1)
    rlat2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_m(a.latitude, a.longitude, b.latitude, b.longitude)


def _as_utc(dt: datetime) -> datetime:
    # Naive timestamps from the store are UTC.
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Scoring engine
# ---------------------------------------------------------------------------

class ScoringEngine:
    """Computes sub-scores, priority and availability for contacts.

    The engine is stateless apart from its settings; every call recomputes
    from the inputs it is given.
    """

    def __init__(self, settings: EngineSettings = DEFAULT_SETTINGS) -> None:
        self._settings = settings
        self._home_zone = self._resolve_zone(settings.home_time_zone) or timezone.utc

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    # -- sub-scores --

    def proximity_for_distance(self, distance_m: float) -> float:
        """Bucketed proximity score for a distance in meters."""
        for bucket in self._settings.proximity_buckets:
            if distance_m < bucket.max_distance_m:
                return bucket.score
        return 0.0

    def proximity_score(self, origin: GeoPoint, contact: Contact) -> float:
        if contact.last_known_location is None:
            return 0.0
        return self.proximity_for_distance(
            distance_between(origin, contact.last_known_location)
        )

    def virtual_closeness_score(
        self,
        user_history: Sequence[LocationSample],
        contact: Contact,
    ) -> float:
        """Overlap between the user's and the contact's location histories.

        Every pair of samples closer than the shared-location radius counts
        once, and contributes both samples' dwell time.  The result is the
        mean of a count score and a time score, each saturating at 1.0.
        """
        if not user_history or not contact.recent_locations:
            return 0.0

        radius = self._settings.shared_location_radius_m
        shared_count = 0
        shared_time = timedelta(0)
        for user_sample in user_history:
            for contact_sample in contact.recent_locations:
                if distance_between(user_sample, contact_sample) < radius:
                    shared_count += 1
                    shared_time += user_sample.time_spent + contact_sample.time_spent

        location_score = min(shared_count / self._settings.shared_location_saturation, 1.0)
        shared_hours = shared_time // timedelta(hours=1)
        time_score = min(shared_hours / self._settings.shared_hours_saturation, 1.0)
        return (location_score + time_score) / 2

    def activity_score(self, contact: Contact, now: datetime) -> float:
        if contact.last_active_time is None:
            return 0.0
        since = _as_utc(now) - _as_utc(contact.last_active_time)
        for limit, score in _ACTIVITY_STEPS:
            if since < limit:
                return score
        return 0.0

    def priority_score(
        self,
        proximity: float,
        virtual_closeness: float,
        activity: float,
        is_primary: bool,
    ) -> float:
        s = self._settings
        base = (
            proximity * s.proximity_weight
            + virtual_closeness * s.virtual_closeness_weight
            + activity * s.activity_weight
        )
        bonus = s.primary_bonus if is_primary else 0.0
        return min(max(base + bonus, 0.0), 1.0)

    # -- availability --

    def classify_availability(
        self,
        contact: Contact,
        activity: float,
        now: datetime,
    ) -> Availability:
        """Coarse availability class used by the channel selector.

        Recent activity wins; otherwise the local hour in the contact's
        frequent time zone decides; otherwise the activity score does.  A
        contact whose last activity is a week or more old is unavailable.
        """
        now = _as_utc(now)
        if contact.last_active_time is not None:
            since = now - _as_utc(contact.last_active_time)
            if since < _ACTIVE_WINDOW:
                return Availability.ACTIVE
            if since < _RECENTLY_ACTIVE_WINDOW:
                return Availability.RECENTLY_ACTIVE

        if contact.frequent_time_zones:
            hour = self._local_hour(contact, now)
            if hour >= 23 or hour <= 6:
                return Availability.POSSIBLY_UNAVAILABLE
            if 9 <= hour <= 17 or 18 <= hour <= 22:
                return Availability.LIKELY_AVAILABLE

        if activity > 0.7:
            return Availability.LIKELY_AVAILABLE
        if activity > 0.3:
            return Availability.RECENTLY_ACTIVE
        if contact.last_active_time is not None and activity == 0.0:
            return Availability.UNAVAILABLE
        return Availability.UNKNOWN

    def refresh_availability(self, scored: ScoredContact, now: datetime) -> ScoredContact:
        """Re-classify a scored contact at a later point in time."""
        activity = self._degrade(
            "activity", scored.contact, lambda: self.activity_score(scored.contact, now)
        )
        availability = self.classify_availability(scored.contact, activity, now)
        if availability == scored.availability:
            return scored
        return scored.model_copy(update={"availability": availability})

    # -- whole contacts --

    def score_contact(
        self,
        origin: GeoPoint,
        contact: Contact,
        user_history: Sequence[LocationSample],
        now: datetime,
    ) -> ScoredContact:
        proximity = self._degrade(
            "proximity", contact, lambda: self.proximity_score(origin, contact)
        )
        closeness = self._degrade(
            "virtual_closeness",
            contact,
            lambda: self.virtual_closeness_score(user_history, contact),
        )
        activity = self._degrade(
            "activity", contact, lambda: self.activity_score(contact, now)
        )
        priority = self.priority_score(proximity, closeness, activity, contact.is_primary)

        return ScoredContact(
            contact=contact,
            scores=ContactScores(
                proximity=proximity,
                virtual_closeness=closeness,
                activity=activity,
                priority=priority,
            ),
            availability=self.classify_availability(contact, activity, now),
        )

    def rank_contacts(
        self,
        origin: GeoPoint,
        contacts: Iterable[Contact],
        now: datetime,
        user_history: Sequence[LocationSample] = (),
    ) -> list[ScoredContact]:
        """Score every contact and order by descending priority.

        Ties keep the order in which the contact store returned them.
        """
        scored = [
            self.score_contact(origin, contact, user_history, now)
            for contact in contacts
        ]
        return sorted(scored, key=lambda s: s.priority_score, reverse=True)

    def filter_for_dispatch(
        self,
        ranked: Sequence[ScoredContact],
        current_time_zone: Optional[str] = None,
    ) -> list[ScoredContact]:
        """Drop unavailable contacts and move same-zone contacts first.

        The reordering is a stable partition: relative priority order is
        preserved within the matching and the non-matching group.
        """
        zone = current_time_zone or self._settings.home_time_zone
        matching: list[ScoredContact] = []
        others: list[ScoredContact] = []
        for scored in ranked:
            if scored.availability == Availability.UNAVAILABLE:
                continue
            if _in_time_zone(scored.contact, zone):
                matching.append(scored)
            else:
                others.append(scored)
        return matching + others

    def prioritize(
        self,
        origin: GeoPoint,
        contacts: Iterable[Contact],
        now: datetime,
        user_history: Sequence[LocationSample] = (),
        current_time_zone: Optional[str] = None,
    ) -> list[ScoredContact]:
        """Rank then filter: the dispatch order for an emergency."""
        ranked = self.rank_contacts(origin, contacts, now, user_history)
        eligible = self.filter_for_dispatch(ranked, current_time_zone)
        logger.debug(
            "Ranked %d contacts, %d eligible for dispatch", len(ranked), len(eligible)
        )
        return eligible

    # -- helpers --

    def _degrade(
        self, name: str, contact: Contact, compute: Callable[[], float]
    ) -> float:
        try:
            return compute()
        except Exception:
            logger.warning(
                "Failed to compute %s score for contact %s; using 0.0",
                name,
                contact.contact_id,
                exc_info=True,
            )
            return 0.0

    def _local_hour(self, contact: Contact, now: datetime) -> int:
        for name in contact.frequent_time_zones:
            zone = self._resolve_zone(name)
            if zone is not None:
                return now.astimezone(zone).hour
        return now.astimezone(self._home_zone).hour

    @staticmethod
    def _resolve_zone(name: str) -> Optional[tzinfo]:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown time zone %r", name)
            return None


def _in_time_zone(contact: Contact, zone: str) -> bool:
    # Contacts with no zone history are assumed local.
    if not contact.frequent_time_zones:
        return True
    return zone in contact.frequent_time_zones
