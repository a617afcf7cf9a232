"""
Engine Settings -- tunable parameters of the escalation engine.

The batch sizes, timeouts, scoring weights and proximity buckets used by
the scoring engine and the escalation controller live here as a single
validated ``EngineSettings`` object.  ``DEFAULT_SETTINGS`` carries the
production values; deployments may override any of them from YAML.

The escalation wave delays are asymmetric (five minutes before the first
wave, three minutes between later waves).  Both are exposed separately so
that the asymmetry can be revisited without touching the controller.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Proximity buckets
# ---------------------------------------------------------------------------

class ProximityBucket(BaseModel):
    """Distances strictly below ``max_distance_m`` score ``score``."""

    max_distance_m: float = Field(..., gt=0)
    score: float = Field(..., ge=0, le=1)


_DEFAULT_BUCKETS = [
    ProximityBucket(max_distance_m=1_000, score=1.0),
    ProximityBucket(max_distance_m=5_000, score=0.8),
    ProximityBucket(max_distance_m=10_000, score=0.6),
    ProximityBucket(max_distance_m=20_000, score=0.3),
]


# ---------------------------------------------------------------------------
# Engine settings
# ---------------------------------------------------------------------------

class EngineSettings(BaseModel):
    """Complete parameter set for one escalation engine instance."""

    initial_batch_size: int = Field(
        default=3,
        ge=1,
        description="Contacts notified when the emergency is triggered.",
    )
    escalation_batch_size: int = Field(
        default=2,
        ge=1,
        description="Additional contacts notified per escalation wave.",
    )
    max_escalation_level: int = Field(
        default=3,
        ge=0,
        description="Escalation never proceeds past this level.",
    )
    response_timeout_seconds: float = Field(
        default=300,
        gt=0,
        description="Per-contact window before a notification is marked expired.",
    )
    first_wave_delay_seconds: float = Field(
        default=300,
        gt=0,
        description="Delay from trigger to the first escalation wave.",
    )
    subsequent_wave_delay_seconds: float = Field(
        default=180,
        gt=0,
        description="Delay between later escalation waves.",
    )
    shared_location_radius_m: float = Field(
        default=500,
        gt=0,
        description="Two samples closer than this count as a shared location.",
    )
    shared_location_saturation: int = Field(
        default=10,
        gt=0,
        description="Shared-location count at which the location score saturates.",
    )
    shared_hours_saturation: float = Field(
        default=24,
        gt=0,
        description="Shared hours at which the time score saturates.",
    )
    history_limit: int = Field(
        default=100,
        gt=0,
        description="How many of the user's recent location samples to compare.",
    )
    home_time_zone: str = Field(
        default="UTC",
        min_length=1,
        description="IANA zone of the triggering user; used for time zone matching.",
    )
    proximity_buckets: list[ProximityBucket] = Field(
        default_factory=lambda: [b.model_copy() for b in _DEFAULT_BUCKETS],
    )
    proximity_weight: float = Field(default=0.4, ge=0, le=1)
    virtual_closeness_weight: float = Field(default=0.3, ge=0, le=1)
    activity_weight: float = Field(default=0.3, ge=0, le=1)
    primary_bonus: float = Field(
        default=0.2,
        ge=0,
        le=1,
        description="Flat bonus added to a primary contact's priority score.",
    )

    @field_validator("proximity_buckets")
    @classmethod
    def buckets_strictly_increasing(
        cls, v: list[ProximityBucket]
    ) -> list[ProximityBucket]:
        distances = [b.max_distance_m for b in v]
        if any(a >= b for a, b in zip(distances, distances[1:])):
            raise ValueError(
                f"proximity_buckets distances must be strictly increasing, got {distances}"
            )
        scores = [b.score for b in v]
        if any(a < b for a, b in zip(scores, scores[1:])):
            raise ValueError(
                f"proximity_buckets scores must be non-increasing, got {scores}"
            )
        return v

    @model_validator(mode="after")
    def weights_sum_to_one(self) -> "EngineSettings":
        total = self.proximity_weight + self.virtual_closeness_weight + self.activity_weight
        if abs(total - 1.0) > 1e-9:
            raise ValueError(f"priority weights must sum to 1.0, got {total}")
        return self


DEFAULT_SETTINGS = EngineSettings()
"""Production defaults: 3 + 2 per wave, 3 waves, 5 min / 5 min / 3 min."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_settings_from_yaml(path: str | Path) -> EngineSettings:
    """Load engine settings from a YAML file.

    The file must contain a top-level ``engine`` mapping; missing keys take
    their defaults::

        engine:
          initial_batch_size: 3
          response_timeout_seconds: 300
          home_time_zone: "Europe/London"

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``EngineSettings`` instance.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If any setting fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "engine" not in raw:
        raise ValueError("YAML file must contain a top-level 'engine' mapping.")

    entry = raw["engine"] or {}
    if not isinstance(entry, dict):
        raise ValueError("'engine' must be a mapping of setting names to values.")

    return EngineSettings(**entry)
