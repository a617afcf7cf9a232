"""Alert message templates sent to emergency contacts."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

MAPS_URL = "https://maps.google.com/?q={latitude},{longitude}"


def _format_coordinates(latitude: float, longitude: float) -> str:
    return f"{latitude:.6f}, {longitude:.6f}"


def _format_time(at: Optional[datetime]) -> str:
    return (at or datetime.now(timezone.utc)).isoformat(timespec="seconds")


def build_alert_message(
    address: str,
    latitude: float,
    longitude: float,
    at: Optional[datetime] = None,
    response_minutes: int = 5,
) -> str:
    """Initial alert sent to the first wave of contacts."""
    return (
        "EMERGENCY ALERT\n"
        "\n"
        "I need immediate help! This is an automated emergency alert from my "
        "safety app.\n"
        "\n"
        f"Location: {address}\n"
        f"Coordinates: {_format_coordinates(latitude, longitude)}\n"
        "\n"
        f"Please respond within {response_minutes} minutes to confirm you can "
        "help, or call emergency services.\n"
        "\n"
        f"Time: {_format_time(at)}"
    )


def build_escalation_message(
    address: str,
    latitude: float,
    longitude: float,
    level: int,
    at: Optional[datetime] = None,
    response_minutes: int = 5,
) -> str:
    """Alert sent to contacts added by an escalation wave."""
    return (
        f"URGENT: Emergency Alert (Escalation Level {level})\n"
        "\n"
        "Previous contacts haven't responded. I need immediate help!\n"
        "\n"
        f"Location: {address}\n"
        f"Coordinates: {_format_coordinates(latitude, longitude)}\n"
        "\n"
        f"This is escalation level {level}. Please respond within "
        f"{response_minutes} minutes or call emergency services.\n"
        "\n"
        f"Time: {_format_time(at)}"
    )


def with_location_link(message: str, latitude: float, longitude: float) -> str:
    """Append a maps link; used for text channels that cannot embed a map."""
    url = MAPS_URL.format(latitude=latitude, longitude=longitude)
    return f"{message}\n\nLocation: {url}"
