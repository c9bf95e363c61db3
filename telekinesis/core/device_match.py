"""Device-to-event matching logic."""

from __future__ import annotations

from collections.abc import Iterable

from telekinesis.core.model import VIBRATE


def sanitize_events(events: Iterable[str]) -> tuple[str, ...]:
    """Trim and lower-case event tags, dropping blanks and repeats."""
    seen: set[str] = set()
    cleaned: list[str] = []
    for event in events:
        token = event.strip().lower()
        if not token or token in seen:
            continue
        seen.add(token)
        cleaned.append(token)
    return tuple(cleaned)


def matches_events(device_events: Iterable[str], requested: Iterable[str]) -> bool:
    wanted = set(sanitize_events(requested))
    if not wanted:
        return True
    return any(token in wanted for token in sanitize_events(device_events))


def supports(capabilities: Iterable[str], actuator: str) -> bool:
    return any(cap.lower() == actuator.lower() for cap in capabilities)


def vibrate_capable(capabilities: Iterable[str]) -> bool:
    return supports(capabilities, VIBRATE)


def capability_tags(capabilities: Iterable[str]) -> tuple[str, ...]:
    """Distinct actuator tags in first-seen order."""
    tags: list[str] = []
    for cap in capabilities:
        if cap not in tags:
            tags.append(cap)
    return tuple(tags)
