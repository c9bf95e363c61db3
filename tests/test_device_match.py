from telekinesis.core.device_match import (
    capability_tags,
    matches_events,
    sanitize_events,
    supports,
    vibrate_capable,
)


def test_sanitize_trims_lowercases_and_dedupes() -> None:
    assert sanitize_events([" SoMe EvEnT    ", "", "some event", "  ", "Other"]) == ("some event", "other")


def test_empty_request_matches_every_device() -> None:
    assert matches_events((), [])
    assert matches_events(("foreplay",), [])


def test_any_overlap_matches() -> None:
    assert matches_events(("foreplay", "orgasm"), ["ORGASM"])
    assert not matches_events(("foreplay",), ["orgasm"])
    assert not matches_events((), ["orgasm"])


def test_capabilities_are_case_insensitive() -> None:
    assert supports(("Vibrate", "Rotate"), "rotate")
    assert vibrate_capable(("vibrate",))
    assert not vibrate_capable(("Position",))


def test_capability_tags_keep_first_seen_order() -> None:
    assert capability_tags(("Vibrate", "Rotate", "Vibrate", "Position")) == ("Vibrate", "Rotate", "Position")
