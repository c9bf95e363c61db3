"""Funscript vibration patterns.

A pattern file is a funscript (``{"actions": [{"at": ms, "pos": 0-100}]}``)
named ``<pattern>.vibrator.funscript`` or ``<pattern>.funscript`` inside the
pattern directory. Positions become speeds in ``[0.0, 1.0]``.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validators

from telekinesis.core.errors import PatternError

LOGGER = logging.getLogger(__name__)

PATTERN_SUFFIXES = (".vibrator.funscript", ".funscript")


def default_pattern_dir() -> Path:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_data / "telekinesis" / "patterns"


@dataclass(frozen=True)
class Pattern:
    name: str
    # (offset seconds, speed) sorted by offset
    steps: tuple[tuple[float, float], ...]

    @property
    def length(self) -> float:
        return self.steps[-1][0] if self.steps else 0.0

    def timeline(self, start: float, deadline: float) -> Iterator[tuple[float, float]]:
        """(time, speed) points of the pattern looped from ``start`` until ``deadline``.

        The first point is always produced, even past the deadline.
        """
        cycle = start
        first = True
        while True:
            for offset, speed in self.steps:
                at = cycle + offset
                if at >= deadline and not first:
                    return
                first = False
                yield at, speed
            if self.length <= 0:
                return
            cycle += self.length


def _load_schema_validator() -> Any:
    schema_text = resources.files("telekinesis.schemas").joinpath("funscript.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def parse_funscript(name: str, doc: Any) -> Pattern:
    try:
        _load_schema_validator().validate(doc)
    except ValidationError as exc:
        raise PatternError(f"PatternInvalid: {name}: {exc.message}") from exc

    inverted = bool(doc.get("inverted", False))
    steps: list[tuple[float, float]] = []
    for action in sorted(doc["actions"], key=lambda a: a["at"]):
        pos = 100 - action["pos"] if inverted else action["pos"]
        steps.append((action["at"] / 1000.0, pos / 100.0))
    first = steps[0][0]
    return Pattern(name=name, steps=tuple((offset - first, speed) for offset, speed in steps))


class PatternLibrary:
    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory or default_pattern_dir()

    def names(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        found: set[str] = set()
        for path in self.directory.iterdir():
            for suffix in PATTERN_SUFFIXES:
                if path.name.endswith(suffix):
                    found.add(path.name[: -len(suffix)])
                    break
        return sorted(found)

    def path_for(self, name: str) -> Path | None:
        if not name or Path(name).name != name:
            return None
        for suffix in PATTERN_SUFFIXES:
            candidate = self.directory / f"{name}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    def load(self, name: str) -> Pattern:
        path = self.path_for(name)
        if path is None:
            raise PatternError("PatternUnknown")
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PatternError(f"PatternInvalid: {name}: {exc}") from exc
        pattern = parse_funscript(name, doc)
        LOGGER.debug("Loaded pattern '%s' with %d steps over %.2fs", name, len(pattern.steps), pattern.length)
        return pattern
