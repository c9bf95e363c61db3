"""Settings persistence: device enable flags, event tags and backend selection.

Changes are kept in memory until :meth:`SettingsStore.store` is called, so a
UI toggling devices does not hit the disk on every click.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterable
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from telekinesis.core.device_match import sanitize_events
from telekinesis.core.errors import PersistenceError, SettingsValidationError
from telekinesis.core.model import ConnectionSettings, DeviceSettings

SETTINGS_ENV = "TELEKINESIS_SETTINGS"
SETTINGS_VERSION = 1
DEFAULT_ENABLED = True
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise SettingsValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


def _load_schema_validator() -> Any:
    schema_text = resources.files("telekinesis.schemas").joinpath("settings.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def default_settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV)
    if override:
        return Path(override)
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "telekinesis" / "settings.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise SettingsValidationError(f"Could not read settings file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise SettingsValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise SettingsValidationError(f"Settings file {path} must contain a mapping at root")
    return loaded


def _validate(doc: dict[str, Any], source: Path) -> None:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise SettingsValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


class SettingsStore:
    def __init__(
        self,
        path: Path | None = None,
        *,
        default_enabled: bool = DEFAULT_ENABLED,
        connection: ConnectionSettings | None = None,
        devices: Iterable[DeviceSettings] = (),
        pattern_path: Path | None = None,
    ) -> None:
        self.path = path or default_settings_path()
        self.default_enabled = default_enabled
        self.connection = connection or ConnectionSettings()
        self.pattern_path = pattern_path
        self.warnings: tuple[str, ...] = ()
        self._lock = threading.Lock()
        self._devices: dict[str, DeviceSettings] = {d.name: d for d in devices}

    @classmethod
    def load(cls, path: Path | None = None) -> SettingsStore:
        """Load settings, falling back to defaults when the file is missing or broken."""
        store = cls(path)
        if not store.path.exists():
            LOGGER.info("No settings file at %s, using defaults", store.path)
            return store

        try:
            doc = _read_yaml(store.path)
            _validate(doc, store.path)
        except SettingsValidationError as exc:
            LOGGER.warning("%s; using defaults", exc)
            store.warnings = (str(exc),)
            return store

        store.default_enabled = bool(doc.get("default_enabled", DEFAULT_ENABLED))
        if doc.get("pattern_path"):
            store.pattern_path = Path(doc["pattern_path"]).expanduser()
        conn = doc.get("connection")
        if conn:
            store.connection = ConnectionSettings(
                type=conn["type"],
                endpoint=conn.get("endpoint", ConnectionSettings.endpoint),
            )
        for entry in doc.get("devices", []):
            store._devices[entry["name"]] = DeviceSettings(
                name=entry["name"],
                enabled=entry["enabled"],
                events=sanitize_events(entry.get("events", [])),
            )
        LOGGER.info("Loaded settings for %d devices from %s", len(store._devices), store.path)
        return store

    def get_enabled(self, name: str) -> bool:
        with self._lock:
            entry = self._devices.get(name)
        return entry.enabled if entry is not None else self.default_enabled

    def set_enabled(self, name: str, enabled: bool) -> None:
        with self._lock:
            entry = self._devices.get(name)
            events = entry.events if entry is not None else ()
            self._devices[name] = DeviceSettings(name=name, enabled=bool(enabled), events=events)

    def get_events(self, name: str) -> tuple[str, ...]:
        with self._lock:
            entry = self._devices.get(name)
        return entry.events if entry is not None else ()

    def set_events(self, name: str, events: Iterable[str]) -> None:
        cleaned = sanitize_events(events)
        with self._lock:
            entry = self._devices.get(name)
            enabled = entry.enabled if entry is not None else self.default_enabled
            self._devices[name] = DeviceSettings(name=name, enabled=enabled, events=cleaned)

    def known_devices(self) -> list[str]:
        with self._lock:
            return list(self._devices)

    def device_settings(self) -> list[DeviceSettings]:
        with self._lock:
            return list(self._devices.values())

    def to_document(self) -> dict[str, Any]:
        devices = []
        for entry in self.device_settings():
            item: dict[str, Any] = {"name": entry.name, "enabled": entry.enabled}
            if entry.events:
                item["events"] = list(entry.events)
            devices.append(item)
        doc: dict[str, Any] = {
            "version": SETTINGS_VERSION,
            "default_enabled": self.default_enabled,
            "connection": {"type": self.connection.type, "endpoint": self.connection.endpoint},
        }
        if self.pattern_path is not None:
            doc["pattern_path"] = str(self.pattern_path)
        doc["devices"] = devices
        return doc

    def store(self) -> None:
        """Write the full mapping atomically."""
        doc = self.to_document()
        text = yaml.safe_dump(doc, sort_keys=False, allow_unicode=True)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".settings-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(text)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"Could not write settings file {self.path}: {exc}") from exc
        LOGGER.info("Stored settings for %d devices to %s", len(doc["devices"]), self.path)
