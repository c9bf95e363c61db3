from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from telekinesis.core.errors import PersistenceError
from telekinesis.core.model import ConnectionSettings
from telekinesis.core.settings import SettingsStore, default_settings_path


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_default_path_follows_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("TELEKINESIS_SETTINGS", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    assert default_settings_path() == tmp_path / "cfg" / "telekinesis" / "settings.yaml"

    monkeypatch.setenv("TELEKINESIS_SETTINGS", str(tmp_path / "custom.yaml"))
    assert default_settings_path() == tmp_path / "custom.yaml"


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    store = SettingsStore.load(tmp_path / "absent.yaml")
    assert store.warnings == ()
    assert store.get_enabled("anything")
    assert store.get_events("anything") == ()
    assert store.connection == ConnectionSettings()


def test_store_then_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "cfg" / "settings.yaml"
    store = SettingsStore(path)
    store.set_enabled("Lovense Edge", False)
    store.set_events("Lovense Edge", [" Foreplay ", "ORGASM"])
    store.set_events("vib2", ["tease"])
    store.store()

    loaded = SettingsStore.load(path)
    assert loaded.warnings == ()
    assert not loaded.get_enabled("Lovense Edge")
    assert loaded.get_events("Lovense Edge") == ("foreplay", "orgasm")
    assert loaded.get_enabled("vib2")
    assert loaded.known_devices() == ["Lovense Edge", "vib2"]


def test_changes_are_not_written_until_store(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    store = SettingsStore(path)
    store.set_enabled("vib1", False)
    assert not path.exists()

    store.store()
    doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert doc["devices"] == [{"name": "vib1", "enabled": False}]
    assert doc["version"] == 1


def test_connection_and_default_enabled_loaded(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    _write(
        path,
        """
version: 1
default_enabled: false
connection:
  type: in_process
devices:
  - name: vib1
    enabled: true
    events: [" Tease "]
""",
    )

    store = SettingsStore.load(path)
    assert store.warnings == ()
    assert store.connection.type == "in_process"
    assert store.connection.endpoint == ConnectionSettings().endpoint
    assert not store.get_enabled("unknown device")
    assert store.get_enabled("vib1")
    assert store.get_events("vib1") == ("tease",)


def test_duplicate_keys_fall_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    _write(
        path,
        """
version: 1
default_enabled: false
default_enabled: true
""",
    )

    store = SettingsStore.load(path)
    assert len(store.warnings) == 1
    assert "Duplicate key" in store.warnings[0]
    assert store.get_enabled("vib1")


def test_schema_violation_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    _write(
        path,
        """
devices:
  - name: vib1
    enabled: "sometimes"
""",
    )

    store = SettingsStore.load(path)
    assert len(store.warnings) == 1
    assert "Schema validation failed" in store.warnings[0]
    assert store.known_devices() == []


def test_store_failure_raises_persistence_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = SettingsStore(blocker / "settings.yaml")
    store.set_enabled("vib1", False)

    with pytest.raises(PersistenceError):
        store.store()


def test_pattern_path_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    store = SettingsStore(path, pattern_path=tmp_path / "patterns")
    store.store()

    doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert doc["pattern_path"] == str(tmp_path / "patterns")
    assert SettingsStore.load(path).pattern_path == tmp_path / "patterns"
    assert SettingsStore.load(tmp_path / "absent.yaml").pattern_path is None


def test_empty_pattern_path_is_invalid(tmp_path: Path) -> None:
    path = tmp_path / "settings.yaml"
    _write(path, "version: 1\npattern_path: ''\n")
    store = SettingsStore.load(path)
    assert store.pattern_path is None
    assert len(store.warnings) == 1
