from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from telekinesis import cli
from telekinesis.core.settings import SettingsStore


class FakeClient:
    instances: list[FakeClient] = []

    def __init__(self, settings_path: Path | None = None) -> None:
        self.settings_path = settings_path
        self.load_warnings: tuple[str, ...] = ()
        self.connected = True
        self.calls: list[tuple] = []
        self.closed = False
        FakeClient.instances.append(self)

    def connect(self, timeout=None):
        return self.connected

    def get_connection_status(self):
        return "Connected" if self.connected else "Failed: Connection refused"

    def scan_for_devices(self):
        self.calls.append(("scan",))
        return True

    def stop_scan(self):
        self.calls.append(("stop_scan",))
        return True

    def poll_events(self):
        return ['{"seq":1,"event":"DeviceConnected","device":"Lovense Edge"}'] if ("scan",) in self.calls else []

    def get_devices(self):
        return ["Lovense Edge", "Old Toy"]

    def get_device_connected(self, name):
        return name == "Lovense Edge"

    def settings_get_enabled(self, name):
        return name == "Lovense Edge"

    def get_device_capabilities(self, name):
        return ["Vibrate"] if name == "Lovense Edge" else []

    def vibrate(self, speed, duration):
        self.calls.append(("vibrate", speed, duration))
        return True

    def vibrate_events(self, speed, duration, events):
        self.calls.append(("vibrate_events", speed, duration, list(events)))
        return True

    def vibrate_pattern(self, pattern, duration):
        self.calls.append(("vibrate_pattern", pattern, duration))
        return True

    def vibrate_events_pattern(self, pattern, duration, events):
        self.calls.append(("vibrate_events_pattern", pattern, duration, list(events)))
        return True

    def stop_all(self):
        self.calls.append(("stop_all",))
        return True

    def close(self):
        self.closed = True
        return True


runner = CliRunner()


def _patch(monkeypatch, client_cls=FakeClient):
    FakeClient.instances = []
    monkeypatch.setattr(cli, "Client", client_cls)


def test_devices_command(monkeypatch):
    _patch(monkeypatch)
    result = runner.invoke(cli.app, ["devices", "--scan-seconds", "0"])
    assert result.exit_code == 0
    assert "DeviceConnected" in result.stdout
    assert "Lovense Edge: connected, enabled, capabilities: Vibrate" in result.stdout
    assert "Old Toy: not connected, disabled, capabilities: -" in result.stdout
    assert FakeClient.instances[0].closed


def test_vibrate_command_with_events(monkeypatch):
    _patch(monkeypatch)
    result = runner.invoke(
        cli.app,
        ["vibrate", "--speed", "0.7", "--duration", "0", "--event", "orgasm", "--scan-seconds", "0"],
    )
    assert result.exit_code == 0
    calls = FakeClient.instances[0].calls
    assert ("vibrate_events", 0.7, 0.0, ["orgasm"]) in calls
    assert calls[-1] == ("stop_all",)


def test_vibrate_command_without_events_targets_all(monkeypatch):
    _patch(monkeypatch)
    result = runner.invoke(cli.app, ["vibrate", "--duration", "0", "--scan-seconds", "0"])
    assert result.exit_code == 0
    assert ("vibrate", 0.5, 0.0) in FakeClient.instances[0].calls


def test_connect_failure_is_clean(monkeypatch):
    class OfflineClient(FakeClient):
        def __init__(self, settings_path=None) -> None:
            super().__init__(settings_path)
            self.connected = False

    _patch(monkeypatch, OfflineClient)
    result = runner.invoke(cli.app, ["devices", "--scan-seconds", "0"])
    assert result.exit_code == 1
    assert "Error: Could not connect (Failed: Connection refused)" in result.stderr
    assert "Traceback" not in result.stdout
    assert "Traceback" not in result.stderr
    assert FakeClient.instances[0].closed


def test_load_warning_is_printed(monkeypatch):
    class WarnClient(FakeClient):
        def __init__(self, settings_path=None) -> None:
            super().__init__(settings_path)
            self.load_warnings = ("Invalid YAML in settings.yaml",)

    _patch(monkeypatch, WarnClient)
    result = runner.invoke(cli.app, ["events", "--seconds", "0"])
    assert result.exit_code == 0
    assert "Warning: Invalid YAML in settings.yaml" in result.stderr


def test_settings_path_is_passed_to_client(monkeypatch, tmp_path: Path):
    _patch(monkeypatch)
    path = tmp_path / "settings.yaml"
    result = runner.invoke(cli.app, ["--settings", str(path), "events", "--seconds", "0"])
    assert result.exit_code == 0
    assert FakeClient.instances[0].settings_path == path


def test_settings_commands_edit_file(tmp_path: Path):
    path = tmp_path / "settings.yaml"

    result = runner.invoke(cli.app, ["--settings", str(path), "settings", "disable", "Lovense Edge"])
    assert result.exit_code == 0
    assert "Disabled Lovense Edge" in result.stdout

    result = runner.invoke(cli.app, ["--settings", str(path), "settings", "events", "Lovense Edge", "Foreplay", "tease"])
    assert result.exit_code == 0
    assert "Lovense Edge events: foreplay, tease" in result.stdout

    store = SettingsStore.load(path)
    assert not store.get_enabled("Lovense Edge")
    assert store.get_events("Lovense Edge") == ("foreplay", "tease")

    result = runner.invoke(cli.app, ["--settings", str(path), "settings", "show"])
    assert result.exit_code == 0
    assert "Lovense Edge: disabled, events: foreplay, tease" in result.stdout


def test_settings_events_without_tags_clears(tmp_path: Path):
    path = tmp_path / "settings.yaml"
    runner.invoke(cli.app, ["--settings", str(path), "settings", "events", "vib1", "tease"])

    result = runner.invoke(cli.app, ["--settings", str(path), "settings", "events", "vib1"])
    assert result.exit_code == 0
    assert "vib1 events: -" in result.stdout
    assert SettingsStore.load(path).get_events("vib1") == ()


def test_vibrate_command_with_pattern(monkeypatch):
    _patch(monkeypatch)
    result = runner.invoke(
        cli.app,
        ["vibrate", "--pattern", "tease", "--duration", "0", "--event", "foreplay", "--scan-seconds", "0"],
    )
    assert result.exit_code == 0
    assert ("vibrate_events_pattern", "tease", 0.0, ["foreplay"]) in FakeClient.instances[0].calls

    result = runner.invoke(cli.app, ["vibrate", "--pattern", "tease", "--duration", "0", "--scan-seconds", "0"])
    assert result.exit_code == 0
    assert ("vibrate_pattern", "tease", 0.0) in FakeClient.instances[1].calls


def test_vibrate_rejects_endless_duration(monkeypatch):
    _patch(monkeypatch)
    result = runner.invoke(cli.app, ["vibrate", "--duration", "inf", "--scan-seconds", "0"])
    assert result.exit_code == 1
    assert "Error: --duration must be a finite number of seconds" in result.stderr
    assert FakeClient.instances[0].calls == []
    assert FakeClient.instances[0].closed


def test_patterns_command_lists_pattern_directory(tmp_path: Path):
    patterns = tmp_path / "patterns"
    patterns.mkdir()
    (patterns / "wave.funscript").write_text('{"actions": [{"at": 0, "pos": 50}]}', encoding="utf-8")
    (patterns / "tease.vibrator.funscript").write_text('{"actions": [{"at": 0, "pos": 50}]}', encoding="utf-8")
    path = tmp_path / "settings.yaml"
    path.write_text(f"version: 1\npattern_path: {patterns}\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["--settings", str(path), "patterns"])
    assert result.exit_code == 0
    assert result.stdout.splitlines() == ["tease", "wave"]

    result = runner.invoke(cli.app, ["--settings", str(path), "settings", "show"])
    assert f"Patterns: {patterns}" in result.stdout


def test_patterns_command_without_patterns(tmp_path: Path):
    path = tmp_path / "settings.yaml"
    path.write_text(f"version: 1\npattern_path: {tmp_path / 'empty'}\n", encoding="utf-8")

    result = runner.invoke(cli.app, ["--settings", str(path), "patterns"])
    assert result.exit_code == 0
    assert "No patterns found" in result.stdout
