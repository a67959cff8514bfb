"""Tests for shimlink/cli.py."""

from __future__ import annotations

import json

import pytest

from shimlink import cli
from shimlink.cli import EXIT_CONFIG, EXIT_FAILURE, EXIT_OK, main
from shimlink.device_lock import DeviceLock
from shimlink.interfaces import PortInfo
from shimlink.mocks import MockClock, MockFirmwareDriver, MockTransportChannel
from shimlink.session import SensorSession

MAC = "00:06:66:AA:BB:CC"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ("SHIMLINK_ADDRESS", "SHIMLINK_TRANSPORT", "SHIMLINK_TARGET_MAC"):
        monkeypatch.delenv(key, raising=False)


def mock_session_factory(board_id):
    def factory(cfg, driver_factory=None):
        return SensorSession(
            cfg,
            driver_factory=lambda ch: MockFirmwareDriver(ch, board_id=board_id),
            channel_factory=lambda c: MockTransportChannel(),
            clock=MockClock(),
        )
    return factory


class TestPorts:
    def test_json(self, monkeypatch, capsys):
        monkeypatch.setattr(cli, "list_serial_ports", lambda: [
            PortInfo(device="/dev/ttyUSB0", description="Shimmer Dock", hwid="USB VID:PID=0403:6001"),
        ])
        assert main(["--json", "ports"]) == EXIT_OK
        out = json.loads(capsys.readouterr().out)
        assert out["ports"][0]["device"] == "/dev/ttyUSB0"
        assert out["locks"] == []

    def test_text_with_lock(self, monkeypatch, capsys):
        monkeypatch.setattr(cli, "list_serial_ports", lambda: [])
        with DeviceLock(MAC):
            assert main(["ports"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "No serial ports found" in out
        assert f"locked: {MAC}" in out


class TestConfigErrors:
    def test_bad_bluetooth_address(self):
        assert main(["probe", "--transport", "bluetooth", "--address", "nope"]) == EXIT_CONFIG

    def test_bad_driver_spec(self):
        assert main(["probe", "--address", "/dev/ttyUSB0", "--driver", "no_colon"]) == EXIT_CONFIG

    def test_unimportable_driver(self):
        assert main(["probe", "--address", "/dev/ttyUSB0", "--driver", "not_a_module_xyz:make"]) == EXIT_CONFIG

    def test_local_transport_without_driver(self, monkeypatch):
        monkeypatch.setattr(cli, "SensorSession", lambda cfg, driver_factory=None: SensorSession(
            cfg, driver_factory=driver_factory, channel_factory=lambda c: MockTransportChannel(),
        ))
        assert main(["probe", "--address", "/dev/ttyUSB0"]) == EXIT_CONFIG

    def test_missing_config_file(self, tmp_path):
        assert main(["stream", "--config", str(tmp_path / "missing.yaml")]) == EXIT_CONFIG


class TestProbe:
    def test_exg_board(self, monkeypatch, capsys):
        monkeypatch.setattr(cli, "SensorSession", mock_session_factory("EXP_BRD_EXG"))
        assert main(["--json", "probe", "--address", "/dev/ttyUSB0"]) == EXIT_OK
        out = json.loads(capsys.readouterr().out)
        assert out == {"ok": True, "kind": "exg", "raw_id": "EXP_BRD_EXG"}

    def test_no_board(self, monkeypatch, capsys):
        monkeypatch.setattr(cli, "SensorSession", mock_session_factory(""))
        assert main(["--json", "probe", "--address", "/dev/ttyUSB0"]) == EXIT_FAILURE
        assert json.loads(capsys.readouterr().out)["kind"] == "unknown"


class TestStream:
    def test_relay_stream_prints_json_lines(self, threaded_relay, capsys):
        stub, endpoint = threaded_relay
        stub.replies["start"] = [
            {"type": "start_ack", "ok": True},
            {"type": "sample", "ts": 5, "vbatt": 3.7},
        ]
        code = main([
            "stream", "--transport", "relay",
            "--address", f"{endpoint.host}:{endpoint.port}",
            "--mac", MAC, "--duration", "0.5",
        ])
        assert code == EXIT_OK
        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]
        assert {"ts": 5, "battery_voltage": 3.7} in lines

    def test_unreachable_relay(self):
        code = main([
            "stream", "--transport", "relay", "--address", "127.0.0.1:1", "--mac", MAC,
        ])
        assert code == EXIT_FAILURE
