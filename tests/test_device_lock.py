"""Tests for shimlink/device_lock.py: cross-process device locking."""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import pytest

from shimlink.device_lock import DeviceLock, list_device_locks

MAC = "00:06:66:AA:BB:CC"


class TestDeviceLockBasics:
    def test_acquire_and_release(self):
        lock = DeviceLock(MAC)
        assert lock.acquire() is True
        assert lock.held
        lock.release()
        assert not lock.held

    def test_release_when_not_held(self):
        DeviceLock(MAC).release()

    def test_context_manager(self):
        with DeviceLock("/dev/ttyUSB0") as lock:
            assert lock.held

    @pytest.mark.parametrize("target", ["/dev/cu.usbmodem123", MAC, "COM3"])
    def test_lock_path_sanitized(self, target):
        path = DeviceLock._get_lock_path(target)
        name = os.path.basename(path)
        assert "/" not in name and ":" not in name
        assert name.endswith(".lock")

    def test_owner_info(self):
        lock = DeviceLock(MAC)
        lock.acquire()
        owner = lock.get_owner()
        assert owner is not None
        assert owner.pid == os.getpid()
        assert owner.target == MAC
        lock.release()
        assert lock.get_owner() is None

    def test_no_owner_without_lock(self):
        assert DeviceLock("/dev/nonexistent").get_owner() is None


@pytest.mark.skipif(sys.platform != "linux", reason="flock contention within one process is Linux behavior")
class TestDeviceLockContention:
    def test_second_lock_same_target_fails(self):
        first = DeviceLock(MAC)
        second = DeviceLock(MAC)
        assert first.acquire() is True
        try:
            assert second.acquire() is False
        finally:
            first.release()
        assert second.acquire() is True
        second.release()

    def test_context_manager_raises_when_locked(self):
        first = DeviceLock(MAC)
        first.acquire()
        try:
            with pytest.raises(RuntimeError):
                with DeviceLock(MAC):
                    pass
        finally:
            first.release()

    def test_different_targets_do_not_contend(self):
        a = DeviceLock("/dev/ttyUSB0")
        b = DeviceLock("/dev/ttyUSB1")
        assert a.acquire() and b.acquire()
        a.release()
        b.release()


class TestListDeviceLocks:
    def test_empty(self):
        assert list_device_locks() == []

    def test_lists_live_owner(self):
        lock = DeviceLock(MAC)
        lock.acquire()
        try:
            owners = list_device_locks()
            assert len(owners) == 1
            assert owners[0].pid == os.getpid()
            assert owners[0].target == MAC
        finally:
            lock.release()

    def test_skips_dead_and_corrupt(self, isolate_lock_dir, monkeypatch):
        lock_dir = Path(isolate_lock_dir)
        lock_dir.mkdir(parents=True, exist_ok=True)
        (lock_dir / "dead.lock.info").write_text(json.dumps({
            "pid": 999999,
            "process_name": "gone",
            "started": "2024-01-01T00:00:00",
            "target": "/dev/ttyUSB9",
        }))
        (lock_dir / "corrupt.lock.info").write_text("{not json")
        monkeypatch.setattr("shimlink.device_lock.psutil.pid_exists", lambda pid: pid != 999999)
        assert list_device_locks() == []
