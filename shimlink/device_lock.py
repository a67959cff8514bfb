"""
Cross-process device lock.

The ConnectionGate only serializes connects inside one process. When
``lock_device`` is set, a channel also holds a file lock per target
(serial port, Bluetooth MAC) for as long as it is open, so two processes
never stream from the same sensor at once.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import portalocker
import psutil

logger = logging.getLogger(__name__)


@dataclass
class DeviceOwner:
    """Information about the current lock owner."""
    pid: int
    process_name: str
    started: datetime
    target: str
    lock_file: str


class DeviceLock:
    """
    File-based device lock with contention reporting.

    Usage:
        lock = DeviceLock("00:06:66:AA:BB:CC")
        if lock.acquire():
            # Use the device
            lock.release()
        else:
            print(f"Device in use by: {lock.get_owner()}")
    """

    LOCK_DIR = os.path.join(os.environ.get("SHIMLINK_RUN_DIR", "/tmp"), "shimlink-locks")

    def __init__(self, target: str):
        self._target = target
        self._lock_file = None
        self._lock_path = self._get_lock_path(target)
        self._info_path = self._lock_path + ".info"

        Path(self.LOCK_DIR).mkdir(parents=True, exist_ok=True)

    @property
    def held(self) -> bool:
        return self._lock_file is not None

    @classmethod
    def _get_lock_path(cls, target: str) -> str:
        """Convert a port path or MAC to a lock file path."""
        # /dev/ttyUSB0 -> dev_ttyUSB0.lock, 00:06:66:AA:BB:CC -> 00-06-66-AA-BB-CC.lock
        safe_name = target.strip("/").replace("/", "_").replace("\\", "_").replace(":", "-")
        return os.path.join(cls.LOCK_DIR, f"{safe_name}.lock")

    def acquire(self, timeout: float = 0) -> bool:
        """
        Acquire the device lock.

        Args:
            timeout: How long to wait for the lock (0 = no wait)

        Returns:
            True if lock acquired, False otherwise
        """
        if self.held:
            return True
        try:
            self._lock_file = portalocker.Lock(
                self._lock_path,
                mode="w",
                timeout=timeout,
                fail_when_locked=timeout == 0,
                flags=portalocker.LOCK_EX | portalocker.LOCK_NB,
            )
            self._lock_file.acquire()
        except (portalocker.exceptions.LockException, OSError):
            self._lock_file = None
            owner = self.get_owner()
            if owner:
                logger.warning(
                    "Device %s locked by PID %d (%s) since %s",
                    self._target, owner.pid, owner.process_name, owner.started,
                )
            else:
                logger.warning("Device %s locked by unknown process", self._target)
            return False

        self._write_owner_info()
        logger.debug("Acquired lock for %s", self._target)
        return True

    def release(self) -> None:
        """Release the device lock. Safe to call when not held."""
        if self._lock_file is None:
            return
        try:
            self._lock_file.release()
        except Exception as e:
            logger.debug("Releasing lock for %s: %s", self._target, e)
        self._lock_file = None

        try:
            if os.path.exists(self._info_path):
                os.unlink(self._info_path)
        except OSError:
            pass

        logger.debug("Released lock for %s", self._target)

    def get_owner(self) -> Optional[DeviceOwner]:
        """Get information about the current lock owner."""
        try:
            with open(self._info_path, "r") as f:
                info = json.load(f)
            return DeviceOwner(
                pid=info["pid"],
                process_name=info["process_name"],
                started=datetime.fromisoformat(info["started"]),
                target=info["target"],
                lock_file=self._lock_path,
            )
        except (OSError, ValueError, KeyError):
            return None

    def _write_owner_info(self) -> None:
        info = {
            "pid": os.getpid(),
            "process_name": " ".join(sys.argv[:3])[:50] or f"python:{os.getpid()}",
            "started": datetime.now().isoformat(),
            "target": self._target,
        }

        # Atomic write to avoid corrupt JSON on crash.
        tmp_path = f"{self._info_path}.tmp.{os.getpid()}"
        with open(tmp_path, "w") as f:
            json.dump(info, f, indent=2)
        os.replace(tmp_path, self._info_path)

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Could not acquire lock for {self._target}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def list_device_locks() -> List[DeviceOwner]:
    """List locks whose owning process is still alive."""
    owners = []
    lock_dir = Path(DeviceLock.LOCK_DIR)
    if not lock_dir.exists():
        return owners

    for info_file in lock_dir.glob("*.lock.info"):
        try:
            info = json.loads(info_file.read_text(encoding="utf-8"))
            owner = DeviceOwner(
                pid=info["pid"],
                process_name=info["process_name"],
                started=datetime.fromisoformat(info["started"]),
                target=info["target"],
                lock_file=str(info_file).removesuffix(".info"),
            )
        except (OSError, ValueError, KeyError):
            continue
        if psutil.pid_exists(owner.pid):
            owners.append(owner)

    return owners
