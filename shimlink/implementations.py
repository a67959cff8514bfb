"""
Real implementations of interfaces for production use.

These classes wrap actual system resources (serial ports, the BlueZ
adapter, the system clock) and implement the abstract interfaces.
"""

from typing import List, Optional
import logging
import os
import shutil
import socket
import subprocess
import time

import serial.tools.list_ports

from .interfaces import AdapterInterface, ClockInterface, PortInfo

logger = logging.getLogger(__name__)


class RealClock(ClockInterface):
    """
    Real clock implementation using system time.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


def list_serial_ports() -> List[PortInfo]:
    ports = []
    for p in serial.tools.list_ports.comports():
        ports.append(PortInfo(
            device=p.device,
            description=p.description or "",
            hwid=p.hwid or "",
        ))
    return ports


class SerialPortAdapter(AdapterInterface):
    """
    "Adapter" for a serial port: available when the OS enumerates it or
    the device node exists (rfcomm ttys are not always enumerated).
    Serial ports have no discovery phase.
    """

    def __init__(self, port: str):
        self._port = port

    def is_available(self) -> bool:
        if not self._port:
            return False
        if any(p.device == self._port for p in list_serial_ports()):
            return True
        return os.path.exists(self._port)

    def is_enabled(self) -> bool:
        return True

    def is_discovering(self, timeout: Optional[float] = None) -> bool:
        return False

    def cancel_discovery(self) -> None:
        pass


class BlueZAdapter(AdapterInterface):
    """
    Local Bluetooth Classic adapter on Linux (BlueZ).

    Power and discovery state come from ``bluetoothctl show <address>``
    for the controller behind ``hci``; when bluetoothctl is not installed
    the adapter is assumed powered and idle.
    """

    SYSFS_DIR = "/sys/class/bluetooth"

    def __init__(self, hci: str = "hci0", command_timeout: float = 3.0):
        self._hci = hci
        self._timeout = command_timeout
        self._ctl = shutil.which("bluetoothctl")

    def _controller_address(self) -> Optional[str]:
        try:
            with open(os.path.join(self.SYSFS_DIR, self._hci, "address")) as f:
                return f.read().strip().upper() or None
        except OSError:
            return None

    def _show(self, timeout: Optional[float] = None) -> Optional[str]:
        if not self._ctl:
            return None
        cmd = [self._ctl, "show"]
        address = self._controller_address()
        if address:
            cmd.append(address)
        limit = self._timeout if timeout is None else min(self._timeout, timeout)
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=max(limit, 0.01),
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.debug("bluetoothctl show failed: %s", e)
            return None
        return result.stdout

    @staticmethod
    def _flag(output: str, key: str) -> bool:
        for line in output.splitlines():
            line = line.strip()
            if line.startswith(f"{key}:"):
                return line.split(":", 1)[1].strip().lower() == "yes"
        return False

    def is_available(self) -> bool:
        if not hasattr(socket, "AF_BLUETOOTH"):
            return False
        return os.path.isdir(os.path.join(self.SYSFS_DIR, self._hci))

    def is_enabled(self) -> bool:
        output = self._show()
        if output is None:
            return True
        return self._flag(output, "Powered")

    def is_discovering(self, timeout: Optional[float] = None) -> bool:
        output = self._show(timeout)
        if output is None:
            return False
        return self._flag(output, "Discovering")

    def cancel_discovery(self) -> None:
        if not self._ctl:
            return
        try:
            subprocess.run(
                [self._ctl, "scan", "off"],
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.debug("bluetoothctl scan off failed: %s", e)
