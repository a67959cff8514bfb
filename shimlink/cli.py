"""
shimlink: command-line access to a Shimmer sensor.

Commands:
- ports: list serial ports (and device locks held by other processes)
- stream: connect, stream, print one JSON line per sample
- probe: connect and report the expansion board

Local transports need the external firmware driver; pass its factory as
``--driver package.module:callable`` (called with the open channel).

Exit codes: 0 ok, 1 failure, 2 configuration error.
"""

from __future__ import annotations

import argparse
import dataclasses
import importlib
import json
import logging
import sys
import threading
from typing import Any, Optional

from .config import DeviceConfig, load_config
from .device_lock import list_device_locks
from .errors import ConfigurationError, ShimlinkError
from .implementations import list_serial_ports
from .interfaces import TransportKind
from .session import DriverFactory, SensorSession

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def _print(obj: Any, *, json_mode: bool) -> None:
    if json_mode:
        print(json.dumps(obj, indent=2, sort_keys=True))
    else:
        if isinstance(obj, str):
            print(obj)
        else:
            print(json.dumps(obj, indent=2, sort_keys=True))


def _load_driver_factory(spec: Optional[str]) -> Optional[DriverFactory]:
    if not spec:
        return None
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"--driver must look like package.module:callable, got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import driver module {module_name}: {e}")
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ConfigurationError(f"{spec} is not callable")
    return factory


def _build_config(args: argparse.Namespace) -> DeviceConfig:
    cfg = load_config(args.config)
    if args.transport:
        cfg.transport = TransportKind(args.transport)
    if args.address:
        cfg.address = args.address
    if args.mac:
        cfg.target_mac = args.mac
    if args.rate is not None:
        cfg.sampling_rate = args.rate
    if args.lock:
        cfg.lock_device = True
    cfg.validate()
    return cfg


def cmd_ports(*, json_mode: bool) -> int:
    ports = [dataclasses.asdict(p) for p in list_serial_ports()]
    locks = [
        {"target": o.target, "pid": o.pid, "process": o.process_name, "since": o.started.isoformat()}
        for o in list_device_locks()
    ]
    if json_mode:
        _print({"ports": ports, "locks": locks}, json_mode=True)
        return EXIT_OK

    if not ports:
        print("No serial ports found")
    for p in ports:
        print(f"{p['device']:<24} {p['description']}")
    for lock in locks:
        print(f"locked: {lock['target']} by PID {lock['pid']} ({lock['process']})")
    return EXIT_OK


def cmd_stream(session: SensorSession, *, duration: Optional[float]) -> int:
    done = threading.Event()

    def on_sample(record) -> None:
        print(json.dumps(record.to_dict(), sort_keys=True), flush=True)

    sub = session.subscribe(on_sample)
    try:
        session.connect()
        session.start_streaming()
        logger.info("Streaming at %.4f Hz; Ctrl-C to stop", session.config.sampling_rate)
        done.wait(duration)
    except KeyboardInterrupt:
        pass
    finally:
        sub.unsubscribe()
        session.disconnect()
    return EXIT_OK


def cmd_probe(session: SensorSession, *, json_mode: bool) -> int:
    try:
        session.connect()
        result = session.detect_board()
    finally:
        session.disconnect()
    _print(
        {"ok": result.ok, "kind": result.kind.value, "raw_id": result.raw_id},
        json_mode=json_mode,
    )
    return EXIT_OK if result.ok else EXIT_FAILURE


def _add_connection_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--config", default=None, help="YAML config file")
    p.add_argument("--transport", choices=[k.value for k in TransportKind], default=None)
    p.add_argument("--address", default=None,
                   help="Serial port, Bluetooth MAC, or relay host[:port][/path]")
    p.add_argument("--mac", default=None, help="Device MAC the relay should stream (relay only)")
    p.add_argument("--rate", type=float, default=None, help="Sampling rate in Hz")
    p.add_argument("--driver", default=None, help="Firmware driver factory, package.module:callable")
    p.add_argument("--lock", action="store_true", help="Hold a cross-process device lock")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shimlink", description="Shimmer sensor link")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More logging (-vv for wire traffic)")
    parser.add_argument("--json", action="store_true", help="JSON output")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("ports", help="List serial ports and device locks")

    p = sub.add_parser("stream", help="Stream samples as JSON lines")
    _add_connection_args(p)
    p.add_argument("--duration", type=float, default=None, help="Seconds to stream (default: until Ctrl-C)")

    p = sub.add_parser("probe", help="Detect the expansion board")
    _add_connection_args(p)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the ``shimlink`` CLI.

    Returns:
        Exit code: 0 on success, 1 on failure, 2 on configuration errors.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        if args.cmd == "ports":
            return cmd_ports(json_mode=args.json)

        cfg = _build_config(args)
        session = SensorSession(cfg, driver_factory=_load_driver_factory(args.driver))
        if args.cmd == "stream":
            return cmd_stream(session, duration=args.duration)
        if args.cmd == "probe":
            return cmd_probe(session, json_mode=args.json)
    except ConfigurationError as e:
        logger.error("%s", e)
        return EXIT_CONFIG
    except (ShimlinkError, OSError, TimeoutError) as e:
        logger.error("%s", e)
        return EXIT_FAILURE

    parser.error(f"unknown command {args.cmd}")
    return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
