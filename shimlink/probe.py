"""
Expansion board detection.

Drivers that implement :class:`ExpansionBoardCapability` are asked
directly. Anything else (a legacy driver, or a wrapper around one) is
searched structurally for an object exposing a parameterless
``get_expansion_board``; the search is breadth-first, depth-bounded and
cycle-safe, and only runs at session setup.

Detection is advisory: every failure degrades to ``BoardKind.UNKNOWN``.
"""

from __future__ import annotations

import inspect
import logging
import types
from collections import deque
from enum import Enum
from typing import Any, Iterator, Optional

from .implementations import RealClock
from .interfaces import BoardDetectionResult, BoardKind, ClockInterface, ExpansionBoardCapability

logger = logging.getLogger(__name__)

GETTER_NAMES = ("get_expansion_board", "GetExpansionBoard", "get_board_id")
REFRESH_NAMES = ("read_expansion_board", "ReadExpansionBoard", "refresh_board_id")
EXP_POWER_NAMES = ("read_internal_exp_power", "ReadInternalExpPower")

# Shimmer expansion board ids as reported by firmware that returns a number.
KNOWN_BOARD_IDS = {
    8: "EXP_BRD_BR_AMP",
    14: "EXP_BRD_GSR",
    36: "EXP_BRD_PROTO3_MINI",
    37: "EXP_BRD_EXG",
    38: "EXP_BRD_PROTO3_DELUXE",
    47: "EXP_BRD_EXG_UNIFIED",
    48: "EXP_BRD_GSR_UNIFIED",
    49: "EXP_BRD_BR_AMP_UNIFIED",
    59: "SHIMMER_ECG_MD",
}

_LEAF_TYPES = (
    bool, int, float, complex, str, bytes, bytearray, memoryview, Enum,
    type, types.ModuleType, types.FunctionType, types.BuiltinFunctionType,
    types.MethodType,
)


def classify_board(raw: Any) -> BoardDetectionResult:
    """Classify a raw board identifier. Empty means UNKNOWN, ok=False."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    text = "" if raw is None else str(raw).strip()
    if not text:
        return BoardDetectionResult(ok=False, kind=BoardKind.UNKNOWN, raw_id="")

    try:
        text = KNOWN_BOARD_IDS.get(int(text), text)
    except ValueError:
        pass

    kind = BoardKind.EXG if "EXG" in text.upper() else BoardKind.IMU
    return BoardDetectionResult(ok=True, kind=kind, raw_id=text)


def _is_parameterless(func: Any) -> bool:
    try:
        sig = inspect.signature(func)
    except (TypeError, ValueError):
        return True
    for param in sig.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        if param.default is param.empty:
            return False
    return True


def _method(obj: Any, names) -> Optional[Any]:
    """First callable, parameterless attribute of ``obj`` among ``names``."""
    for name in names:
        try:
            attr = getattr(obj, name, None)
        except Exception:
            continue
        if callable(attr) and _is_parameterless(attr):
            return attr
    return None


def _children(obj: Any) -> Iterator[Any]:
    if isinstance(obj, dict):
        yield from obj.values()
        return
    if isinstance(obj, (list, tuple, set, frozenset, deque)):
        yield from obj
        return

    try:
        yield from vars(obj).values()
    except TypeError:
        pass

    for cls in type(obj).__mro__:
        slots = cls.__dict__.get("__slots__", ())
        if isinstance(slots, str):
            slots = (slots,)
        for name in slots:
            if name in ("__dict__", "__weakref__"):
                continue
            try:
                yield getattr(obj, name)
            except AttributeError:
                continue


def find_board_target(root: Any, max_depth: int = 3) -> Optional[Any]:
    """Breadth-first search for an object exposing a board-id getter."""
    if root is None or isinstance(root, _LEAF_TYPES):
        return None

    visited = {id(root)}
    queue = deque([(root, 0)])
    while queue:
        obj, depth = queue.popleft()
        if _method(obj, GETTER_NAMES) is not None:
            return obj
        if depth >= max_depth:
            continue
        try:
            children = list(_children(obj))
        except Exception as e:
            logger.debug("Cannot inspect %s: %s", type(obj).__name__, e)
            continue
        for child in children:
            if child is None or isinstance(child, _LEAF_TYPES):
                continue
            if id(child) in visited:
                continue
            visited.add(id(child))
            queue.append((child, depth + 1))
    return None


class ExpansionBoardProbe:
    """
    Detects which expansion board a connected sensor carries.

    Usage:
        result = ExpansionBoardProbe().detect(driver)
        if result.kind == BoardKind.EXG: ...
    """

    DIRECT_SETTLE_S = 0.2
    INDIRECT_SETTLE_S = 0.12
    POLL_STEP_S = 0.1
    FIRST_POLL_S = 2.6
    SECOND_POLL_S = 1.4
    MAX_DEPTH = 3

    def __init__(self, clock: Optional[ClockInterface] = None):
        self._clock = clock or RealClock()

    def detect(self, driver: Any) -> BoardDetectionResult:
        """Never raises."""
        try:
            if isinstance(driver, ExpansionBoardCapability):
                result = self._detect_direct(driver)
            else:
                result = self._detect_indirect(driver)
        except Exception as e:
            logger.warning("Expansion board detection failed: %s", e)
            result = classify_board(None)
        logger.info("Expansion board: %s (%s)", result.kind.value, result.raw_id or "no id")
        return result

    def _detect_direct(self, driver: ExpansionBoardCapability) -> BoardDetectionResult:
        driver.refresh_board_id()
        self._clock.sleep(self.DIRECT_SETTLE_S)
        return classify_board(driver.get_board_id())

    def _detect_indirect(self, driver: Any) -> BoardDetectionResult:
        target = find_board_target(driver, self.MAX_DEPTH)
        if target is None:
            logger.debug("No board-id getter reachable from %s", type(driver).__name__)
            return classify_board(None)

        getter = _method(target, GETTER_NAMES)
        refresh = _method(target, REFRESH_NAMES)
        exp_power = _method(target, EXP_POWER_NAMES)

        if exp_power is not None:
            exp_power()
        if refresh is not None:
            refresh()
        self._clock.sleep(self.INDIRECT_SETTLE_S)

        raw = self._poll(getter, refresh, self.FIRST_POLL_S)
        if not raw:
            logger.debug("No board id after %.1fs, retrying refresh", self.FIRST_POLL_S)
            if refresh is not None:
                refresh()
            raw = self._poll(getter, refresh, self.SECOND_POLL_S)
        return classify_board(raw)

    def _poll(self, getter, refresh, timeout_s: float) -> str:
        raw = self._read(getter)
        # integer milliseconds so the step count does not drift
        timeout_ms = int(round(timeout_s * 1000))
        step_ms = int(round(self.POLL_STEP_S * 1000))
        waited = 0
        refreshed = False
        while not raw and waited < timeout_ms:
            self._clock.sleep(step_ms / 1000.0)
            waited += step_ms
            raw = self._read(getter)
            if not raw and not refreshed and waited >= timeout_ms // 2:
                refreshed = True
                if refresh is not None:
                    refresh()
        return raw

    @staticmethod
    def _read(getter) -> str:
        try:
            value = getter()
        except Exception as e:
            logger.debug("Board id getter failed: %s", e)
            return ""
        if isinstance(value, (bytes, bytearray)):
            value = value.decode("utf-8", errors="replace")
        return "" if value is None else str(value).strip()
