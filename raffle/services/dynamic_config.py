"""Hot-reloadable key/value switches with change callbacks."""

import threading
from collections import defaultdict
from collections.abc import Callable, Mapping

import structlog

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

DEGRADE_SWITCH: str = "degrade_switch"
STRATEGY_INVALIDATE: str = "strategy_invalidate"

_TRUTHY: frozenset[str] = frozenset({"1", "true", "open", "on", "yes"})

ChangeListener = Callable[[str | None], None]


class DynamicConfig:
    """Values pushed by an external config center.

    The notifier calls ``apply_change``; subscribed listeners run in
    registration order and a failing listener does not stop the others.
    """

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._values: dict[str, str] = dict(initial or {})
        self._listeners: defaultdict[str, list[ChangeListener]] = defaultdict(list)
        self._lock: threading.Lock = threading.Lock()

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._values.get(key, default)

    def subscribe(self, key: str, listener: ChangeListener) -> None:
        with self._lock:
            self._listeners[key].append(listener)

    def apply_change(self, key: str, value: str | None) -> None:
        with self._lock:
            if value is None:
                self._values.pop(key, None)
            else:
                self._values[key] = value
            listeners: list[ChangeListener] = list(self._listeners.get(key, ()))

        logger.info("dynamic_config_changed", key=key, value=value, listeners=len(listeners))
        for listener in listeners:
            try:
                listener(value)
            except Exception:
                logger.exception("dynamic_config_listener_failed", key=key)

    def is_degraded(self) -> bool:
        return (self._values.get(DEGRADE_SWITCH) or "").strip().lower() in _TRUTHY
