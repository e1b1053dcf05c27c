"""Engine signals: explicit observer channel for cycle, batch and cluster-run outcomes."""
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List

from loguru import logger

from ..models.location_models import utcnow

SIGNAL_KINDS = (
    "engine_started",
    "engine_stopped",
    "cycle_started",
    "cycle_completed",
    "cycle_failed",
    "batch_completed",
    "batch_error",
    "cluster_run_completed",
)


@dataclass(frozen=True)
class Signal:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "payload": self.payload, "emitted_at": self.emitted_at.isoformat()}


Subscriber = Callable[[Signal], None]


class EngineSignals:
    """Synchronous fan-out to subscribers plus a bounded history.

    A failing subscriber is logged and skipped; it never affects the emitter.
    """

    def __init__(self, history_size: int = 200):
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)
        self._history: Deque[Signal] = deque(maxlen=history_size)

    def subscribe(self, kind: str, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback`` for ``kind`` ("*" for all). Returns an unsubscribe function."""
        if kind != "*" and kind not in SIGNAL_KINDS:
            raise ValueError(f"Unknown signal kind: {kind}")
        self._subscribers[kind].append(callback)

        def unsubscribe():
            if callback in self._subscribers[kind]:
                self._subscribers[kind].remove(callback)

        return unsubscribe

    def emit(self, kind: str, **payload: Any) -> Signal:
        signal = Signal(kind=kind, payload=payload)
        self._history.append(signal)
        for callback in list(self._subscribers[kind]) + list(self._subscribers["*"]):
            try:
                callback(signal)
            except Exception as e:
                logger.error(f"Signal subscriber for '{kind}' failed: {e}")
        return signal

    def recent(self, limit: int = 20, kind: str = None) -> List[Signal]:
        signals = [s for s in self._history if kind is None or s.kind == kind]
        return signals[-limit:]
