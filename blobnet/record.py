# blobnet/record.py

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .net import Net


@dataclass(frozen=True)
class LayerEvent:
    """
    Single layer invocation captured during a forward or backward sweep.
    """

    sweep: int
    direction: str
    index: int
    layer: str
    loss: Optional[float]


class Trace:
    """
    Recording of the sweeps run on a Net.

    Responsibilities:
      - Capture the order in which layers ran, per forward/backward sweep.
      - Collect the objective returned by every forward sweep.
    """

    def __init__(self, net: Net) -> None:
        self.net = net
        self._events: List[LayerEvent] = []
        self._layer_calls: Dict[str, int] = {}
        self._objectives: List[float] = []
        self._sweeps = 0
        self._active = False

    # ------------------------------------------------------------------ control
    def start(self) -> None:
        if self._active:
            return
        self._events.clear()
        self._layer_calls.clear()
        self._objectives.clear()
        self._sweeps = 0
        self.net.register_event_listener(self._handle_event)
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self.net.unregister_event_listener(self._handle_event)
        self._active = False

    # ---------------------------------------------------------------- listeners
    def _handle_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("event")
        if kind in ("forward_start", "backward_start"):
            self._sweeps += 1
        elif kind in ("layer_forward", "layer_backward"):
            event = LayerEvent(
                sweep=self._sweeps,
                direction="forward" if kind == "layer_forward" else "backward",
                index=int(payload["index"]),
                layer=str(payload["layer"]),
                loss=payload.get("loss"),
            )
            self._events.append(event)
            self._layer_calls[event.layer] = self._layer_calls.get(event.layer, 0) + 1
        elif kind == "forward_end":
            self._objectives.append(float(payload["objective"]))

    # ----------------------------------------------------------------- metadata
    @property
    def events(self) -> Tuple[LayerEvent, ...]:
        return tuple(self._events)

    @property
    def layer_calls(self) -> Dict[str, int]:
        return dict(self._layer_calls)

    @property
    def objectives(self) -> Tuple[float, ...]:
        return tuple(self._objectives)

    def order(self, direction: str = "forward", sweep: Optional[int] = None) -> List[str]:
        """Layer names in execution order for one sweep (the first by default)."""
        matching = [e for e in self._events if e.direction == direction]
        if not matching:
            return []
        target = matching[0].sweep if sweep is None else sweep
        return [e.layer for e in matching if e.sweep == target]

    def summary(self) -> Dict[str, Any]:
        return {
            "sweeps": self._sweeps,
            "layers": dict(self._layer_calls),
            "events": len(self._events),
            "objectives": list(self._objectives),
        }


@contextmanager
def record(net: Net) -> Iterator[Trace]:
    """
    Context manager recording every sweep run on ``net`` inside the block.

    Usage:
        with blobnet.record(net) as trace:
            net.forward_backward()
        trace.order("backward")
    """
    trace = Trace(net)
    trace.start()
    try:
        yield trace
    finally:
        trace.stop()
