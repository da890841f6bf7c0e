# blobnet/errors.py

from __future__ import annotations

from typing import Sequence


class TopologyError(ValueError):
    """
    Structural problem in a set of layer descriptors.

    Raised while a Net is being assembled or validated; never retried. Callers
    fix the descriptor set and construct a new Net.
    """


class DuplicateOutput(TopologyError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Duplicated output blob name: {name}")


class MissingInput(TopologyError):
    def __init__(self, name: str, layer: str) -> None:
        self.name = name
        self.layer = layer
        super().__init__(f"Required input blob missing: {name} (needed by layer {layer})")


class MultipleConsumerConflict(TopologyError):
    def __init__(self, name: str, layer: str) -> None:
        self.name = name
        self.layer = layer
        super().__init__(
            f"Output blob {name} is being used in multiple places as input blob "
            f"(again by layer {layer}). Fix this if it is a bug, or insert an explicit "
            "split layer so that back-propagation can merge the gradients."
        )


class CycleDetected(TopologyError):
    def __init__(self, pending: Sequence[str]) -> None:
        self.pending = tuple(pending)
        super().__init__(
            "Can't finish topological sort, cycle in layer dependency? "
            f"Unscheduled layers: {', '.join(self.pending)}"
        )


class DanglingGradient(TopologyError):
    def __init__(self, layer: str, blob: str) -> None:
        self.layer = layer
        self.blob = blob
        super().__init__(
            f"Blob {blob} in layer {layer} is not connected to a loss, cannot do back-propagation"
        )
