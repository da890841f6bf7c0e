# blobnet/topology.py

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Sequence, Set

from .errors import (
    CycleDetected,
    DanglingGradient,
    DuplicateOutput,
    MissingInput,
    MultipleConsumerConflict,
)
from .layers import LayerDescriptor

if TYPE_CHECKING:
    from .net import Net


def _index_outputs(layers: Sequence[LayerDescriptor]) -> Dict[str, int]:
    producers: Dict[str, int] = {}
    for idx, layer in enumerate(layers):
        if layer.is_sink or layer.is_inplace:
            continue
        for top in layer.tops:
            if top in producers:
                raise DuplicateOutput(top)
            producers[top] = idx
    return producers


def _dependencies(
    layers: Sequence[LayerDescriptor],
    producers: Dict[str, int],
) -> List[Set[int]]:
    depends_on: List[Set[int]] = [set() for _ in layers]
    taken: Set[str] = set()
    for idx, layer in enumerate(layers):
        if layer.is_source:
            continue
        for bottom in layer.bottoms:
            if bottom not in producers:
                raise MissingInput(bottom, layer.name)
            # At most one non-in-place consumer may push a gradient into a blob.
            if layer.can_backprop and not layer.is_inplace:
                if bottom in taken:
                    raise MultipleConsumerConflict(bottom, layer.name)
                taken.add(bottom)
            depends_on[idx].add(producers[bottom])
    return depends_on


def topological_sort(layers: Sequence[LayerDescriptor]) -> List[LayerDescriptor]:
    """
    Order layer descriptors so that every producer precedes its consumers.

    Layers become ready in batches: every layer whose producers have all been
    emitted joins the next batch. Within a batch in-place layers are emitted
    first, then the rest, each group keeping the input order.

    Raises:
      DuplicateOutput, MissingInput, MultipleConsumerConflict, CycleDetected.
    """
    layers = list(layers)
    producers = _index_outputs(layers)
    depends_on = _dependencies(layers, producers)

    pending = [len(deps) for deps in depends_on]
    dependents: List[List[int]] = [[] for _ in layers]
    for idx, deps in enumerate(depends_on):
        for dep in deps:
            dependents[dep].append(idx)

    order: List[int] = []
    ready = [idx for idx, count in enumerate(pending) if count == 0]
    while len(order) < len(layers):
        if not ready:
            emitted = set(order)
            raise CycleDetected([l.name for i, l in enumerate(layers) if i not in emitted])
        batch = [i for i in ready if layers[i].is_inplace]
        batch += [i for i in ready if not layers[i].is_inplace]
        order.extend(batch)

        freed: List[int] = []
        for idx in batch:
            for dependent in dependents[idx]:
                pending[dependent] -= 1
                if pending[dependent] == 0:
                    freed.append(dependent)
        ready = sorted(freed)

    return [layers[i] for i in order]


def check_bp_topology(net: "Net") -> None:
    """
    Verify that every differentiable output reaches a loss.

    Walks the sorted layers top down. A backprop-capable sink makes its bottoms
    ready; a backprop-capable, non-in-place layer requires each of its tops to
    be ready (or to carry no gradient) and then makes its bottoms ready.
    In-place layers are skipped; their blobs keep the readiness of the blob
    they alias.

    Raises:
      DanglingGradient: naming the first offending layer and blob.
    """
    bp_ready: Dict[str, bool] = {}
    for layer in net.layers:
        if not layer.is_sink and not layer.is_inplace:
            for top in layer.tops:
                bp_ready[top] = False

    for idx in range(len(net.layers) - 1, -1, -1):
        layer = net.layers[idx]
        if not layer.can_backprop:
            continue
        if layer.is_sink:
            for bottom in layer.bottoms:
                bp_ready[bottom] = True
            continue
        if layer.is_inplace:
            continue
        gradients = net.states[idx].blobs_diff
        for top, gradient in zip(layer.tops, gradients):
            if not bp_ready.get(top, False) and gradient is not None:
                raise DanglingGradient(layer.name, top)
        for bottom in layer.bottoms:
            bp_ready[bottom] = True
