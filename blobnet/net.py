# blobnet/net.py

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, MutableMapping, Optional, Sequence, Tuple

from .backend import Backend
from .blobs import Blob, LayerState, Parameter
from .initializers import NullInitializer
from .layers import LayerDescriptor
from .neurons import Activation, get_activation
from .topology import check_bp_topology, topological_sort

logger = logging.getLogger(__name__)

EventListener = Callable[[Dict[str, Any]], None]


class Net:
    """
    Assembled, dependency-ordered computation graph.

    Responsibilities:
      - Sort the layer descriptors and bind every layer to the blobs it reads
        (forward) and the gradient blobs it writes (backward), once.
      - Set each layer up through the backend and register parameters for
        sharing.
      - Run forward sweeps in sorted order and backward sweeps in reverse.
      - Release every layer state exactly once on destroy().

    Construction is all-or-nothing: if sorting, setup or the optional
    back-propagation check fails, the states created so far are shut down and
    the error propagates.
    """

    def __init__(
        self,
        name: str,
        backend: Backend,
        layers: Sequence[LayerDescriptor],
        *,
        check_bp: bool = False,
    ) -> None:
        self.name = name
        self.backend = backend

        seen: Dict[str, LayerDescriptor] = {}
        for layer in layers:
            if layer.name in seen:
                raise ValueError(f"Duplicate layer name {layer.name!r}")
            seen[layer.name] = layer

        self.layers: Tuple[LayerDescriptor, ...] = tuple(topological_sort(layers))
        self.data_layers: List[int] = [i for i, l in enumerate(self.layers) if l.is_source]
        self.states: List[LayerState] = []
        self.blobs_forward: List[List[Blob]] = []
        self.blobs_backward: List[List[Optional[Blob]]] = []
        self.output_blobs: Dict[str, Blob] = {}
        self.diff_blobs: Dict[str, Optional[Blob]] = {}
        self._activations: List[Activation] = [get_activation(l.activation) for l in self.layers]
        self._listeners: List[EventListener] = []
        self._destroyed = False

        try:
            self._assemble()
            if check_bp:
                check_bp_topology(self)
        except BaseException:
            self._shutdown_states()
            self._destroyed = True
            raise

    # --- Assembly ---

    def _assemble(self) -> None:
        logger.debug("Assembling network %s with %d layers", self.name, len(self.layers))
        for layer in self.layers:
            if layer.is_source:
                blob_fwd: List[Blob] = []
                blob_bwd: List[Optional[Blob]] = []
            else:
                blob_fwd = [self.output_blobs[b] for b in layer.bottoms]
                blob_bwd = [self.diff_blobs[b] for b in layer.bottoms]

            params = None
            if layer.has_param:
                params = self.backend.registry_get(layer.parameter_key)
                if params is not None:
                    logger.debug("Layer %s shares parameters under key %r", layer.name, layer.parameter_key)

            state = self.backend.setup(layer, params, blob_fwd, blob_bwd)
            self.states.append(state)
            if layer.has_param and params is None:
                self.backend.registry_put(layer.parameter_key, state.parameters)

            if not layer.is_sink and not layer.is_inplace:
                for j, top in enumerate(layer.tops):
                    self.output_blobs[top] = state.blobs[j]
                    self.diff_blobs[top] = state.blobs_diff[j] if layer.can_backprop else None

            self.blobs_forward.append(blob_fwd)
            self.blobs_backward.append(blob_bwd)

    def _shutdown_states(self) -> None:
        for state in self.states:
            self.backend.shutdown(state)

    # --- Lifecycle ---

    def init(self) -> None:
        """Run every parameter's initializer (shared parameters once)."""
        logger.debug("Init network %s", self.name)
        self._ensure_alive()
        for layer_name, param in self.named_parameters():
            if isinstance(param.initializer, NullInitializer):
                continue
            logger.debug("Init parameter %s for layer %s", param.name, layer_name)
            self.backend.initialize(param.initializer, param.blob)

    def destroy(self) -> None:
        if self._destroyed:
            return
        logger.debug("Destroying network %s", self.name)
        self._shutdown_states()
        self._destroyed = True

    def __enter__(self) -> "Net":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.destroy()

    def _ensure_alive(self) -> None:
        if self._destroyed:
            raise RuntimeError(f"Network {self.name} has been destroyed.")

    def check_bp_topology(self) -> None:
        check_bp_topology(self)

    def get_epoch(self) -> int:
        if not self.data_layers:
            raise RuntimeError("No data layer in the net, cannot get epoch")
        return self.states[self.data_layers[0]].epoch

    # --- Parameters ---

    def named_parameters(self) -> Iterator[Tuple[str, Parameter]]:
        """Unique parameters with the first layer that references them."""
        seen = set()
        for layer, state in zip(self.layers, self.states):
            if not layer.has_param:
                continue
            for param in state.parameters:
                if id(param) in seen:
                    continue
                seen.add(id(param))
                yield layer.name, param

    def parameters(self) -> Iterator[Parameter]:
        for _, param in self.named_parameters():
            yield param

    def zero_param_gradients(self) -> None:
        """Reset every parameter gradient exactly once, shared ones included."""
        for param in self.parameters():
            param.gradient.zero_()

    # --- Statistics ---

    def dump_statistics(self, storage: MutableMapping[str, float], show: bool = False) -> None:
        for layer, state in zip(self.layers, self.states):
            if layer.has_statistics:
                self.backend.dump_statistics(storage, state, show)

    def reset_statistics(self) -> None:
        for layer, state in zip(self.layers, self.states):
            if layer.has_statistics:
                self.backend.reset_statistics(state)

    # --- Execution ---

    def forward(self, regu_coef: float = 0.0) -> float:
        """
        Run every layer in sorted order and return the summed loss.

        Regularizer values are not added: they do not change the gradients and
        only make the reported objective look more consistent. Use
        regularization() when that number is wanted for monitoring.
        """
        self._ensure_alive()
        self._emit({"event": "forward_start", "net": self.name})
        obj_val = 0.0
        for i, layer in enumerate(self.layers):
            state = self.states[i]
            self.backend.forward(state, self.blobs_forward[i])

            activation = self._activations[i]
            if layer.has_activation and not activation.is_identity:
                for blob in state.blobs:
                    self.backend.activation_forward(activation, blob)

            if layer.has_loss:
                obj_val += state.loss
            self._emit({"event": "layer_forward", "index": i, "layer": layer.name, "loss": state.loss})
        self._emit({"event": "forward_end", "net": self.name, "objective": obj_val})
        return obj_val

    def backward(self, regu_coef: float = 0.0, *, zero_param_gradients: bool = True) -> None:
        """
        Propagate gradients from the losses back to every layer in reverse order.

        Parameter gradients accumulate across the layers that share them; they
        are reset once at the start unless zero_param_gradients is False.
        """
        self._ensure_alive()
        if zero_param_gradients:
            self.zero_param_gradients()
        self._emit({"event": "backward_start", "net": self.name})
        for i in range(len(self.layers) - 1, -1, -1):
            layer = self.layers[i]
            state = self.states[i]

            activation = self._activations[i]
            if layer.has_activation and not activation.is_identity:
                for blob, gradient in zip(state.blobs, state.blobs_diff):
                    if gradient is not None:
                        self.backend.activation_backward(activation, blob, gradient)

            self.backend.backward(state, self.blobs_forward[i], self.blobs_backward[i])

            if layer.has_param:
                for param in state.parameters:
                    self.backend.regularizer_backward(
                        param.regularizer, regu_coef, param.blob, param.gradient
                    )
            self._emit({"event": "layer_backward", "index": i, "layer": layer.name})
        self._emit({"event": "backward_end", "net": self.name})

    def forward_backward(self, regu_coef: float = 0.0) -> float:
        obj_val = self.forward(regu_coef)
        self.backward(regu_coef)
        return obj_val

    def regularization(self, regu_coef: float = 0.0) -> float:
        """Sum of regularizer values over the unique parameters (monitoring only)."""
        total = 0.0
        for param in self.parameters():
            total += self.backend.regularizer_forward(param.regularizer, regu_coef, param.blob)
        return total

    # --- Events ---

    def register_event_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unregister_event_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(payload)

    # --- Introspection ---

    def describe(self) -> str:
        lines = [f"Net {self.name} ({len(self.layers)} layers)"]
        for layer, state in zip(self.layers, self.states):
            flags = [
                flag
                for flag, on in (
                    ("source", layer.is_source),
                    ("sink", layer.is_sink),
                    ("inplace", layer.is_inplace),
                    ("params", layer.has_param),
                    ("loss", layer.has_loss),
                    ("bp", layer.can_backprop),
                    ("stats", layer.has_statistics),
                )
                if on
            ]
            bottoms = ", ".join(layer.bottoms) or "-"
            tops = ", ".join(f"{b.name}{list(b.shape)}" for b in state.blobs) if not layer.is_sink else "-"
            lines.append(f"  {layer.name:<16} {layer.kind:<14} [{' '.join(flags)}] {bottoms} -> {tops}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"Net(name={self.name!r}, layers={[l.name for l in self.layers]!r})"
