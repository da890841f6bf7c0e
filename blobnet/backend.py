# blobnet/backend.py

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, MutableMapping, Optional, Sequence

from .blobs import Blob, LayerState, Parameter
from .initializers import Initializer, NullInitializer
from .layers import LayerDescriptor
from .neurons import Activation
from .regularizers import Regularizer

logger = logging.getLogger(__name__)


class ParameterRegistry:
    """
    Parameter sets keyed by a layer's parameter key.

    Every Net assembled on the same backend shares this registry, so layers
    with identical keys (in one net or across a train/test pair) reuse one
    parameter set and one gradient buffer per parameter.
    """

    def __init__(self) -> None:
        self._params: Dict[str, List[Parameter]] = {}

    def get(self, key: str) -> Optional[List[Parameter]]:
        return self._params.get(key)

    def put(self, key: str, parameters: Sequence[Parameter]) -> None:
        self._params[key] = list(parameters)

    def clear(self) -> None:
        self._params.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._params

    def __iter__(self) -> Iterator[str]:
        return iter(self._params)

    def __len__(self) -> int:
        return len(self._params)


class Backend(ABC):
    """
    Capability contract between the Net and a compute backend.

    Responsibilities:
      - Set up a LayerState for a descriptor, run its forward/backward and
        release it again.
      - Own the parameter registry used for weight sharing.
      - Dispatch activation, regularizer, initializer and statistics
        capabilities. The defaults delegate to the capability objects.

    All calls are blocking; results are visible when the call returns.
    """

    def __init__(self) -> None:
        self.registry = ParameterRegistry()

    # --- Layer lifecycle ---

    @abstractmethod
    def setup(
        self,
        layer: LayerDescriptor,
        parameters: Optional[List[Parameter]],
        inputs: List[Blob],
        input_gradients: List[Optional[Blob]],
    ) -> LayerState:
        ...

    @abstractmethod
    def forward(self, state: LayerState, inputs: List[Blob]) -> None:
        ...

    @abstractmethod
    def backward(
        self,
        state: LayerState,
        inputs: List[Blob],
        input_gradients: List[Optional[Blob]],
    ) -> None:
        ...

    @abstractmethod
    def shutdown(self, state: LayerState) -> None:
        ...

    # --- Parameter sharing ---

    def registry_get(self, key: str) -> Optional[List[Parameter]]:
        return self.registry.get(key)

    def registry_put(self, key: str, parameters: Sequence[Parameter]) -> None:
        logger.debug("Registering %d parameter(s) under key %r", len(parameters), key)
        self.registry.put(key, parameters)

    # --- Capabilities ---

    def activation_forward(self, activation: Activation, blob: Blob) -> None:
        activation.forward(blob)

    def activation_backward(self, activation: Activation, blob: Blob, gradient: Blob) -> None:
        activation.backward(blob, gradient)

    def regularizer_forward(self, regularizer: Regularizer, regu_coef: float, param: Blob) -> float:
        return regularizer.forward(regu_coef, param)

    def regularizer_backward(
        self,
        regularizer: Regularizer,
        regu_coef: float,
        param: Blob,
        gradient: Blob,
    ) -> None:
        regularizer.backward(regu_coef, param, gradient)

    def initialize(self, initializer: Initializer, blob: Blob) -> None:
        if isinstance(initializer, NullInitializer):
            return
        initializer.init(blob)

    def dump_statistics(
        self,
        storage: MutableMapping[str, float],
        state: LayerState,
        show: bool,
    ) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not report statistics")

    def reset_statistics(self, state: LayerState) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not report statistics")
