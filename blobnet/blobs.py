# blobnet/blobs.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import torch

if TYPE_CHECKING:
    from .initializers import Initializer
    from .layers import LayerDescriptor
    from .regularizers import Regularizer


class Blob:
    """
    Named handle to a data buffer flowing between layers.

    The wrapped tensor is allocated once by the owning layer state and only
    ever written in place, so every handle bound at assembly time keeps
    observing the same storage.
    """

    __slots__ = ("name", "tensor")

    def __init__(self, name: str, tensor: torch.Tensor) -> None:
        self.name = name
        self.tensor = tensor

    @classmethod
    def zeros(
        cls,
        name: str,
        shape: Tuple[int, ...],
        *,
        device: Optional[torch.device] = None,
        dtype: Optional[torch.dtype] = None,
    ) -> "Blob":
        return cls(name, torch.zeros(shape, device=device, dtype=dtype))

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.tensor.shape)

    def zero_(self) -> "Blob":
        self.tensor.zero_()
        return self

    def fill_(self, value: float) -> "Blob":
        self.tensor.fill_(value)
        return self

    def copy_(self, value: torch.Tensor) -> "Blob":
        if tuple(value.shape) != self.shape:
            value = value.reshape(self.shape)
        self.tensor.copy_(value)
        return self

    def __repr__(self) -> str:
        return f"Blob({self.name!r}, shape={self.shape})"


@dataclass(eq=False)
class Parameter:
    """Trainable buffer of a layer together with its gradient and policies."""

    name: str
    blob: Blob
    gradient: Blob
    initializer: "Initializer"
    regularizer: "Regularizer"


@dataclass(eq=False)
class LayerState:
    """
    Per-layer runtime record produced once by backend setup.

    Responsibilities:
      - Hold the bound forward inputs and backward (gradient) inputs.
      - Own the output blobs and their gradient blobs. For in-place layers the
        outputs are the bound inputs themselves.
      - Carry the optional parameter set, scalar loss and epoch counter.
    """

    layer: "LayerDescriptor"
    inputs: List[Blob] = field(default_factory=list)
    input_gradients: List[Optional[Blob]] = field(default_factory=list)
    blobs: List[Blob] = field(default_factory=list)
    blobs_diff: List[Optional[Blob]] = field(default_factory=list)
    parameters: List[Parameter] = field(default_factory=list)
    loss: float = 0.0
    epoch: int = 0
    # Kernel-private storage (cached masks, cursors, running statistics).
    extras: Dict[str, Any] = field(default_factory=dict)
