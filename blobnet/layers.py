# blobnet/layers.py

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

import torch

from .initializers import Initializer
from .neurons import ACTIVATIONS
from .regularizers import Regularizer


@dataclass(frozen=True)
class Capabilities:
    """Fixed capability flags of a layer; queried, never mutated."""

    source: bool = False
    sink: bool = False
    inplace: bool = False
    params: bool = False
    loss: bool = False
    activation: bool = False
    backprop: bool = False
    statistics: bool = False


@dataclass(frozen=True)
class LayerDescriptor:
    """
    Immutable declaration of a computation node.

    Responsibilities:
      - Name the node and the backend kernel (``kind``) that computes it.
      - Declare ordered bottom (input) and top (output) blob names.
      - Carry the capability flags the assembler and engine switch on.
      - Hold kernel options (shapes, initializers, regularizers, data).

    An in-place layer transforms its bottoms without introducing new blob
    names; its tops default to its bottoms.
    """

    name: str
    kind: str
    bottoms: Tuple[str, ...] = ()
    tops: Tuple[str, ...] = ()
    caps: Capabilities = Capabilities()
    activation: str = "identity"
    param_key: Optional[str] = None
    options: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Layer name must be non-empty")
        if not self.kind:
            raise ValueError(f"Layer {self.name}: kind must be non-empty")
        object.__setattr__(self, "bottoms", tuple(self.bottoms))
        object.__setattr__(self, "tops", tuple(self.tops))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options)))

        caps = self.caps
        if caps.inplace and not self.tops:
            object.__setattr__(self, "tops", self.bottoms)

        if caps.source:
            if self.bottoms:
                raise ValueError(f"Source layer {self.name} cannot declare bottoms")
            if caps.inplace:
                raise ValueError(f"Source layer {self.name} cannot be in-place")
        elif not self.bottoms:
            raise ValueError(f"Layer {self.name} needs at least one bottom")
        if caps.sink:
            if self.tops:
                raise ValueError(f"Sink layer {self.name} cannot declare tops")
        elif not self.tops:
            raise ValueError(f"Layer {self.name} needs at least one top")
        if len(set(self.tops)) != len(self.tops):
            raise ValueError(f"Layer {self.name} declares duplicate tops: {self.tops}")
        if caps.inplace and not set(self.tops) <= set(self.bottoms):
            raise ValueError(
                f"In-place layer {self.name} must name a subset of its bottoms as tops"
            )
        if self.activation not in ACTIVATIONS:
            known = ", ".join(sorted(ACTIVATIONS))
            raise ValueError(f"Layer {self.name}: unknown activation {self.activation!r}. Known: {known}")
        if self.activation != "identity" and not caps.activation:
            raise ValueError(f"Layer {self.name} does not support an activation")

    # --- Capability queries ---

    @property
    def is_source(self) -> bool:
        return self.caps.source

    @property
    def is_sink(self) -> bool:
        return self.caps.sink

    @property
    def is_inplace(self) -> bool:
        return self.caps.inplace

    @property
    def has_param(self) -> bool:
        return self.caps.params

    @property
    def has_loss(self) -> bool:
        return self.caps.loss

    @property
    def has_activation(self) -> bool:
        return self.caps.activation

    @property
    def can_backprop(self) -> bool:
        return self.caps.backprop

    @property
    def has_statistics(self) -> bool:
        return self.caps.statistics

    @property
    def parameter_key(self) -> str:
        """Key under which this layer's parameters are shared."""
        return self.param_key or self.name


PathLike = Union[str, Path]


class Layers:
    """
    Constructors for the layer kinds implemented by the reference backend.

    Each helper fills in the capability flags its kernel relies on.
    """

    @staticmethod
    def memory_data(
        name: str,
        tops: Sequence[str],
        data: Mapping[str, torch.Tensor],
        batch_size: int,
        *,
        shuffle: bool = False,
        seed: Optional[int] = None,
    ) -> LayerDescriptor:
        missing = [top for top in tops if top not in data]
        if missing:
            raise ValueError(f"Layer {name}: no data provided for tops {missing}")
        return LayerDescriptor(
            name=name,
            kind="memory_data",
            tops=tuple(tops),
            caps=Capabilities(source=True),
            options={"data": dict(data), "batch_size": int(batch_size), "shuffle": shuffle, "seed": seed},
        )

    @staticmethod
    def hdf5_data(
        name: str,
        tops: Sequence[str],
        source: Union[PathLike, Sequence[PathLike]],
        batch_size: int,
        *,
        shuffle: bool = False,
        seed: Optional[int] = None,
    ) -> LayerDescriptor:
        if isinstance(source, (str, Path)):
            source = [source]
        return LayerDescriptor(
            name=name,
            kind="hdf5_data",
            tops=tuple(tops),
            caps=Capabilities(source=True),
            options={
                "source": tuple(str(p) for p in source),
                "batch_size": int(batch_size),
                "shuffle": shuffle,
                "seed": seed,
            },
        )

    @staticmethod
    def inner_product(
        name: str,
        bottoms: Sequence[str],
        tops: Sequence[str],
        output_dim: int,
        *,
        activation: str = "identity",
        bias: bool = True,
        weight_init: Optional[Initializer] = None,
        bias_init: Optional[Initializer] = None,
        weight_regu: Optional[Regularizer] = None,
        bias_regu: Optional[Regularizer] = None,
        param_key: Optional[str] = None,
    ) -> LayerDescriptor:
        if len(bottoms) != len(tops):
            raise ValueError(f"Layer {name}: inner product maps each bottom to one top")
        return LayerDescriptor(
            name=name,
            kind="inner_product",
            bottoms=tuple(bottoms),
            tops=tuple(tops),
            caps=Capabilities(params=True, activation=True, backprop=True),
            activation=activation,
            param_key=param_key,
            options={
                "output_dim": int(output_dim),
                "bias": bias,
                "weight_init": weight_init,
                "bias_init": bias_init,
                "weight_regu": weight_regu,
                "bias_regu": bias_regu,
            },
        )

    @staticmethod
    def split(name: str, bottom: str, tops: Sequence[str]) -> LayerDescriptor:
        """Fan one blob out to several consumers and merge their gradients."""
        return LayerDescriptor(
            name=name,
            kind="split",
            bottoms=(bottom,),
            tops=tuple(tops),
            caps=Capabilities(backprop=True),
        )

    @staticmethod
    def dropout(name: str, bottoms: Sequence[str], ratio: float = 0.5) -> LayerDescriptor:
        if not 0.0 <= ratio < 1.0:
            raise ValueError("dropout ratio must be in [0, 1)")
        return LayerDescriptor(
            name=name,
            kind="dropout",
            bottoms=tuple(bottoms),
            caps=Capabilities(inplace=True, backprop=True),
            options={"ratio": float(ratio)},
        )

    @staticmethod
    def square_loss(name: str, bottoms: Sequence[str], weight: float = 1.0) -> LayerDescriptor:
        """0.5 * ||pred - label||^2 averaged over the batch; bottoms = (pred, label)."""
        return LayerDescriptor(
            name=name,
            kind="square_loss",
            bottoms=tuple(bottoms),
            caps=Capabilities(sink=True, loss=True, backprop=True),
            options={"weight": float(weight)},
        )

    @staticmethod
    def softmax_loss(name: str, bottoms: Sequence[str], weight: float = 1.0) -> LayerDescriptor:
        """Cross entropy of logits against integer labels; bottoms = (logits, label)."""
        return LayerDescriptor(
            name=name,
            kind="softmax_loss",
            bottoms=tuple(bottoms),
            caps=Capabilities(sink=True, loss=True, backprop=True),
            options={"weight": float(weight)},
        )

    @staticmethod
    def accuracy(name: str, bottoms: Sequence[str]) -> LayerDescriptor:
        return LayerDescriptor(
            name=name,
            kind="accuracy",
            bottoms=tuple(bottoms),
            caps=Capabilities(sink=True, statistics=True),
        )
