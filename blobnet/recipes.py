from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Type

import torch

from .initializers import (
    ConstantInitializer,
    GaussianInitializer,
    Initializer,
    NullInitializer,
    XavierInitializer,
)
from .layers import LayerDescriptor, Layers
from .regularizers import L1Regularizer, L2Regularizer, NoRegularizer, Regularizer

INITIALIZERS: Dict[str, Type[Initializer]] = {
    "null": NullInitializer,
    "constant": ConstantInitializer,
    "gaussian": GaussianInitializer,
    "xavier": XavierInitializer,
}

REGULARIZERS: Dict[str, Type[Regularizer]] = {
    "none": NoRegularizer,
    "l2": L2Regularizer,
    "l1": L1Regularizer,
}

_LAYER_BUILDERS: Dict[str, Callable[..., LayerDescriptor]] = {
    "memory_data": Layers.memory_data,
    "hdf5_data": Layers.hdf5_data,
    "inner_product": Layers.inner_product,
    "split": Layers.split,
    "dropout": Layers.dropout,
    "square_loss": Layers.square_loss,
    "softmax_loss": Layers.softmax_loss,
    "accuracy": Layers.accuracy,
}

_INIT_KEYS = ("weight_init", "bias_init")
_REGU_KEYS = ("weight_regu", "bias_regu")


def _from_registry(kind: str, registry: Mapping[str, type], cfg: Any) -> Any:
    if cfg is None or not isinstance(cfg, Mapping):
        return cfg
    params = dict(cfg)
    name = str(params.pop("type", "")).lower()
    if name not in registry:
        raise KeyError(f"Unknown {kind} {name!r}. Known: {', '.join(sorted(registry))}")
    return registry[name](**params)


def build_initializer(cfg: Optional[Mapping[str, Any]]) -> Optional[Initializer]:
    return _from_registry("initializer", INITIALIZERS, cfg)


def build_regularizer(cfg: Optional[Mapping[str, Any]]) -> Optional[Regularizer]:
    return _from_registry("regularizer", REGULARIZERS, cfg)


def descriptors_from_config(
    entries: Sequence[Mapping[str, Any]],
    *,
    data: Optional[Mapping[str, torch.Tensor]] = None,
) -> List[LayerDescriptor]:
    """
    Build layer descriptors from plain mappings, e.g.:

        {"type": "inner_product", "name": "ip1", "bottoms": ["data"],
         "tops": ["ip1"], "output_dim": 32, "activation": "relu",
         "weight_init": {"type": "gaussian", "std": 0.01}}

    ``memory_data`` entries without their own ``data`` key read from ``data``.
    """
    layers: List[LayerDescriptor] = []
    for entry in entries:
        kwargs = dict(entry)
        kind = kwargs.pop("type", None)
        if kind not in _LAYER_BUILDERS:
            known = ", ".join(sorted(_LAYER_BUILDERS))
            raise KeyError(f"Unknown layer type {kind!r} in entry {entry.get('name')!r}. Known: {known}")
        if "name" not in kwargs:
            raise KeyError(f"Layer entry of type {kind!r} is missing 'name'")
        for key in _INIT_KEYS:
            if key in kwargs:
                kwargs[key] = build_initializer(kwargs[key])
        for key in _REGU_KEYS:
            if key in kwargs:
                kwargs[key] = build_regularizer(kwargs[key])
        if kind == "memory_data" and "data" not in kwargs:
            if data is None:
                raise ValueError(f"memory_data layer {kwargs['name']!r} needs in-memory data")
            kwargs["data"] = data
        layers.append(_LAYER_BUILDERS[kind](**kwargs))
    return layers


def trainer_kwargs_from_config(
    cfg: Mapping[str, Any],
    *,
    val_net: Optional[Any] = None,
) -> dict:
    """
    Extract the standard train_net kwargs from a demo CONFIG dict.
    """
    required = ("max_iter", "lr", "log_every")
    missing = [key for key in required if key not in cfg]
    if missing:
        raise KeyError(f"Trainer config missing required keys: {', '.join(missing)}")
    train_kwargs = {key: cfg[key] for key in required}
    optional = (
        "seed",
        "momentum",
        "regu_coef",
        "grad_clip",
        "use_adam",
        "betas",
        "val_every",
        "val_iters",
        "grad_summary_top_k",
    )
    for key in optional:
        if key in cfg:
            train_kwargs[key] = cfg[key]
    if val_net is not None:
        train_kwargs["val_net"] = val_net
    return train_kwargs


def mlp_classifier_layers(
    num_classes: int,
    *,
    hidden: Sequence[int] = (64,),
    activation: str = "relu",
    dropout: float = 0.0,
    data_top: str = "data",
    label_top: str = "label",
    data_layer: Optional[LayerDescriptor] = None,
    weight_std: Optional[float] = None,
) -> List[LayerDescriptor]:
    """
    Fully connected classifier ending in softmax_loss and accuracy sinks.

    Layer names (and therefore parameter keys) only depend on the layer
    position, so a train net and a test net built from this recipe on the
    same backend share their weights.
    """
    layers: List[LayerDescriptor] = [data_layer] if data_layer is not None else []
    weight_init = GaussianInitializer(std=weight_std) if weight_std is not None else None
    bottom = data_top
    for idx, width in enumerate(hidden, start=1):
        top = f"ip{idx}"
        layers.append(
            Layers.inner_product(
                top,
                [bottom],
                [top],
                width,
                activation=activation,
                weight_init=weight_init,
            )
        )
        if dropout > 0:
            layers.append(Layers.dropout(f"drop{idx}", [top], ratio=dropout))
        bottom = top
    layers.append(Layers.inner_product("logits", [bottom], ["logits"], num_classes, weight_init=weight_init))
    layers.append(Layers.softmax_loss("loss", ["logits", label_top]))
    layers.append(Layers.accuracy("acc", ["logits", label_top]))
    return layers
