# blobnet/kernels.py

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, MutableMapping, Optional, Sequence, Type

import torch
import torch.nn.functional as F

from .backend import Backend
from .blobs import Blob, LayerState, Parameter
from .data_helper import BatchCursor, load_hdf5_arrays
from .initializers import ConstantInitializer, XavierInitializer
from .layers import LayerDescriptor
from .regularizers import L2Regularizer, NoRegularizer

logger = logging.getLogger(__name__)

PHASES = ("train", "test")

_KERNELS: Dict[str, Type["Kernel"]] = {}


def register_kernel(kind: str) -> Callable[[Type["Kernel"]], Type["Kernel"]]:
    """Class decorator registering a kernel for LayerDescriptor.kind == ``kind``."""

    def decorator(cls: Type["Kernel"]) -> Type["Kernel"]:
        if kind in _KERNELS:
            raise ValueError(f"Kernel for kind {kind!r} already registered by {_KERNELS[kind].__name__}")
        cls.kind = kind
        _KERNELS[kind] = cls
        return cls

    return decorator


def registered_kinds() -> List[str]:
    return sorted(_KERNELS)


def vector_jacobian(
    fn: Callable[..., torch.Tensor],
    primals: Sequence[torch.Tensor],
    cotangent: torch.Tensor,
    wanted: Sequence[bool],
) -> List[Optional[torch.Tensor]]:
    """
    Gradients of ``fn(*primals)`` contracted with ``cotangent``.

    Only primals flagged in ``wanted`` are differentiated; the others get None.
    """
    leaves = [p.detach().requires_grad_(bool(flag)) for p, flag in zip(primals, wanted)]
    targets = [leaf for leaf, flag in zip(leaves, wanted) if flag]
    if not targets:
        return [None] * len(leaves)
    with torch.enable_grad():
        out = fn(*leaves)
        grads = iter(torch.autograd.grad(out, targets, cotangent, allow_unused=True))
    return [next(grads) if flag else None for flag in wanted]


class Kernel:
    """
    Computation of one layer kind on torch tensors.

    Kernels are stateless; everything a layer needs between calls lives on
    its LayerState (``blobs``, ``parameters``, ``extras``).
    """

    kind = ""

    def __init__(self, backend: "TorchBackend") -> None:
        self.backend = backend

    def setup(
        self,
        layer: LayerDescriptor,
        parameters: Optional[List[Parameter]],
        inputs: List[Blob],
        input_gradients: List[Optional[Blob]],
    ) -> LayerState:
        raise NotImplementedError

    def forward(self, state: LayerState, inputs: List[Blob]) -> None:
        raise NotImplementedError

    def backward(
        self,
        state: LayerState,
        inputs: List[Blob],
        input_gradients: List[Optional[Blob]],
    ) -> None:
        return None

    def shutdown(self, state: LayerState) -> None:
        state.extras.clear()

    def dump_statistics(self, storage: MutableMapping[str, float], state: LayerState, show: bool) -> None:
        raise NotImplementedError(f"Layer kind {self.kind!r} has no statistics")

    def reset_statistics(self, state: LayerState) -> None:
        raise NotImplementedError(f"Layer kind {self.kind!r} has no statistics")

    # --- helpers ---

    def zeros(self, name: str, shape: Sequence[int], dtype: Optional[torch.dtype] = None) -> Blob:
        return Blob.zeros(
            name,
            tuple(int(d) for d in shape),
            device=self.backend.device,
            dtype=dtype or self.backend.dtype,
        )


class TorchBackend(Backend):
    """
    Reference backend running every layer kind registered with
    ``register_kernel`` on torch tensors.

    ``phase`` is read by phase-dependent kernels (dropout) on every forward,
    so one backend (and its parameter registry) can serve a train net and a
    test net.
    """

    def __init__(
        self,
        device: "str | torch.device" = "cpu",
        dtype: torch.dtype = torch.float32,
        phase: str = "train",
    ) -> None:
        super().__init__()
        self.device = torch.device(device)
        self.dtype = dtype
        self.phase = phase
        self._kernels: Dict[str, Kernel] = {}

    @property
    def phase(self) -> str:
        return self._phase

    @phase.setter
    def phase(self, value: str) -> None:
        if value not in PHASES:
            raise ValueError(f"phase must be one of {PHASES}, got {value!r}")
        self._phase = value

    @contextmanager
    def use_phase(self, phase: str) -> Iterator["TorchBackend"]:
        previous = self.phase
        self.phase = phase
        try:
            yield self
        finally:
            self.phase = previous

    def kernel(self, kind: str) -> Kernel:
        kernel = self._kernels.get(kind)
        if kernel is None:
            if kind not in _KERNELS:
                known = ", ".join(registered_kinds())
                raise KeyError(f"No kernel registered for layer kind {kind!r}. Known: {known}")
            kernel = _KERNELS[kind](self)
            self._kernels[kind] = kernel
        return kernel

    def setup(
        self,
        layer: LayerDescriptor,
        parameters: Optional[List[Parameter]],
        inputs: List[Blob],
        input_gradients: List[Optional[Blob]],
    ) -> LayerState:
        logger.debug("Setup layer %s (%s)", layer.name, layer.kind)
        return self.kernel(layer.kind).setup(layer, parameters, inputs, input_gradients)

    def forward(self, state: LayerState, inputs: List[Blob]) -> None:
        self.kernel(state.layer.kind).forward(state, inputs)

    def backward(
        self,
        state: LayerState,
        inputs: List[Blob],
        input_gradients: List[Optional[Blob]],
    ) -> None:
        self.kernel(state.layer.kind).backward(state, inputs, input_gradients)

    def shutdown(self, state: LayerState) -> None:
        logger.debug("Shutdown layer %s", state.layer.name)
        self.kernel(state.layer.kind).shutdown(state)

    def dump_statistics(self, storage: MutableMapping[str, float], state: LayerState, show: bool) -> None:
        self.kernel(state.layer.kind).dump_statistics(storage, state, show)

    def reset_statistics(self, state: LayerState) -> None:
        self.kernel(state.layer.kind).reset_statistics(state)

    def __repr__(self) -> str:
        return f"TorchBackend(device={str(self.device)!r}, dtype={self.dtype}, phase={self.phase!r})"


# ---------------------------------------------------------------------------
# Data sources
# ---------------------------------------------------------------------------


@register_kernel("memory_data")
class MemoryDataKernel(Kernel):
    """Serves consecutive batches of in-memory tensors, one top per array."""

    def arrays(self, layer: LayerDescriptor) -> Dict[str, torch.Tensor]:
        data = layer.options["data"]
        return {top: torch.as_tensor(data[top]) for top in layer.tops}

    def setup(self, layer, parameters, inputs, input_gradients):
        arrays = self.arrays(layer)
        batch_size = int(layer.options["batch_size"])
        cursor = BatchCursor(
            arrays,
            batch_size,
            shuffle=bool(layer.options.get("shuffle", False)),
            seed=layer.options.get("seed"),
        )
        blobs = []
        for top in layer.tops:
            array = arrays[top]
            dtype = array.dtype if not array.is_floating_point() else self.backend.dtype
            blobs.append(self.zeros(top, (batch_size,) + tuple(array.shape[1:]), dtype))
        state = LayerState(
            layer=layer,
            blobs=blobs,
            blobs_diff=[None] * len(blobs),
            extras={"cursor": cursor},
        )
        return state

    def forward(self, state, inputs):
        cursor: BatchCursor = state.extras["cursor"]
        batch = cursor.next_batch()
        for blob in state.blobs:
            blob.copy_(batch[blob.name].to(device=blob.tensor.device, dtype=blob.tensor.dtype))
        state.epoch = cursor.epoch


@register_kernel("hdf5_data")
class HDF5DataKernel(MemoryDataKernel):
    """Like memory_data, reading datasets named after the tops from HDF5 files."""

    def arrays(self, layer: LayerDescriptor) -> Dict[str, torch.Tensor]:
        return load_hdf5_arrays(layer.options["source"], layer.tops)


# ---------------------------------------------------------------------------
# Parameterised layers
# ---------------------------------------------------------------------------


@register_kernel("inner_product")
class InnerProductKernel(Kernel):
    """y = x W^T + b, with x flattened past the batch axis."""

    def setup(self, layer, parameters, inputs, input_gradients):
        fan_ins = {_fan_in(blob) for blob in inputs}
        if len(fan_ins) != 1:
            raise ValueError(f"Layer {layer.name}: all bottoms must have the same feature size, got {sorted(fan_ins)}")
        fan_in = fan_ins.pop()
        out_dim = int(layer.options["output_dim"])
        use_bias = bool(layer.options.get("bias", True))

        if parameters is None:
            parameters = self._make_parameters(layer, fan_in, out_dim, use_bias)
        else:
            self._check_shared(layer, parameters, fan_in, out_dim, use_bias)

        blobs = [self.zeros(top, (blob.shape[0], out_dim)) for top, blob in zip(layer.tops, inputs)]
        diffs: List[Optional[Blob]] = [self.zeros(f"{top}.diff", b.shape) for top, b in zip(layer.tops, blobs)]
        return LayerState(
            layer=layer,
            inputs=list(inputs),
            input_gradients=list(input_gradients),
            blobs=blobs,
            blobs_diff=diffs,
            parameters=list(parameters),
        )

    def _make_parameters(self, layer, fan_in: int, out_dim: int, use_bias: bool) -> List[Parameter]:
        opts = layer.options
        params = [
            Parameter(
                name="weight",
                blob=self.zeros(f"{layer.name}.weight", (out_dim, fan_in)),
                gradient=self.zeros(f"{layer.name}.weight.diff", (out_dim, fan_in)),
                initializer=opts.get("weight_init") or XavierInitializer(),
                regularizer=opts.get("weight_regu") or L2Regularizer(1.0),
            )
        ]
        if use_bias:
            params.append(
                Parameter(
                    name="bias",
                    blob=self.zeros(f"{layer.name}.bias", (out_dim,)),
                    gradient=self.zeros(f"{layer.name}.bias.diff", (out_dim,)),
                    initializer=opts.get("bias_init") or ConstantInitializer(0.0),
                    regularizer=opts.get("bias_regu") or NoRegularizer(),
                )
            )
        return params

    def _check_shared(self, layer, parameters: List[Parameter], fan_in: int, out_dim: int, use_bias: bool) -> None:
        expected = [(out_dim, fan_in)] + ([(out_dim,)] if use_bias else [])
        actual = [p.blob.shape for p in parameters]
        if actual != expected:
            raise ValueError(
                f"Layer {layer.name}: shared parameters under key {layer.parameter_key!r} "
                f"have shapes {actual}, expected {expected}"
            )

    def forward(self, state, inputs):
        weight, bias = _weight_bias(state)
        for blob, out in zip(inputs, state.blobs):
            out.copy_(_affine(blob.tensor, weight, bias))

    def backward(self, state, inputs, input_gradients):
        weight_param = state.parameters[0]
        bias_param = state.parameters[1] if len(state.parameters) > 1 else None
        weight, bias = _weight_bias(state)
        for blob, grad_in, top_diff in zip(inputs, input_gradients, state.blobs_diff):
            if top_diff is None:
                continue
            if bias is None:
                fn = _linear
                primals = [blob.tensor, weight]
            else:
                fn = _affine
                primals = [blob.tensor, weight, bias]
            wanted = [grad_in is not None] + [True] * (len(primals) - 1)
            grads = vector_jacobian(fn, primals, top_diff.tensor, wanted)
            if grad_in is not None and grads[0] is not None:
                grad_in.copy_(grads[0])
            if grads[1] is not None:
                weight_param.gradient.tensor.add_(grads[1])
            if bias_param is not None and grads[2] is not None:
                bias_param.gradient.tensor.add_(grads[2])


def _fan_in(blob: Blob) -> int:
    size = 1
    for dim in blob.shape[1:]:
        size *= dim
    return size


def _affine(x: torch.Tensor, weight: torch.Tensor, bias: Optional[torch.Tensor]) -> torch.Tensor:
    return F.linear(x.reshape(x.shape[0], -1).to(weight.dtype), weight, bias)


def _linear(x: torch.Tensor, weight: torch.Tensor) -> torch.Tensor:
    return _affine(x, weight, None)


def _weight_bias(state: LayerState):
    weight = state.parameters[0].blob.tensor
    bias = state.parameters[1].blob.tensor if len(state.parameters) > 1 else None
    return weight, bias


# ---------------------------------------------------------------------------
# Routing and in-place layers
# ---------------------------------------------------------------------------


@register_kernel("split")
class SplitKernel(Kernel):
    """Copies one blob to N tops; backward sums the N top gradients."""

    def setup(self, layer, parameters, inputs, input_gradients):
        source = inputs[0]
        blobs = [self.zeros(top, source.shape, source.tensor.dtype) for top in layer.tops]
        diffs: List[Optional[Blob]] = [self.zeros(f"{top}.diff", source.shape) for top in layer.tops]
        return LayerState(
            layer=layer,
            inputs=list(inputs),
            input_gradients=list(input_gradients),
            blobs=blobs,
            blobs_diff=diffs,
        )

    def forward(self, state, inputs):
        for out in state.blobs:
            out.copy_(inputs[0].tensor)

    def backward(self, state, inputs, input_gradients):
        target = input_gradients[0]
        if target is None:
            return
        target.zero_()
        for diff in state.blobs_diff:
            if diff is not None:
                target.tensor.add_(diff.tensor)


@register_kernel("dropout")
class DropoutKernel(Kernel):
    """
    Inverted dropout applied in place: kept units are scaled by 1 / (1 - ratio)
    during training, the blob passes through unchanged in the test phase.

    The unmasked values are kept in ``extras["saved"]`` and written back into
    the blob by ``backward``, so the producer's activation backward sees its
    real output.
    """

    def setup(self, layer, parameters, inputs, input_gradients):
        masks = [torch.ones_like(blob.tensor) for blob in inputs]
        saved = [torch.empty_like(blob.tensor) for blob in inputs]
        return LayerState(
            layer=layer,
            inputs=list(inputs),
            input_gradients=list(input_gradients),
            blobs=list(inputs),
            blobs_diff=list(input_gradients),
            extras={"masks": masks, "saved": saved, "masked": False},
        )

    def forward(self, state, inputs):
        ratio = float(state.layer.options["ratio"])
        masked = self.backend.phase == "train" and ratio > 0
        for blob, mask, saved in zip(inputs, state.extras["masks"], state.extras["saved"]):
            if masked:
                saved.copy_(blob.tensor)
                mask.bernoulli_(1.0 - ratio).div_(1.0 - ratio)
                blob.tensor.mul_(mask)
            else:
                mask.fill_(1.0)
        state.extras["masked"] = masked

    def backward(self, state, inputs, input_gradients):
        for grad, mask in zip(input_gradients, state.extras["masks"]):
            if grad is not None:
                grad.tensor.mul_(mask)
        if state.extras["masked"]:
            for blob, saved in zip(inputs, state.extras["saved"]):
                blob.tensor.copy_(saved)
            state.extras["masked"] = False


# ---------------------------------------------------------------------------
# Losses and statistics
# ---------------------------------------------------------------------------


class _LossKernel(Kernel):
    def setup(self, layer, parameters, inputs, input_gradients):
        if len(inputs) != 2:
            raise ValueError(f"Loss layer {layer.name} expects (prediction, label) bottoms")
        return LayerState(layer=layer, inputs=list(inputs), input_gradients=list(input_gradients))

    def objective(self, pred: torch.Tensor, label: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def differentiable_label(self) -> bool:
        return True

    def forward(self, state, inputs):
        weight = float(state.layer.options.get("weight", 1.0))
        value = self.objective(inputs[0].tensor, inputs[1].tensor)
        state.loss = weight * float(value.item())

    def backward(self, state, inputs, input_gradients):
        weight = float(state.layer.options.get("weight", 1.0))
        pred_grad, label_grad = input_gradients
        wanted = [pred_grad is not None, label_grad is not None and self.differentiable_label()]
        cotangent = torch.tensor(weight, device=inputs[0].tensor.device, dtype=inputs[0].tensor.dtype)
        grads = vector_jacobian(self.objective, [inputs[0].tensor, inputs[1].tensor], cotangent, wanted)
        if pred_grad is not None:
            pred_grad.copy_(grads[0])
        if label_grad is not None:
            if grads[1] is None:
                label_grad.zero_()
            else:
                label_grad.copy_(grads[1])


@register_kernel("square_loss")
class SquareLossKernel(_LossKernel):
    """0.5 * sum((pred - label)^2) / N."""

    def objective(self, pred: torch.Tensor, label: torch.Tensor) -> torch.Tensor:
        diff = pred - label.reshape(pred.shape).to(pred.dtype)
        return 0.5 * diff.square().sum() / pred.shape[0]


@register_kernel("softmax_loss")
class SoftmaxLossKernel(_LossKernel):
    """Mean cross entropy of logits against integer class labels."""

    def objective(self, pred: torch.Tensor, label: torch.Tensor) -> torch.Tensor:
        logits = pred.reshape(pred.shape[0], -1)
        return F.cross_entropy(logits, label.reshape(-1).long())

    def differentiable_label(self) -> bool:
        return False


@register_kernel("accuracy")
class AccuracyKernel(Kernel):
    """Running top-1 accuracy, reported as ``<layer>-accuracy``."""

    def setup(self, layer, parameters, inputs, input_gradients):
        if len(inputs) != 2:
            raise ValueError(f"Accuracy layer {layer.name} expects (prediction, label) bottoms")
        state = LayerState(layer=layer, inputs=list(inputs))
        self.reset_statistics(state)
        return state

    def forward(self, state, inputs):
        pred, label = inputs[0].tensor, inputs[1].tensor
        guess = pred.reshape(pred.shape[0], -1).argmax(dim=1)
        correct = int((guess == label.reshape(-1).long()).sum().item())
        state.extras["correct"] += correct
        state.extras["count"] += int(guess.numel())

    def dump_statistics(self, storage, state, show):
        count = state.extras["count"]
        accuracy = state.extras["correct"] / count if count else 0.0
        key = f"{state.layer.name}-accuracy"
        storage[key] = accuracy
        if show:
            print(f"  Accuracy ({state.layer.name}) = {accuracy * 100:.4f}% over {count} samples")

    def reset_statistics(self, state):
        state.extras["correct"] = 0
        state.extras["count"] = 0
