# blobnet/neurons.py

from __future__ import annotations

from typing import Dict, Type

from .blobs import Blob


class Activation:
    """
    Elementwise activation applied in place to a layer's output blobs.

    Responsibilities:
      - forward(blob): overwrite the blob with the activated value.
      - backward(blob, gradient): turn the gradient w.r.t. the activated output
        into the gradient w.r.t. the pre-activation value, using only the
        activated output (the pre-activation value is gone after forward).
    """

    name = "activation"

    def forward(self, blob: Blob) -> None:
        raise NotImplementedError

    def backward(self, blob: Blob, gradient: Blob) -> None:
        raise NotImplementedError

    @property
    def is_identity(self) -> bool:
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Identity(Activation):
    name = "identity"

    def forward(self, blob: Blob) -> None:
        return None

    def backward(self, blob: Blob, gradient: Blob) -> None:
        return None

    @property
    def is_identity(self) -> bool:
        return True


class ReLU(Activation):
    name = "relu"

    def forward(self, blob: Blob) -> None:
        blob.tensor.clamp_(min=0)

    def backward(self, blob: Blob, gradient: Blob) -> None:
        gradient.tensor.mul_((blob.tensor > 0).to(gradient.tensor.dtype))


class Sigmoid(Activation):
    name = "sigmoid"

    def forward(self, blob: Blob) -> None:
        blob.tensor.sigmoid_()

    def backward(self, blob: Blob, gradient: Blob) -> None:
        out = blob.tensor
        gradient.tensor.mul_(out * (1 - out))


class Tanh(Activation):
    name = "tanh"

    def forward(self, blob: Blob) -> None:
        blob.tensor.tanh_()

    def backward(self, blob: Blob, gradient: Blob) -> None:
        out = blob.tensor
        gradient.tensor.mul_(1 - out * out)


ACTIVATIONS: Dict[str, Type[Activation]] = {
    cls.name: cls for cls in (Identity, ReLU, Sigmoid, Tanh)
}


def get_activation(name: str) -> Activation:
    try:
        return ACTIVATIONS[name]()
    except KeyError:
        known = ", ".join(sorted(ACTIVATIONS))
        raise KeyError(f"Unknown activation {name!r}. Known: {known}") from None

