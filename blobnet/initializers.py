# blobnet/initializers.py

from __future__ import annotations

import math

import torch

from .blobs import Blob


class Initializer:
    """Fills a parameter blob before training starts."""

    def init(self, blob: Blob) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"{type(self).__name__}({fields})"


class NullInitializer(Initializer):
    """Leaves the blob untouched; Net.init() skips it entirely."""

    def init(self, blob: Blob) -> None:
        return None


class ConstantInitializer(Initializer):
    def __init__(self, value: float = 0.0) -> None:
        self.value = float(value)

    def init(self, blob: Blob) -> None:
        blob.fill_(self.value)


class GaussianInitializer(Initializer):
    def __init__(self, mean: float = 0.0, std: float = 1.0) -> None:
        if std < 0:
            raise ValueError("std must be >= 0")
        self.mean = float(mean)
        self.std = float(std)

    def init(self, blob: Blob) -> None:
        with torch.no_grad():
            blob.tensor.normal_(self.mean, self.std)


class XavierInitializer(Initializer):
    """
    Uniform in [-s, s] with s = sqrt(3 / fan_in), fan_in being the product of
    all but the first dimension.
    """

    def init(self, blob: Blob) -> None:
        shape = blob.shape
        fan_in = 1
        for dim in shape[1:]:
            fan_in *= dim
        scale = math.sqrt(3.0 / max(1, fan_in))
        with torch.no_grad():
            blob.tensor.uniform_(-scale, scale)
