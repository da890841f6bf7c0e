# blobnet/regularizers.py

from __future__ import annotations

from .blobs import Blob


class Regularizer:
    """
    Parameter penalty scaled by its own coefficient and the solver-wide
    regularization coefficient passed to Net.forward/backward.
    """

    def __init__(self, coefficient: float = 1.0) -> None:
        self.coefficient = float(coefficient)

    def forward(self, regu_coef: float, param: Blob) -> float:
        raise NotImplementedError

    def backward(self, regu_coef: float, param: Blob, gradient: Blob) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}(coefficient={self.coefficient})"


class NoRegularizer(Regularizer):
    def __init__(self) -> None:
        super().__init__(0.0)

    def forward(self, regu_coef: float, param: Blob) -> float:
        return 0.0

    def backward(self, regu_coef: float, param: Blob, gradient: Blob) -> None:
        return None


class L2Regularizer(Regularizer):
    """coef * ||w||^2, gradient 2 * coef * w."""

    def forward(self, regu_coef: float, param: Blob) -> float:
        coef = regu_coef * self.coefficient
        return coef * float(param.tensor.square().sum().item())

    def backward(self, regu_coef: float, param: Blob, gradient: Blob) -> None:
        coef = regu_coef * self.coefficient
        if coef == 0:
            return
        gradient.tensor.add_(param.tensor, alpha=2 * coef)


class L1Regularizer(Regularizer):
    """coef * |w|_1, subgradient coef * sign(w)."""

    def forward(self, regu_coef: float, param: Blob) -> float:
        coef = regu_coef * self.coefficient
        return coef * float(param.tensor.abs().sum().item())

    def backward(self, regu_coef: float, param: Blob, gradient: Blob) -> None:
        coef = regu_coef * self.coefficient
        if coef == 0:
            return
        gradient.tensor.add_(param.tensor.sign(), alpha=coef)
