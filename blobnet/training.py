from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass
from typing import ContextManager, Dict, List, Optional, Tuple

import torch

from . import diagnostics as blobnet_diagnostics
from .backend import Backend
from .kernels import TorchBackend
from .net import Net


@dataclass(frozen=True)
class TrainLoopConfig:
    max_iter: int
    lr: float
    log_every: int
    momentum: float = 0.9
    regu_coef: float = 0.0
    grad_clip: Optional[float] = None
    use_adam: bool = False
    betas: Optional[Tuple[float, float]] = None
    val_every: int = 0
    val_iters: int = 1

    def __post_init__(self) -> None:
        if self.max_iter <= 0:
            raise ValueError("max_iter must be positive")
        if self.log_every <= 0:
            raise ValueError("log_every must be positive")
        if self.lr <= 0:
            raise ValueError("lr must be positive")


class Trainer:
    """
    Iterative driver around Net.forward_backward and a torch optimizer.

    The optimizer sees the Net's parameter tensors with ``.grad`` aliased to
    the parameter gradient blobs, so the Net's backward sweep (which resets
    and accumulates those blobs) is all the optimizer needs; zero_grad is
    never called.
    """

    def __init__(
        self,
        net: Net,
        config: TrainLoopConfig,
        *,
        val_net: Optional[Net] = None,
        grad_summary_top_k: Optional[int] = None,
    ) -> None:
        self.net = net
        self.config = config
        self.val_net = val_net
        self.grad_summary_top_k = grad_summary_top_k
        self.optimizer: Optional[torch.optim.Optimizer] = None
        self.val_history: List[Dict[str, float]] = []

    def run(self, *, seed: Optional[int] = None) -> List[float]:
        if seed is not None:
            torch.manual_seed(seed)
        self.net.check_bp_topology()
        self.net.init()
        optimizer = self._ensure_optimizer()

        history: List[float] = []
        for it in range(1, self.config.max_iter + 1):
            obj_val = self.net.forward_backward(self.config.regu_coef)
            if self.config.grad_clip is not None:
                torch.nn.utils.clip_grad_norm_(self._param_tensors(), self.config.grad_clip)
            optimizer.step()
            history.append(obj_val)

            if it % self.config.log_every == 0 or it == self.config.max_iter:
                self._log_iteration(it, obj_val)
                self._log_gradient_summary()
            if self.config.val_every > 0 and (it % self.config.val_every) == 0:
                self._log_validation(it)
        return history

    def _param_tensors(self) -> List[torch.Tensor]:
        return [param.blob.tensor for param in self.net.parameters()]

    def _ensure_optimizer(self) -> torch.optim.Optimizer:
        if self.optimizer is not None:
            return self.optimizer
        tensors = []
        for param in self.net.parameters():
            tensor = param.blob.tensor
            tensor.grad = param.gradient.tensor
            tensors.append(tensor)
        if not tensors:
            raise RuntimeError(f"Network {self.net.name} has no parameters to train.")
        if self.config.use_adam:
            self.optimizer = torch.optim.Adam(
                tensors,
                lr=self.config.lr,
                betas=self.config.betas or (0.9, 0.999),
            )
        else:
            self.optimizer = torch.optim.SGD(
                tensors,
                lr=self.config.lr,
                momentum=self.config.momentum,
            )
        return self.optimizer

    def _log_iteration(self, it: int, obj_val: float) -> None:
        if self.net.data_layers:
            print(f"[iter {it}/{self.config.max_iter}] epoch={self.net.get_epoch()} objective={obj_val:.4f}")
        else:
            print(f"[iter {it}/{self.config.max_iter}] objective={obj_val:.4f}")

    def _log_gradient_summary(self) -> None:
        if self.grad_summary_top_k is None:
            return
        summary = blobnet_diagnostics.summarize_gradients(self.net, top_k=self.grad_summary_top_k)
        text = summary.to_text()
        if not text:
            return
        for line in text.splitlines():
            print(f"    {line}")

    def _log_validation(self, it: int) -> None:
        if self.val_net is None:
            return
        stats = self.evaluate(self.val_net, iters=self.config.val_iters)
        self.val_history.append(stats)
        parts = " ".join(f"{key}={value:.4f}" for key, value in sorted(stats.items()))
        print(f"[val after iter {it}] {parts}")

    @staticmethod
    def evaluate(net: Net, *, iters: int = 1) -> Dict[str, float]:
        """Average objective and layer statistics over ``iters`` test-phase sweeps."""
        net.reset_statistics()
        total = 0.0
        with _test_phase(net.backend):
            for _ in range(iters):
                total += net.forward()
        stats: Dict[str, float] = {"objective": total / max(1, iters)}
        net.dump_statistics(stats)
        return stats


def _test_phase(backend: Backend) -> ContextManager:
    if isinstance(backend, TorchBackend):
        return backend.use_phase("test")
    return nullcontext()


def train_net(
    net: Net,
    *,
    max_iter: int,
    lr: float,
    log_every: int,
    seed: Optional[int] = None,
    momentum: float = 0.9,
    regu_coef: float = 0.0,
    grad_clip: Optional[float] = None,
    use_adam: bool = False,
    betas: Optional[Tuple[float, float]] = None,
    val_net: Optional[Net] = None,
    val_every: int = 0,
    val_iters: int = 1,
    grad_summary_top_k: Optional[int] = None,
) -> List[float]:
    """
    Train a net with an optimizer-backed loop.

    Returns the objective of every iteration.
    """
    config = TrainLoopConfig(
        max_iter=max_iter,
        lr=lr,
        log_every=log_every,
        momentum=momentum,
        regu_coef=regu_coef,
        grad_clip=grad_clip,
        use_adam=use_adam,
        betas=betas,
        val_every=val_every,
        val_iters=val_iters,
    )
    trainer = Trainer(net, config, val_net=val_net, grad_summary_top_k=grad_summary_top_k)
    return trainer.run(seed=seed)
