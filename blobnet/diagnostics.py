from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import torch

from .net import Net


@dataclass
class StatRecord:
    name: str
    l2: float
    max_abs: float
    mean_abs: float
    zero_frac: float


@dataclass
class GradientSummary:
    parameters: List[StatRecord]
    blobs: List[StatRecord]
    detached: List[str]

    def to_text(self, top_k: Optional[int] = None) -> str:
        sections: List[str] = []

        def _fmt_section(title: str, rows: Sequence[StatRecord]) -> Optional[str]:
            if not rows:
                return None
            lines = [f"{title} gradients:"]
            limit = rows if top_k is None else rows[:top_k]
            for rec in limit:
                lines.append(
                    f"  {rec.name:<30} |l2|={rec.l2:.4e} "
                    f"|max|={rec.max_abs:.4e} mean|g|={rec.mean_abs:.4e} "
                    f"zero%={rec.zero_frac * 100:5.2f}"
                )
            return "\n".join(lines)

        for label, rows in (
            ("Parameter", self.parameters),
            ("Blob", self.blobs),
        ):
            block = _fmt_section(label, rows)
            if block:
                sections.append(block)

        if self.detached:
            sections.append("Blobs without gradient: " + ", ".join(sorted(self.detached)))

        return "\n".join(sections)


class _StatBucket:
    __slots__ = ("entries", "l2_sum", "abs_sum", "max_abs", "zero_count", "elem_count")

    def __init__(self) -> None:
        self.entries = 0
        self.l2_sum = 0.0
        self.abs_sum = 0.0
        self.max_abs = 0.0
        self.zero_count = 0
        self.elem_count = 0

    def add(self, tensor: Optional[torch.Tensor]) -> None:
        if tensor is None:
            return
        data = tensor.detach()
        if data.numel() == 0:
            return
        abs_val = data.abs()
        self.entries += 1
        self.l2_sum += float(data.norm().item())
        self.abs_sum += float(abs_val.sum().item())
        self.max_abs = max(self.max_abs, float(abs_val.max().item()))
        zeros = (abs_val <= 1e-9).sum().item()
        self.zero_count += int(zeros)
        self.elem_count += data.numel()

    def to_record(self, name: str) -> StatRecord:
        if self.entries == 0 or self.elem_count == 0:
            return StatRecord(name=name, l2=0.0, max_abs=0.0, mean_abs=0.0, zero_frac=0.0)
        return StatRecord(
            name=name,
            l2=self.l2_sum / self.entries,
            max_abs=self.max_abs,
            mean_abs=self.abs_sum / self.elem_count,
            zero_frac=self.zero_count / max(1, self.elem_count),
        )


def summarize_gradients(net: Net, *, top_k: Optional[int] = None) -> GradientSummary:
    """
    Snapshot the current parameter and blob gradients of ``net``.

    Call after a backward sweep. Rows are sorted by L2 norm, largest first.
    """
    param_stats: Dict[str, _StatBucket] = {}
    for layer_name, param in net.named_parameters():
        bucket = param_stats.setdefault(f"{layer_name}.{param.name}", _StatBucket())
        bucket.add(param.gradient.tensor)

    blob_stats: Dict[str, _StatBucket] = {}
    detached: List[str] = []
    for name, diff in net.diff_blobs.items():
        if diff is None:
            detached.append(name)
            continue
        blob_stats.setdefault(name, _StatBucket()).add(diff.tensor)

    return GradientSummary(
        parameters=_sorted_records(param_stats, top_k),
        blobs=_sorted_records(blob_stats, top_k),
        detached=detached,
    )


def _sorted_records(store: Dict[str, _StatBucket], top_k: Optional[int]) -> List[StatRecord]:
    items = [bucket.to_record(name) for name, bucket in store.items()]
    items.sort(key=lambda rec: rec.l2, reverse=True)
    if top_k is not None:
        return items[:top_k]
    return items


def plot_gradient_heatmap(
    summary: GradientSummary,
    *,
    section: str = "parameters",
    metric: str = "l2",
    ax: Optional["matplotlib.axes.Axes"] = None,
) -> "matplotlib.axes.Axes":
    """
    Render a 1×N heatmap for the requested gradient metric using matplotlib.
    """
    rows = getattr(summary, section, None)
    if not rows:
        raise ValueError(f"No rows available for section {section!r}.")
    values = [getattr(row, metric) for row in rows]
    labels = [row.name for row in rows]
    try:
        import matplotlib.pyplot as plt  # type: ignore
        import numpy as np
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("matplotlib is required for heatmap rendering.") from exc

    if ax is None:
        _, ax = plt.subplots(figsize=(max(4, len(values)), 2))
    data = np.array([values], dtype=float)
    im = ax.imshow(data, aspect="auto", cmap="magma")
    ax.set_yticks([])
    ax.set_xticks(range(len(labels)))
    ax.set_xticklabels(labels, rotation=45, ha="right")
    ax.set_title(f"{section.capitalize()} gradient {metric}")
    plt.colorbar(im, ax=ax, fraction=0.046, pad=0.04)
    return ax
