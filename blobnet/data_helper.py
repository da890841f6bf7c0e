"""
Helpers that feed source layers: batch cursors over in-memory tensors,
HDF5 readers/writers, and a seeded synthetic classification set.

The goal is to keep demo scripts and tests free of data boilerplate.
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import torch

try:
    import h5py  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    h5py = None  # type: ignore


PathLike = Union[str, Path]


class BatchCursor:
    """
    Serves fixed-size batches from a set of equally long tensors.

    Batches wrap around the end of the data, so every batch has exactly
    ``batch_size`` rows. ``epoch`` counts completed passes over the data.
    """

    def __init__(
        self,
        arrays: Mapping[str, torch.Tensor],
        batch_size: int,
        *,
        shuffle: bool = False,
        seed: Optional[int] = None,
    ) -> None:
        if not arrays:
            raise ValueError("BatchCursor needs at least one array")
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.arrays = {name: torch.as_tensor(value) for name, value in arrays.items()}
        lengths = {name: int(value.shape[0]) for name, value in self.arrays.items()}
        if len(set(lengths.values())) != 1:
            raise ValueError(f"Arrays must share their first dimension, got {lengths}")
        self.num_samples = next(iter(lengths.values()))
        if self.num_samples == 0:
            raise ValueError("Arrays are empty; cannot serve batches")
        self.batch_size = int(batch_size)
        self.shuffle = shuffle
        self._generator = torch.Generator().manual_seed(seed) if seed is not None else None
        self.epoch = 0
        self._order = self._new_order()
        self._pos = 0

    @property
    def batches_per_epoch(self) -> int:
        return max(1, math.ceil(self.num_samples / self.batch_size))

    def reset(self) -> None:
        self.epoch = 0
        self._order = self._new_order()
        self._pos = 0

    def next_batch(self) -> Dict[str, torch.Tensor]:
        picked = []
        needed = self.batch_size
        while needed > 0:
            take = min(needed, self.num_samples - self._pos)
            picked.append(self._order[self._pos : self._pos + take])
            self._pos += take
            needed -= take
            if self._pos == self.num_samples:
                self.epoch += 1
                self._order = self._new_order()
                self._pos = 0
        indices = torch.cat(picked)
        return {name: value[indices] for name, value in self.arrays.items()}

    def _new_order(self) -> torch.Tensor:
        if self.shuffle:
            return torch.randperm(self.num_samples, generator=self._generator)
        return torch.arange(self.num_samples)


def load_hdf5_arrays(
    source: Union[PathLike, Sequence[PathLike]],
    names: Sequence[str],
) -> Dict[str, torch.Tensor]:
    """
    Read the named datasets from one or more HDF5 files.

    Datasets of the same name are concatenated along the first axis in file
    order.
    """
    if h5py is None:
        raise RuntimeError("h5py is required to read HDF5 data sources. Install h5py.")
    paths = [source] if isinstance(source, (str, Path)) else list(source)
    if not paths:
        raise ValueError("No HDF5 source files given")
    chunks: Dict[str, list] = {name: [] for name in names}
    for path in paths:
        with h5py.File(Path(path), "r") as handle:
            for name in names:
                if name not in handle:
                    raise KeyError(f"Dataset {name!r} not found in {path}")
                chunks[name].append(np.ascontiguousarray(handle[name][...]))
    return {name: torch.from_numpy(np.concatenate(parts, axis=0)) for name, parts in chunks.items()}


def write_hdf5_arrays(path: PathLike, arrays: Mapping[str, torch.Tensor]) -> Path:
    if h5py is None:
        raise RuntimeError("h5py is required to write HDF5 files. Install h5py.")
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with h5py.File(path, "w") as handle:
        for name, tensor in arrays.items():
            handle.create_dataset(name, data=torch.as_tensor(tensor).cpu().numpy(), compression="gzip")
    return path


def synthesize_classification(
    num_samples: int,
    num_features: int,
    num_classes: int,
    *,
    seed: int = 0,
    noise: float = 0.5,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Gaussian clusters around random class centres.

    Returns ``(data [N, num_features] float32, labels [N] int64)``.
    """
    if num_classes < 2:
        raise ValueError("num_classes must be >= 2")
    generator = torch.Generator().manual_seed(seed)
    centres = torch.randn(num_classes, num_features, generator=generator) * 2.0
    labels = torch.randint(num_classes, (num_samples,), generator=generator)
    data = centres[labels] + noise * torch.randn(num_samples, num_features, generator=generator)
    return data.float().contiguous(), labels.long()
