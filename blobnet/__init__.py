# blobnet/__init__.py

from .errors import (
    TopologyError,
    DuplicateOutput,
    MissingInput,
    MultipleConsumerConflict,
    CycleDetected,
    DanglingGradient,
)
from .layers import Capabilities, LayerDescriptor, Layers
from .blobs import Blob, Parameter, LayerState
from .topology import topological_sort, check_bp_topology
from .backend import Backend, ParameterRegistry
from .net import Net
from .kernels import TorchBackend, Kernel, register_kernel
from .record import record, Trace
from .data_helper import BatchCursor, load_hdf5_arrays, synthesize_classification
from .training import TrainLoopConfig, Trainer, train_net
from .recipes import (
    descriptors_from_config,
    trainer_kwargs_from_config,
    mlp_classifier_layers,
)
from .diagnostics import (
    GradientSummary,
    summarize_gradients,
    plot_gradient_heatmap,
)
from . import initializers
from . import neurons
from . import regularizers

__version__ = "0.1.0"

__all__ = [
    "TopologyError",
    "DuplicateOutput",
    "MissingInput",
    "MultipleConsumerConflict",
    "CycleDetected",
    "DanglingGradient",
    "Capabilities",
    "LayerDescriptor",
    "Layers",
    "Blob",
    "Parameter",
    "LayerState",
    "topological_sort",
    "check_bp_topology",
    "Backend",
    "ParameterRegistry",
    "Net",
    "TorchBackend",
    "Kernel",
    "register_kernel",
    "record",
    "Trace",
    "BatchCursor",
    "load_hdf5_arrays",
    "synthesize_classification",
    "TrainLoopConfig",
    "Trainer",
    "train_net",
    "descriptors_from_config",
    "trainer_kwargs_from_config",
    "mlp_classifier_layers",
    "GradientSummary",
    "summarize_gradients",
    "plot_gradient_heatmap",
    "initializers",
    "neurons",
    "regularizers",
]
