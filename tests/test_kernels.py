import os
import sys

import pytest
import torch
import torch.nn.functional as F

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from blobnet import (  # noqa: E402
    Capabilities,
    Kernel,
    LayerDescriptor,
    LayerState,
    Layers,
    Net,
    TorchBackend,
    register_kernel,
)
from blobnet.data_helper import write_hdf5_arrays  # noqa: E402
from blobnet.initializers import ConstantInitializer  # noqa: E402


@register_kernel("test_double")
class DoubleKernel(Kernel):
    def setup(self, layer, parameters, inputs, input_gradients):
        shape = inputs[0].shape
        return LayerState(
            layer=layer,
            inputs=list(inputs),
            input_gradients=list(input_gradients),
            blobs=[self.zeros(layer.tops[0], shape)],
            blobs_diff=[self.zeros(layer.tops[0] + ".diff", shape)],
        )

    def forward(self, state, inputs):
        state.blobs[0].copy_(inputs[0].tensor * 2)

    def backward(self, state, inputs, input_gradients):
        if input_gradients[0] is not None:
            input_gradients[0].copy_(state.blobs_diff[0].tensor * 2)


def _state(net, name):
    for layer, state in zip(net.layers, net.states):
        if layer.name == name:
            return state
    raise KeyError(name)


@pytest.mark.parametrize("activation,fn", [("relu", torch.relu), ("sigmoid", torch.sigmoid), ("tanh", torch.tanh)])
def test_inner_product_with_activation_matches_autograd(activation, fn):
    torch.manual_seed(0)
    x = torch.randn(5, 2, 3)
    y = torch.randn(5, 4)
    layers = [
        Layers.memory_data("data", ["x", "y"], {"x": x, "y": y}, 5),
        Layers.inner_product("ip", ["x"], ["h"], 4, activation=activation),
        Layers.square_loss("loss", ["h", "y"]),
    ]
    net = Net("act", TorchBackend(), layers)
    net.init()
    weight, bias = _state(net, "ip").parameters
    w_ref = weight.blob.tensor.clone().requires_grad_(True)
    b_ref = bias.blob.tensor.clone().requires_grad_(True)
    out = fn(x.reshape(5, -1) @ w_ref.T + b_ref)
    ref_loss = 0.5 * ((out - y) ** 2).sum() / 5
    ref_loss.backward()

    obj_val = net.forward_backward()
    assert obj_val == pytest.approx(float(ref_loss.item()), rel=1e-5)
    torch.testing.assert_close(net.output_blobs["h"].tensor, out.detach())
    torch.testing.assert_close(weight.gradient.tensor, w_ref.grad)
    torch.testing.assert_close(bias.gradient.tensor, b_ref.grad)


def test_input_gradient_flows_through_stacked_layers():
    torch.manual_seed(1)
    x = torch.randn(4, 3)
    y = torch.randn(4, 2)
    layers = [
        Layers.memory_data("data", ["x", "y"], {"x": x, "y": y}, 4),
        Layers.inner_product("ip1", ["x"], ["h1"], 5, activation="tanh"),
        Layers.inner_product("ip2", ["h1"], ["h2"], 2),
        Layers.square_loss("loss", ["h2", "y"]),
    ]
    net = Net("stack", TorchBackend(), layers, check_bp=True)
    net.init()
    w1, b1 = [p.blob.tensor.clone().requires_grad_(True) for p in _state(net, "ip1").parameters]
    w2, b2 = [p.blob.tensor.clone().requires_grad_(True) for p in _state(net, "ip2").parameters]
    h1 = torch.tanh(x @ w1.T + b1)
    loss = 0.5 * ((h1 @ w2.T + b2 - y) ** 2).sum() / 4
    loss.backward()

    net.forward_backward()
    torch.testing.assert_close(_state(net, "ip1").parameters[0].gradient.tensor, w1.grad)
    torch.testing.assert_close(_state(net, "ip2").parameters[0].gradient.tensor, w2.grad)


def test_softmax_loss_matches_cross_entropy_and_skips_label():
    torch.manual_seed(2)
    x = torch.randn(6, 4)
    labels = torch.randint(0, 3, (6,))
    layers = [
        Layers.memory_data("data", ["x", "label"], {"x": x, "label": labels}, 6),
        Layers.inner_product("ip", ["x"], ["logits"], 3),
        Layers.softmax_loss("loss", ["logits", "label"], weight=2.0),
    ]
    net = Net("softmax", TorchBackend(), layers, check_bp=True)
    net.init()
    assert net.output_blobs["label"].tensor.dtype == torch.int64
    weight = _state(net, "ip").parameters[0]
    w_ref = weight.blob.tensor.clone().requires_grad_(True)
    b_ref = _state(net, "ip").parameters[1].blob.tensor.clone().requires_grad_(True)
    ref_loss = 2.0 * F.cross_entropy(x @ w_ref.T + b_ref, labels)
    ref_loss.backward()

    obj_val = net.forward_backward()
    assert obj_val == pytest.approx(float(ref_loss.item()), rel=1e-5)
    torch.testing.assert_close(weight.gradient.tensor, w_ref.grad)


def test_split_sums_gradients_of_its_consumers():
    torch.manual_seed(3)
    x = torch.randn(4, 3)
    y1 = torch.randn(4, 3)
    y2 = torch.randn(4, 3)
    layers = [
        Layers.memory_data("data", ["x", "y1", "y2"], {"x": x, "y1": y1, "y2": y2}, 4),
        Layers.inner_product("ip", ["x"], ["h"], 3),
        Layers.split("split", "h", ["h1", "h2"]),
        Layers.square_loss("l1", ["h1", "y1"]),
        Layers.square_loss("l2", ["h2", "y2"]),
    ]
    net = Net("split", TorchBackend(), layers, check_bp=True)
    net.init()
    net.forward_backward()

    h = net.output_blobs["h"].tensor
    torch.testing.assert_close(net.output_blobs["h1"].tensor, h)
    expected = (h - y1) / 4 + (h - y2) / 4
    torch.testing.assert_close(net.diff_blobs["h"].tensor, expected)


def test_dropout_masks_in_train_phase_and_passes_through_in_test():
    torch.manual_seed(4)
    x = torch.randn(16, 3)
    y = torch.randn(16, 8)
    layers = [
        Layers.memory_data("data", ["x", "y"], {"x": x, "y": y}, 16),
        Layers.inner_product(
            "ip", ["x"], ["h"], 8, weight_init=ConstantInitializer(0.0), bias_init=ConstantInitializer(1.0)
        ),
        Layers.dropout("drop", ["h"], ratio=0.5),
        Layers.square_loss("loss", ["h", "y"]),
    ]
    backend = TorchBackend()
    net = Net("dropout", backend, layers, check_bp=True)
    assert [layer.name for layer in net.layers] == ["data", "ip", "drop", "loss"]
    assert _state(net, "drop").blobs[0] is net.output_blobs["h"]
    net.init()

    net.forward()
    h = net.output_blobs["h"].tensor.clone()
    assert set(h.unique().tolist()) <= {0.0, 2.0}
    assert (h == 0).any() and (h == 2.0).any()
    mask = _state(net, "drop").extras["masks"][0]
    net.backward()
    torch.testing.assert_close(net.diff_blobs["h"].tensor, mask * (h - y) / 16)
    # the producer's unmasked output is back in place after backward
    assert torch.all(net.output_blobs["h"].tensor == 1.0)

    with backend.use_phase("test"):
        net.forward()
    assert torch.all(net.output_blobs["h"].tensor == 1.0)
    assert backend.phase == "train"


@pytest.mark.parametrize("activation,fn", [("sigmoid", torch.sigmoid), ("tanh", torch.tanh), ("relu", torch.relu)])
def test_dropout_after_activation_matches_autograd(activation, fn):
    torch.manual_seed(5)
    x = torch.randn(6, 3)
    y = torch.randn(6, 2)
    layers = [
        Layers.memory_data("data", ["x", "y"], {"x": x, "y": y}, 6),
        Layers.inner_product("ip1", ["x"], ["h1"], 4, activation=activation),
        Layers.dropout("drop", ["h1"], ratio=0.5),
        Layers.inner_product("ip2", ["h1"], ["h2"], 2),
        Layers.square_loss("loss", ["h2", "y"]),
    ]
    net = Net("drop-act", TorchBackend(), layers, check_bp=True)
    net.init()
    w1, b1 = [p.blob.tensor.clone().requires_grad_(True) for p in _state(net, "ip1").parameters]
    w2, b2 = [p.blob.tensor.clone().requires_grad_(True) for p in _state(net, "ip2").parameters]

    obj_val = net.forward()
    mask = _state(net, "drop").extras["masks"][0].clone()
    net.backward()

    h1 = fn(x @ w1.T + b1)
    ref_loss = 0.5 * (((h1 * mask) @ w2.T + b2 - y) ** 2).sum() / 6
    ref_loss.backward()
    assert obj_val == pytest.approx(float(ref_loss.item()), rel=1e-5)
    torch.testing.assert_close(net.output_blobs["h1"].tensor, h1.detach())
    torch.testing.assert_close(_state(net, "ip1").parameters[0].gradient.tensor, w1.grad)
    torch.testing.assert_close(_state(net, "ip1").parameters[1].gradient.tensor, b1.grad)
    torch.testing.assert_close(_state(net, "ip2").parameters[0].gradient.tensor, w2.grad)


def test_memory_data_shuffles_deterministically_with_seed():
    x = torch.arange(10, dtype=torch.float32).unsqueeze(1)

    def _batches(seed):
        layers = [
            Layers.memory_data("data", ["x"], {"x": x}, 5, shuffle=True, seed=seed),
            Layers.accuracy("acc", ["x", "x"]),
        ]
        net = Net("shuffle", TorchBackend(), layers)
        seen = []
        for _ in range(2):
            net.forward()
            seen.append(net.output_blobs["x"].tensor.clone())
        return torch.cat(seen)

    first = _batches(7)
    torch.testing.assert_close(first, _batches(7))
    assert sorted(first.squeeze(1).tolist()) == list(range(10))


def test_hdf5_data_reads_and_concatenates_files(tmp_path):
    pytest.importorskip("h5py")
    a = write_hdf5_arrays(
        tmp_path / "a.h5", {"x": torch.ones(3, 2, dtype=torch.float64), "y": torch.zeros(3, dtype=torch.int64)}
    )
    b = write_hdf5_arrays(
        tmp_path / "b.h5", {"x": 2 * torch.ones(2, 2, dtype=torch.float64), "y": torch.ones(2, dtype=torch.int64)}
    )
    layers = [
        Layers.hdf5_data("data", ["x", "y"], [a, b], 5),
        Layers.accuracy("acc", ["x", "y"]),
    ]
    net = Net("hdf5", TorchBackend(), layers)
    net.forward()
    x = net.output_blobs["x"].tensor
    assert x.dtype == torch.float32
    assert x[:, 0].tolist() == [1.0, 1.0, 1.0, 2.0, 2.0]
    assert net.output_blobs["y"].tensor.tolist() == [0, 0, 0, 1, 1]
    assert net.get_epoch() == 1


def test_custom_registered_kernel_participates_in_backprop():
    x = torch.randn(4, 3)
    y = torch.zeros(4, 3)
    double = LayerDescriptor(
        name="double",
        kind="test_double",
        bottoms=("h",),
        tops=("h2",),
        caps=Capabilities(backprop=True),
    )
    layers = [
        Layers.memory_data("data", ["x", "y"], {"x": x, "y": y}, 4),
        Layers.split("split", "x", ["h"]),
        double,
        Layers.square_loss("loss", ["h2", "y"]),
    ]
    net = Net("custom", TorchBackend(), layers, check_bp=True)
    net.forward_backward()
    torch.testing.assert_close(net.output_blobs["h2"].tensor, 2 * x)
    # d/dh of 0.5 * sum((2h)^2) / 4 = 4h / 4
    torch.testing.assert_close(net.diff_blobs["h"].tensor, x)


def test_kernel_registration_and_lookup_errors():
    with pytest.raises(ValueError, match="already registered"):
        register_kernel("split")(type("AnotherSplit", (Kernel,), {}))

    layer = LayerDescriptor(name="mystery", kind="mystery", tops=("x",), caps=Capabilities(source=True))
    with pytest.raises(KeyError, match="mystery"):
        Net("unknown", TorchBackend(), [layer])

    with pytest.raises(ValueError):
        TorchBackend(phase="eval")
