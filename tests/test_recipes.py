import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blobnet  # noqa: E402
from blobnet.initializers import GaussianInitializer  # noqa: E402
from blobnet.regularizers import L1Regularizer  # noqa: E402


CONFIG = [
    {"type": "memory_data", "name": "data", "tops": ["x", "y"], "batch_size": 4},
    {
        "type": "inner_product",
        "name": "ip",
        "bottoms": ["x"],
        "tops": ["h"],
        "output_dim": 2,
        "activation": "relu",
        "weight_init": {"type": "gaussian", "std": 0.01},
        "weight_regu": {"type": "l1", "coefficient": 0.5},
    },
    {"type": "square_loss", "name": "loss", "bottoms": ["h", "y"]},
]


def test_descriptors_from_config_builds_a_runnable_net():
    data = {"x": torch.randn(8, 3), "y": torch.randn(8, 2)}
    layers = blobnet.descriptors_from_config(CONFIG, data=data)
    assert [layer.kind for layer in layers] == ["memory_data", "inner_product", "square_loss"]

    ip = layers[1]
    assert ip.activation == "relu"
    assert isinstance(ip.options["weight_init"], GaussianInitializer)
    assert ip.options["weight_init"].std == 0.01
    assert isinstance(ip.options["weight_regu"], L1Regularizer)
    assert ip.options["weight_regu"].coefficient == 0.5

    net = blobnet.Net("from-config", blobnet.TorchBackend(), layers, check_bp=True)
    net.init()
    assert net.forward_backward() > 0


def test_descriptors_from_config_errors():
    with pytest.raises(KeyError, match="Unknown layer type"):
        blobnet.descriptors_from_config([{"type": "conv", "name": "c"}])
    with pytest.raises(KeyError, match="missing 'name'"):
        blobnet.descriptors_from_config([{"type": "split", "bottom": "x", "tops": ["a"]}])
    with pytest.raises(ValueError, match="in-memory data"):
        blobnet.descriptors_from_config(CONFIG[:1])
    bad_init = dict(CONFIG[1], weight_init={"type": "orthogonal"})
    with pytest.raises(KeyError, match="Unknown initializer"):
        blobnet.descriptors_from_config([bad_init])


def test_trainer_kwargs_from_config():
    cfg = {"max_iter": 10, "lr": 0.1, "log_every": 5, "momentum": 0.5, "unrelated": True}
    kwargs = blobnet.trainer_kwargs_from_config(cfg)
    assert kwargs == {"max_iter": 10, "lr": 0.1, "log_every": 5, "momentum": 0.5}

    with pytest.raises(KeyError, match="max_iter"):
        blobnet.trainer_kwargs_from_config({"lr": 0.1, "log_every": 1})


def test_mlp_classifier_layers_assemble_with_dropout():
    x, y = blobnet.synthesize_classification(32, 5, 4, seed=2)
    data = blobnet.Layers.memory_data("data", ["data", "label"], {"data": x, "label": y}, 8)
    layers = blobnet.mlp_classifier_layers(4, hidden=(8, 6), dropout=0.25, data_layer=data, weight_std=0.1)
    net = blobnet.Net("mlp", blobnet.TorchBackend(), layers, check_bp=True)
    names = [layer.name for layer in net.layers]
    assert names == ["data", "ip1", "drop1", "ip2", "drop2", "logits", "loss", "acc"]
    assert net.output_blobs["logits"].shape == (8, 4)
    net.init()
    assert net.forward() > 0


@pytest.mark.parametrize("activation,fn", [("sigmoid", torch.sigmoid), ("tanh", torch.tanh)])
def test_mlp_classifier_with_dropout_matches_autograd(activation, fn):
    torch.manual_seed(3)
    x, y = blobnet.synthesize_classification(8, 5, 3, seed=4)
    data = blobnet.Layers.memory_data("data", ["data", "label"], {"data": x, "label": y}, 8)
    layers = blobnet.mlp_classifier_layers(3, hidden=(6,), activation=activation, dropout=0.5, data_layer=data)
    net = blobnet.Net("mlp-drop", blobnet.TorchBackend(), layers, check_bp=True)
    net.init()
    states = dict(zip([layer.name for layer in net.layers], net.states))
    w1, b1 = [p.blob.tensor.clone().requires_grad_(True) for p in states["ip1"].parameters]
    w2, b2 = [p.blob.tensor.clone().requires_grad_(True) for p in states["logits"].parameters]

    net.forward()
    mask = states["drop1"].extras["masks"][0].clone()
    net.backward()

    batch = net.output_blobs["data"].tensor
    labels = net.output_blobs["label"].tensor
    hidden = fn(batch @ w1.T + b1) * mask
    ref_loss = torch.nn.functional.cross_entropy(hidden @ w2.T + b2, labels)
    ref_loss.backward()
    torch.testing.assert_close(states["ip1"].parameters[0].gradient.tensor, w1.grad)
    torch.testing.assert_close(states["ip1"].parameters[1].gradient.tensor, b1.grad)
    torch.testing.assert_close(states["logits"].parameters[0].gradient.tensor, w2.grad)
