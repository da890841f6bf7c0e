import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blobnet  # noqa: E402
from blobnet.diagnostics import GradientSummary, StatRecord  # noqa: E402


def _trained_step_net():
    torch.manual_seed(7)
    x = torch.randn(4, 3)
    y = torch.randn(4, 2)
    layers = [
        blobnet.Layers.memory_data("data", ["x", "y"], {"x": x, "y": y}, 4),
        blobnet.Layers.inner_product("ip", ["x"], ["h"], 2),
        blobnet.Layers.square_loss("loss", ["h", "y"]),
    ]
    net = blobnet.Net("diag", blobnet.TorchBackend(), layers)
    net.init()
    net.forward_backward()
    return net


def test_summarize_gradients_reports_parameters_and_blobs():
    net = _trained_step_net()
    summary = blobnet.summarize_gradients(net)

    names = {rec.name for rec in summary.parameters}
    assert names == {"ip.weight", "ip.bias"}
    assert [rec.name for rec in summary.blobs] == ["h"]
    assert sorted(summary.detached) == ["x", "y"]

    weight_rec = [rec for rec in summary.parameters if rec.name == "ip.weight"][0]
    grad = net.states[1].parameters[0].gradient.tensor
    assert weight_rec.l2 == pytest.approx(float(grad.norm()), rel=1e-5)
    assert weight_rec.max_abs == pytest.approx(float(grad.abs().max()), rel=1e-5)

    l2s = [rec.l2 for rec in summary.parameters]
    assert l2s == sorted(l2s, reverse=True)


def test_summary_text_respects_top_k():
    net = _trained_step_net()
    text = blobnet.summarize_gradients(net).to_text(top_k=1)
    lines = text.splitlines()
    assert lines[0] == "Parameter gradients:"
    assert lines[2] == "Blob gradients:"
    assert lines[-1] == "Blobs without gradient: x, y"

    assert blobnet.summarize_gradients(net, top_k=1).parameters[0].name in ("ip.weight", "ip.bias")


def test_plot_gradient_heatmap():
    matplotlib = pytest.importorskip("matplotlib")
    matplotlib.use("Agg")
    net = _trained_step_net()
    summary = blobnet.summarize_gradients(net)
    ax = blobnet.plot_gradient_heatmap(summary, metric="mean_abs")
    assert ax.get_title() == "Parameters gradient mean_abs"

    with pytest.raises(ValueError):
        blobnet.plot_gradient_heatmap(GradientSummary(parameters=[], blobs=[], detached=[]))


def test_empty_bucket_records_zeros():
    summary = GradientSummary(
        parameters=[StatRecord(name="w", l2=0.0, max_abs=0.0, mean_abs=0.0, zero_frac=1.0)],
        blobs=[],
        detached=[],
    )
    assert "zero%=100.00" in summary.to_text()
