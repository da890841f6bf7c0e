"""
Demo: train a small fully connected classifier on a synthetic dataset.

Two nets are assembled on one backend. They share weights through matching
layer names. The train net feeds shuffled batches and runs dropout. The test
net reads a held-out set and reports accuracy.
"""

from __future__ import annotations

import logging
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import blobnet
from blobnet import Layers

MODEL = {
    "num_features": 8,
    "num_classes": 4,
    "hidden": (32, 16),
    "dropout": 0.1,
}

TRAINING = {
    "seed": 7,
    "max_iter": 300,
    "lr": 0.05,
    "momentum": 0.9,
    "regu_coef": 5e-4,
    "log_every": 50,
    "val_every": 100,
    "val_iters": 4,
    "grad_summary_top_k": 3,
}

DATA = {
    "train_samples": 1024,
    "test_samples": 256,
    "batch_size": 64,
    # Optional: write the synthetic arrays to HDF5 and read them back through hdf5_data.
    "hdf5_path": None,
}


def build_nets(backend: blobnet.TorchBackend):
    x, y = blobnet.synthesize_classification(
        DATA["train_samples"], MODEL["num_features"], MODEL["num_classes"], seed=TRAINING["seed"]
    )
    tx, ty = blobnet.synthesize_classification(
        DATA["test_samples"], MODEL["num_features"], MODEL["num_classes"], seed=TRAINING["seed"]
    )

    if DATA["hdf5_path"]:
        path = blobnet.data_helper.write_hdf5_arrays(DATA["hdf5_path"], {"data": x, "label": y})
        train_data = Layers.hdf5_data("data", ["data", "label"], path, DATA["batch_size"], shuffle=True)
    else:
        train_data = Layers.memory_data(
            "data", ["data", "label"], {"data": x, "label": y}, DATA["batch_size"], shuffle=True
        )
    test_data = Layers.memory_data("data", ["data", "label"], {"data": tx, "label": ty}, DATA["batch_size"])

    train_net = blobnet.Net(
        "train",
        backend,
        blobnet.mlp_classifier_layers(
            MODEL["num_classes"], hidden=MODEL["hidden"], dropout=MODEL["dropout"], data_layer=train_data
        ),
        check_bp=True,
    )
    test_net = blobnet.Net(
        "test",
        backend,
        blobnet.mlp_classifier_layers(MODEL["num_classes"], hidden=MODEL["hidden"], data_layer=test_data),
    )
    return train_net, test_net


def run() -> None:
    logging.basicConfig(level=logging.INFO)
    backend = blobnet.TorchBackend()
    train_net, test_net = build_nets(backend)
    print(train_net.describe())

    with train_net, test_net:
        kwargs = blobnet.trainer_kwargs_from_config(TRAINING, val_net=test_net)
        history = blobnet.train_net(train_net, **kwargs)
        print(f"objective: first={history[0]:.4f} last={history[-1]:.4f}")
        stats = blobnet.Trainer.evaluate(test_net, iters=TRAINING["val_iters"])
        print(f"test accuracy: {stats['acc-accuracy'] * 100:.2f}%")

    print("Done.")


if __name__ == "__main__":
    run()
