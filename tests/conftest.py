"""Pytest fixtures: tiny ONNX classifiers and hand-built graph pairs."""


import numpy as np
import onnx
import pytest
from onnx import helper, TensorProto

from ir.ir import OpKind, BlobSpec, GraphDef, ModelPair

TOY_W = np.array([[1.0, 2.0, -1.0],
                  [0.5, -0.5, 0.0]], dtype=np.float32).reshape(2, 3, 1, 1)
TOY_B = np.array([0.1, -0.2], dtype=np.float32)
TOY_FC = np.array([[1.0, -1.0, 0.5],
                   [-1.0, 1.0, 0.25]], dtype=np.float32)
TOY_CLASSES = ["ant", "bee", "cat"]


def _tensor(name, arr):
    return helper.make_tensor(name, TensorProto.FLOAT, arr.shape, arr.ravel())


def _save(graph, path):
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)], ir_version=8)
    onnx.checker.check_model(model)
    onnx.save(model, path)
    return path


def _write_toy(path):
    nodes = [
        helper.make_node("Conv", ["data", "conv_w", "conv_b"], ["mid"], kernel_shape=[1, 1]),
        helper.make_node("GlobalAveragePool", ["mid"], ["pool"]),
        helper.make_node("Flatten", ["pool"], ["flat"], axis=1),
        helper.make_node("Gemm", ["flat", "fc_w", "fc_b"], ["logits"]),
        helper.make_node("Softmax", ["logits"], ["prob"], axis=1),
    ]
    graph = helper.make_graph(
        nodes, "toy",
        [helper.make_tensor_value_info("data", TensorProto.FLOAT, [1, 3, 2, 2])],
        [helper.make_tensor_value_info("prob", TensorProto.FLOAT, [1, 3])],
        initializer=[_tensor("conv_w", TOY_W), _tensor("conv_b", TOY_B),
                     _tensor("fc_w", TOY_FC), _tensor("fc_b", np.zeros(3, np.float32))],
    )
    return _save(graph, path)


def _write_tiny_cnn(path):
    rng = np.random.default_rng(0)

    def param(name, *shape, scale=0.1):
        return _tensor(name, (rng.standard_normal(shape) * scale).astype(np.float32))

    nodes = [
        helper.make_node("Conv", ["data", "conv1_w", "conv1_b"], ["conv1"], kernel_shape=[3, 3], pads=[1, 1, 1, 1]),
        helper.make_node("Relu", ["conv1"], ["relu1"]),
        helper.make_node("LRN", ["relu1"], ["norm1"], size=3, alpha=1e-2, beta=0.75, bias=1.0),
        helper.make_node("MaxPool", ["norm1"], ["pool1"], kernel_shape=[2, 2], strides=[2, 2]),
        helper.make_node("Conv", ["pool1", "conv2_w", "conv2_b"], ["conv2"], kernel_shape=[3, 3],
                         pads=[1, 1, 1, 1], strides=[2, 2]),
        helper.make_node("Relu", ["conv2"], ["relu2"]),
        helper.make_node("AveragePool", ["relu2"], ["pool5"], kernel_shape=[2, 2], pads=[0, 0, 1, 1]),
        helper.make_node("Flatten", ["pool5"], ["flat"], axis=1),
        helper.make_node("Dropout", ["flat"], ["drop"]),
        helper.make_node("Gemm", ["drop", "fc_w", "fc_b"], ["fc"], transB=1),
        helper.make_node("Softmax", ["fc"], ["prob"], axis=1),
    ]
    graph = helper.make_graph(
        nodes, "tiny_cnn",
        [helper.make_tensor_value_info("data", TensorProto.FLOAT, ["N", 3, 8, 8])],
        [helper.make_tensor_value_info("prob", TensorProto.FLOAT, ["N", 5])],
        initializer=[param("conv1_w", 4, 3, 3, 3), param("conv1_b", 4),
                     param("conv2_w", 6, 4, 3, 3), param("conv2_b", 6),
                     param("fc_w", 5, 6 * 2 * 2), param("fc_b", 5)],
    )
    return _save(graph, path)


@pytest.fixture
def toy_root(tmp_path):
    """A model root holding ``toy.onnx`` and its label file."""
    _write_toy(tmp_path / "toy.onnx")
    (tmp_path / "toy_classes.txt").write_text("".join(c + "\n" for c in TOY_CLASSES))
    return tmp_path


@pytest.fixture
def toy_onnx(toy_root):
    return toy_root / "toy.onnx"


@pytest.fixture
def tiny_cnn_onnx(tmp_path):
    return _write_tiny_cnn(tmp_path / "tiny_cnn.onnx")


@pytest.fixture
def toy_weights():
    return TOY_W, TOY_B


def _pair(name, predict_nodes, weights, input_shape, output):
    init = GraphDef(f"{name}_init")
    for blob, value in weights.items():
        init.add_node(OpKind.GIVEN_TENSOR_FILL, [], [blob], values=np.asarray(value, dtype=np.float32))
    predict = GraphDef(f"{name}_predict", external_inputs=["x"], external_outputs=[output])
    predict.values["x"] = BlobSpec("x", "f32", list(input_shape))
    for op, ins, outs, attrs in predict_nodes:
        predict.add_node(op, ins, outs, **attrs)
    return ModelPair(init, predict)


@pytest.fixture
def square_pair():
    """y = x * x on a [1, 1, 2, 2] input."""
    return _pair("square", [(OpKind.MUL, ["x", "x"], ["y"], {})], {}, [1, 1, 2, 2], "y")


@pytest.fixture
def branch_pair():
    """y = x * w + x, so ``x`` feeds two nodes."""
    w = np.full((1, 2, 2, 2), 3.0, dtype=np.float32)
    return _pair("branch", [
        (OpKind.MUL, ["x", "w"], ["a"], {}),
        (OpKind.ADD, ["a", "x"], ["y"], {}),
    ], {"w": w}, [1, 2, 2, 2], "y")


@pytest.fixture
def chain_pair():
    """conv -> relu -> pool -> fc -> softmax with fixed random weights."""
    rng = np.random.default_rng(1)
    weights = {
        "cw": rng.standard_normal((4, 3, 3, 3)) * 0.3,
        "cb": np.zeros(4),
        "fw": rng.standard_normal((4, 3)) * 0.5,
    }
    return _pair("chain", [
        (OpKind.CONV, ["x", "cw", "cb"], ["conv"], {"kernel_shape": [3, 3], "pads": [1, 1, 1, 1]}),
        (OpKind.RELU, ["conv"], ["relu"], {}),
        (OpKind.MAX_POOL, ["relu"], ["pool"], {"kernel_shape": [2, 2], "strides": [2, 2]}),
        (OpKind.GLOBAL_AVERAGE_POOL, ["pool"], ["gap"], {}),
        (OpKind.FLATTEN, ["gap"], ["flat"], {"axis": 1}),
        (OpKind.GEMM, ["flat", "fw"], ["fc"], {}),
        (OpKind.SOFTMAX, ["fc"], ["prob"], {"axis": 1}),
    ], weights, [1, 3, 4, 4], "prob")
