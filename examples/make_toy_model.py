#!/usr/bin/env python3
import onnx, numpy as np
from onnx import helper, TensorProto
from pathlib import Path

# Smallest dreamable classifier:
#
#     data ──▶ Conv 1x1 ──▶ mid ──▶ GlobalAveragePool ──▶ Flatten ──▶ Gemm ──▶ Softmax ──▶ prob
#
# "mid" is a 1-node linear layer with fixed weights, so one naive step on
# channel c moves every pixel of input channel k by lr * W[c, k] / (H * W).

W = np.array([[1.0, 2.0, -1.0],
              [0.5, -0.5, 0.0]], dtype=np.float32).reshape(2, 3, 1, 1)
b = np.array([0.1, -0.2], dtype=np.float32)
Wfc = np.array([[1.0, -1.0, 0.5],
                [-1.0, 1.0, 0.25]], dtype=np.float32)  # [2 channels, 3 classes]
bfc = np.zeros(3, dtype=np.float32)

data = helper.make_tensor_value_info("data", TensorProto.FLOAT, [1, 3, 2, 2])
prob = helper.make_tensor_value_info("prob", TensorProto.FLOAT, [1, 3])

inits = [
    helper.make_tensor("conv_w", TensorProto.FLOAT, W.shape, W.ravel()),
    helper.make_tensor("conv_b", TensorProto.FLOAT, b.shape, b.ravel()),
    helper.make_tensor("fc_w", TensorProto.FLOAT, Wfc.shape, Wfc.ravel()),
    helper.make_tensor("fc_b", TensorProto.FLOAT, bfc.shape, bfc.ravel()),
]
n = []
n += [helper.make_node("Conv", ["data", "conv_w", "conv_b"], ["mid"], kernel_shape=[1, 1])]
n += [helper.make_node("GlobalAveragePool", ["mid"], ["pool"])]
n += [helper.make_node("Flatten", ["pool"], ["flat"], axis=1)]
n += [helper.make_node("Gemm", ["flat", "fc_w", "fc_b"], ["logits"])]
n += [helper.make_node("Softmax", ["logits"], ["prob"], axis=1)]

g = helper.make_graph(n, "toy", [data], [prob], initializer=inits)
m = helper.make_model(g, opset_imports=[helper.make_opsetid("", 13)], ir_version=8)
onnx.checker.check_model(m)

out_dir = Path(__file__).resolve().parent / "builds"; out_dir.mkdir(parents=True, exist_ok=True)
onnx.save(m, out_dir / "toy.onnx")
(out_dir / "toy_classes.txt").write_text("ant\nbee\ncat\n")
print("wrote:", out_dir / "toy.onnx")
