#!/usr/bin/env python3
import onnx, numpy as np
from onnx import helper, TensorProto
from pathlib import Path

# AlexNet-shaped miniature: conv1 → relu → norm → pool1 → conv2 → relu → pool5 → fc → prob
# Split layers worth trying: conv1, norm1, pool1, conv2, pool5.
rng = np.random.default_rng(0)
S = 32
C1, C2, CLASSES = 8, 16, 10

def param(name, *shape, scale=0.1):
    arr = (rng.standard_normal(shape) * scale).astype("float32")
    return helper.make_tensor(name, TensorProto.FLOAT, arr.shape, arr.ravel())

data = helper.make_tensor_value_info("data", TensorProto.FLOAT, ["N", 3, S, S])
prob = helper.make_tensor_value_info("prob", TensorProto.FLOAT, ["N", CLASSES])

inits = [
    param("conv1_w", C1, 3, 3, 3), param("conv1_b", C1),
    param("conv2_w", C2, C1, 3, 3), param("conv2_b", C2),
    param("fc_w", CLASSES, C2 * (S // 4) * (S // 4), scale=0.01), param("fc_b", CLASSES),
]
n = []
n += [helper.make_node("Conv", ["data", "conv1_w", "conv1_b"], ["conv1"], kernel_shape=[3, 3], pads=[1, 1, 1, 1])]
n += [helper.make_node("Relu", ["conv1"], ["relu1"])]
n += [helper.make_node("LRN", ["relu1"], ["norm1"], size=5, alpha=1e-4, beta=0.75, bias=1.0)]
n += [helper.make_node("MaxPool", ["norm1"], ["pool1"], kernel_shape=[2, 2], strides=[2, 2])]
n += [helper.make_node("Conv", ["pool1", "conv2_w", "conv2_b"], ["conv2"], kernel_shape=[3, 3], pads=[1, 1, 1, 1])]
n += [helper.make_node("Relu", ["conv2"], ["relu2"])]
n += [helper.make_node("MaxPool", ["relu2"], ["pool5"], kernel_shape=[2, 2], strides=[2, 2])]
n += [helper.make_node("Flatten", ["pool5"], ["flat"], axis=1)]
n += [helper.make_node("Dropout", ["flat"], ["drop"])]
n += [helper.make_node("Gemm", ["drop", "fc_w", "fc_b"], ["fc"], transB=1)]
n += [helper.make_node("Softmax", ["fc"], ["prob"], axis=1)]

g = helper.make_graph(n, "tiny_cnn", [data], [prob], initializer=inits)
m = helper.make_model(g, opset_imports=[helper.make_opsetid("", 13)], ir_version=8)
onnx.checker.check_model(m)

out_dir = Path(__file__).resolve().parent / "builds"; out_dir.mkdir(parents=True, exist_ok=True)
onnx.save(m, out_dir / "tiny_cnn.onnx")
(out_dir / "tiny_cnn_classes.txt").write_text("".join(f"class_{i}\n" for i in range(CLASSES)))
print("wrote:", out_dir / "tiny_cnn.onnx")
