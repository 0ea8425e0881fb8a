#!/usr/bin/env python3
import sys
from pathlib import Path

import onnx, numpy as np
from onnx import TensorProto
from onnx import AttributeProto as A

from ir.ir import OpKind, BlobSpec, GraphDef, ModelPair
from ir.errors import ModelLoadError
from passes.passes import canonicalize, dce, topo_sort

# ---------------- utils ----------------

def constant_attr_to_array(n):
    at = {a.name: a for a in n.attribute}
    if "value" in at and at["value"].type == A.TENSOR:
        return onnx.numpy_helper.to_array(at["value"].t)
    if "value_float" in at:
        return np.array(at["value_float"].f, dtype=np.float32)
    if "value_int" in at:
        return np.array(at["value_int"].i, dtype=np.int64)
    if "value_floats" in at:
        return np.array(list(at["value_floats"].floats), dtype=np.float32)
    if "value_ints" in at:
        return np.array(list(at["value_ints"].ints), dtype=np.int64)
    raise ModelLoadError(n.name or "Constant", "Constant node without supported value attribute")

def onnx_dtype_to_ir(elem):
    return {
        TensorProto.FLOAT: "f32", TensorProto.DOUBLE: "f32", TensorProto.FLOAT16: "f32",
        TensorProto.INT32: "i64", TensorProto.INT64: "i64",
    }.get(elem, "unknown")

def as_blob_array(arr, name):
    # the engine holds f32 and i64 tensors only
    if arr.dtype.kind == "f":
        return arr.astype(np.float32, copy=False)
    if arr.dtype.kind in "iu":
        return arr.astype(np.int64, copy=False)
    raise ModelLoadError(name, f"unsupported tensor dtype {arr.dtype}")

def decode_attr(a):
    if a.type == A.FLOAT: return float(a.f)
    if a.type == A.INT: return int(a.i)
    if a.type == A.STRING: return a.s.decode() if isinstance(a.s, bytes) else str(a.s)
    if a.type == A.FLOATS: return [float(x) for x in a.floats]
    if a.type == A.INTS: return [int(x) for x in a.ints]
    if a.type == A.STRINGS: return [s.decode() if isinstance(s, bytes) else str(s) for s in a.strings]
    raise ModelLoadError(a.name, f"unsupported attribute type: {a.type}")

# ---------------- loader ----------------

def dim_to_ir(d):
    # symbolic (batch) dims become 1
    tag = d.WhichOneof("value")
    if tag == "dim_value" and d.dim_value > 0:
        return int(d.dim_value)
    return 1

def node_attrs(n, opset):
    attrs = {a.name: decode_attr(a) for a in n.attribute}
    pad_mode = attrs.pop("auto_pad", "NOTSET")
    if pad_mode not in ("NOTSET", "VALID"):
        raise ModelLoadError(n.name or n.op_type, f"auto_pad={pad_mode} is not supported")
    if n.op_type == "Softmax" and "axis" not in attrs:
        attrs["axis"] = 1 if opset < 13 else -1
    for drop in ("storage_order", "momentum", "spatial", "seed", "training_mode"):
        attrs.pop(drop, None)
    return attrs

def load(onnx_path: str) -> ModelPair:
    try:
        m = onnx.load(onnx_path)
    except Exception as e:
        raise ModelLoadError(onnx_path, f"{type(e).__name__}: {e}") from e
    g = m.graph
    name = g.name or Path(onnx_path).stem
    opset_import = {(ei.domain or ""): ei.version for ei in m.opset_import}
    opset = opset_import.get("", max(opset_import.values(), default=1))

    init = GraphDef(f"{name}_init")
    predict = GraphDef(f"{name}_predict")

    # initializers → fills
    weights = set()
    for t in g.initializer:
        init.add_node(OpKind.GIVEN_TENSOR_FILL, [], [t.name],
                      values=as_blob_array(onnx.numpy_helper.to_array(t), t.name))
        weights.add(t.name)

    for vi in g.input:
        if vi.name in weights:
            continue
        tt = vi.type.tensor_type
        dtype = onnx_dtype_to_ir(tt.elem_type)
        if dtype == "unknown":
            raise ModelLoadError(onnx_path, f"input {vi.name} has unsupported element type {tt.elem_type}")
        predict.add_external_input(vi.name)
        predict.values[vi.name] = BlobSpec(vi.name, dtype, [dim_to_ir(d) for d in tt.shape.dim])
    for vo in g.output:
        predict.add_external_output(vo.name)
    if len(predict.external_inputs) != 1 or len(predict.external_outputs) != 1:
        raise ModelLoadError(onnx_path, "only single-input single-output classifiers are supported")

    # nodes → ops
    for i, n in enumerate(g.node):
        outs = [o for o in n.output if o]
        if not outs:
            continue
        if n.op_type == "Constant":
            init.add_node(OpKind.GIVEN_TENSOR_FILL, [], outs[:1],
                          values=as_blob_array(constant_attr_to_array(n), outs[0]))
            continue
        try:
            kind = OpKind.parse(n.op_type)
        except ValueError as e:
            raise ModelLoadError(onnx_path, str(e)) from e
        ins = [ii for ii in n.input if ii]
        if kind == OpKind.DROPOUT:
            ins = ins[:1]
        if kind == OpKind.BATCH_NORM:
            outs = outs[:1]
        node = predict.add_node(kind, ins, outs, **node_attrs(n, opset))
        node.name = n.name or f"n{i}"

    predict = topo_sort(dce(canonicalize(predict)))
    try:
        predict.check(init)
    except ValueError as e:
        raise ModelLoadError(onnx_path, str(e)) from e
    return ModelPair(init, predict)

# ---------------- cli ----------------

if __name__ == "__main__":
    import argparse
    from frontends.models import save_model

    parser = argparse.ArgumentParser(description="Convert an ONNX classifier into init/predict graph files.")
    parser.add_argument("onnx_path", help="Path to the .onnx model")
    parser.add_argument("-o", "--out-root", default="res", help="Output root directory")
    parser.add_argument("-n", "--name", default=None, help="Model name; defaults to ONNX stem")
    args = parser.parse_args()

    try:
        paths = save_model(load(args.onnx_path), args.out_root, args.name or Path(args.onnx_path).stem)
    except ModelLoadError as e:
        print(f"error: {e}", file=sys.stderr); sys.exit(2)
    except Exception as e:
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr); sys.exit(1)

    for p in paths:
        print("wrote:", p)
