import math
import numpy as np

from ir.ir import OpKind, BlobSpec
from ir.errors import GraphInstantiationError


def _spec(specs, v):
    if v not in specs:
        raise GraphInstantiationError(f"unknown blob: {v}")
    return specs[v]

def _shape(specs, v):
    return list(_spec(specs, v).shape)

def _set_spec(specs, v, shape, dtype="f32"):
    shape = [int(d) for d in shape]
    old = specs.get(v)
    # in-place writers (update rule, iteration counter) must keep the blob's identity
    if old is not None and (old.shape != shape or old.dtype != dtype):
        raise GraphInstantiationError(
            f"blob {v} redeclared as {dtype}{shape}, already {old.dtype}{old.shape}")
    specs[v] = BlobSpec(v, dtype, shape)

def _prod_int(dims):
    p = 1
    for d in dims:
        p *= int(d)
    return p

def _pair(attrs, key, default, rank=2):
    val = attrs.get(key)
    if val is None:
        return [default] * rank
    return [int(x) for x in val]

def _pads(attrs, rank=2):
    pads = attrs.get("pads")
    if pads is None:
        return [0] * (2 * rank)
    return [int(x) for x in pads]

def _window_out(size, k, s, p0, p1, d=1, ceil_mode=False):
    span = size + p0 + p1 - d * (k - 1) - 1
    if span < 0:
        raise GraphInstantiationError(f"window {k} larger than padded input {size + p0 + p1}")
    rnd = math.ceil if ceil_mode else math.floor
    return int(rnd(span / s)) + 1

def reshape_target(in_shape, shape_vec):
    # ONNX semantics: 0 copies dim, -1 infers one dim
    target = []
    neg1_pos = -1
    for i, d in enumerate(shape_vec):
        d = int(d)
        if d == 0:
            if i >= len(in_shape):
                raise GraphInstantiationError("reshape 0 out of range for input rank")
            target.append(in_shape[i])
        elif d == -1:
            if neg1_pos != -1:
                raise GraphInstantiationError("reshape allows only one -1")
            neg1_pos = len(target)
            target.append(-1)
        else:
            target.append(d)
    in_prod = _prod_int(in_shape)
    if neg1_pos != -1:
        known = _prod_int([x for x in target if x != -1])
        if known == 0 or in_prod % known:
            raise GraphInstantiationError(f"cannot reshape {in_shape} to {list(shape_vec)}")
        target[neg1_pos] = in_prod // known
    if _prod_int(target) != in_prod:
        raise GraphInstantiationError(f"cannot reshape {in_shape} to {list(shape_vec)}")
    return target

def _broadcast(a, b):
    try:
        return list(np.broadcast_shapes(tuple(a), tuple(b)))
    except ValueError:
        raise GraphInstantiationError(f"shapes do not broadcast: {a} vs {b}")


def infer_node(node, specs, consts):
    k = node.op
    ins = node.inputs
    outs = node.outputs
    a = node.attrs

    if k in (OpKind.RELU, OpKind.DROPOUT, OpKind.IDENTITY, OpKind.LRN,
             OpKind.SOFTMAX, OpKind.SCALE, OpKind.BATCH_NORM):
        _set_spec(specs, outs[0], _shape(specs, ins[0]))
        if k == OpKind.DROPOUT and len(outs) > 1:
            _set_spec(specs, outs[1], _shape(specs, ins[0]))

    elif k == OpKind.CONV:
        X = _shape(specs, ins[0]); W = _shape(specs, ins[1])
        if len(X) != 4 or len(W) != 4:
            raise GraphInstantiationError(f"Conv expects NCHW input and MCkk weights, got X{X}, W{W}")
        group = int(a.get("group", 1))
        if X[1] != W[1] * group or W[0] % group:
            raise GraphInstantiationError(f"Conv channel mismatch: X{X}, W{W}, group={group}")
        if len(ins) > 2 and _shape(specs, ins[2]) != [W[0]]:
            raise GraphInstantiationError(f"Conv bias must be [{W[0]}], got {_shape(specs, ins[2])}")
        s = _pair(a, "strides", 1); d = _pair(a, "dilations", 1); p = _pads(a)
        H = _window_out(X[2], W[2], s[0], p[0], p[2], d[0])
        Wd = _window_out(X[3], W[3], s[1], p[1], p[3], d[1])
        _set_spec(specs, outs[0], [X[0], W[0], H, Wd])

    elif k in (OpKind.MAX_POOL, OpKind.AVERAGE_POOL):
        X = _shape(specs, ins[0])
        if len(X) != 4:
            raise GraphInstantiationError(f"{k.value} expects NCHW input, got {X}")
        kk = _pair(a, "kernel_shape", 1); s = _pair(a, "strides", 1); p = _pads(a)
        ceil_mode = bool(a.get("ceil_mode", 0))
        H = _window_out(X[2], kk[0], s[0], p[0], p[2], 1, ceil_mode)
        Wd = _window_out(X[3], kk[1], s[1], p[1], p[3], 1, ceil_mode)
        _set_spec(specs, outs[0], [X[0], X[1], H, Wd])

    elif k == OpKind.GLOBAL_AVERAGE_POOL:
        X = _shape(specs, ins[0])
        _set_spec(specs, outs[0], X[:2] + [1] * (len(X) - 2))

    elif k == OpKind.GEMM:
        A = _shape(specs, ins[0]); B = _shape(specs, ins[1])
        if len(A) != 2 or len(B) != 2:
            raise GraphInstantiationError(f"Gemm rank-2 expected, got A{A}, B{B}")
        M, K = A[::-1] if a.get("transA", 0) else A
        Kb, N = B[::-1] if a.get("transB", 0) else B
        if K != Kb:
            raise GraphInstantiationError(f"Gemm K mismatch: {K} vs {Kb}")
        if len(ins) > 2:
            _broadcast([M, N], _shape(specs, ins[2]))
        _set_spec(specs, outs[0], [M, N])

    elif k == OpKind.MATMUL:
        A = _shape(specs, ins[0]); B = _shape(specs, ins[1])
        if len(A) < 2 or len(B) != 2:
            raise GraphInstantiationError(f"MatMul expects A[..., K] @ B[K, N], got A{A}, B{B}")
        if A[-1] != B[0]:
            raise GraphInstantiationError(f"MatMul K mismatch: {A[-1]} vs {B[0]}")
        _set_spec(specs, outs[0], A[:-1] + [B[1]])

    elif k in (OpKind.ADD, OpKind.MUL):
        _set_spec(specs, outs[0], _broadcast(_shape(specs, ins[0]), _shape(specs, ins[1])))

    elif k == OpKind.FLATTEN:
        X = _shape(specs, ins[0])
        axis = int(a.get("axis", 1))
        if axis < 0:
            axis += len(X)
        _set_spec(specs, outs[0], [_prod_int(X[:axis]), _prod_int(X[axis:])])

    elif k == OpKind.RESHAPE:
        in_shape = _shape(specs, ins[0])
        if "shape" in a:
            shape_vec = a["shape"]
        elif len(ins) > 1 and ins[1] in consts:
            shape_vec = np.asarray(consts[ins[1]]).reshape(-1).tolist()
        else:
            raise GraphInstantiationError("reshape shape must be constant")
        _set_spec(specs, outs[0], reshape_target(in_shape, shape_vec))

    elif k == OpKind.CONCAT:
        shapes = [_shape(specs, i) for i in ins]
        axis = int(a.get("axis", 1))
        if axis < 0:
            axis += len(shapes[0])
        out = list(shapes[0])
        for s in shapes[1:]:
            if len(s) != len(out) or any(x != y for j, (x, y) in enumerate(zip(s, out)) if j != axis):
                raise GraphInstantiationError(f"Concat shape mismatch: {shapes}")
            out[axis] += s[axis]
        _set_spec(specs, outs[0], out)

    elif k == OpKind.CHANNEL_SELECT:
        X = _shape(specs, ins[0])
        axis = int(a.get("axis", 1)); ch = int(a["channel"])
        if not 0 <= ch < X[axis]:
            raise GraphInstantiationError(f"channel {ch} out of range for {ins[0]}{X}")
        out = list(X)
        out[axis] = 1
        _set_spec(specs, outs[0], out)

    elif k == OpKind.REDUCE_MEAN:
        X = _shape(specs, ins[0])
        axes = [ax % len(X) for ax in a.get("axes", range(len(X)))]
        keep = bool(a.get("keepdims", 1))
        out = [1 if j in axes else d for j, d in enumerate(X)] if keep else \
              [d for j, d in enumerate(X) if j not in axes]
        _set_spec(specs, outs[0], out)

    elif k == OpKind.LABEL_CROSS_ENTROPY:
        X = _shape(specs, ins[0]); L = _shape(specs, ins[1])
        if len(X) != 2 or _prod_int(L) not in (1, X[0]):
            raise GraphInstantiationError(f"LabelCrossEntropy expects X[N, D] and N labels, got X{X}, label{L}")
        _set_spec(specs, outs[0], [X[0]])

    elif k == OpKind.AVERAGED_LOSS:
        _shape(specs, ins[0])
        _set_spec(specs, outs[0], [1])

    elif k == OpKind.CONSTANT_FILL:
        dtype = a.get("dtype", "f32")
        shape = _shape(specs, ins[0]) if ins else a.get("shape", [1])
        _set_spec(specs, outs[0], shape, dtype)

    elif k == OpKind.UNIFORM_FILL:
        _set_spec(specs, outs[0], a["shape"])

    elif k == OpKind.GIVEN_TENSOR_FILL:
        values = np.asarray(a["values"])
        _set_spec(specs, outs[0], list(values.shape), "i64" if values.dtype.kind in "iu" else "f32")

    elif k == OpKind.ITER:
        _set_spec(specs, outs[0], _shape(specs, ins[0]), "i64")

    elif k == OpKind.LEARNING_RATE:
        _shape(specs, ins[0])
        _set_spec(specs, outs[0], [1])

    elif k == OpKind.WEIGHTED_SUM:
        if len(ins) % 2:
            raise GraphInstantiationError("WeightedSum expects (X, weight) pairs")
        X0 = _shape(specs, ins[0])
        for x, w in zip(ins[0::2], ins[1::2]):
            if _shape(specs, x) != X0:
                raise GraphInstantiationError(f"WeightedSum shape mismatch: {x}{_shape(specs, x)} vs {X0}")
            if _spec(specs, w).numel() != 1:
                raise GraphInstantiationError(f"WeightedSum weight {w} must hold a single value")
        _set_spec(specs, outs[0], X0)

    elif k == OpKind.GRADIENT:
        if len(ins) != int(a["n_inputs"]) + int(a["n_outputs"]) + len(a["grad_outputs"]):
            raise GraphInstantiationError("gradient node lost its forward operands")
        for idx, o in zip(a["grad_inputs"], outs):
            src = _spec(specs, ins[idx])
            _set_spec(specs, o, src.shape, src.dtype)

    else:
        raise GraphInstantiationError(f"unhandled op in shape_check: {k.value}")


def shape_check(graph, specs, consts=None):
    """Infer the BlobSpec of every blob ``graph`` writes, in node order.

    ``specs`` holds what is already known (external inputs, blobs produced by
    the paired init graph) and is extended in place. ``consts`` maps blob names
    to values that are fixed at instantiation time, used for Reshape targets.
    """
    consts = consts or {}
    for name in graph.external_inputs:
        _spec(specs, name)
    for node in graph.nodes:
        try:
            infer_node(node, specs, consts)
        except (KeyError, TypeError, ValueError) as e:
            raise GraphInstantiationError(f"{graph.name}: bad {node.op.value} node {node.name}: {e}") from e
    for o in graph.external_outputs:
        _spec(specs, o)
    return specs
