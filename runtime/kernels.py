# Forward kernels: (inputs, attrs, workspace) -> outputs, all numpy on the host.
import numpy as np

from passes.shape_check import reshape_target

F32 = np.float32


def _pair(a, key, default):
    v = a.get(key)
    return [default, default] if v is None else [int(x) for x in v]

def _pads(a):
    p = a.get("pads")
    return [0, 0, 0, 0] if p is None else [int(x) for x in p]

def out_size(size, k, s, p0, p1, d=1, ceil_mode=False):
    span = size + p0 + p1 - d * (k - 1) - 1
    return (-(-span // s) if ceil_mode else span // s) + 1

def pool_geometry(x_shape, a):
    """Output size and the padding (incl. the extra ceil_mode rows) of a 2-D window op."""
    kh, kw = _pair(a, "kernel_shape", 1)
    sh, sw = _pair(a, "strides", 1)
    dh, dw = _pair(a, "dilations", 1)
    t, l, b, r = _pads(a)
    ceil_mode = bool(a.get("ceil_mode", 0))
    H, W = x_shape[2], x_shape[3]
    Ho = out_size(H, kh, sh, t, b, dh, ceil_mode)
    Wo = out_size(W, kw, sw, l, r, dw, ceil_mode)
    # ceil_mode may need windows past the explicit padding
    b_extra = max(0, (Ho - 1) * sh + dh * (kh - 1) + 1 - (H + t + b))
    r_extra = max(0, (Wo - 1) * sw + dw * (kw - 1) + 1 - (W + l + r))
    return (kh, kw), (sh, sw), (dh, dw), (t, l, b + b_extra, r + r_extra), (Ho, Wo)

def pad_nchw(x, pads, value=0.0):
    t, l, b, r = pads
    return np.pad(x, ((0, 0), (0, 0), (t, b), (l, r)), constant_values=value)

def window(xp, i, j, strides, dilations, out_hw):
    sh, sw = strides
    Ho, Wo = out_hw
    hi, wj = i * dilations[0], j * dilations[1]
    return xp[:, :, hi:hi + sh * (Ho - 1) + 1:sh, wj:wj + sw * (Wo - 1) + 1:sw]

def im2col(x, a, kernel):
    _, strides, dilations, pads, out_hw = pool_geometry(x.shape, dict(a, kernel_shape=kernel, ceil_mode=0))
    xp = pad_nchw(x, pads)
    N, C = x.shape[:2]
    kh, kw = kernel
    cols = np.empty((N, C, kh, kw) + tuple(out_hw), dtype=x.dtype)
    for i in range(kh):
        for j in range(kw):
            cols[:, :, i, j] = window(xp, i, j, strides, dilations, out_hw)
    return cols, out_hw


def conv(ins, a, ws):
    x, w = ins[0], ins[1]
    group = int(a.get("group", 1))
    M, Cg, kh, kw = w.shape
    cols, (Ho, Wo) = im2col(x, a, (kh, kw))
    N = x.shape[0]
    Mg = M // group
    y = np.empty((N, M, Ho * Wo), dtype=F32)
    for g in range(group):
        cg = cols[:, g * Cg:(g + 1) * Cg].reshape(N, Cg * kh * kw, Ho * Wo)
        wg = w[g * Mg:(g + 1) * Mg].reshape(Mg, Cg * kh * kw)
        y[:, g * Mg:(g + 1) * Mg] = np.einsum("mk,nkl->nml", wg, cg, optimize=True)
    y = y.reshape(N, M, Ho, Wo)
    if len(ins) > 2:
        y += ins[2].reshape(1, M, 1, 1)
    return [y]

def relu(ins, a, ws):
    return [np.maximum(ins[0], 0).astype(F32, copy=False)]

def max_pool(ins, a, ws):
    x = ins[0]
    kernel, strides, dilations, pads, out_hw = pool_geometry(x.shape, a)
    xp = pad_nchw(x, pads, -np.inf)
    y = np.full(x.shape[:2] + tuple(out_hw), -np.inf, dtype=F32)
    for i in range(kernel[0]):
        for j in range(kernel[1]):
            np.maximum(y, window(xp, i, j, strides, dilations, out_hw), out=y)
    return [y]

def pool_counts(x_shape, a):
    """How many elements each average-pool window divides by."""
    kernel, strides, dilations, pads, out_hw = pool_geometry(x_shape, a)
    mask = np.ones((1, 1) + tuple(x_shape[2:]), dtype=F32)
    t, l, b, r = _pads(a)
    if a.get("count_include_pad", 0):
        mask = pad_nchw(mask, (t, l, b, r), 1.0)
        extra = (0, 0, pads[2] - b, pads[3] - r)
    else:
        extra = pads
    mp = pad_nchw(mask, extra)
    counts = np.zeros((1, 1) + tuple(out_hw), dtype=F32)
    for i in range(kernel[0]):
        for j in range(kernel[1]):
            counts += window(mp, i, j, strides, dilations, out_hw)
    return counts

def average_pool(ins, a, ws):
    x = ins[0]
    kernel, strides, dilations, pads, out_hw = pool_geometry(x.shape, a)
    xp = pad_nchw(x, pads)
    y = np.zeros(x.shape[:2] + tuple(out_hw), dtype=F32)
    for i in range(kernel[0]):
        for j in range(kernel[1]):
            y += window(xp, i, j, strides, dilations, out_hw)
    return [y / pool_counts(x.shape, a)]

def global_average_pool(ins, a, ws):
    x = ins[0]
    return [x.mean(axis=tuple(range(2, x.ndim)), keepdims=True)]

def gemm_operands(ins, a):
    A = ins[0].T if a.get("transA", 0) else ins[0]
    B = ins[1].T if a.get("transB", 0) else ins[1]
    return A, B

def gemm(ins, a, ws):
    A, B = gemm_operands(ins, a)
    y = float(a.get("alpha", 1.0)) * (A @ B)
    if len(ins) > 2:
        y = y + float(a.get("beta", 1.0)) * ins[2]
    return [y.astype(F32, copy=False)]

def matmul(ins, a, ws):
    return [np.matmul(ins[0], ins[1])]

def add(ins, a, ws):
    return [ins[0] + ins[1]]

def mul(ins, a, ws):
    return [ins[0] * ins[1]]

def flatten(ins, a, ws):
    x = ins[0]
    axis = int(a.get("axis", 1)) % max(x.ndim, 1)
    return [x.reshape(int(np.prod(x.shape[:axis])), -1)]

def reshape(ins, a, ws):
    x = ins[0]
    shape_vec = a["shape"] if "shape" in a else ins[1].reshape(-1).tolist()
    return [x.reshape(reshape_target(list(x.shape), shape_vec))]

def softmax(ins, a, ws):
    x = ins[0]
    axis = int(a.get("axis", -1))
    e = np.exp(x - x.max(axis=axis, keepdims=True))
    return [e / e.sum(axis=axis, keepdims=True)]

def concat(ins, a, ws):
    return [np.concatenate(ins, axis=int(a.get("axis", 1)))]

def channel_window_sum(v, lo, hi):
    """sum over channels c-lo .. c+hi (clipped) for every channel c."""
    C = v.shape[1]
    cs = np.concatenate([np.zeros_like(v[:, :1]), np.cumsum(v, axis=1)], axis=1)
    idx = np.arange(C)
    start = np.clip(idx - lo, 0, C)
    end = np.clip(idx + hi + 1, 0, C)
    return cs[:, end] - cs[:, start]

def lrn_scale(x, a):
    size = int(a["size"])
    alpha = float(a.get("alpha", 1e-4))
    bias = float(a.get("bias", 1.0))
    sq = channel_window_sum(x * x, (size - 1) // 2, size // 2)
    return bias + alpha / size * sq

def lrn(ins, a, ws):
    x = ins[0]
    return [(x * lrn_scale(x, a) ** -float(a.get("beta", 0.75))).astype(F32, copy=False)]

def identity(ins, a, ws):
    return [ins[0].copy()]

def dropout(ins, a, ws):
    # inference only: pass through, mask all ones
    return [ins[0].copy(), np.ones_like(ins[0])]

def bn_factor(ins, a):
    scale, var = ins[1], ins[4]
    shape = (1, -1) + (1,) * (ins[0].ndim - 2)
    return (scale / np.sqrt(var + float(a.get("epsilon", 1e-5)))).reshape(shape)

def batch_norm(ins, a, ws):
    x, B, mean = ins[0], ins[2], ins[3]
    shape = (1, -1) + (1,) * (x.ndim - 2)
    y = (x - mean.reshape(shape)) * bn_factor(ins, a) + B.reshape(shape)
    return [y.astype(F32, copy=False)]

def channel_select(ins, a, ws):
    ch = int(a["channel"])
    return [np.take(ins[0], [ch], axis=int(a.get("axis", 1)))]

def reduce_axes(x, a):
    return tuple(ax % x.ndim for ax in a.get("axes", range(x.ndim)))

def reduce_mean(ins, a, ws):
    x = ins[0]
    return [x.mean(axis=reduce_axes(x, a), keepdims=bool(a.get("keepdims", 1))).astype(F32, copy=False)]

XENT_EPS = 1e-20

def xent_labels(x, label):
    return np.broadcast_to(label.reshape(-1), (x.shape[0],))

def label_cross_entropy(ins, a, ws):
    x, label = ins
    picked = x[np.arange(x.shape[0]), xent_labels(x, label)]
    return [(-np.log(np.maximum(picked, XENT_EPS))).astype(F32)]

def averaged_loss(ins, a, ws):
    return [np.array([ins[0].mean()], dtype=F32)]

def scale(ins, a, ws):
    return [(ins[0] * float(a.get("scale", 1.0))).astype(F32, copy=False)]

def constant_fill(ins, a, ws):
    dtype = np.int64 if a.get("dtype", "f32") == "i64" else F32
    shape = ins[0].shape if ins else tuple(a.get("shape", [1]))
    return [np.full(shape, a.get("value", 0), dtype=dtype)]

def uniform_fill(ins, a, ws):
    lo, hi = float(a.get("min", 0.0)), float(a.get("max", 1.0))
    return [ws.rng.uniform(lo, hi, size=tuple(a["shape"])).astype(F32)]

def given_tensor_fill(ins, a, ws):
    values = np.asarray(a["values"])
    return [values.astype(np.int64 if values.dtype.kind in "iu" else F32)]

def iter_op(ins, a, ws):
    return [ins[0] + 1]

def learning_rate(ins, a, ws):
    it = float(ins[0].reshape(-1)[0])
    base = float(a["base_lr"])
    gamma = float(a.get("gamma", 0.999))
    policy = a.get("policy", "exp")
    if policy == "exp":
        lr = base * gamma ** it
    elif policy == "inv":
        lr = base * (1.0 + gamma * it) ** -float(a.get("power", 1.0))
    else:
        raise ValueError(f"unknown learning rate policy: {policy}")
    # never decays to zero in float32
    return [np.array([max(lr, np.finfo(F32).tiny)], dtype=F32)]

def weighted_sum(ins, a, ws):
    out = np.zeros_like(ins[0])
    for x, w in zip(ins[0::2], ins[1::2]):
        out += x * w.reshape(-1)[0]
    return [out]
