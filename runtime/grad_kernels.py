# Gradient kernels: (fwd inputs, fwd outputs, output grads, attrs, wanted) -> {input index: grad}
# Output grads that were never produced arrive as None.
import numpy as np

from runtime import kernels as K

F32 = np.float32


def unbroadcast(g, shape):
    """Sum ``g`` down to ``shape`` (inverse of numpy broadcasting)."""
    shape = tuple(shape)
    while g.ndim > len(shape):
        g = g.sum(axis=0)
    for ax, d in enumerate(shape):
        if d == 1 and g.shape[ax] != 1:
            g = g.sum(axis=ax, keepdims=True)
    return g.astype(F32, copy=False)


def conv_grad(ins, outs, douts, a, wanted):
    x, w = ins[0], ins[1]
    dy = douts[0]
    group = int(a.get("group", 1))
    M, Cg, kh, kw = w.shape
    Mg = M // group
    _, strides, dilations, pads, (Ho, Wo) = K.pool_geometry(x.shape, dict(a, kernel_shape=[kh, kw], ceil_mode=0))
    N = x.shape[0]
    dy = dy.reshape(N, M, Ho * Wo)
    dcols = np.empty((N, x.shape[1], kh, kw, Ho, Wo), dtype=F32)
    for g in range(group):
        wg = w[g * Mg:(g + 1) * Mg].reshape(Mg, Cg * kh * kw)
        dc = np.einsum("mk,nml->nkl", wg, dy[:, g * Mg:(g + 1) * Mg], optimize=True)
        dcols[:, g * Cg:(g + 1) * Cg] = dc.reshape(N, Cg, kh, kw, Ho, Wo)
    dxp = np.zeros(K.pad_nchw(x, pads).shape, dtype=F32)
    for i in range(kh):
        for j in range(kw):
            K.window(dxp, i, j, strides, dilations, (Ho, Wo))[...] += dcols[:, :, i, j]
    t, l = pads[0], pads[1]
    return {0: dxp[:, :, t:t + x.shape[2], l:l + x.shape[3]]}

def relu_grad(ins, outs, douts, a, wanted):
    return {0: (douts[0] * (ins[0] > 0)).astype(F32, copy=False)}

def max_pool_grad(ins, outs, douts, a, wanted):
    x, y, dy = ins[0], outs[0], douts[0]
    kernel, strides, dilations, pads, out_hw = K.pool_geometry(x.shape, a)
    xp = K.pad_nchw(x, pads, -np.inf)
    dxp = np.zeros(xp.shape, dtype=F32)
    taken = np.zeros(y.shape, dtype=bool)
    # route each window's grad to its first maximum only
    for i in range(kernel[0]):
        for j in range(kernel[1]):
            hit = (K.window(xp, i, j, strides, dilations, out_hw) == y) & ~taken
            K.window(dxp, i, j, strides, dilations, out_hw)[...] += np.where(hit, dy, 0)
            taken |= hit
    t, l = pads[0], pads[1]
    return {0: dxp[:, :, t:t + x.shape[2], l:l + x.shape[3]]}

def average_pool_grad(ins, outs, douts, a, wanted):
    x = ins[0]
    kernel, strides, dilations, pads, out_hw = K.pool_geometry(x.shape, a)
    share = douts[0] / K.pool_counts(x.shape, a)
    dxp = np.zeros(K.pad_nchw(x, pads).shape, dtype=F32)
    for i in range(kernel[0]):
        for j in range(kernel[1]):
            K.window(dxp, i, j, strides, dilations, out_hw)[...] += share
    t, l = pads[0], pads[1]
    return {0: dxp[:, :, t:t + x.shape[2], l:l + x.shape[3]]}

def global_average_pool_grad(ins, outs, douts, a, wanted):
    x = ins[0]
    n = int(np.prod(x.shape[2:]))
    return {0: np.broadcast_to(douts[0] / n, x.shape).astype(F32)}

def gemm_grad(ins, outs, douts, a, wanted):
    A, B = K.gemm_operands(ins, a)
    dy = douts[0] * float(a.get("alpha", 1.0))
    res = {}
    if 0 in wanted:
        dA = dy @ B.T
        res[0] = dA.T if a.get("transA", 0) else dA
    if 1 in wanted:
        dB = A.T @ dy
        res[1] = dB.T if a.get("transB", 0) else dB
    if 2 in wanted and len(ins) > 2:
        res[2] = unbroadcast(douts[0] * float(a.get("beta", 1.0)), ins[2].shape)
    return res

def matmul_grad(ins, outs, douts, a, wanted):
    A, B = ins
    dy = douts[0]
    res = {}
    if 0 in wanted:
        res[0] = np.matmul(dy, B.T)
    if 1 in wanted:
        res[1] = A.reshape(-1, A.shape[-1]).T @ dy.reshape(-1, dy.shape[-1])
    return res

def add_grad(ins, outs, douts, a, wanted):
    return {i: unbroadcast(douts[0], ins[i].shape) for i in wanted}

def mul_grad(ins, outs, douts, a, wanted):
    return {i: unbroadcast(douts[0] * ins[1 - i], ins[i].shape) for i in wanted}

def reshape_like_grad(ins, outs, douts, a, wanted):
    return {0: douts[0].reshape(ins[0].shape)}

def softmax_grad(ins, outs, douts, a, wanted):
    y, dy = outs[0], douts[0]
    axis = int(a.get("axis", -1))
    return {0: y * (dy - (dy * y).sum(axis=axis, keepdims=True))}

def concat_grad(ins, outs, douts, a, wanted):
    axis = int(a.get("axis", 1))
    bounds = np.cumsum([x.shape[axis] for x in ins])[:-1]
    parts = np.split(douts[0], bounds, axis=axis)
    return {i: parts[i] for i in wanted}

def lrn_grad(ins, outs, douts, a, wanted):
    x, dy = ins[0], douts[0]
    size = int(a["size"])
    alpha = float(a.get("alpha", 1e-4))
    beta = float(a.get("beta", 0.75))
    s = K.lrn_scale(x, a)
    t = dy * x * s ** (-beta - 1)
    # transpose of the forward window: c' covers c when c'-lo <= c <= c'+hi
    back = K.channel_window_sum(t, size // 2, (size - 1) // 2)
    return {0: (dy * s ** -beta - 2.0 * alpha * beta / size * x * back).astype(F32, copy=False)}

def pass_through_grad(ins, outs, douts, a, wanted):
    return {0: douts[0].copy()}

def batch_norm_grad(ins, outs, douts, a, wanted):
    return {0: (douts[0] * K.bn_factor(ins, a)).astype(F32, copy=False)}

def channel_select_grad(ins, outs, douts, a, wanted):
    x = ins[0]
    axis = int(a.get("axis", 1))
    dx = np.zeros(x.shape, dtype=F32)
    idx = [slice(None)] * x.ndim
    idx[axis] = slice(int(a["channel"]), int(a["channel"]) + 1)
    dx[tuple(idx)] = douts[0]
    return {0: dx}

def reduce_mean_grad(ins, outs, douts, a, wanted):
    x = ins[0]
    axes = K.reduce_axes(x, a)
    n = int(np.prod([x.shape[ax] for ax in axes]))
    keep = [1 if ax in axes else d for ax, d in enumerate(x.shape)]
    return {0: np.broadcast_to(douts[0].reshape(keep) / n, x.shape).astype(F32)}

def label_cross_entropy_grad(ins, outs, douts, a, wanted):
    x, label = ins
    rows = np.arange(x.shape[0])
    cols = K.xent_labels(x, label)
    dx = np.zeros(x.shape, dtype=F32)
    dx[rows, cols] = -douts[0] / np.maximum(x[rows, cols], K.XENT_EPS)
    return {0: dx}

def averaged_loss_grad(ins, outs, douts, a, wanted):
    x = ins[0]
    return {0: np.full(x.shape, douts[0].reshape(-1)[0] / x.size, dtype=F32)}

def scale_grad(ins, outs, douts, a, wanted):
    return {0: (douts[0] * float(a.get("scale", 1.0))).astype(F32, copy=False)}
