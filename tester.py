import argparse, time, numpy as np
from pathlib import Path
import onnxruntime as ort

from ir.ir import OpKind
from frontends.onnx.importer import load
from frontends.models import BUILDS
from passes.passes import infer_specs
from runtime.net import create_net
from runtime.workspace import Workspace

# ---- runners ----
def run_onnx(onnx_path, inputs, warmup=1, reps=5):
    so = ort.SessionOptions()
    so.intra_op_num_threads = 1
    so.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    sess = ort.InferenceSession(str(onnx_path), sess_options=so, providers=["CPUExecutionProvider"])

    # Build ordered inputs
    ordered = {i.name: inputs[i.name] for i in sess.get_inputs()}

    # Warmup
    for _ in range(warmup):
        sess.run(None, ordered)

    t0 = time.perf_counter()
    for _ in range(reps):
        outs = sess.run(None, ordered)
    t1 = time.perf_counter()
    return outs, (t1 - t0) / reps, [o.name for o in sess.get_outputs()]

def run_dream(pair, inputs, warmup=1, reps=5):
    """Forward pass of ``pair`` through the numpy interpreter."""
    ws = Workspace(seed=0)
    init_net = create_net(pair.init, ws)
    predict_net = create_net(pair.predict, ws, pair.init)
    init_net.run()
    for name, arr in inputs.items():
        ws.feed(name, arr)

    for _ in range(warmup):
        predict_net.run()

    t0 = time.perf_counter()
    for _ in range(reps):
        predict_net.run()
    t1 = time.perf_counter()
    outs = [ws.fetch(o).copy() for o in pair.predict.external_outputs]
    return outs, (t1 - t0) / reps

# ---- FLOPs (optional; Conv/Gemm/MatMul only) ----
def estimate_flops(pair):
    try:
        specs = infer_specs(pair.init, pair.predict)
    except Exception:
        return None
    flops = 0
    for node in pair.predict.nodes:
        out = specs[node.outputs[0]]
        if node.op == OpKind.CONV:
            W = specs[node.inputs[1]].shape
            flops += 2 * out.numel() * int(np.prod(W[1:]))
        elif node.op in (OpKind.GEMM, OpKind.MATMUL):
            A = specs[node.inputs[0]].shape
            K = A[0] if node.op == OpKind.GEMM and node.attrs.get("transA", 0) else A[-1]
            flops += 2 * out.numel() * K
    return flops or None

# ---- main harness ----
def find_onnx(name):
    candidates = [
        Path(name),
        BUILDS / f"{name}.onnx",
        BUILDS / name / f"{name}.onnx",
    ]
    onnx_path = next((p for p in candidates if p.suffix == ".onnx" and p.exists()), None)
    if not onnx_path:
        raise FileNotFoundError(f"could not find {name}.onnx in {BUILDS}")
    return onnx_path

def test_model(name, reps=10, warmup=2, seed=0, atol=1e-5, rtol=1e-6):
    rng = np.random.default_rng(seed)
    onnx_path = find_onnx(name)

    # Build inputs from ONNX IO schema in order
    sess = ort.InferenceSession(str(onnx_path), providers=["CPUExecutionProvider"])
    inputs = {}
    for i in sess.get_inputs():
        shape = [d if isinstance(d, int) and d>0 else 1 for d in i.shape]  # fill unknowns with 1
        inputs[i.name] = rng.standard_normal(shape, dtype=np.float32)

    ref_outs, t_ref, out_names = run_onnx(onnx_path, inputs, warmup=warmup, reps=reps)
    pair = load(str(onnx_path))
    my_outs, t_my = run_dream(pair, inputs, warmup=warmup, reps=reps)

    # Compare all outputs
    diffs = []
    ok = True
    for ro, mo in zip(ref_outs, my_outs):
        mo = mo.reshape(ro.shape)
        diff = np.max(np.abs(ro - mo))
        rel = np.max(np.abs(ro - mo) / (np.abs(ro) + 1e-12))
        diffs.append((diff, rel))
        ok &= bool(diff <= atol + rtol * np.max(np.abs(ro)))

    ratio = (t_my / t_ref) * 100.0
    flops = estimate_flops(pair)
    flop_s = f", est_FLOPs={flops}" if flops is not None else ""

    # Report
    summary = (
        f"{Path(onnx_path).stem}: {'OK' if ok else 'FAIL'} | "
        f"max_abs={max(d[0] for d in diffs):.2e}, max_rel={max(d[1] for d in diffs):.2e} | "
        f"dream={t_my*1e3:.2f} ms, ONNX={t_ref*1e3:.2f} ms ({ratio:.1f}%)"
        f"{flop_s}"
    )
    print(summary)
    return 0 if ok else 1

# defaults
DEFAULT_REPS   = 10
DEFAULT_WARMUP = 2
DEFAULT_SEED   = 0
DEFAULT_ATOL   = 2e-3   # tolerant enough for fp32 + ReLU boundaries
DEFAULT_RTOL   = 1e-5

if __name__ == "__main__":
    import os
    ap = argparse.ArgumentParser(description="forward parity of the numpy interpreter against onnxruntime")
    ap.add_argument("name", help="model name (examples/builds/{name}.onnx) or path to .onnx")
    args = ap.parse_args()

    # Optional env overrides without changing CLI:
    reps   = int(os.getenv("DREAM_REPS",   DEFAULT_REPS))
    warmup = int(os.getenv("DREAM_WARMUP", DEFAULT_WARMUP))
    seed   = int(os.getenv("DREAM_SEED",   DEFAULT_SEED))
    atol   = float(os.getenv("DREAM_ATOL", DEFAULT_ATOL))
    rtol   = float(os.getenv("DREAM_RTOL", DEFAULT_RTOL))

    raise SystemExit(test_model(args.name, reps, warmup, seed, atol, rtol))
