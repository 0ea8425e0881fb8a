import json, re
from pathlib import Path

import numpy as np

from ir.ir import OpKind, GraphDef, ModelPair
from ir.errors import ModelLoadError, LabelNotFoundError
from frontends.onnx.importer import load as import_onnx

# bundled example models, resolved from the repo root
BUILDS = Path(__file__).resolve().parents[1] / "examples" / "builds"


def safe_name(s: str) -> str:
    return re.sub(r"[^0-9A-Za-z_.-]", "_", s)

def model_paths(name: str, root):
    root = Path(root)
    return root / f"{name}_init_net.json", root / f"{name}_predict_net.json"

def onnx_candidates(name: str, root):
    root = Path(root)
    return [
        root / f"{name}.onnx",
        BUILDS / f"{name}.onnx",
        BUILDS / name / f"{name}.onnx",
    ]

# ---------------- save ----------------

def save_model(pair: ModelPair, root, name: str):
    """Write ``<name>_init_net.json``, ``<name>_predict_net.json`` and one .npy per weight."""
    root = Path(root)
    weights_dir = root / f"{name}_weights"
    weights_dir.mkdir(parents=True, exist_ok=True)

    init = pair.init.copy()
    for node in init.nodes:
        values = node.attrs.get("values")
        if node.op != OpKind.GIVEN_TENSOR_FILL or not isinstance(values, np.ndarray):
            continue
        fname = f"{safe_name(node.outputs[0])}.npy"
        np.save(weights_dir / fname, values, allow_pickle=False)
        node.attrs["values"] = {"file": (Path(weights_dir.name) / fname).as_posix()}

    init_path, predict_path = model_paths(name, root)
    with open(init_path, "w") as f:
        json.dump(init.to_json(), f, indent=2)
    with open(predict_path, "w") as f:
        json.dump(pair.predict.to_json(), f, indent=2)
    return init_path, predict_path

# ---------------- load ----------------

def _read_graph(path: Path) -> GraphDef:
    with open(path) as f:
        graph = GraphDef.from_json(json.load(f))
    for node in graph.nodes:
        values = node.attrs.get("values")
        if isinstance(values, dict) and "file" in values:
            node.attrs["values"] = np.load(path.parent / values["file"], allow_pickle=False)
    return graph

def load_model(name: str, root) -> ModelPair:
    init_path, predict_path = model_paths(name, root)
    for p in (init_path, predict_path):
        if not p.exists():
            raise ModelLoadError(p, "file not found")
    try:
        pair = ModelPair(_read_graph(init_path), _read_graph(predict_path))
        pair.predict.check(pair.init)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise ModelLoadError(predict_path, f"{type(e).__name__}: {e}") from e
    return pair

def ensure_model(name: str, root="res", verbose=False) -> bool:
    """True when ``name`` is available as graph files under ``root``, converting a .onnx if needed."""
    init_path, predict_path = model_paths(name, root)
    if init_path.exists() and predict_path.exists():
        return True
    onnx_path = next((p for p in onnx_candidates(name, root) if p.exists()), None)
    if onnx_path is None:
        return False
    if verbose:
        print(f"converting {onnx_path}..")
    save_model(import_onnx(str(onnx_path)), root, name)
    return True

# ---------------- labels ----------------

class ClassTable:
    """Class names in index order, one per line of a label file."""

    def __init__(self, classes):
        self.classes = list(classes)

    @classmethod
    def from_file(cls, path):
        try:
            lines = Path(path).read_text().splitlines()
        except OSError as e:
            raise ModelLoadError(path, f"cannot read labels: {e}") from e
        return cls(line.strip() for line in lines if line.strip())

    def __len__(self):
        return len(self.classes)

    def index(self, label: str) -> int:
        # last match wins, like the original table scan
        found = -1
        for i, c in enumerate(self.classes):
            if c == label:
                found = i
        if found < 0:
            raise LabelNotFoundError(label, self.classes)
        return found
