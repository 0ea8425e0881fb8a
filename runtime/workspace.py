"""Typed blob store shared by an init net and a predict net.

Blobs carry the BlobSpec declared when a net is instantiated; every write is
checked against it. Blobs produced by the init net and never written by the
predict net are frozen (read-only arrays). The tensor being optimized lives
in an :class:`InputCell`, the one piece of state the predict net carries from
one iteration to the next.
"""

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from ir.ir import BlobSpec, DTYPES


@dataclass
class Blob:
    spec: BlobSpec
    value: Optional[np.ndarray] = None


class InputCell:
    """The optimized tensor: written by the update rule, read at the start of each run."""

    def __init__(self, name: str):
        self.name = name
        self.updates = 0

    def __repr__(self):
        return f"InputCell({self.name!r}, updates={self.updates})"


class Workspace:
    def __init__(self, seed: Optional[int] = None):
        self.blobs: Dict[str, Blob] = {}
        self.frozen = set()
        self.cell: Optional[InputCell] = None
        self.rng = np.random.default_rng(seed)

    def __contains__(self, name):
        return name in self.blobs

    def specs(self) -> Dict[str, BlobSpec]:
        return {k: b.spec for k, b in self.blobs.items()}

    def declare(self, spec: BlobSpec):
        blob = self.blobs.get(spec.name)
        if blob is None:
            self.blobs[spec.name] = Blob(spec)
        elif blob.spec != spec:
            raise ValueError(f"blob {spec.name} already declared as {blob.spec}")

    def bind_input(self, name: str) -> InputCell:
        if name not in self.blobs:
            raise KeyError(f"input blob {name} is not declared")
        self.cell = InputCell(name)
        self.frozen.discard(name)
        return self.cell

    def freeze(self, name: str):
        if self.cell is not None and name == self.cell.name:
            raise ValueError(f"cannot freeze the optimized input {name}")
        self.frozen.add(name)
        value = self.blobs[name].value
        if value is not None:
            value.setflags(write=False)

    def _coerce(self, name, value):
        spec = self.blobs[name].spec
        arr = np.asarray(value)
        if list(arr.shape) != list(spec.shape):
            raise ValueError(f"blob {name}: shape {list(arr.shape)} does not match declared {spec.shape}")
        want = DTYPES[spec.dtype]
        if arr.dtype != want:
            if arr.dtype.kind != np.dtype(want).kind:
                raise ValueError(f"blob {name}: dtype {arr.dtype} does not match declared {spec.dtype}")
            arr = arr.astype(want)
        return arr

    def write(self, name: str, value):
        """Store a net output. Frozen blobs may only be written once."""
        if name not in self.blobs:
            raise KeyError(f"blob {name} is not declared")
        if name in self.frozen and self.blobs[name].value is not None:
            raise ValueError(f"blob {name} is read-only")
        self.blobs[name].value = self._coerce(name, value)
        if self.cell is not None and name == self.cell.name:
            self.cell.updates += 1

    def feed(self, name: str, value):
        """Set a blob from outside the nets (e.g. the input image)."""
        if name in self.frozen:
            raise ValueError(f"blob {name} is read-only")
        if name not in self.blobs:
            arr = np.asarray(value)
            dtype = "i64" if arr.dtype.kind in "iu" else "f32"
            self.declare(BlobSpec(name, dtype, list(arr.shape)))
        self.blobs[name].value = self._coerce(name, value)

    def fetch(self, name: str) -> np.ndarray:
        blob = self.blobs.get(name)
        if blob is None or blob.value is None:
            raise KeyError(f"blob {name} has no value")
        return blob.value

    def fetch_scalar(self, name: str) -> float:
        return self.fetch(name).reshape(-1)[0].item()

    def input_tensor(self) -> np.ndarray:
        if self.cell is None:
            raise KeyError("no input cell bound")
        return self.fetch(self.cell.name)

    def has_value(self, name: str) -> bool:
        blob = self.blobs.get(name)
        return blob is not None and blob.value is not None
