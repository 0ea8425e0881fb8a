# IR Contract
# - BlobSpec: type info only (no actual data)
# - OperatorNode: pure node with op kind, inputs, outputs, attrs and device tag
# - GraphDef.external_inputs: runtime-fed blobs, index 0 is the primary input
# - GraphDef.external_outputs: graph results, index 0 is the primary output
# - Weights are not external inputs; the paired init graph produces them


from dataclasses import dataclass, field
from enum import Enum
from typing import List, Dict, Any, Optional

import numpy as np


class Device(str, Enum):
    DEFAULT = "default"
    ACCELERATOR = "accelerator"


class OpKind(str, Enum):
    # model ops
    CONV = "Conv"
    RELU = "Relu"
    MAX_POOL = "MaxPool"
    AVERAGE_POOL = "AveragePool"
    GLOBAL_AVERAGE_POOL = "GlobalAveragePool"
    GEMM = "Gemm"
    MATMUL = "MatMul"
    ADD = "Add"
    MUL = "Mul"
    FLATTEN = "Flatten"
    RESHAPE = "Reshape"
    SOFTMAX = "Softmax"
    CONCAT = "Concat"
    LRN = "LRN"
    DROPOUT = "Dropout"
    IDENTITY = "Identity"
    BATCH_NORM = "BatchNormalization"
    # objective ops
    CHANNEL_SELECT = "ChannelSelect"
    REDUCE_MEAN = "ReduceMean"
    LABEL_CROSS_ENTROPY = "LabelCrossEntropy"
    AVERAGED_LOSS = "AveragedLoss"
    SCALE = "Scale"
    # fills and bookkeeping
    CONSTANT_FILL = "ConstantFill"
    UNIFORM_FILL = "UniformFill"
    GIVEN_TENSOR_FILL = "GivenTensorFill"
    ITER = "Iter"
    LEARNING_RATE = "LearningRate"
    WEIGHTED_SUM = "WeightedSum"
    # reverse mode
    GRADIENT = "Gradient"

    @classmethod
    def parse(cls, name: str) -> "OpKind":
        for k in cls:
            if k.value.lower() == name.lower():
                return k
        raise ValueError(f"unsupported op kind: {name}")


DTYPES = {"f32": np.float32, "i64": np.int64}


@dataclass
class BlobSpec:  # tensor value
    name: str
    dtype: str
    shape: List[int]

    def numel(self) -> int:
        return int(np.prod(self.shape)) if self.shape else 1


@dataclass
class OperatorNode:
    op: OpKind
    inputs: List[str]
    outputs: List[str]
    attrs: Dict[str, Any] = field(default_factory=dict)
    device: Device = Device.DEFAULT
    name: str = ""

    @property
    def is_gradient(self) -> bool:
        return self.op == OpKind.GRADIENT

    def copy(self) -> "OperatorNode":
        return OperatorNode(self.op, list(self.inputs), list(self.outputs),
                            dict(self.attrs), self.device, self.name)

    def to_json(self) -> dict:
        attrs = {}
        for k, v in self.attrs.items():
            if isinstance(v, np.ndarray):
                v = {"tensor": v.tolist(), "dtype": str(v.dtype)}
            attrs[k] = v
        return {"op": self.op.value, "name": self.name, "inputs": self.inputs,
                "outputs": self.outputs, "attrs": attrs, "device": self.device.value}

    @classmethod
    def from_json(cls, d: dict) -> "OperatorNode":
        attrs = {}
        for k, v in d.get("attrs", {}).items():
            if isinstance(v, dict) and "tensor" in v:
                v = np.array(v["tensor"], dtype=v["dtype"])
            attrs[k] = v
        return cls(OpKind.parse(d["op"]), list(d["inputs"]), list(d["outputs"]),
                   attrs, Device(d.get("device", "default")), d.get("name", ""))


@dataclass
class GraphDef:
    name: str
    nodes: List[OperatorNode] = field(default_factory=list)
    external_inputs: List[str] = field(default_factory=list)
    external_outputs: List[str] = field(default_factory=list)
    values: Dict[str, BlobSpec] = field(default_factory=dict)  # known specs of external inputs

    @property
    def primary_input(self) -> str:
        if not self.external_inputs:
            raise ValueError(f"graph {self.name!r} has no external inputs")
        return self.external_inputs[0]

    @property
    def primary_output(self) -> str:
        if not self.external_outputs:
            raise ValueError(f"graph {self.name!r} has no external outputs")
        return self.external_outputs[0]

    def add_node(self, op: OpKind, inputs, outputs, **attrs) -> OperatorNode:
        node = OperatorNode(op, list(inputs), list(outputs), attrs, name=f"{self.name}_{len(self.nodes)}")
        self.nodes.append(node)
        return node

    def add_external_input(self, name: str):
        if name not in self.external_inputs:
            self.external_inputs.append(name)

    def add_external_output(self, name: str):
        if name not in self.external_outputs:
            self.external_outputs.append(name)

    def produced_blobs(self) -> List[str]:
        seen = []
        for n in self.nodes:
            for o in n.outputs:
                if o not in seen:
                    seen.append(o)
        return seen

    def consumed_blobs(self) -> List[str]:
        seen = []
        for n in self.nodes:
            for i in n.inputs:
                if i not in seen:
                    seen.append(i)
        return seen

    def producer(self, blob: str) -> Optional[OperatorNode]:
        found = None
        for n in self.nodes:
            if blob in n.outputs:
                found = n
        return found

    def check(self, init: Optional["GraphDef"] = None):
        """Every input must come from an earlier node, an external input or the init graph."""
        available = set(self.external_inputs)
        if init is not None:
            available.update(init.produced_blobs())
        for idx, n in enumerate(self.nodes):
            for i in n.inputs:
                if i not in available:
                    raise ValueError(f"{self.name}: node {idx} ({n.op.value}) reads undefined blob {i!r}")
            available.update(n.outputs)
        for o in self.external_outputs:
            if o not in available:
                raise ValueError(f"{self.name}: external output {o!r} is never produced")

    def copy(self, name: Optional[str] = None) -> "GraphDef":
        return GraphDef(name or self.name, [n.copy() for n in self.nodes],
                        list(self.external_inputs), list(self.external_outputs),
                        {k: BlobSpec(v.name, v.dtype, list(v.shape)) for k, v in self.values.items()})

    def to_json(self) -> dict:
        return {
            "name": self.name,
            "values": {k: {"dtype": v.dtype, "shape": v.shape} for k, v in self.values.items()},
            "ops": [n.to_json() for n in self.nodes],
            "entry": {"inputs": self.external_inputs, "outputs": self.external_outputs},
        }

    @classmethod
    def from_json(cls, d: dict) -> "GraphDef":
        return cls(d.get("name", ""), [OperatorNode.from_json(o) for o in d["ops"]],
                   list(d["entry"]["inputs"]), list(d["entry"]["outputs"]),
                   {k: BlobSpec(k, v["dtype"], list(v["shape"])) for k, v in d.get("values", {}).items()})


@dataclass
class ModelPair:
    init: GraphDef
    predict: GraphDef

    def copy(self) -> "ModelPair":
        return ModelPair(self.init.copy(), self.predict.copy())
