# passes.py
from collections import defaultdict, deque

import numpy as np

from ir.ir import OpKind
from passes.shape_check import shape_check
from passes.dtype_check import dtype_check


def dce(graph):
    live = set(graph.external_outputs)
    kept = []
    for node in reversed(graph.nodes):
        if any(o in live for o in node.outputs):
            kept.append(node)
            live.update(node.inputs)
    graph.nodes = list(reversed(kept))
    return graph

def canonicalize(graph):
    rewrites = {}
    for node in graph.nodes:
        if node.op in (OpKind.IDENTITY, OpKind.DROPOUT) and node.outputs[0] not in graph.external_outputs:
            rewrites[node.outputs[0]] = node.inputs[0]
    if rewrites:
        def root(x):
            while x in rewrites:
                x = rewrites[x]
            return x
        graph.nodes = [n for n in graph.nodes if not (n.outputs and n.outputs[0] in rewrites)]
        for node in graph.nodes:
            node.inputs = [root(i) for i in node.inputs]
    return graph

def topo_sort(graph):
    # producer node index per blob
    producer = {}
    for idx, node in enumerate(graph.nodes):
        for o in node.outputs:
            producer[o] = idx
    indeg = [0] * len(graph.nodes)
    succ = defaultdict(list)
    for idx, node in enumerate(graph.nodes):
        for i in set(node.inputs):
            p = producer.get(i)
            if p is not None and p != idx:
                indeg[idx] += 1
                succ[p].append(idx)
    q = deque([idx for idx, d in enumerate(indeg) if d == 0])
    order = []
    while q:
        idx = q.popleft()
        order.append(graph.nodes[idx])
        for v in succ[idx]:
            indeg[v] -= 1
            if indeg[v] == 0:
                q.append(v)
    if len(order) != len(graph.nodes):
        raise RuntimeError("cycle detected: graph must be a DAG")
    graph.nodes = order
    return graph

def prune_init(init, predict):
    """Keep only the init nodes whose outputs ``predict`` reads."""
    used = set(predict.consumed_blobs())
    init.nodes = [n for n in init.nodes if any(o in used for o in n.outputs)]
    return init

def fill_constants(graph):
    """Values the init graph pins at definition time (shape vectors, labels)."""
    consts = {}
    if graph is None:
        return consts
    for node in graph.nodes:
        if node.op == OpKind.GIVEN_TENSOR_FILL:
            consts[node.outputs[0]] = np.asarray(node.attrs["values"])
        elif node.op == OpKind.CONSTANT_FILL and not node.inputs:
            consts[node.outputs[0]] = np.full(node.attrs.get("shape", [1]), node.attrs.get("value", 0))
    return consts

def infer_specs(init, predict):
    """Blob specs of an init/predict pair without running either graph."""
    specs = dict(predict.values)
    shape_check(init, specs)
    dtype_check(init, specs)
    shape_check(predict, specs, fill_constants(init))
    dtype_check(predict, specs)
    return specs
