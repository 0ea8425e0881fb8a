from typing import Optional

from ir.ir import GraphDef
from ir.errors import GraphInstantiationError
from passes.shape_check import shape_check
from passes.dtype_check import dtype_check
from passes.passes import fill_constants
from runtime.registry import schema_for


class Net:
    """A graph bound to a workspace, with every blob spec resolved."""

    def __init__(self, graph: GraphDef, workspace, steps):
        self.graph = graph
        self.workspace = workspace
        self.steps = steps

    @property
    def name(self):
        return self.graph.name

    def run(self):
        ws = self.workspace
        for node, forward, accumulate in self.steps:
            ins = [ws.fetch(i) for i in node.inputs]
            outs = forward(ins, node.attrs, ws)
            if len(outs) < len(node.outputs):
                raise ValueError(f"{node.op.value} produced {len(outs)} outputs, expected {len(node.outputs)}")
            for name, value, acc in zip(node.outputs, outs, accumulate):
                ws.write(name, ws.fetch(name) + value if acc else value)


def create_net(graph: GraphDef, workspace, init: Optional[GraphDef] = None) -> Net:
    """Instantiate ``graph`` against ``workspace``.

    Shapes and dtypes of every blob are inferred here so that a malformed
    graph fails before anything runs. ``init`` is the paired init graph when
    ``graph`` is a predict graph; its blobs must already be declared, which
    :func:`create_net` on the init graph does.
    """
    try:
        graph.check(init)
    except ValueError as e:
        raise GraphInstantiationError(str(e)) from e

    for name, spec in graph.values.items():
        try:
            workspace.declare(spec)
        except ValueError as e:
            raise GraphInstantiationError(str(e)) from e

    specs = workspace.specs()
    consts = fill_constants(init if init is not None else graph)
    shape_check(graph, specs, consts)
    dtype_check(graph, specs)

    steps = []
    for node in graph.nodes:
        try:
            schema = schema_for(node.op)
        except KeyError as e:
            raise GraphInstantiationError(str(e)) from e
        accumulate = node.attrs.get("accumulate", [False] * len(node.outputs))
        steps.append((node, schema.forward, list(accumulate)))

    for name, spec in specs.items():
        if name not in workspace:
            workspace.declare(spec)
    return Net(graph, workspace, steps)
