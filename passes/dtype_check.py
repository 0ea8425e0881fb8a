from ir.ir import OpKind
from ir.errors import GraphInstantiationError

# positional inputs that must hold i64; everything else on a data path is f32
I64_INPUTS = {
    OpKind.RESHAPE: (1,),
    OpKind.LABEL_CROSS_ENTROPY: (1,),
    OpKind.ITER: (0,),
    OpKind.LEARNING_RATE: (0,),
}
# ops whose inputs are not data (shape templates, counters)
UNCHECKED = (OpKind.CONSTANT_FILL, OpKind.GRADIENT)


def dtype_check(graph, specs):
    def dt(v): return specs[v].dtype

    for node in graph.nodes:
        k = node.op
        if k in UNCHECKED:
            continue
        want_i64 = I64_INPUTS.get(k, ())
        for idx, v in enumerate(node.inputs):
            want = "i64" if idx in want_i64 else "f32"
            if dt(v) != want:
                raise GraphInstantiationError(
                    f"dtype mismatch on {v}: {k.value} input {idx} wants {want}, got {dt(v)}")

        if k == OpKind.ITER and dt(node.outputs[0]) != "i64":
            raise GraphInstantiationError("iteration counter must be i64")

    for node in graph.nodes:
        if node.op != OpKind.GRADIENT:
            continue
        for o in node.outputs:
            if dt(o) != "f32":
                raise GraphInstantiationError(f"gradient {o} is not f32")
    return specs
