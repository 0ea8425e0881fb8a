"""Reverse-mode differentiation over a predict graph.

One Gradient node is appended per forward node, walking the forward nodes
backwards. A Gradient node reads the forward node's inputs, its outputs and
the gradients of those outputs, and writes ``<blob>_grad`` for each input
that depends on the graph's primary input. Constant blobs (weights) get no
gradient. When a blob feeds several nodes, the first gradient node to reach
it writes ``<blob>_grad`` and the later ones accumulate into it.
"""

from ir.ir import OpKind
from ir.errors import GraphInstantiationError
from runtime.registry import schema_for


def grad_name(blob):
    return f"{blob}_grad"


def depends_on_input(graph):
    reached = {graph.primary_input}
    for node in graph.nodes:
        if any(i in reached for i in node.inputs):
            reached.update(node.outputs)
    return reached


def add_gradient_ops(predict, objective=None, verbose=False):
    objective = objective or predict.primary_output
    forward = list(predict.nodes)
    reached = depends_on_input(predict)
    if objective not in reached:
        raise GraphInstantiationError(f"objective {objective} does not depend on {predict.primary_input}")

    # d(objective)/d(objective) = 1
    seed = predict.add_node(OpKind.CONSTANT_FILL, [objective], [grad_name(objective)], value=1.0, dtype="f32")
    seed.device = forward[-1].device if forward else seed.device

    has_grad = {objective}
    written = {grad_name(objective)}
    for node in reversed(forward):
        schema = schema_for(node.op)
        grad_outputs = [j for j, o in enumerate(node.outputs) if o in has_grad]
        grad_inputs = [i for i, b in enumerate(node.inputs) if b in reached] if grad_outputs else []
        for i in grad_inputs:
            if not schema.differentiates(i):
                raise GraphInstantiationError(
                    f"cannot differentiate {node.op.value} with respect to input {i} ({node.inputs[i]})")

        outputs = [grad_name(node.inputs[i]) for i in grad_inputs]
        accumulate = []
        for name in outputs:
            accumulate.append(name in written)
            written.add(name)

        attrs = dict(node.attrs)
        attrs.update(
            forward_op=node.op.value,
            n_inputs=len(node.inputs),
            n_outputs=len(node.outputs),
            grad_inputs=grad_inputs,
            grad_outputs=grad_outputs,
            accumulate=accumulate,
        )
        inputs = node.inputs + node.outputs + [grad_name(node.outputs[j]) for j in grad_outputs]
        g = predict.add_node(OpKind.GRADIENT, inputs, outputs, **attrs)
        g.device = node.device
        has_grad.update(node.inputs[i] for i in grad_inputs)

    if predict.primary_input not in has_grad:
        raise GraphInstantiationError(f"no gradient reaches {predict.primary_input}")
    if verbose:
        print(f"autodiff: {len(forward)} gradient ops appended to {predict.name}")
    return predict
