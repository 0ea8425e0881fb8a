from ir.ir import GraphDef
from ir.errors import LayerNotFoundError
from passes.device import place_on_accelerator
from passes.passes import prune_init, infer_specs


def available_layers(predict):
    return predict.produced_blobs()

def check_layer_available(predict, layer) -> bool:
    return layer in predict.produced_blobs()


def split_model(init, predict, layer, force_cpu=True):
    """Cut ``predict`` right after the first node producing ``layer``.

    Returns ``(first_init, first_predict, second_init, second_predict)``. The
    first predict graph ends in ``layer``, the second starts from it, and the
    two node lists concatenated give back ``predict.nodes``. Each init graph
    keeps only the blobs its predict graph reads. With ``force_cpu`` unset all
    four graphs are placed on the accelerator.
    """
    cut = next((idx for idx, node in enumerate(predict.nodes) if layer in node.outputs), None)
    if cut is None:
        raise LayerNotFoundError(layer, available_layers(predict))

    first_nodes = [n.copy() for n in predict.nodes[:cut + 1]]
    second_nodes = [n.copy() for n in predict.nodes[cut + 1:]]

    first_predict = GraphDef(f"{predict.name}_first", first_nodes, [], [layer])
    second_predict = GraphDef(f"{predict.name}_second", second_nodes, [layer], list(predict.external_outputs))

    # full-graph inputs go wherever they are read; the primary always starts the first part
    first_reads = set(first_predict.consumed_blobs())
    second_reads = set(second_predict.consumed_blobs())
    for idx, name in enumerate(predict.external_inputs):
        if idx == 0 or name in first_reads:
            first_predict.add_external_input(name)
            if name in predict.values:
                first_predict.values[name] = predict.values[name]
        if idx > 0 and name in second_reads:
            second_predict.add_external_input(name)
            if name in predict.values:
                second_predict.values[name] = predict.values[name]

    first_init = prune_init(init.copy(f"{init.name}_first"), first_predict)
    second_init = prune_init(init.copy(f"{init.name}_second"), second_predict)

    if all(name in first_predict.values for name in first_predict.external_inputs):
        specs = infer_specs(first_init, first_predict)
        second_predict.values[layer] = specs[layer]

    if not force_cpu:
        for g in (first_init, first_predict, second_init, second_predict):
            place_on_accelerator(g)
    return first_init, first_predict, second_init, second_predict
