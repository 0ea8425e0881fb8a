from ir.ir import OpKind, BlobSpec
from passes.autodiff import add_gradient_ops, grad_name

# preferred names of the bookkeeping blobs; suffixed when the model already uses one
SCORE = "score"
ITER = "iter"
LR = "lr"
ONE = "one"
LABEL = "label"


def fresh_name(graph, base, init=None):
    """``base``, suffixed if ``graph`` (or ``init``) already uses that blob name."""
    taken = set(graph.external_inputs) | set(graph.produced_blobs()) | set(graph.consumed_blobs())
    if init is not None:
        taken.update(init.produced_blobs())
    name, i = base, 0
    while name in taken:
        i += 1
        name = f"{base}_{i}"
    return name

def add_channel_objective_ops(predict, output, channel, init=None):
    """score[n] = mean of ``output[n, channel, ...]``."""
    pick = fresh_name(predict, "pick", init)
    predict.add_node(OpKind.CHANNEL_SELECT, [output], [pick], channel=int(channel), axis=1)
    flat = fresh_name(predict, "reshape", init)
    predict.add_node(OpKind.RESHAPE, [pick], [flat], shape=[0, -1])
    score = fresh_name(predict, SCORE, init)
    predict.add_node(OpKind.REDUCE_MEAN, [flat], [score], axes=[-1], keepdims=0)
    predict.external_outputs = [score]
    return predict

def add_xent_objective_ops(predict, output, label=LABEL, init=None):
    """score = -mean cross-entropy of ``output`` against ``label``; ascent moves toward the label."""
    producer = predict.producer(output)
    probs = fresh_name(predict, "flat", init)
    predict.add_node(OpKind.FLATTEN, [output], [probs], axis=1)
    if producer is None or producer.op != OpKind.SOFTMAX:
        logits, probs = probs, fresh_name(predict, "prob", init)
        predict.add_node(OpKind.SOFTMAX, [logits], [probs], axis=1)
    xent = fresh_name(predict, "xent", init)
    predict.add_node(OpKind.LABEL_CROSS_ENTROPY, [probs, label], [xent])
    loss = fresh_name(predict, "loss", init)
    predict.add_node(OpKind.AVERAGED_LOSS, [xent], [loss])
    score = fresh_name(predict, SCORE, init)
    predict.add_node(OpKind.SCALE, [loss], [score], scale=-1.0)
    predict.external_outputs = [score]
    return predict

def schedule_attrs(base_lr, policy="exp", gamma=0.999, power=1.0):
    return dict(base_lr=float(base_lr), policy=policy, gamma=float(gamma), power=float(power))

def add_iter_lr_ops(init, predict, base_lr, it=ITER, lr=LR, **schedule):
    sched = schedule_attrs(base_lr, **schedule)
    init.add_node(OpKind.CONSTANT_FILL, [], [it], shape=[1], value=0, dtype="i64")
    init.add_node(OpKind.LEARNING_RATE, [it], [lr], **sched)
    predict.add_node(OpKind.ITER, [it], [it])
    predict.add_node(OpKind.LEARNING_RATE, [it], [lr], **sched)

def add_update_op(init, predict, lr=LR):
    # new_input = input * 1 + input_grad * lr, ascent on the objective
    one = fresh_name(predict, ONE, init)
    init.add_node(OpKind.CONSTANT_FILL, [], [one], shape=[1], value=1.0)
    x = predict.primary_input
    predict.add_node(OpKind.WEIGHTED_SUM, [x, one, grad_name(x), lr], [x])

def add_input_fill(init, predict, size_to_fit=None):
    """Uniform noise in [-1, 1] for the input blob until an image replaces it."""
    x = predict.primary_input
    known = predict.values.get(x)
    if size_to_fit:
        channels = known.shape[1] if known is not None and len(known.shape) == 4 else 3
        shape = [1, channels, int(size_to_fit), int(size_to_fit)]
    elif known is not None:
        shape = list(known.shape)
    else:
        raise ValueError(f"shape of input {x} unknown; pass size_to_fit")
    init.add_node(OpKind.UNIFORM_FILL, [], [x], shape=shape, min=-1.0, max=1.0)
    predict.values[x] = BlobSpec(x, "f32", shape)


def add_naive(init, predict, channel, base_lr, size_to_fit=224, **schedule):
    """Dream on one channel of the graph's output layer."""
    add_channel_objective_ops(predict, predict.primary_output, channel, init)
    add_gradient_ops(predict)
    add_input_fill(init, predict, size_to_fit)
    it, lr = fresh_name(predict, ITER, init), fresh_name(predict, LR, init)
    # the update consumes this iteration's lr; the counter and lr advance after it
    add_update_op(init, predict, lr)
    add_iter_lr_ops(init, predict, base_lr, it, lr, **schedule)
    return init, predict

def add_super_naive(init, predict, label_index, base_lr, size_to_fit=None, **schedule):
    """Dream toward class ``label_index`` of the full network."""
    label = fresh_name(predict, LABEL, init)
    add_xent_objective_ops(predict, predict.primary_output, label, init)
    init.add_node(OpKind.CONSTANT_FILL, [], [label], shape=[1], value=int(label_index), dtype="i64")
    add_gradient_ops(predict)
    add_input_fill(init, predict, size_to_fit)
    it, lr = fresh_name(predict, ITER, init), fresh_name(predict, LR, init)
    add_update_op(init, predict, lr)
    add_iter_lr_ops(init, predict, base_lr, it, lr, **schedule)
    return init, predict
