"""Dispatch table from operator kind to its evaluators.

Every :class:`OpKind` has exactly one :class:`OpSchema`. ``differentiable``
lists the input positions the gradient kernel can produce; ops without a
gradient kernel (fills, bookkeeping, the update rule) never appear on the
path between the input blob and the objective.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from ir.ir import OpKind
from runtime import kernels as K
from runtime import grad_kernels as G


@dataclass(frozen=True)
class OpSchema:
    kind: OpKind
    forward: Callable
    gradient: Optional[Callable] = None
    differentiable: Tuple[int, ...] = ()
    all_inputs: bool = False

    def differentiates(self, idx: int) -> bool:
        return self.gradient is not None and (self.all_inputs or idx in self.differentiable)


def gradient_forward(ins, a, ws):
    """Evaluator of a Gradient node: unpack its operands and defer to the forward kind's rule."""
    if not a["grad_inputs"]:
        return []
    schema = SCHEMAS[OpKind.parse(a["forward_op"])]
    n_in, n_out = int(a["n_inputs"]), int(a["n_outputs"])
    fwd_ins = ins[:n_in]
    fwd_outs = ins[n_in:n_in + n_out]
    douts = [None] * n_out
    for idx, g in zip(a["grad_outputs"], ins[n_in + n_out:]):
        douts[idx] = g
    wanted = set(a["grad_inputs"])
    grads = schema.gradient(fwd_ins, fwd_outs, douts, a, wanted)
    return [grads[i] for i in a["grad_inputs"]]


SCHEMAS = {s.kind: s for s in [
    OpSchema(OpKind.CONV, K.conv, G.conv_grad, (0,)),
    OpSchema(OpKind.RELU, K.relu, G.relu_grad, (0,)),
    OpSchema(OpKind.MAX_POOL, K.max_pool, G.max_pool_grad, (0,)),
    OpSchema(OpKind.AVERAGE_POOL, K.average_pool, G.average_pool_grad, (0,)),
    OpSchema(OpKind.GLOBAL_AVERAGE_POOL, K.global_average_pool, G.global_average_pool_grad, (0,)),
    OpSchema(OpKind.GEMM, K.gemm, G.gemm_grad, (0, 1, 2)),
    OpSchema(OpKind.MATMUL, K.matmul, G.matmul_grad, (0, 1)),
    OpSchema(OpKind.ADD, K.add, G.add_grad, (0, 1)),
    OpSchema(OpKind.MUL, K.mul, G.mul_grad, (0, 1)),
    OpSchema(OpKind.FLATTEN, K.flatten, G.reshape_like_grad, (0,)),
    OpSchema(OpKind.RESHAPE, K.reshape, G.reshape_like_grad, (0,)),
    OpSchema(OpKind.SOFTMAX, K.softmax, G.softmax_grad, (0,)),
    OpSchema(OpKind.CONCAT, K.concat, G.concat_grad, all_inputs=True),
    OpSchema(OpKind.LRN, K.lrn, G.lrn_grad, (0,)),
    OpSchema(OpKind.DROPOUT, K.dropout, G.pass_through_grad, (0,)),
    OpSchema(OpKind.IDENTITY, K.identity, G.pass_through_grad, (0,)),
    OpSchema(OpKind.BATCH_NORM, K.batch_norm, G.batch_norm_grad, (0,)),
    OpSchema(OpKind.CHANNEL_SELECT, K.channel_select, G.channel_select_grad, (0,)),
    OpSchema(OpKind.REDUCE_MEAN, K.reduce_mean, G.reduce_mean_grad, (0,)),
    OpSchema(OpKind.LABEL_CROSS_ENTROPY, K.label_cross_entropy, G.label_cross_entropy_grad, (0,)),
    OpSchema(OpKind.AVERAGED_LOSS, K.averaged_loss, G.averaged_loss_grad, (0,)),
    OpSchema(OpKind.SCALE, K.scale, G.scale_grad, (0,)),
    OpSchema(OpKind.CONSTANT_FILL, K.constant_fill),
    OpSchema(OpKind.UNIFORM_FILL, K.uniform_fill),
    OpSchema(OpKind.GIVEN_TENSOR_FILL, K.given_tensor_fill),
    OpSchema(OpKind.ITER, K.iter_op),
    OpSchema(OpKind.LEARNING_RATE, K.learning_rate),
    OpSchema(OpKind.WEIGHTED_SUM, K.weighted_sum),
    OpSchema(OpKind.GRADIENT, gradient_forward),
]}


def schema_for(kind: OpKind) -> OpSchema:
    try:
        return SCHEMAS[kind]
    except KeyError:
        raise KeyError(f"no schema registered for {kind}") from None
