"""Execution engine: runs an augmented init/predict pair as a dream loop.

States::

    UNINITIALIZED --instantiate--> READY --run_init--> RUNNING
    RUNNING --report--> REPORTING --> RUNNING
    RUNNING --iterations done / fault--> TERMINAL

Each predict run reads the input cell, runs the forward, gradient and update
nodes, and leaves the ascended tensor in the cell for the next run. Nothing
else carries state between iterations apart from the iteration counter and
learning-rate blobs the graph maintains itself.
"""

from enum import Enum
from typing import Callable, Optional

import numpy as np

from ir.ir import Device, OpKind
from ir.errors import ExecutionError, GraphInstantiationError
from passes.device import graph_device
from runtime.net import create_net
from runtime.reporter import Snapshot
from runtime.workspace import Workspace


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    RUNNING = "running"
    REPORTING = "reporting"
    TERMINAL = "terminal"


class DreamEngine:
    def __init__(self, init, predict, device: Device = Device.DEFAULT,
                 seed: Optional[int] = None, verbose: bool = False):
        self.init = init
        self.predict = predict
        self.device = device
        self.seed = seed
        self.verbose = verbose
        self.state = EngineState.UNINITIALIZED
        self.workspace: Optional[Workspace] = None
        self.init_net = None
        self.predict_net = None
        self.completed = 0
        self.last_report = 0
        self._stop = False
        # score is the predict output; counter and rate are what its Iter and LearningRate nodes write
        self.score_name = predict.external_outputs[0] if predict.external_outputs else None
        self.iter_name = self._written_by(OpKind.ITER)
        self.lr_name = self._written_by(OpKind.LEARNING_RATE)

    def _require(self, *states):
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise RuntimeError(f"engine is {self.state.value}, expected {allowed}")

    @property
    def input_name(self) -> str:
        return self.predict.primary_input

    def _written_by(self, kind: OpKind) -> Optional[str]:
        for node in self.predict.nodes:
            if node.op == kind:
                return node.outputs[0]
        return None

    def instantiate(self):
        self._require(EngineState.UNINITIALIZED)
        for g in (self.init, self.predict):
            try:
                placed = graph_device(g)
            except ValueError as e:
                raise GraphInstantiationError(str(e)) from e
            if g.nodes and placed != self.device:
                raise GraphInstantiationError(f"{g.name} is placed on {placed.value}, engine runs on {self.device.value}")
        self.workspace = Workspace(self.seed)
        self.init_net = create_net(self.init, self.workspace)
        self.predict_net = create_net(self.predict, self.workspace, self.init)
        self.state = EngineState.READY
        if self.verbose:
            print(f"instantiated {self.init.name} ({len(self.init.nodes)} ops) and "
                  f"{self.predict.name} ({len(self.predict.nodes)} ops) on {self.device.value}")
        return self

    def run_init(self):
        self._require(EngineState.READY)
        self.init_net.run()
        self.workspace.bind_input(self.input_name)
        rewritten = set(self.predict.produced_blobs())
        for name in self.init.produced_blobs():
            if name not in rewritten:
                self.workspace.freeze(name)
        self.state = EngineState.RUNNING
        return self

    def set_input(self, tensor):
        """Replace the optimized tensor, e.g. with a decoded image."""
        self._require(EngineState.RUNNING)
        try:
            self.workspace.feed(self.input_name, np.asarray(tensor, dtype=np.float32))
        except ValueError as e:
            raise GraphInstantiationError(str(e)) from e

    def request_stop(self):
        """Stop at the next iteration boundary."""
        self._stop = True

    def snapshot(self) -> Snapshot:
        ws = self.workspace

        def scalar(name, default):
            return ws.fetch_scalar(name) if name and ws.has_value(name) else default

        return Snapshot(
            iteration=int(scalar(self.iter_name, self.completed)),
            learning_rate=scalar(self.lr_name, float("nan")),
            score=scalar(self.score_name, float("nan")),
            tensor=ws.input_tensor().copy(),
        )

    @property
    def tensor(self) -> np.ndarray:
        return self.workspace.input_tensor()

    def _check_finite(self):
        for name in (self.input_name, self.score_name):
            if name and self.workspace.has_value(name) and not np.all(np.isfinite(self.workspace.fetch(name))):
                raise FloatingPointError(f"non-finite values in {name}")

    def step(self):
        """One predict run; raises ExecutionError naming the iteration on any fault."""
        iteration = self.completed + 1
        try:
            with np.errstate(over="raise", invalid="raise", divide="raise"):
                self.predict_net.run()
            self._check_finite()
        except (ArithmeticError, ValueError, KeyError, IndexError) as e:
            self.state = EngineState.TERMINAL
            raise ExecutionError(iteration, f"{type(e).__name__}: {e}") from e
        self.completed = iteration

    def run(self, iterations: int, report_every: int = 0,
            reporter: Optional[Callable[[Snapshot], None]] = None) -> np.ndarray:
        if self.state == EngineState.UNINITIALIZED:
            self.instantiate()
        if self.state == EngineState.READY:
            self.run_init()
        self._require(EngineState.RUNNING)

        for _ in range(int(iterations)):
            if self._stop:
                break
            try:
                self.step()
            except ExecutionError:
                if reporter is not None and self.completed > self.last_report:
                    reporter(self.snapshot())
                raise
            if reporter is not None and report_every and self.completed % report_every == 0:
                self.state = EngineState.REPORTING
                reporter(self.snapshot())
                self.last_report = self.completed
                self.state = EngineState.RUNNING

        self.state = EngineState.TERMINAL
        return self.tensor
