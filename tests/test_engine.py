"""Dream loop: state machine, iteration bookkeeping and ascent behaviour."""

import numpy as np
import pytest

from ir.ir import Device
from ir.errors import ExecutionError, GraphInstantiationError
from frontends.onnx.importer import load
from passes.augment import add_naive, add_super_naive, ITER, LR
from passes.device import place_on_accelerator
from passes.split import split_model
from runtime.engine import DreamEngine, EngineState
from runtime.reporter import TelemetryReporter


def naive_engine(pair, channel=0, base_lr=0.1, size=4, seed=0, **schedule):
    init, predict = pair.init, pair.predict
    add_naive(init, predict, channel, base_lr, size, **schedule)
    return DreamEngine(init, predict, seed=seed)


@pytest.fixture
def toy_split(toy_onnx):
    pair = load(str(toy_onnx))
    fi, fp, _, _ = split_model(pair.init, pair.predict, "mid")
    return fi, fp


class TestStates:
    def test_lifecycle(self, chain_pair):
        engine = naive_engine(chain_pair)
        assert engine.state == EngineState.UNINITIALIZED
        engine.instantiate()
        assert engine.state == EngineState.READY
        engine.run_init()
        assert engine.state == EngineState.RUNNING
        engine.run(2)
        assert engine.state == EngineState.TERMINAL
        with pytest.raises(RuntimeError, match="terminal"):
            engine.run(1)

    def test_set_input_needs_running(self, chain_pair):
        engine = naive_engine(chain_pair).instantiate()
        with pytest.raises(RuntimeError, match="ready"):
            engine.set_input(np.zeros((1, 3, 4, 4)))

    def test_set_input_shape_checked(self, chain_pair):
        engine = naive_engine(chain_pair).instantiate().run_init()
        with pytest.raises(GraphInstantiationError):
            engine.set_input(np.zeros((1, 3, 5, 5)))

    def test_device_tags_must_match(self, chain_pair):
        init, predict = chain_pair.init, chain_pair.predict
        add_naive(init, predict, 0, 0.1, 4)
        place_on_accelerator(predict)
        with pytest.raises(GraphInstantiationError, match="accelerator"):
            DreamEngine(init, predict, Device.DEFAULT).instantiate()
        place_on_accelerator(init)
        DreamEngine(init, predict, Device.ACCELERATOR).instantiate()

    def test_request_stop(self, chain_pair):
        engine = naive_engine(chain_pair)
        seen = []

        def reporter(snap):
            seen.append(snap.iteration)
            if snap.iteration == 3:
                engine.request_stop()

        engine.run(10, report_every=1, reporter=reporter)
        assert seen == [1, 2, 3]
        assert engine.completed == 3


class TestIterations:
    def test_zero_iterations_leave_the_input_untouched(self, chain_pair):
        engine = naive_engine(chain_pair).instantiate().run_init()
        start = engine.tensor.copy()
        engine.run(0)
        np.testing.assert_array_equal(engine.tensor, start)
        assert engine.workspace.fetch_scalar(ITER) == 0

    def test_counter_advances_by_runs(self, chain_pair):
        engine = naive_engine(chain_pair, base_lr=0.5, gamma=0.9)
        engine.run(5)
        assert engine.workspace.fetch_scalar(ITER) == 5
        assert engine.workspace.fetch_scalar(LR) == pytest.approx(0.5 * 0.9 ** 5, rel=1e-6)
        assert engine.workspace.cell.updates == 5

    @pytest.mark.parametrize("policy", ["exp", "inv"])
    def test_rate_positive_and_non_increasing(self, chain_pair, policy):
        engine = naive_engine(chain_pair, base_lr=0.5, policy=policy, gamma=0.8)
        reporter = TelemetryReporter(quiet=True)
        engine.run(6, report_every=1, reporter=reporter)
        rates = reporter.rates()
        assert len(rates) == 6
        assert all(r > 0 for r in rates)
        assert all(b <= a for a, b in zip(rates, rates[1:]))

    def test_nothing_but_input_and_counters_change(self, chain_pair):
        engine = naive_engine(chain_pair).instantiate().run_init()
        weights = engine.workspace.fetch("cw").copy()
        engine.run(3)
        np.testing.assert_array_equal(engine.workspace.fetch("cw"), weights)
        assert not engine.workspace.fetch("cw").flags.writeable


class TestAscent:
    def test_toy_golden_step(self, toy_split, toy_weights):
        # one step on channel 0 of a 1x1 conv moves input channel k by lr * W[0, k] / (H * W)
        init, predict = toy_split
        add_naive(init, predict, channel=0, base_lr=1.0, size_to_fit=2)
        engine = DreamEngine(init, predict, seed=0).instantiate().run_init()
        x0 = np.arange(12, dtype=np.float32).reshape(1, 3, 2, 2) / 10
        engine.set_input(x0)
        engine.run(1)

        W, b = toy_weights
        expected = x0 + W[0].reshape(1, 3, 1, 1) / 4
        np.testing.assert_allclose(engine.tensor, expected, rtol=1e-6)
        score = (W[0, :, 0, 0] * x0[0].mean(axis=(1, 2))).sum() + b[0]
        assert engine.snapshot().score == pytest.approx(score, rel=1e-5)

    def test_naive_score_non_decreasing(self, toy_split):
        init, predict = toy_split
        add_naive(init, predict, channel=1, base_lr=0.5, size_to_fit=2)
        reporter = TelemetryReporter(quiet=True)
        DreamEngine(init, predict, seed=3).run(8, report_every=1, reporter=reporter)
        scores = reporter.scores()
        assert all(b >= a for a, b in zip(scores, scores[1:]))
        assert scores[-1] > scores[0]

    def test_super_naive_moves_toward_label(self, toy_onnx):
        pair = load(str(toy_onnx))
        init, predict = pair.init, pair.predict
        add_super_naive(init, predict, label_index=2, base_lr=0.05)
        reporter = TelemetryReporter(quiet=True)
        DreamEngine(init, predict, seed=1).run(30, report_every=1, reporter=reporter)
        scores = reporter.scores()
        assert all(s <= 0 for s in scores)
        assert all(b >= a - 1e-6 for a, b in zip(scores, scores[1:]))
        assert scores[-1] > scores[0]

    def test_chain_gradient_matches_finite_difference(self, chain_pair):
        init, predict = chain_pair.init, chain_pair.predict
        add_naive(init, predict, channel=1, base_lr=1e-3, size_to_fit=4, gamma=1.0)
        engine = DreamEngine(init, predict, seed=5).instantiate().run_init()
        x0 = engine.tensor.astype(np.float64)

        def score_at(x):
            engine.workspace.feed("x", x.astype(np.float32))
            engine.predict_net.run()
            return engine.workspace.fetch_scalar("score")

        score_at(x0)
        grad = engine.workspace.fetch("x_grad").astype(np.float64).copy()
        eps = 1e-3
        for idx in [(0, 0, 0, 0), (0, 1, 2, 3), (0, 2, 3, 1)]:
            xp, xm = x0.copy(), x0.copy()
            xp[idx] += eps
            xm[idx] -= eps
            numeric = (score_at(xp) - score_at(xm)) / (2 * eps)
            assert grad[idx] == pytest.approx(numeric, abs=1e-3)


class TestFaults:
    def test_overflow_names_iteration_and_flushes(self, square_pair):
        init, predict = square_pair.init, square_pair.predict
        add_naive(init, predict, channel=0, base_lr=1e20, size_to_fit=2)
        engine = DreamEngine(init, predict, seed=0).instantiate().run_init()
        engine.set_input(np.ones((1, 1, 2, 2), dtype=np.float32))
        reporter = TelemetryReporter(quiet=True)
        with pytest.raises(ExecutionError) as exc:
            engine.run(5, report_every=10, reporter=reporter)
        assert exc.value.iteration == 2
        assert engine.state == EngineState.TERMINAL
        assert len(reporter.history) == 1

    def test_non_finite_input_rejected(self, toy_split):
        init, predict = toy_split
        add_naive(init, predict, channel=0, base_lr=1.0, size_to_fit=2)
        engine = DreamEngine(init, predict).instantiate().run_init()
        engine.set_input(np.full((1, 3, 2, 2), np.inf, dtype=np.float32))
        with pytest.raises(ExecutionError, match="iteration 1"):
            engine.run(3)
