import numpy as np
import pytest

from ir.ir import BlobSpec, Device
from ir.errors import GraphInstantiationError
from passes.device import place_on_accelerator, place_on_default, graph_device
from runtime.device import select_device, multiplier
from runtime.net import create_net
from runtime.workspace import Workspace


@pytest.fixture
def ws():
    w = Workspace(seed=0)
    w.declare(BlobSpec("x", "f32", [2, 2]))
    w.declare(BlobSpec("n", "i64", [1]))
    return w


class TestWorkspace:
    def test_write_checks_shape_and_kind(self, ws):
        ws.write("x", np.ones((2, 2), dtype=np.float64))
        assert ws.fetch("x").dtype == np.float32
        with pytest.raises(ValueError, match="shape"):
            ws.write("x", np.ones((3,)))
        with pytest.raises(ValueError, match="dtype"):
            ws.write("n", np.array([1.5]))
        with pytest.raises(KeyError):
            ws.write("missing", np.ones(1))

    def test_redeclare_must_agree(self, ws):
        ws.declare(BlobSpec("x", "f32", [2, 2]))
        with pytest.raises(ValueError, match="already declared"):
            ws.declare(BlobSpec("x", "f32", [4]))

    def test_frozen_blobs_are_read_only(self, ws):
        ws.write("n", np.array([3]))
        ws.freeze("n")
        with pytest.raises(ValueError, match="read-only"):
            ws.write("n", np.array([4]))
        with pytest.raises(ValueError, match="read-only"):
            ws.feed("n", np.array([4]))
        with pytest.raises(ValueError):
            ws.fetch("n")[0] = 5

    def test_input_cell(self, ws):
        ws.write("x", np.zeros((2, 2)))
        cell = ws.bind_input("x")
        ws.write("x", np.ones((2, 2)))
        assert cell.updates == 1
        np.testing.assert_array_equal(ws.input_tensor(), np.ones((2, 2)))
        with pytest.raises(ValueError, match="optimized input"):
            ws.freeze("x")

    def test_fetch_before_write(self, ws):
        assert not ws.has_value("x")
        with pytest.raises(KeyError, match="no value"):
            ws.fetch("x")

    def test_feed_declares_unknown_blobs(self, ws):
        ws.feed("label", np.array([7]))
        assert ws.specs()["label"] == BlobSpec("label", "i64", [1])
        assert ws.fetch_scalar("label") == 7


class TestCreateNet:
    def test_malformed_graph(self, chain_pair):
        with pytest.raises(GraphInstantiationError, match="undefined blob"):
            create_net(chain_pair.predict, Workspace())

    def test_specs_declared_for_every_blob(self, chain_pair):
        ws = Workspace()
        create_net(chain_pair.init, ws)
        create_net(chain_pair.predict, ws, chain_pair.init)
        specs = ws.specs()
        assert specs["conv"].shape == [1, 4, 4, 4]
        assert specs["pool"].shape == [1, 4, 2, 2]
        assert specs["prob"].shape == [1, 3]

    def test_shape_mismatch_caught_at_instantiation(self, chain_pair):
        chain_pair.predict.nodes[5].inputs = ["pool", "fw"]  # Gemm on a 4-D tensor
        ws = Workspace()
        create_net(chain_pair.init, ws)
        with pytest.raises(GraphInstantiationError, match="Gemm"):
            create_net(chain_pair.predict, ws, chain_pair.init)


class TestPlacement:
    def test_placement_is_idempotent(self, chain_pair):
        g = chain_pair.predict
        once = place_on_accelerator(g.copy())
        twice = place_on_accelerator(place_on_accelerator(g.copy()))
        assert [n.to_json() for n in once.nodes] == [n.to_json() for n in twice.nodes]
        assert graph_device(once) == Device.ACCELERATOR
        assert graph_device(place_on_default(once)) == Device.DEFAULT

    def test_mixed_placement_rejected(self, chain_pair):
        g = chain_pair.predict
        g.nodes[0].device = Device.ACCELERATOR
        with pytest.raises(ValueError, match="mixed"):
            graph_device(g)

    def test_force_cpu_wins(self):
        assert select_device(force_cpu=True) == Device.DEFAULT

    def test_multiplier(self):
        assert multiplier(Device.DEFAULT) == 1
        assert multiplier(Device.ACCELERATOR) == 10
        assert multiplier(Device.ACCELERATOR, 4) == 4

    def test_falls_back_without_accelerator(self, monkeypatch):
        import onnxruntime as ort
        monkeypatch.setattr(ort, "get_available_providers", lambda: ["CPUExecutionProvider"])
        assert select_device(force_cpu=False) == Device.DEFAULT
        monkeypatch.setattr(ort, "get_available_providers", lambda: ["CUDAExecutionProvider", "CPUExecutionProvider"])
        assert select_device(force_cpu=False) == Device.ACCELERATOR
