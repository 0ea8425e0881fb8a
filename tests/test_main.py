"""End-to-end runs through ``dream`` and the config layer."""

import numpy as np
import pytest

import main
from config import DreamConfig
from ir.errors import LabelNotFoundError, LayerNotFoundError, ModelLoadError
from frontends.image import write_image_tensor
from runtime.reporter import Snapshot, TelemetryReporter


def toy_config(root, **kw):
    cfg = dict(model="toy", layer="mid", channel=0, learning_rate=1.0, train_runs=1,
               size_to_fit=2, force_cpu=True, image_file=None, label="cat",
               model_root=str(root), labels_file=str(root / "toy_classes.txt"), seed=0)
    cfg.update(kw)
    return DreamConfig(**cfg)


class TestDream:
    def test_golden_toy_run(self, toy_root, toy_weights, capsys):
        snap = main.dream(toy_config(toy_root))
        x0 = np.random.default_rng(0).uniform(-1.0, 1.0, size=(1, 3, 2, 2)).astype(np.float32)
        expected = x0 + toy_weights[0][0].reshape(1, 3, 1, 1) / 4
        np.testing.assert_allclose(snap.tensor, expected, rtol=1e-6)
        assert snap.iteration == 1

        out = capsys.readouterr().out
        assert "model: toy" in out and "force_cpu: true" in out
        assert "loading model.." in out and "running model.." in out
        assert "load: " in out and "dream: " in out

    def test_reports_every_interval(self, toy_root, capsys):
        reporter = TelemetryReporter()
        main.dream(toy_config(toy_root, train_runs=25, report_every=10, learning_rate=0.1), reporter)
        assert [s.iteration for s in reporter.history] == [10, 20]
        assert "step: 10  rate: " in capsys.readouterr().out

    def test_super_naive_full_graph(self, toy_root):
        reporter = TelemetryReporter(quiet=True)
        main.dream(toy_config(toy_root, mode="super-naive", train_runs=6, report_every=1,
                              learning_rate=0.05), reporter)
        scores = reporter.scores()
        assert len(scores) == 6 and scores[-1] > scores[0]

    def test_writes_output_image(self, toy_root):
        out = toy_root / "dream.png"
        main.dream(toy_config(toy_root, output_file=str(out)))
        assert out.exists()

    def test_unknown_label_before_model(self, toy_root):
        cfg = toy_config(toy_root, label="zebra", model="not-there")
        with pytest.raises(LabelNotFoundError) as exc:
            main.dream(cfg)
        assert exc.value.classes == ["ant", "bee", "cat"]
        assert not list(toy_root.glob("*_init_net.json"))

    def test_unknown_layer_before_split(self, toy_root):
        with pytest.raises(LayerNotFoundError) as exc:
            main.dream(toy_config(toy_root, layer="fc7"))
        assert "mid" in exc.value.available

    def test_missing_model(self, toy_root):
        with pytest.raises(ModelLoadError, match="vgg"):
            main.dream(toy_config(toy_root, model="vgg"))

    def test_naive_without_label_file(self, toy_root):
        snap = main.dream(toy_config(toy_root, labels_file=str(toy_root / "none.txt"), label="zebra"))
        assert snap.iteration == 1


class TestCheckpoints:
    def test_checkpoint_directory_is_created(self, tmp_path):
        pattern = str(tmp_path / "out" / "dream_{iteration}.png")
        reporter = TelemetryReporter(write=write_image_tensor, out_pattern=pattern, quiet=True)
        reporter(Snapshot(10, 0.5, -1.0, np.zeros((1, 3, 2, 2), dtype=np.float32)))
        assert (tmp_path / "out" / "dream_10.png").exists()
        assert reporter.history[0].tensor is None

    def test_checkpoints_from_dream(self, toy_root):
        main.dream(toy_config(toy_root, train_runs=2, report_every=1,
                              checkpoint_pattern=str(toy_root / "ck" / "{iteration}.png")))
        assert sorted(p.name for p in (toy_root / "ck").iterdir()) == ["1.png", "2.png"]


class TestConfig:
    def test_defaults_follow_the_original_flags(self):
        cfg = DreamConfig()
        assert (cfg.model, cfg.layer, cfg.channel, cfg.label) == ("alexnet", "pool5", 3, "Chihuahua")
        assert (cfg.size_to_fit, cfg.learning_rate, cfg.force_cpu) == (224, 1e3, False)
        assert cfg.iterations(1) == 200 and cfg.iterations(10) == 2000

    def test_env_overrides(self):
        cfg = DreamConfig().from_env({"DREAM_LR_GAMMA": "0.5", "DREAM_REPORT_EVERY": "3",
                                      "DREAM_LR_POLICY": "inv", "DREAM_SEED": "9"})
        assert (cfg.lr_gamma, cfg.report_every, cfg.lr_policy, cfg.seed) == (0.5, 3, "inv", 9)
        assert cfg.schedule() == {"policy": "inv", "gamma": 0.5, "power": 1.0}

    @pytest.mark.parametrize("field,value", [
        ("channel", -1), ("size_to_fit", 0), ("learning_rate", 0.0), ("train_runs", -5),
        ("lr_policy", "cosine"), ("lr_policy", "step"), ("lr_gamma", 1.5), ("mode", "dreamy"), ("model", ""),
    ])
    def test_validate_rejects(self, field, value):
        cfg = DreamConfig(**{field: value})
        with pytest.raises(ValueError):
            cfg.validate()

    def test_cli_flags(self):
        cfg = main.parse_args(["--model", "toy", "--layer", "mid", "--train-runs", "3",
                               "--force-cpu", "--super-naive", "--labels", "l.txt"])
        assert (cfg.model, cfg.layer, cfg.train_runs, cfg.force_cpu) == ("toy", "mid", 3, True)
        assert cfg.mode == "super-naive" and cfg.labels_file == "l.txt"
        assert main.parse_args([]).labels_file == DreamConfig().labels_file
