#!/usr/bin/env python3
from pathlib import Path
import argparse, signal, sys, time

ROOT = Path(__file__).resolve().parent
sys.path.insert(0, str(ROOT))

from config import DreamConfig
from ir.ir import Device
from ir.errors import ModelLoadError, LayerNotFoundError, LabelNotFoundError
from frontends.models import ensure_model, load_model, ClassTable
from frontends.image import read_image_tensor, write_image_tensor, normalize_tensor, render_tensor
from passes.split import split_model, check_layer_available, available_layers
from passes.augment import add_naive, add_super_naive
from passes.device import place_on_accelerator
from runtime.device import select_device, multiplier
from runtime.engine import DreamEngine
from runtime.reporter import TelemetryReporter

PARAMS = ("model", "layer", "channel", "image_file", "label", "train_runs",
          "size_to_fit", "learning_rate", "force_cpu")


def print_params(cfg: DreamConfig, train_runs: int):
    print()
    print("## Deep Dream ##")
    print()
    for k in PARAMS:
        v = train_runs if k == "train_runs" else getattr(cfg, k)
        if isinstance(v, bool):
            v = str(v).lower()
        print(f"{k}: {v}")
    print()

def lookup_label(cfg: DreamConfig):
    """Class index of ``cfg.label``; naive runs without a label file skip the lookup."""
    path = Path(cfg.labels_file)
    if cfg.mode == "naive" and not path.exists():
        if cfg.verbose:
            print(f"no label file at {path}, skipping label lookup")
        return None
    return ClassTable.from_file(path).index(cfg.label)

def build_graphs(cfg: DreamConfig, pair, device: Device, label_index):
    """Split/augment ``pair`` for the configured mode; returns ``(init, predict)``."""
    schedule = cfg.schedule()
    if cfg.mode == "naive":
        init, predict, _, _ = split_model(pair.init, pair.predict, cfg.layer,
                                          force_cpu=device != Device.ACCELERATOR)
        add_naive(init, predict, cfg.channel, cfg.learning_rate, cfg.size_to_fit, **schedule)
    else:
        init, predict = pair.init.copy(), pair.predict.copy()
        add_super_naive(init, predict, label_index, cfg.learning_rate, cfg.size_to_fit, **schedule)
    if device == Device.ACCELERATOR:
        place_on_accelerator(init)
        place_on_accelerator(predict)
    return init, predict

def dream(cfg: DreamConfig, reporter=None):
    """Run one dream job end to end; returns the engine's final snapshot."""
    cfg.validate()
    device = select_device(cfg.force_cpu, cfg.verbose)
    mult = multiplier(device, cfg.accelerator_multiplier)
    train_runs = cfg.iterations(mult)
    print_params(cfg, train_runs)

    # unknown labels abort before any model file is touched
    label_index = lookup_label(cfg)

    print("loading model..")
    load_time = -time.perf_counter()
    if not ensure_model(cfg.model, cfg.model_root, cfg.verbose):
        raise ModelLoadError(Path(cfg.model_root) / cfg.model, f"model {cfg.model} not found")
    pair = load_model(cfg.model, cfg.model_root)
    load_time += time.perf_counter()

    if cfg.mode == "naive" and not check_layer_available(pair.predict, cfg.layer):
        raise LayerNotFoundError(cfg.layer, available_layers(pair.predict))
    init, predict = build_graphs(cfg, pair, device, label_index)

    engine = DreamEngine(init, predict, device, seed=cfg.seed, verbose=cfg.verbose)
    engine.instantiate().run_init()
    if cfg.image_file and Path(cfg.image_file).exists():
        engine.set_input(read_image_tensor(cfg.image_file, cfg.size_to_fit))
    elif cfg.verbose:
        print("starting from uniform noise")

    if reporter is None:
        reporter = TelemetryReporter(
            render=render_tensor if cfg.show else None,
            write=write_image_tensor if cfg.checkpoint_pattern else None,
            out_pattern=cfg.checkpoint_pattern,
        )

    print("running model..")
    previous = signal.signal(signal.SIGINT, lambda *_: engine.request_stop())
    dream_time = -time.perf_counter()
    try:
        engine.run(train_runs, cfg.report_every * mult, reporter)
    finally:
        dream_time += time.perf_counter()
        signal.signal(signal.SIGINT, previous)

    if cfg.output_file:
        write_image_tensor(normalize_tensor(engine.tensor), cfg.output_file)
        print("wrote:", cfg.output_file)
    print()
    print(f"load: {load_time:.3g}s  dream: {dream_time:.3g}s")
    return engine.snapshot()

def parse_args(argv=None) -> DreamConfig:
    d = DreamConfig()
    ap = argparse.ArgumentParser(description="model → split → augment → gradient ascent on the input")
    ap.add_argument("--model", default=d.model, help="model name, res/<model>_init_net.json or <model>.onnx")
    ap.add_argument("--layer", default=d.layer, help="blob to split the predict graph at")
    ap.add_argument("--channel", type=int, default=d.channel, help="channel of --layer to maximize")
    ap.add_argument("--image-file", dest="image_file", default=d.image_file, help="start from this image when it exists")
    ap.add_argument("--label", default=d.label, help="class label to dream toward (super-naive)")
    ap.add_argument("--train-runs", dest="train_runs", type=int, default=None,
                    help="iterations; default 200 x device multiplier")
    ap.add_argument("--size-to-fit", dest="size_to_fit", type=int, default=d.size_to_fit)
    ap.add_argument("--learning-rate", dest="learning_rate", type=float, default=d.learning_rate)
    ap.add_argument("--force-cpu", dest="force_cpu", action="store_true", help="never use an accelerator")
    ap.add_argument("--super-naive", dest="mode", action="store_const", const="super-naive", default=d.mode,
                    help="maximize --label on the full network instead of a channel")
    ap.add_argument("--labels", dest="labels_file", default=None, help="class label file, one per line")
    ap.add_argument("-o", "--out", dest="output_file", default=None, help="write the final tensor as an image")
    ap.add_argument("--checkpoint", dest="checkpoint_pattern", default=None,
                    help="write an image every report, e.g. out/dream_{iteration}.jpg")
    ap.add_argument("--show", action="store_true", help="display the tensor every report")
    ap.add_argument("-v", "--verbose", action="store_true")
    args = ap.parse_args(argv)

    cfg = DreamConfig().from_env()
    for k, v in vars(args).items():
        if k == "labels_file" and v is None:
            continue
        setattr(cfg, k, v)
    return cfg

def main(argv=None):
    cfg = parse_args(argv)
    snap = dream(cfg)
    if cfg.verbose:
        print(snap.line())

if __name__ == "__main__":
    try:
        main()
    except ModelLoadError as e:
        print(f"error: {e}", file=sys.stderr); sys.exit(2)
    except LabelNotFoundError as e:
        print(f"error: {e}", file=sys.stderr)
        for c in e.classes:
            print(f"  {c}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr); sys.exit(1)
