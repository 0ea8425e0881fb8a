import os
from dataclasses import dataclass, fields
from typing import Optional

LR_POLICIES = ("exp", "inv")
MODES = ("naive", "super-naive")


@dataclass
class DreamConfig:
    model: str = "alexnet"
    layer: str = "pool5"
    channel: int = 3
    image_file: Optional[str] = "res/image_file.jpg"
    label: str = "Chihuahua"
    train_runs: Optional[int] = None  # None: 200 x device multiplier
    size_to_fit: int = 224
    learning_rate: float = 1e3
    force_cpu: bool = False
    mode: str = "naive"
    # environment-tuned constants
    lr_policy: str = "exp"
    lr_gamma: float = 0.999
    lr_power: float = 1.0
    report_every: int = 10  # scaled by the device multiplier
    accelerator_multiplier: int = 10
    seed: Optional[int] = None
    model_root: str = "res"
    labels_file: str = "res/imagenet_classes.txt"
    output_file: Optional[str] = None
    checkpoint_pattern: Optional[str] = None  # e.g. "out/dream_{iteration}.jpg"
    show: bool = False
    verbose: bool = False

    ENV = {
        "lr_policy": "DREAM_LR_POLICY",
        "lr_gamma": "DREAM_LR_GAMMA",
        "lr_power": "DREAM_LR_POWER",
        "report_every": "DREAM_REPORT_EVERY",
        "accelerator_multiplier": "DREAM_ACCEL_MULTIPLIER",
        "seed": "DREAM_SEED",
        "model_root": "DREAM_MODEL_ROOT",
        "labels_file": "DREAM_LABELS",
    }

    def from_env(self, environ=None) -> "DreamConfig":
        """Apply DREAM_* overrides in place."""
        environ = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(self)}
        for attr, var in self.ENV.items():
            if var not in environ:
                continue
            raw = environ[var]
            t = types[attr]
            if t in (int, "int", Optional[int], "Optional[int]"):
                setattr(self, attr, int(raw))
            elif t in (float, "float"):
                setattr(self, attr, float(raw))
            else:
                setattr(self, attr, raw)
        return self

    def schedule(self) -> dict:
        return dict(policy=self.lr_policy, gamma=self.lr_gamma, power=self.lr_power)

    def iterations(self, multiplier: int) -> int:
        return self.train_runs if self.train_runs is not None else 200 * multiplier

    def validate(self):
        if not self.model:
            raise ValueError("specify a model name using --model <name>")
        if self.mode not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {self.mode!r}")
        if self.mode == "super-naive" and not self.label:
            raise ValueError("specify a label name using --label <name>")
        if self.mode == "naive" and not self.layer:
            raise ValueError("specify a layer name using --layer <name>")
        if self.channel < 0:
            raise ValueError(f"channel must be >= 0, got {self.channel}")
        if self.train_runs is not None and self.train_runs < 0:
            raise ValueError(f"train_runs must be >= 0, got {self.train_runs}")
        if self.size_to_fit <= 0:
            raise ValueError(f"size_to_fit must be positive, got {self.size_to_fit}")
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive, got {self.learning_rate}")
        if self.lr_policy not in LR_POLICIES:
            raise ValueError(f"lr_policy must be one of {LR_POLICIES}, got {self.lr_policy!r}")
        if not 0 < self.lr_gamma <= 1 and self.lr_policy != "inv":
            raise ValueError(f"lr_gamma must be in (0, 1] for {self.lr_policy}, got {self.lr_gamma}")
        if self.lr_policy == "inv" and (self.lr_gamma < 0 or self.lr_power < 0):
            raise ValueError("inv schedule needs gamma >= 0 and power >= 0")
        if self.report_every < 0 or self.accelerator_multiplier < 1:
            raise ValueError("report_every must be >= 0 and accelerator_multiplier >= 1")
        return self
