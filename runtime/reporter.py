from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np


@dataclass
class Snapshot:
    iteration: int
    learning_rate: float
    score: float
    tensor: Optional[np.ndarray]

    def line(self) -> str:
        return f"step: {self.iteration}  rate: {self.learning_rate:g}  score: {self.score:g}"


@dataclass
class TelemetryReporter:
    """Receives a snapshot every reporting interval.

    ``render`` is the display collaborator (called with the tensor and the
    channel offset), ``write`` persists the tensor to ``out_pattern`` formatted
    with the iteration number. Neither may touch the workspace; snapshots
    hold copies.
    """
    render: Optional[Callable] = None
    write: Optional[Callable] = None
    out_pattern: Optional[str] = None
    channel_offset: int = 0
    quiet: bool = False
    history: List[Snapshot] = field(default_factory=list)

    def __call__(self, snap: Snapshot):
        self.history.append(Snapshot(snap.iteration, snap.learning_rate, snap.score, None))
        if not self.quiet:
            print(snap.line())
        if self.render is not None:
            self.render(snap.tensor, self.channel_offset)
        if self.write is not None and self.out_pattern:
            path = Path(self.out_pattern.format(iteration=snap.iteration))
            path.parent.mkdir(parents=True, exist_ok=True)
            self.write(snap.tensor, path)

    def scores(self) -> List[float]:
        return [s.score for s in self.history]

    def rates(self) -> List[float]:
        return [s.learning_rate for s in self.history]
