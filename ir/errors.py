# Error taxonomy. None of these are recoverable mid-run.


class DreamError(RuntimeError):
    pass


class ModelLoadError(DreamError):
    def __init__(self, path, reason=""):
        self.path = str(path)
        msg = f"cannot load model from {self.path}"
        super().__init__(f"{msg}: {reason}" if reason else msg)


class LayerNotFoundError(DreamError):
    def __init__(self, layer, available=()):
        self.layer = layer
        self.available = list(available)
        listing = "".join(f"\n  {name}" for name in self.available)
        super().__init__(f"layer not found: {layer}" + (f"; available layers:{listing}" if listing else ""))


class LabelNotFoundError(DreamError):
    def __init__(self, label, classes=()):
        self.label = label
        self.classes = list(classes)
        super().__init__(f"image class label not found: {label} ({len(self.classes)} known classes)")


class GraphInstantiationError(DreamError):
    pass


class ExecutionError(DreamError):
    def __init__(self, iteration, reason=""):
        self.iteration = iteration
        super().__init__(f"predict net failed at iteration {iteration}: {reason}")
