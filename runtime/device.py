import onnxruntime as ort

from ir.ir import Device

ACCELERATOR_PROVIDERS = ("CUDAExecutionProvider", "ROCMExecutionProvider")
# accelerator runs are roughly an order of magnitude faster; iteration counts scale with it
DEFAULT_ACCELERATOR_MULTIPLIER = 10


def accelerator_available() -> bool:
    return any(p in ort.get_available_providers() for p in ACCELERATOR_PROVIDERS)

def select_device(force_cpu: bool, verbose: bool = False) -> Device:
    """Pick the device for a whole run; fixed before any net is instantiated."""
    if force_cpu:
        return Device.DEFAULT
    if accelerator_available():
        return Device.ACCELERATOR
    if verbose:
        print("no accelerator available, running on the default device")
    return Device.DEFAULT

def multiplier(device: Device, accelerator_multiplier: int = DEFAULT_ACCELERATOR_MULTIPLIER) -> int:
    return int(accelerator_multiplier) if device == Device.ACCELERATOR else 1
