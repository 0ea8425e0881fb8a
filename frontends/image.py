import numpy as np
from PIL import Image

# per-channel means (RGB) subtracted from 0-255 pixels
MEAN = np.array([123.68, 116.78, 103.94], dtype=np.float32)


def read_image_tensor(path, size_to_fit: int) -> np.ndarray:
    """Decode ``path``, scale the short side to ``size_to_fit``, center-crop, return [1, 3, S, S]."""
    img = Image.open(path).convert("RGB")
    w, h = img.size
    scale = size_to_fit / min(w, h)
    img = img.resize((max(size_to_fit, round(w * scale)), max(size_to_fit, round(h * scale))), Image.Resampling.BILINEAR)
    w, h = img.size
    left, top = (w - size_to_fit) // 2, (h - size_to_fit) // 2
    img = img.crop((left, top, left + size_to_fit, top + size_to_fit))
    arr = np.asarray(img, dtype=np.float32) - MEAN
    return arr.transpose(2, 0, 1)[None].copy()

def normalize_tensor(tensor: np.ndarray) -> np.ndarray:
    """Zero mean, standard deviation 100."""
    t = np.asarray(tensor, dtype=np.float32)
    std = t.std()
    if std == 0:
        return np.zeros_like(t)
    return (t - t.mean()) / std * 100

def tensor_to_image(tensor: np.ndarray, channel_offset: int = 0) -> Image.Image:
    t = np.asarray(tensor, dtype=np.float32)
    if t.ndim == 4:
        t = t[0]
    t = t[channel_offset:channel_offset + 3]
    if t.shape[0] == 3:
        t = t + MEAN.reshape(3, 1, 1)
    else:
        t = np.repeat(t[:1] + 128, 3, axis=0)
    return Image.fromarray(np.clip(t, 0, 255).astype(np.uint8).transpose(1, 2, 0))

def write_image_tensor(tensor: np.ndarray, path):
    tensor_to_image(tensor).save(path)

def render_tensor(tensor: np.ndarray, channel_offset: int = 0) -> Image.Image:
    img = tensor_to_image(normalize_tensor(tensor), channel_offset)
    img.show()
    return img
