from io import BytesIO

import numpy as np
import pytest
from PIL import Image

from pixelcanvas.services.stitching import BACKGROUND_SIZE


def encode_png(pixels: np.ndarray) -> bytes:
    buffer = BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return buffer.getvalue()


def decode_png(data: bytes) -> np.ndarray:
    return np.asarray(Image.open(BytesIO(data)))


def solid_png(size: int, color: tuple) -> bytes:
    channels = len(color)
    pixels = np.empty((size, size, channels), dtype=np.uint8)
    pixels[...] = color
    return encode_png(pixels)


@pytest.fixture
def background_pixels() -> np.ndarray:
    """Deterministic noisy RGB background so crops are distinguishable."""
    rng = np.random.default_rng(1234)
    return rng.integers(0, 256, size=(BACKGROUND_SIZE, BACKGROUND_SIZE, 3), dtype=np.uint8)


@pytest.fixture
def background_png(background_pixels: np.ndarray) -> bytes:
    return encode_png(background_pixels)
