"""Synthetic page images shared by the tests."""

import numpy as np
from PIL import Image


def gradient_page(width: int, height: int) -> Image.Image:
    """Every row has its own colour, so misplaced rows are easy to spot."""
    rows = np.arange(height)
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[:, :, 0] = (rows % 256)[:, None]
    pixels[:, :, 1] = ((rows // 256) % 256)[:, None]
    pixels[:, :, 2] = ((rows * 7) % 256)[:, None]
    return Image.fromarray(pixels, "RGB")


def text_page(width: int, height: int, lines, background=255, ink=0) -> Image.Image:
    """Plain page with solid 'text lines' over the given (start, end) row ranges, end exclusive."""
    pixels = np.full((height, width, 3), background, dtype=np.uint8)
    for start, end in lines:
        pixels[start:end, :, :] = ink
    return Image.fromarray(pixels, "RGB")


class Recorder:
    """Stands in for time.sleep and records the requested delays."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)
