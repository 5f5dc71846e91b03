"""
Viewport sources

A viewport source scrolls a page and returns what is visible. The capture
pipeline only talks to this protocol; retries and throttling live here, not
in the stitching code.
"""

import logging
import time
from typing import Callable, Protocol

from PIL import Image

from .errors import CaptureFailed
from .planning import PageGeometry

logger = logging.getLogger(__name__)

# Minimum time between two captures (host limit: 2 per second).
CAPTURE_THROTTLE_S = 0.55
MAX_RETRIES = 5


class RateLimitError(CaptureFailed):
    """The host refused a capture because captures came too fast."""


class ViewportSource(Protocol):
    def metrics(self) -> PageGeometry:
        """Page height, viewport size and native device pixel ratio."""

    def scroll_to(self, y: int) -> None:
        """Scroll so that page row y (CSS px) is at the top. Returns once painted."""

    def capture(self) -> Image.Image:
        """Raster of the visible viewport at native device pixel ratio."""

    def cleanup(self) -> None:
        """Restore the page after capturing."""


class ImagePageSource:
    """Serves viewport captures out of an already rendered full-page image."""

    def __init__(self, image: Image.Image, viewport_height: int, device_pixel_ratio: float = 1.0):
        """
        Args:
            image: Full page at device_pixel_ratio
            viewport_height: Viewport height in CSS pixels
            device_pixel_ratio: Pixel density of image
        """
        self.image = image.convert("RGB")
        self.dpr = device_pixel_ratio
        self.geometry = PageGeometry(
            total_height=max(1, round(self.image.height / device_pixel_ratio)),
            viewport_width=max(1, round(self.image.width / device_pixel_ratio)),
            viewport_height=viewport_height,
            device_pixel_ratio=device_pixel_ratio,
        )
        self.scroll_y = 0

    def metrics(self) -> PageGeometry:
        return self.geometry

    def scroll_to(self, y: int) -> None:
        # a browser never scrolls past the last full viewport
        max_scroll = max(0, self.geometry.total_height - self.geometry.viewport_height)
        self.scroll_y = min(max(0, y), max_scroll)

    def capture(self) -> Image.Image:
        top = round(self.scroll_y * self.dpr)
        bottom = round((self.scroll_y + self.geometry.viewport_height) * self.dpr)
        viewport = Image.new("RGB", (self.image.width, bottom - top), color="white")
        viewport.paste(self.image.crop((0, top, self.image.width, min(bottom, self.image.height))), (0, 0))
        return viewport

    def cleanup(self) -> None:
        self.scroll_y = 0


class ThrottledSource:
    """Wraps a source with a minimum capture interval and retries with backoff."""

    def __init__(
        self,
        inner: ViewportSource,
        min_interval: float = CAPTURE_THROTTLE_S,
        max_retries: int = MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.inner = inner
        self.min_interval = min_interval
        self.max_retries = max(1, max_retries)
        self._sleep = sleep
        self._clock = clock
        self._last_capture = None

    def metrics(self) -> PageGeometry:
        return self.inner.metrics()

    def scroll_to(self, y: int) -> None:
        self.inner.scroll_to(y)

    def cleanup(self) -> None:
        self.inner.cleanup()

    @staticmethod
    def backoff(attempt: int, rate_limited: bool) -> float:
        """Seconds to wait before retrying after the given failed attempt (0-based)."""
        if rate_limited:
            return 0.6 * (2 ** attempt)
        return 0.2 * (attempt + 1)

    def capture(self) -> Image.Image:
        if self._last_capture is not None:
            elapsed = self._clock() - self._last_capture
            if elapsed < self.min_interval:
                self._sleep(self.min_interval - elapsed)

        for attempt in range(self.max_retries):
            try:
                self._last_capture = self._clock()
                return self.inner.capture()
            except Exception as e:
                if attempt == self.max_retries - 1:
                    logger.error("Viewport capture failed after %d attempts: %s", self.max_retries, e)
                    raise CaptureFailed(f"Capture failed after {self.max_retries} attempts: {e}") from e
                rate_limited = isinstance(e, RateLimitError)
                wait = self.backoff(attempt, rate_limited)
                logger.warning("Capture attempt %d failed (%s), retrying in %.1fs",
                               attempt + 1, "rate limit" if rate_limited else "error", wait)
                self._sleep(wait)
