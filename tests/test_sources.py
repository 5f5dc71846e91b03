import pytest
from PIL import Image

from snapstitch.errors import CaptureFailed
from snapstitch.sources import ImagePageSource, RateLimitError, ThrottledSource

from .helpers import Recorder, gradient_page


class FlakySource:
    """Fails a number of times before capturing."""

    def __init__(self, failures, error=OSError):
        self.failures = failures
        self.error = error
        self.attempts = 0

    def capture(self):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise self.error("busy")
        return Image.new("RGB", (4, 4))


def _clock(*times):
    ticks = iter(times)
    return lambda: next(ticks)


def test_image_source_geometry_in_css_pixels():
    source = ImagePageSource(gradient_page(200, 5000), viewport_height=800, device_pixel_ratio=2)
    geometry = source.metrics()

    assert (geometry.viewport_width, geometry.total_height) == (100, 2500)
    assert geometry.device_pixel_ratio == 2


def test_image_source_clamps_scroll():
    page = gradient_page(50, 2500)
    source = ImagePageSource(page, viewport_height=1000)

    source.scroll_to(2000)
    assert source.scroll_y == 1500
    assert source.capture().tobytes() == page.crop((0, 1500, 50, 2500)).tobytes()

    source.scroll_to(-10)
    assert source.scroll_y == 0


def test_image_source_pads_short_pages():
    source = ImagePageSource(gradient_page(50, 300), viewport_height=1000)
    capture = source.capture()

    assert capture.size == (50, 1000)
    assert capture.getpixel((0, 999)) == (255, 255, 255)


def test_backoff_schedules():
    assert [ThrottledSource.backoff(n, True) for n in range(3)] == pytest.approx([0.6, 1.2, 2.4])
    assert [ThrottledSource.backoff(n, False) for n in range(3)] == pytest.approx([0.2, 0.4, 0.6])


def test_retries_with_linear_backoff():
    sleep = Recorder()
    source = ThrottledSource(FlakySource(2), sleep=sleep, clock=lambda: 0.0, min_interval=0)

    assert source.capture().size == (4, 4)
    assert sleep.calls == pytest.approx([0.2, 0.4])


def test_rate_limits_back_off_exponentially():
    sleep = Recorder()
    source = ThrottledSource(FlakySource(2, RateLimitError), sleep=sleep, clock=lambda: 0.0, min_interval=0)

    source.capture()
    assert sleep.calls == pytest.approx([0.6, 1.2])


def test_gives_up_after_max_retries():
    inner = FlakySource(10)
    source = ThrottledSource(inner, max_retries=5, sleep=Recorder(), clock=lambda: 0.0)

    with pytest.raises(CaptureFailed):
        source.capture()
    assert inner.attempts == 5


def test_captures_are_spaced_by_min_interval():
    sleep = Recorder()
    source = ThrottledSource(FlakySource(0), min_interval=0.55, sleep=sleep, clock=_clock(0.0, 0.1, 0.6))

    source.capture()
    source.capture()
    assert sleep.calls == pytest.approx([0.45])


def test_no_wait_when_captures_are_slow():
    sleep = Recorder()
    source = ThrottledSource(FlakySource(0), min_interval=0.55, sleep=sleep, clock=_clock(0.0, 1.0, 1.0))

    source.capture()
    source.capture()
    assert sleep.calls == []
