import threading
import time

import numpy as np
import pytest
from PIL import Image

from snapstitch.capture import CapturePipeline, load_capture_rasters
from snapstitch.errors import CaptureFailed, PageTooLarge, StitchFailed
from snapstitch.planning import CaptureLimits
from snapstitch.sources import ImagePageSource
from snapstitch.stitcher import SegmentCanvas
from snapstitch.store import CaptureMeta, CaptureStore

from .helpers import Recorder, gradient_page


class BrokenSource(ImagePageSource):
    """Page source whose nth capture misbehaves."""

    def __init__(self, image, viewport_height, fail_on, result=None):
        super().__init__(image, viewport_height)
        self.fail_on = fail_on
        self.result = result
        self.captures = 0
        self.cleaned_up = False

    def capture(self):
        self.captures += 1
        if self.captures == self.fail_on:
            if self.result is None:
                raise RuntimeError("tab closed")
            return self.result
        return super().capture()

    def cleanup(self):
        self.cleaned_up = True
        super().cleanup()


@pytest.fixture
def store(tmp_path):
    return CaptureStore(tmp_path / "captures")


def _pipeline(source, store, **kwargs):
    kwargs.setdefault("limits", CaptureLimits(max_dimension=2000, max_area=100_000_000))
    kwargs.setdefault("sleep", Recorder())
    return CapturePipeline(source, store, **kwargs)


def test_full_page_capture_splits_into_segments(store):
    page = gradient_page(40, 2500)
    progress = []
    sleep = Recorder()
    pipeline = _pipeline(ImagePageSource(page, 1000), store, sleep=sleep,
                         progress=lambda done, total: progress.append((done, total)))

    meta = pipeline.capture_full_page(url="https://example.com", title="Example")

    assert meta.segment_count == 2
    assert (meta.width, meta.total_height, meta.css_total_height) == (40, 2500, 2500)
    assert meta.warnings == ["Large page split into 2 parts to preserve quality."]
    assert progress == [(1, 3), (2, 3), (3, 3)]
    assert sleep.calls == pytest.approx([0.1, 0.1, 0.1])
    assert store.get_meta(meta.capture_id) == meta

    segments = load_capture_rasters(store, meta.capture_id)
    assert [(s.y_start, s.y_end) for s in segments] == [(0, 2000), (2000, 2500)]
    combined = np.concatenate([np.asarray(s.image) for s in segments])
    assert combined.tobytes() == page.tobytes()


def test_short_page_is_one_segment(store):
    page = gradient_page(40, 700)
    meta = _pipeline(ImagePageSource(page, 1000), store).capture_full_page()

    assert meta.segment_count == 1
    assert meta.warnings == []
    [segment] = load_capture_rasters(store, meta.capture_id)
    assert segment.image.tobytes() == page.tobytes()


def test_capture_scale_is_reduced_to_fit(store):
    source = ImagePageSource(gradient_page(100, 800), viewport_height=40, device_pixel_ratio=2)
    meta = _pipeline(source, store, limits=CaptureLimits(max_dimension=50, max_area=100_000_000)).capture_full_page()

    assert meta.device_pixel_ratio == 1
    assert meta.original_device_pixel_ratio == 2
    assert meta.segment_count == 10
    segments = load_capture_rasters(store, meta.capture_id)
    assert all(s.width == 50 and s.height == 40 for s in segments)


def test_failed_capture_discards_segments(store):
    # the third capture belongs to the second segment, after the first was stored
    source = BrokenSource(gradient_page(40, 2500), 1000, fail_on=3)

    with pytest.raises(CaptureFailed):
        _pipeline(source, store).capture_full_page()

    assert source.cleaned_up
    assert list(store.root.iterdir()) == []


def test_zero_size_capture_fails_stitch(store):
    source = BrokenSource(gradient_page(40, 2500), 1000, fail_on=1, result=Image.new("RGB", (0, 0)))

    with pytest.raises(StitchFailed):
        _pipeline(source, store).capture_full_page()

    assert list(store.root.iterdir()) == []


def test_oversized_viewport_fails_before_capturing(store):
    source = BrokenSource(gradient_page(40, 5000), 3000, fail_on=1)

    with pytest.raises(PageTooLarge):
        _pipeline(source, store).capture_full_page()
    assert source.captures == 0
    assert source.cleaned_up


def test_capture_visible(store):
    page = gradient_page(40, 2500)
    meta = _pipeline(ImagePageSource(page, 1000), store).capture_visible(url="https://example.com")

    assert meta.mode == "visible"
    assert (meta.width, meta.total_height) == (40, 1000)
    [segment] = load_capture_rasters(store, meta.capture_id)
    assert segment.image.tobytes() == page.crop((0, 0, 40, 1000)).tobytes()


def test_incomplete_capture_is_rejected(store):
    store.put_meta(CaptureMeta("cap", 1.0, segment_count=2))

    with pytest.raises(CaptureFailed):
        load_capture_rasters(store, "cap")


def test_one_stitch_in_flight_while_capturing(store, monkeypatch):
    lock = threading.Lock()
    running = threading.Event()
    state = {"active": 0, "max_active": 0}
    events = []
    original_stitch = SegmentCanvas.stitch

    def slow_stitch(self, capture, y_offset, viewport_height):
        with lock:
            state["active"] += 1
            state["max_active"] = max(state["max_active"], state["active"])
            events.append(("start", y_offset))
        running.set()
        time.sleep(0.2)
        original_stitch(self, capture, y_offset, viewport_height)
        with lock:
            events.append(("end", y_offset))
            state["active"] -= 1
        running.clear()

    class WatchingSource(ImagePageSource):
        def __init__(self, *args):
            super().__init__(*args)
            self.overlapped = []

        def capture(self):
            if events:
                # the previous capture's stitch runs while this one is taken
                self.overlapped.append(running.wait(1.0))
            return super().capture()

    monkeypatch.setattr(SegmentCanvas, "stitch", slow_stitch)
    page = gradient_page(40, 3000)
    source = WatchingSource(page, 1000)
    meta = _pipeline(source, store, limits=CaptureLimits()).capture_full_page()

    assert state["max_active"] == 1
    assert events == [("start", 0), ("end", 0), ("start", 1000), ("end", 1000), ("start", 2000), ("end", 2000)]
    assert source.overlapped and all(source.overlapped)
    [segment] = load_capture_rasters(store, meta.capture_id)
    assert segment.image.tobytes() == page.tobytes()


def test_unexpected_stitch_error_is_wrapped(store, monkeypatch):
    def broken_stitch(self, capture, y_offset, viewport_height):
        raise RuntimeError("decompression bomb")

    monkeypatch.setattr(SegmentCanvas, "stitch", broken_stitch)

    with pytest.raises(StitchFailed) as excinfo:
        _pipeline(ImagePageSource(gradient_page(40, 2500), 1000), store).capture_full_page()
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert list(store.root.iterdir()) == []


def test_capture_visible_records_device_pixel_ratio(store):
    source = ImagePageSource(gradient_page(80, 2000), viewport_height=500, device_pixel_ratio=2)
    meta = _pipeline(source, store).capture_visible()

    assert meta.device_pixel_ratio == 2
    assert (meta.width, meta.total_height) == (80, 1000)


def test_finished_capture_becomes_pending(store):
    first = _pipeline(ImagePageSource(gradient_page(40, 700), 1000), store).capture_full_page()
    assert store.get_pending_capture_id() == first.capture_id

    second = _pipeline(ImagePageSource(gradient_page(40, 700), 1000), store).capture_visible()
    assert store.get_pending_capture_id() == second.capture_id


def test_failed_capture_keeps_previous_pending(store):
    done = _pipeline(ImagePageSource(gradient_page(40, 700), 1000), store).capture_full_page()
    source = BrokenSource(gradient_page(40, 2500), 1000, fail_on=2)

    with pytest.raises(CaptureFailed):
        _pipeline(source, store).capture_full_page()
    assert store.get_pending_capture_id() == done.capture_id
