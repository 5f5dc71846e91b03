"""
Capture pipeline

Drives a full-page capture: plan, then for every segment scroll, settle,
capture and stitch each viewport in order, and commit the segment to the
store. Stitching runs one capture behind scrolling: at most one stitch is in
flight while the next viewport is being captured. If anything fails the whole
capture is deleted from the store before the error propagates.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from .errors import CaptureFailed, SnapStitchError, StitchFailed
from .planning import CaptureLimits, plan_capture
from .sources import ViewportSource
from .stitcher import SegmentCanvas, SegmentRaster
from .store import CaptureMeta, CaptureStore, create_capture_id

logger = logging.getLogger(__name__)

# Delay after a scroll before capturing, for paint to settle (seconds).
CAPTURE_DELAY_S = 0.1

ProgressCallback = Callable[[int, int], None]


class CapturePipeline:
    """Sequential capture of a page into stored segment rasters."""

    def __init__(
        self,
        source: ViewportSource,
        store: CaptureStore,
        limits: CaptureLimits = None,
        contiguous: bool = True,
        settle_delay: float = CAPTURE_DELAY_S,
        progress: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            source: Scrolls the page and captures viewports
            store: Receives finished segments and the capture metadata
            limits: Canvas size caps
            contiguous: Clamp segment ranges so they never overlap
            settle_delay: Wait after each scroll before capturing
            progress: Called with (captured, total) after every capture
        """
        self.source = source
        self.store = store
        self.limits = limits or CaptureLimits()
        self.contiguous = contiguous
        self.settle_delay = settle_delay
        self.progress = progress
        self._sleep = sleep

    def capture_full_page(self, url: str = "", title: str = "") -> CaptureMeta:
        """
        Capture the whole page.

        Returns:
            Metadata of the stored capture

        Raises:
            GeometryError, LimitExceeded: before anything is captured
            StitchFailed, CaptureFailed: the capture was discarded
        """
        capture_id = create_capture_id()
        try:
            return self._capture_full_page(capture_id, url, title)
        except Exception:
            logger.error("Full-page capture %s failed, discarding stored segments", capture_id)
            self.store.delete_capture(capture_id)
            raise
        finally:
            self.source.cleanup()

    def _capture_full_page(self, capture_id: str, url: str, title: str) -> CaptureMeta:
        geometry = self.source.metrics()
        strategy, segments = plan_capture(geometry, self.limits, contiguous=self.contiguous)
        total_positions = sum(len(s.positions) for s in segments)
        logger.info("Capturing %s: %d viewports in %d segments at %sx",
                    capture_id, total_positions, len(segments), strategy.effective_dpr)

        captured = 0
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="stitch") as executor:
            for segment in segments:
                canvas = SegmentCanvas(
                    geometry.viewport_width, segment.height, strategy.effective_dpr, self.limits
                )
                pending = None

                for position in segment.positions:
                    image = self._acquire(position)
                    captured += 1
                    if self.progress:
                        self.progress(captured, total_positions)

                    if pending is not None:
                        self._finish_stitch(pending)
                    pending = executor.submit(
                        canvas.stitch, image, segment.local_offset(position), geometry.viewport_height
                    )

                if pending is not None:
                    self._finish_stitch(pending)

                self.store.put_segment(canvas.to_segment_raster(capture_id, segment))

        warnings = []
        if len(segments) > 1:
            warnings.append(f"Large page split into {len(segments)} parts to preserve quality.")

        meta = CaptureMeta(
            capture_id=capture_id,
            created_at=time.time(),
            url=url,
            title=title,
            mode="full",
            segment_count=len(segments),
            width=round(geometry.viewport_width * strategy.effective_dpr),
            total_height=round(geometry.total_height * strategy.effective_dpr),
            css_total_height=geometry.total_height,
            viewport_height=geometry.viewport_height,
            device_pixel_ratio=strategy.effective_dpr,
            original_device_pixel_ratio=geometry.device_pixel_ratio,
            warnings=warnings,
        )
        self.store.put_meta(meta)
        self.store.set_pending_capture_id(capture_id)
        logger.info("Capture %s complete (%d segments)", capture_id, len(segments))
        return meta

    @staticmethod
    def _finish_stitch(pending):
        try:
            pending.result()
        except SnapStitchError:
            raise
        except Exception as e:
            raise StitchFailed(f"Stitching failed: {e}") from e

    def _acquire(self, position: int):
        try:
            self.source.scroll_to(position)
            if self.settle_delay > 0:
                self._sleep(self.settle_delay)
            return self.source.capture()
        except SnapStitchError:
            raise
        except Exception as e:
            raise CaptureFailed(f"Failed to capture viewport at y={position}: {e}") from e

    def capture_visible(self, url: str = "", title: str = "") -> CaptureMeta:
        """Capture only what is currently visible, as a single segment."""
        capture_id = create_capture_id()
        try:
            try:
                dpr = self.source.metrics().device_pixel_ratio
                image = self.source.capture()
            except SnapStitchError:
                raise
            except Exception as e:
                raise CaptureFailed(f"Failed to capture viewport: {e}") from e
            if image.width <= 0 or image.height <= 0:
                raise StitchFailed("Viewport capture has zero size")

            self.store.put_segment(SegmentRaster(capture_id, 0, image.convert("RGB"), 0, image.height))
            meta = CaptureMeta(
                capture_id=capture_id,
                created_at=time.time(),
                url=url,
                title=title,
                mode="visible",
                segment_count=1,
                width=image.width,
                total_height=image.height,
                device_pixel_ratio=dpr,
            )
            self.store.put_meta(meta)
            self.store.set_pending_capture_id(capture_id)
            return meta
        except Exception:
            self.store.delete_capture(capture_id)
            raise


def load_capture_rasters(store: CaptureStore, capture_id: str) -> List[SegmentRaster]:
    """Segments of a stored capture, in page order."""
    meta = store.get_meta(capture_id)
    segments = store.list_segments(capture_id)
    if len(segments) != meta.segment_count:
        raise CaptureFailed(
            f"Capture {capture_id} has {len(segments)} of {meta.segment_count} segments")
    return segments
