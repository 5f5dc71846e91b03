"""
Viewport stitching

Composites the viewport captures of one segment into a single canvas. Where
two consecutive captures cover the same rows, the rows already drawn stay
and the later capture is cropped at its top, so every canvas row is written
by exactly one capture and no seam shows up between two renders of the
same region.
"""

import logging
from dataclasses import dataclass

from PIL import Image

from .errors import StitchFailed
from .planning import MIN_DPR, CaptureLimits, Segment, validate_canvas_size

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StitchContext:
    """Per-segment stitching state, threaded through successive stitch calls."""

    last_drawn_bottom_y: int = 0


@dataclass
class SegmentRaster:
    """A finished segment image tagged with its place in the page."""

    capture_id: str
    index: int
    image: Image.Image
    y_start: int
    y_end: int

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height


def stitch_viewport(
    canvas: Image.Image,
    context: StitchContext,
    capture: Image.Image,
    y_offset: float,
    viewport_height: float,
    dpr: float
) -> StitchContext:
    """
    Draw one viewport capture onto the segment canvas.

    Args:
        canvas: Segment canvas, modified in place
        context: State returned by the previous call (fresh for the first)
        capture: Raw viewport capture at any pixel density
        y_offset: Scroll offset relative to the segment top, CSS pixels.
            May be negative when the capture starts above the segment.
        viewport_height: Viewport height in CSS pixels
        dpr: Scale from CSS pixels to canvas pixels

    Returns:
        The context to pass to the next call
    """
    try:
        src_w, src_h = capture.size
    except AttributeError as e:
        raise StitchFailed(f"Viewport capture is not an image: {e}") from e

    if src_w <= 0 or src_h <= 0:
        raise StitchFailed("Viewport capture has zero size")

    draw_y = round(y_offset * dpr)
    draw_w = canvas.width
    draw_h = round(viewport_height * dpr)
    if draw_h <= 0:
        raise StitchFailed(f"Viewport height {viewport_height} maps to no canvas rows")

    src_crop_y = 0
    dest_y = draw_y

    if context.last_drawn_bottom_y > draw_y:
        overlap_px = context.last_drawn_bottom_y - draw_y
        # canvas rows -> source rows
        src_crop_y = round(overlap_px / draw_h * src_h)
        dest_y = context.last_drawn_bottom_y

    src_draw_h = src_h - src_crop_y
    dest_draw_h = draw_h - (dest_y - draw_y)

    if src_draw_h > 0 and dest_draw_h > 0:
        try:
            region = capture.convert("RGB").crop((0, src_crop_y, src_w, src_h))
            if region.size != (draw_w, dest_draw_h):
                region = region.resize((draw_w, dest_draw_h), Image.LANCZOS)
            canvas.paste(region, (0, dest_y))
        except (OSError, ValueError) as e:
            raise StitchFailed(f"Canvas drawing failed: {e}") from e

    return StitchContext(last_drawn_bottom_y=max(context.last_drawn_bottom_y, dest_y + dest_draw_h))


class SegmentCanvas:
    """Owns the in-progress canvas of one segment until it is committed."""

    def __init__(
        self,
        width_css: float,
        height_css: float,
        dpr: float,
        limits: CaptureLimits = None,
        background: str = "white"
    ):
        """
        Args:
            width_css: Viewport width in CSS pixels
            height_css: Segment height in CSS pixels
            dpr: Effective device pixel ratio of the capture
            limits: Canvas limits to validate against
            background: Fill for rows no capture reaches
        """
        self.width, self.height = validate_canvas_size(width_css, height_css, dpr, limits)
        self.dpr = max(MIN_DPR, dpr)
        self.image = Image.new("RGB", (self.width, self.height), color=background)
        self.context = StitchContext()
        self.stitched = 0

    def stitch(self, capture: Image.Image, y_offset: float, viewport_height: float):
        self.context = stitch_viewport(
            self.image, self.context, capture, y_offset, viewport_height, self.dpr
        )
        self.stitched += 1
        logger.debug("Stitched viewport %d at y=%s (drawn to %d/%d)",
                     self.stitched, y_offset, self.context.last_drawn_bottom_y, self.height)

    def stitch_segment(self, segment: Segment, captures, viewport_height: float):
        """Stitch a whole segment's captures, given in scroll order."""
        for position, capture in zip(segment.positions, captures):
            self.stitch(capture, segment.local_offset(position), viewport_height)

    def to_segment_raster(self, capture_id: str, segment: Segment) -> SegmentRaster:
        return SegmentRaster(
            capture_id=capture_id,
            index=segment.index,
            image=self.image,
            y_start=segment.start_y,
            y_end=segment.end_y,
        )
