"""
Capture planning

Works out which scroll offsets cover a page, how far the device pixel ratio
has to drop to satisfy the raster limits, and how the offsets are grouped
into segments that each fit one canvas.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Tuple

from .errors import CaptureTooWide, GeometryError, LimitExceeded, PageTooLarge

logger = logging.getLogger(__name__)

# Canvas limits tuned to avoid blank results on long pages.
MAX_CANVAS_DIMENSION = 16384
MAX_CANVAS_AREA = 100_000_000

# DPR is never reduced below this, whatever the viewport width.
MIN_DPR = 0.5


@dataclass(frozen=True)
class PageGeometry:
    """Page and viewport size in CSS pixels plus the native device pixel ratio."""

    total_height: int
    viewport_width: int
    viewport_height: int
    device_pixel_ratio: float = 1.0

    def __post_init__(self):
        for name in ("total_height", "viewport_width", "viewport_height", "device_pixel_ratio"):
            value = getattr(self, name)
            try:
                valid = math.isfinite(value) and value > 0
            except TypeError:
                valid = False
            if not valid:
                raise GeometryError(f"{name} must be a positive number, got {value!r}")


@dataclass(frozen=True)
class CaptureLimits:
    max_dimension: int = MAX_CANVAS_DIMENSION
    max_area: int = MAX_CANVAS_AREA


@dataclass(frozen=True)
class CaptureStrategy:
    effective_dpr: float
    max_segment_height_css: int
    viewports_per_segment: int


@dataclass(frozen=True)
class Segment:
    """One size-bounded vertical slice of the page, in page-space CSS pixels."""

    index: int
    start_position_index: int
    positions: Tuple[int, ...]
    start_y: int
    end_y: int

    @property
    def height(self) -> int:
        return self.end_y - self.start_y

    def local_offset(self, position: int) -> int:
        """Offset of a scroll position relative to the top of this segment."""
        return position - self.start_y


def calculate_scroll_positions(total_height: int, viewport_height: int) -> List[int]:
    """
    Scroll offsets whose viewport windows cover [0, total_height).

    The last offset is clamped so its window ends exactly at total_height,
    which may make it overlap the previous window.

    Args:
        total_height: Page height in CSS pixels
        viewport_height: Viewport height in CSS pixels

    Returns:
        Strictly increasing offsets starting at 0
    """
    if viewport_height <= 0:
        raise GeometryError(f"viewport_height must be positive, got {viewport_height}")

    if total_height <= viewport_height:
        return [0]

    positions = []
    y = 0
    while y + viewport_height <= total_height:
        positions.append(y)
        y += viewport_height

    if y < total_height:
        positions.append(total_height - viewport_height)

    return sorted(set(positions))


def _canvas_fits(physical_width: int, height_css: int, dpr: float, limits: CaptureLimits) -> bool:
    physical_height = round(height_css * dpr)
    return physical_height <= limits.max_dimension and physical_width * physical_height <= limits.max_area


def compute_capture_strategy(geometry: PageGeometry, limits: CaptureLimits = None) -> CaptureStrategy:
    """
    Pick a device pixel ratio and segment height that respect both canvas caps.

    DPR is the only input that is safe to reduce: shrinking width or height
    would distort the output.
    """
    limits = limits or CaptureLimits()
    viewport_width = geometry.viewport_width
    viewport_height = geometry.viewport_height

    max_dpr_by_width = limits.max_dimension / viewport_width
    effective_dpr = round(max(MIN_DPR, min(geometry.device_pixel_ratio, max_dpr_by_width)), 3)

    if effective_dpr * viewport_width > limits.max_dimension:
        # rounding pushed us over, or the MIN_DPR floor won
        effective_dpr = max(MIN_DPR, math.floor(max_dpr_by_width * 1000) / 1000)

    if not math.isfinite(effective_dpr) or effective_dpr <= 0:
        raise CaptureTooWide("Unable to compute safe capture scale", "width", viewport_width, limits.max_dimension)

    if effective_dpr * viewport_width > limits.max_dimension:
        raise CaptureTooWide(
            f"Viewport width {viewport_width}px exceeds the canvas dimension limit of "
            f"{limits.max_dimension}px even at {MIN_DPR}x scale",
            "width", viewport_width * effective_dpr, limits.max_dimension)

    physical_width = max(1, round(viewport_width * effective_dpr))
    max_height_by_dimension = math.floor(limits.max_dimension / effective_dpr)
    max_height_by_area = math.floor(limits.max_area / physical_width / effective_dpr)
    bound = min(max_height_by_dimension, max_height_by_area)
    # canvases are allocated at rounded pixel sizes
    while bound > 0 and not _canvas_fits(physical_width, bound, effective_dpr, limits):
        bound -= 1

    if bound <= 0:
        raise PageTooLarge(
            "Page is too large to capture with current canvas limits",
            "area", viewport_width * effective_dpr * effective_dpr, limits.max_area)

    if viewport_height > bound:
        dimension = "height" if max_height_by_dimension <= max_height_by_area else "area"
        limit = limits.max_dimension if dimension == "height" else limits.max_area
        raise PageTooLarge(
            f"A single {viewport_width}x{viewport_height} viewport at {effective_dpr}x exceeds "
            f"the canvas {dimension} limit of {limit}",
            dimension, viewport_height * effective_dpr, limit)

    max_segment_height_css = max(viewport_height, bound)
    viewports_per_segment = max(1, max_segment_height_css // viewport_height)

    if effective_dpr != geometry.device_pixel_ratio:
        logger.info("Reduced capture scale from %sx to %sx to fit canvas limits",
                    geometry.device_pixel_ratio, effective_dpr)

    return CaptureStrategy(
        effective_dpr=effective_dpr,
        max_segment_height_css=int(max_segment_height_css),
        viewports_per_segment=int(viewports_per_segment),
    )


def build_capture_segments(
    positions: List[int],
    viewport_height: int,
    total_height: int,
    viewports_per_segment: int,
    contiguous: bool = True
) -> List[Segment]:
    """
    Group scroll positions into segments of at most viewports_per_segment.

    Args:
        positions: Output of calculate_scroll_positions
        viewport_height: Viewport height in CSS pixels
        total_height: Page height in CSS pixels
        viewports_per_segment: Positions per segment (>= 1)
        contiguous: Clamp each segment's start to the previous segment's end,
            so segment ranges never overlap. When False, a segment starts at
            its first scroll position and may repeat up to one viewport of
            the previous segment.

    Returns:
        Segments in page order
    """
    if viewports_per_segment < 1:
        raise GeometryError(f"viewports_per_segment must be >= 1, got {viewports_per_segment}")

    segments = []
    prev_end = 0

    for i in range(0, len(positions), viewports_per_segment):
        chunk = tuple(positions[i:i + viewports_per_segment])
        start_y = chunk[0]
        end_y = min(total_height, chunk[-1] + viewport_height)

        if contiguous and segments:
            start_y = min(max(start_y, prev_end), end_y)

        segments.append(Segment(
            index=len(segments),
            start_position_index=i,
            positions=chunk,
            start_y=start_y,
            end_y=end_y,
        ))
        prev_end = end_y

    return segments


def plan_capture(
    geometry: PageGeometry,
    limits: CaptureLimits = None,
    contiguous: bool = True
) -> Tuple[CaptureStrategy, List[Segment]]:
    """Plan a full-page capture: scale, segment size and segment list."""
    positions = calculate_scroll_positions(geometry.total_height, geometry.viewport_height)
    strategy = compute_capture_strategy(geometry, limits)
    segments = build_capture_segments(
        positions,
        geometry.viewport_height,
        geometry.total_height,
        strategy.viewports_per_segment,
        contiguous=contiguous,
    )
    logger.debug("Planned %d positions in %d segments (dpr=%s, %d viewports/segment)",
                 len(positions), len(segments), strategy.effective_dpr, strategy.viewports_per_segment)
    return strategy, segments


def validate_canvas_size(
    width_css: float,
    height_css: float,
    dpr: float,
    limits: CaptureLimits = None
) -> Tuple[int, int]:
    """
    Physical canvas size for a segment, checked against the limits.

    Returns:
        (physical_width, physical_height)
    """
    limits = limits or CaptureLimits()
    safe_width = max(1, math.floor(width_css))
    safe_height = max(1, math.floor(height_css))
    safe_dpr = max(MIN_DPR, dpr) if math.isfinite(dpr) else 1.0

    physical_width = round(safe_width * safe_dpr)
    physical_height = round(safe_height * safe_dpr)
    area = physical_width * physical_height

    if physical_width > limits.max_dimension:
        raise LimitExceeded(
            f"Requested canvas width {physical_width}px exceeds the limit of {limits.max_dimension}px",
            "width", physical_width, limits.max_dimension)
    if physical_height > limits.max_dimension:
        raise LimitExceeded(
            f"Requested canvas height {physical_height}px exceeds the limit of {limits.max_dimension}px",
            "height", physical_height, limits.max_dimension)
    if area > limits.max_area:
        raise LimitExceeded(
            f"Requested canvas area {area}px exceeds the limit of {limits.max_area}px",
            "area", area, limits.max_area)

    return physical_width, physical_height
