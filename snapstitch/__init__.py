"""
snapstitch

Stitches viewport captures of a scrollable page into size-bounded segment
images, and paginates finished rasters into print pages cut on whitespace.
"""

from .capture import CapturePipeline
from .errors import (
    CaptureFailed,
    CaptureNotFound,
    CaptureTooWide,
    GeometryError,
    LimitExceeded,
    PageTooLarge,
    PixelReadUnavailable,
    SnapStitchError,
    StitchFailed,
)
from .paginator import PageSlice, Paginator, WhitespaceBand
from .planning import (
    CaptureLimits,
    CaptureStrategy,
    PageGeometry,
    Segment,
    build_capture_segments,
    calculate_scroll_positions,
    compute_capture_strategy,
    plan_capture,
)
from .stitcher import SegmentCanvas, SegmentRaster, StitchContext, stitch_viewport
from .store import CaptureMeta, CaptureStore

__version__ = "0.1.0"
