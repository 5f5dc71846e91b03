"""Exception taxonomy for capture planning, stitching and pagination."""


class SnapStitchError(Exception):
    """Root exception for the package."""


class GeometryError(SnapStitchError, ValueError):
    """Invalid page or viewport dimensions. Raised before any capture happens."""


class LimitExceeded(SnapStitchError):
    """A raster would exceed the platform size caps even after DPR reduction."""

    def __init__(self, message: str, dimension: str = None, value: float = None, limit: float = None):
        super().__init__(message)
        self.dimension = dimension
        self.value = value
        self.limit = limit


class CaptureTooWide(LimitExceeded):
    """No device pixel ratio keeps the viewport width within the canvas limit."""


class PageTooLarge(LimitExceeded):
    """No segment height fits within the canvas limits."""


class StitchFailed(SnapStitchError):
    """A viewport capture could not be composited into its segment."""


class CaptureFailed(SnapStitchError):
    """The capture-acquisition collaborator could not deliver a viewport."""


class PixelReadUnavailable(SnapStitchError):
    """Raster pixels cannot be inspected. Pagination degrades instead of failing."""


class CaptureNotFound(SnapStitchError, KeyError):
    """No stored capture or segment for the requested key."""

    def __str__(self):
        return str(self.args[0]) if self.args else "Capture not found"
