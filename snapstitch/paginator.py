"""
Whitespace-aware pagination

Cuts a finished raster into fixed-size print pages, cutting only inside
horizontal whitespace bands so no page boundary falls through a line of
text. Pages with no clean cut nearby fall back to a raw cut, and the next
page repeats a strip above that cut.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .errors import GeometryError, PixelReadUnavailable

logger = logging.getLogger(__name__)

PX_TO_MM = 25.4 / 96

PAGE_SIZES_MM = {
    "a4": (210.0, 297.0),
    "a5": (148.0, 210.0),
    "letter": (215.9, 279.4),
}
FULL_PAGE = "full"

DEFAULT_MARGIN_MM = 10.0

# Sample every Nth column when scoring rows.
SAMPLE_STRIDE = 4
# Share of rows at the top and bottom used to estimate the background.
EDGE_FRACTION = 0.03
# Mean deviation from the background (0-255) below which a row is blank.
BLANK_ROW_THRESHOLD = 12
# 1 CSS pixel gap = 2 physical pixels on a 2x display.
MIN_BAND_PX = 2
# Rows repeated at the top of a page that follows a raw cut.
OVERLAP_PX = 60
# Pass 1 does not look further ahead than this share of a page.
SEARCH_AHEAD_FRACTION = 0.5
# Slices shorter than this share of a page are replaced by a raw page advance.
MIN_SLICE_FRACTION = 0.05

FOOTER_LINE_HEIGHT_MM = 3.5
FOOTER_PADDING_MM = 2.5
FOOTER_FONT_PT = 6
FOOTER_TEXT_COLOR = (100, 100, 100)


@dataclass(frozen=True)
class WhitespaceBand:
    """Contiguous run of blank rows, inclusive on both ends."""

    start: int
    end: int

    @property
    def centre(self) -> float:
        return (self.start + self.end) / 2

    @property
    def width(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class PageSlice:
    """Source rows [src_y, src_y + src_h) shown on one output page."""

    src_y: int
    src_h: int
    used_overlap: bool = False
    consumed_band: Optional[WhitespaceBand] = None

    @property
    def src_end(self) -> int:
        return self.src_y + self.src_h


@dataclass(frozen=True)
class PageLayout:
    """Page geometry in millimetres and the source rows that fill one page."""

    page_width_mm: float
    page_height_mm: float
    margin_mm: float
    content_width_mm: float
    content_height_mm: float
    footer_reserved_mm: float
    image_content_height_mm: float
    raster_width_px: int
    page_rows: int

    @property
    def mm_per_px(self) -> float:
        return self.content_width_mm / self.raster_width_px


@dataclass
class PaginationResult:
    layout: PageLayout
    slices: List[PageSlice]
    bands: Optional[List[WhitespaceBand]] = field(default=None, repr=False)

    @property
    def bands_available(self) -> bool:
        return self.bands is not None


def _luminance(image: Image.Image, stride: int) -> np.ndarray:
    """Per-pixel (r+g+b)/3 for every stride-th column, shape (H, ceil(W/stride))."""
    try:
        pixels = np.asarray(image.convert("RGB"), dtype=np.float32)
    except (OSError, ValueError, AttributeError) as e:
        raise PixelReadUnavailable(f"Cannot read raster pixels: {e}") from e
    if pixels.ndim != 3 or pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise PixelReadUnavailable(f"Raster has no readable pixels (shape {pixels.shape})")
    return pixels[:, ::stride, :3].mean(axis=2)


def detect_background_brightness(luminance: np.ndarray, edge_fraction: float = EDGE_FRACTION) -> float:
    """
    Estimate page background brightness from the top and bottom rows.

    Headers and footers are usually plain background, which makes this work
    on both light and dark pages.

    Returns:
        Brightness in [0, 255]; 255 for an empty raster
    """
    height = luminance.shape[0]
    if height == 0 or luminance.size == 0:
        return 255.0
    edge_rows = max(1, int(height * edge_fraction + 0.5))
    samples = np.concatenate([luminance[:edge_rows], luminance[height - edge_rows:]])
    return float(samples.mean())


def build_row_scores(luminance: np.ndarray, bg_brightness: float) -> np.ndarray:
    """
    Mean absolute deviation of each row from the background.

    Rows are not smoothed: averaging with neighbours raises genuine blank
    rows above the threshold and erases real gaps between text lines.
    """
    if luminance.size == 0:
        return np.zeros(luminance.shape[0], dtype=np.float32)
    return np.abs(luminance - bg_brightness).mean(axis=1).astype(np.float32)


def find_whitespace_bands(
    row_scores: Sequence[float],
    threshold: float = BLANK_ROW_THRESHOLD,
    min_band_px: int = MIN_BAND_PX
) -> List[WhitespaceBand]:
    """
    Find maximal runs of blank rows.

    Args:
        row_scores: One score per row, lower is blanker
        threshold: Rows scoring below this are blank
        min_band_px: Shorter runs are ignored

    Returns:
        Bands in ascending order
    """
    bands = []
    in_band = False
    band_start = 0

    for i, score in enumerate(row_scores):
        is_blank = score < threshold

        if is_blank and not in_band:
            band_start = i
            in_band = True
        elif not is_blank and in_band:
            if i - band_start >= min_band_px:
                bands.append(WhitespaceBand(band_start, i - 1))
            in_band = False

    if in_band and len(row_scores) - band_start >= min_band_px:
        bands.append(WhitespaceBand(band_start, len(row_scores) - 1))

    return bands


class WhitespaceDetector:
    """Detects horizontal whitespace bands in a raster."""

    def __init__(
        self,
        threshold: float = BLANK_ROW_THRESHOLD,
        min_band_px: int = MIN_BAND_PX,
        sample_stride: int = SAMPLE_STRIDE
    ):
        """
        Args:
            threshold: Maximum row deviation from the background to count as blank
            min_band_px: Minimum run of blank rows that forms a band
            sample_stride: Column sampling step
        """
        self.threshold = threshold
        self.min_band_px = min_band_px
        self.sample_stride = max(1, sample_stride)

    def row_scores(self, image: Image.Image) -> np.ndarray:
        luminance = _luminance(image, self.sample_stride)
        bg = detect_background_brightness(luminance)
        logger.debug("Background brightness %.1f", bg)
        return build_row_scores(luminance, bg)

    def detect(self, image: Image.Image) -> List[WhitespaceBand]:
        """Bands over the full raster height. Raises PixelReadUnavailable."""
        return find_whitespace_bands(self.row_scores(image), self.threshold, self.min_band_px)


class PageSlicer:
    """Chooses where each page ends."""

    def __init__(
        self,
        overlap_px: int = OVERLAP_PX,
        search_ahead_fraction: float = SEARCH_AHEAD_FRACTION,
        min_slice_fraction: float = MIN_SLICE_FRACTION
    ):
        self.overlap_px = overlap_px
        self.search_ahead_fraction = search_ahead_fraction
        self.min_slice_fraction = min_slice_fraction

    def _select_band(
        self,
        bands: Sequence[WhitespaceBand],
        prev_cut_y: int,
        nominal_end_y: int,
        page_rows: int
    ) -> Optional[WhitespaceBand]:
        # Bands starting at or before prev_cut_y are consumed, or would end the
        # page on rows the previous page already showed.
        candidates = [b for b in bands if b.start > prev_cut_y]

        # Pass 1: closest band at or after the nominal cut that the page can
        # still reach.
        limit = page_rows * self.search_ahead_fraction
        ahead = [b for b in candidates
                 if b.centre >= nominal_end_y and b.start <= nominal_end_y
                 and b.centre - nominal_end_y <= limit]
        if ahead:
            return min(ahead, key=lambda b: b.centre - nominal_end_y)

        # Pass 2: closest band behind it; the page ends a little early.
        behind = [b for b in candidates if b.centre < nominal_end_y]
        if behind:
            return min(behind, key=lambda b: nominal_end_y - b.centre)

        return None

    def plan(
        self,
        height: int,
        page_rows: int,
        bands: Optional[Sequence[WhitespaceBand]] = None
    ) -> List[PageSlice]:
        """
        Select page slices, greedy from the top.

        Args:
            height: Raster height in rows
            page_rows: Source rows that fill one page
            bands: Whitespace bands, or None when pixels could not be read

        Returns:
            Slices in page order
        """
        if height <= 0:
            return []
        page_rows = max(1, int(page_rows))
        bands = bands or []
        overlap = min(self.overlap_px, page_rows // 2)

        slices = []
        prev_cut_y = 0
        after_raw_cut = False

        while prev_cut_y < height:
            start = prev_cut_y
            if after_raw_cut and overlap > 0:
                start = max(0, prev_cut_y - overlap)
            used_overlap = start < prev_cut_y

            # Remainder fits on one page
            if height - start <= page_rows:
                slices.append(PageSlice(start, height - start, used_overlap))
                break

            nominal_end_y = start + page_rows
            band = self._select_band(bands, prev_cut_y, nominal_end_y, page_rows)
            end = band.start if band is not None else nominal_end_y

            if end - start < page_rows * self.min_slice_fraction:
                start = prev_cut_y
                end = min(prev_cut_y + page_rows, height)
                band = None
                used_overlap = False

            src_h = max(1, min(end - start, page_rows))
            slices.append(PageSlice(start, src_h, used_overlap, band))

            if band is not None:
                # skip the whole band, not just up to its start
                prev_cut_y = band.end + 1
                after_raw_cut = False
            else:
                prev_cut_y = start + src_h
                after_raw_cut = True

        return slices


def resolve_page_size(page_size: Union[str, Tuple[float, float]]) -> Union[str, Tuple[float, float]]:
    """Normalise a page size name or (width_mm, height_mm) tuple."""
    if isinstance(page_size, str):
        key = page_size.lower()
        if key == FULL_PAGE:
            return FULL_PAGE
        if key not in PAGE_SIZES_MM:
            raise GeometryError(
                f"Unknown page size '{page_size}'. Use one of: {', '.join(sorted(PAGE_SIZES_MM))}, {FULL_PAGE}")
        return PAGE_SIZES_MM[key]
    w, h = page_size
    if w <= 0 or h <= 0:
        raise GeometryError(f"Page size must be positive, got {w}x{h} mm")
    return float(w), float(h)


class Paginator:
    """Splits finished rasters into print pages cut on whitespace."""

    def __init__(
        self,
        page_size: Union[str, Tuple[float, float]] = "a4",
        margin_mm: float = DEFAULT_MARGIN_MM,
        footer_lines: Sequence[str] = None,
        detector: WhitespaceDetector = None,
        slicer: PageSlicer = None
    ):
        """
        Args:
            page_size: 'a4', 'a5', 'letter', 'full' or (width_mm, height_mm)
            margin_mm: Margin on every side of the page
            footer_lines: Text printed at the bottom of every page
            detector: Whitespace band detector
            slicer: Page cut selector
        """
        self.page_size = resolve_page_size(page_size)
        self.margin_mm = 0.0 if self.page_size == FULL_PAGE else float(margin_mm)
        self.footer_lines = [line for line in (footer_lines or []) if line]
        self.detector = detector or WhitespaceDetector()
        self.slicer = slicer or PageSlicer()

    @property
    def full_page(self) -> bool:
        return self.page_size == FULL_PAGE

    @property
    def footer_reserved_mm(self) -> float:
        if not self.footer_lines:
            return 0.0
        return FOOTER_PADDING_MM + len(self.footer_lines) * FOOTER_LINE_HEIGHT_MM

    def layout_for(self, raster_width: int, raster_height: int) -> PageLayout:
        """Page geometry for a raster of the given pixel size."""
        if raster_width <= 0 or raster_height <= 0:
            raise GeometryError(f"Raster must not be empty, got {raster_width}x{raster_height}")

        if self.full_page:
            width_mm = raster_width * PX_TO_MM
            height_mm = raster_height * PX_TO_MM
            return PageLayout(
                page_width_mm=width_mm,
                page_height_mm=height_mm,
                margin_mm=0.0,
                content_width_mm=width_mm,
                content_height_mm=height_mm,
                footer_reserved_mm=0.0,
                image_content_height_mm=height_mm,
                raster_width_px=raster_width,
                page_rows=raster_height,
            )

        page_w, page_h = self.page_size
        content_w = page_w - 2 * self.margin_mm
        content_h = page_h - 2 * self.margin_mm
        if content_w <= 0 or content_h <= 0:
            raise GeometryError(
                f"Margins too large: 2 x {self.margin_mm}mm exceeds the {page_w}x{page_h}mm page")

        # The footer band shrinks the image area of every page alike, so the
        # image never reaches the footer text.
        image_content_h = content_h - self.footer_reserved_mm
        if image_content_h <= 0:
            raise GeometryError(
                f"Footer of {len(self.footer_lines)} lines leaves no room for the image")

        page_rows = max(1, round(image_content_h * raster_width / content_w))

        return PageLayout(
            page_width_mm=page_w,
            page_height_mm=page_h,
            margin_mm=self.margin_mm,
            content_width_mm=content_w,
            content_height_mm=content_h,
            footer_reserved_mm=self.footer_reserved_mm,
            image_content_height_mm=image_content_h,
            raster_width_px=raster_width,
            page_rows=page_rows,
        )

    def paginate(self, image: Image.Image) -> PaginationResult:
        """
        Plan the pages for one raster.

        Unreadable pixels are not an error: every page then uses the raw cut
        and overlap fallback.
        """
        width, height = image.size
        layout = self.layout_for(width, height)

        if self.full_page:
            return PaginationResult(layout, [PageSlice(0, height)], None)

        bands = None
        try:
            bands = self.detector.detect(image)
        except PixelReadUnavailable as e:
            logger.debug("Paginating without whitespace bands: %s", e)

        slices = self.slicer.plan(height, layout.page_rows, bands)
        logger.info("Paginated %dx%d raster into %d pages (%s bands, %d rows/page)",
                    width, height, len(slices),
                    len(bands) if bands is not None else "no", layout.page_rows)
        return PaginationResult(layout, slices, bands)

    @staticmethod
    def draw_metrics(page_slice: PageSlice, layout: PageLayout) -> Tuple[float, float, float, float]:
        """
        Where a slice goes on its page.

        Returns:
            (x_mm, y_mm, width_mm, height_mm)
        """
        height_mm = page_slice.src_h * layout.mm_per_px
        return layout.margin_mm, layout.margin_mm, layout.content_width_mm, height_mm

    def render_page(
        self,
        image: Image.Image,
        page_slice: PageSlice,
        layout: PageLayout,
        dpi: int = 150
    ) -> Image.Image:
        """Draw one page: the slice scaled to the content width, then mask and footer."""
        def to_px(mm):
            return int(round(mm / 25.4 * dpi))

        page = Image.new("RGB", (to_px(layout.page_width_mm), to_px(layout.page_height_mm)), color="white")

        x_mm, y_mm, w_mm, h_mm = self.draw_metrics(page_slice, layout)
        content = image.convert("RGB").crop((0, page_slice.src_y, image.width, page_slice.src_end))
        draw_w, draw_h = max(1, to_px(w_mm)), max(1, to_px(h_mm))
        if content.size != (draw_w, draw_h):
            content = content.resize((draw_w, draw_h), Image.LANCZOS)
        page.paste(content, (to_px(x_mm), to_px(y_mm)))

        if layout.footer_reserved_mm > 0:
            self._draw_footer(page, layout, to_px, dpi)

        return page

    def _draw_footer(self, page: Image.Image, layout: PageLayout, to_px, dpi: int):
        draw = ImageDraw.Draw(page)
        zone_top = to_px(layout.margin_mm + layout.image_content_height_mm)
        # solid mask first so no image pixel shows inside the footer zone
        draw.rectangle((0, zone_top, page.width, page.height), fill="white")

        font = ImageFont.load_default(size=max(6, round(FOOTER_FONT_PT / 72 * dpi)))
        max_width = to_px(layout.content_width_mm)
        text_top_mm = layout.margin_mm + layout.image_content_height_mm + FOOTER_PADDING_MM
        for i, line in enumerate(self.footer_lines):
            text = fit_text(draw, line, font, max_width)
            y = to_px(text_top_mm + i * FOOTER_LINE_HEIGHT_MM)
            draw.text((to_px(layout.margin_mm), y), text, fill=FOOTER_TEXT_COLOR, font=font)


def fit_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> str:
    """Truncate text to fit max_width pixels."""
    if draw.textlength(text, font=font) <= max_width:
        return text
    while text and draw.textlength(text + "...", font=font) > max_width:
        text = text[:-1]
    return text + "..."
