"""Command-line interface."""

import argparse
import logging
import sys
from typing import List, Optional, Tuple, Union

from PIL import Image

from .capture import CapturePipeline, load_capture_rasters
from .errors import SnapStitchError
from .export import export_pages, export_pdf, footer_lines_for
from .paginator import (
    BLANK_ROW_THRESHOLD, FULL_PAGE, OVERLAP_PX, PAGE_SIZES_MM, PageSlicer, Paginator, WhitespaceDetector
)
from .planning import MAX_CANVAS_AREA, MAX_CANVAS_DIMENSION, CaptureLimits, PageGeometry, plan_capture
from .sources import ImagePageSource, ThrottledSource
from .store import CaptureStore


def _parse_page_size(value: str) -> Union[str, Tuple[float, float]]:
    """'a4', 'letter', 'a5', 'full' or 'WxH' in millimetres."""
    key = value.lower()
    if key in PAGE_SIZES_MM or key == FULL_PAGE:
        return key
    parts = key.split("x")
    if len(parts) != 2:
        raise argparse.ArgumentTypeError(
            f"Invalid page size '{value}'. Use a4, a5, letter, full or WxH in mm (e.g. 210x297)")
    try:
        w, h = float(parts[0]), float(parts[1])
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid page size '{value}'. Use numbers (e.g. 210x297)")
    if w <= 0 or h <= 0:
        raise argparse.ArgumentTypeError(f"Invalid page size '{value}'. Width and height must be positive")
    return w, h


def _add_limit_args(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--max-dimension",
        type=int,
        default=MAX_CANVAS_DIMENSION,
        help=f"Largest canvas side in pixels (default: {MAX_CANVAS_DIMENSION})"
    )
    parser.add_argument(
        "--max-area",
        type=int,
        default=MAX_CANVAS_AREA,
        help=f"Largest canvas area in pixels (default: {MAX_CANVAS_AREA})"
    )
    parser.add_argument(
        "--overlapping-segments",
        action="store_true",
        help="Let segment ranges overlap instead of clamping them end to end"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="snapstitch",
        description="Stitch viewport captures into segments and paginate them at whitespace",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s plan --total-height 25000 --viewport-width 1280 --viewport-height 800 --dpr 2
  %(prog)s capture page.png --viewport-height 800 --store captures/
  %(prog)s paginate --store captures/ --capture <id> --pdf out.pdf --footer-url
  %(prog)s paginate --store captures/ --pdf latest.pdf
  %(prog)s paginate screenshot.png -o pages/ --page-size letter
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan", help="Show the capture plan for a page")
    plan.add_argument("--total-height", type=int, required=True, help="Page height in CSS px")
    plan.add_argument("--viewport-width", type=int, required=True, help="Viewport width in CSS px")
    plan.add_argument("--viewport-height", type=int, required=True, help="Viewport height in CSS px")
    plan.add_argument("--dpr", type=float, default=1.0, help="Device pixel ratio (default: 1)")
    _add_limit_args(plan)

    capture = sub.add_parser("capture", help="Capture a rendered full-page image into the store")
    capture.add_argument("input", help="Full-page image")
    capture.add_argument("--store", required=True, help="Capture store directory")
    capture.add_argument("--viewport-height", type=int, required=True, help="Viewport height in CSS px")
    capture.add_argument("--dpr", type=float, default=1.0, help="Pixel density of the input (default: 1)")
    capture.add_argument("--url", default="", help="Page URL recorded in the metadata")
    capture.add_argument("--title", default="", help="Page title recorded in the metadata")
    capture.add_argument(
        "--throttle",
        type=float,
        default=0.0,
        help="Minimum seconds between viewport captures (default: 0)"
    )
    _add_limit_args(capture)

    paginate = sub.add_parser("paginate", help="Split rasters into print pages at whitespace")
    paginate.add_argument("inputs", nargs="*", help="Raster images, paginated in order")
    paginate.add_argument("--store", help="Capture store directory")
    paginate.add_argument("--capture", help="Stored capture id to paginate (default: the latest capture)")
    paginate.add_argument("-o", "--output-dir", default=None, help="Write pages as PNG files here")
    paginate.add_argument("-p", "--prefix", default="page", help="Prefix for PNG filenames (default: 'page')")
    paginate.add_argument("--pdf", default=None, help="Write pages as a single PDF (e.g. 'output.pdf')")
    paginate.add_argument(
        "--page-size",
        type=_parse_page_size,
        default="a4",
        help="a4, a5, letter, full (one page per raster) or WxH in mm (default: a4)"
    )
    paginate.add_argument("--margin", type=float, default=10.0, help="Page margin in mm (default: 10)")
    paginate.add_argument("--footer", action="append", default=[], help="Footer line (repeatable)")
    paginate.add_argument("--footer-url", action="store_true", help="Add the capture URL to the footer")
    paginate.add_argument("--footer-time", action="store_true", help="Add the capture time to the footer")
    paginate.add_argument("--dpi", type=int, default=150, help="Output resolution (default: 150)")
    paginate.add_argument(
        "-t", "--threshold",
        type=float,
        default=BLANK_ROW_THRESHOLD,
        help=f"Row deviation below which a row is blank (default: {BLANK_ROW_THRESHOLD})"
    )
    paginate.add_argument(
        "--overlap",
        type=int,
        default=OVERLAP_PX,
        help=f"Rows repeated after a cut with no whitespace (default: {OVERLAP_PX})"
    )
    paginate.add_argument("--dry-run", action="store_true", help="Print the page slices only")

    return parser


def _limits(args) -> CaptureLimits:
    return CaptureLimits(max_dimension=args.max_dimension, max_area=args.max_area)


def run_plan(args) -> int:
    geometry = PageGeometry(args.total_height, args.viewport_width, args.viewport_height, args.dpr)
    strategy, segments = plan_capture(geometry, _limits(args), contiguous=not args.overlapping_segments)

    print(f"Effective DPR: {strategy.effective_dpr} (native {geometry.device_pixel_ratio})")
    print(f"Max segment height: {strategy.max_segment_height_css} CSS px, "
          f"{strategy.viewports_per_segment} viewports per segment")
    print(f"Segments: {len(segments)}")
    for seg in segments:
        print(f"  Segment {seg.index + 1}: y {seg.start_y}-{seg.end_y} "
              f"({seg.height} px, positions {list(seg.positions)})")
    return 0


def run_capture(args) -> int:
    with Image.open(args.input) as img:
        image = img.convert("RGB")
    source = ThrottledSource(ImagePageSource(image, args.viewport_height, args.dpr), min_interval=args.throttle)
    store = CaptureStore(args.store)

    def report(done, total):
        print(f"  Captured {done}/{total}")

    pipeline = CapturePipeline(
        source, store, _limits(args),
        contiguous=not args.overlapping_segments,
        settle_delay=0,
        progress=report,
    )
    meta = pipeline.capture_full_page(url=args.url, title=args.title)
    for warning in meta.warnings:
        print(f"Warning: {warning}")
    print(f"Capture {meta.capture_id}: {meta.segment_count} segments, "
          f"{meta.width}x{meta.total_height} at {meta.device_pixel_ratio}x")
    return 0


def _load_rasters(args) -> Tuple[List[Image.Image], List[str]]:
    footer = list(args.footer)
    if args.capture and not args.store:
        raise SnapStitchError("--capture requires --store")
    if args.store and (args.capture or not args.inputs):
        store = CaptureStore(args.store)
        capture_id = args.capture or store.get_pending_capture_id()
        if not capture_id:
            raise SnapStitchError(f"No pending capture in {args.store}. Pass --capture")
        rasters = [seg.image for seg in load_capture_rasters(store, capture_id)]
        footer += footer_lines_for(store.get_meta(capture_id), args.footer_url, args.footer_time)
        return rasters, footer

    rasters = []
    for path in args.inputs:
        with Image.open(path) as img:
            rasters.append(img.convert("RGB"))
    return rasters, footer


def run_paginate(args) -> int:
    rasters, footer = _load_rasters(args)
    if not rasters:
        print("Error: Nothing to paginate. Pass image files or --store/--capture")
        return 1

    paginator = Paginator(
        args.page_size, args.margin, footer,
        detector=WhitespaceDetector(threshold=args.threshold),
        slicer=PageSlicer(overlap_px=args.overlap),
    )

    if args.dry_run:
        for i, raster in enumerate(rasters):
            result = paginator.paginate(raster)
            bands = len(result.bands) if result.bands_available else "no"
            print(f"Raster {i + 1}: {raster.width}x{raster.height}, {bands} bands, "
                  f"{result.layout.page_rows} rows/page")
            for n, s in enumerate(result.slices):
                note = " (overlap)" if s.used_overlap else ""
                cut = f" cut at band {s.consumed_band.start}-{s.consumed_band.end}" if s.consumed_band else ""
                print(f"  Page {n + 1}: y {s.src_y}-{s.src_end}{note}{cut}")
        return 0

    if not args.pdf and not args.output_dir:
        print("Error: Use --pdf and/or --output-dir to choose an output")
        return 1

    if args.output_dir:
        files = export_pages(rasters, args.output_dir, args.prefix, paginator, args.dpi)
        print(f"Created {len(files)} pages in {args.output_dir}")
    if args.pdf:
        count = export_pdf(rasters, args.pdf, paginator, args.dpi)
        print(f"PDF saved: {args.pdf} ({count} pages)")
    return 0


COMMANDS = {
    "plan": run_plan,
    "capture": run_capture,
    "paginate": run_paginate,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line interface."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        return COMMANDS[args.command](args)
    except (SnapStitchError, OSError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
