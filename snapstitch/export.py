"""Page export: paginated rasters to PDF documents or numbered PNG pages."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Iterator, List, Sequence, Union

from PIL import Image, ImageDraw, ImageFont

from .paginator import Paginator, fit_text

logger = logging.getLogger(__name__)

DEFAULT_DPI = 150


def footer_lines_for(meta, show_url: bool = True, show_timestamp: bool = True) -> List[str]:
    """URL and capture time lines for a capture's footer."""
    lines = []
    if meta is None:
        return lines
    if show_url and meta.url:
        lines.append(meta.url)
    if show_timestamp and meta.created_at:
        lines.append(datetime.fromtimestamp(meta.created_at).strftime("%Y-%m-%d %H:%M:%S"))
    return lines


def add_metadata_overlay(image: Image.Image, lines: Sequence[str]) -> Image.Image:
    """
    Copy of the image with a translucent bar of text lines along its bottom.

    Returns the image unchanged when there is nothing to show.
    """
    lines = [line for line in lines if line]
    if not lines:
        return image

    font_size = max(12, round(image.width * 0.012))
    padding = round(font_size * 0.8)
    line_height = round(font_size * 1.4)
    bar_height = len(lines) * line_height + padding * 2

    base = image.convert("RGBA")
    bar = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(bar)
    draw.rectangle((0, base.height - bar_height, base.width, base.height), fill=(0, 0, 0, 153))

    font = ImageFont.load_default(size=font_size)
    text_y = base.height - bar_height + padding
    for line in lines:
        text = fit_text(draw, line, font, base.width - padding * 2)
        draw.text((padding, text_y), text, fill=(255, 255, 255, 255), font=font)
        text_y += line_height

    return Image.alpha_composite(base, bar).convert("RGB")


def _native_page(image: Image.Image, dpi: int) -> Image.Image:
    """A raster at its native 96 px/inch size, resampled for the output dpi."""
    scale = dpi / 96
    if scale == 1:
        return image.convert("RGB")
    size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    return image.convert("RGB").resize(size, Image.LANCZOS)


def iter_pages(
    rasters: Iterable[Image.Image],
    paginator: Paginator = None,
    dpi: int = DEFAULT_DPI
) -> Iterator[Image.Image]:
    """
    Render the output pages of one or more segment rasters, in order.

    In 'full' mode every raster becomes one page at its native size and the
    footer lines are overlaid on the last one. Otherwise each raster is
    paginated on its own.
    """
    paginator = paginator or Paginator()
    rasters = list(rasters)

    for index, raster in enumerate(rasters):
        if paginator.full_page:
            if index == len(rasters) - 1:
                raster = add_metadata_overlay(raster, paginator.footer_lines)
            yield _native_page(raster, dpi)
            continue

        result = paginator.paginate(raster)
        for page_slice in result.slices:
            yield paginator.render_page(raster, page_slice, result.layout, dpi)


def export_pdf(
    rasters: Iterable[Image.Image],
    pdf_path: Union[str, Path],
    paginator: Paginator = None,
    dpi: int = DEFAULT_DPI
) -> int:
    """
    Export the pages of the given rasters as a single PDF.

    Returns:
        Number of pages written
    """
    pages = list(iter_pages(rasters, paginator, dpi))
    if not pages:
        raise ValueError("No pages available for PDF export")

    pdf_path = Path(pdf_path)
    pdf_path.parent.mkdir(parents=True, exist_ok=True)
    pages[0].save(
        pdf_path, "PDF", resolution=dpi,
        save_all=True, append_images=pages[1:]
    )
    logger.info("PDF saved: %s (%d pages)", pdf_path, len(pages))
    return len(pages)


def export_pages(
    rasters: Iterable[Image.Image],
    output_dir: Union[str, Path],
    output_prefix: str = "page",
    paginator: Paginator = None,
    dpi: int = DEFAULT_DPI
) -> List[str]:
    """
    Export the pages as numbered PNG files.

    Returns:
        List of output file paths
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    output_files = []
    for i, page in enumerate(iter_pages(rasters, paginator, dpi)):
        output_file = output_path / f"{output_prefix}_{i+1:03d}.png"
        page.save(output_file, "PNG")
        output_files.append(str(output_file))

    logger.info("Wrote %d pages to %s", len(output_files), output_path)
    return output_files
