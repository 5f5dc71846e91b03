"""
Capture store

Persists segment rasters and capture metadata as plain files:

    <root>/<capture_id>/meta.json
    <root>/<capture_id>/segment-<index>.png
    <root>/<capture_id>/segment-<index>.json
    <root>/state.json    (id of the capture awaiting export)
"""

import json
import logging
import shutil
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from PIL import Image

from .errors import CaptureNotFound
from .stitcher import SegmentRaster

logger = logging.getLogger(__name__)

STATE_FILE = "state.json"


def create_capture_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CaptureMeta:
    capture_id: str
    created_at: float
    url: str = ""
    title: str = ""
    mode: str = "full"
    segment_count: int = 0
    width: int = 0
    total_height: int = 0
    css_total_height: Optional[int] = None
    viewport_height: Optional[int] = None
    device_pixel_ratio: float = 1.0
    original_device_pixel_ratio: Optional[float] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "CaptureMeta":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


class CaptureStore:
    """Blob store for segment rasters, keyed by capture id and segment index."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _capture_dir(self, capture_id: str) -> Path:
        if not capture_id or "/" in capture_id or "\\" in capture_id or capture_id in (".", ".."):
            raise ValueError(f"Invalid capture id: {capture_id!r}")
        return self.root / capture_id

    def put_segment(self, raster: SegmentRaster) -> SegmentRaster:
        if raster.index < 0:
            raise ValueError(f"Segment index must be non-negative, got {raster.index}")
        capture_dir = self._capture_dir(raster.capture_id)
        capture_dir.mkdir(parents=True, exist_ok=True)

        raster.image.save(capture_dir / f"segment-{raster.index}.png", "PNG")
        info = {
            "capture_id": raster.capture_id,
            "index": raster.index,
            "width": raster.width,
            "height": raster.height,
            "y_start": raster.y_start,
            "y_end": raster.y_end,
        }
        (capture_dir / f"segment-{raster.index}.json").write_text(json.dumps(info), encoding="utf-8")
        logger.debug("Stored segment %d of %s (%dx%d)", raster.index, raster.capture_id,
                     raster.width, raster.height)
        return raster

    def get_segment(self, capture_id: str, index: int) -> SegmentRaster:
        capture_dir = self._capture_dir(capture_id)
        info_path = capture_dir / f"segment-{index}.json"
        image_path = capture_dir / f"segment-{index}.png"
        if not info_path.exists() or not image_path.exists():
            raise CaptureNotFound(f"Capture segment {index} not found for {capture_id}")

        info = json.loads(info_path.read_text(encoding="utf-8"))
        with Image.open(image_path) as img:
            image = img.convert("RGB")
        return SegmentRaster(
            capture_id=capture_id,
            index=info["index"],
            image=image,
            y_start=info["y_start"],
            y_end=info["y_end"],
        )

    def list_segments(self, capture_id: str) -> List[SegmentRaster]:
        """All stored segments of a capture, ordered by index."""
        capture_dir = self._capture_dir(capture_id)
        if not capture_dir.is_dir():
            return []
        indices = sorted(int(p.stem.split("-", 1)[1]) for p in capture_dir.glob("segment-*.json"))
        return [self.get_segment(capture_id, i) for i in indices]

    def put_meta(self, meta: CaptureMeta) -> CaptureMeta:
        capture_dir = self._capture_dir(meta.capture_id)
        capture_dir.mkdir(parents=True, exist_ok=True)
        (capture_dir / "meta.json").write_text(json.dumps(asdict(meta), indent=2), encoding="utf-8")
        return meta

    def get_meta(self, capture_id: str) -> CaptureMeta:
        meta_path = self._capture_dir(capture_id) / "meta.json"
        if not meta_path.exists():
            raise CaptureNotFound(f"Capture metadata not found for {capture_id}")
        return CaptureMeta.from_dict(json.loads(meta_path.read_text(encoding="utf-8")))

    def _read_state(self) -> dict:
        state_path = self.root / STATE_FILE
        if not state_path.exists():
            return {}
        return json.loads(state_path.read_text(encoding="utf-8"))

    def set_pending_capture_id(self, capture_id: Optional[str]) -> Optional[str]:
        """Remember the capture to export next, or forget it with None."""
        if capture_id is not None:
            self._capture_dir(capture_id)
        state = self._read_state()
        state["pending_capture_id"] = capture_id
        (self.root / STATE_FILE).write_text(json.dumps(state), encoding="utf-8")
        return capture_id

    def get_pending_capture_id(self) -> Optional[str]:
        return self._read_state().get("pending_capture_id")

    def list_captures(self) -> List[str]:
        """Ids of captures with metadata, i.e. completed captures."""
        return sorted(p.parent.name for p in self.root.glob("*/meta.json"))

    def delete_capture(self, capture_id: str) -> bool:
        """Remove a capture and all its segments. Returns False if nothing was stored."""
        capture_dir = self._capture_dir(capture_id)
        if not capture_dir.exists():
            return False
        shutil.rmtree(capture_dir)
        if self.get_pending_capture_id() == capture_id:
            self.set_pending_capture_id(None)
        logger.debug("Deleted capture %s", capture_id)
        return True
