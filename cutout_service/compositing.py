"""Hard-alpha compositing of a visibility mask over the source pixels."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
from typing import Tuple

import cv2
import numpy as np
from PIL import Image

from .errors import DimensionMismatch, RenderSurfaceUnavailable
from .preprocessing import ImageAsset
from .segmentation import VisibilityMask

logger = logging.getLogger(__name__)

# RGB left under fully transparent pixels; never visible.
FILL_RGB = (255, 255, 255)


@dataclass(frozen=True)
class CompositedImage:
    pixels: np.ndarray  # (H, W, 4) uint8, alpha in {0, 255}

    def __post_init__(self) -> None:
        pixels = np.array(self.pixels, copy=True)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]

    def to_png_bytes(self) -> bytes:
        return encode_png(self)


def _allocate_surface(width: int, height: int) -> np.ndarray:
    try:
        surface = np.empty((height, width, 4), dtype=np.uint8)
    except (MemoryError, ValueError) as exc:
        raise RenderSurfaceUnavailable(
            f"Could not allocate a {width}x{height} compositing surface"
        ) from exc
    surface[..., :3] = FILL_RGB
    surface[..., 3] = 255
    return surface


def composite(image: ImageAsset, mask: VisibilityMask) -> CompositedImage:
    """
    Keep source pixels where the mask is set, make everything else transparent.

    Equivalent to a "source-in" blend over an opaque mask layer: alpha is
    255 for subject pixels and 0 elsewhere, with no feathering at the edge.

    Raises:
        DimensionMismatch: when image and mask sizes differ.
        RenderSurfaceUnavailable: when the output buffer cannot be allocated.
    """
    if image.size != mask.size:
        raise DimensionMismatch(f"Mask size {mask.size} does not match image size {image.size}")

    surface = _allocate_surface(image.width, image.height)
    visible = mask.data
    surface[..., 3] = np.where(visible, 255, 0).astype(np.uint8)
    surface[visible, :3] = image.rgb[visible]
    return CompositedImage(pixels=surface)


def encode_png(result: CompositedImage) -> bytes:
    """Serialize losslessly; the alpha channel round-trips bit-exactly."""
    try:
        out = Image.fromarray(np.ascontiguousarray(result.pixels))
        buf = BytesIO()
        out.save(buf, format="PNG")
    except (OSError, ValueError) as exc:
        raise RenderSurfaceUnavailable("Could not encode the result image") from exc
    return buf.getvalue()


def maybe_dump_debug(result: CompositedImage, mask: VisibilityMask, debug_dir: Path) -> None:
    """Write the mask and cutout for inspection when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        mask_path = debug_dir / "mask.png"
        cutout_path = debug_dir / "cutout.png"

        cv2.imwrite(str(mask_path), mask.data.astype(np.uint8) * 255)
        cv2.imwrite(str(cutout_path), cv2.cvtColor(result.pixels, cv2.COLOR_RGBA2BGRA))
        logger.debug("composite: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("composite: failed to write debug outputs: %s", exc)
