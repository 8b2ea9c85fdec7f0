"""
Image decoding and model-input preparation.

Uploads are decoded fully (no partially loaded images reach the model) into a
read-only `ImageAsset`. Inputs for the network are resized to a valid
resolution for the output stride and normalized to [-1, 1].
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError
import torch

from .errors import ImageDecodeError


@dataclass(frozen=True)
class ImageAsset:
    pixels: np.ndarray  # (H, W, 3|4) uint8
    format: Optional[str] = None

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] not in (3, 4):
            raise ValueError("ImageAsset pixels must be shaped (H, W, 3) or (H, W, 4)")
        if self.pixels.dtype != np.uint8:
            raise ValueError("ImageAsset pixels must be uint8")
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
        """(width, height), matching PIL."""
        return self.width, self.height

    @property
    def mode(self) -> str:
        return "RGBA" if self.pixels.shape[2] == 4 else "RGB"

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    @classmethod
    def from_pil(cls, image: Image.Image, format: Optional[str] = None) -> "ImageAsset":
        if image.mode not in ("RGB", "RGBA"):
            image = image.convert("RGB")
        return cls(pixels=np.array(image, dtype=np.uint8), format=format)


def _has_alpha(image: Image.Image) -> bool:
    return image.mode in ("RGBA", "LA", "PA") or (
        image.mode == "P" and "transparency" in image.info
    )


def decode_image(image_bytes: bytes) -> ImageAsset:
    """
    Decode raw file bytes into an `ImageAsset`.

    EXIF orientation is applied so the cutout matches what a viewer shows.

    Raises:
        ImageDecodeError: when the bytes are empty, truncated or not an image.
    """
    if not image_bytes:
        raise ImageDecodeError("Image file is empty")
    try:
        with Image.open(BytesIO(image_bytes)) as opened:
            source_format = opened.format
            opened.load()
            image = ImageOps.exif_transpose(opened)
            image = image.convert("RGBA" if _has_alpha(image) else "RGB")
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError("Failed to load image") from exc

    if image.width == 0 or image.height == 0:
        raise ImageDecodeError("Image has no pixels")
    return ImageAsset.from_pil(image, format=source_format)


async def load_image(image_bytes: bytes) -> ImageAsset:
    """Decode off the event loop; resolves to an asset or raises `ImageDecodeError`."""
    return await asyncio.to_thread(decode_image, image_bytes)


def _valid_input_dim(size: float, output_stride: int) -> int:
    """Snap a dimension to `k * output_stride + 1`, the grid the network aligns to."""
    snapped = int(size) // output_stride * output_stride + 1
    return max(output_stride + 1, snapped)


def compute_input_size(width: int, height: int, scale: float, output_stride: int) -> Tuple[int, int]:
    """Return the (width, height) fed to the network for an internal resolution scale."""
    return (
        _valid_input_dim(width * scale, output_stride),
        _valid_input_dim(height * scale, output_stride),
    )


def prepare_input_tensor(
    image: ImageAsset,
    scale: float,
    output_stride: int,
    device: torch.device,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """Resize, normalize to [-1, 1] and lay out as a (1, 3, h, w) tensor."""
    new_w, new_h = compute_input_size(image.width, image.height, scale, output_stride)
    rgb = Image.fromarray(np.ascontiguousarray(image.rgb))
    if (new_w, new_h) != rgb.size:
        rgb = rgb.resize((new_w, new_h), Image.BILINEAR)

    im_np = np.asarray(rgb).astype("float32") / 255.0
    im_np = (im_np - 0.5) / 0.5
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW

    return torch.from_numpy(np.ascontiguousarray(im_np)).unsqueeze(0).to(device=device, dtype=dtype)
