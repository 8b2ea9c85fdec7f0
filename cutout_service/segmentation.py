"""
Person segmentation on a decoded image.

The network runs at an internal resolution, its probabilities are resized
back to the source size, and every pixel is classified with a hard
threshold. Only the boolean result is kept.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
from typing import Optional, Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F

from . import config
from .errors import InferenceError
from .model_loader import ModelHandle
from .preprocessing import ImageAsset, prepare_input_tensor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentationConfig:
    internal_resolution: Union[str, float] = "medium"
    segmentation_threshold: float = 0.7

    def __post_init__(self) -> None:
        config.resolve_internal_resolution(self.internal_resolution)
        if not math.isfinite(self.segmentation_threshold):
            raise ValueError("segmentation_threshold must be a finite number")

    @property
    def scale(self) -> float:
        return config.resolve_internal_resolution(self.internal_resolution)

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "SegmentationConfig":
        settings = settings or config.get_settings()
        return cls(
            internal_resolution=settings.internal_resolution,
            segmentation_threshold=settings.segmentation_threshold,
        )


@dataclass(frozen=True)
class VisibilityMask:
    data: np.ndarray  # (H, W) bool, True = subject

    def __post_init__(self) -> None:
        if self.data.ndim != 2 or self.data.dtype != np.bool_:
            raise ValueError("VisibilityMask data must be a 2-D boolean array")
        data = np.array(self.data, copy=True)
        data.setflags(write=False)
        object.__setattr__(self, "data", data)

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def coverage(self) -> float:
        """Fraction of pixels classified as subject."""
        return float(self.data.mean()) if self.data.size else 0.0


def _extract_logits(output) -> torch.Tensor:
    if isinstance(output, (list, tuple)):
        output = output[0]
    elif hasattr(output, "logits"):
        output = output.logits
    if not isinstance(output, torch.Tensor):
        raise InferenceError("Segmentation model returned an unexpected output")
    if output.dim() == 3:
        output = output.unsqueeze(1)
    if output.dim() != 4:
        raise InferenceError(f"Segmentation output has unexpected shape {tuple(output.shape)}")
    return output


def run_segmentation(image: ImageAsset, handle: ModelHandle, seg_config: SegmentationConfig) -> VisibilityMask:
    """Synchronous inference; `SegmentationEngine.segment` runs this off the event loop."""
    tensor = prepare_input_tensor(
        image,
        scale=seg_config.scale,
        output_stride=handle.output_stride,
        device=handle.device,
        dtype=handle.dtype,
    )
    try:
        with torch.no_grad():
            logits = _extract_logits(handle.model(tensor))
            probs = torch.sigmoid(logits[:, :1].float())
            probs = F.interpolate(
                probs,
                size=(image.height, image.width),
                mode="bilinear",
                align_corners=True,
            )
            visible = (probs[0, 0] > seg_config.segmentation_threshold).cpu().numpy()
    except InferenceError:
        raise
    except Exception as exc:  # noqa: BLE001
        raise InferenceError(f"Segmentation failed: {exc}") from exc

    mask = VisibilityMask(data=np.ascontiguousarray(visible, dtype=bool))
    if mask.size != image.size:
        raise InferenceError(f"Segmentation produced a {mask.size} mask for a {image.size} image")

    logger.debug(
        "segmentation: input=%dx%d resolution=%s threshold=%.3f coverage=%.4f",
        tensor.shape[3],
        tensor.shape[2],
        seg_config.internal_resolution,
        seg_config.segmentation_threshold,
        mask.coverage,
    )
    return mask


class SegmentationEngine:
    """Runs the loaded model on decoded images."""

    def __init__(self, default_config: Optional[SegmentationConfig] = None):
        self.default_config = default_config or SegmentationConfig()

    async def segment(
        self,
        image: ImageAsset,
        handle: Optional[ModelHandle],
        seg_config: Optional[SegmentationConfig] = None,
    ) -> VisibilityMask:
        if handle is None or not handle.ready:
            raise InferenceError("Segmentation model is not ready")
        return await asyncio.to_thread(run_segmentation, image, handle, seg_config or self.default_config)
