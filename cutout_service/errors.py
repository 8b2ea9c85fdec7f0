"""Failure types surfaced by the cutout pipeline."""

from __future__ import annotations

from typing import Optional


class CutoutError(Exception):
    """Base class; `message` is safe to show to the user as-is."""

    default_message = "Background removal failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BackendUnavailable(CutoutError):
    default_message = "No compute backend could be initialized"


class ModelLoadError(CutoutError):
    default_message = "Segmentation model could not be loaded"


class ImageDecodeError(CutoutError):
    default_message = "Failed to load image"


class InferenceError(CutoutError):
    default_message = "Segmentation failed"


class DimensionMismatch(CutoutError):
    default_message = "Mask and image dimensions differ"


class RenderSurfaceUnavailable(CutoutError):
    default_message = "Canvas context unavailable"
