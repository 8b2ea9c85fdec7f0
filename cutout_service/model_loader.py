"""
Model loading utilities for the person segmentation network.

`ModelManager` owns the process-wide `ModelHandle`:
 - picks a compute backend (accelerated first, baseline as fallback),
 - builds `BodyPixNet` and loads the checkpoint from `SEGMENTATION_MODEL_PATH`,
 - caches the ready handle and never tears it down.

Initialization runs at most once at a time: concurrent callers of
`get_handle()` share the in-flight task. A failed initialization leaves the
cache empty so the next call starts over.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Callable, List, Optional

import torch

from . import config
from .backends import Backend, initialize_backend
from .bodypix_model import BodyPixNet
from .errors import BackendUnavailable, CutoutError, ModelLoadError

logger = logging.getLogger(__name__)

BackendFactory = Callable[[str], Backend]
ModelLoader = Callable[[config.Settings, Backend], torch.nn.Module]


@dataclass(frozen=True)
class ModelHandle:
    model: torch.nn.Module
    backend: Backend
    dtype: torch.dtype
    output_stride: int
    architecture: str = "MobileNetV1"

    @property
    def device(self) -> torch.device:
        return self.backend.device

    @property
    def ready(self) -> bool:
        return self.model is not None


def precision_for(quant_bytes: int, backend: Backend) -> torch.dtype:
    """
    Map the configured weight precision onto a torch dtype.

    Half precision is only used on accelerated devices; CPU kernels for
    float16 convolutions are slow or missing. Eager torch has no int8
    convolution path, so 1-byte quantization is served as float16.
    """
    if quant_bytes >= 4 or not backend.accelerated:
        return torch.float32
    return torch.float16


def _try_load_torchscript(model_path: Path, device: torch.device) -> torch.nn.Module:
    return torch.jit.load(str(model_path), map_location=device)


def _clean_state_dict(state_dict: dict) -> dict:
    """Remove common wrappers such as 'module.' prefixes."""
    cleaned = {}
    for key, value in state_dict.items():
        new_key = key
        if new_key.startswith("module."):
            new_key = new_key[len("module.") :]
        if new_key.startswith("model."):
            new_key = new_key[len("model.") :]
        cleaned[new_key] = value
    return cleaned


def _load_from_state_dict(model_path: Path, settings: config.Settings) -> torch.nn.Module:
    checkpoint = torch.load(model_path, map_location="cpu", weights_only=True)
    if isinstance(checkpoint, dict) and "state_dict" in checkpoint:
        checkpoint = checkpoint["state_dict"]
    if not isinstance(checkpoint, dict):
        raise ModelLoadError("Unsupported checkpoint format for the segmentation model")

    model = BodyPixNet(multiplier=settings.multiplier, output_stride=settings.output_stride)
    missing, unexpected = model.load_state_dict(_clean_state_dict(checkpoint), strict=False)
    # BatchNorm step counters are unused in eval mode.
    missing = [key for key in missing if not key.endswith("num_batches_tracked")]
    if missing:
        raise ModelLoadError(
            "Segmentation checkpoint does not match {} (missing {} of {} weights)".format(
                settings.model_architecture, len(missing), len(model.state_dict())
            )
        )
    if unexpected:
        logger.warning("Unexpected keys when loading segmentation checkpoint: %s", unexpected)
    return model


def load_segmentation_model(settings: config.Settings, backend: Backend) -> torch.nn.Module:
    """Load the checkpoint onto `backend` in the configured precision."""
    model_path = settings.segmentation_model_path
    if model_path is None:
        raise ModelLoadError("SEGMENTATION_MODEL_PATH is not configured")
    if not model_path.exists():
        raise ModelLoadError(f"Segmentation checkpoint not found at {model_path}")

    try:
        logger.info("Attempting to load TorchScript model from %s", model_path)
        model = _try_load_torchscript(model_path, backend.device)
    except Exception as script_error:  # noqa: BLE001
        logger.info("TorchScript load failed, falling back to state_dict. Error: %s", script_error)
        model = _load_from_state_dict(model_path, settings)

    dtype = precision_for(settings.quant_bytes, backend)
    model.to(device=backend.device, dtype=dtype)
    model.eval()
    return model


def _consume_init_exception(task: asyncio.Future) -> None:
    # Every waiter may have been cancelled before the shared task failed.
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Model initialization failed: %s", task.exception())


class ModelManager:
    """Lazily creates and caches the single `ModelHandle`."""

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        backend_factory: BackendFactory = initialize_backend,
        model_loader: ModelLoader = load_segmentation_model,
    ):
        self._settings = settings or config.get_settings()
        self._backend_factory = backend_factory
        self._model_loader = model_loader
        self._handle: Optional[ModelHandle] = None
        self._init_task: Optional[asyncio.Future] = None

    @property
    def is_ready(self) -> bool:
        return self._handle is not None

    async def get_handle(self) -> ModelHandle:
        """Return the cached handle, initializing backend and model on first use."""
        if self._handle is not None:
            return self._handle
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
            self._init_task.add_done_callback(_consume_init_exception)
        # Shielded so a cancelled caller does not cancel the shared initialization.
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> ModelHandle:
        try:
            handle = await asyncio.to_thread(self._build_handle)
            self._handle = handle
            return handle
        finally:
            self._init_task = None

    def _select_backend(self) -> Backend:
        failures: List[str] = []
        for kind in self._settings.backend_preference:
            try:
                backend = self._backend_factory(kind)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Backend %s failed to initialize: %s", kind, exc)
                failures.append(f"{kind}: {exc}")
                continue
            logger.info("Using %s backend on %s", backend.kind, backend.device)
            return backend
        raise BackendUnavailable(
            "No compute backend could be initialized ({})".format("; ".join(failures))
        )

    def _build_handle(self) -> ModelHandle:
        backend = self._select_backend()
        try:
            model = self._model_loader(self._settings, backend)
        except CutoutError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ModelLoadError(f"Segmentation model could not be loaded: {exc}") from exc

        handle = ModelHandle(
            model=model,
            backend=backend,
            dtype=precision_for(self._settings.quant_bytes, backend),
            output_stride=self._settings.output_stride,
            architecture=self._settings.model_architecture,
        )
        logger.info(
            "Segmentation model loaded: arch=%s stride=%d multiplier=%.2f dtype=%s device=%s",
            handle.architecture,
            handle.output_stride,
            self._settings.multiplier,
            handle.dtype,
            handle.device,
        )
        return handle
