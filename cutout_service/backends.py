"""
Compute backend selection.

The accelerated backend prefers CUDA, then Apple MPS. The baseline backend is
always the CPU. Each candidate is smoke-tested with a tiny allocation because
`is_available()` can report devices whose kernels do not actually run.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging

import torch

from .config import ACCELERATED, BASELINE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backend:
    kind: str
    device: torch.device

    @property
    def accelerated(self) -> bool:
        return self.kind == ACCELERATED


def _smoke_test(device: torch.device) -> None:
    probe = torch.zeros(1, device=device)
    _ = probe + 1
    if device.type == "cuda":
        torch.cuda.synchronize(device)
    elif device.type == "mps":
        torch.mps.synchronize()
    del probe


def _accelerated_device() -> torch.device:
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    raise RuntimeError("No CUDA or MPS device available")


def initialize_backend(kind: str) -> Backend:
    """Return a verified backend of the given kind or raise."""
    if kind == ACCELERATED:
        device = _accelerated_device()
    elif kind == BASELINE:
        device = torch.device("cpu")
    else:
        raise ValueError(f"Unknown backend kind: {kind}")

    _smoke_test(device)
    logger.debug("Backend %s verified on %s", kind, device)
    return Backend(kind=kind, device=device)
