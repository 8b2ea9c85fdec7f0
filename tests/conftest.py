from __future__ import annotations

from pathlib import Path

import pytest
import torch

from cutout_service.backends import Backend
from cutout_service.bodypix_model import BodyPixNet
from cutout_service.config import BASELINE, Settings
from cutout_service.model_loader import ModelHandle


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(_env_file=None, debug_output_dir=tmp_path / "debug")


@pytest.fixture
def cpu_backend() -> Backend:
    return Backend(kind=BASELINE, device=torch.device("cpu"))


@pytest.fixture
def bodypix_handle(cpu_backend: Backend) -> ModelHandle:
    torch.manual_seed(0)
    model = BodyPixNet(multiplier=0.5, output_stride=16).eval()
    return ModelHandle(model=model, backend=cpu_backend, dtype=torch.float32, output_stride=16)
