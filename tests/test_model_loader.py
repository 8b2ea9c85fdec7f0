"""Backend selection and once-only model initialization."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import pytest
import torch

from cutout_service.backends import Backend, initialize_backend
from cutout_service.bodypix_model import BodyPixNet
from cutout_service.config import ACCELERATED, BASELINE, Settings
from cutout_service.errors import BackendUnavailable, ModelLoadError
from cutout_service.model_loader import ModelManager, load_segmentation_model, precision_for
from fakes import CountingLoader, FakeBackendFactory, wait_for


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_initialization(settings: Settings) -> None:
    factory = FakeBackendFactory()
    loader = CountingLoader()
    manager = ModelManager(settings, backend_factory=factory, model_loader=loader)

    handles = await asyncio.gather(*(manager.get_handle() for _ in range(5)))

    assert loader.calls == 1
    assert factory.calls == [ACCELERATED]
    assert all(handle is handles[0] for handle in handles)
    assert manager.is_ready


@pytest.mark.asyncio
async def test_cached_handle_is_reused(settings: Settings) -> None:
    loader = CountingLoader()
    manager = ModelManager(settings, backend_factory=FakeBackendFactory(), model_loader=loader)

    first = await manager.get_handle()
    second = await manager.get_handle()

    assert first is second
    assert loader.calls == 1


@pytest.mark.asyncio
async def test_falls_back_to_baseline_backend(settings: Settings) -> None:
    factory = FakeBackendFactory(failing={ACCELERATED})
    manager = ModelManager(settings, backend_factory=factory, model_loader=CountingLoader())

    handle = await manager.get_handle()

    assert factory.calls == [ACCELERATED, BASELINE]
    assert handle.backend.kind == BASELINE
    assert handle.dtype == torch.float32
    assert handle.output_stride == 16


@pytest.mark.asyncio
async def test_backend_unavailable_does_not_poison_cache(settings: Settings) -> None:
    factory = FakeBackendFactory(failing={ACCELERATED, BASELINE})
    loader = CountingLoader()
    manager = ModelManager(settings, backend_factory=factory, model_loader=loader)

    with pytest.raises(BackendUnavailable) as excinfo:
        await manager.get_handle()

    assert "accelerated backend exploded" in excinfo.value.message
    assert not manager.is_ready
    assert loader.calls == 0

    factory.failing.clear()
    handle = await manager.get_handle()

    assert factory.calls == [ACCELERATED, BASELINE, ACCELERATED]
    assert handle.backend.kind == ACCELERATED
    assert loader.calls == 1


@pytest.mark.asyncio
async def test_loader_failure_becomes_model_load_error(settings: Settings) -> None:
    loader = CountingLoader(error=RuntimeError("corrupt weights"))
    manager = ModelManager(settings, backend_factory=FakeBackendFactory(), model_loader=loader)

    with pytest.raises(ModelLoadError, match="corrupt weights"):
        await manager.get_handle()

    loader.error = None
    assert (await manager.get_handle()).ready
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_initialization(settings: Settings) -> None:
    loader = CountingLoader()
    manager = ModelManager(settings, backend_factory=FakeBackendFactory(), model_loader=loader)

    waiter = asyncio.ensure_future(manager.get_handle())
    other = asyncio.ensure_future(manager.get_handle())
    await asyncio.sleep(0)
    waiter.cancel()

    handle = await other

    assert handle.ready
    assert loader.calls == 1


@pytest.mark.asyncio
async def test_failure_after_all_callers_cancelled_is_consumed(
    settings: Settings, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.DEBUG, logger="cutout_service.model_loader")
    loader = CountingLoader(error=RuntimeError("corrupt weights"))
    manager = ModelManager(settings, backend_factory=FakeBackendFactory(), model_loader=loader)

    waiter = asyncio.ensure_future(manager.get_handle())
    await asyncio.sleep(0)
    waiter.cancel()

    await wait_for(lambda: "Model initialization failed" in caplog.text)
    assert loader.calls == 1
    assert not manager.is_ready


def test_precision_for() -> None:
    accelerated = Backend(kind=ACCELERATED, device=torch.device("cpu"))
    baseline = Backend(kind=BASELINE, device=torch.device("cpu"))

    assert precision_for(2, accelerated) == torch.float16
    assert precision_for(1, accelerated) == torch.float16
    assert precision_for(4, accelerated) == torch.float32
    assert precision_for(2, baseline) == torch.float32


def test_initialize_baseline_backend() -> None:
    backend = initialize_backend(BASELINE)

    assert backend.device.type == "cpu"
    assert not backend.accelerated


def test_initialize_unknown_backend() -> None:
    with pytest.raises(ValueError):
        initialize_backend("quantum")


def test_load_requires_configured_checkpoint(settings: Settings, cpu_backend: Backend) -> None:
    with pytest.raises(ModelLoadError, match="not configured"):
        load_segmentation_model(settings, cpu_backend)


def test_load_reports_missing_checkpoint(tmp_path: Path, cpu_backend: Backend) -> None:
    settings = Settings(_env_file=None, segmentation_model_path=tmp_path / "missing.pt")

    with pytest.raises(ModelLoadError, match="not found"):
        load_segmentation_model(settings, cpu_backend)


def test_load_state_dict_checkpoint_with_wrapped_keys(tmp_path: Path, cpu_backend: Backend) -> None:
    torch.manual_seed(1)
    reference = BodyPixNet(multiplier=0.75, output_stride=16)
    wrapped = {f"module.{key}": value for key, value in reference.state_dict().items()}
    checkpoint = tmp_path / "bodypix.pt"
    torch.save({"state_dict": wrapped}, checkpoint)
    settings = Settings(_env_file=None, segmentation_model_path=checkpoint)

    model = load_segmentation_model(settings, cpu_backend)

    assert not model.training
    for key, value in reference.state_dict().items():
        assert torch.equal(model.state_dict()[key], value)


def test_load_rejects_non_dict_checkpoint(tmp_path: Path, cpu_backend: Backend) -> None:
    checkpoint = tmp_path / "weird.pt"
    torch.save(torch.zeros(3), checkpoint)
    settings = Settings(_env_file=None, segmentation_model_path=checkpoint)

    with pytest.raises(ModelLoadError, match="Unsupported checkpoint"):
        load_segmentation_model(settings, cpu_backend)


def test_load_rejects_checkpoint_with_no_matching_keys(tmp_path: Path, cpu_backend: Backend) -> None:
    checkpoint = tmp_path / "foreign.pt"
    torch.save({"foo.weight": torch.zeros(2)}, checkpoint)
    settings = Settings(_env_file=None, segmentation_model_path=checkpoint)

    with pytest.raises(ModelLoadError, match="does not match"):
        load_segmentation_model(settings, cpu_backend)


def test_load_rejects_checkpoint_without_segmentation_head(tmp_path: Path, cpu_backend: Backend) -> None:
    reference = BodyPixNet(multiplier=0.75, output_stride=16)
    partial = {
        key: value
        for key, value in reference.state_dict().items()
        if not key.startswith("segmentation_head.")
    }
    checkpoint = tmp_path / "headless.pt"
    torch.save(partial, checkpoint)
    settings = Settings(_env_file=None, segmentation_model_path=checkpoint)

    with pytest.raises(ModelLoadError, match="does not match"):
        load_segmentation_model(settings, cpu_backend)


def test_load_tolerates_missing_batchnorm_counters(tmp_path: Path, cpu_backend: Backend) -> None:
    reference = BodyPixNet(multiplier=0.75, output_stride=16)
    weights = {
        key: value
        for key, value in reference.state_dict().items()
        if not key.endswith("num_batches_tracked")
    }
    checkpoint = tmp_path / "no_counters.pt"
    torch.save(weights, checkpoint)
    settings = Settings(_env_file=None, segmentation_model_path=checkpoint)

    model = load_segmentation_model(settings, cpu_backend)

    assert not model.training
