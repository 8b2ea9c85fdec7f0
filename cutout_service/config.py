"""
Configuration loader for the background remover.

Deployment constants (model variant, backend order, segmentation defaults)
are centralized here; none of them are exposed to end users at runtime.
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ACCELERATED = "accelerated"
BASELINE = "baseline"

INTERNAL_RESOLUTIONS = {
    "low": 0.25,
    "medium": 0.5,
    "high": 0.75,
    "full": 1.0,
}


def resolve_internal_resolution(value: Union[str, float]) -> float:
    """
    Translate an internal resolution preset or number into a scale factor.

    Lower values run faster at the cost of a coarser mask.
    """
    if isinstance(value, str):
        key = value.strip().lower()
        if key in INTERNAL_RESOLUTIONS:
            return INTERNAL_RESOLUTIONS[key]
        try:
            value = float(key)
        except ValueError as exc:
            raise ValueError(
                "internal resolution must be one of low|medium|high|full or a number in (0, 2]"
            ) from exc
    scale = float(value)
    if not 0.0 < scale <= 2.0:
        raise ValueError("internal resolution must be within (0, 2]")
    return scale


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=("settings_",),
    )

    # Model
    segmentation_model_path: Optional[Path] = None
    model_architecture: str = "MobileNetV1"
    output_stride: int = 16
    multiplier: float = 0.75
    quant_bytes: int = 2
    backend_preference: List[str] = Field(default_factory=lambda: [ACCELERATED, BASELINE])

    # Segmentation defaults
    internal_resolution: str = "medium"
    segmentation_threshold: float = 0.7

    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/cutout_debug")

    @field_validator("model_architecture")
    @classmethod
    def validate_architecture(cls, v: str) -> str:
        if v != "MobileNetV1":
            raise ValueError("MODEL_ARCHITECTURE must be MobileNetV1")
        return v

    @field_validator("output_stride")
    @classmethod
    def validate_output_stride(cls, v: int) -> int:
        if v not in {8, 16}:
            raise ValueError("OUTPUT_STRIDE must be 8 or 16")
        return v

    @field_validator("multiplier")
    @classmethod
    def validate_multiplier(cls, v: float) -> float:
        if v not in {0.5, 0.75, 1.0}:
            raise ValueError("MULTIPLIER must be one of 0.5|0.75|1.0")
        return v

    @field_validator("quant_bytes")
    @classmethod
    def validate_quant_bytes(cls, v: int) -> int:
        if v not in {1, 2, 4}:
            raise ValueError("QUANT_BYTES must be one of 1|2|4")
        return v

    @field_validator("backend_preference")
    @classmethod
    def validate_backend_preference(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("BACKEND_PREFERENCE must name at least one backend")
        unknown = [name for name in v if name not in {ACCELERATED, BASELINE}]
        if unknown:
            raise ValueError(f"Unknown backends in BACKEND_PREFERENCE: {unknown}")
        return v

    @field_validator("internal_resolution")
    @classmethod
    def validate_internal_resolution(cls, v: str) -> str:
        resolve_internal_resolution(v)
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
