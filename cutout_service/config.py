"""
Configuration loader for the background-removal service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear. Quality and
model presets live next to the settings because they are what the settings
select between.
"""

from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import QUALITY_LEVELS, ModelConfig, ProcessingOptions, ResolvedOptions

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)

MODEL_PRESETS: Dict[str, ModelConfig] = {
    "u2net": ModelConfig(
        name="u2net",
        input_size=320,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        filenames=("u2net.onnx", "u2net_small.onnx"),
        source_url="https://github.com/danielgatis/rembg/releases/download/v0.0.0/u2net.onnx",
    ),
    "mobilenet": ModelConfig(
        name="mobilenet",
        input_size=224,
        mean=IMAGENET_MEAN,
        std=IMAGENET_STD,
        filenames=("mobilenet_quant.onnx",),
    ),
}

QUALITY_PRESETS = {
    "low": {"max_dimension": 512, "model": "mobilenet", "confidence_threshold": 0.5},
    "medium": {"max_dimension": 1024, "model": "u2net", "confidence_threshold": 0.6},
    "high": {"max_dimension": 2048, "model": "u2net", "confidence_threshold": 0.7},
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CUTOUT_",
        env_file=".env",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Model acquisition
    model_dir: Path = Path("models")
    model_cdn_base_url: Optional[str] = None
    model_cache_dir: Path = Path.home() / ".cache" / "cutout_service"
    model_fetch_timeout_seconds: int = 60
    inference_worker_thread: bool = False

    # Input limits
    max_file_size_bytes: int = 10 * 1024 * 1024
    max_image_dimension: int = 4096
    default_quality: str = "medium"

    # API
    request_timeout_seconds: int = 30
    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/cutout_debug")

    @field_validator("default_quality")
    @classmethod
    def validate_quality(cls, v: str) -> str:
        if v not in QUALITY_LEVELS:
            raise ValueError("DEFAULT_QUALITY must be one of low|medium|high")
        return v

    @field_validator("max_file_size_bytes", "max_image_dimension")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("limits must be positive")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def get_model_config(name: str) -> ModelConfig:
    try:
        return MODEL_PRESETS[name]
    except KeyError:
        raise ValueError(
            f"Unknown model '{name}', expected one of {', '.join(sorted(MODEL_PRESETS))}"
        ) from None


def resolve_options(options: ProcessingOptions) -> ResolvedOptions:
    """
    Translate a quality level plus explicit overrides into concrete settings.

    The result depends only on `options`; nothing from earlier calls leaks in.
    """
    preset = QUALITY_PRESETS[options.quality]
    model_name = options.model or preset["model"]
    get_model_config(model_name)
    return ResolvedOptions(
        max_dimension=options.max_dimension or preset["max_dimension"],
        model_name=model_name,
        threshold=(
            options.confidence_threshold
            if options.confidence_threshold is not None
            else preset["confidence_threshold"]
        ),
        output_format=options.output_format,
        feather_radius=options.feather_radius,
    )
