"""
Value types shared by the background-removal stages.

These are plain dataclasses: configuration objects are frozen, per-call
values are created once per invocation and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple

import numpy as np
from PIL import Image

QUALITY_LEVELS = ("low", "medium", "high")
OUTPUT_FORMATS = ("png", "webp")
OUTPUT_KINDS = ("auto", "probability", "logits")


@dataclass(frozen=True)
class ModelConfig:
    name: str
    input_size: int
    mean: Tuple[float, float, float]
    std: Tuple[float, float, float]
    # Local candidates in attempt order: primary first, reduced variant next.
    filenames: Tuple[str, ...] = ()
    source_url: Optional[str] = None
    # "auto" infers logits per element; the others declare the output range.
    output_kind: str = "auto"


@dataclass(frozen=True)
class PlacementGeometry:
    """Where the original image sits inside the letterboxed model input."""

    input_size: int
    scale: float
    offset_x: float
    offset_y: float
    # Integer draw box actually used for pasting and, later, for cropping.
    box_x: int
    box_y: int
    box_width: int
    box_height: int


@dataclass
class FittedImage:
    original: Image.Image  # RGBA, capped to the quality's max dimension
    canvas: Image.Image  # RGB, input_size x input_size, white letterbox
    placement: PlacementGeometry

    @property
    def width(self) -> int:
        return self.original.size[0]

    @property
    def height(self) -> int:
        return self.original.size[1]

    def close(self) -> None:
        self.canvas.close()
        self.original.close()


@dataclass
class Tensor:
    """Flat float32 buffer plus its shape descriptor."""

    data: np.ndarray
    shape: Tuple[int, ...]

    def as_batch(self) -> np.ndarray:
        """Return the (1, C, H, W) view runtimes consume."""
        return self.data.reshape((1,) + tuple(self.shape))


class Stage(str, Enum):
    VALIDATE = "validate"
    INIT = "init"
    LOAD = "load"
    PREPROCESS = "preprocess"
    INFER = "infer"
    MASK = "mask"
    COMPOSITE = "composite"
    ENCODE = "encode"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ProgressEvent:
    stage: Stage
    progress: int  # 0..100


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class ProcessingOptions:
    quality: str = "medium"
    model: Optional[str] = None
    output_format: str = "png"
    feather_radius: int = 0  # 0 = hard threshold
    max_dimension: Optional[int] = None
    confidence_threshold: Optional[float] = None
    on_progress: Optional[ProgressCallback] = None

    def __post_init__(self) -> None:
        if self.quality not in QUALITY_LEVELS:
            raise ValueError("quality must be one of low | medium | high")
        self.output_format = self.output_format.lower()
        if self.output_format not in OUTPUT_FORMATS:
            raise ValueError("output_format must be one of png | webp")
        if self.feather_radius < 0:
            raise ValueError("feather_radius must be >= 0")
        if self.max_dimension is not None and self.max_dimension <= 0:
            raise ValueError("max_dimension must be positive")
        if self.confidence_threshold is not None and not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")


@dataclass(frozen=True)
class ResolvedOptions:
    max_dimension: int
    model_name: str
    threshold: float
    output_format: str = "png"
    feather_radius: int = 0


@dataclass(frozen=True)
class ProcessingResult:
    output: bytes
    width: int
    height: int
    processing_time_ms: float
    method_used: str
    media_type: str = "image/png"
