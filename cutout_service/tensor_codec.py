"""
Numeric conversion between pixel buffers and model tensors.

Encoding produces the channel-first, per-channel normalized float32 layout
segmentation models expect. Decoding turns a single-channel model output into
an (H, W) float mask in [0, 1], either thresholded to a hard 0/1 mask or left
continuous for feathering.
"""

from __future__ import annotations

import math
from typing import Tuple

import numpy as np

from .errors import ProcessingFailedError
from .models import OUTPUT_KINDS, ModelConfig, Tensor

# Values further than this from [0, 1] are assumed to be raw logits.
LOGIT_MAGNITUDE = 10.0


def encode(pixels: np.ndarray, config: ModelConfig) -> Tensor:
    """
    Convert an HWC uint8 RGB(A) buffer into a normalized CHW tensor.

    Alpha is dropped. The conversion is pure, so identical pixels always give
    identical tensors.
    """
    size = config.input_size
    if pixels.ndim != 3 or pixels.shape[0] != size or pixels.shape[1] != size or pixels.shape[2] < 3:
        raise ProcessingFailedError(
            f"Expected {size}x{size} RGB pixels for {config.name}, got shape {pixels.shape}"
        )

    rgb = pixels[..., :3].astype(np.float32) / np.float32(255.0)
    mean = np.asarray(config.mean, dtype=np.float32)
    std = np.asarray(config.std, dtype=np.float32)
    normalized = (rgb - mean) / std
    chw = np.ascontiguousarray(np.transpose(normalized, (2, 0, 1)))  # HWC -> CHW
    return Tensor(data=chw.reshape(-1), shape=(3, size, size))


def tensor_to_pixels(tensor: Tensor, config: ModelConfig) -> np.ndarray:
    """Approximate inverse of `encode`: back to HWC uint8 RGB."""
    channels, height, width = tensor.shape
    chw = tensor.data.reshape(channels, height, width)
    mean = np.asarray(config.mean, dtype=np.float32)[:, None, None]
    std = np.asarray(config.std, dtype=np.float32)[:, None, None]
    rgb = (chw * std + mean) * 255.0
    return np.clip(np.rint(rgb), 0, 255).astype(np.uint8).transpose(1, 2, 0)


def _spatial_dims(tensor: Tensor) -> Tuple[int, int]:
    size = int(tensor.data.size)
    shape = tuple(int(d) for d in tensor.shape)
    if not shape or math.prod(shape) != size:
        raise ProcessingFailedError(
            f"Model output has {size} values but declares shape {tensor.shape}"
        )

    if len(shape) < 2:
        side = math.isqrt(size)
        if side * side != size:
            raise ProcessingFailedError(
                f"Model output of length {size} is not a square mask"
            )
        return side, side

    height, width = shape[-2], shape[-1]
    if height * width != size:
        raise ProcessingFailedError(
            f"Model output shape {tensor.shape} is not a single-channel mask"
        )
    return height, width


def _sigmoid(values: np.ndarray) -> np.ndarray:
    # Clip keeps exp() finite for very large logits.
    return 1.0 / (1.0 + np.exp(-np.clip(values, -80.0, 80.0)))


def to_probabilities(tensor: Tensor, output_kind: str = "auto") -> np.ndarray:
    """Return an (H, W) float32 mask of confidences in [0, 1]."""
    if output_kind not in OUTPUT_KINDS:
        raise ValueError(f"output_kind must be one of {', '.join(OUTPUT_KINDS)}")

    height, width = _spatial_dims(tensor)
    values = tensor.data.reshape(height, width).astype(np.float32)
    if not np.all(np.isfinite(values)):
        raise ProcessingFailedError("Model output contains non-finite values")

    if output_kind == "logits":
        values = _sigmoid(values)
    elif output_kind == "auto":
        logits = (values < -LOGIT_MAGNITUDE) | (values > LOGIT_MAGNITUDE)
        if np.any(logits):
            values = np.where(logits, _sigmoid(values), values)
    return np.clip(values, 0.0, 1.0).astype(np.float32)


def decode(tensor: Tensor, threshold: float, output_kind: str = "auto") -> np.ndarray:
    """Hard mask: 1.0 where confidence >= threshold, else 0.0."""
    probabilities = to_probabilities(tensor, output_kind)
    return (probabilities >= threshold).astype(np.float32)


def decode_continuous(tensor: Tensor, output_kind: str = "auto") -> np.ndarray:
    """Soft mask used when the edge is feathered instead of thresholded."""
    return to_probabilities(tensor, output_kind)
