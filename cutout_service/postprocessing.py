"""Mask post-processing: undo the letterbox, feather, and composite alpha."""

from __future__ import annotations

from io import BytesIO
import logging
from pathlib import Path
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from .errors import ProcessingFailedError
from .models import PlacementGeometry

logger = logging.getLogger(__name__)

MEDIA_TYPES = {"png": "image/png", "webp": "image/webp"}
WEBP_QUALITY = 95


def resize_mask_to_input(mask: np.ndarray, input_size: int) -> np.ndarray:
    """Bring a model-resolution mask onto the input_size square."""
    if mask.shape == (input_size, input_size):
        return mask.astype(np.float32, copy=False)
    return cv2.resize(
        mask.astype(np.float32), (input_size, input_size), interpolation=cv2.INTER_LINEAR
    )


def crop_to_placement(mask: np.ndarray, placement: PlacementGeometry) -> np.ndarray:
    """Cut out the region the original image occupied in the letterbox."""
    y0, x0 = placement.box_y, placement.box_x
    return mask[y0 : y0 + placement.box_height, x0 : x0 + placement.box_width]


def feather_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    """
    Box-blur the mask edge.

    Near the border only in-bounds neighbours are averaged, so a fully opaque
    mask stays fully opaque.
    """
    if radius <= 0:
        return mask
    kernel = (2 * radius + 1, 2 * radius + 1)
    mask = mask.astype(np.float32)
    summed = cv2.boxFilter(mask, -1, kernel, normalize=False, borderType=cv2.BORDER_CONSTANT)
    counts = cv2.boxFilter(
        np.ones_like(mask), -1, kernel, normalize=False, borderType=cv2.BORDER_CONSTANT
    )
    return np.clip(summed / np.clip(counts, 1.0, None), 0.0, 1.0)


def mask_to_original(
    mask: np.ndarray,
    placement: PlacementGeometry,
    original_width: int,
    original_height: int,
) -> np.ndarray:
    """Model-output mask -> input square -> letterbox crop -> original size."""
    square = resize_mask_to_input(mask, placement.input_size)
    region = crop_to_placement(square, placement)
    if region.size == 0:
        raise ProcessingFailedError("Placement box lies outside the mask")
    full = cv2.resize(
        np.ascontiguousarray(region),
        (original_width, original_height),
        interpolation=cv2.INTER_LINEAR,
    )
    return np.clip(full, 0.0, 1.0)


def composite_mask_to_original(
    mask: np.ndarray,
    placement: PlacementGeometry,
    original_width: int,
    original_height: int,
    original_image: Image.Image,
    feather_radius: int = 0,
) -> np.ndarray:
    """
    Apply `mask` as alpha over the full-resolution original.

    Destination-in: result alpha = original alpha * mask. Returns an
    (H, W, 4) uint8 RGBA array; the original image is not modified.
    """
    if original_image.size != (original_width, original_height):
        raise ProcessingFailedError(
            f"Original is {original_image.size}, expected {(original_width, original_height)}"
        )

    alpha_mask = mask_to_original(mask, placement, original_width, original_height)
    alpha_mask = feather_mask(alpha_mask, feather_radius)

    rgba = np.array(original_image.convert("RGBA"), dtype=np.uint8)
    alpha = rgba[..., 3].astype(np.float32) * alpha_mask
    rgba[..., 3] = np.clip(np.rint(alpha), 0, 255).astype(np.uint8)
    return rgba


def encode_output(rgba: np.ndarray, output_format: str = "png") -> bytes:
    """Serialize an RGBA array; alpha is always preserved."""
    fmt = output_format.lower()
    if fmt not in MEDIA_TYPES:
        raise ProcessingFailedError(f"Unsupported output format '{output_format}'")

    out = Image.fromarray(np.ascontiguousarray(rgba, dtype=np.uint8))
    buf = BytesIO()
    try:
        if fmt == "webp":
            out.save(buf, format="WEBP", quality=WEBP_QUALITY)
        else:
            out.save(buf, format="PNG")
    except (OSError, KeyError) as exc:
        raise ProcessingFailedError(f"Failed to encode {fmt} output: {exc}") from exc
    finally:
        out.close()
    return buf.getvalue()


def maybe_dump_debug(
    debug_dir: Path,
    model_input: np.ndarray,
    raw_mask: np.ndarray,
    rgba: Optional[np.ndarray] = None,
) -> None:
    """Write the model input, raw mask and final alpha for inspection."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        cv2.imwrite(str(debug_dir / "model_input.png"), cv2.cvtColor(model_input, cv2.COLOR_RGB2BGR))
        mask_u8 = np.clip(raw_mask * 255.0, 0, 255).astype(np.uint8)
        cv2.imwrite(str(debug_dir / "mask.png"), mask_u8)
        if rgba is not None:
            cv2.imwrite(str(debug_dir / "alpha.png"), np.ascontiguousarray(rgba[..., 3]))
        logger.debug("postprocess: wrote debug outputs to %s", debug_dir)
    except Exception as exc:  # noqa: BLE001
        logger.warning("postprocess: failed to write debug outputs: %s", exc)
