"""
Image loading and letterboxing for segmentation models.

The model always receives a fixed square: the image is scaled uniformly to
fit, centred, and padded with white. The placement computed here is reused by
post-processing to undo the letterbox, so both directions share one geometry.
"""

from __future__ import annotations

from io import BytesIO
import math

from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import InvalidImageError, SizeLimitExceededError
from .models import FittedImage, PlacementGeometry

LETTERBOX_FILL = (255, 255, 255)


def compute_placement(width: int, height: int, input_size: int) -> PlacementGeometry:
    """Aspect-preserving fit of a width x height image into an input_size square."""
    if width <= 0 or height <= 0 or input_size <= 0:
        raise InvalidImageError(f"Image has degenerate dimensions {width}x{height}")

    scale = min(input_size / width, input_size / height)
    if not math.isfinite(scale) or scale <= 0:
        raise InvalidImageError(f"Cannot fit {width}x{height} image into {input_size}px input")

    scaled_w = width * scale
    scaled_h = height * scale
    offset_x = (input_size - scaled_w) / 2
    offset_y = (input_size - scaled_h) / 2

    box_w = min(input_size, max(1, round(scaled_w)))
    box_h = min(input_size, max(1, round(scaled_h)))
    box_x = min(input_size - box_w, max(0, round(offset_x)))
    box_y = min(input_size - box_h, max(0, round(offset_y)))

    return PlacementGeometry(
        input_size=input_size,
        scale=scale,
        offset_x=offset_x,
        offset_y=offset_y,
        box_x=box_x,
        box_y=box_y,
        box_width=box_w,
        box_height=box_h,
    )


def decode_image(image_bytes: bytes, max_image_dimension: int) -> Image.Image:
    """
    Decode bytes into an RGBA image.

    The dimension limit is checked against the header before pixel data is
    decoded.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
    except Image.DecompressionBombError as exc:
        raise SizeLimitExceededError(str(exc)) from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImageError("Invalid image data") from exc

    width, height = image.size
    if width <= 0 or height <= 0:
        image.close()
        raise InvalidImageError(f"Image has degenerate dimensions {width}x{height}")
    if max(width, height) > max_image_dimension:
        image.close()
        raise SizeLimitExceededError(
            f"Image is {width}x{height}; the maximum supported side is {max_image_dimension}px"
        )

    try:
        # Honour camera orientation so the cut-out matches what users see.
        oriented = ImageOps.exif_transpose(image)
    except (OSError, ValueError, SyntaxError) as exc:
        image.close()
        raise InvalidImageError("Failed to decode image") from exc
    try:
        rgba = oriented.convert("RGBA")
    except (OSError, ValueError, SyntaxError) as exc:
        raise InvalidImageError("Failed to decode image") from exc
    finally:
        if oriented is not image:
            oriented.close()
        image.close()
    return rgba


def cap_long_edge(image: Image.Image, max_dimension: int) -> Image.Image:
    """Downscale so the longest edge is at most `max_dimension`; never upscale."""
    width, height = image.size
    long_edge = max(width, height)
    if max_dimension <= 0 or long_edge <= max_dimension:
        return image
    scale = max_dimension / long_edge
    new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
    return image.resize(new_size, Image.LANCZOS)


def letterbox(image: Image.Image, placement: PlacementGeometry) -> Image.Image:
    """Paste `image` into a white input_size square at the placement box."""
    size = placement.input_size
    canvas = Image.new("RGB", (size, size), LETTERBOX_FILL)
    rgb = image.convert("RGB")
    try:
        resized = rgb.resize((placement.box_width, placement.box_height), Image.BILINEAR)
    finally:
        rgb.close()
    canvas.paste(resized, (placement.box_x, placement.box_y))
    resized.close()
    return canvas


def load_and_fit(
    image_bytes: bytes,
    input_size: int,
    max_dimension: int,
    max_image_dimension: int,
) -> FittedImage:
    """Decode, cap to the quality's max dimension, and letterbox for the model."""
    decoded = decode_image(image_bytes, max_image_dimension)
    original = cap_long_edge(decoded, max_dimension)
    if original is not decoded:
        decoded.close()

    try:
        placement = compute_placement(original.size[0], original.size[1], input_size)
        canvas = letterbox(original, placement)
    except Exception:
        original.close()
        raise
    return FittedImage(original=original, canvas=canvas, placement=placement)
