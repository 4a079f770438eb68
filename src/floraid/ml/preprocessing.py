"""Image preprocessing pipeline.

Decoding (with EXIF orientation), colour-managed conversion of a decoded
image into a fixed-layout BGRA pixel buffer, and preparation of the float
tensor a classification model consumes.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageCms, ImageOps, UnidentifiedImageError

from floraid.ml.errors import BufferAllocationFailed

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

PIXEL_FORMAT = "BGRA"

# Fraction of the shorter side kept by the center crop (224 / 256).
CENTER_CROP_FRACTION: float = 0.875

_BGRA_ORDER = [2, 1, 0, 3]
_SRGB_PROFILE = ImageCms.createProfile("sRGB")


class ImageDecodeError(ValueError):
    """Raised when uploaded bytes cannot be decoded into an image."""


class ImageTooLargeError(ImageDecodeError):
    """Raised when an image exceeds the configured pixel limit."""


@dataclass(frozen=True)
class DecodedImage:
    """An in-memory bitmap ready for pixel-level processing.

    The wrapped Pillow image is never modified; every transform works on a copy.
    """

    image: Image.Image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def mode(self) -> str:
        return self.image.mode

    @property
    def icc_profile(self) -> bytes | None:
        profile = self.image.info.get("icc_profile")
        return profile or None

    @classmethod
    def from_array(cls, pixels: NDArray[np.uint8]) -> DecodedImage:
        """Wrap an HxWx3 (RGB) or HxWx4 (RGBA) uint8 array."""
        return cls(Image.fromarray(np.ascontiguousarray(pixels)))


@dataclass(frozen=True)
class PixelBuffer:
    """Fixed-layout pixel memory: 4 channels, one byte each, BGRA order."""

    width: int
    height: int
    data: NDArray[np.uint8]
    pixel_format: str = PIXEL_FORMAT


def decode_image(data: bytes, max_pixels: int) -> DecodedImage:
    """Decode raw image bytes, applying EXIF orientation.

    Args:
        data: Raw file bytes (any format Pillow can read).
        max_pixels: Upper bound on width * height, checked before the pixel
            data is loaded.

    Raises:
        ImageTooLargeError: If the image has more than ``max_pixels`` pixels
            or trips Pillow's decompression bomb limit.
        ImageDecodeError: If the bytes are empty or not a readable image.
    """
    if not data:
        raise ImageDecodeError("Empty image data")

    try:
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise ImageTooLargeError(f"Image has {width * height} pixels, limit is {max_pixels}")
            img.load()
            oriented = ImageOps.exif_transpose(img)
    except ImageDecodeError:
        raise
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError(str(exc)) from exc
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc

    return DecodedImage(oriented)


def to_pixel_buffer(image: DecodedImage, max_pixels: int | None = None) -> PixelBuffer:
    """Render a decoded image into a BGRA pixel buffer of the same size.

    Embedded ICC profiles are honoured by converting to sRGB; images without
    one are assumed to be sRGB already.

    Raises:
        BufferAllocationFailed: For non-positive or oversized dimensions, or
            when the buffer cannot be allocated.
    """
    width, height = image.width, image.height
    if width <= 0 or height <= 0:
        raise BufferAllocationFailed(f"Unsupported image dimensions {width}x{height}")
    if max_pixels is not None and width * height > max_pixels:
        raise BufferAllocationFailed(f"Image of {width}x{height} exceeds the {max_pixels} pixel limit")

    try:
        rgba = _render_srgb(image)
        data = np.empty((height, width, 4), dtype=np.uint8)
        data[...] = np.asarray(rgba, dtype=np.uint8)[..., _BGRA_ORDER]
    except MemoryError as exc:
        raise BufferAllocationFailed(f"Cannot allocate a {width}x{height} pixel buffer") from exc

    data.flags.writeable = False
    return PixelBuffer(width=width, height=height, data=data)


def is_uniform(buffer: PixelBuffer) -> bool:
    """Return True when every pixel of the buffer has the same value."""
    flat = buffer.data.reshape(-1, 4)
    return bool((flat == flat[0]).all())


def prepare_input(
    buffer: PixelBuffer,
    input_size: int,
    mean: Sequence[float],
    std: Sequence[float],
    *,
    channels_first: bool = True,
) -> NDArray[np.float32]:
    """Build a single-image model input tensor from a pixel buffer.

    A square center crop covering CENTER_CROP_FRACTION of the shorter side is
    resized (bilinear) to ``input_size``, scaled to [0, 1] and normalized
    per channel.

    Returns:
        float32 array of shape (1, 3, S, S), or (1, S, S, 3) when
        ``channels_first`` is False.
    """
    rgb = Image.fromarray(np.ascontiguousarray(buffer.data[..., 2::-1]))

    side = min(buffer.width, buffer.height) * CENTER_CROP_FRACTION
    left = (buffer.width - side) / 2
    top = (buffer.height - side) / 2
    cropped = rgb.resize(
        (input_size, input_size),
        resample=Image.Resampling.BILINEAR,
        box=(left, top, left + side, top + side),
    )

    tensor = np.asarray(cropped, dtype=np.float32) / 255.0
    tensor = (tensor - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    if channels_first:
        tensor = tensor.transpose(2, 0, 1)
    return np.ascontiguousarray(tensor[np.newaxis], dtype=np.float32)


def _render_srgb(image: DecodedImage) -> Image.Image:
    """Return an RGBA copy of the image with its colours converted to sRGB."""
    src = image.image
    alpha = src.getchannel("A") if "A" in src.getbands() else None

    base = src
    if src.mode in ("LA", "La"):
        base = src.convert("L")
    elif src.mode not in ("RGB", "CMYK", "L"):
        base = src.convert("RGB")

    rendered: Image.Image | None = None
    profile = image.icc_profile
    if profile is not None:
        try:
            source_profile = ImageCms.ImageCmsProfile(io.BytesIO(profile))
            rendered = ImageCms.profileToProfile(base, source_profile, _SRGB_PROFILE, outputMode="RGB")
        except (ImageCms.PyCMSError, OSError) as exc:
            logger.warning("Ignoring unusable ICC profile: %s", exc)

    if rendered is None:
        rendered = base.convert("RGB")

    rgba = rendered.convert("RGBA")
    if alpha is not None:
        rgba.putalpha(alpha)
    return rgba
