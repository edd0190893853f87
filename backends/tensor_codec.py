"""
Tensor wire format shared with the generation server.

Layout (little-endian):
  - 68-byte header: 17 x uint32
      [0] compression (0 = none, 1012247 = compressed, unsupported here)
      [1] 0x1      CPU memory
      [2] 0x02     NHWC
      [3] 0x20000  float16 elements
      [5] 1        batch
      [6] height  [7] width  [8] channels
  - payload: height*width*channels float16 values, NHWC

Final images arrive as 3-channel RGB in [-1, 1]. Previews may still be in
latent space (4 or 16 channels) and go through a per-family calibration table,
see backends/latent_families.py.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
from PIL import Image

from backends.latent_families import LatentFamily, calibration_for, latent_channel_counts

logger = logging.getLogger(__name__)

HEADER_FIELDS = 17
HEADER_SIZE = HEADER_FIELDS * 4

COMPRESSION_NONE = 0
COMPRESSION_MAGIC = 1012247

TENSOR_CPU_MEMORY = 0x1
TENSOR_FORMAT_NHWC = 0x02
TENSOR_16F = 0x20000

RGB_CHANNELS = 3
RGBA_CHANNELS = 4
VALID_CHANNELS = (RGB_CHANNELS,) + latent_channel_counts()

ImageSource = Union[Image.Image, bytes, bytearray, memoryview]


class TensorCodecError(ValueError):
    pass


class InvalidImage(TensorCodecError):
    def __init__(self, message: str = "Invalid image format or corrupted image"):
        super().__init__(message)


class InvalidData(TensorCodecError):
    def __init__(self, message: str = "Invalid image data"):
        super().__init__(message)


class ConversionFailed(TensorCodecError):
    def __init__(self, message: str = "Failed to convert image"):
        super().__init__(message)


class CompressionNotSupported(TensorCodecError):
    def __init__(
        self,
        message: str = "Compressed tensor format not supported. Disable compression in the server settings.",
    ):
        super().__init__(message)


@dataclass(frozen=True)
class TensorHeader:
    height: int
    width: int
    channels: int
    compressed: bool

    @property
    def element_count(self) -> int:
        return self.height * self.width * self.channels

    @property
    def total_size(self) -> int:
        return HEADER_SIZE + self.element_count * 2


def _open_image(image: ImageSource) -> Image.Image:
    if isinstance(image, Image.Image):
        return image
    if isinstance(image, (bytes, bytearray, memoryview)):
        try:
            img = Image.open(io.BytesIO(bytes(image)))
            img.load()
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            raise InvalidImage(f"Invalid image format or corrupted image: {e}") from e
        return img
    raise InvalidImage(f"Unsupported image source: {type(image).__name__}")


def _rasterize_rgba(image: ImageSource) -> np.ndarray:
    """Return HxWx4 uint8 with premultiplied alpha, row-major."""
    img = _open_image(image)
    if img.width <= 0 or img.height <= 0:
        raise InvalidImage("Image has no pixels")
    try:
        # fully transparent pixels come out black
        rgba = img.convert("RGBA").convert("RGBa")
    except (OSError, ValueError) as e:
        raise InvalidImage(f"Cannot rasterize image: {e}") from e
    return np.asarray(rgba, dtype=np.uint8)


def encode_tensor(image: ImageSource, force_rgb: bool = False) -> bytes:
    """
    Encode an image into the tensor wire format.

    Args:
        image: PIL image or encoded image bytes (PNG, JPEG, ...)
        force_rgb: always emit 3 channels, even if the image has transparency

    Raises:
        InvalidImage: the source cannot be decoded/rasterized
    """
    rgba = _rasterize_rgba(image)
    height, width = rgba.shape[:2]

    has_transparency = False
    if not force_rgb:
        has_transparency = bool((rgba[..., 3] < 255).any())
    channels = RGBA_CHANNELS if has_transparency else RGB_CHANNELS

    header = np.zeros(HEADER_FIELDS, dtype="<u4")
    header[0] = COMPRESSION_NONE
    header[1] = TENSOR_CPU_MEMORY
    header[2] = TENSOR_FORMAT_NHWC
    header[3] = TENSOR_16F
    header[5] = 1
    header[6] = height
    header[7] = width
    header[8] = channels

    # [0, 255] -> [-1, 1], computed in float32 then rounded to half
    pixels = rgba[..., :channels].astype(np.float32)
    values = pixels / np.float32(255.0) * np.float32(2.0) - np.float32(1.0)
    payload = np.ascontiguousarray(values.astype("<f2"))

    return header.tobytes() + payload.tobytes()


def read_header(data: bytes) -> TensorHeader:
    if data is None or len(data) < HEADER_SIZE:
        raise InvalidData(f"Tensor data shorter than {HEADER_SIZE}-byte header")
    fields = np.frombuffer(bytes(data[:HEADER_SIZE]), dtype="<u4", count=HEADER_FIELDS)
    return TensorHeader(
        height=int(fields[6]),
        width=int(fields[7]),
        channels=int(fields[8]),
        compressed=int(fields[0]) == COMPRESSION_MAGIC,
    )


def _rgb_from_direct(values: np.ndarray) -> np.ndarray:
    with np.errstate(invalid="ignore", over="ignore"):
        scaled = np.floor((values + np.float32(1.0)) * np.float32(127.5) + np.float32(0.5))
        scaled = np.clip(scaled, 0, 255)
    # non-finite halves become neutral gray
    return np.where(np.isfinite(values), scaled, 127).astype(np.uint8)


def _rgb_from_latent(values: np.ndarray, family: Optional[LatentFamily]) -> np.ndarray:
    height, width, channels = values.shape
    cal = calibration_for(channels, family)
    logger.debug(f"[Codec] Decoding {channels}-channel latent with the {cal.family.value} table")
    flat = values.reshape(-1, channels)
    with np.errstate(invalid="ignore", over="ignore"):
        rgb = (flat @ cal.factors + cal.bias + np.float32(1.0)) * np.float32(127.5)
        rgb = np.floor(rgb + np.float32(0.5))
        finite = np.isfinite(rgb)
        rgb = np.clip(rgb, 0, 255)
    rgb = np.where(finite, rgb, 0).astype(np.uint8)
    return rgb.reshape(height, width, 3)


def decode_tensor(data: bytes, model_family: Optional[LatentFamily] = None) -> Image.Image:
    """
    Decode a wire tensor into an 8-bit RGB image.

    Args:
        data: header + payload as received from the server
        model_family: which calibration table to use for latent previews;
            defaults per channel count (SDXL for 4, Flux for 16)

    Raises:
        InvalidData: truncated header or payload
        CompressionNotSupported: compressed tensor
        ConversionFailed: unsupported channel count
    """
    header = read_header(data)
    if header.compressed:
        raise CompressionNotSupported()
    if header.channels not in VALID_CHANNELS:
        raise ConversionFailed(f"Unsupported channel count: {header.channels}")
    if header.height <= 0 or header.width <= 0:
        raise ConversionFailed(f"Invalid tensor size {header.width}x{header.height}")
    if len(data) < header.total_size:
        raise InvalidData(
            f"Tensor data is {len(data)} bytes, header declares {header.total_size}"
        )

    values = np.frombuffer(
        bytes(data), dtype="<f2", count=header.element_count, offset=HEADER_SIZE
    ).astype(np.float32)
    values = values.reshape(header.height, header.width, header.channels)

    if header.channels == RGB_CHANNELS:
        rgb = _rgb_from_direct(values)
    else:
        rgb = _rgb_from_latent(values, model_family)

    return Image.fromarray(np.ascontiguousarray(rgb))


def encode_png(image: ImageSource) -> bytes:
    """Re-encode any image source as PNG bytes."""
    img = _open_image(image)
    buf = io.BytesIO()
    try:
        img.save(buf, format="PNG")
    except (OSError, ValueError) as e:
        raise InvalidImage(f"Cannot encode image as PNG: {e}") from e
    return buf.getvalue()


def decode_tensor_to_png(data: bytes, model_family: Optional[LatentFamily] = None) -> bytes:
    return encode_png(decode_tensor(data, model_family))
