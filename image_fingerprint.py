"""
Perceptual image fingerprints.

A fingerprint is the DCT perceptual hash (pHash) of an image packed into
bytes. Recompressed, resized or lightly cropped copies of an image land a
few bits away from the original, unrelated images land around half the
bit width away.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import List, Optional, Union

import imagehash
import numpy as np
from PIL import Image

import config

logger = logging.getLogger(__name__)

# Band values are stored as SQLite INTEGERs (signed 64-bit)
MAX_BAND_WIDTH = 62

PixelBuffer = Union[Image.Image, np.ndarray]


class CodecError(ValueError):
    """Raised for images that cannot be fingerprinted."""


def band_widths(bits: int, count: int) -> List[int]:
    """Split `bits` into `count` contiguous bands, widest first."""
    if count < 1 or count > bits:
        raise ValueError(f"band count must be between 1 and {bits}, got {count}")
    base, extra = divmod(bits, count)
    widths = [base + 1] * extra + [base] * (count - extra)
    if widths[0] > MAX_BAND_WIDTH:
        raise ValueError(
            f"{count} bands over {bits} bits gives {widths[0]}-bit bands "
            f"(max {MAX_BAND_WIDTH})"
        )
    return widths


@dataclass(frozen=True)
class Fingerprint:
    """Fixed-width bit vector, big-endian and right-aligned in `value`."""
    value: bytes
    bits: int

    def __post_init__(self):
        if self.bits <= 0:
            raise ValueError("fingerprint width must be positive")
        if len(self.value) != math.ceil(self.bits / 8):
            raise ValueError(
                f"{len(self.value)} bytes cannot hold a {self.bits}-bit fingerprint"
            )

    @classmethod
    def from_int(cls, value: int, bits: int) -> "Fingerprint":
        value &= (1 << bits) - 1
        return cls(value.to_bytes(math.ceil(bits / 8), "big"), bits)

    @classmethod
    def from_hex(cls, text: str, bits: Optional[int] = None) -> "Fingerprint":
        """Parse the hex form produced by `hex()` (and by `str(imagehash.ImageHash)`)."""
        return cls.from_int(int(text, 16), bits or len(text) * 4)

    @classmethod
    def from_imagehash(cls, image_hash: imagehash.ImageHash) -> "Fingerprint":
        flat = np.asarray(image_hash.hash, dtype=bool).flatten()
        # Left-pad so the last hash bit is the least significant bit
        padded = np.concatenate([np.zeros((-flat.size) % 8, dtype=bool), flat])
        return cls(np.packbits(padded).tobytes(), int(flat.size))

    def to_int(self) -> int:
        return int.from_bytes(self.value, "big")

    def hex(self) -> str:
        return f"{self.to_int():0{math.ceil(self.bits / 4)}x}"

    def bands(self, count: int) -> List[int]:
        """Band values from the most significant bits down."""
        as_int = self.to_int()
        shift = self.bits
        values = []
        for width in band_widths(self.bits, count):
            shift -= width
            values.append((as_int >> shift) & ((1 << width) - 1))
        return values

    def __str__(self) -> str:
        return self.hex()


def _as_image(pixels: PixelBuffer) -> Image.Image:
    if isinstance(pixels, Image.Image):
        return pixels
    if isinstance(pixels, np.ndarray):
        if pixels.ndim not in (2, 3) or 0 in pixels.shape[:2]:
            raise CodecError(f"degenerate pixel array of shape {pixels.shape}")
        try:
            return Image.fromarray(pixels)
        except (TypeError, ValueError) as e:
            raise CodecError(f"unsupported pixel array: {e}") from e
    raise CodecError(f"unsupported pixel buffer type: {type(pixels).__name__}")


def _stretch_to_l(image: Image.Image) -> Image.Image:
    """Map float/wide-integer samples onto 0..255 by their own range."""
    samples = np.nan_to_num(np.asarray(image, dtype=np.float64))
    low, high = samples.min(), samples.max()
    if high > low:
        samples = (samples - low) * (255.0 / (high - low))
    else:
        samples = np.zeros_like(samples)
    return Image.fromarray(samples.round().astype(np.uint8))


def fingerprint(pixels: PixelBuffer, hash_size: int = config.HASH_SIZE) -> Fingerprint:
    """
    Compute the perceptual fingerprint of a decoded image.

    Args:
        pixels: PIL image or numpy array (H x W or H x W x C)
        hash_size: Side of the DCT hash matrix; the fingerprint has hash_size**2 bits

    Returns:
        Fingerprint of hash_size**2 bits

    Raises:
        CodecError: zero-dimension or otherwise unusable image
    """
    image = _as_image(pixels)
    width, height = image.size
    if width == 0 or height == 0:
        raise CodecError(f"degenerate image of size {width}x{height}")

    if image.mode in ("F", "I") or image.mode.startswith("I;"):
        image = _stretch_to_l(image)
    # Palette/alpha images hash differently unless flattened first
    elif image.mode not in ("RGB", "L"):
        image = image.convert("RGB")

    start = time.perf_counter()
    try:
        image_hash = imagehash.phash(image, hash_size=hash_size)
    except (ValueError, OSError) as e:
        raise CodecError(f"could not hash image: {e}") from e
    logger.debug("Hashed %dx%d image in %.1fms", width, height,
                 (time.perf_counter() - start) * 1000)

    return Fingerprint.from_imagehash(image_hash)


def distance(a: Fingerprint, b: Fingerprint) -> int:
    """Hamming distance between two fingerprints of the same width."""
    if a.bits != b.bits:
        raise CodecError(f"cannot compare {a.bits}-bit and {b.bits}-bit fingerprints")
    return bin(a.to_int() ^ b.to_int()).count("1")
