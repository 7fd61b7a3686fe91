"""Shared fixtures for the repost detector tests."""
from datetime import datetime, timedelta, timezone
from io import BytesIO

import pytest
from PIL import Image, ImageDraw

from duplicate_resolver import PostMetadata
from fingerprint_store import FingerprintStore, IndexRegistry
from image_fingerprint import Fingerprint

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return FingerprintStore(tmp_path / "community.db", hash_bits=64, band_count=8)


@pytest.fixture
def registry(tmp_path):
    return IndexRegistry(tmp_path / "indices", hash_size=8, band_count=8)


@pytest.fixture
def fp64():
    """Build a 64-bit fingerprint from an int, optionally flipping some bit positions."""
    def build(value: int, flips=()) -> Fingerprint:
        for position in flips:
            value ^= 1 << position
        return Fingerprint.from_int(value, 64)
    return build


@pytest.fixture
def post():
    """Post metadata posted `minutes` after a fixed base time."""
    def build(message_id: int, minutes: int = 0, author_id: int = 7,
              channel_id: int = 100) -> PostMetadata:
        return PostMetadata(
            author_id=author_id,
            channel_id=channel_id,
            message_id=message_id,
            posted_at=BASE_TIME + timedelta(minutes=minutes),
        )
    return build


@pytest.fixture
def make_scene():
    """Deterministic images with strong low-frequency structure."""
    def build(kind: str, size: int = 256) -> Image.Image:
        image = Image.new("RGB", (size, size))
        draw = ImageDraw.Draw(image)
        if kind == "sunset":
            for y in range(size):
                shade = y * 255 // (size - 1)
                draw.line([(0, y), (size - 1, y)], fill=(255 - shade, 120, shade))
            draw.ellipse([size * 55 // 100, size // 10, size * 9 // 10, size * 45 // 100],
                         fill=(255, 230, 90))
        elif kind == "checker":
            cell = size // 4
            for row in range(4):
                for col in range(4):
                    if (row + col) % 2:
                        draw.rectangle([col * cell, row * cell,
                                        (col + 1) * cell - 1, (row + 1) * cell - 1],
                                       fill=(250, 250, 250))
        elif kind == "bars":
            for x in range(size):
                shade = 255 if (x * 3 // size) % 2 else 30
                draw.line([(x, 0), (x, size - 1)], fill=(shade, shade // 2, 60))
            draw.rectangle([0, size * 2 // 3, size - 1, size - 1], fill=(20, 160, 40))
        else:
            raise ValueError(kind)
        return image
    return build


@pytest.fixture
def encode():
    """Encode an image as bytes, optionally resized."""
    def build(image: Image.Image, fmt: str = "PNG", quality: int = 90,
              scale: float = 1.0) -> bytes:
        if scale != 1.0:
            width, height = image.size
            image = image.resize((int(width * scale), int(height * scale)),
                                 Image.Resampling.LANCZOS)
        output = BytesIO()
        if fmt == "JPEG":
            image.save(output, format=fmt, quality=quality)
        else:
            image.save(output, format=fmt)
        return output.getvalue()
    return build
