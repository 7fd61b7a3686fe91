"""Attachment collaborators: URL filtering, download and decode."""
import logging
from io import BytesIO
from typing import Optional
from urllib.parse import urlsplit

import requests
from PIL import Image, UnidentifiedImageError

import config

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Attachment bytes could not be downloaded."""


class DecodeError(Exception):
    """Attachment bytes are not a usable image."""


def is_supported_image_url(url: str) -> bool:
    """
    Check the file extension of an attachment URL.

    Query strings are ignored, and so are ':' suffixes such as the
    ':large' size selector on Twitter media links.
    """
    filename = urlsplit(url).path.rsplit("/", 1)[-1]
    if "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[-1].split(":", 1)[0]
    return extension.lower() in config.SUPPORTED_EXTENSIONS


class AttachmentFetcher:
    """Downloads attachments over HTTP with a size cap."""

    def __init__(self, session: Optional[requests.Session] = None,
                 timeout: float = config.DOWNLOAD_TIMEOUT,
                 max_bytes: int = config.MAX_ATTACHMENT_BYTES):
        if session is None:
            session = requests.Session()
            session.headers.update({'User-Agent': config.USER_AGENT})
        self.session = session
        self.timeout = timeout
        self.max_bytes = max_bytes

    def fetch(self, url: str) -> bytes:
        """Download an attachment, raising FetchError on any failure."""
        try:
            with self.session.get(url, timeout=self.timeout, stream=True) as response:
                response.raise_for_status()

                declared = response.headers.get("Content-Length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise FetchError(f"{url} is {declared} bytes (limit {self.max_bytes})")

                body = bytearray()
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        raise FetchError(f"{url} exceeds {self.max_bytes} bytes")
        except requests.RequestException as e:
            raise FetchError(f"downloading {url} failed: {e}") from e

        logger.debug("Downloaded %d bytes from %s", len(body), url)
        return bytes(body)


def decode_image(data: bytes) -> Image.Image:
    """Decode image bytes, shrinking large images to the hashing resolution."""
    try:
        image = Image.open(BytesIO(data))
        width, height = image.size
        if width * height > config.MAX_IMAGE_PIXELS:
            raise DecodeError(f"{width}x{height} image exceeds {config.MAX_IMAGE_PIXELS} pixels")
        image.load()

        if max(image.size) > config.MAX_IMAGE_DIMENSION:
            image.thumbnail((config.MAX_IMAGE_DIMENSION, config.MAX_IMAGE_DIMENSION),
                            Image.Resampling.LANCZOS)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"could not decode image: {e}") from e

    return image
