"""Configuration settings for the repost detector."""
import logging
import os
from pathlib import Path
from typing import Optional

# Project paths
PROJECT_ROOT = Path(__file__).parent
DATA_DIR = Path(os.getenv("REPOST_DATA_DIR", str(PROJECT_ROOT / "data")))
INDEX_DIR = DATA_DIR / "indices"  # One SQLite index per community


def default_threshold(hash_size: int) -> int:
    """Default Hamming threshold: 10% of the fingerprint width."""
    return max(1, (hash_size * hash_size) // 10)


# Fingerprint configuration
HASH_SIZE = int(os.getenv("REPOST_HASH_SIZE", "8"))  # 8 -> 64-bit pHash, 16 -> 256-bit
HASH_BITS = HASH_SIZE * HASH_SIZE

SIMILARITY_THRESHOLD = int(os.getenv(
    "REPOST_SIMILARITY_THRESHOLD", str(default_threshold(HASH_SIZE))
))
# 6 of 64 bits: recompressed/resized copies land well inside, unrelated images sit around 32

# Bucketed search: fingerprints are split into this many bands.
# Queries with a threshold below the band count only scan records sharing a band.
BAND_COUNT = int(os.getenv("REPOST_BAND_COUNT", str(max(1, HASH_BITS // 8))))

# Retention (0 = keep everything)
RETENTION_MAX_RECORDS = int(os.getenv("REPOST_RETENTION_MAX_RECORDS", "0"))
RETENTION_MAX_AGE_DAYS = int(os.getenv("REPOST_RETENTION_MAX_AGE_DAYS", "0"))

# Ingestion configuration
MAX_CONCURRENT_DOWNLOADS = int(os.getenv("REPOST_MAX_CONCURRENT_DOWNLOADS", "8"))
DOWNLOAD_TIMEOUT = float(os.getenv("REPOST_DOWNLOAD_TIMEOUT", "30"))
MAX_ATTACHMENT_BYTES = int(os.getenv("REPOST_MAX_ATTACHMENT_BYTES", str(25 * 1024 * 1024)))
NOTIFY_ATTEMPTS = int(os.getenv("REPOST_NOTIFY_ATTEMPTS", "2"))
USER_AGENT = "Mozilla/5.0 (compatible; RepostDetector/1.0)"

# Image processing configuration
MAX_IMAGE_DIMENSION = 1024  # Thumbnail larger images before hashing
MAX_IMAGE_PIXELS = 100_000_000  # 100MP, anything bigger is treated as a decompression bomb
SUPPORTED_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp")

# Logging
LOG_LEVEL = os.getenv("REPOST_LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s | %(message)s"


def setup_logging(level: Optional[str] = None) -> None:
    """Attach a console handler to the root logger (once)."""
    root = logging.getLogger()
    root.setLevel((level or LOG_LEVEL).upper())
    if any(h.get_name() == "repost-console" for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.set_name("repost-console")
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
    root.addHandler(handler)
