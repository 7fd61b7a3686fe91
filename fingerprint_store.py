"""
Durable fingerprint index, one SQLite database per community.

Every fingerprint is split into bands (see `image_fingerprint.band_widths`)
and each band value is indexed. Two fingerprints within Hamming distance `t`
of each other differ in at most `t` bands, so when `t` is below the band
count they share at least one band value exactly, and only the records in
those buckets need comparing. Larger thresholds fall back to a full scan.
"""
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

import config
from image_fingerprint import Fingerprint, band_widths, distance

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

SCHEMA = """
    CREATE TABLE IF NOT EXISTS meta (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    );
    CREATE TABLE IF NOT EXISTS posts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        fingerprint BLOB NOT NULL,
        author_id INTEGER NOT NULL,
        channel_id INTEGER NOT NULL,
        message_id INTEGER NOT NULL UNIQUE,
        posted_at INTEGER NOT NULL,
        times_seen INTEGER NOT NULL DEFAULT 1,
        ignored BOOLEAN NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_posts_fingerprint ON posts(fingerprint);
    CREATE INDEX IF NOT EXISTS idx_posts_posted_at ON posts(posted_at, message_id);
    CREATE TABLE IF NOT EXISTS bands (
        band INTEGER NOT NULL,
        value INTEGER NOT NULL,
        post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE,
        PRIMARY KEY (band, value, post_id)
    ) WITHOUT ROWID;
    CREATE INDEX IF NOT EXISTS idx_bands_post ON bands(post_id);
    CREATE TABLE IF NOT EXISTS reposts (
        message_id INTEGER PRIMARY KEY,
        post_id INTEGER NOT NULL REFERENCES posts(id) ON DELETE CASCADE
    );
    CREATE INDEX IF NOT EXISTS idx_reposts_post ON reposts(post_id);
"""

RECORD_COLUMNS = "fingerprint, author_id, channel_id, message_id, posted_at"
CHRONOLOGICAL = "ORDER BY posted_at, message_id"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_COMMUNITY_ID = re.compile(r"^[A-Za-z0-9_-]+$")


class StoreError(Exception):
    """Base class for fingerprint index failures."""


class StoreIOError(StoreError):
    """The underlying storage failed; the operation did not complete."""


class IndexOpenError(StoreError):
    """The index could not be opened or created."""


def to_micros(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - EPOCH) // timedelta(microseconds=1)


def from_micros(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


@dataclass(frozen=True)
class PostRecord:
    """One indexed image post. Never modified after insertion."""
    fingerprint: Fingerprint
    author_id: int
    channel_id: int
    message_id: int
    posted_at: datetime

    def __post_init__(self):
        if self.posted_at.tzinfo is None:
            object.__setattr__(self, "posted_at", self.posted_at.replace(tzinfo=timezone.utc))


@dataclass(frozen=True)
class RetentionPolicy:
    """Bounds on index growth. Zero / None means unbounded."""
    max_records: int = 0
    max_age: Optional[timedelta] = None

    @property
    def active(self) -> bool:
        return self.max_records > 0 or (self.max_age is not None and self.max_age > timedelta(0))

    @classmethod
    def from_config(cls) -> "RetentionPolicy":
        max_age = None
        if config.RETENTION_MAX_AGE_DAYS > 0:
            max_age = timedelta(days=config.RETENTION_MAX_AGE_DAYS)
        return cls(max_records=config.RETENTION_MAX_RECORDS, max_age=max_age)


class FingerprintStore:
    """Crash-safe fingerprint index for a single community."""

    def __init__(self, db_path: Union[str, Path],
                 hash_bits: int = config.HASH_BITS,
                 band_count: int = config.BAND_COUNT):
        self.db_path = Path(db_path)
        self.hash_bits = hash_bits
        self.band_count = band_count
        band_widths(hash_bits, band_count)
        self.init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        try:
            # Every commit is fsynced before it returns
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _session(self, action: str) -> Iterator[sqlite3.Connection]:
        """One connection and one transaction; storage errors become StoreIOError."""
        try:
            with self._connect() as conn:
                with conn:
                    yield conn
        except sqlite3.Error as e:
            raise StoreIOError(f"{action} failed on {self.db_path}: {e}") from e

    def init_db(self):
        """Create the schema on first use, validate it on reopen."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(SCHEMA)
                with conn:
                    meta = dict(conn.execute("SELECT key, value FROM meta"))
                    if not meta:
                        conn.executemany("INSERT INTO meta (key, value) VALUES (?, ?)", [
                            ("schema_version", str(SCHEMA_VERSION)),
                            ("hash_bits", str(self.hash_bits)),
                            ("band_count", str(self.band_count)),
                        ])
                        logger.info("Created index %s (%d-bit fingerprints, %d bands)",
                                    self.db_path, self.hash_bits, self.band_count)
                    else:
                        self._check_meta(conn, meta)
        except (sqlite3.Error, OSError) as e:
            raise IndexOpenError(f"could not open index {self.db_path}: {e}") from e

    def _check_meta(self, conn: sqlite3.Connection, meta: Dict[str, str]):
        version = int(meta["schema_version"])
        if version > SCHEMA_VERSION:
            raise IndexOpenError(
                f"{self.db_path} has schema version {version}, "
                f"this build understands up to {SCHEMA_VERSION}"
            )
        if version < SCHEMA_VERSION:
            # Newer tables were created by SCHEMA above
            conn.execute("UPDATE meta SET value = ? WHERE key = 'schema_version'",
                         (str(SCHEMA_VERSION),))
            logger.info("Upgraded %s from schema version %d to %d",
                        self.db_path, version, SCHEMA_VERSION)
        stored_bits = int(meta["hash_bits"])
        if stored_bits != self.hash_bits:
            raise IndexOpenError(
                f"{self.db_path} holds {stored_bits}-bit fingerprints, "
                f"configured for {self.hash_bits}"
            )
        stored_bands = int(meta["band_count"])
        if stored_bands != self.band_count:
            logger.warning("Rebuilding band index of %s: %d -> %d bands",
                           self.db_path, stored_bands, self.band_count)
            self._rebuild_bands(conn)

    def _rebuild_bands(self, conn: sqlite3.Connection):
        conn.execute("DELETE FROM bands")
        rows = conn.execute("SELECT id, fingerprint FROM posts").fetchall()
        conn.executemany(
            "INSERT INTO bands (band, value, post_id) VALUES (?, ?, ?)",
            [
                (band, value, post_id)
                for post_id, blob in rows
                for band, value in enumerate(
                    Fingerprint(bytes(blob), self.hash_bits).bands(self.band_count))
            ],
        )
        conn.execute("UPDATE meta SET value = ? WHERE key = 'band_count'",
                     (str(self.band_count),))

    def _check_width(self, fingerprint: Fingerprint):
        if fingerprint.bits != self.hash_bits:
            raise ValueError(
                f"{fingerprint.bits}-bit fingerprint used with a {self.hash_bits}-bit index"
            )

    def _to_record(self, row: Tuple) -> PostRecord:
        blob, author_id, channel_id, message_id, posted_at = row
        return PostRecord(
            fingerprint=Fingerprint(bytes(blob), self.hash_bits),
            author_id=author_id,
            channel_id=channel_id,
            message_id=message_id,
            posted_at=from_micros(posted_at),
        )

    def insert(self, record: PostRecord) -> bool:
        """
        Durably add a record.

        Returns:
            True if the record was written, False if its message is already indexed

        Raises:
            StoreIOError: the write did not happen
        """
        self._check_width(record.fingerprint)
        with self._session("insert") as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO posts
                (fingerprint, author_id, channel_id, message_id, posted_at)
                VALUES (?, ?, ?, ?, ?)
            """, (record.fingerprint.value, record.author_id, record.channel_id,
                  record.message_id, to_micros(record.posted_at)))
            inserted = cursor.rowcount > 0
            if inserted:
                post_id = cursor.lastrowid
                conn.executemany(
                    "INSERT INTO bands (band, value, post_id) VALUES (?, ?, ?)",
                    [(band, value, post_id)
                     for band, value in enumerate(record.fingerprint.bands(self.band_count))],
                )
        return inserted

    def find_exact(self, fingerprint: Fingerprint) -> Optional[PostRecord]:
        """Earliest record with exactly this fingerprint."""
        self._check_width(fingerprint)
        with self._session("exact lookup") as conn:
            row = conn.execute(f"""
                SELECT {RECORD_COLUMNS} FROM posts
                WHERE fingerprint = ?
                {CHRONOLOGICAL}
                LIMIT 1
            """, (fingerprint.value,)).fetchone()
        return self._to_record(row) if row else None

    def find_within(self, fingerprint: Fingerprint, threshold: int) -> Optional[PostRecord]:
        """
        Earliest-posted record within `threshold` bits of `fingerprint`.

        Records are visited in (posted_at, message_id) order, so the first
        one inside the threshold is the answer.
        """
        if threshold < 0:
            raise ValueError(f"threshold must be non-negative, got {threshold}")
        self._check_width(fingerprint)

        scanned = 0
        with self._session("similarity search") as conn:
            if threshold < self.band_count:
                bands = fingerprint.bands(self.band_count)
                clause = " OR ".join(["(band = ? AND value = ?)"] * len(bands))
                params = [item for pair in enumerate(bands) for item in pair]
                cursor = conn.execute(f"""
                    SELECT {RECORD_COLUMNS} FROM posts
                    WHERE id IN (SELECT post_id FROM bands WHERE {clause})
                    {CHRONOLOGICAL}
                """, params)
            else:
                cursor = conn.execute(f"SELECT {RECORD_COLUMNS} FROM posts {CHRONOLOGICAL}")

            for row in cursor:
                scanned += 1
                record = self._to_record(row)
                dist = distance(fingerprint, record.fingerprint)
                if dist <= threshold:
                    logger.debug("Match for %s: message %d at distance %d (%d scanned)",
                                 fingerprint, record.message_id, dist, scanned)
                    return record

        logger.debug("No match within %d for %s (%d scanned)", threshold, fingerprint, scanned)
        return None

    def get_by_message(self, message_id: int) -> Optional[PostRecord]:
        with self._session("message lookup") as conn:
            row = conn.execute(f"""
                SELECT {RECORD_COLUMNS} FROM posts WHERE message_id = ?
            """, (message_id,)).fetchone()
        return self._to_record(row) if row else None

    def sightings(self, message_id: int) -> Tuple[int, bool]:
        """(times seen, ignored) for an indexed message."""
        with self._session("sightings lookup") as conn:
            row = conn.execute(
                "SELECT times_seen, ignored FROM posts WHERE message_id = ?", (message_id,)
            ).fetchone()
        if row is None:
            raise KeyError(message_id)
        return row[0], bool(row[1])

    def record_sighting(self, message_id: int,
                        repost_id: Optional[int] = None) -> Tuple[int, bool]:
        """
        Count one more repost of an indexed message.

        With `repost_id`, the reposting message is remembered in the same
        transaction and counted only the first time it is seen.

        Returns:
            (times seen, ignored) of the indexed message
        """
        with self._session("record sighting") as conn:
            row = conn.execute(
                "SELECT id FROM posts WHERE message_id = ?", (message_id,)
            ).fetchone()
            if row is None:
                raise KeyError(message_id)
            post_id = row[0]

            first_time = True
            if repost_id is not None:
                first_time = conn.execute(
                    "INSERT OR IGNORE INTO reposts (message_id, post_id) VALUES (?, ?)",
                    (repost_id, post_id)
                ).rowcount > 0
            if first_time:
                conn.execute(
                    "UPDATE posts SET times_seen = times_seen + 1 WHERE id = ?", (post_id,)
                )
            times_seen, ignored = conn.execute(
                "SELECT times_seen, ignored FROM posts WHERE id = ?", (post_id,)
            ).fetchone()
        return times_seen, bool(ignored)

    def find_repost(self, repost_id: int) -> Optional[PostRecord]:
        """The indexed record a recorded repost message was matched to."""
        with self._session("repost lookup") as conn:
            row = conn.execute(f"""
                SELECT {RECORD_COLUMNS} FROM posts
                WHERE id = (SELECT post_id FROM reposts WHERE message_id = ?)
            """, (repost_id,)).fetchone()
        return self._to_record(row) if row else None

    def set_ignored(self, message_id: int, ignored: bool = True) -> bool:
        """Exclude an image from repost replies. Returns False if the message is unknown."""
        with self._session("set ignored") as conn:
            updated = conn.execute(
                "UPDATE posts SET ignored = ? WHERE message_id = ?", (ignored, message_id)
            ).rowcount
        return updated > 0

    def evict(self, policy: RetentionPolicy, now: Optional[datetime] = None,
              keep: Optional[int] = None) -> int:
        """
        Drop records outside the retention horizon. Returns how many were removed.

        The record of message `keep`, if given, survives this pass and counts
        towards `max_records`; it ages out on a later pass.
        """
        if not policy.active:
            return 0
        now = now or datetime.now(timezone.utc)

        removed = 0
        with self._session("evict") as conn:
            if policy.max_age is not None and policy.max_age > timedelta(0):
                cutoff = to_micros(now - policy.max_age)
                removed += conn.execute(
                    "DELETE FROM posts WHERE posted_at < ? AND message_id IS NOT ?",
                    (cutoff, keep)
                ).rowcount
            if policy.max_records > 0:
                kept = 0
                if keep is not None:
                    kept = conn.execute(
                        "SELECT COUNT(*) FROM posts WHERE message_id = ?", (keep,)
                    ).fetchone()[0]
                removed += conn.execute("""
                    DELETE FROM posts WHERE id IN (
                        SELECT id FROM posts
                        WHERE message_id IS NOT ?
                        ORDER BY posted_at DESC, message_id DESC
                        LIMIT -1 OFFSET ?
                    )
                """, (keep, max(0, policy.max_records - kept))).rowcount

        if removed:
            logger.info("Evicted %d records from %s", removed, self.db_path)
        return removed

    def count(self) -> int:
        with self._session("count") as conn:
            return conn.execute("SELECT COUNT(*) FROM posts").fetchone()[0]

    def iter_records(self) -> Iterator[PostRecord]:
        """All records, oldest first."""
        with self._session("scan") as conn:
            for row in conn.execute(f"SELECT {RECORD_COLUMNS} FROM posts {CHRONOLOGICAL}"):
                yield self._to_record(row)

    def stats(self) -> dict:
        """Get overall statistics."""
        with self._session("stats") as conn:
            total, ignored, seen, oldest, newest = conn.execute("""
                SELECT COUNT(*), COALESCE(SUM(ignored), 0), COALESCE(SUM(times_seen), 0),
                       MIN(posted_at), MAX(posted_at)
                FROM posts
            """).fetchone()

        return {
            "total_records": total,
            "ignored_records": ignored,
            "total_sightings": seen,
            "reposts_caught": seen - total,
            "oldest_post": from_micros(oldest) if oldest is not None else None,
            "newest_post": from_micros(newest) if newest is not None else None,
            "hash_bits": self.hash_bits,
            "band_count": self.band_count,
        }


class IndexRegistry:
    """Lazily opened, independently owned indices keyed by community id."""

    def __init__(self, index_dir: Union[str, Path] = config.INDEX_DIR,
                 hash_size: int = config.HASH_SIZE,
                 band_count: int = config.BAND_COUNT):
        self.index_dir = Path(index_dir)
        self.hash_size = hash_size
        self.hash_bits = hash_size * hash_size
        self.band_count = band_count
        self._stores: Dict[str, FingerprintStore] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    @staticmethod
    def _key(community_id: Union[int, str]) -> str:
        key = str(community_id)
        if not _COMMUNITY_ID.match(key):
            raise ValueError(f"invalid community id: {community_id!r}")
        return key

    def path_for(self, community_id: Union[int, str]) -> Path:
        return self.index_dir / f"{self._key(community_id)}.db"

    def get(self, community_id: Union[int, str]) -> FingerprintStore:
        """The community's index, created on first use."""
        key = self._key(community_id)
        with self._guard:
            store = self._stores.get(key)
            if store is None:
                store = FingerprintStore(self.path_for(key), self.hash_bits, self.band_count)
                self._stores[key] = store
            return store

    def lock_for(self, community_id: Union[int, str]) -> threading.Lock:
        """Serializes lookup-then-insert for one community."""
        key = self._key(community_id)
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def communities(self) -> List[str]:
        """Communities with an index on disk."""
        if not self.index_dir.exists():
            return []
        return sorted(path.stem for path in self.index_dir.glob("*.db"))

    def open_all(self) -> List[FingerprintStore]:
        """Open every index on disk; raises IndexOpenError on the first failure."""
        return [self.get(community) for community in self.communities()]
