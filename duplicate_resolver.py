"""
Repost resolution: fingerprint an image, look for an earlier similar one,
and either report the original or index the new post.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, Optional, Union

import config
from attachments import DecodeError, decode_image
from fingerprint_store import IndexRegistry, PostRecord, RetentionPolicy
from image_fingerprint import CodecError, Fingerprint, PixelBuffer, distance, fingerprint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PostMetadata:
    """Who posted the image, where and when."""
    author_id: int
    channel_id: int
    message_id: int
    posted_at: datetime


@dataclass(frozen=True)
class Novel:
    """Nothing similar was indexed; `record` has been added."""
    record: PostRecord


@dataclass(frozen=True)
class Duplicate:
    """A similar image was posted earlier; nothing was added."""
    original: PostRecord
    distance: int
    times_seen: int
    ignored: bool = False
    # The message was already resolved before; nothing was counted this time
    redelivered: bool = False


@dataclass(frozen=True)
class Rejected:
    """The image could not be fingerprinted; nothing was added."""
    reason: str


Outcome = Union[Novel, Duplicate, Rejected]


class DuplicateResolver:
    """Answers "have we seen this image here before?" for each community."""

    def __init__(self, registry: IndexRegistry,
                 threshold: int = config.SIMILARITY_THRESHOLD,
                 decoder: Callable[[bytes], PixelBuffer] = decode_image,
                 hasher: Optional[Callable[[PixelBuffer], Fingerprint]] = None,
                 retention: Optional[RetentionPolicy] = None):
        if threshold < 0:
            raise ValueError(f"threshold must be non-negative, got {threshold}")
        self.registry = registry
        self.threshold = threshold
        self.decoder = decoder
        self.hasher = hasher or partial(fingerprint, hash_size=registry.hash_size)
        self.retention = retention or RetentionPolicy()

    def prepare(self, image_bytes: bytes) -> Union[Fingerprint, Rejected]:
        """Decode and fingerprint. Touches no index, safe to run in parallel."""
        try:
            return self.hasher(self.decoder(image_bytes))
        except (DecodeError, CodecError) as e:
            logger.warning("Rejected image (%d bytes): %s", len(image_bytes), e)
            return Rejected(str(e))

    def resolve_fingerprint(self, community_id: Union[int, str], fp: Fingerprint,
                            post: PostMetadata) -> Outcome:
        """
        Look up and, if nothing similar exists, index a fingerprint.

        The lookup and the insert run under the community's lock, so two
        similar images resolved at the same time cannot both be Novel.
        Resolving a message a second time changes nothing and returns a
        Duplicate with `redelivered` set.

        When retention is configured it runs after the insert, sparing the
        new record even if it is already older than the horizon.

        Raises:
            StoreError: the index could not be read or written
        """
        store = self.registry.get(community_id)
        with self.registry.lock_for(community_id):
            # Re-delivery of a message we already indexed
            existing = store.get_by_message(post.message_id)
            if existing is not None:
                times_seen, ignored = store.sightings(post.message_id)
                logger.debug("Message %d already indexed in %s", post.message_id, community_id)
                return Duplicate(existing, distance(fp, existing.fingerprint), times_seen, ignored,
                                 redelivered=True)

            # Re-delivery of a message we already reported as a repost
            original = store.find_repost(post.message_id)
            if original is not None:
                times_seen, ignored = store.sightings(original.message_id)
                logger.debug("Message %d already resolved as a repost of %d in %s",
                             post.message_id, original.message_id, community_id)
                return Duplicate(original, distance(fp, original.fingerprint), times_seen, ignored,
                                 redelivered=True)

            original = store.find_within(fp, self.threshold)
            if original is not None:
                times_seen, ignored = store.record_sighting(original.message_id, post.message_id)
                dist = distance(fp, original.fingerprint)
                logger.debug("Message %d in %s reposts %d (distance %d, seen %d times)",
                             post.message_id, community_id, original.message_id, dist, times_seen)
                return Duplicate(original, dist, times_seen, ignored)

            record = PostRecord(
                fingerprint=fp,
                author_id=post.author_id,
                channel_id=post.channel_id,
                message_id=post.message_id,
                posted_at=post.posted_at,
            )
            if not store.insert(record):
                # Another process indexed the message between our lookup and insert
                existing = store.get_by_message(post.message_id)
                times_seen, ignored = store.sightings(post.message_id)
                return Duplicate(existing, distance(fp, existing.fingerprint), times_seen, ignored,
                                 redelivered=True)

            if self.retention.active:
                store.evict(self.retention, keep=post.message_id)

        logger.debug("Indexed message %d in %s as %s", post.message_id, community_id, fp)
        return Novel(record)

    def resolve(self, community_id: Union[int, str], image_bytes: bytes,
                post: PostMetadata) -> Outcome:
        """Fingerprint `image_bytes` and resolve it against the community's index."""
        fp = self.prepare(image_bytes)
        if isinstance(fp, Rejected):
            return fp
        return self.resolve_fingerprint(community_id, fp, post)
