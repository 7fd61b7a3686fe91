"""
Asyncio ingestion of attachment events.

Downloads and fingerprinting run in worker threads, in parallel across and
within communities. Only the lookup/insert step is serialized, through one
asyncio.Lock per community, so communities never wait on each other.
"""
import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterable, Callable, Dict, Optional, Set, Union

import config
from attachments import AttachmentFetcher, FetchError, is_supported_image_url
from duplicate_resolver import DuplicateResolver, Novel, PostMetadata, Rejected
from fingerprint_store import PostRecord, StoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttachmentEvent:
    """An image attachment posted in a community."""
    community_id: Union[int, str]
    channel_id: int
    message_id: int
    author_id: int
    posted_at: datetime
    attachment_url: str

    def metadata(self) -> PostMetadata:
        return PostMetadata(
            author_id=self.author_id,
            channel_id=self.channel_id,
            message_id=self.message_id,
            posted_at=self.posted_at,
        )


@dataclass(frozen=True)
class RepostNotice:
    """Request to tell a poster their image was posted before."""
    channel_id: int
    message_id: int
    original: PostRecord
    distance: int
    times_seen: int


# notify(channel_id, message_id, original), or notify(notice) with full_notice=True;
# may return an awaitable
Notifier = Callable[..., object]


class IngestionPipeline:
    """Feeds attachment events through a DuplicateResolver and reports reposts."""

    def __init__(self, resolver: DuplicateResolver, notify: Notifier,
                 fetch: Optional[Callable[[str], bytes]] = None,
                 max_concurrency: int = config.MAX_CONCURRENT_DOWNLOADS,
                 notify_attempts: int = config.NOTIFY_ATTEMPTS,
                 full_notice: bool = False):
        self.resolver = resolver
        self.notify = notify
        self.full_notice = full_notice
        self.fetch = fetch or AttachmentFetcher().fetch
        self.notify_attempts = max(1, notify_attempts)
        self.stats = Counter()
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _lock_for(self, community_id: Union[int, str]) -> asyncio.Lock:
        key = str(community_id)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def handle(self, event: AttachmentEvent) -> Optional[RepostNotice]:
        """
        Process one attachment event end to end.

        Returns:
            The notice that was sent, or None when there was nothing to report
        """
        if not is_supported_image_url(event.attachment_url):
            logger.debug("Skipping non-image attachment %s", event.attachment_url)
            self.stats['skipped'] += 1
            return None

        async with self._semaphore:
            try:
                image_bytes = await asyncio.to_thread(self.fetch, event.attachment_url)
            except FetchError as e:
                logger.warning("Dropping message %d in %s: %s",
                               event.message_id, event.community_id, e)
                self.stats['fetch_failed'] += 1
                return None
            fp = await asyncio.to_thread(self.resolver.prepare, image_bytes)

        if isinstance(fp, Rejected):
            logger.warning("Dropping message %d in %s: %s",
                           event.message_id, event.community_id, fp.reason)
            self.stats['rejected'] += 1
            return None

        async with self._lock_for(event.community_id):
            resolution = asyncio.ensure_future(asyncio.to_thread(
                self.resolver.resolve_fingerprint, event.community_id, fp, event.metadata()
            ))
            try:
                outcome = await asyncio.shield(resolution)
            except asyncio.CancelledError:
                # Let a write that already started land before giving up the lock
                if not resolution.done():
                    await asyncio.wait([resolution])
                if not resolution.cancelled() and resolution.exception() is not None:
                    logger.error("Index failure for message %d in %s after cancellation: %s",
                                 event.message_id, event.community_id, resolution.exception())
                    self.stats['store_failed'] += 1
                raise
            except StoreError:
                logger.exception("Index failure for message %d in %s",
                                 event.message_id, event.community_id)
                self.stats['store_failed'] += 1
                return None

        if isinstance(outcome, Novel):
            self.stats['novel'] += 1
            return None

        if outcome.redelivered:
            logger.debug("Message %d in %s was already resolved", event.message_id, event.community_id)
            self.stats['redelivered'] += 1
            return None

        self.stats['duplicate'] += 1
        if outcome.ignored:
            return None

        notice = RepostNotice(
            channel_id=event.channel_id,
            message_id=event.message_id,
            original=outcome.original,
            distance=outcome.distance,
            times_seen=outcome.times_seen,
        )
        await self._send(notice)
        return notice

    async def _send(self, notice: RepostNotice) -> bool:
        """Best-effort delivery with a bounded number of attempts."""
        for attempt in range(1, self.notify_attempts + 1):
            try:
                if self.full_notice:
                    result = self.notify(notice)
                else:
                    result = self.notify(notice.channel_id, notice.message_id, notice.original)
                if inspect.isawaitable(result):
                    await result
                self.stats['notified'] += 1
                return True
            except Exception as e:
                logger.warning("Repost notice for message %d failed (attempt %d/%d): %s",
                               notice.message_id, attempt, self.notify_attempts, e)
        self.stats['notify_failed'] += 1
        return False

    async def _guarded(self, event: AttachmentEvent) -> Optional[RepostNotice]:
        try:
            return await self.handle(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            # One bad event must not take the stream down
            logger.exception("Unexpected failure handling message %d in %s",
                             event.message_id, event.community_id)
            self.stats['failed'] += 1
            return None

    def submit(self, event: AttachmentEvent) -> asyncio.Task:
        """Schedule an event; its task is tracked until it finishes."""
        task = asyncio.get_running_loop().create_task(self._guarded(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every submitted event to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(self, events: AsyncIterable[AttachmentEvent]) -> None:
        """Consume an event stream, then wait for in-flight work."""
        try:
            async for event in events:
                self.submit(event)
        finally:
            await self.drain()
