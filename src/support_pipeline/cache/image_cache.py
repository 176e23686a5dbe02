"""
Bounded in-process image cache for vision input.

Keyed by provider message id. Entries expire after a TTL and the least
recently used entry is evicted once the cache is full. The cache is a
performance aid only: a miss means the reply is drafted from text alone.
"""

import time
from collections import OrderedDict
from typing import Callable, Optional

import structlog

from support_pipeline.models.mail_models import Attachment
from support_pipeline.monitoring.metrics import image_cache_entries

logger = structlog.get_logger(__name__)


class ImageCache:
    """LRU + TTL map of message id -> image attachments."""

    def __init__(
        self,
        max_entries: int = 200,
        ttl_seconds: float = 1800,
        max_bytes: int = 5 * 1024 * 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.max_bytes = max_bytes
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, list[Attachment]]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, message_id: str) -> bool:
        return self.get(message_id) is not None

    def put(self, message_id: str, attachments: list[Attachment]) -> int:
        """
        Cache the image attachments of a message.

        Non-images and images larger than max_bytes are dropped.

        Returns:
            Number of images cached
        """
        images = [a for a in attachments if a.is_image and 0 < len(a.content) <= self.max_bytes]
        if not images:
            return 0

        self._evict_expired()
        self._entries[message_id] = (self._clock() + self.ttl_seconds, images)
        self._entries.move_to_end(message_id)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Image cache evicted entry", message_id=evicted)
        image_cache_entries.set(len(self._entries))
        return len(images)

    def get(self, message_id: str) -> Optional[list[Attachment]]:
        entry = self._entries.get(message_id)
        if entry is None:
            return None
        expires_at, images = entry
        if expires_at <= self._clock():
            del self._entries[message_id]
            image_cache_entries.set(len(self._entries))
            return None
        self._entries.move_to_end(message_id)
        return images

    def discard(self, message_id: str) -> None:
        if self._entries.pop(message_id, None) is not None:
            image_cache_entries.set(len(self._entries))

    def _evict_expired(self) -> None:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]


_image_cache: Optional[ImageCache] = None


def get_image_cache(max_entries: int = 200, ttl_seconds: float = 1800, max_bytes: int = 5 * 1024 * 1024) -> ImageCache:
    """Process-wide cache shared by ingestion and processing in the same worker."""
    global _image_cache
    if _image_cache is None:
        _image_cache = ImageCache(max_entries=max_entries, ttl_seconds=ttl_seconds, max_bytes=max_bytes)
    return _image_cache
