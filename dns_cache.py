#!/usr/bin/env python3
"""
Hostname resolution cache with fallback URL selection.

Successful lookups are cached for `ttl` seconds, failures for the much
shorter `failure_ttl` so a flapping resolver recovers quickly without being
hammered. The cache is shared by every feed in a run and is accessed from a
single task only.
"""

from asyncio import get_running_loop, wait_for, TimeoutError as AsyncTimeoutError
from collections import OrderedDict
from dataclasses import dataclass
import socket
from time import monotonic
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

from config import get_logger
from errors import ErrorRecordType
from registry import FeedConfig, ResolvedFeed

logger = get_logger("dns")


@dataclass(frozen=True)
class Resolution:
    hostname: str
    success: bool
    address: Optional[str] = None
    error: Optional[str] = None
    cached: bool = False


async def _system_resolve(hostname: str, timeout: float) -> str:
    loop = get_running_loop()
    infos = await wait_for(
        loop.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP),
        timeout=timeout,
    )
    if not infos:
        raise socket.gaierror(f"No addresses for {hostname}")
    return infos[0][4][0]


class DnsCache:
    """TTL cache of hostname to address lookups."""

    def __init__(self, ttl: float = 300.0, failure_ttl: float = 60.0, timeout: float = 5.0,
                 max_entries: int = 1000, error_sink=None, resolver=None,
                 clock: Callable[[], float] = monotonic):
        """
        Args:
            resolver: async callable (hostname, timeout) -> address. Defaults
                      to the event loop's getaddrinfo.
        """
        self.ttl = ttl
        self.failure_ttl = failure_ttl
        self.timeout = timeout
        self.max_entries = max_entries
        self.error_sink = error_sink
        self._resolver = resolver or _system_resolve
        self._clock = clock
        self._entries = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _get(self, hostname: str) -> Optional[Resolution]:
        entry = self._entries.get(hostname)
        if entry is None:
            return None
        expires_at, resolution = entry
        if self._clock() >= expires_at:
            del self._entries[hostname]
            return None
        return resolution

    def _put(self, resolution: Resolution, ttl: float):
        self._entries[resolution.hostname] = (self._clock() + ttl, resolution)
        self._entries.move_to_end(resolution.hostname)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    async def resolve(self, hostname: str) -> Resolution:
        """Resolve a hostname, never raising. Failures come back with success=False."""
        cached = self._get(hostname)
        if cached is not None:
            self.hits += 1
            logger.debug(f"DNS cache hit for {hostname}")
            return Resolution(cached.hostname, cached.success, cached.address, cached.error, cached=True)

        self.misses += 1
        try:
            address = await self._resolver(hostname, self.timeout)
            resolution = Resolution(hostname, True, address=address)
            self._put(resolution, self.ttl)
            return resolution
        except (OSError, AsyncTimeoutError, ValueError) as e:
            # ValueError covers UnicodeError from IDNA encoding of malformed hostnames
            message = str(e) or f"lookup timed out after {self.timeout}s"
            resolution = Resolution(hostname, False, error=message)
            self._put(resolution, self.failure_ttl)
            logger.warning(f"DNS resolution failed for {hostname}: {message}")
            if self.error_sink is not None:
                await self.error_sink.log_error(hostname, ErrorRecordType.DNS_RESOLUTION_FAILED, message)
            return resolution

    async def resolve_feed_with_fallback(self, feed: FeedConfig, exclude: Iterable[str] = ()) -> ResolvedFeed:
        """Select the first candidate URL whose host resolves.

        Candidates are the primary URL then each fallback in order, skipping
        any URL in `exclude`. When nothing resolves the feed is returned with
        failed=True and an ALL_URLS_FAILED record is emitted.
        """
        skipped = set(exclude)
        for url in feed.candidate_urls:
            if url in skipped:
                continue
            hostname = urlparse(url).hostname
            if not hostname:
                continue
            resolution = await self.resolve(hostname)
            if resolution.success:
                if url != feed.url:
                    logger.warning(f"Using fallback URL for {feed.name}: {url}")
                return ResolvedFeed(feed=feed, active_url=url)

        message = f"Primary and all fallback URLs failed for feed: {feed.name}"
        logger.error(message)
        if self.error_sink is not None:
            await self.error_sink.log_error(
                feed.name, ErrorRecordType.ALL_URLS_FAILED, message,
                {"urls": list(feed.candidate_urls), "excluded": sorted(skipped)},
            )
        return ResolvedFeed(feed=feed, active_url=None, failed=True)

    def clear(self):
        self._entries.clear()

    def get_stats(self) -> dict:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}
