#!/usr/bin/env python3
"""
RSS/Atom feed fetcher and ingestion loop.

Feeds are processed one at a time in registry order. For each feed the
fetcher resolves a reachable URL (primary, then fallbacks), fetches it with
a per-attempt timeout and redirect cap under the shared rate limiter, and
retries classified failures with exponential backoff. Parsed entries are
normalized, capped, validated and deduplicated in memory-managed batches,
and accepted articles are upserted into the store.

Nothing raises past `fetch_all_feeds()`: every feed, batch and article
isolates its own failures and reports them to the error sink.
"""

from asyncio import sleep, TimeoutError as AsyncTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
import socket
from time import monotonic
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from aiohttp import (
    ClientConnectorDNSError,
    ClientConnectorError,
    ClientError,
    ClientPayloadError,
    ClientResponseError,
    ClientSession,
    ClientTimeout,
    ConnectionTimeoutError,
    ServerDisconnectedError,
    ServerTimeoutError,
    TooManyRedirects,
)
import feedparser

from config import config, get_logger
from dns_cache import DnsCache
from errors import ErrorKind, ErrorRecordType, FeedFetchError
from memory import MemoryManager
from normalizer import Article, ArticleNormalizer
from registry import FeedConfig, FeedRegistry, ResolvedFeed
from telemetry import trace_span
from utils import RateLimiter
from validator import ArticleValidator

# Module-specific logger
logger = get_logger("fetcher")

ACCEPT_HEADER = "application/rss+xml, application/xml, text/xml"


@dataclass
class FetchAttempt:
    """One network try. Never persisted."""

    attempt: int
    url: str
    elapsed_ms: int
    error_kind: Optional[str] = None
    status: Optional[int] = None
    message: Optional[str] = None


@dataclass
class FetchResult:
    feed_name: str
    success: bool
    articles: List[Article] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    validation_summary: Optional[Dict[str, int]] = None
    attempts: List[FetchAttempt] = field(default_factory=list)
    active_url: Optional[str] = None


def _status_of(exc: BaseException) -> Optional[int]:
    status = getattr(exc, 'status', None)
    return status if isinstance(status, int) and status > 0 else None


class FeedFetcher:
    """Fetches every enabled feed and hands its articles to the store.

    All collaborators are injected; any left out is built fresh from the
    environment config and the registry's policy.
    """

    def __init__(self, registry: FeedRegistry, store=None, error_sink=None,
                 rate_limiter: Optional[RateLimiter] = None, dns_cache: Optional[DnsCache] = None,
                 normalizer: Optional[ArticleNormalizer] = None, validator: Optional[ArticleValidator] = None,
                 memory_manager: Optional[MemoryManager] = None, session: Optional[ClientSession] = None,
                 inter_feed_delay: Optional[float] = None, rate_limit_wait: Optional[float] = None,
                 sleep_func=sleep) -> None:
        policy = registry.policy
        self.registry = registry
        self.store = store
        self.error_sink = error_sink
        self.rate_limiter = rate_limiter or RateLimiter(
            policy.requests_per_minute, policy.max_consecutive_failures, policy.pause_duration
        )
        self.dns_cache = dns_cache or DnsCache(
            policy.dns_cache_ttl, policy.dns_failure_ttl, policy.dns_timeout, error_sink=error_sink
        )
        self.normalizer = normalizer or ArticleNormalizer()
        self.validator = validator or ArticleValidator(store=store, error_sink=error_sink)
        self.memory_manager = memory_manager or MemoryManager(sink=error_sink)
        self.session = session
        self._owns_session = session is None
        self.inter_feed_delay = config.INTER_FEED_DELAY if inter_feed_delay is None else inter_feed_delay
        self.rate_limit_wait = config.RATE_LIMIT_WAIT if rate_limit_wait is None else rate_limit_wait
        self._sleep = sleep_func

    async def initialize(self) -> None:
        """Open the HTTP session shared by feed fetches and link checks."""
        if self.session is None:
            self.session = ClientSession()
            self._owns_session = True
        if self.validator.session is None:
            self.validator.session = self.session
        logger.info("FeedFetcher initialized")

    async def _report(self, identifier: str, error_type: str, message: str, metadata: Optional[Dict[str, Any]] = None):
        if self.error_sink is not None:
            await self.error_sink.log_error(identifier, error_type, message, metadata)

    @trace_span("fetcher.fetch_all_feeds", tracer_name="fetcher")
    async def fetch_all_feeds(self, only_feeds: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Run one ingestion pass over the enabled feeds and return the run summary."""
        if self.session is None:
            await self.initialize()

        feeds = self.registry.enabled_feeds()
        if only_feeds:
            wanted = set(only_feeds)
            unknown = wanted - {feed.name for feed in feeds}
            if unknown:
                logger.warning(f"Ignoring unknown or disabled feeds: {', '.join(sorted(unknown))}")
            feeds = [feed for feed in feeds if feed.name in wanted]

        logger.info(f"Fetching {len(feeds)} enabled feeds...")
        started = monotonic()
        results: List[FetchResult] = []

        for index, feed in enumerate(feeds):
            try:
                resolved = await self.dns_cache.resolve_feed_with_fallback(feed)
                if resolved.failed:
                    logger.error(f"Skipping feed {feed.name} - all URLs failed DNS resolution")
                    results.append(FetchResult(feed.name, False, error="DNS resolution failed for all URLs"))
                else:
                    results.append(await self.fetch_feed_with_retry(resolved))
            except Exception as e:
                logger.error(f"Unexpected error processing feed {feed.name}: {e}", exc_info=True)
                await self._report(feed.name, ErrorRecordType.UNEXPECTED_ERROR, str(e), {"exception": type(e).__name__})
                results.append(FetchResult(feed.name, False, error=str(e)))

            if index < len(feeds) - 1 and self.inter_feed_delay > 0:
                await self._sleep(self.inter_feed_delay)

        summary = self._summarize(results, monotonic() - started)
        totals = summary["totals"]
        logger.info(
            f"Run complete: {totals['feeds_succeeded']}/{totals['feeds_total']} feeds succeeded, "
            f"{totals['articles_valid']} valid, {totals['articles_duplicate']} duplicate, "
            f"{totals['articles_invalid']} invalid, {totals['articles_errored']} errored"
        )
        return summary

    def _summarize(self, results: List[FetchResult], elapsed: float) -> Dict[str, Any]:
        feeds = []
        totals = {
            "feeds_total": len(results),
            "feeds_succeeded": 0,
            "feeds_failed": 0,
            "articles_fetched": 0,
            "articles_valid": 0,
            "articles_duplicate": 0,
            "articles_invalid": 0,
            "articles_errored": 0,
            "articles_stored": 0,
        }
        for result in results:
            validation = result.validation_summary or {}
            entry = {
                "feed": result.feed_name,
                "success": result.success,
                "error": result.error,
                "active_url": result.active_url,
                "attempts": len(result.attempts),
                "fetched": result.metadata.get("total_items", 0),
                "valid": validation.get("valid", 0),
                "duplicates": validation.get("duplicates", 0),
                "invalid": validation.get("invalid", 0),
                "errors": validation.get("errors", 0),
                "stored": result.metadata.get("stored", 0),
            }
            feeds.append(entry)
            totals["feeds_succeeded" if result.success else "feeds_failed"] += 1
            totals["articles_fetched"] += entry["fetched"]
            totals["articles_valid"] += entry["valid"]
            totals["articles_duplicate"] += entry["duplicates"]
            totals["articles_invalid"] += entry["invalid"]
            totals["articles_errored"] += entry["errors"]
            totals["articles_stored"] += entry["stored"]
        return {
            "feeds": feeds,
            "totals": totals,
            "elapsed_ms": round(elapsed * 1000),
            "finished_at": datetime.now(timezone.utc).isoformat(),
        }

    @trace_span(
        "fetcher.fetch_feed_with_retry",
        tracer_name="fetcher",
        attr_from_args=lambda self, resolved: {"feed.name": resolved.name},
    )
    async def fetch_feed_with_retry(self, resolved: ResolvedFeed) -> FetchResult:
        """Fetch one feed within its retry budget. Failure is returned, never raised."""
        feed = resolved.feed
        retry = feed.retry
        timeout = feed.timeout or config.HTTP_TIMEOUT
        active_url = resolved.active_url
        tried: List[str] = []
        attempts: List[FetchAttempt] = []
        last_error: Optional[FeedFetchError] = None
        parsed = None

        attempt = 0
        while attempt <= retry.max_retries:
            if not self.rate_limiter.can_make_request():
                logger.warning(f"Rate limited - waiting before retry for {feed.name}")
                await self._sleep(self.rate_limit_wait)
                continue

            self.rate_limiter.record_request()
            started = monotonic()
            try:
                parsed = await self._fetch_single_feed(active_url, timeout)
            except FeedFetchError as e:
                self.rate_limiter.record_failure()
                last_error = e
                attempts.append(FetchAttempt(
                    attempt + 1, active_url, round((monotonic() - started) * 1000), e.kind, e.status, str(e)
                ))
                logger.warning(f"Attempt {attempt + 1}/{retry.max_retries + 1} failed for {feed.name}: {e}")
                await self._report(feed.name, ErrorRecordType.FETCH_ATTEMPT_FAILED, str(e), {
                    "attempt": attempt + 1,
                    "max_attempts": retry.max_retries + 1,
                    "active_url": active_url,
                    "error_kind": e.kind,
                    "status": e.status,
                })

                if e.is_permanent:
                    tried.append(active_url)
                    active_url = await self._next_fallback(feed, tried, active_url)

                if attempt == retry.max_retries:
                    break
                await self.rate_limiter.exponential_backoff(attempt, retry.base_delay, retry.max_delay)
                attempt += 1
                continue
            except Exception:
                self.rate_limiter.record_failure()
                raise

            self.rate_limiter.record_success()
            attempts.append(FetchAttempt(attempt + 1, active_url, round((monotonic() - started) * 1000)))
            break

        if parsed is None:
            total = retry.max_retries + 1
            message = f"All {total} attempts failed. Last error: {last_error or 'Unknown error'}"
            logger.error(f"{feed.name}: {message}")
            await self._report(feed.name, ErrorRecordType.ALL_RETRIES_FAILED, message, {
                "total_attempts": total,
                "active_url": active_url,
                "last_error_kind": last_error.kind if last_error else None,
                "last_status": last_error.status if last_error else None,
            })
            return FetchResult(feed.name, False, error=message, attempts=attempts, active_url=active_url)

        result = await self._process_items(parsed, ResolvedFeed(feed=feed, active_url=active_url))
        result.attempts = attempts
        result.metadata["fetch_time_ms"] = sum(a.elapsed_ms for a in attempts)
        return result

    async def _next_fallback(self, feed: FeedConfig, tried: List[str], current: str) -> str:
        """Switch to the next resolvable candidate URL after a permanent failure."""
        if not [url for url in feed.candidate_urls if url not in tried]:
            return current
        fallback = await self.dns_cache.resolve_feed_with_fallback(feed, exclude=tried)
        if fallback.failed:
            return current
        logger.warning(f"Switching {feed.name} to fallback URL {fallback.active_url}")
        return fallback.active_url

    async def _fetch_single_feed(self, url: str, timeout: float):
        """One GET of the feed URL, parsed with feedparser.

        Raises:
            FeedFetchError: classified failure of this attempt.
        """
        headers = {'User-Agent': config.USER_AGENT, 'Accept': ACCEPT_HEADER}
        logger.debug(f"Fetching {url}")
        try:
            async with self.session.get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=timeout),
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                if not 200 <= response.status < 300:
                    raise FeedFetchError(
                        ErrorKind.HTTP_ERROR, f"HTTP {response.status}: {response.reason}",
                        status=response.status, url=url,
                    )
                body = await response.read()
        except FeedFetchError:
            raise
        except (ClientError, AsyncTimeoutError, OSError) as e:
            raise self.classify_error(e, url, timeout) from e

        if not body or not body.strip():
            raise FeedFetchError(ErrorKind.EMPTY_RESPONSE, "Received empty response from feed", url=url)

        parsed = feedparser.parse(body)
        if not parsed.get('version') and not parsed.entries:
            reason = parsed.get('bozo_exception')
            raise FeedFetchError(
                ErrorKind.INVALID_FEED_FORMAT,
                f"Invalid feed format - no items found{f' ({reason})' if reason else ''}",
                url=url,
            )
        return parsed

    def classify_error(self, error: BaseException, url: str, timeout: Optional[float] = None) -> FeedFetchError:
        """Map a transport exception onto an ErrorKind."""
        if isinstance(error, FeedFetchError):
            return error

        host = urlparse(url).hostname if url else None

        if isinstance(error, ConnectionTimeoutError):
            return FeedFetchError(ErrorKind.CONNECTION_TIMEOUT, f"Connection timed out to {host}", url=url)
        if isinstance(error, (ServerTimeoutError, AsyncTimeoutError)):
            limit = f" after {timeout}s" if timeout else ""
            return FeedFetchError(ErrorKind.TIMEOUT, f"Request timed out{limit}", url=url)
        if isinstance(error, (TooManyRedirects, ClientResponseError)):
            return FeedFetchError(ErrorKind.HTTP_ERROR, f"HTTP error: {error}", status=_status_of(error), url=url)
        if isinstance(error, ClientConnectorDNSError):
            return FeedFetchError(ErrorKind.DNS_ERROR, f"DNS resolution failed for {host}", url=url)

        cause = error.os_error if isinstance(error, ClientConnectorError) else error
        if isinstance(cause, socket.gaierror):
            return FeedFetchError(ErrorKind.DNS_ERROR, f"DNS resolution failed for {host}", url=url)
        if isinstance(cause, ConnectionRefusedError):
            return FeedFetchError(ErrorKind.CONNECTION_REFUSED, f"Connection refused by {host}", url=url)
        if isinstance(cause, TimeoutError):
            return FeedFetchError(ErrorKind.CONNECTION_TIMEOUT, f"Connection timed out to {host}", url=url)
        if isinstance(cause, (ConnectionResetError, ServerDisconnectedError, ClientPayloadError)):
            return FeedFetchError(ErrorKind.CONNECTION_RESET, f"Connection reset by {host}", url=url)
        return FeedFetchError(ErrorKind.CONNECTION_RESET, f"Connection error for {host}: {error}", url=url)

    @trace_span(
        "fetcher.process_items",
        tracer_name="fetcher",
        attr_from_args=lambda self, parsed, resolved: {"feed.name": resolved.name},
    )
    async def _process_items(self, parsed, resolved: ResolvedFeed) -> FetchResult:
        """Normalize, validate and store a parsed feed's entries."""
        feed = resolved.feed
        entries = list(parsed.entries)
        logger.info(f"Processing {len(entries)} entries from {feed.name}")

        normalized = []
        for entry in entries:
            article = self.normalizer.normalize(entry, feed)
            if article is not None:
                normalized.append(article)
            if len(normalized) >= config.MAX_ITEMS_PER_FEED:
                break

        accepted: List[Article] = []
        validation = {"total": 0, "valid": 0, "invalid": 0, "duplicates": 0, "errors": 0}
        stored = {"inserted": 0, "skipped": 0, "failed": 0}

        async def handle_batch(batch: List[Article], batch_number: int):
            result = await self.validator.validate_batch(batch, feed.name)
            for key, value in result.summary.items():
                validation[key] += value
            fetched_at = datetime.now(timezone.utc).isoformat()
            for article in result.valid_articles:
                article.fetched_at = fetched_at
            if result.valid_articles:
                counts = await self._upsert_articles(result.valid_articles, feed.name)
                for key, value in counts.items():
                    stored[key] += value
            accepted.extend(result.valid_articles)
            return len(batch) - len(result.processing_errors), len(result.processing_errors)

        run = await self.memory_manager.process_in_batches(normalized, feed.name, handle_batch)
        # A batch that failed outright never reported its articles
        validation["errors"] = max(validation["errors"], run.failed)

        if validation["invalid"]:
            logger.warning(f"{validation['invalid']} articles from {feed.name} failed validation")
        if validation["duplicates"]:
            logger.info(f"{validation['duplicates']} duplicate articles from {feed.name} skipped")
        logger.info(f"Successfully processed {len(accepted)} valid articles from {feed.name}")

        return FetchResult(
            feed_name=feed.name,
            success=True,
            articles=accepted,
            validation_summary=validation,
            active_url=resolved.active_url,
            metadata={
                "feed_title": parsed.feed.get('title'),
                "total_items": len(entries),
                "normalized_items": len(normalized),
                "valid_items": len(accepted),
                "stored": stored["inserted"],
                "active_url": resolved.active_url,
                "batches": run.batches,
            },
        )

    async def _upsert_articles(self, articles: List[Article], source: str) -> Dict[str, int]:
        """Write accepted articles; a store failure is logged, never raised."""
        if self.store is None:
            return {"inserted": 0, "skipped": 0, "failed": 0}
        try:
            counts = await self.store.execute('upsert_articles', articles=[a.to_record() for a in articles])
            logger.info(
                f"Upserted articles from {source}: {counts['inserted']} new, "
                f"{counts['skipped']} already stored, {counts['failed']} failed"
            )
            return counts
        except Exception as e:
            logger.error(f"Article upsert failed for {source}: {e}")
            for article in articles:
                await self._report(
                    article.link, ErrorRecordType.DATABASE_UPSERT_FAILED, str(e),
                    {"source": source, "content_hash": article.content_hash},
                )
            return {"inserted": 0, "skipped": 0, "failed": len(articles)}

    async def close(self) -> None:
        """Flush metrics and close the HTTP session if this fetcher opened it."""
        try:
            await self.memory_manager.flush_metrics()
        finally:
            self.validator.cleanup()
            if self.validator.session is self.session:
                self.validator.session = None
            if self._owns_session and self.session is not None:
                await self.session.close()
            self.session = None
        logger.info("FeedFetcher closed")
