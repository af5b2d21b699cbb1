import asyncio
from datetime import datetime, timezone
from email.utils import format_datetime
import socket

import pytest
from aiohttp import ServerDisconnectedError, ServerTimeoutError, ConnectionTimeoutError, web
from aiohttp.test_utils import TestServer

from conftest import FakeClock, RecordingSleep
from dns_cache import DnsCache
from errors import ErrorKind, ErrorRecordType, FeedFetchError
from fetcher import FeedFetcher, FetchResult
from memory import MB, MemoryManager
from models import DatabaseQueue
from registry import FeedConfig, FeedRegistry, ResolvedFeed, RetryPolicy
from utils import RateLimiter
from validator import ArticleValidator


def rss_document():
    published = format_datetime(datetime.now(timezone.utc))
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Local wire</title>
    <link>https://example.com/</link>
    <description>Test feed</description>
    <item>
      <title>Aid convoy reaches Rafah crossing</title>
      <link>https://example.com/news/convoy</link>
      <description>Trucks carrying food and medicine crossed at dawn.</description>
      <pubDate>{published}</pubDate>
      <category>Aid</category>
    </item>
    <item>
      <title>Ceasefire talks resume in Cairo</title>
      <link>https://example.com/news/talks</link>
      <description>Negotiators returned for a third round of meetings.</description>
      <pubDate>{published}</pubDate>
    </item>
  </channel>
</rss>"""


class AlwaysResolves:
    async def __call__(self, hostname, timeout):
        return "127.0.0.1"


class NeverResolves:
    async def __call__(self, hostname, timeout):
        raise socket.gaierror(f"Name or service not known: {hostname}")


def make_fetcher(feeds=(), store=None, sink=None, resolver=None, sleeper=None, limiter=None):
    registry = FeedRegistry()
    registry.feeds = list(feeds)
    sleeper = sleeper or RecordingSleep()
    return FeedFetcher(
        registry,
        store=store,
        error_sink=sink,
        rate_limiter=limiter or RateLimiter(
            requests_per_minute=1000, max_consecutive_failures=100, pause_duration=1, sleep=sleeper
        ),
        dns_cache=DnsCache(resolver=resolver or AlwaysResolves(), error_sink=sink),
        validator=ArticleValidator(store=store, error_sink=sink, check_urls=False),
        memory_manager=MemoryManager(
            sink=sink, inter_batch_delay=0, sampler=lambda: (10 * MB, 20 * MB), sleep=sleeper
        ),
        inter_feed_delay=0,
        rate_limit_wait=5,
        sleep_func=sleeper,
    )


@pytest.mark.asyncio
async def test_retries_until_budget_exhausted_with_growing_backoff(fake_sink):
    sleeper = RecordingSleep()
    feed = FeedConfig(name="flaky", url="https://flaky.example/rss",
                      retry=RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0))
    fetcher = make_fetcher([feed], sink=fake_sink, sleeper=sleeper)
    calls = []

    async def failing_fetch(url, timeout):
        calls.append(url)
        raise FeedFetchError(ErrorKind.TIMEOUT, f"Request timed out after {timeout}s", url=url)

    fetcher._fetch_single_feed = failing_fetch

    result = await fetcher.fetch_feed_with_retry(ResolvedFeed(feed, feed.url))

    assert not result.success
    assert len(calls) == 4
    assert len(result.attempts) == 4
    assert all(a.error_kind == ErrorKind.TIMEOUT for a in result.attempts)
    assert len(sleeper.calls) == 3
    assert sleeper.calls == sorted(sleeper.calls)
    assert 1.0 <= sleeper.calls[0] <= 1.1 and 4.0 <= sleeper.calls[2] <= 4.4
    assert result.error.startswith("All 4 attempts failed. Last error: Request timed out")
    assert fake_sink.types() == [ErrorRecordType.FETCH_ATTEMPT_FAILED] * 4 + [ErrorRecordType.ALL_RETRIES_FAILED]


@pytest.mark.asyncio
async def test_tripped_breaker_waits_without_consuming_attempts():
    clock = FakeClock()
    sleeper = RecordingSleep(clock)
    limiter = RateLimiter(requests_per_minute=1000, max_consecutive_failures=2, pause_duration=60,
                          clock=clock, sleep=sleeper)
    feed = FeedConfig(name="flaky", url="https://flaky.example/rss",
                      retry=RetryPolicy(max_retries=3, base_delay=1.0, max_delay=30.0))
    fetcher = make_fetcher([feed], sleeper=sleeper, limiter=limiter)
    calls = []

    async def failing_fetch(url, timeout):
        calls.append(url)
        raise FeedFetchError(ErrorKind.CONNECTION_RESET, "Connection reset", url=url)

    fetcher._fetch_single_feed = failing_fetch

    result = await fetcher.fetch_feed_with_retry(ResolvedFeed(feed, feed.url))

    assert not result.success
    assert len(calls) == 4
    assert 5 in sleeper.calls


@pytest.mark.parametrize("error, kind", [
    (asyncio.TimeoutError(), ErrorKind.TIMEOUT),
    (ServerTimeoutError("read timeout"), ErrorKind.TIMEOUT),
    (ConnectionTimeoutError("connect timeout"), ErrorKind.CONNECTION_TIMEOUT),
    (socket.gaierror(-2, "Name or service not known"), ErrorKind.DNS_ERROR),
    (ConnectionRefusedError(111, "Connection refused"), ErrorKind.CONNECTION_REFUSED),
    (ConnectionResetError(104, "Connection reset by peer"), ErrorKind.CONNECTION_RESET),
    (ServerDisconnectedError(), ErrorKind.CONNECTION_RESET),
])
def test_classify_error(error, kind):
    fetcher = make_fetcher()

    classified = fetcher.classify_error(error, "https://news.example/rss", timeout=10)

    assert classified.kind == kind
    assert classified.url == "https://news.example/rss"


@pytest.mark.asyncio
async def test_dns_failure_skips_feed_and_run_continues(fake_sink):
    down = FeedConfig(name="down", url="https://down.example/rss")
    fetcher = make_fetcher([down], sink=fake_sink, resolver=NeverResolves())
    fetcher.session = object()

    summary = await fetcher.fetch_all_feeds()

    assert summary["totals"]["feeds_failed"] == 1
    assert summary["feeds"][0]["error"] == "DNS resolution failed for all URLs"
    assert ErrorRecordType.ALL_URLS_FAILED in fake_sink.types()


@pytest.mark.asyncio
async def test_unexpected_feed_error_isolated(fake_sink):
    broken = FeedConfig(name="broken", url="https://broken.example/rss")
    healthy = FeedConfig(name="healthy", url="https://healthy.example/rss")
    fetcher = make_fetcher([broken, healthy], sink=fake_sink)
    fetcher.session = object()

    async def fake_retry(resolved):
        if resolved.name == "broken":
            raise KeyError("parser exploded")
        return FetchResult(resolved.name, True, metadata={"total_items": 3, "stored": 3},
                           validation_summary={"valid": 3})

    fetcher.fetch_feed_with_retry = fake_retry

    summary = await fetcher.fetch_all_feeds()

    assert [f["success"] for f in summary["feeds"]] == [False, True]
    assert summary["totals"]["articles_valid"] == 3
    assert fake_sink.types() == [ErrorRecordType.UNEXPECTED_ERROR]


@pytest.fixture
def feed_app():
    app = web.Application()

    async def primary(request):
        return web.Response(status=404, text="gone")

    async def fallback(request):
        return web.Response(text=rss_document(), content_type="application/rss+xml")

    async def empty(request):
        return web.Response(text="   ")

    async def html_page(request):
        return web.Response(text="plain text, definitely not a feed", content_type="text/plain")

    app.router.add_get("/primary", primary)
    app.router.add_get("/fallback", fallback)
    app.router.add_get("/empty", empty)
    app.router.add_get("/html", html_page)
    return app


@pytest.mark.asyncio
async def test_not_found_primary_switches_to_fallback(feed_app, tmp_path, fake_sink):
    server = TestServer(feed_app)
    await server.start_server()
    store = DatabaseQueue(str(tmp_path / "ingest.db"))
    await store.start()
    feed = FeedConfig(
        name="local",
        url=str(server.make_url("/primary")),
        fallback_urls=(str(server.make_url("/fallback")),),
        category="Middle East",
        retry=RetryPolicy(max_retries=2, base_delay=0.01, max_delay=0.05),
    )
    fetcher = make_fetcher([feed], store=store, sink=fake_sink)
    try:
        summary = await fetcher.fetch_all_feeds()
        repeat = await fetcher.fetch_all_feeds()
        stored = await store.execute("list_recent_articles")
    finally:
        await fetcher.close()
        await store.stop()
        await server.close()

    result = summary["feeds"][0]
    assert result["success"]
    assert result["active_url"] == feed.fallback_urls[0]
    assert result["attempts"] == 2
    assert summary["totals"]["articles_valid"] == 2
    assert summary["totals"]["articles_stored"] == 2
    assert {row["link"] for row in stored} == {
        "https://example.com/news/convoy", "https://example.com/news/talks",
    }
    assert {row["category"] for row in stored} == {"Middle East"}
    assert repeat["totals"]["articles_duplicate"] == 2
    assert repeat["totals"]["articles_stored"] == 0
    failed_attempts = [e for e in fake_sink.errors if e["error_type"] == ErrorRecordType.FETCH_ATTEMPT_FAILED]
    assert failed_attempts[0]["metadata"]["status"] == 404


@pytest.mark.asyncio
async def test_empty_and_non_feed_bodies_are_classified(feed_app):
    server = TestServer(feed_app)
    await server.start_server()
    fetcher = make_fetcher()
    await fetcher.initialize()
    try:
        with pytest.raises(FeedFetchError) as empty:
            await fetcher._fetch_single_feed(str(server.make_url("/empty")), 5)
        with pytest.raises(FeedFetchError) as not_feed:
            await fetcher._fetch_single_feed(str(server.make_url("/html")), 5)
        with pytest.raises(FeedFetchError) as missing:
            await fetcher._fetch_single_feed(str(server.make_url("/primary")), 5)
    finally:
        await fetcher.close()
        await server.close()

    assert empty.value.kind == ErrorKind.EMPTY_RESPONSE
    assert not_feed.value.kind == ErrorKind.INVALID_FEED_FORMAT
    assert missing.value.kind == ErrorKind.HTTP_ERROR
    assert missing.value.status == 404
    assert missing.value.is_permanent
