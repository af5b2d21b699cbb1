#!/usr/bin/env python3
"""
Feed ingestion orchestrator.

Wires the registry, store, error sink, rate limiter, DNS cache, normalizer,
validator and memory manager into a FeedFetcher and runs ingestion passes
over the configured feeds.

Modes:
    run        one ingestion pass (optionally limited with --feeds)
    scheduled  run at the times configured under `schedule` in feeds.yaml
    status     show stored article/error counts and the schedule
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from config import config, get_logger
from dns_cache import DnsCache
from errors import ConfigError
from fetcher import FeedFetcher
from memory import MemoryManager
from models import DatabaseQueue
from normalizer import ArticleNormalizer
from registry import FeedRegistry
from scheduler import FeedScheduler
from sink import ErrorSink
from telemetry import init_telemetry, shutdown_telemetry, trace_span
from utils import RateLimiter, format_duration
from validator import ArticleValidator

# Module-specific logger
logger = get_logger("orchestrator")


class IngestOrchestrator:
    """Owns the long-lived services shared by every ingestion pass.

    The rate limiter and DNS cache outlive a single run so that scheduled
    mode keeps their state between passes.
    """

    def __init__(self, config_path: Optional[str] = None, database_path: Optional[str] = None) -> None:
        self.registry = FeedRegistry(config_path)
        self.database_path = database_path or config.DATABASE_PATH
        self.store: Optional[DatabaseQueue] = None
        self.error_sink: Optional[ErrorSink] = None
        self.memory_manager: Optional[MemoryManager] = None
        self.fetcher: Optional[FeedFetcher] = None

    async def start(self) -> None:
        """Load feeds and open the store.

        Raises:
            ConfigError: the feeds document is missing or invalid.
        """
        if self.fetcher is not None:
            return

        logger.debug(f"Configuration: {config.get_config_summary()}")
        feeds = self.registry.load_feeds()
        policy = self.registry.policy
        logger.info(f"Loaded {len(feeds)} feeds ({len(self.registry.enabled_feeds())} enabled)")

        self.store = DatabaseQueue(self.database_path)
        await self.store.start()

        self.error_sink = ErrorSink(
            self.store, policy.error_batch_size, policy.error_flush_interval, policy.error_logging_enabled
        )
        await self.error_sink.start()

        self.memory_manager = MemoryManager(sink=self.error_sink)
        self.fetcher = FeedFetcher(
            self.registry,
            store=self.store,
            error_sink=self.error_sink,
            rate_limiter=RateLimiter(
                policy.requests_per_minute, policy.max_consecutive_failures, policy.pause_duration
            ),
            dns_cache=DnsCache(
                policy.dns_cache_ttl, policy.dns_failure_ttl, policy.dns_timeout, error_sink=self.error_sink
            ),
            normalizer=ArticleNormalizer(),
            validator=ArticleValidator(store=self.store, error_sink=self.error_sink),
            memory_manager=self.memory_manager,
        )
        await self.fetcher.initialize()

    @trace_span(
        "orchestrator.run_once",
        tracer_name="orchestrator",
        attr_from_args=lambda self, only_feeds=None: {"feed.only": ",".join(only_feeds) if only_feeds else ""},
    )
    async def run_once(self, only_feeds: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Run one ingestion pass and return its summary."""
        await self.start()
        logger.info("Starting ingestion run")
        try:
            summary = await self.fetcher.fetch_all_feeds(only_feeds=only_feeds)
        finally:
            await self.memory_manager.flush_metrics()
            await self.error_sink.flush()
            self.fetcher.validator.cleanup()

        memory = self.memory_manager.get_summary()
        logger.info(
            f"Memory: {memory['total_batches']} batches, {memory['pause_count']} pauses, "
            f"{memory['gc_count']} collections, current RSS {memory['current_memory_mb']}MB"
        )
        logger.debug(
            f"DNS cache: {self.fetcher.dns_cache.get_stats()}, "
            f"rate limiter: {self.fetcher.rate_limiter.get_status()}"
        )
        logger.info(f"Ingestion run finished in {format_duration(summary['elapsed_ms'] / 1000)}")
        return summary

    async def get_status(self) -> Dict[str, Any]:
        """Store counts plus the schedule, without loading any feeds over the network."""
        status: Dict[str, Any] = {'timestamp': datetime.now(timezone.utc).isoformat()}

        if not Path(self.database_path).exists():
            status['database'] = {'status': 'missing', 'message': 'Database file not found'}
        else:
            store = self.store or DatabaseQueue(self.database_path)
            owns_store = self.store is None
            try:
                if owns_store:
                    await store.start()
                status['database'] = {
                    'status': 'ok',
                    'total_articles': await store.execute('count_articles'),
                    'errors_by_type': await store.execute('count_errors_by_type'),
                    'recent_articles': await store.execute('list_recent_articles', limit=5),
                }
            except RuntimeError as e:
                status['database'] = {'status': 'error', 'message': str(e)}
            finally:
                if owns_store:
                    await store.stop()

        try:
            if not self.registry.loaded:
                self.registry.load_feeds()
            status['feeds'] = {
                'configured': len(self.registry.feeds),
                'enabled': len(self.registry.enabled_feeds()),
            }
            status['schedule'] = FeedScheduler(self.registry.schedule).get_schedule_status()
        except ConfigError as e:
            status['feeds'] = {'status': 'error', 'message': str(e)}

        return status

    async def close(self) -> None:
        if self.fetcher is not None:
            await self.fetcher.close()
            self.fetcher = None
        if self.error_sink is not None:
            await self.error_sink.close()
            self.error_sink = None
        if self.store is not None:
            await self.store.stop()
            self.store = None


def print_summary(summary: Dict[str, Any]) -> None:
    totals = summary['totals']
    print(f"\nIngestion run finished at {summary['finished_at']}")
    print(f"Feeds: {totals['feeds_succeeded']}/{totals['feeds_total']} succeeded")
    print(
        f"Articles: {totals['articles_fetched']} fetched, {totals['articles_valid']} valid, "
        f"{totals['articles_duplicate']} duplicate, {totals['articles_invalid']} invalid, "
        f"{totals['articles_errored']} errored, {totals['articles_stored']} stored"
    )
    for feed in summary['feeds']:
        marker = "ok " if feed['success'] else "ERR"
        detail = feed['error'] or f"{feed['valid']} valid, {feed['stored']} stored"
        print(f"  [{marker}] {feed['feed']}: {detail}")


def print_status(status: Dict[str, Any]) -> None:
    print(f"\nFeed ingestion status at {status['timestamp']}")
    db = status['database']
    if db['status'] == 'ok':
        print(f"Articles stored: {db['total_articles']}")
        for error_type, count in sorted(db['errors_by_type'].items()):
            print(f"  {error_type}: {count}")
    else:
        print(f"Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")

    feeds = status.get('feeds', {})
    if 'enabled' in feeds:
        print(f"Feeds: {feeds['enabled']} enabled of {feeds['configured']}")
    else:
        print(f"Feeds: {feeds.get('message', 'not loaded')}")

    schedule = status.get('schedule')
    if schedule and schedule['schedule_active']:
        print(f"Schedule ({schedule['schedule_timezone']}): {', '.join(schedule['schedule_times'])}")
        print(f"Next run: {schedule['next_run_time']} (in {schedule['minutes_until_next_run']} minutes)")
    else:
        print("No schedule configured")


async def run_once_mode(args) -> int:
    orchestrator = IngestOrchestrator(args.config, args.database)
    try:
        summary = await orchestrator.run_once(only_feeds=args.feeds)
    finally:
        await orchestrator.close()
    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        print_summary(summary)
    return 0 if summary['totals']['feeds_succeeded'] or not summary['totals']['feeds_total'] else 1


async def run_scheduled_mode(args) -> int:
    orchestrator = IngestOrchestrator(args.config, args.database)
    try:
        await orchestrator.start()
        scheduler = FeedScheduler(orchestrator.registry.schedule)
        if not scheduler.schedule_entries:
            logger.error("No schedule configured in feeds.yaml")
            logger.info("Add a 'schedule' section, e.g.\n  schedule:\n    - \"06:30\"\n    - \"18:30\"")
            return 1
        await scheduler.run_scheduled_pipeline(orchestrator)
    finally:
        await orchestrator.close()
    return 0


async def run_status_mode(args) -> int:
    orchestrator = IngestOrchestrator(args.config, args.database)
    status = await orchestrator.get_status()
    if args.json:
        print(json.dumps(status, indent=2, default=str))
    else:
        print_status(status)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='RSS feed ingestion pipeline')
    parser.add_argument('mode', choices=['run', 'scheduled', 'status'], help='Operation mode')
    parser.add_argument('--feeds', nargs='+', metavar='NAME',
                        help='Only fetch these feeds (run mode)')
    parser.add_argument('--config', type=str, help='Path to feeds.yaml (default: FEEDS_CONFIG_PATH)')
    parser.add_argument('--database', type=str, help='Path to the SQLite database (default: DATABASE_PATH)')
    parser.add_argument('--json', action='store_true', help='Print the run summary or status as JSON')
    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()
    init_telemetry()
    modes = {'run': run_once_mode, 'scheduled': run_scheduled_mode, 'status': run_status_mode}

    try:
        exit_code = asyncio.run(modes[args.mode](args))
    except KeyboardInterrupt:
        logger.info("Orchestrator shutting down")
        exit_code = 0
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        exit_code = 2
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        exit_code = 1
    finally:
        shutdown_telemetry()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
