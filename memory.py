#!/usr/bin/env python3
"""
Memory-aware batch processing.

Splits a feed's articles into fixed-size batches and samples the process's
resident memory (psutil) before each one. Above the soft threshold it forces
a garbage-collection pass and pauses for 2s, 5s or 10s depending on how far
over the limits the sample was. Every few batches a collection runs
regardless. One metrics record per batch goes into a bounded ring buffer that
is flushed to the metrics sink when full and at shutdown.

This is best-effort mitigation. Without a collector the manager only pauses.
"""

from asyncio import sleep as asyncio_sleep
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
import gc
from time import monotonic, time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import psutil

from config import config, get_logger
from errors import ErrorRecordType
from telemetry import trace_span

logger = get_logger("memory")

MB = 1024 * 1024
BASE_PAUSE = 2.0
HIGH_PAUSE = 5.0
CRITICAL_PAUSE = 10.0
HIGH_FACTOR = 1.5


@dataclass(frozen=True)
class MemoryStats:
    rss: int
    vms: int
    timestamp: float

    @property
    def rss_mb(self) -> int:
        return round(self.rss / MB)


@dataclass
class BatchRunResult:
    processed: int = 0
    failed: int = 0
    batches: int = 0


def _psutil_sampler() -> Tuple[int, int]:
    info = psutil.Process().memory_info()
    return info.rss, info.vms


class MemoryManager:
    """Drives batched processing while watching process memory.

    The sampler, collector and sleep primitive are injectable; pass
    `collector=None` to run pause-only.
    """

    def __init__(self, sink=None, batch_size: Optional[int] = None,
                 threshold_mb: Optional[int] = None, critical_threshold_mb: Optional[int] = None,
                 gc_interval: Optional[int] = None, inter_batch_delay: Optional[float] = None,
                 buffer_size: Optional[int] = None,
                 sampler: Callable[[], Tuple[int, int]] = _psutil_sampler,
                 collector: Optional[Callable[[], Any]] = gc.collect,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio_sleep):
        self.sink = sink
        self.batch_size = batch_size or config.BATCH_SIZE
        self.threshold = (threshold_mb or config.MEMORY_THRESHOLD_MB) * MB
        self.critical_threshold = (critical_threshold_mb or config.MEMORY_CRITICAL_THRESHOLD_MB) * MB
        self.gc_interval = gc_interval or config.GC_INTERVAL_BATCHES
        self.inter_batch_delay = config.INTER_BATCH_DELAY if inter_batch_delay is None else inter_batch_delay
        self._sampler = sampler
        self._collector = collector
        self._sleep = sleep
        self.performance_metrics = deque(maxlen=buffer_size or config.METRICS_BUFFER_SIZE)
        self.batch_count = 0
        self.pause_count = 0
        self.gc_count = 0
        self.last_gc_time: Optional[float] = None

    def get_memory_stats(self) -> MemoryStats:
        rss, vms = self._sampler()
        return MemoryStats(rss=rss, vms=vms, timestamp=time())

    def log_memory_usage(self, context: str = "") -> MemoryStats:
        stats = self.get_memory_stats()
        suffix = f" [{context}]" if context else ""
        if stats.rss > self.critical_threshold:
            logger.error(f"Memory{suffix}: RSS {stats.rss_mb}MB exceeds critical threshold")
        elif stats.rss > self.threshold:
            logger.warning(f"Memory{suffix}: RSS {stats.rss_mb}MB exceeds threshold")
        else:
            logger.debug(f"Memory{suffix}: RSS {stats.rss_mb}MB")
        return stats

    def should_pause_for_memory(self, stats: Optional[MemoryStats] = None) -> bool:
        stats = stats or self.get_memory_stats()
        return stats.rss > self.threshold

    def pause_duration_for(self, stats: MemoryStats) -> float:
        if stats.rss > self.critical_threshold:
            return CRITICAL_PAUSE
        if stats.rss > self.threshold * HIGH_FACTOR:
            return HIGH_PAUSE
        return BASE_PAUSE

    def force_garbage_collection(self) -> bool:
        """Run a collection pass. Returns False when no collector is available."""
        if self._collector is None:
            logger.warning("Garbage collection not available; continuing with pause only")
            return False
        before = self.get_memory_stats()
        collected = self._collector()
        after = self.get_memory_stats()
        self.gc_count += 1
        self.last_gc_time = time()
        logger.info(
            f"Garbage collection: {collected} objects collected, "
            f"RSS {before.rss_mb}MB -> {after.rss_mb}MB"
        )
        return True

    async def handle_memory_pressure(self, source: str, stats: Optional[MemoryStats] = None) -> float:
        """Collect, then pause for a duration chosen from the pre-collection sample."""
        stats = stats or self.get_memory_stats()
        self.pause_count += 1
        logger.warning(
            f"Pausing processing for {source} due to high memory usage "
            f"({stats.rss_mb}MB, pause #{self.pause_count})"
        )
        self.force_garbage_collection()
        duration = self.pause_duration_for(stats)
        logger.info(f"Pausing for {duration:.0f}s to allow memory cleanup")
        await self._sleep(duration)
        self.log_memory_usage("After memory cleanup")
        return duration

    async def record_batch_metrics(self, metrics: Dict[str, Any]) -> None:
        self.performance_metrics.append({
            **metrics,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "batch_number": metrics.get("batch_number", self.batch_count),
        })
        if len(self.performance_metrics) >= self.performance_metrics.maxlen and self.sink is not None:
            await self.flush_metrics()

    def increment_batch(self) -> None:
        self.batch_count += 1
        if self.batch_count % self.gc_interval == 0:
            logger.info(f"Batch {self.batch_count}: running scheduled garbage collection")
            self.force_garbage_collection()

    @trace_span(
        "memory.process_in_batches",
        tracer_name="memory",
        attr_from_args=lambda self, items, source, handler: {"feed.name": source, "items": len(items)},
    )
    async def process_in_batches(self, items: Sequence[Any], source: str,
                                 handler: Callable[[List[Any], int], Awaitable[Tuple[int, int]]]) -> BatchRunResult:
        """Feed `items` to `handler` in batches.

        `handler(batch, batch_number)` returns (processed, failed). A handler
        exception fails the whole batch, is reported, and processing moves on.
        """
        result = BatchRunResult()
        if not items:
            return result

        total_batches = (len(items) + self.batch_size - 1) // self.batch_size
        for start in range(0, len(items), self.batch_size):
            batch_number = start // self.batch_size + 1
            batch = list(items[start:start + self.batch_size])

            before = self.get_memory_stats()
            if self.should_pause_for_memory(before):
                await self.handle_memory_pressure(source, before)
                before = self.get_memory_stats()

            logger.debug(f"Processing batch {batch_number}/{total_batches} ({len(batch)} articles) from {source}")
            started = monotonic()
            try:
                processed, failed = await handler(batch, batch_number)
            except Exception as e:
                processed, failed = 0, len(batch)
                logger.error(f"Batch {batch_number} for {source} failed completely: {e}")
                if self.sink is not None:
                    await self.sink.log_error(
                        source, ErrorRecordType.BATCH_PROCESSING_FAILED,
                        f"Batch processing failed: {e}", {"batch_number": batch_number, "size": len(batch)},
                    )

            after = self.get_memory_stats()
            await self.record_batch_metrics({
                "source": source,
                "batch_number": batch_number,
                "articles_processed": processed,
                "articles_failed": failed,
                "processing_time_ms": round((monotonic() - started) * 1000),
                "memory_before_mb": before.rss_mb,
                "memory_after_mb": after.rss_mb,
                "memory_delta_mb": round((after.rss - before.rss) / MB),
            })
            self.increment_batch()

            result.processed += processed
            result.failed += failed
            result.batches += 1

            if start + self.batch_size < len(items) and self.inter_batch_delay > 0:
                await self._sleep(self.inter_batch_delay)

        return result

    async def flush_metrics(self) -> int:
        """Hand buffered batch metrics to the sink and clear the buffer."""
        if not self.performance_metrics:
            return 0
        records = list(self.performance_metrics)
        self.performance_metrics.clear()
        if self.sink is not None:
            await self.sink.record_metrics(records)
        return len(records)

    def get_summary(self) -> Dict[str, Any]:
        stats = self.get_memory_stats()
        return {
            "total_batches": self.batch_count,
            "pause_count": self.pause_count,
            "gc_count": self.gc_count,
            "metrics_recorded": len(self.performance_metrics),
            "last_gc_time": self.last_gc_time,
            "current_memory_mb": stats.rss_mb,
        }
