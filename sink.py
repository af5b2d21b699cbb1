#!/usr/bin/env python3
"""
Error and performance-metrics sink.

Structured error records ({identifier, error_type, message, metadata,
timestamp}) and batch performance records are buffered in memory and
written to the store in batches: when the buffer reaches the configured
size, on a periodic timer, and at shutdown. A failed write is logged and
the records are dropped; the sink never raises into the pipeline.
"""

from asyncio import CancelledError, create_task, sleep
from datetime import datetime, timezone
import json
from typing import Any, Dict, List, Optional

from config import get_logger
from telemetry import trace_span

logger = get_logger("sink")

USER_AGENT_TAG = "FeedIngest RSS Fetcher"


class ErrorSink:
    """Batches error and metrics records for an append-only store.

    The store is anything with an async `execute(operation_name, **params)`,
    normally a `models.DatabaseQueue`. With no store, or when disabled,
    records are only written to the log.
    """

    def __init__(self, store=None, batch_size: int = 10, flush_interval: float = 30.0, enabled: bool = True):
        self.store = store
        self.batch_size = max(1, batch_size)
        self.flush_interval = flush_interval
        self.enabled = enabled and store is not None
        self.error_batch: List[Dict[str, Any]] = []
        self.metrics_batch: List[Dict[str, Any]] = []
        self.errors_written = 0
        self.metrics_written = 0
        self._timer_task = None

    async def log_error(self, identifier: str, error_type: str, message: str,
                        metadata: Optional[Dict[str, Any]] = None) -> None:
        """Queue an error record, flushing when the batch is full."""
        if not self.enabled:
            logger.error(f"Connection Error [{identifier}]: {error_type} - {message}")
            return

        self.error_batch.append({
            "identifier": identifier,
            "error_type": error_type,
            "error_message": message,
            "metadata": json.dumps(metadata or {}, default=str),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "user_agent": USER_AGENT_TAG,
        })
        if len(self.error_batch) >= self.batch_size:
            await self.flush_errors()

    async def record_metrics(self, records: List[Dict[str, Any]]) -> None:
        """Queue batch performance records, flushing when the batch is full."""
        if not records:
            return
        if not self.enabled:
            for record in records:
                logger.debug(f"Batch metrics: {record}")
            return
        self.metrics_batch.extend(records)
        if len(self.metrics_batch) >= self.batch_size:
            await self.flush_metrics()

    @trace_span("sink.flush_errors", tracer_name="sink")
    async def flush_errors(self) -> int:
        if not self.error_batch:
            return 0
        batch, self.error_batch = self.error_batch, []
        try:
            written = await self.store.execute("insert_error_records", records=batch)
            self.errors_written += written
            logger.debug(f"Flushed {written} error records")
            return written
        except Exception as e:
            logger.error(f"Failed to flush {len(batch)} error records: {e}")
            return 0

    @trace_span("sink.flush_metrics", tracer_name="sink")
    async def flush_metrics(self) -> int:
        if not self.metrics_batch:
            return 0
        batch, self.metrics_batch = self.metrics_batch, []
        try:
            written = await self.store.execute("insert_performance_metrics", records=batch)
            self.metrics_written += written
            logger.debug(f"Flushed {written} performance records")
            return written
        except Exception as e:
            logger.error(f"Failed to flush {len(batch)} performance records: {e}")
            return 0

    async def flush(self) -> None:
        await self.flush_errors()
        await self.flush_metrics()

    async def start(self) -> None:
        """Start the periodic flush timer."""
        if not self.enabled or self._timer_task is not None:
            return
        self._timer_task = create_task(self._flush_periodically())

    async def _flush_periodically(self) -> None:
        while True:
            try:
                await sleep(self.flush_interval)
                await self.flush()
            except CancelledError:
                break
            except Exception as e:
                logger.error(f"Unexpected error in periodic flush: {e}")

    async def close(self) -> None:
        """Stop the timer and write out anything still buffered."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except CancelledError:
                pass
            self._timer_task = None
        if self.enabled:
            await self.flush()
