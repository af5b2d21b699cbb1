#!/usr/bin/env python3
"""
Database models and operations for the ingestion pipeline.

The store is SQLite, owned by a single asyncio worker. Callers submit named
operations through `DatabaseQueue.execute()`; the worker runs them one at a
time against its connection, so no two operations ever interleave.

Articles are keyed by content hash: inserting an existing hash is ignored,
which makes the store, not the in-pipeline duplicate check, the consistency
boundary for exact duplicates.
"""

from os import path, access, R_OK
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from datetime import datetime, timezone
import json
from sqlite3 import connect, Row, Error
from uuid import uuid4
from typing import Any, Dict, List

from config import config, get_logger
from telemetry import trace_span

# Module-specific logger
logger = get_logger("models")

ARTICLE_COLUMNS = (
    "content_hash", "title", "link", "description", "pub_date", "author", "tags",
    "guid", "source", "category", "fetched_at", "validation_warnings", "similar_articles",
)
JSON_COLUMNS = ("tags", "validation_warnings", "similar_articles")
CANDIDATE_COLUMNS = "id, title, description, link, source, content_hash, created_at"
METRIC_COLUMNS = (
    "source", "batch_number", "articles_processed", "articles_failed", "processing_time_ms",
    "memory_before_mb", "memory_after_mb", "memory_delta_mb", "timestamp",
)


def initialize_database(conn) -> None:
    """Create any missing tables from the schema file."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='articles'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file())
        conn.commit()
    except Exception as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")

    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_dict(row) -> Dict[str, Any]:
    return {key: row[key] for key in row.keys()}


class DatabaseQueue:
    """A queue for database operations, executed by one worker task."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait until the schema is in place."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            self.running = False
            raise RuntimeError(f"Could not open database at {self.db_path}")
        logger.info("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release anyone still waiting on a result
        for event in self.events.values():
            event.set()
        self.events.clear()
        self.results.clear()

        logger.info("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")
        else:
            logger.info(f"Using existing database at {self.db_path}")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except Exception as e:
            logger.error(f"Failed to open database {self.db_path}: {e}")
            if self.conn:
                self.conn.close()
            self.conn = None
            return
        finally:
            self._ready.set()

        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith('_') or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.info("Database worker cancelled")
                break
            except Exception as e:
                logger.error(f"Unexpected error in database worker: {e}")

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation on the worker and return its result.

        Raises:
            RuntimeError: the worker is not running or the operation failed.
        """
        if not self.running:
            raise RuntimeError("Database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()

            result = self.results.pop(operation_id, None)
            if result is None:
                raise RuntimeError(f"Database worker stopped before {operation_name} completed")
            if "error" in result:
                raise RuntimeError(result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)

    # Article operations

    def upsert_articles(self, articles: List[Dict[str, Any]]) -> Dict[str, int]:
        """Insert articles, ignoring any whose content hash is already stored.

        Rows are written individually so one bad row is logged and counted
        without losing the others.
        """
        counts = {"inserted": 0, "skipped": 0, "failed": 0}
        cursor = self.conn.cursor()
        placeholders = ", ".join("?" for _ in ARTICLE_COLUMNS)
        sql = (
            f"INSERT INTO articles ({', '.join(ARTICLE_COLUMNS)}, created_at) "
            f"VALUES ({placeholders}, ?) ON CONFLICT(content_hash) DO NOTHING"
        )
        created_at = _now_iso()
        for article in articles:
            try:
                values = []
                for column in ARTICLE_COLUMNS:
                    value = article.get(column)
                    if column in JSON_COLUMNS:
                        value = json.dumps(value or [], default=str)
                    values.append(value)
                cursor.execute(sql, values + [created_at])
                if cursor.rowcount > 0:
                    counts["inserted"] += 1
                else:
                    counts["skipped"] += 1
            except (Error, TypeError, ValueError) as e:
                counts["failed"] += 1
                logger.error(f"Error inserting article {article.get('link')}: {e}")
        self.conn.commit()
        return counts

    def find_articles_by_hash(self, content_hash: str, limit: int = 5) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT id, title, link, source, content_hash, created_at FROM articles "
            "WHERE content_hash = ? LIMIT ?",
            (content_hash, limit),
        )
        return [_row_to_dict(row) for row in cursor.fetchall()]

    def find_articles_by_link(self, link: str, limit: int = 5) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT id, title, link, source, content_hash, created_at FROM articles "
            "WHERE link = ? LIMIT ?",
            (link, limit),
        )
        return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_recent_candidates(self, tokens: List[str], since: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Articles stored since `since` whose title contains any of `tokens`."""
        if not tokens:
            return []
        token_clause = " OR ".join("LOWER(title) LIKE ?" for _ in tokens)
        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT {CANDIDATE_COLUMNS} FROM articles "
            f"WHERE created_at >= ? AND ({token_clause}) "
            f"ORDER BY created_at DESC LIMIT ?",
            [since] + [f"%{token.lower()}%" for token in tokens] + [limit],
        )
        return [_row_to_dict(row) for row in cursor.fetchall()]

    def count_articles(self) -> int:
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM articles")
        return cursor.fetchone()[0]

    def list_recent_articles(self, limit: int = 20) -> List[Dict[str, Any]]:
        cursor = self.conn.cursor()
        cursor.execute(
            "SELECT id, title, link, source, category, pub_date, created_at FROM articles "
            "ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [_row_to_dict(row) for row in cursor.fetchall()]

    # Error and metrics operations

    def insert_error_records(self, records: List[Dict[str, Any]]) -> int:
        cursor = self.conn.cursor()
        cursor.executemany(
            "INSERT INTO error_log (identifier, error_type, error_message, metadata, timestamp, user_agent) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (
                    r.get("identifier"), r.get("error_type"), r.get("error_message"),
                    r.get("metadata"), r.get("timestamp") or _now_iso(), r.get("user_agent"),
                )
                for r in records
            ],
        )
        self.conn.commit()
        return len(records)

    def insert_performance_metrics(self, records: List[Dict[str, Any]]) -> int:
        cursor = self.conn.cursor()
        cursor.executemany(
            f"INSERT INTO performance_metrics ({', '.join(METRIC_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in METRIC_COLUMNS)})",
            [
                tuple(r.get(column) if column != "timestamp" else (r.get(column) or _now_iso())
                      for column in METRIC_COLUMNS)
                for r in records
            ],
        )
        self.conn.commit()
        return len(records)

    def count_errors_by_type(self) -> Dict[str, int]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT error_type, COUNT(*) AS n FROM error_log GROUP BY error_type")
        return {row["error_type"]: row["n"] for row in cursor.fetchall()}
