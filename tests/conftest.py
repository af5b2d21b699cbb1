import os

# Keep tests offline and quiet before any pipeline module is imported
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ.setdefault("LOG_TIMESTAMPS", "false")
os.environ.setdefault("URL_CHECK_ENABLED", "false")

import pytest


class FakeSink:
    """Collects error and metrics records in memory."""

    def __init__(self):
        self.errors = []
        self.metrics = []

    async def log_error(self, identifier, error_type, message, metadata=None):
        self.errors.append({
            "identifier": identifier,
            "error_type": error_type,
            "message": message,
            "metadata": metadata or {},
        })

    async def record_metrics(self, records):
        self.metrics.extend(records)

    def types(self):
        return [record["error_type"] for record in self.errors]


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSleep:
    def __init__(self, clock=None):
        self.calls = []
        self.clock = clock

    async def __call__(self, seconds):
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


@pytest.fixture
def fake_sink():
    return FakeSink()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def write_feeds(tmp_path):
    """Write a feeds.yaml into tmp_path and return its path."""

    def _write(text: str) -> str:
        feeds_path = tmp_path / "feeds.yaml"
        feeds_path.write_text(text)
        return str(feeds_path)

    return _write
