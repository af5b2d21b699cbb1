#!/usr/bin/env python3
"""
Feed registry: loads feed definitions and pipeline policy from feeds.yaml.

The document is read once per process. Any schema violation raises
ConfigError; insecure feed URLs are upgraded to HTTPS with a warning when
enforcement is enabled.

Example feeds.yaml:

    policy:
      enforce_https: true
      allowed_domains: []
      dns:
        cache_ttl_seconds: 300
        failure_ttl_seconds: 60
      rate_limit:
        requests_per_minute: 10
        max_consecutive_failures: 5
        pause_duration_seconds: 60
      error_logging:
        batch_size: 10
        flush_interval_seconds: 30
    feeds:
      aljazeera:
        url: https://www.aljazeera.com/xml/rss/all.xml
        fallback_urls:
          - https://aljazeera.com/xml/rss/all.xml
        category: Middle East
        retry:
          max_retries: 3
          base_delay: 1.0
          max_delay: 30.0
"""

from dataclasses import dataclass, field, replace
from os import path, access, R_OK
from typing import Annotated, Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse, urlunparse

import yaml
from pydantic import (
    BaseModel, BeforeValidator, ConfigDict, Field, HttpUrl, StrictBool, StrictInt,
    ValidationError, field_validator,
)

from config import config, get_logger
from errors import ConfigError

logger = get_logger("registry")


def _reject_bool(value: Any) -> Any:
    # YAML `yes`/`no` load as bools, which pydantic would coerce to 1/0
    if isinstance(value, bool):
        raise ValueError("must be a number, not a boolean")
    return value


def _none_as_empty(value: Any) -> Any:
    return {} if value is None else value


def _none_as_list(value: Any) -> Any:
    return [] if value is None else value


Seconds = Annotated[float, BeforeValidator(_reject_bool), Field(gt=0)]
Section = BeforeValidator(_none_as_empty)


class RetryPolicy(BaseModel):
    """Per-feed retry policy. Delays are in seconds."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    max_retries: StrictInt = Field(3, ge=0)
    base_delay: Seconds = 1.0
    max_delay: Seconds = 30.0


class DnsSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra='forbid')

    cache_ttl_seconds: Seconds = 300.0
    failure_ttl_seconds: Seconds = 60.0
    timeout_seconds: Seconds = 5.0


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra='forbid')

    requests_per_minute: StrictInt = Field(10, gt=0)
    max_consecutive_failures: StrictInt = Field(5, gt=0)
    pause_duration_seconds: Seconds = 60.0


class ErrorLoggingSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra='forbid')

    enabled: StrictBool = True
    batch_size: StrictInt = Field(10, gt=0)
    flush_interval_seconds: Seconds = 30.0


class FeedPolicy(BaseModel):
    """Global pipeline policy from the `policy` section of feeds.yaml."""

    model_config = ConfigDict(frozen=True, extra='forbid')

    enforce_https: StrictBool = True
    allowed_domains: Annotated[Tuple[str, ...], BeforeValidator(_none_as_list)] = ()
    dns: Annotated[DnsSettings, Section] = Field(default_factory=DnsSettings)
    rate_limit: Annotated[RateLimitSettings, Section] = Field(default_factory=RateLimitSettings)
    error_logging: Annotated[ErrorLoggingSettings, Section] = Field(default_factory=ErrorLoggingSettings)

    @field_validator('allowed_domains')
    @classmethod
    def normalize_domains(cls, domains: Tuple[str, ...]) -> Tuple[str, ...]:
        cleaned = tuple(d.strip().lower() for d in domains)
        if not all(cleaned):
            raise ValueError("allowed_domains must not contain blank hostnames")
        return cleaned

    @property
    def dns_cache_ttl(self) -> float:
        return self.dns.cache_ttl_seconds

    @property
    def dns_failure_ttl(self) -> float:
        return self.dns.failure_ttl_seconds

    @property
    def dns_timeout(self) -> float:
        return self.dns.timeout_seconds

    @property
    def requests_per_minute(self) -> int:
        return self.rate_limit.requests_per_minute

    @property
    def max_consecutive_failures(self) -> int:
        return self.rate_limit.max_consecutive_failures

    @property
    def pause_duration(self) -> float:
        return self.rate_limit.pause_duration_seconds

    @property
    def error_logging_enabled(self) -> bool:
        return self.error_logging.enabled

    @property
    def error_batch_size(self) -> int:
        return self.error_logging.batch_size

    @property
    def error_flush_interval(self) -> float:
        return self.error_logging.flush_interval_seconds


class FeedSettings(BaseModel):
    """One entry under `feeds:` as written in the document."""

    model_config = ConfigDict(extra='forbid')

    url: HttpUrl
    fallback_urls: Annotated[List[HttpUrl], BeforeValidator(_none_as_list)] = []
    category: Optional[str] = None
    enabled: StrictBool = True
    timeout: Optional[Seconds] = None
    retry: Annotated[RetryPolicy, Section] = Field(default_factory=RetryPolicy)


class FeedsDocument(BaseModel):
    """Top level of feeds.yaml. Feed order follows the document."""

    model_config = ConfigDict(extra='ignore')

    policy: Annotated[FeedPolicy, Section] = Field(default_factory=FeedPolicy)
    feeds: Dict[str, FeedSettings] = Field(min_length=1)
    schedule: Any = None

    @field_validator('feeds')
    @classmethod
    def feed_names_not_blank(cls, feeds: Dict[str, FeedSettings]) -> Dict[str, FeedSettings]:
        if any(not name.strip() for name in feeds):
            raise ValueError("feed names must be non-empty")
        return feeds


@dataclass(frozen=True)
class FeedConfig:
    """A configured feed. Immutable for the lifetime of a run."""

    name: str
    url: str
    fallback_urls: Tuple[str, ...] = ()
    category: Optional[str] = None
    enabled: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout: Optional[float] = None

    @property
    def candidate_urls(self) -> Tuple[str, ...]:
        return (self.url,) + tuple(self.fallback_urls)

    @classmethod
    def from_settings(cls, name: str, settings: FeedSettings) -> 'FeedConfig':
        return cls(
            name=name.strip(),
            url=str(settings.url),
            fallback_urls=tuple(str(u) for u in settings.fallback_urls),
            category=settings.category,
            enabled=settings.enabled,
            retry=settings.retry,
            timeout=settings.timeout,
        )


@dataclass(frozen=True)
class ResolvedFeed:
    """A feed plus the URL currently selected as reachable."""

    feed: FeedConfig
    active_url: Optional[str]
    failed: bool = False

    @property
    def name(self) -> str:
        return self.feed.name

    @property
    def retry(self) -> RetryPolicy:
        return self.feed.retry


def _format_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in e['loc']) or 'document'}: {e['msg']}" for e in error.errors()
    )


def _upgrade_to_https(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme != 'http':
        return url
    return urlunparse(parsed._replace(scheme='https'))


class FeedRegistry:
    """Loads and holds the feed list and global policy."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or config.FEEDS_CONFIG_PATH
        self.feeds: List[FeedConfig] = []
        self.policy = FeedPolicy()
        self.schedule: Any = None
        self._loaded = False

    def load_feeds(self) -> List[FeedConfig]:
        """Load, validate and return all configured feeds in document order.

        Raises:
            ConfigError: document missing/unreadable/malformed, or a feed host
                is outside a configured domain allow-list.
        """
        raw = self._read_document()
        try:
            document = FeedsDocument.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid feeds configuration {self.config_path}: {_format_validation_error(e)}") from e

        self.policy = document.policy
        self.schedule = document.schedule
        feeds = [FeedConfig.from_settings(name, settings) for name, settings in document.feeds.items()]

        if self.policy.enforce_https:
            feeds = [self._enforce_https(feed) for feed in feeds]

        if self.policy.allowed_domains:
            self._validate_feed_domains(feeds)

        self.feeds = feeds
        self._loaded = True
        logger.info(f"Loaded {len(feeds)} feeds ({len(self.enabled_feeds())} enabled) from {self.config_path}")
        return list(feeds)

    def enabled_feeds(self) -> List[FeedConfig]:
        return [feed for feed in self.feeds if feed.enabled]

    def get_feed(self, name: str) -> Optional[FeedConfig]:
        for feed in self.feeds:
            if feed.name == name:
                return feed
        return None

    @property
    def loaded(self) -> bool:
        return self._loaded

    def _read_document(self) -> Dict[str, Any]:
        file_path = self.config_path
        if not path.isfile(file_path):
            raise ConfigError(f"Feeds configuration file not found at {file_path}")
        if not access(file_path, R_OK):
            raise ConfigError(f"No read permission for feeds configuration at {file_path}")
        max_size = config.FEEDS_FILE_SIZE_LIMIT_MB * 1024 * 1024
        size = path.getsize(file_path)
        if size > max_size:
            raise ConfigError(f"Feeds configuration too large: {size} bytes (limit: {max_size} bytes)")
        try:
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing YAML in {file_path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Error reading {file_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Feeds configuration {file_path} must be a YAML mapping at the top level")
        return data



    def _enforce_https(self, feed: FeedConfig) -> FeedConfig:
        url = _upgrade_to_https(feed.url)
        fallbacks = tuple(_upgrade_to_https(u) for u in feed.fallback_urls)
        if url != feed.url or fallbacks != feed.fallback_urls:
            logger.warning(f"Enforced HTTPS for feed: {feed.name}")
            return replace(feed, url=url, fallback_urls=fallbacks)
        return feed

    def _validate_feed_domains(self, feeds: List[FeedConfig]) -> None:
        allowed = set(self.policy.allowed_domains)
        invalid = []
        for feed in feeds:
            for url in feed.candidate_urls:
                host = (urlparse(url).hostname or '').lower()
                if host not in allowed:
                    invalid.append(host)
        if invalid:
            raise ConfigError(f"Feeds contain disallowed domains: {', '.join(sorted(set(invalid)))}")
