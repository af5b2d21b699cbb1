import logging

import pytest

from errors import ConfigError
from registry import FeedRegistry, RetryPolicy


VALID_FEEDS = """
policy:
  rate_limit:
    requests_per_minute: 20
  dns:
    cache_ttl_seconds: 120
feeds:
  aljazeera:
    url: https://www.aljazeera.com/xml/rss/all.xml
    fallback_urls:
      - https://aljazeera.com/xml/rss/all.xml
    category: Middle East
    retry:
      max_retries: 2
      base_delay: 0.5
  guardian:
    url: https://www.theguardian.com/world/rss
    enabled: false
schedule:
  - "06:30"
"""


def test_load_feeds_parses_feeds_and_policy(write_feeds):
    registry = FeedRegistry(write_feeds(VALID_FEEDS))

    feeds = registry.load_feeds()

    assert [f.name for f in feeds] == ["aljazeera", "guardian"]
    first = feeds[0]
    assert first.candidate_urls == (
        "https://www.aljazeera.com/xml/rss/all.xml",
        "https://aljazeera.com/xml/rss/all.xml",
    )
    assert first.category == "Middle East"
    assert first.retry == RetryPolicy(max_retries=2, base_delay=0.5, max_delay=30.0)
    assert registry.policy.requests_per_minute == 20
    assert registry.policy.dns_cache_ttl == 120
    assert registry.policy.max_consecutive_failures == 5
    assert [f.name for f in registry.enabled_feeds()] == ["aljazeera"]
    assert registry.get_feed("guardian").enabled is False
    assert registry.schedule == ["06:30"]
    assert registry.loaded


def test_http_urls_upgraded_with_warning(write_feeds, caplog):
    registry = FeedRegistry(write_feeds("""
feeds:
  plain:
    url: http://example.com/rss
    fallback_urls: [http://mirror.example.com/rss]
"""))

    with caplog.at_level(logging.WARNING):
        feeds = registry.load_feeds()

    assert feeds[0].url == "https://example.com/rss"
    assert feeds[0].fallback_urls == ("https://mirror.example.com/rss",)
    assert "Enforced HTTPS for feed: plain" in caplog.text


def test_https_enforcement_can_be_disabled(write_feeds):
    registry = FeedRegistry(write_feeds("""
policy:
  enforce_https: false
feeds:
  plain:
    url: http://example.com/rss
"""))

    assert registry.load_feeds()[0].url == "http://example.com/rss"


def test_disallowed_domain_is_fatal(write_feeds):
    registry = FeedRegistry(write_feeds("""
policy:
  allowed_domains: [example.com]
feeds:
  ok:
    url: https://example.com/rss
  rogue:
    url: https://rogue.example.net/rss
"""))

    with pytest.raises(ConfigError) as exc:
        registry.load_feeds()
    assert "rogue.example.net" in str(exc.value)


def test_disallowed_fallback_domain_is_fatal(write_feeds):
    registry = FeedRegistry(write_feeds("""
policy:
  allowed_domains: [example.com]
feeds:
  ok:
    url: https://example.com/rss
    fallback_urls: [https://elsewhere.org/rss]
"""))

    with pytest.raises(ConfigError):
        registry.load_feeds()


@pytest.mark.parametrize("document", [
    "feeds: [not, a, mapping]",
    "feeds: {}",
    "feeds:\n  bad:\n    url: not-a-url\n",
    "feeds:\n  bad:\n    url: https://example.com/rss\n    retry:\n      max_retries: -1\n",
    "feeds:\n  bad:\n    url: https://example.com/rss\n    enabled: maybe\n",
    "policy:\n  rate_limit:\n    requests_per_minute: yes\nfeeds:\n  a:\n    url: https://example.com/rss\n",
    "- just\n- a list\n",
    "feeds: {a: [unclosed\n",
    "feeds:\n  a:\n    url: https://example.com/rss\n    retries: 3\n",
    "policy:\n  dns:\n    cache_ttl_seconds: 0\nfeeds:\n  a:\n    url: https://example.com/rss\n",
])
def test_malformed_documents_raise_config_error(write_feeds, document):
    registry = FeedRegistry(write_feeds(document))

    with pytest.raises(ConfigError):
        registry.load_feeds()


def test_missing_file_raises_config_error(tmp_path):
    registry = FeedRegistry(str(tmp_path / "nope.yaml"))

    with pytest.raises(ConfigError):
        registry.load_feeds()


def test_zero_retries_allowed(write_feeds):
    registry = FeedRegistry(write_feeds("""
feeds:
  once:
    url: https://example.com/rss
    retry:
      max_retries: 0
"""))

    assert registry.load_feeds()[0].retry.max_retries == 0


def test_schema_errors_name_the_offending_field(write_feeds):
    registry = FeedRegistry(write_feeds("""
feeds:
  wire:
    url: https://example.com/rss
    retry:
      base_delay: soon
"""))

    with pytest.raises(ConfigError) as exc:
        registry.load_feeds()
    assert "feeds.wire.retry.base_delay" in str(exc.value)


def test_empty_sections_fall_back_to_defaults(write_feeds):
    registry = FeedRegistry(write_feeds("""
policy:
  dns:
feeds:
  wire:
    url: https://example.com/rss
    fallback_urls:
    retry:
"""))

    feeds = registry.load_feeds()

    assert feeds[0].fallback_urls == ()
    assert feeds[0].retry == RetryPolicy()
    assert registry.policy.dns_cache_ttl == 300
