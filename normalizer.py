#!/usr/bin/env python3
"""
Article normalization: feed entries to canonical article records.

Entries are feedparser entries (or plain dicts shaped like them). Markup and
entities are stripped from title and description, whitespace collapsed,
lengths clamped, the publish date parsed into ISO-8601 UTC and up to five
category tags extracted. Entries without a title or a link after cleaning
are dropped silently.
"""

from calendar import timegm
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import re
from typing import Any, Callable, Dict, List, Optional

import feedparser

from config import config, get_logger
from registry import FeedConfig
from utils import clean_text

logger = get_logger("normalizer")

MAX_TAGS = 5
DEFAULT_CATEGORY = "General"


@dataclass
class Article:
    """Canonical article record.

    `title_length` and `description_length` are the cleaned lengths before
    truncation; the validator checks them so overlong fields are still
    rejected or flagged.
    """

    title: str
    link: str
    description: str = ""
    pub_date: str = ""
    author: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    guid: Optional[str] = None
    title_length: int = 0
    description_length: int = 0
    source: Optional[str] = None
    category: str = DEFAULT_CATEGORY
    fetched_at: Optional[str] = None
    content_hash: Optional[str] = None
    validation_warnings: List[str] = field(default_factory=list)
    similar_articles: List[Dict[str, Any]] = field(default_factory=list)

    def to_record(self) -> Dict[str, Any]:
        """Flatten into the row shape written by the store."""
        record = asdict(self)
        record.pop("title_length", None)
        record.pop("description_length", None)
        return record


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ArticleNormalizer:
    """Converts raw feed entries into Article records."""

    def __init__(self, max_title_chars: Optional[int] = None, max_description_chars: Optional[int] = None,
                 now: Callable[[], datetime] = _utcnow):
        self.max_title_chars = max_title_chars or config.MAX_TITLE_CHARS
        self.max_description_chars = max_description_chars or config.MAX_DESCRIPTION_CHARS
        self._now = now

    def normalize(self, entry: Any, feed: FeedConfig) -> Optional[Article]:
        """Return a canonical Article, or None when title or link is missing."""
        try:
            title = clean_text(self._get_entry_value(entry, 'title'))
            link = (self._get_entry_value(entry, 'link') or self._get_entry_value(entry, 'id') or '').strip()
            if not title or not link:
                return None

            description = clean_text(self._extract_description(entry))
            author = clean_text(self._get_entry_value(entry, 'author') or self._get_entry_value(entry, 'creator')) or None
            guid = (self._get_entry_value(entry, 'id') or link).strip()

            return Article(
                title=title[:self.max_title_chars],
                link=link,
                description=description[:self.max_description_chars],
                pub_date=self.parse_date(entry).isoformat(),
                author=author,
                tags=self.extract_tags(entry),
                guid=guid,
                title_length=len(title),
                description_length=len(description),
                source=feed.name,
                category=feed.category or DEFAULT_CATEGORY,
            )
        except Exception as e:
            logger.warning(f"Failed to normalize article from {feed.name}: {e}")
            return None

    def _extract_description(self, entry) -> str:
        content = self._get_entry_value(entry, 'content')
        if isinstance(content, list):
            for item in content:
                value = item.get('value') if isinstance(item, dict) else None
                if value:
                    return value
        for name in ('summary', 'description'):
            value = self._get_entry_value(entry, name)
            if value:
                return value
        return ''

    def extract_tags(self, entry) -> List[str]:
        """Collect up to five distinct category terms, in feed order."""
        raw = []
        tags = self._get_entry_value(entry, 'tags')
        if isinstance(tags, list):
            for tag in tags:
                raw.append(tag.get('term') or tag.get('label') if isinstance(tag, dict) else tag)
        for name in ('categories', 'category'):
            value = self._get_entry_value(entry, name)
            if isinstance(value, (list, tuple)):
                raw.extend(value)
            elif value:
                raw.append(value)

        result = []
        for value in raw:
            term = clean_text(value if isinstance(value, str) else None)
            if term and term not in result:
                result.append(term)
            if len(result) >= MAX_TAGS:
                break
        return result

    def parse_date(self, entry) -> datetime:
        """Parse the publication date, defaulting to now when nothing parses."""
        for name in ('published', 'updated', 'pubDate', 'isoDate', 'created', 'date'):
            parsed = self._date_value_to_datetime(self._get_entry_value(entry, f"{name}_parsed"))
            if parsed:
                return parsed
            parsed = self._date_value_to_datetime(self._get_entry_value(entry, name))
            if parsed:
                return parsed

        # Fall back to a date embedded in the guid/link path
        identifier = self._get_entry_value(entry, 'id') or self._get_entry_value(entry, 'link')
        if isinstance(identifier, str):
            match = re.search(r'(\d{4})[-/](\d{2})[-/](\d{2})', identifier)
            if match:
                try:
                    year, month, day = map(int, match.groups())
                    if 1900 <= year <= 2100:
                        return datetime(year, month, day, tzinfo=timezone.utc)
                except ValueError as e:
                    logger.debug(f"Ignoring date-like fragment in '{identifier}': {e}")

        return self._now()

    def _get_entry_value(self, entry, name: str) -> Any:
        """Safely fetch feedparser entry fields with attribute or dict access."""
        if entry is None:
            return None
        getter = getattr(entry, 'get', None)
        if callable(getter):
            value = getter(name)
            if value is not None:
                return value
        return getattr(entry, name, None)

    def _date_value_to_datetime(self, value: Any) -> Optional[datetime]:
        if value in (None, ''):
            return None

        if isinstance(value, datetime):
            return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)

        if isinstance(value, (tuple, list)) or hasattr(value, 'tm_year'):
            # feedparser's *_parsed structs are already UTC
            try:
                return datetime.fromtimestamp(timegm(tuple(value)[:9]), tz=timezone.utc)
            except (OverflowError, ValueError, OSError, TypeError):
                return None

        if isinstance(value, str):
            return self._parse_date_string(value.strip())

        return None

    def _parse_date_string(self, date_str: str) -> Optional[datetime]:
        try:
            dt = parsedate_to_datetime(date_str)
            if dt:
                return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)
        except (TypeError, ValueError, OverflowError, IndexError):
            pass

        try:
            dt = datetime.fromisoformat(date_str.replace('Z', '+00:00'))
            return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt.astimezone(timezone.utc)
        except ValueError:
            pass

        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
        except (ValueError, TypeError, AttributeError, OverflowError, OSError):
            return None
        return None
