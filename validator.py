#!/usr/bin/env python3
"""
Article validation and deduplication.

Validation enforces title length, link safety (shape, denylisted domains,
executable/archive extensions, reachability via HEAD) and emits warnings
for odd descriptions and dates. Every article gets a SHA-256 content hash
over its normalized title, description, link and publish day.

Deduplication runs three independent checks: exact hash match, exact link
match, and a fuzzy title/description comparison against recent candidates.
The first two drop the article; a fuzzy match only annotates it.
"""

from asyncio import TimeoutError as AsyncTimeoutError
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from hashlib import sha256
import html
import re
from time import monotonic
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse, urlunparse

from aiohttp import ClientError, ClientTimeout
from rapidfuzz.distance import Levenshtein

from config import config, get_logger
from errors import ErrorRecordType
from normalizer import Article
from telemetry import trace_span
from utils import truncate_string

logger = get_logger("validator")

MIN_TITLE_LENGTH = 3
MIN_DESCRIPTION_LENGTH = 10
MAX_ARTICLE_AGE_DAYS = 365
TITLE_WEIGHT = 0.7
DESCRIPTION_WEIGHT = 0.3
SIMILARITY_EPSILON = 1e-9
URL_CACHE_TTL = 3600.0
URL_CACHE_MAX_ENTRIES = 1000
CANDIDATE_TOKENS = 3
CANDIDATE_LIMIT = 20
LOOKUP_LIMIT = 5

URL_PATTERN = re.compile(
    r'^https?://(www\.)?[-a-zA-Z0-9@:%._+~#=]{1,256}\.[a-zA-Z0-9()]{1,6}\b([-a-zA-Z0-9()@:%_+.~#?&/=]*)$'
)
SUSPICIOUS_EXTENSION = re.compile(r'\.(exe|zip|rar|dmg|pkg|apk|bat|cmd|scr|vbs)$', re.IGNORECASE)
SOCIAL_MEDIA = re.compile(r'(^|\.)(facebook|twitter|instagram|tiktok|linkedin|youtube)\.com$', re.IGNORECASE)
BLACKLISTED_DOMAINS = (
    'bit.ly', 'tinyurl.com', 'goo.gl', 't.co', 'ow.ly',
    'spam.com', 'malware.com', 'phishing.com',
)

_TAGS = re.compile(r'<[^>]*>')
_PUNCTUATION = re.compile(r'[^\w\s]')
_WHITESPACE = re.compile(r'\s+')


@dataclass
class UrlValidation:
    valid: bool
    reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    hostname: Optional[str] = None


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str]
    warnings: List[str]
    content_hash: str
    url_validation: UrlValidation


@dataclass
class DuplicateCheckResult:
    exact_duplicates: List[Dict[str, Any]] = field(default_factory=list)
    url_duplicates: List[Dict[str, Any]] = field(default_factory=list)
    similar_articles: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        return bool(self.exact_duplicates or self.url_duplicates)

    @property
    def has_similar(self) -> bool:
        return bool(self.similar_articles)


@dataclass
class BatchValidationResult:
    valid_articles: List[Article] = field(default_factory=list)
    invalid_articles: List[Dict[str, Any]] = field(default_factory=list)
    duplicate_articles: List[Dict[str, Any]] = field(default_factory=list)
    processing_errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total": (len(self.valid_articles) + len(self.invalid_articles)
                      + len(self.duplicate_articles) + len(self.processing_errors)),
            "valid": len(self.valid_articles),
            "invalid": len(self.invalid_articles),
            "duplicates": len(self.duplicate_articles),
            "errors": len(self.processing_errors),
        }


def normalize_content(text: Optional[str]) -> str:
    """Lowercase, strip markup and punctuation, collapse whitespace."""
    if not text or not isinstance(text, str):
        return ''
    text = _TAGS.sub(' ', text)
    text = html.unescape(text)
    text = _PUNCTUATION.sub(' ', text)
    return _WHITESPACE.sub(' ', text).strip().lower()


def _publish_day(pub_date: Optional[str]) -> str:
    if not pub_date:
        return ''
    try:
        dt = datetime.fromisoformat(pub_date.replace('Z', '+00:00'))
    except ValueError:
        return ''
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.date().isoformat()


def generate_content_hash(article: Article) -> str:
    content = "|".join((
        normalize_content(article.title),
        normalize_content(article.description or ''),
        (article.link or '').lower().strip(),
        _publish_day(article.pub_date),
    ))
    return sha256(content.encode('utf-8')).hexdigest()


def _text_similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return Levenshtein.normalized_similarity(a, b)


def calculate_similarity(first: Any, second: Any) -> float:
    """Weighted title/description similarity in [0, 1].

    Accepts Articles or candidate rows (dicts with title/description).
    When neither side has a description the title similarity stands alone.
    """
    title_a = normalize_content(_field(first, 'title'))
    title_b = normalize_content(_field(second, 'title'))
    if not title_a or not title_b:
        return 0.0

    title_similarity = _text_similarity(title_a, title_b)
    desc_a = normalize_content(_field(first, 'description'))
    desc_b = normalize_content(_field(second, 'description'))
    if not desc_a and not desc_b:
        return title_similarity
    return title_similarity * TITLE_WEIGHT + _text_similarity(desc_a, desc_b) * DESCRIPTION_WEIGHT


def _url_cache_key(url: str) -> str:
    """Case-fold scheme and host only; path and query stay case-sensitive."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    return urlunparse(parsed._replace(scheme=parsed.scheme.lower(), netloc=parsed.netloc.lower()))

def _field(item: Any, name: str) -> Optional[str]:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


class ArticleValidator:
    """Validates articles and checks them against the store for duplicates.

    Articles accepted during the current run are remembered so duplicates
    inside one feed response, or across feeds in one run, are caught before
    anything is written.
    """

    def __init__(self, store=None, error_sink=None, session=None,
                 check_urls: Optional[bool] = None, url_timeout: Optional[float] = None,
                 similarity_threshold: Optional[float] = None, window_days: Optional[int] = None,
                 max_title_chars: Optional[int] = None, max_description_chars: Optional[int] = None,
                 clock: Callable[[], float] = monotonic):
        self.store = store
        self.error_sink = error_sink
        self.session = session
        self.check_urls = config.URL_CHECK_ENABLED if check_urls is None else check_urls
        self.url_timeout = url_timeout or config.URL_CHECK_TIMEOUT
        self.similarity_threshold = similarity_threshold or config.SIMILARITY_THRESHOLD
        self.window_days = window_days or config.SIMILARITY_WINDOW_DAYS
        self.max_title_chars = max_title_chars or config.MAX_TITLE_CHARS
        self.max_description_chars = max_description_chars or config.MAX_DESCRIPTION_CHARS
        self._clock = clock
        self._url_cache = OrderedDict()
        self._recent_hashes: Dict[str, Dict[str, Any]] = {}
        self._recent_links: Dict[str, Dict[str, Any]] = {}

    # URL checks

    async def validate_url(self, url: Optional[str]) -> UrlValidation:
        """Validate link shape and safety, caching the verdict for an hour."""
        if not url or not isinstance(url, str):
            return UrlValidation(False, 'URL is required and must be a string')

        key = _url_cache_key(url)
        cached = self._url_cache.get(key)
        if cached is not None:
            stored_at, result = cached
            if self._clock() - stored_at < URL_CACHE_TTL:
                return result
            del self._url_cache[key]

        result = await self._perform_url_validation(url)
        self._url_cache[key] = (self._clock(), result)
        while len(self._url_cache) > URL_CACHE_MAX_ENTRIES:
            self._url_cache.popitem(last=False)
        return result

    async def _perform_url_validation(self, url: str) -> UrlValidation:
        if not URL_PATTERN.match(url):
            return UrlValidation(False, 'Invalid URL format')

        parsed = urlparse(url)
        hostname = (parsed.hostname or '').lower()

        if any(hostname == domain or hostname.endswith('.' + domain) for domain in BLACKLISTED_DOMAINS):
            return UrlValidation(False, 'Blacklisted domain', hostname=hostname)

        if SUSPICIOUS_EXTENSION.search(parsed.path):
            return UrlValidation(False, 'Suspicious file extension', hostname=hostname)

        warnings = ['Social media link detected'] if SOCIAL_MEDIA.search(hostname) else []

        if self.check_urls and not await self._check_url_accessibility(url):
            return UrlValidation(False, 'URL not accessible', warnings, hostname)

        return UrlValidation(True, None, warnings, hostname)

    async def _check_url_accessibility(self, url: str) -> bool:
        if self.session is None:
            logger.debug("No HTTP session available; skipping reachability check")
            return True
        try:
            async with self.session.head(
                url,
                allow_redirects=True,
                timeout=ClientTimeout(total=self.url_timeout),
                headers={'User-Agent': config.USER_AGENT},
            ) as response:
                return 200 <= response.status < 300
        except (ClientError, AsyncTimeoutError, OSError) as e:
            logger.debug(f"HEAD {url} failed: {e}")
            return False

    # Content checks

    @trace_span("validator.validate", tracer_name="validator")
    async def validate(self, article: Article) -> ValidationResult:
        errors = []
        warnings = []

        if not article.title or not isinstance(article.title, str):
            errors.append('Title is required and must be a string')
        else:
            title_length = article.title_length or len(article.title.strip())
            if title_length < MIN_TITLE_LENGTH:
                errors.append(f"Title too short ({title_length} chars, minimum {MIN_TITLE_LENGTH})")
            if title_length > self.max_title_chars:
                errors.append(f"Title too long ({title_length} chars, maximum {self.max_title_chars})")

        url_validation = await self.validate_url(article.link)
        if not url_validation.valid:
            errors.append(f"Invalid URL: {url_validation.reason}")
        warnings.extend(url_validation.warnings)

        if article.description:
            desc_length = article.description_length or len(article.description.strip())
            if desc_length < MIN_DESCRIPTION_LENGTH:
                warnings.append(f"Description short ({desc_length} chars)")
            if desc_length > self.max_description_chars:
                warnings.append(f"Description long ({desc_length} chars)")

        warnings.extend(self._date_warnings(article.pub_date))

        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            content_hash=generate_content_hash(article),
            url_validation=url_validation,
        )

    def _date_warnings(self, pub_date: Optional[str]) -> List[str]:
        if not pub_date:
            return []
        try:
            published = datetime.fromisoformat(pub_date.replace('Z', '+00:00'))
        except ValueError:
            return ['Invalid publication date format']
        if published.tzinfo is None:
            published = published.replace(tzinfo=timezone.utc)
        now = datetime.now(timezone.utc)
        age_days = (now - published).total_seconds() / 86400
        if age_days > MAX_ARTICLE_AGE_DAYS:
            return [f"Article is {round(age_days)} days old"]
        if published > now:
            return ['Publication date is in the future']
        return []

    # Duplicate checks

    @trace_span("validator.check_duplicates", tracer_name="validator")
    async def check_duplicates(self, article: Article, content_hash: str) -> DuplicateCheckResult:
        """Run the hash, link and similarity checks; a failing check never blocks the others."""
        result = DuplicateCheckResult()

        try:
            if content_hash in self._recent_hashes:
                result.exact_duplicates.append(self._recent_hashes[content_hash])
            if self.store is not None:
                result.exact_duplicates.extend(
                    await self.store.execute('find_articles_by_hash', content_hash=content_hash, limit=LOOKUP_LIMIT)
                )
        except Exception as e:
            logger.warning(f"Hash-based duplicate check failed: {e}")
            result.errors.append(f"hash: {e}")

        try:
            if article.link in self._recent_links:
                result.url_duplicates.append(self._recent_links[article.link])
            if self.store is not None:
                result.url_duplicates.extend(
                    await self.store.execute('find_articles_by_link', link=article.link, limit=LOOKUP_LIMIT)
                )
        except Exception as e:
            logger.warning(f"URL-based duplicate check failed: {e}")
            result.errors.append(f"link: {e}")

        try:
            result.similar_articles = await self._find_similar_articles(article)
        except Exception as e:
            logger.warning(f"Similar articles search failed: {e}")
            result.errors.append(f"similarity: {e}")

        return result

    def candidate_tokens(self, title: str) -> List[str]:
        words = [word for word in normalize_content(title).split(' ') if len(word) > 3]
        return words[:CANDIDATE_TOKENS]

    async def _find_similar_articles(self, article: Article) -> List[Dict[str, Any]]:
        tokens = self.candidate_tokens(article.title)
        if not tokens:
            return []

        candidates = []
        if self.store is not None:
            since = (datetime.now(timezone.utc) - timedelta(days=self.window_days)).isoformat()
            candidates.extend(await self.store.execute(
                'query_recent_candidates', tokens=tokens, since=since, limit=CANDIDATE_LIMIT
            ))
        candidates.extend(
            recent for recent in self._recent_hashes.values()
            if any(token in normalize_content(recent.get('title')) for token in tokens)
        )

        similar = []
        seen = set()
        for candidate in candidates:
            key = candidate.get('content_hash') or candidate.get('link')
            if key in seen:
                continue
            seen.add(key)
            similarity = calculate_similarity(article, candidate)
            if similarity >= self.similarity_threshold - SIMILARITY_EPSILON:
                similar.append({**candidate, 'similarity': round(similarity, 4)})

        return sorted(similar, key=lambda c: c['similarity'], reverse=True)

    def remember(self, article: Article):
        """Record an accepted article for in-run duplicate detection."""
        entry = {
            'content_hash': article.content_hash,
            'title': article.title,
            'description': article.description,
            'link': article.link,
            'source': article.source,
        }
        self._recent_hashes[article.content_hash] = entry
        self._recent_links[article.link] = entry

    # Batch

    @trace_span(
        "validator.validate_batch",
        tracer_name="validator",
        attr_from_args=lambda self, articles, source: {"feed.name": source, "batch.size": len(articles)},
    )
    async def validate_batch(self, articles: List[Article], source: str) -> BatchValidationResult:
        """Validate and dedup each article independently."""
        result = BatchValidationResult()
        logger.info(f"Validating batch of {len(articles)} articles from {source}")

        for article in articles:
            try:
                validation = await self.validate(article)
                if not validation.valid:
                    result.invalid_articles.append({
                        'article': article,
                        'errors': validation.errors,
                        'warnings': validation.warnings,
                    })
                    await self._log_validation_error(article, validation, source)
                    continue

                duplicates = await self.check_duplicates(article, validation.content_hash)
                if duplicates.is_duplicate:
                    result.duplicate_articles.append({'article': article, 'duplicate_info': duplicates})
                    continue

                article.content_hash = validation.content_hash
                article.validation_warnings = validation.warnings
                article.similar_articles = duplicates.similar_articles
                self.remember(article)
                result.valid_articles.append(article)

            except Exception as e:
                title = getattr(article, 'title', None)
                logger.warning(f"Validation error for article \"{title}\": {e}")
                result.processing_errors.append({'article': article, 'error': str(e)})

        summary = result.summary
        logger.info(
            f"Validation complete for {source}: {summary['valid']} valid, {summary['invalid']} invalid, "
            f"{summary['duplicates']} duplicates, {summary['errors']} errors"
        )
        return result

    async def _log_validation_error(self, article: Article, validation: ValidationResult, source: str):
        if self.error_sink is None:
            return
        await self.error_sink.log_error(
            article.link or article.title or 'unknown',
            ErrorRecordType.VALIDATION_FAILED,
            "; ".join(validation.errors),
            {
                'source': source,
                'title': truncate_string(article.title or '', 200),
                'warnings': validation.warnings,
                'content_hash': validation.content_hash,
            },
        )

    def cleanup(self):
        self._url_cache.clear()
        self._recent_hashes.clear()
        self._recent_links.clear()
        logger.debug("Article validator caches cleared")
