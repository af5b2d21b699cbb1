from datetime import datetime, timezone

import feedparser

from normalizer import ArticleNormalizer
from registry import FeedConfig

FEED = FeedConfig(name="wire", url="https://example.com/rss", category="World")
FIXED_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_normalizer(**kwargs):
    return ArticleNormalizer(now=lambda: FIXED_NOW, **kwargs)


def test_normalize_cleans_markup_and_sets_provenance():
    entry = feedparser.FeedParserDict({
        'title': '  <b>Ceasefire</b> talks &amp; aid  ',
        'link': 'https://example.com/a/1',
        'id': 'urn:wire:1',
        'summary': '<p>Negotiators met   in Cairo.</p>',
        'author': 'Desk',
        'published': 'Mon, 02 Mar 2026 08:30:00 GMT',
        'tags': [{'term': 'Politics'}, {'term': 'Aid'}, {'term': 'Politics'}],
    })

    article = make_normalizer().normalize(entry, FEED)

    assert article.title == "Ceasefire talks & aid"
    assert article.description == "Negotiators met in Cairo."
    assert article.link == "https://example.com/a/1"
    assert article.guid == "urn:wire:1"
    assert article.author == "Desk"
    assert article.pub_date == "2026-03-02T08:30:00+00:00"
    assert article.tags == ["Politics", "Aid"]
    assert article.source == "wire"
    assert article.category == "World"


def test_entries_without_title_or_link_are_dropped():
    normalizer = make_normalizer()

    assert normalizer.normalize({'title': '', 'link': 'https://example.com/x'}, FEED) is None
    assert normalizer.normalize({'title': '<br/>', 'link': 'https://example.com/x'}, FEED) is None
    assert normalizer.normalize({'title': 'Headline'}, FEED) is None


def test_link_falls_back_to_id():
    article = make_normalizer().normalize({'title': 'Headline', 'id': 'https://example.com/by-id'}, FEED)

    assert article.link == "https://example.com/by-id"


def test_long_fields_truncated_but_original_lengths_kept():
    entry = {'title': 'x' * 501, 'link': 'https://example.com/long', 'description': 'd' * 3000}

    article = make_normalizer(max_title_chars=500, max_description_chars=2000).normalize(entry, FEED)

    assert len(article.title) == 500
    assert article.title_length == 501
    assert len(article.description) == 2000
    assert article.description_length == 3000


def test_content_preferred_over_summary():
    entry = {
        'title': 'Headline',
        'link': 'https://example.com/c',
        'content': [{'value': '<div>Full body text</div>'}],
        'summary': 'Short summary',
    }

    assert make_normalizer().normalize(entry, FEED).description == "Full body text"


def test_category_defaults_to_general():
    feed = FeedConfig(name="misc", url="https://example.com/rss")

    article = make_normalizer().normalize({'title': 'Headline', 'link': 'https://example.com/d'}, feed)

    assert article.category == "General"
    assert "title_length" not in article.to_record()


def test_parse_date_variants():
    normalizer = make_normalizer()

    iso = normalizer.parse_date({'updated': '2026-01-05T10:00:00Z'})
    assert iso == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    parsed_struct = normalizer.parse_date({'published_parsed': (2025, 12, 24, 18, 0, 0, 2, 358, 0)})
    assert parsed_struct == datetime(2025, 12, 24, 18, 0, tzinfo=timezone.utc)

    offset = normalizer.parse_date({'published': 'Tue, 03 Feb 2026 10:00:00 +0200'})
    assert offset == datetime(2026, 2, 3, 8, 0, tzinfo=timezone.utc)

    from_link = normalizer.parse_date({'link': 'https://example.com/2025/11/09/story'})
    assert from_link == datetime(2025, 11, 9, tzinfo=timezone.utc)

    assert normalizer.parse_date({'published': 'not a date'}) == FIXED_NOW
