from datetime import datetime, timedelta, timezone

import pytest
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

from errors import ErrorRecordType
from normalizer import Article
from validator import (
    ArticleValidator,
    calculate_similarity,
    generate_content_hash,
    normalize_content,
)

TODAY = datetime.now(timezone.utc).replace(hour=9, minute=0, second=0, microsecond=0)


def make_article(title="Strike hits Gaza hospital", link="https://example.com/news/1",
                 description="Dozens reported injured after an overnight strike.", pub_date=None, **kwargs):
    return Article(
        title=title,
        link=link,
        description=description,
        pub_date=pub_date or TODAY.isoformat(),
        title_length=kwargs.pop("title_length", len(title)),
        source=kwargs.pop("source", "wire"),
        **kwargs,
    )


class FakeStore:
    def __init__(self, candidates=(), failing=()):
        self.candidates = list(candidates)
        self.failing = set(failing)
        self.calls = []

    async def execute(self, operation_name, **params):
        self.calls.append(operation_name)
        if operation_name in self.failing:
            raise RuntimeError(f"{operation_name} unavailable")
        if operation_name == "query_recent_candidates":
            return list(self.candidates)
        return []


def make_validator(**kwargs):
    kwargs.setdefault("check_urls", False)
    kwargs.setdefault("similarity_threshold", 0.85)
    return ArticleValidator(**kwargs)


def test_normalize_content_strips_markup_punctuation_and_case():
    assert normalize_content("<b>Strike</b> hits Gaza&nbsp;Hospital.") == "strike hits gaza hospital"
    assert normalize_content(None) == ""


def test_hash_ignores_markup_case_and_time_of_day_but_tracks_link():
    first = make_article(title="Strike hits Gaza hospital")
    second = make_article(title="Strike hits Gaza Hospital.", pub_date=(TODAY + timedelta(hours=5)).isoformat())
    other_day = make_article(pub_date=(TODAY - timedelta(days=1)).isoformat())
    moved = make_article(link="https://example.com/news/2")
    marked_up = make_article(title="<b>Strike</b> hits Gaza hospital",
                             description="<p>Dozens reported injured after an overnight strike.</p>")

    assert generate_content_hash(first) == generate_content_hash(second)
    assert generate_content_hash(first) != generate_content_hash(other_day)
    assert generate_content_hash(first) != generate_content_hash(moved)
    assert generate_content_hash(first) == generate_content_hash(marked_up)
    assert len(generate_content_hash(first)) == 64


@pytest.mark.asyncio
async def test_punctuation_variant_is_exact_duplicate_not_similar():
    validator = make_validator()
    first = make_article(title="Strike hits Gaza hospital")
    second = make_article(title="Strike hits Gaza Hospital.")

    result = await validator.validate_batch([first, second], "wire")

    assert result.valid_articles == [first]
    assert len(result.duplicate_articles) == 1
    info = result.duplicate_articles[0]["duplicate_info"]
    assert info.is_duplicate
    assert info.exact_duplicates and info.url_duplicates
    assert result.summary == {"total": 2, "valid": 1, "invalid": 0, "duplicates": 1, "errors": 0}


@pytest.mark.asyncio
async def test_title_length_bounds(fake_sink):
    validator = make_validator(error_sink=fake_sink)
    short = make_article(title="Hi", link="https://example.com/short")
    long = make_article(title="x" * 500, link="https://example.com/long", title_length=501)

    result = await validator.validate_batch([short, long], "wire")

    assert result.summary["invalid"] == 2
    short_errors, long_errors = (entry["errors"] for entry in result.invalid_articles)
    assert any("minimum 3" in error for error in short_errors)
    assert any("maximum 500" in error for error in long_errors)
    assert fake_sink.types() == [ErrorRecordType.VALIDATION_FAILED] * 2


@pytest.mark.asyncio
async def test_unsafe_links_rejected():
    validator = make_validator()

    assert not (await validator.validate_url("https://bit.ly/3xYz")).valid
    assert (await validator.validate_url("https://news.t.co/item")).reason == "Blacklisted domain"
    assert (await validator.validate_url("https://example.com/setup.exe")).reason == "Suspicious file extension"
    assert not (await validator.validate_url("ftp://example.com/file")).valid
    assert not (await validator.validate_url(None)).valid


@pytest.mark.asyncio
async def test_lookalike_hosts_not_blacklisted():
    validator = make_validator()

    result = await validator.validate_url("https://www.microsoft.com/en-us/news")

    assert result.valid


@pytest.mark.asyncio
async def test_social_links_warn_only():
    validator = make_validator()

    validation = await validator.validate(make_article(link="https://www.facebook.com/page/posts/1"))

    assert validation.valid
    assert "Social media link detected" in validation.warnings


@pytest.mark.asyncio
async def test_short_description_and_old_date_warn():
    validator = make_validator()
    article = make_article(description="Brief", pub_date=(TODAY - timedelta(days=400)).isoformat())

    validation = await validator.validate(article)

    assert validation.valid
    assert "Description short (5 chars)" in validation.warnings
    assert any(w.startswith("Article is") for w in validation.warnings)


@pytest.mark.parametrize("candidate_title, expected_similar", [
    ("xyzdefghij klmnopqrs", True),
    ("xyzwefghij klmnopqrs", False),
])
@pytest.mark.asyncio
async def test_similarity_threshold_boundary(candidate_title, expected_similar):
    # 20-character titles: 3 substitutions score exactly 0.85, 4 score 0.80
    candidate = {"title": candidate_title, "description": None, "link": "https://other.example/1",
                 "content_hash": "abc"}
    validator = make_validator(store=FakeStore(candidates=[candidate]))
    article = make_article(title="abcdefghij klmnopqrs", description="")

    result = await validator.validate_batch([article], "wire")

    assert result.valid_articles == [article]
    assert bool(article.similar_articles) is expected_similar


def test_similarity_weights_description():
    first = {"title": "Aid convoy reaches Rafah", "description": "Trucks carrying food crossed today"}
    same_title = {"title": "Aid convoy reaches Rafah", "description": "Completely unrelated text here"}

    score = calculate_similarity(first, same_title)

    assert 0.7 < score < 1.0
    assert calculate_similarity(first, first) == pytest.approx(1.0)
    assert calculate_similarity({"title": ""}, first) == 0.0


@pytest.mark.asyncio
async def test_failed_duplicate_lookup_does_not_block_other_checks():
    store = FakeStore(failing={"find_articles_by_hash"})
    validator = make_validator(store=store)
    article = make_article()

    duplicates = await validator.check_duplicates(article, "hash")

    assert not duplicates.is_duplicate
    assert duplicates.errors and duplicates.errors[0].startswith("hash:")
    assert "find_articles_by_link" in store.calls
    assert "query_recent_candidates" in store.calls


@pytest.mark.asyncio
async def test_processing_error_isolated_to_one_article(monkeypatch):
    validator = make_validator()
    good = make_article(link="https://example.com/good")
    bad = make_article(title="Broken article here", link="https://example.com/bad")
    original = validator.check_duplicates

    async def flaky(article, content_hash):
        if article is bad:
            raise ValueError("boom")
        return await original(article, content_hash)

    monkeypatch.setattr(validator, "check_duplicates", flaky)

    result = await validator.validate_batch([bad, good], "wire")

    assert result.valid_articles == [good]
    assert result.summary["errors"] == 1
    assert result.processing_errors[0]["error"] == "boom"


@pytest.mark.asyncio
async def test_accepted_articles_carry_hash_and_cleanup_forgets_them():
    validator = make_validator()
    article = make_article()

    await validator.validate_batch([article], "wire")
    assert article.content_hash == generate_content_hash(article)

    validator.cleanup()
    again = make_article()
    result = await validator.validate_batch([again], "wire")
    assert result.valid_articles == [again]


@pytest.mark.asyncio
async def test_unreachable_links_rejected_and_verdicts_cached():
    app = web.Application()
    hits = []

    async def live(request):
        hits.append(request.method)
        return web.Response(text="ok")

    app.router.add_get("/news/live", live)
    server = TestServer(app)
    await server.start_server()
    session = ClientSession()
    validator = make_validator(check_urls=True, session=session, url_timeout=5)
    live_url = str(server.make_url("/news/live"))
    try:
        first = await validator.validate_url(live_url)
        second = await validator.validate_url(live_url)
        other_case = await validator.validate_url(str(server.make_url("/news/LIVE")))
        dead = await validator.validate(make_article(link=str(server.make_url("/news/gone"))))
    finally:
        await session.close()
        await server.close()

    assert first.valid and second.valid
    assert hits == ["HEAD"]
    assert not other_case.valid
    assert not dead.valid
    assert dead.url_validation.reason == "URL not accessible"
    assert "Invalid URL: URL not accessible" in dead.errors


@pytest.mark.asyncio
async def test_truncated_description_still_flagged_long():
    validator = make_validator(max_description_chars=2000)
    article = make_article(description="d" * 2000, description_length=2600)

    validation = await validator.validate(article)

    assert validation.valid
    assert "Description long (2600 chars)" in validation.warnings
