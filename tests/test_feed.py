"""Tests for feed parsing, the rate limiter, the cache and the fetcher."""

import pytest
import requests

from blocklistd.errors import FetchError, ParseError
from blocklistd.feed import FeedCache, FeedFetcher, fetch_allowed, parse_feed

from conftest import NOW, SAMPLE_FEED, FakeSession

SPAMHAUS_SAMPLE = (
    b"; Spamhaus DROP List 2024/01/01 - (c) 2024 The Spamhaus Project\n"
    b"; Last-Modified: Mon, 01 Jan 2024 00:00:00 GMT\n"
    b"1.10.16.0/20 ; SBL256894\n"
    b"1.19.0.0/16 ; SBL434604\n"
    b"\n"
    b"2.56.192.0/22 ; SBL459831\n"
)


class TestParseFeed:

    def test_comment_lines_are_dropped(self):
        assert parse_feed(SAMPLE_FEED) == ["1.2.3.0/24", "5.6.7.8"]

    def test_first_token_is_kept_in_source_order(self):
        assert parse_feed(SPAMHAUS_SAMPLE) == ["1.10.16.0/20", "1.19.0.0/16", "2.56.192.0/22"]

    def test_reparsing_is_idempotent(self):
        assert parse_feed(SPAMHAUS_SAMPLE) == parse_feed(SPAMHAUS_SAMPLE)

    def test_custom_comment_character(self):
        assert parse_feed(b"# header\n10.0.0.0/8 x\n;kept\n", comment_char='#') == ["10.0.0.0/8", ";kept"]

    def test_only_first_character_marks_a_comment(self):
        assert parse_feed(b"  ;indented\n") == [";indented"]

    def test_empty_feed(self):
        assert parse_feed(b"") == []

    def test_undecodable_content_raises(self):
        with pytest.raises(ParseError):
            parse_feed(b"\xff\xfe\x00bad")


class TestFetchAllowed:

    def test_first_run_is_allowed(self):
        assert fetch_allowed(None, NOW, 3600)

    def test_recent_fetch_is_denied(self):
        assert not fetch_allowed(NOW - 100, NOW, 3600)

    def test_boundary_is_allowed(self):
        assert fetch_allowed(NOW - 3600, NOW, 3600)

    def test_old_fetch_is_allowed(self):
        assert fetch_allowed(NOW - 7200, NOW, 3600)


class TestFeedCache:

    def test_empty_cache(self, cache):
        assert cache.read_raw() is None
        assert cache.read_entries() is None
        assert cache.last_fetch_time() is None

    def test_commit_round_trip(self, cache):
        cache.commit(["1.2.3.0/24", "5.6.7.8"], NOW)
        assert cache.read_entries() == ["1.2.3.0/24", "5.6.7.8"]
        assert cache.last_fetch_time() == NOW
        assert cache.processed_path.read_text() == "1.2.3.0/24\n5.6.7.8\n"

    def test_missing_processed_list_means_no_data(self, cache):
        cache.commit(["1.2.3.0/24"], NOW)
        cache.processed_path.unlink()
        assert cache.last_fetch_time() is None

    def test_corrupt_processed_list_means_no_data(self, cache):
        cache.commit(["1.2.3.0/24"], NOW)
        cache.processed_path.write_bytes(b"\xff\xfe")
        assert cache.read_entries() is None
        assert cache.last_fetch_time() is None

    def test_corrupt_timestamp_means_no_data(self, cache):
        cache.commit(["1.2.3.0/24"], NOW)
        cache.timestamp_path.write_text("yesterday\n")
        assert cache.last_fetch_time() is None

    def test_writes_leave_no_temp_files(self, cache):
        cache.write_raw(SAMPLE_FEED)
        cache.commit(["5.6.7.8"], NOW)
        names = sorted(path.name for path in cache.cache_dir.iterdir())
        assert names == ["feed.lst", "feed.raw", "last_fetch"]

    def test_ensure_dir_creates_parents(self, tmp_path):
        cache = FeedCache(tmp_path / 'a' / 'b')
        cache.ensure_dir()
        assert cache.cache_dir.is_dir()


class TestFeedFetcher:

    def test_fetch_updates_all_artifacts(self, cache):
        fetcher = FeedFetcher('https://feed.example/drop.txt', session=FakeSession())
        entries = fetcher.fetch(cache, now=NOW)

        assert entries == ["1.2.3.0/24", "5.6.7.8"]
        assert cache.read_raw() == SAMPLE_FEED
        assert cache.read_entries() == entries
        assert cache.last_fetch_time() == NOW

    def test_transport_failure_leaves_cache_untouched(self, cache):
        cache.write_raw(b"9.9.9.0/24\n")
        cache.commit(["9.9.9.0/24"], NOW - 5000)
        session = FakeSession()
        session.error = requests.ConnectionError("connection refused")
        fetcher = FeedFetcher('https://feed.example/drop.txt', session=session)

        with pytest.raises(FetchError):
            fetcher.fetch(cache, now=NOW)

        assert cache.read_raw() == b"9.9.9.0/24\n"
        assert cache.read_entries() == ["9.9.9.0/24"]
        assert cache.last_fetch_time() == NOW - 5000

    def test_http_error_status_is_a_fetch_error(self, cache):
        session = FakeSession()
        session.status_code = 503
        fetcher = FeedFetcher('https://feed.example/drop.txt', session=session)

        with pytest.raises(FetchError):
            fetcher.fetch(cache, now=NOW)
        assert cache.read_entries() is None

    def test_unparseable_feed_commits_empty_list(self, cache):
        fetcher = FeedFetcher('https://feed.example/drop.txt', session=FakeSession(b"\xff\xfe\x00"))
        assert fetcher.fetch(cache, now=NOW) == []
        assert cache.read_entries() == []
        assert cache.last_fetch_time() == NOW

    def test_default_session_sets_user_agent(self):
        fetcher = FeedFetcher('https://feed.example/drop.txt')
        try:
            assert fetcher.session.headers['User-Agent'] == FeedFetcher.USER_AGENT
        finally:
            fetcher.close()
