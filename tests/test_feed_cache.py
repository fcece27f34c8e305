"""SQLite cache, cache-first wrapper and NVD record conversion."""

from __future__ import annotations

import threading
from types import SimpleNamespace

import pytest

from conftest import FakeFeed, record
from threatscope.caching import cache_db, feed_client
from threatscope.caching.feed_client import CachedFeedClient, NvdFeedClient, cve_to_records
from threatscope.core.errors import FeedUnavailableError


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "feed_cache.db")


def test_cache_hit_skips_the_delegate(db_path) -> None:
    delegate = FakeFeed(by_name={"docker": [record("CVE-2019-5736", "0.0", "18.09.2", "HIGH", "runc")]})
    cached = CachedFeedClient(delegate, db_path=db_path)

    first = cached.query_by_name("docker")
    second = cached.query_by_name("docker")

    assert first == second == delegate.by_name["docker"]
    assert delegate.calls == [("name", "docker")]


def test_empty_answers_are_cached(db_path) -> None:
    delegate = FakeFeed()
    cached = CachedFeedClient(delegate, db_path=db_path)

    assert cached.query_by_cve_id("CVE-2022-0185") == []
    assert cached.query_by_cve_id("CVE-2022-0185") == []
    assert delegate.calls == [("cve", "CVE-2022-0185")]


def test_records_round_trip_through_sqlite(db_path) -> None:
    stored = [
        record("CVE-2016-5195", "2.6.22", "4.8.3", "HIGH", "Dirty COW"),
        record("CVE-2016-5195", "0.0", "3.2.83", "HIGH", "Dirty COW", max_inclusive=True),
    ]
    cache_db.store("cve", "CVE-2016-5195", stored, db_path=db_path)

    assert cache_db.lookup("cve", "CVE-2016-5195", db_path=db_path) == stored
    assert cache_db.lookup("cve", "CVE-2022-0847", db_path=db_path) is None


def test_feed_errors_are_not_cached(db_path) -> None:
    delegate = FakeFeed(failing={"docker"})
    cached = CachedFeedClient(delegate, db_path=db_path)

    with pytest.raises(FeedUnavailableError):
        cached.query_by_name("docker")

    assert cache_db.lookup("name", "docker", db_path=db_path) is None


def test_offline_client_answers_from_cache_only(db_path) -> None:
    cache_db.store("name", "docker", [record("CVE-2019-5736", "0.0", "18.09.2")], db_path=db_path)
    offline = CachedFeedClient(None, db_path=db_path)

    assert [r.cve_id for r in offline.query_by_name("docker")] == ["CVE-2019-5736"]
    assert offline.query_by_name("calico") == []


def test_flush_removes_the_database(db_path) -> None:
    cached = CachedFeedClient(FakeFeed(), db_path=db_path)
    cached.query_by_name("docker")

    assert cached.flush() is True
    assert cached.flush() is False


def _cpe_match(criteria, vulnerable=True, **bounds):
    fields = dict(criteria=criteria, vulnerable=vulnerable,
                  versionStartIncluding=None, versionStartExcluding=None,
                  versionEndIncluding=None, versionEndExcluding=None)
    fields.update(bounds)
    return SimpleNamespace(**fields)


def _cve(cve_id, *matches, severity="HIGH"):
    return SimpleNamespace(
        id=cve_id,
        v31severity=severity,
        descriptions=[SimpleNamespace(lang="en", value=f"{cve_id} description")],
        configurations=[SimpleNamespace(nodes=[SimpleNamespace(cpeMatch=list(matches))])],
    )


def test_cve_to_records_keeps_ranged_vulnerable_matches() -> None:
    cve = _cve(
        "CVE-2019-5736",
        _cpe_match("cpe:2.3:a:docker:docker:*:*:*:*:*:*:*:*", versionEndExcluding="18.09.2"),
        _cpe_match("cpe:2.3:a:linuxfoundation:runc:*:*:*:*:*:*:*:*", versionEndIncluding="1.0.0"),
        _cpe_match("cpe:2.3:a:docker:docker:18.06.1:*:*:*:*:*:*:*"),
        _cpe_match("cpe:2.3:o:linux:linux_kernel:*:*:*:*:*:*:*:*", vulnerable=False, versionEndExcluding="5.0"),
    )

    docker_only = cve_to_records(cve, product="docker")
    everything = cve_to_records(cve)

    assert [(r.min_version, r.max_version, r.max_inclusive) for r in docker_only] == [("0.0", "18.09.2", False)]
    assert [r.max_version for r in everything] == ["18.09.2", "1.0.0"]
    assert everything[1].max_inclusive is True
    assert docker_only[0].level == "HIGH"
    assert docker_only[0].description == "CVE-2019-5736 description"


def test_nvd_errors_become_feed_unavailable(monkeypatch) -> None:
    def broken_search(**criteria):
        raise ConnectionError("connection reset")

    monkeypatch.setattr(feed_client.nvdlib, "searchCVE", broken_search)

    with pytest.raises(FeedUnavailableError):
        NvdFeedClient(api_key=None, delay=0).query_by_name("docker")


def test_nvd_client_queries_by_keyword_and_cve(monkeypatch) -> None:
    seen = []

    def fake_search(**criteria):
        seen.append(criteria)
        return [_cve("CVE-2019-5736",
                     _cpe_match("cpe:2.3:a:docker:docker:*:*:*:*:*:*:*:*", versionEndExcluding="18.09.2"))]

    monkeypatch.setattr(feed_client.nvdlib, "searchCVE", fake_search)
    client = NvdFeedClient(api_key="key", delay=0)

    assert [r.cve_id for r in client.query_by_name("docker")] == ["CVE-2019-5736"]
    assert [r.cve_id for r in client.query_by_cve_id("CVE-2019-5736")] == ["CVE-2019-5736"]
    assert seen == [
        {"key": "key", "keywordSearch": "docker"},
        {"key": "key", "cveId": "CVE-2019-5736"},
    ]


def test_cancelled_client_does_not_query(monkeypatch) -> None:
    monkeypatch.setattr(feed_client.nvdlib, "searchCVE", lambda **criteria: pytest.fail("queried"))
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(FeedUnavailableError):
        NvdFeedClient(api_key=None, delay=5, cancel_event=cancel).query_by_cve_id("CVE-2022-0847")
