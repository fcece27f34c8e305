"""Shared fakes for the threat scanner tests."""

from __future__ import annotations

import threading

import pytest

from threatscope.core.errors import FeedUnavailableError
from threatscope.core.models import ContainerSnapshot, VulnRecord


class FakeFeed:
    """In-memory VulnFeedClient recording every query it receives."""

    def __init__(self, by_name=None, by_cve=None, failing=()):
        self.by_name = by_name or {}
        self.by_cve = by_cve or {}
        self.failing = set(failing)
        self.calls = []
        self._lock = threading.Lock()

    def _answer(self, kind, value, table):
        with self._lock:
            self.calls.append((kind, value))
        if value in self.failing:
            raise FeedUnavailableError(f"feed down for {value}")
        return list(table.get(value, []))

    def query_by_name(self, product):
        return self._answer("name", product, self.by_name)

    def query_by_cve_id(self, cve_id):
        return self._answer("cve", cve_id, self.by_cve)


def record(cve_id, min_version, max_version, level="HIGH", description="", max_inclusive=False):
    return VulnRecord(cve_id, min_version, max_version, level, description, max_inclusive)


@pytest.fixture
def fake_feed():
    return FakeFeed()


@pytest.fixture
def clean_container():
    return ContainerSnapshot(id="a" * 64, name="clean", network_mode="bridge")
