"""
@file feed_client.py
@brief Vulnerability feed contract, NVD-backed client and cache-first wrapper

@details
The detection engine only depends on the VulnFeedClient protocol:

- query_by_name(product)  -> list[VulnRecord]
- query_by_cve_id(cve_id) -> list[VulnRecord]

Both return an empty list when nothing matches and raise
FeedUnavailableError when the feed cannot answer.

**NvdFeedClient** queries the National Vulnerability Database with nvdlib.
Every vulnerable CPE match that carries version bounds becomes one
VulnRecord. versionStartExcluding is read as an inclusive lower bound, which
can only add matches, never hide one.

NVD API Rate Limiting:
- With API key: 50 requests per 30 seconds (0.6s delay between requests)
- Without key: 5 requests per 30 seconds (6s delay)
Requests from all threads go through one lock and are spaced by
API_REQUEST_DELAY. The delay waits on the cancellation event so a cancelled
scan does not sit out the pause.

**CachedFeedClient** puts cache_db in front of any client (cache-first).
"""

import logging
import threading
import time
from typing import List, Protocol

import nvdlib

from threatscope.caching import cache_db
from threatscope.caching.constants import API_REQUEST_DELAY, NVD_API_KEY
from threatscope.core.errors import FeedUnavailableError
from threatscope.core.models import VulnRecord

logger = logging.getLogger(__name__)


class VulnFeedClient(Protocol):
    """Query contract consumed by the version checks."""

    def query_by_name(self, product: str) -> List[VulnRecord]:  # pragma: no cover - protocol
        ...

    def query_by_cve_id(self, cve_id: str) -> List[VulnRecord]:  # pragma: no cover - protocol
        ...


def _cve_level(cve) -> str:
    """Pick the most recent CVSS base severity nvdlib exposes."""
    for attribute in ("v31severity", "v30severity", "v2severity"):
        level = getattr(cve, attribute, None)
        if level:
            return str(level)
    return "medium"


def _cve_description(cve) -> str:
    descriptions = getattr(cve, "descriptions", None) or []
    for entry in descriptions:
        if getattr(entry, "lang", "en") == "en":
            return entry.value
    return descriptions[0].value if descriptions else "No description"


def _cpe_product(criteria) -> str:
    parts = (criteria or "").split(":")
    return parts[4] if len(parts) > 4 else ""


def cve_to_records(cve, product=None) -> list:
    """
    Convert one nvdlib CVE object into version range records.

    @param cve object CVE as returned by nvdlib.searchCVE()
    @param product str Only keep CPE matches for this product (None keeps all)

    @return list VulnRecords, one per ranged, vulnerable CPE match
    """
    level = _cve_level(cve)
    description = _cve_description(cve)
    records = []

    for configuration in getattr(cve, "configurations", None) or []:
        for node in getattr(configuration, "nodes", None) or []:
            for match in getattr(node, "cpeMatch", None) or []:
                if not getattr(match, "vulnerable", True):
                    continue
                if product and _cpe_product(getattr(match, "criteria", "")) != product:
                    continue

                start = getattr(match, "versionStartIncluding", None) or getattr(match, "versionStartExcluding", None)
                end_excluding = getattr(match, "versionEndExcluding", None)
                end_including = getattr(match, "versionEndIncluding", None)
                if not (end_excluding or end_including):
                    continue

                record = VulnRecord(
                    cve_id=cve.id,
                    min_version=start or "0.0",
                    max_version=end_excluding or end_including,
                    level=level,
                    description=description,
                    max_inclusive=not end_excluding,
                )
                if record not in records:
                    records.append(record)
    return records


class NvdFeedClient:
    """
    VulnFeedClient backed by the NVD API.

    @param api_key str NVD API key (optional)
    @param delay float Seconds between two requests
    @param cancel_event threading.Event Aborts pending waits when set
    """

    def __init__(self, api_key=NVD_API_KEY, delay=API_REQUEST_DELAY, cancel_event=None):
        self.api_key = api_key
        self.delay = delay
        self.cancel_event = cancel_event or threading.Event()
        self._lock = threading.Lock()
        self._last_request = 0.0

    def _wait_turn(self):
        remaining = self.delay - (time.monotonic() - self._last_request)
        if remaining > 0 and self.cancel_event.wait(remaining):
            raise FeedUnavailableError("scan cancelled while waiting for the feed")
        if self.cancel_event.is_set():
            raise FeedUnavailableError("scan cancelled before querying the feed")

    def _search(self, **criteria):
        with self._lock:
            self._wait_turn()
            try:
                logger.debug(f"Querying NVD with {criteria}")
                return nvdlib.searchCVE(key=self.api_key, **criteria)
            except Exception as e:
                logger.error(f"NVD query {criteria} failed: {e}")
                raise FeedUnavailableError(f"NVD query {criteria} failed: {e}") from e
            finally:
                self._last_request = time.monotonic()

    def query_by_name(self, product):
        cves = self._search(keywordSearch=product)
        records = [record for cve in cves for record in cve_to_records(cve, product=product)]
        logger.info(f"NVD returned {len(cves)} CVEs ({len(records)} ranges) for product {product}")
        return records

    def query_by_cve_id(self, cve_id):
        cves = self._search(cveId=cve_id)
        records = [record for cve in cves for record in cve_to_records(cve)]
        logger.info(f"NVD returned {len(records)} ranges for {cve_id}")
        return records


class CachedFeedClient:
    """
    Cache-first wrapper around another feed client.

    @param delegate VulnFeedClient Client asked on cache misses; None makes
                    the wrapper offline (misses answer with no records)
    @param db_path str SQLite cache location
    """

    def __init__(self, delegate=None, db_path=cache_db.VULN_DB_PATH, ttl_days=cache_db.CACHE_TTL_DAYS):
        self.delegate = delegate
        self.db_path = db_path
        self.ttl_days = ttl_days
        self._lock = threading.Lock()

    def _cached(self, kind, value, fetch):
        with self._lock:
            try:
                records = cache_db.lookup(kind, value, db_path=self.db_path, ttl_days=self.ttl_days)
            except Exception as e:
                raise FeedUnavailableError(f"feed cache lookup for {value} failed: {e}") from e
            if records is not None:
                return records

            if self.delegate is None:
                logger.warning(f"Offline mode: no cached feed data for {kind}:{value}")
                return []

            records = fetch(value)
            try:
                cache_db.store(kind, value, records, db_path=self.db_path)
            except Exception as e:
                logger.warning(f"Could not cache feed answer for {kind}:{value}: {e}")
            return records

    def query_by_name(self, product):
        return self._cached("name", product, lambda v: self.delegate.query_by_name(v))

    def query_by_cve_id(self, cve_id):
        return self._cached("cve", cve_id, lambda v: self.delegate.query_by_cve_id(v))

    def flush(self):
        return cache_db.flush(self.db_path)
