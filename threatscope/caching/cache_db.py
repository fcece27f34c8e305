"""
@file cache_db.py
@brief SQLite cache for vulnerability feed responses

Implements local SQLite caching of feed query results so repeated scans do
not hit the NVD API again for the same product or CVE identifier.

Database Schema:
- feed_queries: Tracks which queries have been answered (query_kind, query_value, last_fetched)
- vuln_records: Stores the version ranges returned for each query

@details
The module follows this strategy:
1. Before querying the feed, check if the query exists in the local cache
2. If found and younger than the TTL, return cached records immediately
3. If not found, the caller queries the feed and stores the result here
4. An empty answer is cached too: "no vulnerabilities" is a valid result

Each call opens and closes its own connection so the cache can be used from
several worker threads.
"""

import logging
import os
import sqlite3
from datetime import datetime, timedelta

from threatscope.caching.constants import CACHE_DIR
from threatscope.core.models import VulnRecord

logger = logging.getLogger(__name__)

VULN_DB_PATH = os.path.join(CACHE_DIR, "feed_cache.db")

CACHE_TTL_DAYS = 7


# --- DATABASE SETUP ---
def get_db(db_path=VULN_DB_PATH):
    """
    Initialize and return SQLite database connection with required schema.

    @param db_path str Location of the cache database file

    @return sqlite3.Connection Database connection object with tables created

    @details
    **feed_queries table:**
    - query_kind TEXT: "name" or "cve"
    - query_value TEXT: Product name or CVE identifier
    - last_fetched TIMESTAMP: When the feed was last asked

    **vuln_records table:**
    - query_kind, query_value: Foreign key to feed_queries
    - cve_id, min_version, max_version, max_inclusive, level, description
    """
    directory = os.path.dirname(db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=30)
    cursor = conn.cursor()
    cursor.execute('''CREATE TABLE IF NOT EXISTS feed_queries
                      (query_kind TEXT, query_value TEXT, last_fetched TIMESTAMP,
                       PRIMARY KEY (query_kind, query_value))''')
    cursor.execute('''CREATE TABLE IF NOT EXISTS vuln_records
                      (query_kind TEXT, query_value TEXT, cve_id TEXT,
                       min_version TEXT, max_version TEXT, max_inclusive INTEGER,
                       level TEXT, description TEXT,
                       FOREIGN KEY(query_kind, query_value)
                       REFERENCES feed_queries(query_kind, query_value))''')
    conn.commit()
    return conn


def lookup(query_kind, query_value, db_path=VULN_DB_PATH, ttl_days=CACHE_TTL_DAYS):
    """
    Return cached records for a query.

    @return list|None Cached VulnRecords, or None on a cache miss or an
                      entry older than ttl_days
    """
    db = get_db(db_path)
    try:
        cursor = db.cursor()
        cursor.execute(
            "SELECT last_fetched FROM feed_queries WHERE query_kind = ? AND query_value = ?",
            (query_kind, query_value),
        )
        row = cursor.fetchone()
        if not row:
            logger.debug(f"Cache miss for {query_kind}:{query_value}")
            return None

        fetched = datetime.fromisoformat(row[0])
        if ttl_days is not None and datetime.now() - fetched > timedelta(days=ttl_days):
            logger.info(f"Cache entry for {query_kind}:{query_value} is stale (fetched {row[0]})")
            return None

        cursor.execute(
            "SELECT cve_id, min_version, max_version, max_inclusive, level, description "
            "FROM vuln_records WHERE query_kind = ? AND query_value = ? ORDER BY rowid",
            (query_kind, query_value),
        )
        records = [
            VulnRecord(
                cve_id=cve_id,
                min_version=min_version,
                max_version=max_version,
                level=level,
                description=description,
                max_inclusive=bool(max_inclusive),
            )
            for cve_id, min_version, max_version, max_inclusive, level, description in cursor.fetchall()
        ]
        logger.debug(f"Cache hit for {query_kind}:{query_value} ({len(records)} records)")
        return records
    finally:
        db.close()


def store(query_kind, query_value, records, db_path=VULN_DB_PATH):
    """Replace the cached answer for a query."""
    db = get_db(db_path)
    try:
        cursor = db.cursor()
        cursor.execute(
            "DELETE FROM vuln_records WHERE query_kind = ? AND query_value = ?",
            (query_kind, query_value),
        )
        cursor.execute(
            "INSERT OR REPLACE INTO feed_queries (query_kind, query_value, last_fetched) VALUES (?, ?, ?)",
            (query_kind, query_value, datetime.now().isoformat()),
        )
        cursor.executemany(
            "INSERT INTO vuln_records (query_kind, query_value, cve_id, min_version, max_version, "
            "max_inclusive, level, description) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (query_kind, query_value, r.cve_id, r.min_version, r.max_version,
                 int(r.max_inclusive), r.level, r.description)
                for r in records
            ],
        )
        db.commit()
        logger.debug(f"Cached {len(records)} records for {query_kind}:{query_value}")
    finally:
        db.close()


def flush(db_path=VULN_DB_PATH):
    """Remove the cache database file if present. Returns True when removed."""
    if os.path.exists(db_path):
        os.remove(db_path)
        logger.info(f"Flushed: {db_path}")
        return True
    return False
