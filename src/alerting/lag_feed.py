"""
Replication-lag sample feeds.

The detector treats lag as an opaque time series keyed by slot name. Feeds
here adapt the places that series can come from: a direct query against
PostgreSQL, the Prometheus HTTP API (series exported by the database
scraper), or an in-memory buffer pushed to by a co-located collector.
A feed failure returns no samples for that tick; it never raises into the
evaluation loop.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import psycopg2
import requests
from psycopg2.extras import RealDictCursor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LagSample:
    """
    One observation of a replication slot.

    Attributes:
        slot_name: Replication slot identifier
        lag_bytes: WAL retained for the slot
        active: Whether a consumer is attached
        timestamp: Observation time (epoch seconds)
        database: Database the slot belongs to, when known
        plugin: Output plugin of logical slots, when known
    """

    slot_name: str
    lag_bytes: float
    active: bool
    timestamp: float
    database: Optional[str] = None
    plugin: Optional[str] = None


class LagFeed:
    """Interface: read() returns the samples observed since the last call."""

    name = "lag_feed"

    def read(self) -> List[LagSample]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class StaticLagFeed(LagFeed):
    """In-memory feed; push() from any thread, read() drains."""

    name = "static"

    def __init__(self):
        self._pending: List[LagSample] = []
        self._lock = threading.Lock()

    def push(self, *samples: LagSample) -> None:
        with self._lock:
            self._pending.extend(samples)

    def read(self) -> List[LagSample]:
        with self._lock:
            samples, self._pending = self._pending, []
        return samples


class PostgresLagFeed(LagFeed):
    """
    Reads replication slot lag straight from pg_replication_slots.

    The connection is opened lazily and re-opened after any failure.
    """

    name = "postgres"

    QUERY = """
        SELECT
            slot_name,
            database,
            plugin,
            active,
            COALESCE(
                pg_wal_lsn_diff(pg_current_wal_lsn(), restart_lsn),
                0
            )::bigint AS lag_bytes
        FROM pg_replication_slots
    """

    def __init__(self, dsn: str, connect_timeout: int = 5):
        self.dsn = dsn
        self.connect_timeout = connect_timeout
        self._conn = None

    def _connection(self):
        if self._conn is None or self._conn.closed:
            self._conn = psycopg2.connect(self.dsn, connect_timeout=self.connect_timeout)
            self._conn.autocommit = True
            logger.info("Connected to PostgreSQL for replication slot lag")
        return self._conn

    def read(self) -> List[LagSample]:
        try:
            conn = self._connection()
            with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                cursor.execute(self.QUERY)
                rows = cursor.fetchall()
        except psycopg2.Error as e:
            logger.error(f"Failed to read replication slot lag: {e}")
            self.close()
            return []

        now = time.time()
        samples = [
            LagSample(
                slot_name=row["slot_name"],
                lag_bytes=float(row["lag_bytes"] or 0),
                active=bool(row["active"]),
                timestamp=now,
                database=row.get("database"),
                plugin=row.get("plugin"),
            )
            for row in rows
        ]
        logger.debug(f"Read {len(samples)} replication slot samples from PostgreSQL")
        return samples

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except psycopg2.Error as e:
                logger.warning(f"Error closing PostgreSQL connection: {e}")
            self._conn = None


class PrometheusLagFeed(LagFeed):
    """
    Reads lag from the Prometheus HTTP API.

    Expects the database scraper to export one series per slot for the lag
    (bytes) and one for the active flag (1/0), both labelled by slot_name.
    """

    name = "prometheus"

    def __init__(
        self,
        base_url: str,
        lag_query: str = "pg_replication_slots_pg_wal_lsn_diff",
        active_query: str = "pg_replication_slots_active",
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.lag_query = lag_query
        self.active_query = active_query
        self.timeout = timeout
        self.session = session or requests.Session()

    def _query(self, promql: str) -> Dict[str, tuple]:
        response = self.session.get(
            f"{self.base_url}/api/v1/query",
            params={"query": promql},
            timeout=self.timeout,
        )
        response.raise_for_status()
        body = response.json()
        if body.get("status") != "success":
            raise ValueError(f"query {promql!r} failed: {body.get('error')}")

        values = {}
        for series in body.get("data", {}).get("result", []):
            slot = series.get("metric", {}).get("slot_name")
            if slot is None:
                continue
            timestamp, value = series["value"]
            values[slot] = (float(timestamp), float(value), series["metric"])
        return values

    def read(self) -> List[LagSample]:
        try:
            lag = self._query(self.lag_query)
            active = self._query(self.active_query)
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to read replication lag from Prometheus: {e}")
            return []

        samples = []
        for slot, (timestamp, lag_bytes, labels) in sorted(lag.items()):
            if slot not in active:
                logger.debug(f"No active flag for slot {slot}; skipping")
                continue
            samples.append(LagSample(
                slot_name=slot,
                lag_bytes=lag_bytes,
                active=active[slot][1] >= 1,
                timestamp=timestamp,
                database=labels.get("database") or labels.get("datname"),
                plugin=labels.get("plugin"),
            ))
        return samples

    def close(self) -> None:
        self.session.close()
