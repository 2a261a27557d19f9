# node_store.py — durable record of every DHT node the observatory has seen
#
# One row per node id. Re-observing a node bumps times_seen and last_seen in a
# single INSERT .. ON CONFLICT statement, so concurrent observations of the
# same id never lose an increment. Read helpers return None when the database
# fails, which callers report as "no data" (as opposed to an empty result).

import logging
import math
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DB_PATH_DEFAULT = "dht_metrics.db"
DEFAULT_PAGE_LIMIT = 50
DEFAULT_TOP_LIMIT = 10
MAX_PAGE_LIMIT = 1000
ACTIVE_WINDOW_S = 3600

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS dht_nodes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  node_id TEXT UNIQUE NOT NULL,
  ip TEXT,
  port INTEGER,
  first_seen INTEGER NOT NULL,
  last_seen INTEGER NOT NULL,
  times_seen INTEGER NOT NULL DEFAULT 1,
  city TEXT,
  country TEXT,
  region TEXT,
  latitude REAL,
  longitude REAL
);
CREATE INDEX IF NOT EXISTS idx_nodes_last_seen ON dht_nodes(last_seen);
CREATE INDEX IF NOT EXISTS idx_nodes_country ON dht_nodes(country);
"""

UPSERT_SQL = """
INSERT INTO dht_nodes(node_id, ip, port, first_seen, last_seen, times_seen,
                      city, country, region, latitude, longitude)
VALUES(?,?,?,?,?,1,?,?,?,?,?)
ON CONFLICT(node_id) DO UPDATE SET
  last_seen=excluded.last_seen,
  times_seen=dht_nodes.times_seen + 1,
  ip=CASE WHEN dht_nodes.ip IS NOT excluded.ip THEN excluded.ip ELSE dht_nodes.ip END,
  port=CASE WHEN dht_nodes.port IS NOT excluded.port THEN excluded.port ELSE dht_nodes.port END;
"""

NODE_COLUMNS = ("node_id, ip, port, first_seen, last_seen, times_seen, "
                "city, country, region, latitude, longitude")


def iso(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def ago(ts: Optional[int]) -> str:
    if not ts:
        return "—"
    d = int(time.time()) - int(ts)
    if d < 60:
        return f"{d}s"
    if d < 3600:
        return f"{d // 60}m"
    if d < 86400:
        return f"{d // 3600}h"
    return f"{d // 86400}d"


def clamp_page(page: Any) -> int:
    try:
        page = int(page)
    except (TypeError, ValueError):
        return 1
    return max(1, page)


def clamp_limit(limit: Any, default: int = DEFAULT_PAGE_LIMIT) -> int:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return default
    return min(MAX_PAGE_LIMIT, max(1, limit))


@dataclass
class NodeRecord:
    node_identifier: str
    ip: Optional[str] = None
    port: Optional[int] = None
    first_seen: Optional[int] = None
    last_seen: Optional[int] = None
    times_seen: int = 0
    city: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def observed(cls, node_id: bytes, host: str, port: int, geo=None) -> "NodeRecord":
        """Record for a node we just saw on the wire, with optional GeoInfo."""
        rec = cls(node_identifier=node_id.hex(), ip=host, port=int(port))
        if geo is not None:
            rec.city, rec.country, rec.region = geo.city, geo.country, geo.region
            rec.latitude, rec.longitude = geo.latitude, geo.longitude
        return rec

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "NodeRecord":
        return cls(
            node_identifier=row["node_id"], ip=row["ip"], port=row["port"],
            first_seen=row["first_seen"], last_seen=row["last_seen"], times_seen=row["times_seen"],
            city=row["city"], country=row["country"], region=row["region"],
            latitude=row["latitude"], longitude=row["longitude"],
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["node_id"] = d.pop("node_identifier")
        d["first_seen"] = iso(self.first_seen)
        d["last_seen"] = iso(self.last_seen)
        d["last_seen_ago"] = ago(self.last_seen)
        return d


@dataclass
class NodePage:
    nodes: List[NodeRecord]
    total: int
    page: int
    limit: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit)

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.nodes) < self.total

    def pagination(self) -> Dict[str, Any]:
        return {"total": self.total, "page": self.page, "limit": self.limit,
                "pages": self.pages, "hasMore": self.has_more}


@dataclass
class NodeStats:
    total_historical: int
    active_last_hour: int
    avg_times_seen: int
    max_times_seen: int
    country_distribution: List[Tuple[str, int]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_historical": self.total_historical,
            "active_last_hour": self.active_last_hour,
            "avg_times_seen": self.avg_times_seen,
            "max_times_seen": self.max_times_seen,
            "countryDistribution": [{"country": c, "count": n} for c, n in self.country_distribution],
        }


class NodeStore:
    def __init__(self, path: str = DB_PATH_DEFAULT, clock: Callable[[], float] = time.time):
        self.path = path
        self.clock = clock
        self._lock = threading.Lock()
        self._con: Optional[sqlite3.Connection] = None

    def open(self) -> "NodeStore":
        """Create the schema. sqlite3 errors propagate: a store that can't open is fatal."""
        con = sqlite3.connect(self.path, timeout=30, isolation_level=None, check_same_thread=False)
        con.row_factory = sqlite3.Row
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute("PRAGMA synchronous=NORMAL;")
            con.executescript(SCHEMA_SQL)
        except sqlite3.Error:
            con.close()
            raise
        self._con = con
        return self

    def close(self):
        with self._lock:
            if self._con is not None:
                self._con.close()
                self._con = None

    def _now(self) -> int:
        return int(self.clock())

    def _connection(self) -> sqlite3.Connection:
        # caller holds self._lock
        if self._con is None:
            raise sqlite3.ProgrammingError("node store is closed")
        return self._con

    def _execute(self, sql: str, params: Tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._connection().execute(sql, params)

    def _fetchall(self, sql: str, params: Tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._connection().execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: Tuple = ()) -> sqlite3.Row:
        with self._lock:
            return self._connection().execute(sql, params).fetchone()

    # ---------------- write path ----------------
    def upsert(self, record: NodeRecord) -> bool:
        """Insert a first sighting or bump an existing row; False if the write failed.

        Location columns are only written on first insert.
        """
        now = self._now()
        try:
            self._execute(UPSERT_SQL, (
                record.node_identifier, record.ip, record.port, now, now,
                record.city, record.country, record.region, record.latitude, record.longitude,
            ))
        except sqlite3.Error as e:
            logger.warning(f"[!] Error upserting node {record.node_identifier}: {e}")
            return False
        return True

    # ---------------- read paths ----------------
    def get(self, node_identifier: str) -> Optional[NodeRecord]:
        try:
            row = self._fetchone(f"SELECT {NODE_COLUMNS} FROM dht_nodes WHERE node_id=?", (node_identifier,))
        except sqlite3.Error as e:
            logger.warning(f"[!] Error reading node {node_identifier}: {e}")
            return None
        return NodeRecord.from_row(row) if row else None

    def count(self) -> Optional[int]:
        try:
            return self._fetchone("SELECT COUNT(*) AS c FROM dht_nodes")["c"]
        except sqlite3.Error as e:
            logger.warning(f"[!] Error counting nodes: {e}")
            return None

    def top_nodes(self, limit: Any = DEFAULT_TOP_LIMIT) -> Optional[List[NodeRecord]]:
        try:
            rows = self._fetchall(f"""
                SELECT {NODE_COLUMNS} FROM dht_nodes
                ORDER BY times_seen DESC, last_seen DESC
                LIMIT ?
            """, (clamp_limit(limit, DEFAULT_TOP_LIMIT),))
        except sqlite3.Error as e:
            logger.warning(f"[!] Error getting top nodes: {e}")
            return None
        return [NodeRecord.from_row(r) for r in rows]

    def paginated_list(self, page: Any = 1, limit: Any = DEFAULT_PAGE_LIMIT) -> Optional[NodePage]:
        page, limit = clamp_page(page), clamp_limit(limit)
        offset = (page - 1) * limit
        try:
            # count and page come from one locked read so total matches nodes
            with self._lock:
                con = self._connection()
                total = con.execute("SELECT COUNT(*) AS c FROM dht_nodes").fetchone()["c"]
                rows = con.execute(f"""
                    SELECT {NODE_COLUMNS} FROM dht_nodes
                    ORDER BY last_seen DESC, id DESC
                    LIMIT ? OFFSET ?
                """, (limit, offset)).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"[!] Error getting paginated nodes: {e}")
            return None
        return NodePage(nodes=[NodeRecord.from_row(r) for r in rows], total=total, page=page, limit=limit)

    def aggregate_stats(self) -> Optional[NodeStats]:
        since = self._now() - ACTIVE_WINDOW_S
        try:
            with self._lock:
                con = self._connection()
                row = con.execute("""
                    SELECT
                      COUNT(*) AS total,
                      SUM(CASE WHEN last_seen >= ? THEN 1 ELSE 0 END) AS active,
                      AVG(times_seen) AS avg_seen,
                      MAX(times_seen) AS max_seen
                    FROM dht_nodes
                """, (since,)).fetchone()
                countries = con.execute("""
                    SELECT country, COUNT(*) AS c
                    FROM dht_nodes
                    WHERE country IS NOT NULL
                    GROUP BY country
                    ORDER BY c DESC, country ASC
                """).fetchall()
        except sqlite3.Error as e:
            logger.warning(f"[!] Error getting node stats: {e}")
            return None
        return NodeStats(
            total_historical=row["total"],
            active_last_hour=row["active"] or 0,
            avg_times_seen=int(math.floor((row["avg_seen"] or 0) + 0.5)),
            max_times_seen=row["max_seen"] or 0,
            country_distribution=[(r["country"], r["c"]) for r in countries],
        )
