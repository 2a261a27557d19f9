"""
Central configuration for the DHT Observatory.

All tunables live here. Each default can be overridden by an environment
variable and then by a command line flag.
"""

import argparse
import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence

ENV_PREFIX = "DHT_OBSERVATORY_"

# =========================
# DHT
# =========================
DHT_PORT = 6881
BIND_ADDR = "0.0.0.0"
JOIN_TIMEOUT = 30.0

# =========================
# Sampling / stats
# =========================
STATS_INTERVAL = 2.0
DISCOVERY_INTERVAL = 60.0
BATCH_SIZE = 32
LOOKUP_TIMEOUT = 5.0

# =========================
# Storage / geo / API
# =========================
DB_PATH = "dht_metrics.db"
GEOIP_DB = "GeoLite2-City.mmdb"
API_HOST = "0.0.0.0"
API_PORT = 3000

LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _env(name: str, default, cast=str):
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"[!] Ignoring bad {ENV_PREFIX}{name}={raw!r}")
        return default


def _api_port_default() -> int:
    # PORT is what most hosting platforms set
    raw = os.environ.get("PORT", "")
    if raw.isdigit():
        return int(raw)
    return _env("API_PORT", API_PORT, int)


@dataclass
class Settings:
    dht_port: int = DHT_PORT
    bind: str = BIND_ADDR
    join_timeout: float = JOIN_TIMEOUT
    stats_interval: float = STATS_INTERVAL
    discovery_interval: float = DISCOVERY_INTERVAL
    batch_size: int = BATCH_SIZE
    lookup_timeout: float = LOOKUP_TIMEOUT
    max_tracked: Optional[int] = None
    db: str = DB_PATH
    geoip_db: str = GEOIP_DB
    api_host: str = API_HOST
    api_port: int = API_PORT
    log_level: str = LOG_LEVEL


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="DHT observatory: sample the BitTorrent DHT, store and serve node stats")
    ap.add_argument("--dht-port", type=int, default=_env("DHT_PORT", DHT_PORT, int), help="UDP port for the DHT node")
    ap.add_argument("--bind", default=_env("BIND", BIND_ADDR), help="Bind address for the DHT node")
    ap.add_argument("--join-timeout", type=float, default=_env("JOIN_TIMEOUT", JOIN_TIMEOUT, float),
                    help="Seconds to wait for the DHT to become ready")
    ap.add_argument("--stats-interval", type=float, default=_env("STATS_INTERVAL", STATS_INTERVAL, float),
                    help="Seconds between live stats snapshots")
    ap.add_argument("--discovery-interval", type=float,
                    default=_env("DISCOVERY_INTERVAL", DISCOVERY_INTERVAL, float),
                    help="Seconds between discovery passes")
    ap.add_argument("--batch-size", type=int, default=_env("BATCH_SIZE", BATCH_SIZE, int),
                    help="Random lookups per batch (two batches per pass)")
    ap.add_argument("--lookup-timeout", type=float, default=_env("LOOKUP_TIMEOUT", LOOKUP_TIMEOUT, float),
                    help="Per-lookup timeout (s)")
    ap.add_argument("--max-tracked", type=int, default=_env("MAX_TRACKED", None, int),
                    help="Cap on remembered node ids for new-node detection (default: unbounded)")
    ap.add_argument("--db", default=_env("DB", DB_PATH), help="SQLite DB path")
    ap.add_argument("--geoip-db", default=_env("GEOIP_DB", GEOIP_DB), help="GeoLite2-City.mmdb path")
    ap.add_argument("--api-host", default=_env("API_HOST", API_HOST), help="HTTP API bind address")
    ap.add_argument("--api-port", type=int, default=_api_port_default(),
                    help="HTTP API port")
    ap.add_argument("--log-level", default=_env("LOG_LEVEL", LOG_LEVEL),
                    choices=["DEBUG", "INFO", "WARNING", "ERROR"], type=str.upper)
    return ap


def parse_settings(argv: Optional[Sequence[str]] = None) -> Settings:
    args = build_parser().parse_args(argv)
    return Settings(**vars(args))


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure the root logger for the observatory."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
