# dht_stats.py — live stats snapshot + periodic discovery for the observatory
#
# Two timers run side by side on the event loop:
#   snapshot tick  (every 2s)  recount the engine's bucket tree, rerank the
#                              popularity counter, publish a new snapshot
#   discovery tick (every 60s) sample the DHT, geolocate and persist new nodes
# A tick that raises is logged and the timer keeps going.

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

from node_store import NodeRecord

logger = logging.getLogger(__name__)

STATS_INTERVAL = 2.0
DISCOVERY_INTERVAL = 60.0
TOP_K = 10
STOP_GRACE_S = 10.0


@dataclass(frozen=True)
class StatsSnapshot:
    current_node_count: int = 0
    uptime: str = "0s"
    uptime_seconds: float = 0.0
    discovered_total: int = 0
    top_ranked_items: Tuple[Tuple[str, int], ...] = ()
    taken_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "currentNodes": self.current_node_count,
            "discoveredNodes": self.discovered_total,
            "uptime": self.uptime,
            "uptimeSeconds": round(self.uptime_seconds, 1),
        }


def format_uptime(seconds: float) -> str:
    s = max(0, int(seconds))
    days, s = divmod(s, 86400)
    hours, s = divmod(s, 3600)
    minutes, s = divmod(s, 60)
    parts = []
    for value, unit in ((days, "d"), (hours, "h"), (minutes, "m")):
        if value or parts:
            parts.append(f"{value}{unit}")
    parts.append(f"{s}s")
    return " ".join(parts)


def count_nodes_in_bucket(bucket) -> int:
    """Sum contacts over a bucket tree owned (and mutated) by the DHT engine.

    Read without coordination, so every attribute may be missing or change
    underneath us; a slightly off count is fine for a gauge.
    """
    if bucket is None:
        return 0
    count = 0
    contacts = getattr(bucket, "contacts", None)
    if contacts:
        count += len(contacts)
    count += count_nodes_in_bucket(getattr(bucket, "left", None))
    count += count_nodes_in_bucket(getattr(bucket, "right", None))
    return count


def rank_top(items: List[Tuple[str, int]], k: int = TOP_K) -> Tuple[Tuple[str, int], ...]:
    # sorted() is stable: ties keep first-seen order between reads
    return tuple(sorted(items, key=lambda kv: kv[1], reverse=True)[:k])


class StatsAggregator:
    def __init__(self, engine, discoverer, store, geo, popularity,
                 stats_interval: float = STATS_INTERVAL, discovery_interval: float = DISCOVERY_INTERVAL,
                 top_k: int = TOP_K, clock: Callable[[], float] = time.monotonic, executor=None):
        self.engine = engine
        self.discoverer = discoverer
        self.store = store
        self.geo = geo
        self.popularity = popularity
        self.stats_interval = stats_interval
        self.discovery_interval = discovery_interval
        self.top_k = top_k
        self.clock = clock
        # pool for the blocking sqlite and geoip work; None is the loop default
        self.executor = executor
        self.started = clock()
        self._snapshot = StatsSnapshot()
        self._stopping: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def snapshot(self) -> StatsSnapshot:
        return self._snapshot

    # ---------------- tick bodies ----------------
    def refresh_snapshot(self) -> StatsSnapshot:
        uptime_s = self.clock() - self.started
        snap = StatsSnapshot(
            current_node_count=count_nodes_in_bucket(getattr(self.engine, "root", None)),
            uptime=format_uptime(uptime_s),
            uptime_seconds=uptime_s,
            discovered_total=len(self.discoverer),
            top_ranked_items=rank_top(self.popularity.items(), self.top_k),
        )
        # one reference swap; readers get the old or the new snapshot, never a mix
        self._snapshot = snap
        return snap

    async def run_discovery(self) -> int:
        logger.info("[~] Starting new node discovery...")
        new_nodes = await self.discoverer.discover()
        loop = asyncio.get_running_loop()
        stored = 0
        for node in new_nodes:
            try:
                if await loop.run_in_executor(self.executor, self.persist_node, node):
                    stored += 1
            except Exception:
                logger.exception(f"[!] Error processing discovered node {getattr(node, 'host', '?')}")
        if new_nodes:
            logger.info(f"[+] Stored {stored}/{len(new_nodes)} discovered nodes")
        return stored

    def persist_node(self, node) -> bool:
        geo = self.geo.lookup_ip(node.host) if self.geo is not None else None
        return self.store.upsert(NodeRecord.observed(node.node_id, node.host, node.port, geo))

    # ---------------- timers ----------------
    async def _snapshot_tick(self):
        self.refresh_snapshot()

    async def _every(self, name: str, interval: float, body: Callable[[], Awaitable]):
        while True:
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await body()
            except Exception:
                logger.exception(f"[!] Error in {name} tick")

    def start(self):
        self._stopping = asyncio.Event()
        self.refresh_snapshot()
        self._tasks = [
            asyncio.create_task(self._every("stats", self.stats_interval, self._snapshot_tick)),
            asyncio.create_task(self._every("discovery", self.discovery_interval, self.run_discovery)),
        ]

    async def stop(self, grace: float = STOP_GRACE_S):
        """Stop both timers; an in-flight tick gets ``grace`` seconds before it is abandoned."""
        if self._stopping is None:
            return
        self._stopping.set()
        tasks, self._tasks = self._tasks, []
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"[!] Abandoned {len(pending)} in-flight tick(s) on shutdown")
            await asyncio.gather(*pending, return_exceptions=True)
