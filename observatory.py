#!/usr/bin/env python3
# observatory.py — run the DHT observatory
#
# Joins the BitTorrent DHT under a subnet/hour-bound id, persists every node it
# meets (live from the engine and from periodic random sampling), keeps a live
# stats snapshot and serves both over a small HTTP API.
#
# Usage: python observatory.py [--db dht_metrics.db] [--api-port 3000] [--geoip-db GeoLite2-City.mmdb]

import asyncio
import concurrent.futures
import logging
import re
import signal
import sqlite3
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

import dht_config
from dashboard import ApiServer, create_app
from dht_engine import EngineError, KrpcEngine
from dht_stats import StatsAggregator
from discovery import NodeDiscoverer
from locations import GeoResolver
from node_identity import generate_node_id
from node_store import NodeRecord, NodeStore
from tracker import PopularityTracker

logger = logging.getLogger("observatory")

STORE_WORKERS = 4

IPV4_RE = re.compile(r"^(?:[0-9]{1,3}\.){3}[0-9]{1,3}$")


class StartupError(RuntimeError):
    pass


@dataclass
class ObservatoryContext:
    settings: dht_config.Settings
    store: NodeStore
    geo: GeoResolver
    engine: KrpcEngine
    popularity: PopularityTracker
    discoverer: NodeDiscoverer
    aggregator: StatsAggregator
    executor: concurrent.futures.ThreadPoolExecutor


def handle_new_node(ctx: ObservatoryContext, node) -> bool:
    """Live path: validate a node the engine just met, geolocate it and store it."""
    node_id = getattr(node, "node_id", None)
    host = getattr(node, "host", None)
    port = getattr(node, "port", None)
    if not node_id or not host or not port:
        logger.debug(f"[~] Invalid node data: id={bool(node_id)} host={bool(host)} port={bool(port)}")
        return False
    if not isinstance(port, int) or not 1 <= port <= 65535:
        logger.debug(f"[~] Invalid port number: {port}")
        return False
    if not isinstance(host, str) or not IPV4_RE.match(host):
        logger.debug(f"[~] Invalid IP address: {host}")
        return False

    try:
        geo = ctx.geo.lookup_ip(host)
        stored = ctx.store.upsert(NodeRecord.observed(node_id, host, port, geo))
    except Exception:
        logger.exception(f"[!] Error processing node {node_id.hex()}")
        return False
    if stored:
        logger.info(f"[+] NEW NODE {node_id.hex()}  {host:<15} {port:<5}  "
                    f"{geo.label if geo else 'Unknown'}")
    return stored


def submit_new_node(ctx: ObservatoryContext, node) -> asyncio.Future:
    """Engine hook: run the live path on the store pool so datagram handling never waits on sqlite."""
    return asyncio.get_running_loop().run_in_executor(ctx.executor, handle_new_node, ctx, node)


def build_context(settings: dht_config.Settings) -> ObservatoryContext:
    try:
        store = NodeStore(settings.db).open()
    except (sqlite3.Error, OSError) as e:
        raise StartupError(f"cannot initialize database {settings.db}: {e}") from e

    geo = GeoResolver(settings.geoip_db)
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=STORE_WORKERS, thread_name_prefix="store")
    engine = KrpcEngine(generate_node_id(), bind=settings.bind, port=settings.dht_port)
    popularity = PopularityTracker()
    discoverer = NodeDiscoverer(engine, batch_size=settings.batch_size,
                                lookup_timeout=settings.lookup_timeout, max_tracked=settings.max_tracked)
    aggregator = StatsAggregator(engine, discoverer, store, geo, popularity,
                                 stats_interval=settings.stats_interval,
                                 discovery_interval=settings.discovery_interval, executor=executor)
    ctx = ObservatoryContext(settings, store, geo, engine, popularity, discoverer, aggregator, executor)
    engine.on_new_node = lambda node: submit_new_node(ctx, node)
    engine.on_info_hash = popularity.record
    return ctx


def shutdown(ctx: ObservatoryContext):
    # let queued writes finish before the store goes away
    ctx.executor.shutdown(wait=True)
    ctx.store.close()
    ctx.engine.close()
    ctx.geo.close()


async def run(settings: dht_config.Settings, stop: Optional[asyncio.Event] = None):
    ctx = build_context(settings)
    api = None
    try:
        logger.info("[*] Starting DHT node...")
        try:
            await ctx.engine.join(timeout=settings.join_timeout)
        except EngineError as e:
            raise StartupError(str(e)) from e

        ctx.aggregator.start()
        try:
            api = ApiServer(create_app(ctx), settings.api_host, settings.api_port)
        except OSError as e:
            raise StartupError(f"cannot start API on {settings.api_host}:{settings.api_port}: {e}") from e
        api.start()

        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass
        await stop.wait()
        logger.info("[*] Shutting down...")
    finally:
        await ctx.aggregator.stop()
        if api is not None:
            api.stop()
        shutdown(ctx)


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = dht_config.parse_settings(argv)
    dht_config.setup_logging(settings.log_level)
    try:
        asyncio.run(run(settings))
    except StartupError as e:
        logger.error(f"[!] Fatal error: {e}")
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
