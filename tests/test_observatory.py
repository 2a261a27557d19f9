import asyncio
import threading
from types import SimpleNamespace

import pytest

import observatory
from dht_config import Settings
from dht_engine import EngineError
from locations import GeoInfo
from observatory import StartupError, build_context, handle_new_node, shutdown
from tests.conftest import make_contact


class StaticGeo:
    def lookup_ip(self, ip):
        return GeoInfo(city="Tokyo", country="JP")


@pytest.fixture
def ctx(store):
    return SimpleNamespace(store=store, geo=StaticGeo())


def test_new_node_is_stored(ctx, store):
    assert handle_new_node(ctx, make_contact(5, "8.8.8.8", 6881))
    row = store.get(f"{5:040x}")
    assert (row.ip, row.port, row.country, row.times_seen) == ("8.8.8.8", 6881, "JP", 1)


@pytest.mark.parametrize("node", [
    SimpleNamespace(node_id=b"", host="1.2.3.4", port=6881),
    SimpleNamespace(node_id=b"\x01" * 20, host=None, port=6881),
    SimpleNamespace(node_id=b"\x01" * 20, host="1.2.3.4", port=0),
    SimpleNamespace(node_id=b"\x01" * 20, host="1.2.3.4", port=70000),
    SimpleNamespace(node_id=b"\x01" * 20, host="1.2.3.4", port="6881"),
    SimpleNamespace(node_id=b"\x01" * 20, host="not-an-ip", port=6881),
    SimpleNamespace(node_id=b"\x01" * 20, host="::1", port=6881),
    object(),
])
def test_invalid_nodes_are_dropped(ctx, store, node):
    assert not handle_new_node(ctx, node)
    assert store.count() == 0


def test_handler_errors_are_contained(store):
    class BrokenGeo:
        def lookup_ip(self, ip):
            raise RuntimeError("reader gone")

    ctx = SimpleNamespace(store=store, geo=BrokenGeo())
    assert handle_new_node(ctx, make_contact(1, "8.8.8.8")) is False


@pytest.mark.asyncio
async def test_build_context_wires_engine(tmp_path):
    ctx = build_context(Settings(db=str(tmp_path / "n.db"), geoip_db=str(tmp_path / "missing.mmdb")))
    try:
        assert ctx.engine.on_info_hash == ctx.popularity.record
        ctx.engine.on_info_hash("aa" * 20)
        assert ctx.popularity.items() == [("aa" * 20, 1)]
        assert await ctx.engine.on_new_node(make_contact(3, "9.9.9.9"))
        assert ctx.store.count() == 1
    finally:
        shutdown(ctx)


def test_bad_database_path_is_startup_error(tmp_path):
    with pytest.raises(StartupError):
        build_context(Settings(db=str(tmp_path / "no" / "such" / "n.db")))


def test_main_exits_nonzero_when_join_fails(tmp_path, monkeypatch):
    async def failing_join(self, timeout=30):
        raise EngineError("no bootstrap node answered")

    monkeypatch.setattr(observatory.KrpcEngine, "join", failing_join)
    code = observatory.main(["--db", str(tmp_path / "n.db"), "--geoip-db", str(tmp_path / "missing.mmdb")])
    assert code == 1


@pytest.mark.asyncio
async def test_run_until_stopped(tmp_path, monkeypatch):
    async def quiet_join(self, timeout=30):
        return None

    monkeypatch.setattr(observatory.KrpcEngine, "join", quiet_join)
    settings = Settings(db=str(tmp_path / "n.db"), geoip_db=str(tmp_path / "missing.mmdb"),
                        api_host="127.0.0.1", api_port=0)
    stop = asyncio.Event()
    task = asyncio.create_task(observatory.run(settings, stop))
    await asyncio.sleep(0.1)
    stop.set()
    await asyncio.wait_for(task, timeout=15)


@pytest.mark.asyncio
async def test_live_sightings_are_stored_off_the_loop(tmp_path):
    ctx = build_context(Settings(db=str(tmp_path / "n.db"), geoip_db=str(tmp_path / "missing.mmdb")))
    threads = []
    real_upsert = ctx.store.upsert

    def recording_upsert(record):
        threads.append(threading.current_thread())
        return real_upsert(record)

    ctx.store.upsert = recording_upsert
    try:
        await ctx.engine.on_new_node(make_contact(4, "9.9.9.4"))
    finally:
        shutdown(ctx)
    assert threads and threads[0] is not threading.main_thread()
