import asyncio

import pytest

import krpc
from dht_engine import Contact, EngineError, KrpcEngine, RoutingTree
from dht_stats import count_nodes_in_bucket

LOCAL_ID = b"\x00" * 20


def node(first_byte: int, last_byte: int = 1) -> bytes:
    return bytes([first_byte]) + b"\x00" * 18 + bytes([last_byte])


class FakeTransport:
    def __init__(self):
        self.sent = []
        self.closed = False

    def sendto(self, data, addr):
        self.sent.append((krpc.decode(data), addr))

    def close(self):
        self.closed = True


def test_routing_tree_add_and_refresh():
    table = RoutingTree(LOCAL_ID, k=2)
    assert table.add(Contact(node(0x80), "1.1.1.1", 1))
    assert not table.add(Contact(node(0x80), "2.2.2.2", 2)), "known id must not count as new"
    assert [c.host for c in table.contacts()] == ["2.2.2.2"], "address must be refreshed"
    assert not table.add(Contact(LOCAL_ID, "3.3.3.3", 3)), "own id is never stored"


def test_routing_tree_splits_only_near_own_id():
    table = RoutingTree(LOCAL_ID, k=2)
    far = [Contact(node(0x80, i), "1.1.1.%d" % i, i) for i in range(1, 5)]
    near = [Contact(node(b), "2.2.2.%d" % b, b) for b in (0x40, 0x20, 0x10)]
    for c in far + near:
        table.add(c)
    # the far half (first bit 1) cannot split and keeps k contacts
    assert table.root.contacts is None
    assert len(table.root.right.contacts) == 2
    assert len(table) == count_nodes_in_bucket(table.root)
    assert len(table) == 2 + 3


def test_closest_orders_by_xor():
    table = RoutingTree(LOCAL_ID, k=8)
    for b in (0x40, 0x01, 0x80):
        table.add(Contact(node(b), "1.1.1.1", 1))
    assert [c.node_id[0] for c in table.closest(b"\x00" * 20, 2)] == [0x01, 0x40]


def _engine():
    engine = KrpcEngine(LOCAL_ID, bootstrap=[])
    engine.transport = FakeTransport()
    return engine


def test_incoming_ping_answers_and_reports_new_node():
    engine = _engine()
    seen = []
    engine.on_new_node = seen.append
    ping = krpc.query(b"t1", b"ping", {b"id": node(0x10)})
    engine.datagram_received(krpc.encode(ping), ("9.9.9.9", 4000))
    engine.datagram_received(krpc.encode(ping), ("9.9.9.9", 4000))

    assert [c.host for c in seen] == ["9.9.9.9"], "new-node event fires once per id"
    reply, addr = engine.transport.sent[0]
    assert addr == ("9.9.9.9", 4000)
    assert reply[b"y"] == b"r" and reply[b"r"][b"id"] == LOCAL_ID


def test_get_peers_and_announce_report_info_hashes():
    engine = _engine()
    hashes = []
    engine.on_info_hash = hashes.append
    ih = b"\xab" * 20
    engine.datagram_received(krpc.encode(krpc.query(b"t1", b"get_peers", {b"id": node(0x10), b"info_hash": ih})),
                             ("9.9.9.9", 4000))
    token = engine.transport.sent[-1][0][b"r"][b"token"]

    engine.datagram_received(krpc.encode(krpc.query(b"t2", b"announce_peer", {
        b"id": node(0x10), b"info_hash": ih, b"port": 6881, b"token": b"bogus"})), ("9.9.9.9", 4000))
    assert engine.transport.sent[-1][0][b"y"] == b"e", "bad token must be refused"

    engine.datagram_received(krpc.encode(krpc.query(b"t3", b"announce_peer", {
        b"id": node(0x10), b"info_hash": ih, b"port": 6881, b"token": token})), ("9.9.9.9", 4000))
    assert engine.transport.sent[-1][0][b"y"] == b"r"
    assert hashes == [ih.hex(), ih.hex()]


def test_garbage_datagram_is_ignored():
    engine = _engine()
    engine.datagram_received(b"\x00\x01garbage", ("9.9.9.9", 4000))
    assert engine.transport.sent == []


@pytest.mark.asyncio
async def test_query_resolves_on_response():
    engine = _engine()
    engine.query_timeout = 1.0

    async def answer():
        while not engine.transport.sent:
            await asyncio.sleep(0)
        sent, _ = engine.transport.sent[-1]
        nodes = krpc.compact_node(node(0x20), "4.4.4.4", 4444)
        engine.datagram_received(krpc.encode(krpc.response(sent[b"t"], {b"id": node(0x10), b"nodes": nodes})),
                                 ("9.9.9.9", 4000))

    task = asyncio.ensure_future(answer())
    found = await engine._find_node(("9.9.9.9", 4000), node(0x20))
    await task
    assert found == [Contact(node(0x20), "4.4.4.4", 4444)]
    assert [c.host for c in engine.table.contacts()] == ["9.9.9.9"], "only the responder joins the table"


@pytest.mark.asyncio
async def test_query_times_out_to_none():
    engine = _engine()
    engine.query_timeout = 0.05
    assert await engine._query(("9.9.9.9", 4000), b"ping", {}) is None
    assert engine._pending == {}


@pytest.mark.asyncio
async def test_query_requires_join():
    engine = KrpcEngine(LOCAL_ID, bootstrap=[])
    with pytest.raises(EngineError):
        await engine._query(("9.9.9.9", 4000), b"ping", {})


@pytest.mark.asyncio
async def test_lookup_collects_two_rounds(monkeypatch):
    engine = _engine()
    engine.table.add(Contact(node(0x40), "1.1.1.1", 1))
    replies = {
        "1.1.1.1": [Contact(node(0x20), "2.2.2.2", 2)],
        "2.2.2.2": [Contact(node(0x10), "3.3.3.3", 3), Contact(LOCAL_ID, "0.0.0.0", 1)],
    }

    async def fake_find_node(addr, target):
        return replies.get(addr[0], [])

    monkeypatch.setattr(engine, "_find_node", fake_find_node)
    found = await engine.lookup(b"\x00" * 20)
    assert [c.host for c in found] == ["3.3.3.3", "2.2.2.2"]


def test_close_shuts_transport():
    engine = _engine()
    transport = engine.transport
    engine.close()
    assert transport.closed and engine.transport is None
