import asyncio

import pytest

from dht_engine import Contact
from node_store import NodeStore


class FakeClock:
    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeEngine:
    """Stands in for the DHT engine: scripted lookup results and a bucket tree root."""

    def __init__(self, contacts=(), root=None):
        self.contacts = list(contacts)
        self.root = root
        self.lookups = 0

    async def lookup(self, target):
        self.lookups += 1
        await asyncio.sleep(0)
        return list(self.contacts)


def make_contact(n: int, host: str = None, port: int = 6881) -> Contact:
    return Contact(n.to_bytes(20, "big"), host or f"10.0.{n // 256 % 256}.{n % 256}", port)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    s = NodeStore(str(tmp_path / "nodes.db"), clock=clock).open()
    yield s
    s.close()
