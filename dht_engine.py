# dht_engine.py — small asyncio BitTorrent DHT node the observatory rides on
#
# Only what the observatory needs: join the network with a given id, answer
# the usual KRPC queries like a well-behaved passive node, run find_node
# lookups toward arbitrary targets and keep the contacts that answered us in a
# k-bucket tree. No ping-eviction, no peer storage.

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import krpc

logger = logging.getLogger(__name__)

BOOTSTRAP_NODES = [
    ("router.bittorrent.com", 6881),
    ("router.utorrent.com", 6881),
    ("dht.transmissionbt.com", 6881),
    ("dht.libtorrent.org", 25401),
    ("dht.aelitis.com", 6881),
]

# ---------------- Tunables ----------------
K = 8                  # contacts per bucket
ALPHA = 8              # parallel find_node per lookup round
LOOKUP_ROUNDS = 2
QUERY_TIMEOUT = 2.0    # per KRPC query
JOIN_RETRY_S = 1.0
ID_BITS = krpc.NODE_ID_LEN * 8


class EngineError(RuntimeError):
    pass


@dataclass(frozen=True)
class Contact:
    node_id: bytes
    host: str
    port: int

    @property
    def hex_id(self) -> str:
        return self.node_id.hex()


def _bit(node_id: bytes, index: int) -> int:
    return (node_id[index // 8] >> (7 - index % 8)) & 1


# ---------------- Bucket tree ----------------
class Bucket:
    """A node of the routing tree; leaves hold contacts, inner nodes have children."""

    __slots__ = ("contacts", "left", "right", "dont_split")

    def __init__(self):
        self.contacts: Optional[List[Contact]] = []
        self.left: Optional["Bucket"] = None
        self.right: Optional["Bucket"] = None
        self.dont_split = False


class RoutingTree:
    def __init__(self, local_id: bytes, k: int = K):
        self.local_id = local_id
        self.k = k
        self.root = Bucket()

    def _leaf(self, node_id: bytes) -> Tuple[Bucket, int]:
        node, depth = self.root, 0
        while node.contacts is None:
            node = node.right if _bit(node_id, depth) else node.left
            depth += 1
        return node, depth

    def add(self, contact: Contact) -> bool:
        """Insert or refresh a contact. True only when it was not known before."""
        if contact.node_id == self.local_id:
            return False
        leaf, depth = self._leaf(contact.node_id)
        for i, known in enumerate(leaf.contacts):
            if known.node_id == contact.node_id:
                del leaf.contacts[i]
                leaf.contacts.append(contact)
                return False
        if len(leaf.contacts) < self.k:
            leaf.contacts.append(contact)
            return True
        if leaf.dont_split or depth >= ID_BITS - 1:
            return False
        self._split(leaf, depth)
        return self.add(contact)

    def _split(self, leaf: Bucket, depth: int):
        left, right = Bucket(), Bucket()
        for c in leaf.contacts:
            (right if _bit(c.node_id, depth) else left).contacts.append(c)
        # only the half covering our own id keeps splitting
        if _bit(self.local_id, depth):
            left.dont_split = True
        else:
            right.dont_split = True
        leaf.left, leaf.right = left, right
        leaf.contacts = None

    def contacts(self) -> Iterator[Contact]:
        stack = [self.root]
        while stack:
            node = stack.pop()
            if node.contacts is not None:
                yield from list(node.contacts)
                continue
            stack.extend(child for child in (node.left, node.right) if child is not None)

    def closest(self, target: bytes, n: int) -> List[Contact]:
        return sorted(self.contacts(), key=lambda c: krpc.xor_distance(c.node_id, target))[:n]

    def __len__(self):
        return sum(1 for _ in self.contacts())


# ---------------- Engine ----------------
class KrpcEngine(asyncio.DatagramProtocol):
    def __init__(self, node_id: bytes, bind: str = "0.0.0.0", port: int = 6881,
                 bootstrap: Optional[Sequence[Tuple[str, int]]] = None,
                 k: int = K, alpha: int = ALPHA, query_timeout: float = QUERY_TIMEOUT):
        self.node_id = node_id
        self.bind = bind
        self.port = port
        self.bootstrap = list(bootstrap if bootstrap is not None else BOOTSTRAP_NODES)
        self.alpha = alpha
        self.query_timeout = query_timeout
        self.table = RoutingTree(node_id, k)
        self.tokens = krpc.TokenBox()
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.on_new_node: Optional[Callable[[Contact], None]] = None
        self.on_info_hash: Optional[Callable[[str], None]] = None
        self._pending: Dict[bytes, asyncio.Future] = {}

    @property
    def root(self) -> Bucket:
        return self.table.root

    # ---- lifecycle ----
    async def join(self, timeout: float = 30.0):
        loop = asyncio.get_running_loop()
        try:
            self.transport, _ = await loop.create_datagram_endpoint(
                lambda: self, local_addr=(self.bind, self.port), family=socket.AF_INET)
        except OSError as e:
            raise EngineError(f"cannot bind UDP {self.bind}:{self.port}: {e}") from e
        logger.info(f"[*] DHT node {self.node_id.hex()} listening on UDP {self.bind}:{self.port}")

        deadline = loop.time() + timeout
        while loop.time() < deadline:
            routers = await self._resolve_bootstrap()
            await asyncio.gather(*(self._find_node(addr, self.node_id) for addr in routers))
            if len(self.table):
                await self.lookup(self.node_id)
                logger.info(f"[+] DHT ready, {len(self.table)} contacts in routing table")
                return
            await asyncio.sleep(min(JOIN_RETRY_S, max(0.0, deadline - loop.time())))
        raise EngineError(f"no DHT contact answered within {timeout:.0f}s")

    def close(self):
        for fut in self._pending.values():
            if not fut.done():
                fut.cancel()
        self._pending.clear()
        if self.transport is not None:
            self.transport.close()
            self.transport = None

    async def _resolve_bootstrap(self) -> List[Tuple[str, int]]:
        loop = asyncio.get_running_loop()
        out = []
        for host, port in self.bootstrap:
            try:
                infos = await loop.getaddrinfo(host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM)
            except socket.gaierror as e:
                logger.debug(f"[~] bootstrap {host}:{port} unresolvable: {e}")
                continue
            out.extend(info[4][:2] for info in infos[:1])
        return out

    # ---- outgoing ----
    def _send(self, msg: dict, addr: Tuple[str, int]):
        if self.transport is None:
            return
        try:
            self.transport.sendto(krpc.encode(msg), addr)
        except OSError as e:
            logger.debug(f"[send-fail] {addr} {e}")

    async def _query(self, addr: Tuple[str, int], method: bytes, args: dict) -> Optional[dict]:
        if self.transport is None:
            raise EngineError("engine is not joined")
        tid = krpc.new_tid()
        fut = asyncio.get_running_loop().create_future()
        self._pending[tid] = fut
        try:
            self._send(krpc.query(tid, method, {**args, b"id": self.node_id}), addr)
            return await asyncio.wait_for(fut, self.query_timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self._pending.pop(tid, None)

    async def _find_node(self, addr: Tuple[str, int], target: bytes) -> List[Contact]:
        r = await self._query(addr, b"find_node", {b"target": target})
        if not r or not isinstance(r.get(b"nodes"), bytes):
            return []
        return [Contact(nid, ip, port) for nid, ip, port in krpc.parse_nodes(r[b"nodes"])
                if 0 < port < 65536]

    async def lookup(self, target: bytes, timeout: Optional[float] = None) -> List[Contact]:
        """Contacts near ``target``, closest first.

        Asks the closest known contacts, then the closest contacts they
        returned. Each query is bounded by ``query_timeout``; ``timeout``
        bounds the whole lookup.
        """
        if timeout is not None:
            return await asyncio.wait_for(self.lookup(target), timeout)

        seen: Dict[bytes, Contact] = {}
        queried = set()
        candidates = self.table.closest(target, self.alpha)
        for _ in range(LOOKUP_ROUNDS):
            batch = [c for c in candidates if c.node_id not in queried][:self.alpha]
            if not batch:
                break
            queried.update(c.node_id for c in batch)
            replies = await asyncio.gather(*(self._find_node((c.host, c.port), target) for c in batch))
            for found in replies:
                for c in found:
                    if c.node_id != self.node_id:
                        seen.setdefault(c.node_id, c)
            candidates = sorted(seen.values(), key=lambda c: krpc.xor_distance(c.node_id, target))
        return sorted(seen.values(), key=lambda c: krpc.xor_distance(c.node_id, target))

    # ---- incoming ----
    def datagram_received(self, data: bytes, addr):
        try:
            msg = krpc.decode(data)
        except krpc.KrpcError:
            return
        y = msg.get(b"y")
        if y == b"r":
            self._handle_response(msg, addr)
        elif y == b"q":
            self._handle_query(msg, addr)
        elif y == b"e":
            fut = self._pending.get(msg.get(b"t"))
            if fut is not None and not fut.done():
                fut.set_result(None)

    def error_received(self, exc):
        logger.debug(f"[~] UDP error: {exc}")

    def connection_lost(self, exc):
        for fut in self._pending.values():
            if not fut.done():
                fut.cancel()

    def _observe(self, nid, addr: Tuple[str, int]):
        if not isinstance(nid, bytes) or len(nid) != krpc.NODE_ID_LEN:
            return
        contact = Contact(nid, addr[0], addr[1])
        if self.table.add(contact) and self.on_new_node is not None:
            try:
                self.on_new_node(contact)
            except Exception:
                logger.exception(f"[!] new-node handler failed for {contact.hex_id}")

    def _report_info_hash(self, ih):
        if self.on_info_hash is not None and isinstance(ih, bytes) and len(ih) == 20:
            self.on_info_hash(ih.hex())

    def _compact_closest(self, target) -> bytes:
        if not isinstance(target, bytes) or len(target) != krpc.NODE_ID_LEN:
            target = self.node_id
        return b"".join(krpc.compact_node(c.node_id, c.host, c.port)
                        for c in self.table.closest(target, self.table.k))

    def _handle_response(self, msg: dict, addr):
        r = msg.get(b"r")
        if not isinstance(r, dict):
            return
        self._observe(r.get(b"id"), addr)
        fut = self._pending.get(msg.get(b"t"))
        if fut is not None and not fut.done():
            fut.set_result(r)

    def _handle_query(self, msg: dict, addr):
        q = msg.get(b"q")
        a = msg.get(b"a")
        t = msg.get(b"t", b"aa")
        if not isinstance(a, dict):
            self._send(krpc.error(t, 203, b"Protocol Error"), addr)
            return
        self._observe(a.get(b"id"), addr)

        if q == b"ping":
            self._send(krpc.response(t, {b"id": self.node_id}), addr)
        elif q == b"find_node":
            self._send(krpc.response(t, {b"id": self.node_id,
                                         b"nodes": self._compact_closest(a.get(b"target"))}), addr)
        elif q == b"get_peers":
            ih = a.get(b"info_hash")
            self._send(krpc.response(t, {b"id": self.node_id, b"token": self.tokens.issue(addr[0]),
                                         b"nodes": self._compact_closest(ih)}), addr)
            self._report_info_hash(ih)
        elif q == b"announce_peer":
            if not self.tokens.valid(addr[0], a.get(b"token", b"")):
                self._send(krpc.error(t, 203, b"Bad token"), addr)
                return
            self._send(krpc.response(t, {b"id": self.node_id}), addr)
            self._report_info_hash(a.get(b"info_hash"))
        else:
            self._send(krpc.error(t, 204, b"Method Unknown"), addr)
