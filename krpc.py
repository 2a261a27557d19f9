# krpc.py — KRPC message helpers (BEP-5): bencode, compact nodes, announce tokens

import hashlib
import hmac
import os
import time
from typing import List, Tuple

import bencodepy

NODE_ID_LEN = 20
COMPACT_NODE_LEN = 26
TID_BYTES = 4
TOKEN_ROTATE_SEC = 300


class KrpcError(ValueError):
    pass


def random_node_id() -> bytes:
    return os.urandom(NODE_ID_LEN)


def new_tid() -> bytes:
    return os.urandom(TID_BYTES)


def xor_distance(a: bytes, b: bytes) -> int:
    return int.from_bytes(bytes(x ^ y for x, y in zip(a, b)), "big")


# ---------------- Compact node info ----------------
def parse_nodes(compact: bytes) -> List[Tuple[bytes, str, int]]:
    out = []
    for i in range(0, len(compact), COMPACT_NODE_LEN):
        s = compact[i:i + COMPACT_NODE_LEN]
        if len(s) != COMPACT_NODE_LEN:
            continue
        nid = s[:NODE_ID_LEN]
        ip = ".".join(str(b) for b in s[20:24])
        port = int.from_bytes(s[24:], "big")
        out.append((nid, ip, port))
    return out


def compact_node(node_id: bytes, ip: str, port: int) -> bytes:
    return node_id + bytes(int(x) for x in ip.split(".")) + int(port).to_bytes(2, "big")


# ---------------- Messages ----------------
def encode(msg: dict) -> bytes:
    return bencodepy.encode(msg)


def decode(buf: bytes) -> dict:
    try:
        msg = bencodepy.decode(buf)
    except Exception as e:
        raise KrpcError(f"undecodable datagram: {e}") from e
    if not isinstance(msg, dict):
        raise KrpcError("not a dict")
    return msg


def query(tid: bytes, method: bytes, args: dict) -> dict:
    return {b"t": tid, b"y": b"q", b"q": method, b"a": args}


def response(tid: bytes, values: dict) -> dict:
    return {b"t": tid, b"y": b"r", b"r": values}


def error(tid: bytes, code: int = 201, msg: bytes = b"Server Error") -> dict:
    return {b"t": tid, b"y": b"e", b"e": [code, msg]}


# ---------------- Token box ----------------
class TokenBox:
    """Issues get_peers tokens and checks them on announce_peer.

    Keeps the current and the previous secret so tokens stay valid for one
    rotation after being issued.
    """

    def __init__(self, rotate_every: float = TOKEN_ROTATE_SEC):
        self.rotate_every = rotate_every
        self._secrets = [(time.time(), os.urandom(16))]

    def _active(self):
        now = time.time()
        ts, _ = self._secrets[0]
        if now - ts > self.rotate_every:
            self._secrets.insert(0, (now, os.urandom(16)))
            self._secrets = self._secrets[:2]
        return [s for _, s in self._secrets]

    def issue(self, ip: str) -> bytes:
        return hmac.new(self._active()[0], ip.encode(), hashlib.sha1).digest()

    def valid(self, ip: str, token: bytes) -> bool:
        if not isinstance(token, (bytes, bytearray)):
            return False
        for sec in self._active():
            if hmac.compare_digest(hmac.new(sec, ip.encode(), hashlib.sha1).digest(), token):
                return True
        return False
