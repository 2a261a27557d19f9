# node_identity.py — derive the 20-byte node id we join the DHT with
#
# The id is bound to our /24 subnet and the current hour, so restarting inside
# the same hour on the same network reuses the same id, while a new hour or a
# new network yields a fresh one.

import hashlib
import socket
import time
from typing import Optional

import psutil

FALLBACK_IP = "127.0.0.1"
NODE_ID_LEN = 20
HOUR_S = 60 * 60


def local_ipv4() -> str:
    """First non-loopback IPv4 address of this host, or 127.0.0.1."""
    try:
        interfaces = psutil.net_if_addrs()
    except OSError:
        return FALLBACK_IP
    for addrs in interfaces.values():
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                return addr.address
    return FALLBACK_IP


def hour_bucket(now: Optional[float] = None) -> int:
    if now is None:
        now = time.time()
    return int(now // HOUR_S)


def derive_node_id(ip: str, hours: int) -> bytes:
    subnet = bytes(int(octet) for octet in ip.split(".")[:3])
    salt = hashlib.sha1(ip.encode()).digest()[:4]
    digest = hashlib.sha1(subnet + (hours & 0xFFFFFFFF).to_bytes(4, "big") + salt).digest()

    # splice the digest at a marker position taken from its own first byte
    rand = digest[0] % NODE_ID_LEN
    node_id = bytearray(NODE_ID_LEN)
    node_id[:rand] = digest[:rand]
    node_id[rand:] = digest[rand:NODE_ID_LEN]
    return bytes(node_id)


def generate_node_id(ip: Optional[str] = None, now: Optional[float] = None) -> bytes:
    return derive_node_id(ip or local_ipv4(), hour_bucket(now))
