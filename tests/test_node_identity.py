import hashlib
import socket
from types import SimpleNamespace

import node_identity
from node_identity import derive_node_id, generate_node_id, hour_bucket, local_ipv4


def test_node_id_deterministic_within_hour():
    a = derive_node_id("192.168.1.23", 480_000)
    b = derive_node_id("192.168.1.23", 480_000)
    assert a == b, "same ip and hour must give the same id"
    assert len(a) == 20


def test_node_id_changes_with_hour():
    assert derive_node_id("192.168.1.23", 480_000) != derive_node_id("192.168.1.23", 480_001)


def test_node_id_changes_with_network():
    assert derive_node_id("192.168.1.23", 480_000) != derive_node_id("10.1.2.3", 480_000)


def test_node_id_matches_subnet_time_salt_digest():
    ip, hours = "203.0.113.7", 123_456
    salt = hashlib.sha1(ip.encode()).digest()[:4]
    expected = hashlib.sha1(bytes([203, 0, 113]) + hours.to_bytes(4, "big") + salt).digest()
    assert derive_node_id(ip, hours) == expected


def test_hour_bucket():
    assert hour_bucket(0) == 0
    assert hour_bucket(3599.9) == 0
    assert hour_bucket(3600) == 1
    assert generate_node_id("10.0.0.1", now=7200) == derive_node_id("10.0.0.1", 2)


def _addr(family, address):
    return SimpleNamespace(family=family, address=address)


def test_local_ipv4_skips_loopback(monkeypatch):
    monkeypatch.setattr(node_identity.psutil, "net_if_addrs", lambda: {
        "lo": [_addr(socket.AF_INET, "127.0.0.1")],
        "eth0": [_addr(socket.AF_INET6, "fe80::1"), _addr(socket.AF_INET, "192.168.7.40")],
    })
    assert local_ipv4() == "192.168.7.40"


def test_local_ipv4_falls_back_to_loopback(monkeypatch):
    monkeypatch.setattr(node_identity.psutil, "net_if_addrs", lambda: {"lo": [_addr(socket.AF_INET, "127.0.0.1")]})
    assert local_ipv4() == "127.0.0.1"
    assert len(generate_node_id(now=0)) == 20
    assert generate_node_id(now=0) == derive_node_id("127.0.0.1", 0)
