import logging

import pytest

import dht_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    for name in ("DHT_PORT", "DB", "API_PORT", "BATCH_SIZE", "MAX_TRACKED", "LOG_LEVEL"):
        monkeypatch.delenv(dht_config.ENV_PREFIX + name, raising=False)


def test_defaults():
    s = dht_config.parse_settings([])
    assert s == dht_config.Settings()
    assert s.api_port == 3000
    assert s.discovery_interval == 60.0
    assert s.max_tracked is None


def test_flags_override():
    s = dht_config.parse_settings(["--dht-port", "7000", "--db", "x.db", "--api-port", "8080",
                                   "--max-tracked", "1000", "--log-level", "debug"])
    assert (s.dht_port, s.db, s.api_port, s.max_tracked, s.log_level) == (7000, "x.db", 8080, 1000, "DEBUG")


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("DHT_OBSERVATORY_DHT_PORT", "6999")
    monkeypatch.setenv("DHT_OBSERVATORY_DB", "/tmp/nodes.db")
    monkeypatch.setenv("DHT_OBSERVATORY_BATCH_SIZE", "8")
    s = dht_config.parse_settings([])
    assert (s.dht_port, s.db, s.batch_size) == (6999, "/tmp/nodes.db", 8)


def test_flag_beats_env(monkeypatch):
    monkeypatch.setenv("DHT_OBSERVATORY_DHT_PORT", "6999")
    assert dht_config.parse_settings(["--dht-port", "7001"]).dht_port == 7001


def test_platform_port(monkeypatch):
    monkeypatch.setenv("DHT_OBSERVATORY_API_PORT", "4000")
    assert dht_config.parse_settings([]).api_port == 4000
    monkeypatch.setenv("PORT", "5000")
    assert dht_config.parse_settings([]).api_port == 5000


def test_bad_env_value_falls_back(monkeypatch, caplog):
    monkeypatch.setenv("DHT_OBSERVATORY_BATCH_SIZE", "lots")
    with caplog.at_level(logging.WARNING):
        assert dht_config.parse_settings([]).batch_size == dht_config.BATCH_SIZE
    assert "DHT_OBSERVATORY_BATCH_SIZE" in caplog.text


def test_bad_log_level_rejected():
    with pytest.raises(SystemExit):
        dht_config.parse_settings(["--log-level", "loud"])
