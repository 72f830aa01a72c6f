"""Tests for configuration loading."""

import pytest

from flowgate.config import load_config
from flowgate.transports import InMemoryTransport, get_transport
from flowgate.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "flowgate.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  topic: domain-events
  redis:
    host: testhost
    port: 1234
engine:
  condition_max_depth: 4
  sweep_interval_seconds: 5
log_level: DEBUG
"""
    )
    monkeypatch.setenv("FLOWGATE_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.topic == "domain-events"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.engine.condition_max_depth == 4
    assert config.engine.sweep_interval_seconds == 5
    assert config.engine.default_step_timeout_ms == 30000
    assert config.log_level == "DEBUG"


def test_defaults_without_config_file(monkeypatch):
    config = load_config("does-not-exist.yaml")
    assert config.transport.backend == "inmemory"
    assert config.database_url is None

    monkeypatch.setenv("DATABASE_URL", "sqlite://from-env.db")
    assert load_config("does-not-exist.yaml").database_url == "sqlite://from-env.db"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  topic: orders
  redis:
    host: confighost
    port: 6380
    key_prefix: shop
"""
    )
    monkeypatch.setenv("FLOWGATE_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380
    assert transport.topic == "orders"
    assert transport._queue_name() == "shop:orders"
    assert transport._queue_name("audit") == "shop:audit"

    monkeypatch.setenv("FLOWGATE_TRANSPORT", "inmemory")
    inmemory = get_transport()
    assert isinstance(inmemory, InMemoryTransport)
    assert inmemory.topic == "orders"

    with pytest.raises(ValueError):
        get_transport("kafka")
