"""
Tests for wormwatch.config module.
"""

import pytest

from wormwatch.config import (
    ProtocolConfig,
    RuntimeConfig,
    apply_config_file,
    load_config_file,
    save_default_config,
)
from wormwatch.exceptions import ConfigError


class TestProtocolConfig:
    """Tests for ProtocolConfig defaults and derived values."""

    def test_derived_timeouts(self):
        cfg = ProtocolConfig()
        assert cfg.net_traversal_time == pytest.approx(2.8)
        assert cfg.path_discovery_time == pytest.approx(5.6)
        assert cfg.my_route_timeout == pytest.approx(11.2)
        assert cfg.delete_period == pytest.approx(15.0)
        assert cfg.blacklist_timeout == pytest.approx(5.6)
        assert cfg.neighbor_lifetime == pytest.approx(2.0)
        assert cfg.pending_reply_window == pytest.approx(5.6)

    def test_overrides(self):
        cfg = ProtocolConfig(net_traversal_override=1.0, pending_reply_lifetime=0.5)
        assert cfg.path_discovery_time == pytest.approx(2.0)
        assert cfg.pending_reply_window == pytest.approx(0.5)

    def test_defaults_validate(self):
        ProtocolConfig().validate()

    @pytest.mark.parametrize("kwargs", [
        {"hello_interval": 0},
        {"net_diameter": 0},
        {"ttl_start": 0},
        {"ttl_threshold": 0},
        {"rreq_rate_limit": 0},
        {"max_queue_len": 0},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ConfigError):
            ProtocolConfig(**kwargs).validate()

    def test_to_dict(self):
        d = ProtocolConfig().to_dict()
        assert d["net_diameter"] == 35
        assert d["enable_wormhole_detection"] is True


class TestConfigFile:
    """Tests for YAML configuration files."""

    def test_missing_file_is_empty(self, tmp_path):
        assert load_config_file(str(tmp_path / "nope.yaml")) == {}

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("protocol: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config_file(str(path))

    def test_default_template_round_trip(self, tmp_path):
        path = str(tmp_path / "sub" / "config.yaml")
        assert save_default_config(path)

        data = load_config_file(path)
        assert data["protocol"]["net_diameter"] == 35
        assert data["simulation"]["topology"] == "grid"

    def test_apply_config_file(self, tmp_path):
        config = RuntimeConfig(log_to_file=False)
        apply_config_file(config, {
            "logging": {"level": "DEBUG", "to_file": False},
            "simulation": {"nodes": "25", "topology": "random", "seed": 9},
            "protocol": {"hello_interval": 2, "enable_hello": 0, "ttl_threshold": 9},
        })

        assert config.log_level == "DEBUG"
        assert config.nodes == 25
        assert config.topology == "random"
        assert config.seed == 9
        assert config.protocol.hello_interval == 2.0
        assert isinstance(config.protocol.hello_interval, float)
        assert config.protocol.enable_hello is False
        assert config.protocol.ttl_threshold == 9

    def test_unknown_protocol_key_ignored(self):
        config = RuntimeConfig(log_to_file=False)
        apply_config_file(config, {"protocol": {"warp_speed": 9}})
        assert not hasattr(config.protocol, "warp_speed")

    def test_invalid_protocol_value(self):
        config = RuntimeConfig(log_to_file=False)
        with pytest.raises(ConfigError):
            apply_config_file(config, {"protocol": {"net_diameter": 0}})
