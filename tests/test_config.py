"""Config YAML 라운드트립 테스트
Feature: polymarket-market-data, Property: 설정 YAML 라운드트립
"""

import tempfile
import os

import pytest
from hypothesis import given, strategies as st, settings

from pmdata.config import Config, DEFAULT_HOST_LIMITS, DEFAULT_PATH_LIMITS


# ── Hypothesis 전략 ──

condition_id_st = st.from_regex(r"0x[0-9a-f]{8,16}", fullmatch=True)

config_st = st.builds(
    Config,
    condition_ids=st.lists(condition_id_st, max_size=5),
    radar_limit=st.integers(min_value=1, max_value=50),
    rest_timeout=st.sampled_from([1.0, 5.0, 10.0, 30.0]),
    max_retries=st.integers(min_value=0, max_value=10),
    use_ws=st.booleans(),
    refresh_interval=st.sampled_from([1.0, 3.0, 10.0]),
    history_range=st.sampled_from(["1h", "6h", "1d", "1w", "max"]),
    history_fidelity=st.integers(min_value=1, max_value=1440),
    holders_limit=st.integers(min_value=1, max_value=50),
    orderbook_depth=st.integers(min_value=1, max_value=100),
    log_dir=st.just("./logs"),
)


# ── Property: Config YAML 라운드트립 ──

class TestConfigYamlRoundtrip:

    @given(config=config_st)
    @settings(max_examples=100)
    def test_yaml_roundtrip(self, config: Config):
        """임의 Config를 YAML 저장 후 다시 읽으면 동일"""
        with tempfile.NamedTemporaryFile(suffix=".yaml", delete=False, mode="w") as f:
            tmp_path = f.name

        try:
            config.to_yaml(tmp_path)
            restored = Config.from_yaml(tmp_path)
            assert config == restored, f"Roundtrip failed: {config} != {restored}"
        finally:
            os.unlink(tmp_path)


# ── 단위 테스트 ──

class TestConfigUnit:

    def test_default_config(self):
        c = Config()
        assert c.condition_ids == []
        assert c.rest_timeout == 10.0
        assert c.max_retries == 2
        assert c.ws_reconnect_base == 0.5
        assert c.ws_reconnect_cap == 30.0
        assert c.rate_limit_window == 10.0
        assert c.history_range == "1d"
        assert c.history_fidelity == 30
        assert c.holders_limit == 8

    def test_default_limits_are_copied(self):
        """인스턴스별로 독립된 레이트리밋 테이블"""
        a, b = Config(), Config()
        a.path_limits[0]["capacity"] = 1
        assert b.path_limits[0]["capacity"] == DEFAULT_PATH_LIMITS[0]["capacity"]
        assert a.host_limits == DEFAULT_HOST_LIMITS

    def test_from_yaml_missing_file(self):
        c = Config.from_yaml("/nonexistent/path.yaml")
        assert c == Config()

    def test_from_yaml_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert Config.from_yaml(str(path)) == Config()

    def test_from_yaml_ignores_unknown_keys(self):
        with tempfile.NamedTemporaryFile(suffix=".yaml", delete=False, mode="w") as f:
            f.write("condition_ids: ['0xabc']\nunknown_key: 42\n")
            tmp_path = f.name
        try:
            c = Config.from_yaml(tmp_path)
            assert c.condition_ids == ["0xabc"]
        finally:
            os.unlink(tmp_path)

    def test_override_rate_limits(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "host_limits:\n"
            "  - {host: clob.polymarket.com, capacity: 5}\n"
            "path_limits: []\n"
        )
        c = Config.from_yaml(str(path))
        assert c.host_limits == [{"host": "clob.polymarket.com", "capacity": 5}]
        assert c.path_limits == []

    def test_to_dict(self):
        d = Config(radar_limit=3).to_dict()
        assert d["radar_limit"] == 3
        assert "clob_ws_base" in d
