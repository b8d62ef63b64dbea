"""
Tests for configuration loading and command-line overrides.
"""

import pytest

from health_monitor.cli import build_config, create_parser
from health_monitor.config import MonitorConfig, derive_ws_url
from health_monitor.models import MetricKind


ENV_KEYS = [
    "RPC_URL", "WS_URL", "PROTOCOL_API_URL", "DATABASE_URL", "TELEGRAM_BOT_TOKEN",
    "PROGRAM_ID", "METRIC_KIND", "REARM_MARGIN", "POLL_INTERVAL_SECONDS",
]


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestMonitorConfig:
    """Tests for MonitorConfig."""

    def test_defaults(self, clean_env):
        config = MonitorConfig.from_env()

        assert config.poll_interval_seconds == 120.0
        assert config.heartbeat_interval_seconds == 86_400.0
        assert config.metric_kind is MetricKind.HEALTH
        assert config.rearm_margin == 5
        assert config.ws_url == "wss://api.mainnet-beta.solana.com"

    def test_credit_margin_default(self, clean_env):
        clean_env.setenv("METRIC_KIND", "available_credit")

        config = MonitorConfig.from_env()

        assert config.rearm_margin == 500
        assert config.metric_max is None

    def test_validate_reports_missing_settings(self):
        problems = MonitorConfig(poll_interval_seconds=0).validate()

        assert "TELEGRAM_BOT_TOKEN is not set" in problems
        assert "PROTOCOL_API_URL is not set" in problems
        assert "POLL_INTERVAL_SECONDS must be positive" in problems

    def test_to_dict_masks_token(self):
        assert MonitorConfig(telegram_bot_token="secret").to_dict()["telegram_bot_token"] == "***"

    @pytest.mark.parametrize("rpc_url, expected", [
        ("https://rpc.example.com", "wss://rpc.example.com"),
        ("http://localhost:8899", "ws://localhost:8899"),
    ])
    def test_derive_ws_url(self, rpc_url, expected):
        assert derive_ws_url(rpc_url) == expected


class TestBuildConfig:
    """Tests for command-line overrides."""

    def test_metric_flag_switches_default_margin(self, clean_env):
        args = create_parser().parse_args(["--metric", "available_credit"])

        config = build_config(args, MonitorConfig())

        assert config.metric_kind is MetricKind.AVAILABLE_CREDIT
        assert config.rearm_margin == 500

    def test_explicit_margin_wins(self, clean_env):
        args = create_parser().parse_args(["--metric", "available_credit", "--rearm-margin", "1000"])

        assert build_config(args, MonitorConfig()).rearm_margin == 1000

    def test_no_flags_keeps_base(self):
        base = MonitorConfig()

        assert build_config(create_parser().parse_args([]), base) is base
