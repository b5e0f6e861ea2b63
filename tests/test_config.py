"""Tests for environment-driven settings."""

from __future__ import annotations

import logging

import pytest

from ble_mcp_bridge import config
from ble_mcp_bridge.config import (
    BridgeSettings,
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_with_fallback,
)

ALL_VARS = (
    "BLE_MCP_HOST",
    "BLE_MCP_PORT",
    "MCP_PORT",
    "BLE_MCP_TOKEN",
    "MCP_TOKEN",
    "BLE_MCP_HTTP_HOST",
    "BLE_MCP_HTTP_PORT",
    "PORT",
    "BLE_MCP_LOG_LEVEL",
    "BLE_MCP_AUTO_SCAN",
    "BLE_MCP_NOTIFY_BUFFER",
    "BLE_MCP_SCAN_TIMEOUT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test from an environment without bridge settings."""
    for name in ALL_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config, "_migration_logged", False)


def test_defaults():
    settings = BridgeSettings.from_env()
    assert settings == BridgeSettings()
    assert settings.mcp_port == 8123
    assert settings.http_port == 8111
    assert settings.auth_token is None
    assert settings.auto_scan is True


def test_new_names_take_precedence(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BLE_MCP_PORT", "9000")
    monkeypatch.setenv("MCP_PORT", "9001")
    assert BridgeSettings.from_env().mcp_port == 9000


def test_legacy_names_are_honoured(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
):
    """The original MCP_PORT/MCP_TOKEN/PORT names still work, with a warning."""
    monkeypatch.setenv("MCP_PORT", "7000")
    monkeypatch.setenv("MCP_TOKEN", "legacy")
    monkeypatch.setenv("PORT", "8080")
    with caplog.at_level(logging.WARNING, logger="ble_mcp_bridge.config"):
        settings = BridgeSettings.from_env()
    assert settings.mcp_port == 7000
    assert settings.auth_token == "legacy"
    assert settings.http_port == 8080
    warnings = [r for r in caplog.records if "legacy" in r.getMessage()]
    assert len(warnings) == 1


def test_empty_token_disables_auth(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BLE_MCP_TOKEN", "")
    assert BridgeSettings.from_env().auth_token is None


def test_notification_buffer_has_floor(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BLE_MCP_NOTIFY_BUFFER", "0")
    assert BridgeSettings.from_env().notification_buffer == 1


def test_log_level_is_uppercased(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BLE_MCP_LOG_LEVEL", "debug")
    assert BridgeSettings.from_env().log_level == "DEBUG"


@pytest.mark.parametrize(
    "raw, expected",
    [("1", True), ("yes", True), ("ON", True), ("0", False), ("off", False), ("", True), ("maybe", True)],
)
def test_get_env_bool(monkeypatch: pytest.MonkeyPatch, raw, expected):
    monkeypatch.setenv("BLE_MCP_AUTO_SCAN", raw)
    assert get_env_bool("BLE_MCP_AUTO_SCAN", True) is expected


def test_bad_numbers_fall_back(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("BLE_MCP_PORT", "eighty")
    monkeypatch.setenv("BLE_MCP_SCAN_TIMEOUT", "soon")
    assert get_env_int("BLE_MCP_PORT", 8123) == 8123
    assert get_env_float("BLE_MCP_SCAN_TIMEOUT", 5.0) == 5.0


def test_get_env_with_fallback_default():
    assert get_env_with_fallback("BLE_MCP_HOST", "0.0.0.0") == "0.0.0.0"
    assert get_env_with_fallback("BLE_MCP_HOST") is None
