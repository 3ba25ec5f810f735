"""
Tests for BridgeSettings.
"""

import sys

import pytest
from pydantic import ValidationError

from kernel_bridge.config import BridgeSettings, load_settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("PYTHON_EXECUTABLE", "REQUEST_TIMEOUT", "COMPLETENESS_SOURCE"):
            monkeypatch.delenv(f"KERNEL_BRIDGE_{name}", raising=False)

        settings = BridgeSettings()

        assert settings.PYTHON_EXECUTABLE == sys.executable
        assert settings.REQUEST_TIMEOUT == 30.0
        assert settings.EXECUTE_TIMEOUT == 300.0
        assert settings.COMPLETENESS_SOURCE == "local"
        assert settings.KERNEL_ARGS == []

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("KERNEL_BRIDGE_REQUEST_TIMEOUT", "2.5")
        monkeypatch.setenv("KERNEL_BRIDGE_COMPLETENESS_SOURCE", "kernel")
        monkeypatch.setenv("KERNEL_BRIDGE_KERNEL_ARGS", '["--matplotlib=inline"]')

        settings = load_settings()

        assert settings.REQUEST_TIMEOUT == 2.5
        assert settings.COMPLETENESS_SOURCE == "kernel"
        assert settings.KERNEL_ARGS == ["--matplotlib=inline"]

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv("KERNEL_BRIDGE_STARTUP_TIMEOUT", "5")
        assert load_settings(STARTUP_TIMEOUT=9).STARTUP_TIMEOUT == 9

    @pytest.mark.parametrize(
        "overrides",
        [
            {"REQUEST_TIMEOUT": 0},
            {"SWEEP_INTERVAL": -1},
            {"COMPLETENESS_SOURCE": "remote"},
            {"MAX_LISTENER_ERRORS": 0},
            {"LOG_LEVEL": "verbose"},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            load_settings(**overrides)
