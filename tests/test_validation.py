"""
Tests for preference validation.
"""

import asyncio
import sys
from unittest.mock import patch

import pytest

from kernel_bridge.errors import ProbeError, UnknownValidatorError, ValidationError
from kernel_bridge.models import EnvironmentInfo
from kernel_bridge.validation import (
    ValidatorRegistry,
    default_registry,
    is_valid,
    validate,
)


def env_info(has_kernel):
    return EnvironmentInfo(
        executable=sys.executable, version="3.11.4", cwd="/", has_jupyter_kernel=has_kernel
    )


@pytest.mark.asyncio
class TestValidate:
    async def test_item_without_validators_passes(self):
        assert await validate({"key": "theme"}, "dark") == "dark"
        assert await is_valid({"key": "theme", "valid": []}, object())

    async def test_unknown_validator_fails_fast(self):
        ran = []
        registry = ValidatorRegistry({"isAnything": lambda value: ran.append(value)})

        with pytest.raises(UnknownValidatorError):
            await validate({"valid": ["isAnything", "isMissing"]}, 1, registry)
        with pytest.raises(UnknownValidatorError):
            await is_valid({"valid": ["isMissing"]}, 1, registry)
        assert ran == []

    async def test_false_and_raise_both_reject(self):
        registry = ValidatorRegistry()
        registry.register("never", lambda value: False)

        @registry.register("raises")
        def raises(value):
            raise ValidationError("nope")

        assert not await is_valid({"valid": ["never"]}, 1, registry)
        assert not await is_valid({"valid": ["raises"]}, 1, registry)

    async def test_validators_run_concurrently(self):
        started = []

        async def slow(value):
            started.append(value)
            await asyncio.sleep(0.1)

        registry = ValidatorRegistry({"a": slow, "b": slow, "c": slow})

        loop = asyncio.get_running_loop()
        begin = loop.time()
        await validate({"valid": ["a", "b", "c"]}, 7, registry, timeout=1.0)

        assert started == [7, 7, 7]
        assert loop.time() - begin < 0.25

    async def test_timeout(self):
        async def hang(value):
            await asyncio.sleep(10)

        registry = ValidatorRegistry({"hang": hang})

        with pytest.raises(ValidationError, match="did not finish"):
            await validate({"valid": ["hang"]}, 1, registry, timeout=0.05)

    async def test_object_items(self):
        class Item:
            valid = "isFontSize"

        assert await is_valid(Item(), 12)
        assert not await is_valid(Item(), 100)


@pytest.mark.asyncio
class TestDefaultValidators:
    @pytest.mark.parametrize("value,ok", [(12, True), ("14", True), (6, True), (72, True),
                                          (5, False), (73, False), ("big", False), (12.5, False),
                                          (True, False), (None, False)])
    async def test_font_size(self, value, ok):
        assert await is_valid({"valid": ["isFontSize"]}, value) is ok

    @pytest.mark.parametrize("value,ok", [(4, True), (1, True), (8, True), (0, False), (9, False)])
    async def test_tab_space(self, value, ok):
        assert await is_valid({"valid": ["isTabSpace"]}, value) is ok

    async def test_path_real(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        (tmp_path / "notes").mkdir()

        assert await is_valid({"valid": ["isPathReal"]}, str(tmp_path))
        assert await is_valid({"valid": ["isPathReal"]}, "~/notes")
        assert not await is_valid({"valid": ["isPathReal"]}, str(tmp_path / "missing"))
        assert not await is_valid({"valid": ["isPathReal"]}, "")

    async def test_python_requires_kernel(self):
        with patch("kernel_bridge.validation.probe", return_value=env_info(True)):
            assert await is_valid({"valid": ["isPython"]}, sys.executable)
        with patch("kernel_bridge.validation.probe", return_value=env_info(False)):
            assert not await is_valid({"valid": ["isPython"]}, sys.executable)
        with patch("kernel_bridge.validation.probe", side_effect=ProbeError("not found")):
            assert not await is_valid({"valid": ["isPython"]}, "/nope/python")
        assert not await is_valid({"valid": ["isPython"]}, "")


def test_default_registry_names():
    assert default_registry().names() == ["isFontSize", "isPathReal", "isPython", "isTabSpace"]
