"""
Tests for interpreter probing.
Uses mocked subprocess calls so no second interpreter is needed.
"""

import json
import subprocess
import sys
from unittest.mock import Mock, patch

import pytest

from kernel_bridge.environment import has_jupyter_kernel, probe
from kernel_bridge.errors import ProbeError
from kernel_bridge.paths import resolve_executable, resolve_home_directory

PROBE_OUTPUT = json.dumps(
    {
        "executable": "/opt/python/bin/python3",
        "version": "3.11.4",
        "cwd": "/home/user",
        "argv": ["-c"],
        "packages": ["numpy==1.26.0", "ipykernel==6.29.0"],
    }
)


class TestProbe:
    @patch("subprocess.run")
    def test_probe_success(self, mock_run):
        mock_run.side_effect = [
            Mock(returncode=0, stdout=PROBE_OUTPUT + "\n", stderr=""),
            Mock(returncode=0, stdout="", stderr=""),
        ]

        info = probe(sys.executable)

        assert info.version == "3.11.4"
        assert info.executable == "/opt/python/bin/python3"
        assert info.packages == ["ipykernel==6.29.0", "numpy==1.26.0"]
        assert info.has_jupyter_kernel is True
        assert info.to_wire()["hasJupyterKernel"] is True
        assert mock_run.call_count == 2
        assert mock_run.call_args_list[1][0][0][1:] == ["-c", "import ipykernel"]

    @patch("subprocess.run")
    def test_missing_ipykernel_is_not_an_error(self, mock_run):
        mock_run.side_effect = [
            Mock(returncode=0, stdout=PROBE_OUTPUT, stderr=""),
            Mock(returncode=1, stdout="", stderr="ModuleNotFoundError: No module named 'ipykernel'"),
        ]

        info = probe(sys.executable)

        assert info.has_jupyter_kernel is False

    @patch("subprocess.run")
    def test_non_zero_exit(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="boom")

        with pytest.raises(ProbeError, match="boom"):
            probe(sys.executable)

    @patch("subprocess.run")
    def test_unparsable_output(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="Python 2.7 says hi", stderr="")

        with pytest.raises(ProbeError):
            probe(sys.executable)

    @patch("subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="python", timeout=1)

        with pytest.raises(ProbeError):
            probe(sys.executable, timeout=1)

    def test_missing_candidate(self, tmp_path):
        with pytest.raises(ProbeError, match="not found"):
            probe(str(tmp_path / "no-such-python"))

    def test_non_executable_candidate(self, tmp_path):
        fake = tmp_path / "python"
        fake.write_text("not a binary")
        fake.chmod(0o644)

        with pytest.raises(ProbeError):
            probe(str(fake))

    @patch("subprocess.run")
    def test_home_relative_candidate_is_expanded(self, mock_run, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        python = tmp_path / "bin" / "python"
        python.parent.mkdir()
        python.write_text("#!/bin/sh\n")
        python.chmod(0o755)
        mock_run.side_effect = [
            Mock(returncode=0, stdout=PROBE_OUTPUT, stderr=""),
            Mock(returncode=0, stdout="", stderr=""),
        ]

        probe("~/bin/python")

        assert mock_run.call_args_list[0][0][0][0] == str(python)


class TestHasJupyterKernel:
    @patch("subprocess.run")
    def test_os_error_means_false(self, mock_run):
        mock_run.side_effect = OSError("exec format error")
        assert has_jupyter_kernel("/bin/python") is False


@pytest.mark.integration
def test_probe_current_interpreter():
    info = probe(sys.executable)

    assert info.version == "%d.%d.%d" % sys.version_info[:3]
    assert info.packages == sorted(info.packages)
    assert all("==" in package for package in info.packages)


class TestPaths:
    def test_resolve_home_directory(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert resolve_home_directory("~/x") == f"{tmp_path}/x"
        assert resolve_home_directory("%HOME%/x") == f"{tmp_path}/x"
        assert resolve_home_directory("/abs/x") == "/abs/x"
        assert resolve_home_directory("") == ""

    def test_resolve_bare_name_on_path(self, monkeypatch, tmp_path):
        tool = tmp_path / "mypython"
        tool.write_text("#!/bin/sh\n")
        tool.chmod(0o755)
        monkeypatch.setenv("PATH", str(tmp_path))

        assert resolve_executable("mypython") == str(tool)

    def test_resolve_missing(self, tmp_path):
        assert resolve_executable(str(tmp_path / "nothing")) is None
