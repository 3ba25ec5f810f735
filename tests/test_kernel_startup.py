"""
Tests for the helper code injected into the kernel.

The helpers are plain Python, so they are exercised here in a scratch
namespace standing in for the kernel's user namespace.
"""

import json
import os

from kernel_bridge.kernel_startup import (
    HELPER_CODE,
    eval_expressions,
    execute_content,
    silent_execute_content,
    status_expressions,
)
from kernel_bridge.models import VARIABLE_BUCKETS


class FakeFrame:
    pass


class ndarray:
    pass


class DataFrame:
    pass


def run_helpers(namespace):
    exec(HELPER_CODE, namespace)
    return namespace


def test_json_helper_falls_back_to_repr():
    ns = run_helpers({})
    assert json.loads(ns["_kernel_bridge_json"]([1, "a", None])) == [1, "a", None]
    assert json.loads(ns["_kernel_bridge_json"]({"obj": FakeFrame})) == {"obj": repr(FakeFrame)}


def test_status_buckets_user_namespace():
    ns = {
        "items": [1, 2],
        "table": {"a": 1},
        "arr": ndarray(),
        "df": DataFrame(),
        "count": 3,
        "_private": 1,
        "json": json,
    }
    run_helpers(ns)

    def greet():
        return "hi"

    ns["greet"] = greet
    ns["length"] = len

    status = json.loads(ns["_kernel_bridge_status"]())

    assert status["cwd"] == os.getcwd()
    assert set(status["variables"]) == set(VARIABLE_BUCKETS)
    assert status["variables"]["list"] == ["items"]
    assert status["variables"]["dict"] == ["table"]
    assert status["variables"]["ndarray"] == ["arr"]
    assert status["variables"]["DataFrame"] == ["df"]
    assert sorted(status["variables"]["function"]) == ["greet", "length"]
    assert status["variables"]["other"] == ["count"]
    assert status["variables"]["Series"] == []


def test_status_skips_hidden_names():
    class Shell:
        user_ns_hidden = {"In": None, "exit": None}

    ns = {"In": [], "exit": object(), "get_ipython": lambda: Shell()}
    run_helpers(ns)

    status = json.loads(ns["_kernel_bridge_status"]())

    assert status["variables"]["list"] == []
    assert status["variables"]["other"] == []
    # get_ipython itself is not in the hidden set of this fake shell
    assert status["variables"]["function"] == ["get_ipython"]


def test_request_contents():
    silent = silent_execute_content(eval_expressions("1 + 1"))
    assert silent["silent"] is True
    assert silent["allow_stdin"] is False
    assert silent["user_expressions"] == {"value": "_kernel_bridge_json((1 + 1))"}
    assert status_expressions() == {"status": "_kernel_bridge_status()"}

    visible = execute_content("print(1)")
    assert visible["code"] == "print(1)"
    assert visible["silent"] is False
    assert visible["allow_stdin"] is True
    assert visible["user_expressions"] == {}
