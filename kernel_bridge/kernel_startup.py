"""
Kernel Helper Code
==================

Python source sent to the kernel alongside evaluate and status requests.

The helpers are (re)defined by the silent ``code`` of each request and then
called from ``user_expressions``, so they survive ``%reset`` or an accidental
``del`` in user code. Their names start with an underscore, which keeps them
out of the namespace snapshot they produce.

Keeping the injected code in one module makes it easy to audit exactly what
runs inside the user's interpreter.
"""

from typing import Dict

HELPER_CODE = '''
def _kernel_bridge_json(value):
    import json
    return json.dumps(value, default=repr)

def _kernel_bridge_status():
    import json
    import os
    import types

    try:
        hidden = get_ipython().user_ns_hidden
    except NameError:
        hidden = {}

    buckets = {
        "function": [], "Series": [], "list": [], "DataFrame": [],
        "other": [], "dict": [], "ndarray": [],
    }
    for name, value in list(globals().items()):
        if name.startswith("_") or name in hidden or isinstance(value, types.ModuleType):
            continue
        if isinstance(value, (types.FunctionType, types.BuiltinFunctionType)):
            bucket = "function"
        elif isinstance(value, list):
            bucket = "list"
        elif isinstance(value, dict):
            bucket = "dict"
        else:
            type_name = type(value).__name__
            bucket = type_name if type_name in ("ndarray", "DataFrame", "Series") else "other"
        buckets[bucket].append(name)

    return json.dumps({"cwd": os.getcwd(), "variables": buckets})
'''

EVAL_EXPRESSION_KEY = "value"
STATUS_EXPRESSION_KEY = "status"


def eval_expressions(expression: str) -> Dict[str, str]:
    """user_expressions that JSON-encode ``expression`` inside the kernel."""
    return {EVAL_EXPRESSION_KEY: f"_kernel_bridge_json(({expression}))"}


def status_expressions() -> Dict[str, str]:
    return {STATUS_EXPRESSION_KEY: "_kernel_bridge_status()"}


def silent_execute_content(user_expressions: Dict[str, str]) -> Dict:
    """Content of an execute_request that runs only the helpers and evaluates expressions."""
    return {
        "code": HELPER_CODE,
        "silent": True,
        "store_history": False,
        "user_expressions": user_expressions,
        "allow_stdin": False,
        "stop_on_error": False,
    }


def execute_content(code: str) -> Dict:
    """Content of a user-visible execute_request."""
    return {
        "code": code,
        "silent": False,
        "store_history": True,
        "user_expressions": {},
        "allow_stdin": True,
        "stop_on_error": True,
    }
