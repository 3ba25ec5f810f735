"""
Tests for the structural completeness classifier.
"""

import pytest
from hypothesis import given, strategies as st

from kernel_bridge.completeness import check_complete, normalize_kernel_reply


@pytest.mark.parametrize(
    "source",
    [
        'print "Hello"',
        "x = 1",
        "x = 1\n",
        "",
        "   ",
        "# just a comment",
        "d = {'a': [1, 2, (3, 4)]}",
        "s = 'it''s'",
        "for i in range(3):\n    print(i)\n\n",
        "if x:\n    pass\nelse:\n    pass\n\n",
        "x = lambda: 1",
        "f(a,\n  b)",
        "s = '''one\ntwo'''",
        "s = 'a#b'  # trailing comment with ( bracket",
        "text = 'escaped \\' quote'",
    ],
)
def test_complete(source):
    assert check_complete(source).to_wire() == {"status": "complete"}


@pytest.mark.parametrize(
    "source,indent",
    [
        ("x = range(10", ""),
        ("x = [1,\n", ""),
        ("s = '''open", ""),
        ("x = 1 + \\", ""),
        ("for i in range(3):", "    "),
        ("def f():\n    if x:", "        "),
        ("for i in range(3):\n    print(i)", "    "),
        ("for i in range(3):\n    print(i)\n", "    "),
        ("if x:  # comment", "    "),
        ("def f():\n    return (1,", "    "),
    ],
)
def test_incomplete(source, indent):
    assert check_complete(source).to_wire() == {"status": "incomplete", "indent": indent}


@pytest.mark.parametrize(
    "source",
    [
        'print "Hello',
        "x = 'abc",
        "x = (1]",
        "x = 1)",
        "if x:\n        a = 1\n    b = 2",
        "if x:\ny = 1",
        "x = 1\n    y = 2",
    ],
)
def test_invalid(source):
    assert check_complete(source).to_wire() == {"status": "invalid"}


@given(st.text(alphabet="ab =:()[]{}'\"#\\\n\t", max_size=40))
def test_classifier_is_total(source):
    reply = check_complete(source)
    assert reply.status in ("complete", "incomplete", "invalid")
    if reply.status == "incomplete":
        assert reply.indent is not None
        assert reply.indent.strip() == ""


class TestNormalizeKernelReply:
    def test_incomplete_keeps_indent(self):
        assert normalize_kernel_reply({"status": "incomplete", "indent": "  "}).to_wire() == {
            "status": "incomplete",
            "indent": "  ",
        }

    def test_other_statuses_drop_indent(self):
        assert normalize_kernel_reply({"status": "complete", "indent": ""}).to_wire() == {
            "status": "complete"
        }

    def test_unexpected_status_is_unknown(self):
        assert normalize_kernel_reply({"status": "weird"}).to_wire() == {"status": "unknown"}
