"""
Structural completeness check for source snippets.

Classifies a snippet the way a console decides whether to run it or wait
for more lines:

- ``invalid``: a defect no further input can repair (a single-quoted string
  that ends with the line, a closing bracket without an opener, a dedent to a
  level that never existed, a block header with no indented body).
- ``incomplete``: more lines are expected (open bracket, open triple-quoted
  string, trailing backslash, trailing ``:``, or an indented block that has
  not been closed by a blank line). ``indent`` is the whitespace the next
  line should start with.
- ``complete``: everything else.

Only block, bracket and string structure is checked, not the grammar:
statements such as ``print "Hello"`` count as complete and any grammar error
surfaces when the code is executed. The scanner is self-contained so the
classification does not drift between interpreter versions.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from .models import CompletenessReply

INDENT_UNIT = "    "

_OPENERS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}


class _Invalid(Exception):
    pass


@dataclass
class _ScanState:
    brackets: List[str] = field(default_factory=list)
    string_quote: Optional[str] = None  # one of ' " ''' """
    continued: bool = False  # backslash continuation outside a string
    stmt_indent: str = ""
    last_char: str = ""
    indent_stack: List[int] = field(default_factory=lambda: [0])
    expect_block: bool = False
    seen_statement: bool = False

    @property
    def in_logical_line(self) -> bool:
        return bool(self.brackets) or self.string_quote is not None or self.continued


def _width(indent: str) -> int:
    return len(indent.expandtabs(8))


def _start_logical_line(state: _ScanState, line: str):
    indent = line[: len(line) - len(line.lstrip(" \t\f"))]
    width = _width(indent)

    if not state.seen_statement:
        # The first statement fixes the base level
        state.indent_stack = [width]
    elif state.expect_block:
        if width <= state.indent_stack[-1]:
            raise _Invalid("expected an indented block")
        state.indent_stack.append(width)
    elif width > state.indent_stack[-1]:
        raise _Invalid("unexpected indent")
    else:
        while width < state.indent_stack[-1]:
            state.indent_stack.pop()
        if width != state.indent_stack[-1]:
            raise _Invalid("unindent does not match any outer indentation level")

    state.seen_statement = True
    state.expect_block = False
    state.stmt_indent = indent
    state.last_char = ""


def _scan_line(state: _ScanState, line: str):
    i = 0
    n = len(line)
    state.continued = False

    while i < n:
        quote = state.string_quote
        if quote is not None:
            c = line[i]
            if c == "\\":
                if i + 1 >= n:
                    # Escaped newline keeps even a single-quoted string open
                    return
                i += 2
                continue
            if line.startswith(quote, i):
                state.string_quote = None
                state.last_char = quote[-1]
                i += len(quote)
                continue
            i += 1
            continue

        c = line[i]
        if c == "#":
            break
        if c in "\"'":
            triple = c * 3
            if line.startswith(triple, i):
                state.string_quote = triple
                i += 3
            else:
                state.string_quote = c
                i += 1
            continue
        if c in _OPENERS:
            state.brackets.append(c)
        elif c in _CLOSERS:
            if not state.brackets or state.brackets[-1] != _CLOSERS[c]:
                raise _Invalid(f"unmatched '{c}'")
            state.brackets.pop()
        if c == "\\" and line[i + 1:].strip() == "":
            state.continued = True
            return
        if not c.isspace():
            state.last_char = c
        i += 1

    if state.string_quote in ("'", '"'):
        raise _Invalid("unterminated string literal")


def _ends_with_blank_line(source: str) -> bool:
    lines = source.split("\n")
    if source.endswith("\n"):
        lines = lines[:-1]
    return bool(lines) and lines[-1].strip() == ""


def check_complete(source: str) -> CompletenessReply:
    """Classify ``source`` as complete, incomplete (with indent) or invalid."""
    if not source.strip():
        return CompletenessReply(status="complete")

    state = _ScanState()
    try:
        for line in source.split("\n"):
            if not state.in_logical_line:
                stripped = line.strip()
                if not stripped or stripped.startswith("#"):
                    continue
                _start_logical_line(state, line)
            _scan_line(state, line)
            if not state.in_logical_line:
                state.expect_block = state.last_char == ":"
    except _Invalid:
        return CompletenessReply(status="invalid")

    if state.in_logical_line:
        return CompletenessReply(status="incomplete", indent=state.stmt_indent)

    if state.expect_block:
        return CompletenessReply(status="incomplete", indent=state.stmt_indent + INDENT_UNIT)

    inside_block = len(state.indent_stack) > 1
    if inside_block and not _ends_with_blank_line(source):
        return CompletenessReply(status="incomplete", indent=state.stmt_indent)

    return CompletenessReply(status="complete")


def normalize_kernel_reply(content: dict) -> CompletenessReply:
    """Map an is_complete_reply from the kernel onto the same shapes."""
    status = content.get("status", "unknown")
    if status not in ("complete", "incomplete", "invalid", "unknown"):
        status = "unknown"
    if status == "incomplete":
        return CompletenessReply(status=status, indent=content.get("indent", "") or "")
    return CompletenessReply(status=status)
