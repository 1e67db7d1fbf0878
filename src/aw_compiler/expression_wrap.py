"""Line-wrapping for long rendered expressions.

Rendered conditions can get long enough to be unreadable in a lock file. These
helpers reflow an expression string onto several lines, breaking only after a
`&&` or `||` that sits outside any quoted string literal. Joining the lines
with single spaces gives back the original expression modulo whitespace.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

MAX_EXPRESSION_LINE_LENGTH = 120
"""Target maximum length of a wrapped line."""

_OPERATORS = ("&&", "||")


def normalize_expression_for_comparison(expression: str) -> str:
    """Collapse every whitespace run (newlines included) to one space and trim."""
    return " ".join(expression.split())


def _split_at_operators(expression: str, *, top_level_only: bool) -> list[str]:
    """
    Split after each `&&`/`||` that is followed by whitespace.

    Operators inside single or double quoted strings (honoring backslash
    escapes) never split. With `top_level_only`, operators nested inside
    parentheses don't split either.

    Each piece keeps its trailing operator; the whitespace after the operator
    is dropped.
    """
    pieces: list[str] = []
    start = 0
    depth = 0
    quote: str | None = None
    escaped = False
    i = 0
    n = len(expression)

    while i < n:
        ch = expression[i]
        if quote is not None:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            i += 1
            continue

        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
        elif expression[i : i + 2] in _OPERATORS and (depth == 0 or not top_level_only):
            end = i + 2
            if end < n and expression[end].isspace():
                piece = expression[start:end].strip()
                if piece:
                    pieces.append(piece)
                while end < n and expression[end].isspace():
                    end += 1
                start = end
                i = end
                continue
        i += 1

    tail = expression[start:].strip()
    if tail:
        pieces.append(tail)
    return pieces


def _pack_lines(pieces: list[str], max_length: int) -> list[str]:
    """Greedily join pieces with single spaces into lines of at most `max_length`."""
    lines: list[str] = []
    current = ""
    for piece in pieces:
        if not current:
            current = piece
        elif len(current) + 1 + len(piece) <= max_length:
            current = f"{current} {piece}"
        else:
            lines.append(current)
            current = piece
    if current:
        lines.append(current)
    return lines


def break_at_parentheses(expression: str, max_length: int = MAX_EXPRESSION_LINE_LENGTH) -> list[str]:
    """Break only at operators outside every parenthesis group."""
    if len(expression) <= max_length:
        return [expression]
    return _pack_lines(_split_at_operators(expression, top_level_only=True), max_length)


def break_long_expression(expression: str, max_length: int = MAX_EXPRESSION_LINE_LENGTH) -> list[str]:
    """
    Break a long expression into lines of roughly `max_length` characters.

    Top-level operators are preferred. A top-level piece that is still too long
    is broken again at its nested operators. A piece without any usable
    operator is kept whole, even if it exceeds `max_length`.

    Args:
        expression: A rendered, single-line expression.
        max_length: Target maximum line length.

    Returns:
        The lines, in order. A short expression comes back as a single line.

    """
    if len(expression) <= max_length:
        return [expression]

    pieces: list[str] = []
    for piece in _split_at_operators(expression, top_level_only=True):
        if len(piece) > max_length:
            pieces.extend(_split_at_operators(piece, top_level_only=False))
        else:
            pieces.append(piece)

    lines = _pack_lines(pieces, max_length)
    logger.debug("Broke %d character expression into %d lines", len(expression), len(lines))
    return lines
