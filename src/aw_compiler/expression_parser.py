"""Parser for flat boolean condition expressions.

Grammar, lowest to highest precedence:

    or      := and ('||' and)*
    and     := unary ('&&' unary)*
    unary   := '!' unary | primary
    primary := '(' or ')' | literal

A literal is any run of text up to the next top-level `&&`, `||` or unmatched
`)`. It becomes an opaque ExpressionNode, so comparisons such as
`github.event_name == 'issues'` and calls such as `contains(a, 'b')` pass
through untouched. Quoted strings are opaque inside literals.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import NoReturn

from .errors import ExpressionParseError
from .expressions import (
    AndNode,
    ComparisonNode,
    ConditionNode,
    ContainsNode,
    DisjunctionNode,
    ExpressionNode,
    FunctionCallNode,
    NotNode,
    OrNode,
    TernaryNode,
)


class ExpressionParser:
    """Recursive-descent parser over a single expression string."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def parse(self) -> ConditionNode:
        """
        Parse the whole input.

        Returns:
            The root node of the parsed tree.

        Raises:
            ExpressionParseError: On empty input, unbalanced parentheses, a
                missing operand or trailing text.

        """
        if not self.text.strip():
            raise ExpressionParseError("empty expression", expression=self.text)

        node = self._parse_or()
        self._skip_whitespace()
        if self.pos < len(self.text):
            if self.text[self.pos] == ")":
                self._fail("unbalanced parentheses: unexpected ')'")
            self._fail(f"unexpected token {self.text[self.pos:self.pos + 2]!r}")
        return node

    # -------------------------------------------------------------------------
    # Grammar rules
    # -------------------------------------------------------------------------

    def _parse_or(self) -> ConditionNode:
        left = self._parse_and()
        while self._consume("||"):
            left = OrNode(left, self._parse_and())
        return left

    def _parse_and(self) -> ConditionNode:
        left = self._parse_unary()
        while self._consume("&&"):
            left = AndNode(left, self._parse_unary())
        return left

    def _parse_unary(self) -> ConditionNode:
        self._skip_whitespace()
        if self._peek() == "!" and self._peek(1) != "=":
            self.pos += 1
            return NotNode(self._parse_unary())
        return self._parse_primary()

    def _parse_primary(self) -> ConditionNode:
        self._skip_whitespace()
        if self.pos >= len(self.text):
            self._fail("expected operand")

        if self._peek() == "(":
            self.pos += 1
            node = self._parse_or()
            self._skip_whitespace()
            if self._peek() != ")":
                self._fail("unbalanced parentheses: missing ')'")
            self.pos += 1
            return node

        return self._parse_literal()

    def _parse_literal(self) -> ExpressionNode:
        start = self.pos
        depth = 0
        quote: str | None = None
        escaped = False

        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if quote is not None:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == quote:
                    quote = None
            elif ch in ("'", '"'):
                quote = ch
            elif ch == "(":
                depth += 1
            elif ch == ")":
                if depth == 0:
                    break
                depth -= 1
            elif depth == 0 and self.text[self.pos : self.pos + 2] in ("&&", "||"):
                break
            self.pos += 1

        if quote is not None:
            self._fail("unterminated string literal", position=start)
        if depth > 0:
            self._fail("unbalanced parentheses: missing ')'")

        literal = self.text[start : self.pos].strip()
        if not literal:
            self._fail("expected operand")
        return ExpressionNode(literal)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        return self.text[index] if index < len(self.text) else ""

    def _skip_whitespace(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _consume(self, operator: str) -> bool:
        self._skip_whitespace()
        if self.text.startswith(operator, self.pos):
            self.pos += len(operator)
            return True
        return False

    def _fail(self, message: str, *, position: int | None = None) -> NoReturn:
        raise ExpressionParseError(
            message,
            expression=self.text,
            position=self.pos if position is None else position,
        )


def parse_expression(text: str) -> ConditionNode:
    """Parse a boolean expression string into a condition tree."""
    return ExpressionParser(text).parse()


def visit_expression_tree(node: ConditionNode, visitor: Callable[[ExpressionNode], None]) -> None:
    """
    Call `visitor` on every ExpressionNode leaf, depth first, left to right.

    An exception raised by `visitor` stops the walk and propagates unchanged.
    """
    if isinstance(node, ExpressionNode):
        visitor(node)
    elif isinstance(node, (AndNode, OrNode)):
        visit_expression_tree(node.left, visitor)
        visit_expression_tree(node.right, visitor)
    elif isinstance(node, NotNode):
        visit_expression_tree(node.child, visitor)
    elif isinstance(node, DisjunctionNode):
        for term in node.terms:
            visit_expression_tree(term, visitor)
    elif isinstance(node, ComparisonNode):
        visit_expression_tree(node.left, visitor)
        visit_expression_tree(node.right, visitor)
    elif isinstance(node, FunctionCallNode):
        for arg in node.arguments:
            visit_expression_tree(arg, visitor)
    elif isinstance(node, ContainsNode):
        visit_expression_tree(node.array, visitor)
        visit_expression_tree(node.value, visitor)
    elif isinstance(node, TernaryNode):
        visit_expression_tree(node.condition, visitor)
        visit_expression_tree(node.true_value, visitor)
        visit_expression_tree(node.false_value, visitor)


def collect_literals(node: ConditionNode) -> list[str]:
    """Return the text of every literal leaf, in order."""
    literals: list[str] = []
    visit_expression_tree(node, lambda leaf: literals.append(leaf.expression))
    return literals
