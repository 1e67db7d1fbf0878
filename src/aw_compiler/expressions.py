"""Condition expressions for generated GitHub Actions `if:` clauses.

Every condition that ends up in a compiled workflow is built as a small tree of
immutable nodes and rendered to text at the last moment. Rendering is fixed and
deterministic so that generated lock files are stable across compiles:

    And(l, r)            -> (L) && (R)
    Or(l, r)             -> (L) || (R)
    Not(c)               -> !(C)
    Comparison(l, op, r) -> L op R
    FunctionCall(f, a..) -> f(A1, A2)

Example:
    condition = build_and(
        build_event_type_equals("pull_request"),
        build_label_contains("deploy"),
    )
    condition.render()
    # "(github.event_name == 'pull_request') && (contains(github.event.issue.labels.*.name, 'deploy'))"

Nodes can also be combined with `&`, `|` and `~`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from .expression_wrap import break_long_expression

logger = logging.getLogger(__name__)

AGENT_JOB_NAME = "agent"
DETECTION_JOB_NAME = "detection"


# =============================================================================
# Node types
# =============================================================================


class ConditionNode:
    """Base class for condition expression nodes.

    Nodes are immutable and own their children. They map to GHA expression
    syntax through `render()`.
    """

    description: str | None = None
    """Human readable description, shown as a comment in multiline renders."""

    def __and__(self, other: ConditionNode) -> AndNode:
        """Logical AND."""
        return AndNode(self, other)

    def __or__(self, other: ConditionNode) -> OrNode:
        """Logical OR."""
        return OrNode(self, other)

    def __invert__(self) -> NotNode:
        """Logical NOT."""
        return NotNode(self)

    def __bool__(self) -> bool:
        """Raise error - expressions can't be used in Python control flow."""
        raise TypeError(
            "Condition nodes cannot be used in Python control flow.\n"
            "Compare against None or call render() to inspect the expression."
        )

    def render(self) -> str:
        """Render to GitHub Actions expression syntax."""
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class ExpressionNode(ConditionNode):
    """Opaque expression text, rendered verbatim."""

    expression: str
    description: str | None = None

    def render(self) -> str:
        return self.expression


@dataclass(frozen=True)
class AndNode(ConditionNode):
    """Logical AND of two conditions."""

    left: ConditionNode
    right: ConditionNode

    def render(self) -> str:
        return f"({self.left.render()}) && ({self.right.render()})"


@dataclass(frozen=True)
class OrNode(ConditionNode):
    """Logical OR of two conditions."""

    left: ConditionNode
    right: ConditionNode

    def render(self) -> str:
        return f"({self.left.render()}) || ({self.right.render()})"


@dataclass(frozen=True)
class NotNode(ConditionNode):
    """Logical NOT of a condition."""

    child: ConditionNode

    def render(self) -> str:
        return f"!({self.child.render()})"


@dataclass(frozen=True)
class ComparisonNode(ConditionNode):
    """Binary comparison such as `a == b` (no parentheses added)."""

    left: ConditionNode
    operator: str
    right: ConditionNode

    def render(self) -> str:
        return f"{self.left.render()} {self.operator} {self.right.render()}"


@dataclass(frozen=True)
class PropertyAccessNode(ConditionNode):
    """Dotted context path, e.g. `github.event.action`."""

    path: str

    def render(self) -> str:
        return self.path


@dataclass(frozen=True)
class StringLiteralNode(ConditionNode):
    """Single-quoted string literal."""

    value: str

    def render(self) -> str:
        return f"'{self.value}'"


@dataclass(frozen=True)
class NumberLiteralNode(ConditionNode):
    """Numeric literal, rendered as given."""

    value: str

    def render(self) -> str:
        return self.value


@dataclass(frozen=True)
class BooleanLiteralNode(ConditionNode):
    """`true` or `false`."""

    value: bool

    def render(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class FunctionCallNode(ConditionNode):
    """Call of a builtin expression function, e.g. `startsWith(github.ref, 'refs/tags/')`."""

    name: str
    arguments: tuple[ConditionNode, ...] = ()

    def render(self) -> str:
        args = ", ".join(arg.render() for arg in self.arguments)
        return f"{self.name}({args})"


@dataclass(frozen=True)
class ContainsNode(ConditionNode):
    """Shorthand for `contains(array, value)`."""

    array: ConditionNode
    value: ConditionNode

    def render(self) -> str:
        return f"contains({self.array.render()}, {self.value.render()})"


@dataclass(frozen=True)
class TernaryNode(ConditionNode):
    """`condition ? true_value : false_value`."""

    condition: ConditionNode
    true_value: ConditionNode
    false_value: ConditionNode

    def render(self) -> str:
        return f"{self.condition.render()} ? {self.true_value.render()} : {self.false_value.render()}"


@dataclass(frozen=True)
class DisjunctionNode(ConditionNode):
    """Flat OR over any number of terms.

    Avoids the deep nesting that chaining `OrNode` would produce. With
    `multiline` set, each term goes on its own line, preceded by a `# ...`
    comment line when the term has a description.
    """

    terms: tuple[ConditionNode, ...] = ()
    multiline: bool = False

    def render(self) -> str:
        if self.multiline:
            return self.render_multiline()
        if not self.terms:
            return ""
        if len(self.terms) == 1:
            return self.terms[0].render()
        return " || ".join(term.render() for term in self.terms)

    def render_multiline(self) -> str:
        """Render one term per line, with descriptions as comments."""
        if not self.terms:
            return ""
        if len(self.terms) == 1:
            return self.terms[0].render()

        lines: list[str] = []
        last = len(self.terms) - 1
        for i, term in enumerate(self.terms):
            if term.description:
                lines.append(f"# {term.description}")
            rendered = term.render()
            lines.append(rendered if i == last else f"{rendered} ||")
        return "\n".join(lines)


# =============================================================================
# Builders
# =============================================================================


def build_or(left: ConditionNode, right: ConditionNode) -> OrNode:
    return OrNode(left, right)


def build_and(left: ConditionNode, right: ConditionNode) -> AndNode:
    return AndNode(left, right)


def build_not(child: ConditionNode) -> NotNode:
    return NotNode(child)


def build_and_all(conditions: Iterable[ConditionNode]) -> ConditionNode | None:
    """Left-fold conditions with AND.

    Returns None for an empty input and the sole element for a single one.
    """
    result: ConditionNode | None = None
    for condition in conditions:
        result = condition if result is None else AndNode(result, condition)
    return result


def build_property_access(path: str) -> PropertyAccessNode:
    return PropertyAccessNode(path)


def build_string_literal(value: str) -> StringLiteralNode:
    return StringLiteralNode(value)


def build_boolean_literal(value: bool) -> BooleanLiteralNode:
    return BooleanLiteralNode(value)


def build_number_literal(value: str | int | float) -> NumberLiteralNode:
    return NumberLiteralNode(str(value))


def build_null_literal() -> ExpressionNode:
    return ExpressionNode("null")


def build_comparison(left: ConditionNode, operator: str, right: ConditionNode) -> ComparisonNode:
    return ComparisonNode(left, operator, right)


def build_equals(left: ConditionNode, right: ConditionNode) -> ComparisonNode:
    return ComparisonNode(left, "==", right)


def build_not_equals(left: ConditionNode, right: ConditionNode) -> ComparisonNode:
    return ComparisonNode(left, "!=", right)


def build_contains(array: ConditionNode, value: ConditionNode) -> ContainsNode:
    return ContainsNode(array, value)


def build_function_call(name: str, *args: ConditionNode) -> FunctionCallNode:
    return FunctionCallNode(name, tuple(args))


def build_ternary(condition: ConditionNode, true_value: ConditionNode, false_value: ConditionNode) -> TernaryNode:
    return TernaryNode(condition, true_value, false_value)


def build_expression_with_description(expression: str, description: str | None) -> ExpressionNode:
    return ExpressionNode(expression, description=description or None)


def build_disjunction(multiline: bool, *terms: ConditionNode) -> DisjunctionNode:
    """Build a disjunction of any number of terms (including zero or one)."""
    return DisjunctionNode(tuple(terms), multiline=multiline)


def build_label_contains(label: str) -> ContainsNode:
    """Check that the triggering issue carries `label`."""
    return build_contains(
        build_property_access("github.event.issue.labels.*.name"),
        build_string_literal(label),
    )


def build_action_equals(action: str) -> ComparisonNode:
    return build_equals(build_property_access("github.event.action"), build_string_literal(action))


def build_event_type_equals(event_type: str) -> ComparisonNode:
    return build_equals(build_property_access("github.event_name"), build_string_literal(event_type))


def build_event_type_not_equals(event_type: str) -> ComparisonNode:
    return build_not_equals(build_property_access("github.event_name"), build_string_literal(event_type))


def build_ref_starts_with(prefix: str) -> FunctionCallNode:
    return build_function_call("startsWith", build_property_access("github.ref"), build_string_literal(prefix))


def build_not_from_fork() -> ComparisonNode:
    """Pull request head repository is the base repository (compared by id)."""
    return build_equals(
        build_property_access("github.event.pull_request.head.repo.id"),
        build_property_access("github.repository_id"),
    )


def build_from_allowed_forks(allowed_forks: Iterable[str]) -> ConditionNode:
    """
    Allow pull requests from the base repository or from the listed forks.

    Args:
        allowed_forks: Exact `owner/repo` names or `owner/*` globs.

    Returns:
        The same-repository check alone when no forks are listed, otherwise a
        disjunction starting with it.

    """
    conditions: list[ConditionNode] = [build_not_from_fork()]
    full_name = build_property_access("github.event.pull_request.head.repo.full_name")
    for pattern in allowed_forks:
        if pattern.endswith("/*"):
            prefix = pattern[:-1]
            conditions.append(build_function_call("startsWith", full_name, build_string_literal(prefix)))
        else:
            conditions.append(build_equals(full_name, build_string_literal(pattern)))

    if len(conditions) == 1:
        return conditions[0]
    return DisjunctionNode(tuple(conditions))


def build_reaction_condition() -> DisjunctionNode:
    """Events on which a reaction can be added to the triggering item.

    Pull requests from forks are excluded since their token is read-only.
    """
    terms: list[ConditionNode] = [
        build_event_type_equals(event)
        for event in ("issues", "issue_comment", "pull_request_review_comment", "discussion", "discussion_comment")
    ]
    terms.append(AndNode(build_event_type_equals("pull_request"), build_not_from_fork()))
    return DisjunctionNode(tuple(terms))


def build_safe_output_type(output_type: str) -> AndNode:
    """
    Gate for a safe-output step of the given type.

    Runs unless the workflow was cancelled, the agent job was skipped, or the
    agent produced no output of this type.
    """
    not_cancelled = NotNode(build_function_call("cancelled"))
    agent_not_skipped = build_not_equals(
        build_property_access(f"needs.{AGENT_JOB_NAME}.result"),
        build_string_literal("skipped"),
    )
    has_type = build_function_call(
        "contains",
        build_property_access(f"needs.{AGENT_JOB_NAME}.outputs.output_types"),
        build_string_literal(output_type),
    )
    return AndNode(AndNode(not_cancelled, agent_not_skipped), has_type)


def build_condition_tree(existing: str, draft: str) -> ConditionNode:
    """Combine an existing `if` text with a new one, existing first."""
    draft_node = ExpressionNode(draft)
    if not existing:
        return draft_node
    return AndNode(ExpressionNode(existing), draft_node)


def build_workflow_run_repo_safety() -> ConditionNode:
    """Only react to `workflow_run` events from this repository and not from forks."""
    same_repo = build_equals(
        build_property_access("github.event.workflow_run.repository.id"),
        build_property_access("github.repository_id"),
    )
    not_fork = NotNode(build_property_access("github.event.workflow_run.repository.fork"))
    return build_or(
        build_event_type_not_equals("workflow_run"),
        build_and(same_repo, not_fork),
    )


def add_detection_success_check(existing: str) -> str:
    """AND a check that the threat detection job passed onto an existing condition."""
    detection_success = build_equals(
        build_property_access(f"needs.{DETECTION_JOB_NAME}.outputs.success"),
        build_string_literal("true"),
    )
    if existing:
        return f"({existing}) && ({detection_success.render()})"
    return detection_success.render()


# =============================================================================
# Expression text helpers
# =============================================================================


def strip_expression_wrapper(expression: str) -> str:
    """Remove a surrounding `${{ ... }}` wrapper, if present."""
    text = expression.strip()
    if text.startswith("${{") and text.endswith("}}"):
        return text[3:-2].strip()
    return text


def combine_if_conditions(*conditions: str) -> str:
    """AND together non-empty `if` texts, unwrapping `${{ }}` when combining."""
    present = [c for c in conditions if c and c.strip()]
    if not present:
        return ""
    if len(present) == 1:
        return present[0]
    first, *rest = (ExpressionNode(strip_expression_wrapper(c)) for c in present)
    node: ConditionNode = first
    for condition in rest:
        node = AndNode(node, condition)
    return node.render()


def render_condition_as_if(condition: ConditionNode) -> str:
    """
    Render a condition for an `if:` key.

    Multiline disjunctions keep their line layout. Long single-line expressions
    are broken at `&&`/`||` boundaries; the YAML renderer emits any value
    containing newlines as a block scalar.
    """
    rendered = condition.render()
    if "\n" in rendered:
        return rendered
    lines = break_long_expression(rendered)
    logger.debug("Rendered if condition into %d line(s)", len(lines))
    return "\n".join(lines)
