"""Tests for condition expression nodes and builders."""

import pytest

from aw_compiler.expression_wrap import normalize_expression_for_comparison
from aw_compiler.expressions import (
    AndNode,
    BooleanLiteralNode,
    ComparisonNode,
    ContainsNode,
    DisjunctionNode,
    ExpressionNode,
    FunctionCallNode,
    NotNode,
    NumberLiteralNode,
    OrNode,
    PropertyAccessNode,
    StringLiteralNode,
    TernaryNode,
    add_detection_success_check,
    build_action_equals,
    build_and_all,
    build_condition_tree,
    build_disjunction,
    build_event_type_equals,
    build_expression_with_description,
    build_from_allowed_forks,
    build_label_contains,
    build_null_literal,
    build_number_literal,
    build_property_access,
    build_reaction_condition,
    build_ref_starts_with,
    build_safe_output_type,
    build_string_literal,
    build_ternary,
    build_workflow_run_repo_safety,
    combine_if_conditions,
    render_condition_as_if,
    strip_expression_wrapper,
)


class TestRendering:
    """Fixed renderings of every node type."""

    def test_and(self) -> None:
        """AND wraps both sides in parentheses."""
        assert AndNode(ExpressionNode("a"), ExpressionNode("b")).render() == "(a) && (b)"

    def test_or(self) -> None:
        """OR wraps both sides in parentheses."""
        assert OrNode(ExpressionNode("a"), ExpressionNode("b")).render() == "(a) || (b)"

    def test_not(self) -> None:
        """NOT wraps its child."""
        assert NotNode(ExpressionNode("a")).render() == "!(a)"

    def test_comparison_has_no_parens(self) -> None:
        """Comparisons render bare."""
        node = ComparisonNode(PropertyAccessNode("github.event_name"), "==", StringLiteralNode("issues"))
        assert node.render() == "github.event_name == 'issues'"

    def test_literals(self) -> None:
        """Literals render as raw values, strings single-quoted."""
        assert StringLiteralNode("x").render() == "'x'"
        assert NumberLiteralNode("42").render() == "42"
        assert BooleanLiteralNode(True).render() == "true"
        assert BooleanLiteralNode(False).render() == "false"
        assert PropertyAccessNode("github.ref").render() == "github.ref"
        assert build_number_literal(3).render() == "3"
        assert build_null_literal().render() == "null"

    def test_function_call(self) -> None:
        """Arguments are comma-space separated; no arguments gives `name()`."""
        assert FunctionCallNode("always").render() == "always()"
        node = FunctionCallNode("startsWith", (PropertyAccessNode("github.ref"), StringLiteralNode("refs/tags/")))
        assert node.render() == "startsWith(github.ref, 'refs/tags/')"
        assert build_ref_starts_with("refs/tags/").render() == node.render()

    def test_contains(self) -> None:
        """Contains is sugar for the two-argument function call."""
        node = ContainsNode(PropertyAccessNode("a.b"), StringLiteralNode("v"))
        assert node.render() == "contains(a.b, 'v')"

    def test_ternary(self) -> None:
        """Ternary children are rendered as-is."""
        node = TernaryNode(PropertyAccessNode("a"), StringLiteralNode("x"), StringLiteralNode("y"))
        assert node.render() == "a ? 'x' : 'y'"

    def test_str_is_render(self) -> None:
        """str() of a node is its rendering."""
        assert str(NotNode(ExpressionNode("a"))) == "!(a)"


class TestDisjunction:
    """Tests for DisjunctionNode."""

    def test_empty(self) -> None:
        """An empty disjunction renders as the empty string."""
        assert DisjunctionNode().render() == ""
        assert DisjunctionNode(multiline=True).render() == ""

    def test_single_term_is_unwrapped(self) -> None:
        """One term renders as that term."""
        assert build_disjunction(False, ExpressionNode("a == b")).render() == "a == b"

    def test_single_line(self) -> None:
        """Terms are joined with ` || `."""
        node = build_disjunction(False, ExpressionNode("a"), ExpressionNode("b"), ExpressionNode("c"))
        assert node.render() == "a || b || c"

    def test_multiline_with_descriptions(self) -> None:
        """Described terms get a comment line; every term but the last ends in `||`."""
        node = build_disjunction(
            True,
            build_expression_with_description("a", "first"),
            ExpressionNode("b"),
            build_expression_with_description("c", "third"),
        )
        assert node.render() == "# first\na ||\nb ||\n# third\nc"

    def test_empty_description_is_none(self) -> None:
        """An empty description is treated as no description."""
        assert build_expression_with_description("a", "").description is None
        assert AndNode(ExpressionNode("a"), ExpressionNode("b")).description is None


class TestOperators:
    """Python operators and truthiness."""

    def test_operator_overloads(self) -> None:
        """`&`, `|` and `~` build AND, OR and NOT nodes."""
        a, b = ExpressionNode("a"), ExpressionNode("b")
        assert (a & b) == AndNode(a, b)
        assert (a | b) == OrNode(a, b)
        assert ~a == NotNode(a)

    def test_bool_raises(self) -> None:
        """Nodes can't be used as Python booleans."""
        with pytest.raises(TypeError, match="control flow"):
            bool(ExpressionNode("a"))

    def test_nodes_are_immutable(self) -> None:
        """Nodes are frozen."""
        node = ExpressionNode("a")
        with pytest.raises(AttributeError):
            node.expression = "b"  # type: ignore[misc]


class TestBuilders:
    """Tests for the condition builders."""

    def test_and_all(self) -> None:
        """Left fold; None for nothing, the element itself for one."""
        a, b, c = ExpressionNode("a"), ExpressionNode("b"), ExpressionNode("c")
        assert build_and_all([]) is None
        assert build_and_all([a]) is a
        result = build_and_all([a, b, c])
        assert result is not None
        assert result.render() == "((a) && (b)) && (c)"

    def test_label_contains(self) -> None:
        assert build_label_contains("bug").render() == "contains(github.event.issue.labels.*.name, 'bug')"

    def test_event_type_equals(self) -> None:
        assert build_event_type_equals("issues").render() == "github.event_name == 'issues'"

    def test_action_equals(self) -> None:
        assert build_action_equals("opened").render() == "github.event.action == 'opened'"

    def test_ternary_builder(self) -> None:
        node = build_ternary(
            build_action_equals("closed"),
            build_string_literal("done"),
            build_property_access("github.event.action"),
        )
        assert isinstance(node, TernaryNode)
        assert node.render() == "github.event.action == 'closed' ? 'done' : github.event.action"

    def test_safe_output_type(self) -> None:
        """Not cancelled, agent not skipped, and the type was produced."""
        assert build_safe_output_type("create_issue").render() == (
            "((!(cancelled())) && (needs.agent.result != 'skipped')) && "
            "(contains(needs.agent.outputs.output_types, 'create_issue'))"
        )

    def test_reaction_condition_excludes_fork_pull_requests(self) -> None:
        """Pull request reactions require the head repo to be the base repo."""
        rendered = build_reaction_condition().render()
        assert rendered.startswith("github.event_name == 'issues' || github.event_name == 'issue_comment'")
        assert rendered.endswith(
            "(github.event_name == 'pull_request') && "
            "(github.event.pull_request.head.repo.id == github.repository_id)"
        )

    def test_allowed_forks(self) -> None:
        """Globs become prefix checks, names become equality checks."""
        assert build_from_allowed_forks([]).render() == (
            "github.event.pull_request.head.repo.id == github.repository_id"
        )
        rendered = build_from_allowed_forks(["octo/*", "org/repo"]).render()
        assert rendered == (
            "github.event.pull_request.head.repo.id == github.repository_id || "
            "startsWith(github.event.pull_request.head.repo.full_name, 'octo/') || "
            "github.event.pull_request.head.repo.full_name == 'org/repo'"
        )

    def test_workflow_run_repo_safety(self) -> None:
        assert build_workflow_run_repo_safety().render() == (
            "(github.event_name != 'workflow_run') || "
            "((github.event.workflow_run.repository.id == github.repository_id) && "
            "(!(github.event.workflow_run.repository.fork)))"
        )

    def test_condition_tree(self) -> None:
        """The existing condition comes first."""
        assert build_condition_tree("", "b").render() == "b"
        assert build_condition_tree("a", "b").render() == "(a) && (b)"


class TestTextHelpers:
    """Tests for helpers working on condition text."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("${{ github.event_name == 'issues' }}", "github.event_name == 'issues'"),
            ("  ${{always()}}  ", "always()"),
            ("github.ref == 'main'", "github.ref == 'main'"),
        ],
    )
    def test_strip_expression_wrapper(self, text: str, expected: str) -> None:
        """Wrapper is removed when present; other text is only trimmed."""
        assert strip_expression_wrapper(text) == expected

    def test_combine_if_conditions(self) -> None:
        """Empty conditions are dropped; several are ANDed without wrappers."""
        assert combine_if_conditions() == ""
        assert combine_if_conditions("", "  ") == ""
        assert combine_if_conditions("${{ a }}") == "${{ a }}"
        assert combine_if_conditions("${{ a }}", "", "b") == "(a) && (b)"
        assert combine_if_conditions("a", "${{ b }}", "c") == "((a) && (b)) && (c)"

    def test_add_detection_success_check(self) -> None:
        assert add_detection_success_check("") == "needs.detection.outputs.success == 'true'"
        assert add_detection_success_check("x") == "(x) && (needs.detection.outputs.success == 'true')"


class TestRenderConditionAsIf:
    """Tests for render_condition_as_if."""

    def test_short_condition_is_single_line(self) -> None:
        node = build_event_type_equals("issues")
        assert render_condition_as_if(node) == "github.event_name == 'issues'"

    def test_long_condition_is_wrapped(self) -> None:
        """Long conditions are broken into lines that normalize back to the original."""
        node = build_and_all(build_event_type_equals(f"event_number_{i}") for i in range(8))
        assert node is not None
        rendered = render_condition_as_if(node)
        assert "\n" in rendered
        assert normalize_expression_for_comparison(rendered) == node.render()

    def test_multiline_disjunction_keeps_layout(self) -> None:
        node = build_disjunction(True, ExpressionNode("a"), ExpressionNode("b"))
        assert render_condition_as_if(node) == "a ||\nb"
