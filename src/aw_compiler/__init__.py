"""
aw_compiler - compile agentic workflow markdown into GitHub Actions job graphs.

Basic usage:

    from pathlib import Path

    import aw_compiler

    result = aw_compiler.Compiler(strict=True).compile_file(Path("triage.md"))
    print(result.lock_path)

    # Or build conditions directly:
    cond = aw_compiler.parse_expression("github.event_name == 'issues' && !cancelled()")
    print(cond.render())
"""

from .action_pins import (
    ActionPin,
    ActionPinCatalog,
    ActionResolver,
    PinContext,
    get_action_pin,
    resolve_action_pin,
)
from .compiler import CompileResult, Compiler, compile_workflow
from .config import SafeOutputsConfig, WorkflowData
from .errors import (
    ActionPinError,
    CompileError,
    ConfigurationError,
    ExpressionParseError,
    JobGraphError,
)
from .expression_parser import ExpressionParser, collect_literals, parse_expression, visit_expression_tree
from .expression_wrap import break_at_parentheses, break_long_expression, normalize_expression_for_comparison
from .expressions import (
    AndNode,
    BooleanLiteralNode,
    ComparisonNode,
    ConditionNode,
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
    render_condition_as_if,
)
from .frontmatter import load_workflow, load_workflow_text
from .gha import Job, JobManager, StepSpec, WorkflowSpec
from .output import Verbosity, configure_output, get_output_manager
from .permissions import PermissionLevel, Permissions, PermissionScope, PermissionShorthand

__all__ = [
    # Expressions
    "AndNode",
    "BooleanLiteralNode",
    "ComparisonNode",
    "ConditionNode",
    "ContainsNode",
    "DisjunctionNode",
    "ExpressionNode",
    "FunctionCallNode",
    "NotNode",
    "NumberLiteralNode",
    "OrNode",
    "PropertyAccessNode",
    "StringLiteralNode",
    "TernaryNode",
    "ExpressionParser",
    "parse_expression",
    "visit_expression_tree",
    "collect_literals",
    "render_condition_as_if",
    "break_at_parentheses",
    "break_long_expression",
    "normalize_expression_for_comparison",
    # Permissions
    "PermissionLevel",
    "PermissionScope",
    "PermissionShorthand",
    "Permissions",
    # Configuration
    "WorkflowData",
    "SafeOutputsConfig",
    "load_workflow",
    "load_workflow_text",
    # Job graph
    "Job",
    "JobManager",
    "StepSpec",
    "WorkflowSpec",
    # Compilation
    "Compiler",
    "CompileResult",
    "compile_workflow",
    # Action pins
    "ActionPin",
    "ActionPinCatalog",
    "ActionResolver",
    "PinContext",
    "get_action_pin",
    "resolve_action_pin",
    # Errors
    "CompileError",
    "ConfigurationError",
    "ExpressionParseError",
    "JobGraphError",
    "ActionPinError",
    # Output
    "Verbosity",
    "configure_output",
    "get_output_manager",
]
