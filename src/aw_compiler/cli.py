"""Command line interface: `aw-compiler compile` and `aw-compiler check-expr`."""

from __future__ import annotations

import logging
import sys
import time
from pathlib import Path

import click

from .compiler import Compiler
from .errors import CompileError
from .expression_parser import parse_expression
from .expressions import render_condition_as_if
from .output import Verbosity, configure_output, get_output_manager


def _verbosity(verbose: bool, quiet: bool) -> Verbosity:
    if quiet:
        return Verbosity.QUIET
    if verbose:
        return Verbosity.VERBOSE
    return Verbosity.NORMAL


@click.group(name="aw-compiler")
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def main(debug: bool) -> None:
    """Compile agentic workflow markdown into GitHub Actions lock files."""
    if debug:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")


@main.command("compile")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--strict", is_flag=True, default=False, help="Fail on actions that can't be pinned exactly")
@click.option(
    "--output",
    "-o",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Lock file to write (default: <name>.lock.yml next to PATH)",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show per-job details")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only print errors")
def compile_command(path: Path, strict: bool, output_path: Path | None, verbose: bool, quiet: bool) -> None:
    """Compile the markdown workflow at PATH."""
    output = configure_output(_verbosity(verbose, quiet))
    start_time = time.perf_counter()

    try:
        result = Compiler(strict=strict).compile_file(path, output_path)
    except CompileError as err:
        output.error(str(err))
        sys.exit(1)

    elapsed = time.perf_counter() - start_time
    for job in result.jobs.topological_order():
        needs = ", ".join(job.needs) or "-"
        output.detail(f"{job.name}: {len(job.steps)} step(s), needs {needs}")
    suffix = f" with {len(result.warnings)} warning(s)" if result.warnings else ""
    output.success(f"Compiled {path} -> {result.lock_path} in {elapsed:.2f}s{suffix}")


@main.command("check-expr")
@click.argument("expression")
def check_expr_command(expression: str) -> None:
    """Parse EXPRESSION and print its canonical, wrapped rendering."""
    output = get_output_manager()
    try:
        tree = parse_expression(expression)
    except CompileError as err:
        output.error(str(err))
        sys.exit(1)

    for line in render_condition_as_if(tree).split("\n"):
        output.console.print(line, markup=False, highlight=False, soft_wrap=True)


if __name__ == "__main__":
    main()
