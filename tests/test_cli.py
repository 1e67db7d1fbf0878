"""Tests for the aw-compiler command line."""

from pathlib import Path

from click.testing import CliRunner

from aw_compiler.cli import main

WORKFLOW = """\
---
name: Weekly Summary
on:
  schedule:
    - cron: "0 9 * * 1"
safe-outputs:
  create-discussion:
    category: general
---

Summarize last week's activity.
"""


def _write(tmp_path: Path, text: str, name: str = "weekly.md") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


class TestCompileCommand:
    """Tests for `aw-compiler compile`."""

    def test_success(self, tmp_path: Path) -> None:
        path = _write(tmp_path, WORKFLOW)
        result = CliRunner().invoke(main, ["compile", str(path)])
        assert result.exit_code == 0, result.output
        assert "Compiled" in result.output
        assert (tmp_path / "weekly.lock.yml").exists()

    def test_output_option(self, tmp_path: Path) -> None:
        path = _write(tmp_path, WORKFLOW)
        target = tmp_path / "custom.yml"
        result = CliRunner().invoke(main, ["compile", str(path), "-o", str(target)])
        assert result.exit_code == 0, result.output
        assert target.exists()

    def test_quiet(self, tmp_path: Path) -> None:
        path = _write(tmp_path, WORKFLOW)
        result = CliRunner().invoke(main, ["compile", "-q", str(path)])
        assert result.exit_code == 0
        assert "Compiled" not in result.output

    def test_verbose_lists_jobs(self, tmp_path: Path) -> None:
        path = _write(tmp_path, WORKFLOW)
        result = CliRunner().invoke(main, ["compile", "-v", str(path)])
        assert result.exit_code == 0, result.output
        assert "safe_outputs:" in result.output

    def test_missing_frontmatter(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "# Just markdown\n", name="broken.md")
        result = CliRunner().invoke(main, ["compile", str(path)])
        assert result.exit_code == 1
        assert "frontmatter" in result.output
        assert not (tmp_path / "broken.lock.yml").exists()

    def test_strict_unpinnable_action(self, tmp_path: Path) -> None:
        text = WORKFLOW.replace("safe-outputs:", "steps:\n  - uses: octo/tool@v1\nsafe-outputs:")
        path = _write(tmp_path, text)
        result = CliRunner().invoke(main, ["compile", "--strict", str(path)])
        assert result.exit_code == 1
        assert "octo/tool@v1" in result.output

    def test_missing_file(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(main, ["compile", str(tmp_path / "nope.md")])
        assert result.exit_code == 2


class TestCheckExprCommand:
    """Tests for `aw-compiler check-expr`."""

    def test_canonical_rendering(self) -> None:
        result = CliRunner().invoke(main, ["check-expr", "a && b || !c"])
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "((a) && (b)) || (!(c))"

    def test_long_expression_is_wrapped(self) -> None:
        expression = " || ".join(f"github.event_name == 'event_number_{i}'" for i in range(6))
        result = CliRunner().invoke(main, ["check-expr", expression])
        assert result.exit_code == 0, result.output
        lines = result.output.strip().splitlines()
        assert len(lines) > 1
        assert all(line.endswith("||") for line in lines[:-1])

    def test_parse_error(self) -> None:
        result = CliRunner().invoke(main, ["check-expr", "a &&"])
        assert result.exit_code == 1
        assert "Error" in result.output
