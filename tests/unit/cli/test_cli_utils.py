"""
Unit tests for CLI utility functions.
"""

import pytest

from gatebuild.build.incremental import BuildReport, UnitResult, UnitStatus
from gatebuild.cli_utils import (
    EXIT_BUILD_FAILED,
    EXIT_DECLARATION_ERROR,
    EXIT_INCONSISTENT_CONFIG,
    EXIT_INTERRUPTED,
    EXIT_USAGE,
    AssignmentParser,
    ErrorFormatter,
    PathValidator,
    TargetDetector,
)
from gatebuild.errors import (
    CacheCorruptionError,
    DeclarationError,
    GraphCycleError,
    InconsistentConfigError,
    ProjectConfigError,
    UnitDeclarationError,
)


class TestTargetDetector:
    """Test suite for TargetDetector."""

    @pytest.fixture
    def project_dir(self, tmp_path):
        (tmp_path / "gatebuild.ini").write_text(
            "[gatebuild]\n\n[target:x86]\narch = x86_64\n\n[target:arm64]\narch = arm64\n"
        )
        return tmp_path

    def test_default_target(self, project_dir):
        assert TargetDetector.detect_target(project_dir) == "x86"

    def test_explicit_target(self, project_dir):
        assert TargetDetector.detect_target(project_dir, "arm64") == "arm64"

    def test_unknown_target(self, project_dir):
        with pytest.raises(ProjectConfigError, match="Available targets: x86, arm64"):
            TargetDetector.detect_target(project_dir, "riscv")

    def test_no_targets(self, tmp_path):
        (tmp_path / "gatebuild.ini").write_text("[gatebuild]\n")
        with pytest.raises(ProjectConfigError, match="No targets found"):
            TargetDetector.detect_target(tmp_path)

    def test_missing_project_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="gatebuild.ini not found"):
            TargetDetector.detect_target(tmp_path)


class TestAssignmentParser:
    """Test suite for AssignmentParser."""

    def test_assignments(self):
        delta = AssignmentParser.parse_assignments(["NET=y", "CONFIG_HOSTNAME=box", "EMPTY="])
        assert delta == {"NET": "y", "HOSTNAME": "box", "EMPTY": ""}

    def test_value_may_contain_equals(self):
        assert AssignmentParser.parse_assignments(["CMDLINE=a=b"]) == {"CMDLINE": "a=b"}

    def test_unsets(self):
        delta = AssignmentParser.parse_assignments(["NET=y"], ["CONFIG_DEBUG", "NET"])
        assert delta == {"NET": None, "DEBUG": None}

    @pytest.mark.parametrize("assignment", ["NET", "=y", "CONFIG_=y"])
    def test_invalid_assignment(self, assignment):
        with pytest.raises(ValueError, match="Invalid assignment"):
            AssignmentParser.parse_assignments([assignment])

    def test_empty_unset(self):
        with pytest.raises(ValueError, match="Empty symbol name"):
            AssignmentParser.parse_assignments([], [" "])


class TestErrorFormatter:
    """Test suite for ErrorFormatter."""

    @pytest.mark.parametrize(
        "error, code",
        [
            (InconsistentConfigError("bad", ["NET"]), EXIT_INCONSISTENT_CONFIG),
            (DeclarationError("bad"), EXIT_DECLARATION_ERROR),
            (UnitDeclarationError("bad"), EXIT_DECLARATION_ERROR),
            (GraphCycleError(["a.o", "b.o", "a.o"]), EXIT_DECLARATION_ERROR),
            (ProjectConfigError("bad"), EXIT_USAGE),
            (CacheCorruptionError("bad"), EXIT_BUILD_FAILED),
        ],
    )
    def test_gatebuild_error_exit_codes(self, error, code):
        with pytest.raises(SystemExit) as exc_info:
            ErrorFormatter.handle_gatebuild_error(error)
        assert exc_info.value.code == code

    def test_inconsistent_config_lists_symbols(self, capsys):
        with pytest.raises(SystemExit):
            ErrorFormatter.handle_gatebuild_error(InconsistentConfigError("conflict", ["B", "A"]))
        out = capsys.readouterr().out
        assert "Configuration is inconsistent" in out
        assert "Symbols involved: A, B" in out

    def test_cycle_message(self, capsys):
        with pytest.raises(SystemExit):
            ErrorFormatter.handle_gatebuild_error(GraphCycleError(["a.o", "b.o", "a.o"]))
        assert "a.o -> b.o -> a.o" in capsys.readouterr().out

    def test_file_not_found(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            ErrorFormatter.handle_file_not_found(FileNotFoundError("missing"))
        assert exc_info.value.code == EXIT_USAGE
        assert "File not found" in capsys.readouterr().out

    def test_permission_error(self):
        with pytest.raises(SystemExit) as exc_info:
            ErrorFormatter.handle_permission_error(PermissionError("denied"))
        assert exc_info.value.code == EXIT_BUILD_FAILED

    def test_keyboard_interrupt(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            ErrorFormatter.handle_keyboard_interrupt()
        assert exc_info.value.code == EXIT_INTERRUPTED
        assert "Build interrupted" in capsys.readouterr().out

    def test_unexpected_error_with_traceback(self, capsys):
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            with pytest.raises(SystemExit) as exc_info:
                ErrorFormatter.handle_unexpected_error(e, verbose=True)
        assert exc_info.value.code == EXIT_BUILD_FAILED
        out = capsys.readouterr().out
        assert "RuntimeError: boom" in out
        assert "Traceback:" in out

    def test_print_report(self, capsys):
        report = BuildReport(
            results={
                "a.o": UnitResult("a.o", UnitStatus.FAILED, "command failed with exit code 1", "a.c:1: error"),
                "lib.a": UnitResult("lib.a", UnitStatus.BLOCKED, "blocked by a.o"),
                "b.o": UnitResult("b.o", UnitStatus.BUILT, duration=0.25),
            }
        )
        ErrorFormatter.print_report(report, verbose=True)
        out = capsys.readouterr().out
        assert "a.o failed" in out
        assert "a.c:1: error" in out
        assert "Blocked by failures (1):" in out
        assert "lib.a: blocked by a.o" in out
        assert "built      b.o (0.25s)" in out


class TestPathValidator:
    """Test suite for PathValidator."""

    def test_valid_project_dir(self, tmp_path):
        PathValidator.validate_project_dir(tmp_path)

    def test_missing_project_dir(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            PathValidator.validate_project_dir(tmp_path / "missing")
        assert exc_info.value.code == EXIT_USAGE

    def test_project_dir_is_file(self, tmp_path):
        path = tmp_path / "file"
        path.write_text("")
        with pytest.raises(SystemExit) as exc_info:
            PathValidator.validate_project_dir(path)
        assert exc_info.value.code == EXIT_USAGE

    def test_validate_files(self, tmp_path):
        existing = tmp_path / "a.config"
        existing.write_text("")
        PathValidator.validate_files([existing])
        with pytest.raises(SystemExit) as exc_info:
            PathValidator.validate_files([existing, tmp_path / "missing.config"])
        assert exc_info.value.code == EXIT_USAGE
