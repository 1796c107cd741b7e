"""CLI utility functions for gatebuild.

This module provides common utilities used across CLI commands including:
- Target detection from gatebuild.ini
- Parsing of --set/--unset assignments
- Error handling and formatting (exit codes)
- Build report display
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from gatebuild.build.incremental import BuildReport, UnitStatus
from gatebuild.config import ProjectConfig
from gatebuild.config.ini_parser import PROJECT_FILE
from gatebuild.config.store import CONFIG_PREFIX
from gatebuild.errors import (
    DeclarationError,
    GatebuildError,
    GraphCycleError,
    InconsistentConfigError,
    ProjectConfigError,
    UnitDeclarationError,
)

EXIT_SUCCESS = 0
EXIT_BUILD_FAILED = 1
EXIT_USAGE = 2
EXIT_INCONSISTENT_CONFIG = 3
EXIT_DECLARATION_ERROR = 4
EXIT_INTERRUPTED = 130


class TargetDetector:
    """Handles target detection from gatebuild.ini."""

    @staticmethod
    def detect_target(project_dir: Path, target: Optional[str] = None) -> str:
        """Detect or validate the target name from gatebuild.ini.

        Args:
            project_dir: Project directory containing gatebuild.ini
            target: Optional explicit target name

        Returns:
            Target name to use

        Raises:
            FileNotFoundError: If gatebuild.ini doesn't exist
            ProjectConfigError: If the target is unknown or none is defined
        """
        ini_path = project_dir / PROJECT_FILE
        if not ini_path.exists():
            raise FileNotFoundError(f"{PROJECT_FILE} not found in {project_dir}")

        config = ProjectConfig(ini_path)
        if target:
            if not config.has_target(target):
                available = ", ".join(config.get_targets()) or "none"
                raise ProjectConfigError(f"Target '{target}' not found. Available targets: {available}")
            return target

        detected = config.get_default_target()
        if not detected:
            raise ProjectConfigError(f"No targets found in {PROJECT_FILE}")
        return detected


class AssignmentParser:
    """Parses symbol assignments given on the command line."""

    @staticmethod
    def parse_assignments(assignments: Sequence[str], unsets: Sequence[str] = ()) -> Dict[str, Optional[str]]:
        """Parse ``NAME=VALUE`` assignments and ``NAME`` unsets into a delta.

        A leading ``CONFIG_`` prefix is accepted and stripped.

        Args:
            assignments: Strings such as "NET=y" or "CONFIG_HOSTNAME=box"
            unsets: Symbol names to explicitly unset

        Returns:
            Delta mapping symbol name to raw value (None for unset)

        Raises:
            ValueError: If an assignment has no '=' or an empty name
        """
        delta: Dict[str, Optional[str]] = {}
        for assignment in assignments:
            name, sep, value = assignment.partition("=")
            name = AssignmentParser._strip_prefix(name.strip())
            if not sep or not name:
                raise ValueError(f"Invalid assignment '{assignment}' (expected NAME=VALUE)")
            delta[name] = value
        for name in unsets:
            name = AssignmentParser._strip_prefix(name.strip())
            if not name:
                raise ValueError("Empty symbol name in --unset")
            delta[name] = None
        return delta

    @staticmethod
    def _strip_prefix(name: str) -> str:
        return name[len(CONFIG_PREFIX):] if name.startswith(CONFIG_PREFIX) else name


class ErrorFormatter:
    """Formats and displays error messages with ANSI color codes."""

    # ANSI color codes
    RED = "\033[1;31m"
    GREEN = "\033[1;32m"
    YELLOW = "\033[1;33m"
    RESET = "\033[0m"

    @staticmethod
    def print_error(title: str, message: str, verbose: bool = False) -> None:
        """Print formatted error message.

        Args:
            title: Error title (e.g., "File not found", "Build failed")
            message: Error message details
            verbose: Whether to print verbose output (e.g., traceback)
        """
        print()
        print(f"{ErrorFormatter.RED}✗ {title}{ErrorFormatter.RESET}")
        print()
        print(message)
        print()

    @staticmethod
    def print_success(message: str) -> None:
        """Print formatted success message.

        Args:
            message: Success message
        """
        print()
        print(f"{ErrorFormatter.GREEN}✓ {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_warning(message: str) -> None:
        """Print formatted warning message.

        Args:
            message: Warning message
        """
        print(f"{ErrorFormatter.YELLOW}! {message}{ErrorFormatter.RESET}")

    @staticmethod
    def print_report(report: BuildReport, verbose: bool = False) -> None:
        """Print failed and blocked units of a build report."""
        for unit_id in report.failed:
            result = report.results[unit_id]
            details = result.message
            if result.diagnostic:
                details += "\n\n" + result.diagnostic.rstrip()
            ErrorFormatter.print_error(f"{unit_id} failed", details)

        blocked = report.blocked
        if blocked:
            print(f"Blocked by failures ({len(blocked)}):")
            for unit_id in blocked:
                print(f"  {unit_id}: {report.results[unit_id].message}")

        if verbose:
            for unit_id, result in report.results.items():
                if result.status in (UnitStatus.BUILT, UnitStatus.UP_TO_DATE):
                    print(f"  {result.status.value:<10} {unit_id} ({result.duration:.2f}s)")

    @staticmethod
    def handle_file_not_found(error: FileNotFoundError) -> None:
        """Handle FileNotFoundError with standard formatting.

        Args:
            error: The FileNotFoundError to handle
        """
        ErrorFormatter.print_error("Error: File not found", str(error))
        print(f"Make sure you're in a gatebuild project directory with a {PROJECT_FILE} file.")
        sys.exit(EXIT_USAGE)

    @staticmethod
    def handle_permission_error(error: PermissionError) -> None:
        """Handle PermissionError with standard formatting.

        Args:
            error: The PermissionError to handle
        """
        ErrorFormatter.print_error("Error: Permission denied", str(error))
        sys.exit(EXIT_BUILD_FAILED)

    @staticmethod
    def handle_keyboard_interrupt() -> None:
        """Handle KeyboardInterrupt with standard formatting."""
        ErrorFormatter.print_warning("Build interrupted")
        sys.exit(EXIT_INTERRUPTED)  # Standard exit code for SIGINT

    @staticmethod
    def handle_gatebuild_error(error: GatebuildError) -> None:
        """Handle a domain error, choosing the exit code by its type.

        Args:
            error: The GatebuildError to handle
        """
        if isinstance(error, InconsistentConfigError):
            ErrorFormatter.print_error("Configuration is inconsistent", str(error))
            if error.symbols:
                print(f"Symbols involved: {', '.join(error.symbols)}")
            sys.exit(EXIT_INCONSISTENT_CONFIG)
        if isinstance(error, GraphCycleError):
            ErrorFormatter.print_error("Dependency cycle", str(error))
            sys.exit(EXIT_DECLARATION_ERROR)
        if isinstance(error, (DeclarationError, UnitDeclarationError)):
            ErrorFormatter.print_error("Invalid declarations", str(error))
            sys.exit(EXIT_DECLARATION_ERROR)
        if isinstance(error, ProjectConfigError):
            ErrorFormatter.print_error("Invalid project configuration", str(error))
            sys.exit(EXIT_USAGE)
        ErrorFormatter.print_error("Error", str(error))
        sys.exit(EXIT_BUILD_FAILED)

    @staticmethod
    def handle_unexpected_error(error: Exception, verbose: bool = False) -> None:
        """Handle unexpected errors with standard formatting.

        Args:
            error: The exception to handle
            verbose: Whether to print traceback
        """
        message = f"{type(error).__name__}: {error}"
        ErrorFormatter.print_error("Unexpected error", message)

        if verbose:
            import traceback

            print("Traceback:")
            print(traceback.format_exc())

        sys.exit(EXIT_BUILD_FAILED)


class PathValidator:
    """Validates project paths and directories."""

    @staticmethod
    def validate_project_dir(project_dir: Path) -> None:
        """Validate that project directory exists and is a directory.

        Args:
            project_dir: Path to validate

        Raises:
            SystemExit: If path doesn't exist or isn't a directory
        """
        if not project_dir.exists():
            print(f"{ErrorFormatter.RED}✗ Error: Path does not exist: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(EXIT_USAGE)
        if not project_dir.is_dir():
            print(f"{ErrorFormatter.RED}✗ Error: Path is not a directory: {project_dir}{ErrorFormatter.RESET}")
            sys.exit(EXIT_USAGE)

    @staticmethod
    def validate_files(paths: List[Path]) -> None:
        """Validate that every path names an existing file.

        Raises:
            SystemExit: If a file doesn't exist
        """
        for path in paths:
            if not path.is_file():
                print(f"{ErrorFormatter.RED}✗ Error: File does not exist: {path}{ErrorFormatter.RESET}")
                sys.exit(EXIT_USAGE)
