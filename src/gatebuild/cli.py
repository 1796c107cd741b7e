"""
Command-line interface for gatebuild.

This module provides the `gbuild` CLI tool for configuring and building
configuration-gated source trees.
"""

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from gatebuild import __version__
from gatebuild.build import BuildOrchestrator
from gatebuild.cli_utils import (
    EXIT_BUILD_FAILED,
    EXIT_SUCCESS,
    EXIT_USAGE,
    AssignmentParser,
    ErrorFormatter,
    PathValidator,
    TargetDetector,
)
from gatebuild.errors import GatebuildError
from gatebuild.log_setup import setup_logging

LOG_FILE_NAME = "gatebuild.log"


@dataclass
class ConfigArgs:
    """Arguments for the config command."""

    project_dir: Path
    target: Optional[str] = None
    assignments: List[str] = field(default_factory=list)
    unsets: List[str] = field(default_factory=list)
    delta_files: List[Path] = field(default_factory=list)
    defconfig: Optional[Path] = None
    reset: bool = False
    strict: bool = False
    verbose: bool = False


@dataclass
class BuildArgs:
    """Arguments for the build command."""

    project_dir: Path
    target: Optional[str] = None
    units: List[str] = field(default_factory=list)
    jobs: Optional[int] = None
    clean: bool = False
    mtime: bool = False
    strict: bool = False
    verbose: bool = False


@dataclass
class SaveDefconfigArgs:
    """Arguments for the savedefconfig command."""

    project_dir: Path
    target: Optional[str] = None
    output: Optional[Path] = None
    verbose: bool = False


@dataclass
class DiffArgs:
    """Arguments for the diff command."""

    project_dir: Path
    other: Path
    target: Optional[str] = None
    verbose: bool = False


@dataclass
class CleanArgs:
    """Arguments for the clean command."""

    project_dir: Path
    target: Optional[str] = None
    all: bool = False
    verbose: bool = False


def _create_orchestrator(project_dir: Path, target: Optional[str], verbose: bool, jobs: Optional[int] = None) -> BuildOrchestrator:
    target_name = TargetDetector.detect_target(project_dir, target)
    orchestrator = BuildOrchestrator(project_dir, target=target_name, jobs=jobs, verbose=verbose)
    setup_logging(verbose, orchestrator.context.state_dir / LOG_FILE_NAME)
    return orchestrator


def config_command(args: ConfigArgs) -> None:
    """Resolve and save the configuration of a target.

    Examples:
        gbuild config --set NET=y --set HOSTNAME=box
        gbuild config --unset DEBUG
        gbuild config --defconfig configs/x86_defconfig
        gbuild config --delta-file fragments/debug.config --strict
        gbuild config --reset
    """
    try:
        delta = AssignmentParser.parse_assignments(args.assignments, args.unsets)
        orchestrator = _create_orchestrator(args.project_dir, args.target, args.verbose)

        result = orchestrator.configure(
            assignments=delta,
            delta_files=args.delta_files,
            defconfig=args.defconfig,
            reset=args.reset,
            strict=args.strict,
        )

        for warning in result.warnings:
            ErrorFormatter.print_warning(warning)

        if result.changed:
            print(f"Changed symbols ({len(result.changed)}):")
            for name in sorted(result.changed):
                print(f"  {name} = {result.state.value(name)!r}")
        else:
            print("Configuration unchanged")

        ErrorFormatter.print_success(f"Configuration written to {result.config_path}")
        sys.exit(EXIT_SUCCESS)

    except ValueError as e:
        ErrorFormatter.print_error("Invalid arguments", str(e))
        sys.exit(EXIT_USAGE)
    except GatebuildError as e:
        ErrorFormatter.handle_gatebuild_error(e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def build_command(args: BuildArgs) -> None:
    """Build a target incrementally.

    Examples:
        gbuild build                       # Build every image and module
        gbuild build drivers/net/e1000.o   # Build one unit and its deps
        gbuild build -t arm64 -j 16        # Build another target
        gbuild build --clean               # Clean build
        gbuild build --mtime               # Compare inputs by mtime
    """
    print(f"gatebuild v{__version__}")
    print()

    try:
        orchestrator = _create_orchestrator(args.project_dir, args.target, args.verbose, args.jobs)
        context = orchestrator.context

        if args.verbose:
            print(f"Building project: {args.project_dir}")
            print(f"Target: {orchestrator.target} (arch={context.arch}, prefix={context.toolchain_prefix or '-'})")
            print(f"Output: {context.output_root}")
            print()
        else:
            print(f"Building target: {orchestrator.target}...")

        result = orchestrator.build(
            targets=args.units or None,
            clean=args.clean,
            use_mtime=args.mtime,
            strict=args.strict,
        )
        report = result.report

        if report.interrupted:
            ErrorFormatter.handle_keyboard_interrupt()

        if result.success:
            ErrorFormatter.print_success("Build successful!")
            if args.verbose:
                ErrorFormatter.print_report(report, verbose=True)
            print()
            print(report.summary())
            print(f"Build time: {result.build_time:.2f}s")
            sys.exit(EXIT_SUCCESS)
        else:
            ErrorFormatter.print_report(report, verbose=args.verbose)
            ErrorFormatter.print_error("Build failed!", f"{result.message}\n{report.summary()}")
            sys.exit(EXIT_BUILD_FAILED)

    except GatebuildError as e:
        ErrorFormatter.handle_gatebuild_error(e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def savedefconfig_command(args: SaveDefconfigArgs) -> None:
    """Write a minimal defconfig for the saved configuration.

    Examples:
        gbuild savedefconfig                      # Writes ./defconfig
        gbuild savedefconfig -o configs/x86_defconfig
    """
    try:
        orchestrator = _create_orchestrator(args.project_dir, args.target, args.verbose)
        output = args.output or (args.project_dir / "defconfig")
        count = orchestrator.savedefconfig(output)
        ErrorFormatter.print_success(f"Saved {count} entries to {output}")
        sys.exit(EXIT_SUCCESS)

    except GatebuildError as e:
        ErrorFormatter.handle_gatebuild_error(e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def diff_command(args: DiffArgs) -> None:
    """Compare the saved configuration with another .config file.

    Examples:
        gbuild diff out/arm64/.config
    """
    try:
        orchestrator = _create_orchestrator(args.project_dir, args.target, args.verbose)
        differences = orchestrator.diff(args.other)

        if not differences:
            print("No differences")
        for name, (saved, other) in differences.items():
            print(f"  {name}: {_display(saved)} -> {_display(other)}")
        sys.exit(EXIT_SUCCESS)

    except GatebuildError as e:
        ErrorFormatter.handle_gatebuild_error(e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def clean_command(args: CleanArgs) -> None:
    """Remove build artifacts and the fingerprint cache.

    Examples:
        gbuild clean          # Keep .config
        gbuild clean --all    # Remove .config as well
    """
    try:
        orchestrator = _create_orchestrator(args.project_dir, args.target, args.verbose)
        orchestrator.clean(remove_config=args.all)
        ErrorFormatter.print_success(f"Cleaned {orchestrator.context.output_root}")
        sys.exit(EXIT_SUCCESS)

    except GatebuildError as e:
        ErrorFormatter.handle_gatebuild_error(e)
    except FileNotFoundError as e:
        ErrorFormatter.handle_file_not_found(e)
    except PermissionError as e:
        ErrorFormatter.handle_permission_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def _display(value: object) -> str:
    return "(unset)" if value is None else repr(value)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "-t",
        "--target",
        default=None,
        help="Target name (default: auto-detect from gatebuild.ini)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gbuild",
        description="gatebuild - configuration-gated incremental build orchestrator",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"gbuild {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Config command
    config_parser = subparsers.add_parser(
        "config",
        help="Resolve and save the configuration",
    )
    _add_common_arguments(config_parser)
    config_parser.add_argument(
        "-s",
        "--set",
        dest="assignments",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set a symbol (repeatable)",
    )
    config_parser.add_argument(
        "-u",
        "--unset",
        dest="unsets",
        action="append",
        default=[],
        metavar="NAME",
        help="Explicitly unset a symbol (repeatable)",
    )
    config_parser.add_argument(
        "--delta-file",
        dest="delta_files",
        action="append",
        default=[],
        type=Path,
        help="Apply a configuration fragment (repeatable)",
    )
    config_parser.add_argument(
        "--defconfig",
        type=Path,
        default=None,
        help="Start from a defconfig instead of the saved configuration",
    )
    config_parser.add_argument(
        "--reset",
        action="store_true",
        help="Ignore the saved configuration",
    )
    config_parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail when a select conflicts with unmet dependencies",
    )

    # Build command
    build_cmd_parser = subparsers.add_parser(
        "build",
        help="Build the target incrementally",
    )
    _add_common_arguments(build_cmd_parser)
    build_cmd_parser.add_argument(
        "units",
        nargs="*",
        help="Units to build (default: every image and module)",
    )
    build_cmd_parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Number of parallel jobs (default: target setting or CPU count)",
    )
    build_cmd_parser.add_argument(
        "-c",
        "--clean",
        action="store_true",
        help="Clean build artifacts before building",
    )
    build_cmd_parser.add_argument(
        "--mtime",
        action="store_true",
        help="Detect input changes by modification time instead of content",
    )
    build_cmd_parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail when a select conflicts with unmet dependencies",
    )

    # Savedefconfig command
    savedefconfig_parser = subparsers.add_parser(
        "savedefconfig",
        help="Write a minimal defconfig",
    )
    _add_common_arguments(savedefconfig_parser)
    savedefconfig_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Output file (default: defconfig in the project directory)",
    )

    # Diff command
    diff_parser = subparsers.add_parser(
        "diff",
        help="Compare the saved configuration with another .config file",
    )
    _add_common_arguments(diff_parser)
    diff_parser.add_argument(
        "other",
        type=Path,
        help="Configuration file to compare against",
    )

    # Clean command
    clean_parser = subparsers.add_parser(
        "clean",
        help="Remove build artifacts and the fingerprint cache",
    )
    _add_common_arguments(clean_parser)
    clean_parser.add_argument(
        "--all",
        action="store_true",
        help="Also remove the saved configuration",
    )

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """gatebuild - configuration-gated incremental build orchestrator."""
    parser = build_parser()
    parsed_args = parser.parse_args(argv)

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        sys.exit(EXIT_SUCCESS)

    setup_logging(parsed_args.verbose)

    # Validate project directory exists
    PathValidator.validate_project_dir(parsed_args.project_dir)

    # Execute command
    if parsed_args.command == "config":
        input_files = list(parsed_args.delta_files)
        if parsed_args.defconfig is not None:
            input_files.append(parsed_args.defconfig)
        PathValidator.validate_files(input_files)
        config_command(ConfigArgs(
            project_dir=parsed_args.project_dir,
            target=parsed_args.target,
            assignments=parsed_args.assignments,
            unsets=parsed_args.unsets,
            delta_files=parsed_args.delta_files,
            defconfig=parsed_args.defconfig,
            reset=parsed_args.reset,
            strict=parsed_args.strict,
            verbose=parsed_args.verbose,
        ))
    elif parsed_args.command == "build":
        if parsed_args.jobs is not None and parsed_args.jobs < 1:
            parser.error("--jobs must be at least 1")
        build_command(BuildArgs(
            project_dir=parsed_args.project_dir,
            target=parsed_args.target,
            units=parsed_args.units,
            jobs=parsed_args.jobs,
            clean=parsed_args.clean,
            mtime=parsed_args.mtime,
            strict=parsed_args.strict,
            verbose=parsed_args.verbose,
        ))
    elif parsed_args.command == "savedefconfig":
        savedefconfig_command(SaveDefconfigArgs(
            project_dir=parsed_args.project_dir,
            target=parsed_args.target,
            output=parsed_args.output,
            verbose=parsed_args.verbose,
        ))
    elif parsed_args.command == "diff":
        PathValidator.validate_files([parsed_args.other])
        diff_command(DiffArgs(
            project_dir=parsed_args.project_dir,
            other=parsed_args.other,
            target=parsed_args.target,
            verbose=parsed_args.verbose,
        ))
    elif parsed_args.command == "clean":
        clean_command(CleanArgs(
            project_dir=parsed_args.project_dir,
            target=parsed_args.target,
            all=parsed_args.all,
            verbose=parsed_args.verbose,
        ))


if __name__ == "__main__":
    main()
