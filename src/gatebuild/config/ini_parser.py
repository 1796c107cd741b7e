"""
gatebuild.ini project file parser.

This module parses the project file that names the symbol declarations,
the source tree, the available targets and toolchain overrides.
"""

import configparser
import os
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import ProjectConfigError
from .target import TargetContext

PROJECT_FILE = "gatebuild.ini"


class ProjectConfig:
    """
    Parser for gatebuild.ini project files.

    Example gatebuild.ini:
        [gatebuild]
        declarations = Kconfig.ini
        source_root = .
        default_target = x86

        [target]
        jobs = 4

        [target:x86]
        arch = x86_64
        output_root = out/x86

        [target:arm64]
        arch = arm64
        toolchain_prefix = aarch64-linux-gnu-
        output_root = out/arm64

        [toolchain]
        cflags = -O2 -Wall

    Usage:
        config = ProjectConfig(Path("gatebuild.ini"))
        targets = config.get_targets()
        context = config.get_target_context("x86")
    """

    REQUIRED_TARGET_FIELDS = {"arch"}

    def __init__(self, ini_path: Path):
        """
        Initialize the parser with a gatebuild.ini file.

        Args:
            ini_path: Path to the gatebuild.ini file

        Raises:
            ProjectConfigError: If the file doesn't exist or cannot be parsed
        """
        self.ini_path = Path(ini_path)
        self.project_dir = self.ini_path.parent.resolve()

        if not self.ini_path.exists():
            raise ProjectConfigError(f"Project file not found: {ini_path}")

        self.config = configparser.ConfigParser(
            allow_no_value=True, interpolation=configparser.ExtendedInterpolation()
        )

        try:
            self.config.read(self.ini_path, encoding="utf-8")
        except configparser.Error as e:
            raise ProjectConfigError(f"Failed to parse {ini_path}: {e}") from e

        if "gatebuild" not in self.config:
            raise ProjectConfigError(f"{ini_path} has no [gatebuild] section")

    @classmethod
    def find(cls, project_dir: Path) -> "ProjectConfig":
        """Load the project file of a project directory."""
        return cls(Path(project_dir) / PROJECT_FILE)

    def _project_path(self, key: str, default: str) -> Path:
        if key in self.config["gatebuild"] and not (self.config["gatebuild"][key] or "").strip():
            raise ProjectConfigError(f"{self.ini_path}: [gatebuild] {key} has no value")
        value = self.config["gatebuild"].get(key, default).strip()
        return (self.project_dir / value).resolve()

    @property
    def declarations_path(self) -> Path:
        return self._project_path("declarations", "Kconfig.ini")

    @property
    def source_root(self) -> Path:
        return self._project_path("source_root", ".")

    def get_targets(self) -> List[str]:
        """
        Get list of all target names defined in the project file.

        Example:
            For [target:x86], [target:arm64], returns ['x86', 'arm64']
        """
        return [
            section.split(":", 1)[1]
            for section in self.config.sections()
            if section.startswith("target:")
        ]

    def has_target(self, name: str) -> bool:
        return f"target:{name}" in self.config

    def get_default_target(self) -> Optional[str]:
        """
        Get the default target.

        Returns:
            default_target from [gatebuild], or the first target, or None
        """
        default = (self.config["gatebuild"].get("default_target") or "").strip()
        if default:
            return default
        targets = self.get_targets()
        return targets[0] if targets else None

    def get_target_config(self, name: str) -> Dict[str, str]:
        """
        Get raw configuration of a target, merged over the base [target] section.

        Raises:
            ProjectConfigError: If the target is unknown or misses required fields
        """
        section = f"target:{name}"
        if section not in self.config:
            available = ", ".join(self.get_targets())
            raise ProjectConfigError(
                f"Target '{name}' not found. Available targets: {available or 'none'}"
            )

        target_config = self._section_values(section)
        if "target" in self.config:
            base_config = self._section_values("target")
            target_config = {**base_config, **target_config}

        missing = {field for field in self.REQUIRED_TARGET_FIELDS if not target_config.get(field)}
        if missing:
            raise ProjectConfigError(
                f"Target '{name}' is missing required fields: {', '.join(sorted(missing))}"
            )
        return target_config

    def get_target_context(self, name: str, jobs: Optional[int] = None) -> TargetContext:
        """
        Build the TargetContext for a target.

        Parallelism comes from ``jobs`` if given, else GATEBUILD_JOBS, else the
        target's ``jobs`` field, else the CPU count.
        """
        target_config = self.get_target_config(name)

        if jobs is None:
            jobs_text = os.environ.get("GATEBUILD_JOBS") or target_config.get("jobs")
            try:
                jobs = int(jobs_text) if jobs_text else (os.cpu_count() or 1)
            except ValueError:
                raise ProjectConfigError(f"Target '{name}': invalid jobs value {jobs_text!r}")

        output_root = self.project_dir / (target_config.get("output_root") or f"out/{name}")
        try:
            return TargetContext(
                arch=target_config["arch"],
                toolchain_prefix=target_config.get("toolchain_prefix", ""),
                output_root=output_root.resolve(),
                parallelism=jobs,
            )
        except ValueError as e:
            raise ProjectConfigError(f"Target '{name}': {e}") from e

    def get_toolchain_settings(self) -> Dict[str, str]:
        """Toolchain overrides from the [toolchain] section."""
        if "toolchain" not in self.config:
            return {}
        return self._section_values("toolchain")

    def _section_values(self, section: str) -> Dict[str, str]:
        """Stripped values of a section; a bare key reads as an empty value."""
        return {key: (value or "").strip() for key, value in self.config[section].items()}
