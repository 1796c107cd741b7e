"""Compilation Executor.

This module runs the external compile/archive/link command for one build
unit.

Design:
    - One command template per unit kind, rendered into an argv list
    - Tools default to the target's toolchain prefix plus gcc/ar/ld
    - Processes are tracked so a cancelled build can kill their trees
    - Failures raise UnitBuildError carrying the captured output
"""

import logging
import re
import shlex
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Set, Tuple

import psutil

from ..config.target import TargetContext
from ..errors import ProjectConfigError, UnitBuildError
from .source_index import UnitKind
from .unit_graph import BuildUnit

DEFAULT_TEMPLATES: Dict[UnitKind, str] = {
    UnitKind.OBJECT: "{cc} {cflags} {flags} -include {config_header} -c {inputs} -o {output}",
    UnitKind.ARCHIVE: "{ar} rcsD {output} {inputs}",
    # Modules are compiled from source and linked relocatably in one step.
    UnitKind.MODULE: "{cc} {cflags} {flags} -DMODULE -include {config_header} -nostdlib -r -o {output} {inputs}",
    UnitKind.IMAGE: "{ld} {ldflags} -o {output} {inputs}",
}

_PLACEHOLDER_RE = re.compile(r"^\{(\w+)\}$")


@dataclass(frozen=True)
class UnitRequest:
    """Everything an executor needs to produce one unit's artifact.

    Attributes:
        unit: The unit to build
        context: Target parameters of this invocation
        inputs: Source files followed by dependency artifacts
        output: Artifact path
        config_header: Generated configuration header
    """

    unit: BuildUnit
    context: TargetContext
    inputs: Tuple[Path, ...]
    output: Path
    config_header: Path


class UnitExecutor(Protocol):
    """External compilation/linking collaborator.

    Implementations may also provide ``cancel_all()``; the builder calls it
    when a build is cancelled.
    """

    def command_for(self, request: UnitRequest) -> str:
        """Command line that would build the unit; part of its fingerprint."""
        ...

    def execute(self, request: UnitRequest) -> None:
        """Produce ``request.output`` or raise UnitBuildError."""
        ...


class ToolchainExecutor:
    """Runs unit commands through the target toolchain.

    Recognized settings (the project file's [toolchain] section):
        cc, ar, ld: Tool overrides (default: prefix + gcc/ar/ld)
        cflags, ldflags: Flags substituted into the templates
        object_command, archive_command, module_command, image_command:
            Template overrides
        timeout: Per-unit timeout in seconds (default: none)
    """

    def __init__(self, context: TargetContext, settings: Optional[Mapping[str, str]] = None, show_progress: bool = True):
        """Initialize the executor.

        Args:
            context: Target parameters (toolchain prefix, arch)
            settings: Toolchain overrides
            show_progress: Whether to print one line per unit
        """
        self.context = context
        self.settings = dict(settings or {})
        self.show_progress = show_progress
        self.templates = {
            kind: self.settings.get(f"{kind.value}_command", template)
            for kind, template in DEFAULT_TEMPLATES.items()
        }
        timeout_text = self.settings.get("timeout", "").strip()
        try:
            self.timeout: Optional[float] = float(timeout_text) if timeout_text else None
        except ValueError:
            raise ProjectConfigError(f"Invalid toolchain timeout: {timeout_text!r}")
        self._lock = threading.Lock()
        self._processes: Set[subprocess.Popen] = set()
        self._cancelled = threading.Event()

    def tool(self, name: str, default: str) -> str:
        return self.settings.get(name) or f"{self.context.toolchain_prefix}{default}"

    def render(self, request: UnitRequest) -> List[str]:
        """Render the unit's command template into an argv list.

        A token that is exactly one placeholder expands to zero or more
        arguments; placeholders embedded in a larger token are substituted
        as text.

        Raises:
            UnitBuildError: If the template names an unknown placeholder
        """
        values: Dict[str, List[str]] = {
            "cc": [self.tool("cc", "gcc")],
            "ar": [self.tool("ar", "ar")],
            "ld": [self.tool("ld", "ld")],
            "cflags": shlex.split(self.settings.get("cflags", "")),
            "ldflags": shlex.split(self.settings.get("ldflags", "")),
            "flags": shlex.split(request.unit.flags),
            "inputs": [str(path) for path in request.inputs],
            "output": [str(request.output)],
            "config_header": [str(request.config_header)],
            "arch": [self.context.arch],
            "prefix": [self.context.toolchain_prefix] if self.context.toolchain_prefix else [],
        }
        text_values = {name: " ".join(parts) for name, parts in values.items()}

        argv: List[str] = []
        for token in shlex.split(self.templates[request.unit.kind]):
            try:
                match = _PLACEHOLDER_RE.match(token)
                if match:
                    argv.extend(values[match.group(1)])
                else:
                    argv.append(token.format(**text_values))
            except (KeyError, IndexError, ValueError) as e:
                raise UnitBuildError(request.unit.unit_id, f"invalid command template token {token!r}: {e}")
        return argv

    def command_for(self, request: UnitRequest) -> str:
        return shlex.join(self.render(request))

    def execute(self, request: UnitRequest) -> None:
        """Run the unit's command.

        Raises:
            UnitBuildError: If the command fails, times out, or cannot start
        """
        unit_id = request.unit.unit_id
        if self._cancelled.is_set():
            raise UnitBuildError(unit_id, "build cancelled")

        argv = self.render(request)
        request.output.parent.mkdir(parents=True, exist_ok=True)

        if self.show_progress:
            print(f"  {request.unit.kind.value.upper():<8} {unit_id}")
        logging.debug(f"Executing for {unit_id}: {shlex.join(argv)}")

        try:
            process = subprocess.Popen(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as e:
            raise UnitBuildError(unit_id, f"cannot run {argv[0]}: {e}")

        with self._lock:
            self._processes.add(process)
        try:
            output, _ = process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            kill_process_tree(process.pid)
            output, _ = process.communicate()
            self._discard_output(request.output)
            raise UnitBuildError(unit_id, f"timed out after {self.timeout}s", output or "")
        finally:
            with self._lock:
                self._processes.discard(process)

        if process.returncode != 0:
            self._discard_output(request.output)
            if self._cancelled.is_set():
                raise UnitBuildError(unit_id, "build cancelled", output or "")
            raise UnitBuildError(unit_id, f"command failed with exit code {process.returncode}", output or "")

        if not request.output.exists():
            raise UnitBuildError(unit_id, f"command succeeded but did not produce {request.output}", output or "")

    def cancel_all(self) -> None:
        """Stop accepting work and kill every running command's process tree."""
        self._cancelled.set()
        with self._lock:
            processes = list(self._processes)
        for process in processes:
            kill_process_tree(process.pid)

    @staticmethod
    def _discard_output(output: Path) -> None:
        try:
            output.unlink(missing_ok=True)
        except OSError as e:
            logging.warning(f"Failed to remove partial output {output}: {e}")


def kill_process_tree(pid: int, timeout: float = 3.0) -> int:
    """Terminate a process and all of its descendants.

    Children are terminated before their parents; survivors are killed
    after ``timeout`` seconds.

    Returns:
        Number of processes signalled
    """
    try:
        root = psutil.Process(pid)
        processes = root.children(recursive=True)
        processes.reverse()
        processes.append(root)
    except psutil.NoSuchProcess:
        return 0

    signalled = []
    for proc in processes:
        try:
            proc.terminate()
            signalled.append(proc)
        except psutil.NoSuchProcess:
            pass  # Already dead

    _gone, alive = psutil.wait_procs(signalled, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
            logging.warning(f"Force killed stubborn process {proc.pid}")
        except psutil.NoSuchProcess:
            pass
    return len(signalled)
