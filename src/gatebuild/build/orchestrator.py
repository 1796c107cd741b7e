"""
Build orchestration for gatebuild projects.

This module coordinates configuration and builds for one target:
- Project file parsing (gatebuild.ini)
- Symbol declaration loading and configuration resolution
- Configuration persistence (.config, autoconf.h)
- Unit graph construction, snapshot reuse and refresh
- Incremental building through the toolchain executor

Configuration and graph errors propagate as GatebuildError subclasses and
abort before any unit runs; unit failures are reported in the BuildResult.
"""

import json
import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from ..config import ConfigStore, ConfigurationState, Declarations, ProjectConfig, Resolver
from ..errors import ProjectConfigError
from .cache import FingerprintCache
from .compilation_executor import ToolchainExecutor, UnitExecutor
from .incremental import BuildReport, IncrementalBuilder
from .source_index import SourceIndex
from .unit_graph import UnitGraph, construct, refresh

GRAPH_SNAPSHOT = "graph.json"


@dataclass
class ConfigureResult:
    """Result of a configuration update."""

    state: ConfigurationState
    changed: Set[str]
    warnings: List[str]
    config_path: Path


@dataclass
class BuildResult:
    """Result of a complete build operation."""

    success: bool
    report: BuildReport
    targets: List[str]
    build_time: float
    message: str
    config_changed: Set[str] = field(default_factory=set)


class BuildOrchestrator:
    """
    Orchestrates configuration and builds for one target of a project.

    The build process:
    1. Parse gatebuild.ini and select the target
    2. Load symbol declarations
    3. Synchronize .config with the declarations
    4. Scan Build.ini files into the static index
    5. Construct (or refresh) the unit graph
    6. Build the requested units incrementally

    Example usage:
        orchestrator = BuildOrchestrator(Path("."), target="x86")
        orchestrator.configure({"NET": "y"})
        result = orchestrator.build()
        if not result.success:
            for unit_id in result.report.failed:
                print(result.report.results[unit_id].diagnostic)
    """

    def __init__(
        self,
        project_dir: Path,
        target: Optional[str] = None,
        jobs: Optional[int] = None,
        executor: Optional[UnitExecutor] = None,
        verbose: bool = False,
    ):
        """
        Initialize the orchestrator.

        Args:
            project_dir: Directory containing gatebuild.ini
            target: Target name (defaults to the project's default target)
            jobs: Parallelism override
            executor: Executor override (default: ToolchainExecutor)
            verbose: Print phase progress

        Raises:
            ProjectConfigError: If the project file or target is invalid
        """
        self.project_dir = Path(project_dir).resolve()
        self.verbose = verbose
        self.project = ProjectConfig.find(self.project_dir)

        target = target or self.project.get_default_target()
        if target is None:
            raise ProjectConfigError(f"No targets defined in {self.project.ini_path}")
        self.target = target
        self.context = self.project.get_target_context(target, jobs)
        self._executor = executor
        self._declarations: Optional[Declarations] = None
        self.cancel_event = threading.Event()

    @property
    def declarations(self) -> Declarations:
        if self._declarations is None:
            self._declarations = Declarations.from_ini(self.project.declarations_path)
            logging.info(f"Loaded {len(self._declarations)} symbols from {self.project.declarations_path}")
        return self._declarations

    @property
    def store(self) -> ConfigStore:
        return ConfigStore(self.context.config_path, self.declarations)

    @property
    def graph_snapshot_path(self) -> Path:
        return self.context.state_dir / GRAPH_SNAPSHOT

    def _log(self, message: str) -> None:
        logging.info(message)
        if self.verbose:
            print(message)

    def configure(
        self,
        assignments: Optional[Mapping[str, Optional[str]]] = None,
        delta_files: Sequence[Path] = (),
        defconfig: Optional[Path] = None,
        reset: bool = False,
        strict: bool = False,
    ) -> ConfigureResult:
        """
        Resolve and persist a new configuration.

        The delta is assembled from the defconfig, then each delta file, then
        ``assignments``; later entries win. ``reset`` or ``defconfig`` start
        from no prior state.

        Raises:
            InconsistentConfigError: If the configuration cannot be resolved
        """
        store = self.store
        saved = store.load()
        prior = None if reset or defconfig is not None else saved

        delta: Dict[str, Optional[str]] = {}
        if defconfig is not None:
            delta.update(store.load_delta(defconfig))
        for path in delta_files:
            delta.update(store.load_delta(path))
        delta.update(assignments or {})

        resolver = Resolver(self.declarations, strict=strict)
        state = resolver.resolve(prior, delta)
        changed = ConfigStore.diff(saved, state)

        store.save(state)
        store.write_header(state, self.context.config_header_path)
        self._log(f"Configuration written to {store.path} ({len(changed)} symbols changed)")
        return ConfigureResult(state, changed, list(resolver.warnings), store.path)

    def sync_config(self, strict: bool = False) -> Tuple[Optional[ConfigurationState], ConfigurationState]:
        """
        Re-resolve the saved configuration against the current declarations.

        New symbols take their defaults and stale ones are dropped. The file
        is rewritten only when the result differs.

        Returns:
            (saved state or None, synchronized state)
        """
        store = self.store
        saved = store.load()
        if saved is None:
            logging.warning(f"No configuration at {store.path}; using defaults")

        state = Resolver(self.declarations, strict=strict).resolve(saved, {})
        if saved is None or ConfigStore.diff(saved, state):
            store.save(state)
            store.write_header(state, self.context.config_header_path)
        elif not self.context.config_header_path.exists():
            store.write_header(state, self.context.config_header_path)
        return saved, state

    def load_graph(self, index: SourceIndex, state: ConfigurationState) -> UnitGraph:
        """Reuse the previous graph snapshot when possible, else construct."""
        snapshot = self._read_snapshot(index)
        if snapshot is not None:
            graph = refresh(snapshot, snapshot.state, state)
        else:
            graph = construct(index, state, self.context)
        self._write_snapshot(graph)
        return graph

    def _read_snapshot(self, index: SourceIndex) -> Optional[UnitGraph]:
        path = self.graph_snapshot_path
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return UnitGraph.from_dict(data, index, self.context)
        except (OSError, ValueError) as e:
            logging.info(f"Not reusing graph snapshot: {e}")
            return None

    def _write_snapshot(self, graph: UnitGraph) -> None:
        path = self.graph_snapshot_path
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(graph.to_dict(), f, indent=2)
            temp_file.replace(path)
        except OSError as e:
            logging.warning(f"Failed to write graph snapshot: {e}")
            temp_file.unlink(missing_ok=True)

    def build(
        self,
        targets: Optional[Sequence[str]] = None,
        clean: bool = False,
        use_mtime: bool = False,
        strict: bool = False,
    ) -> BuildResult:
        """
        Execute an incremental build.

        Args:
            targets: Unit ids to build (default: every image and module)
            clean: Remove all artifacts and the cache first
            use_mtime: Stamp inputs by mtime instead of content hash
            strict: Treat select/depends-on conflicts as errors

        Returns:
            BuildResult with the per-unit report

        Raises:
            InconsistentConfigError, DeclarationError, UnitDeclarationError,
            GraphCycleError: Before any unit runs
        """
        start_time = time.time()

        if clean:
            self.clean()

        self._log(f"[1/4] Synchronizing configuration for target {self.target} ({self.context.arch})")
        saved, state = self.sync_config(strict=strict)
        config_changed = ConfigStore.diff(saved, state) if saved is not None else set()

        self._log(f"[2/4] Indexing {self.project.source_root}")
        index = SourceIndex.scan(self.project.source_root)
        self._check_predicate_symbols(index)

        self._log("[3/4] Constructing unit graph")
        graph = self.load_graph(index, state)
        requested = list(targets) if targets else graph.default_targets()
        subgraph = graph.subgraph(requested)
        self._log(f"      {len(subgraph)} of {len(graph)} active units needed for {len(requested)} targets")

        self._log("[4/4] Building")
        cache = FingerprintCache.open(self.context.cache_dir)
        executor = self._executor or ToolchainExecutor(
            self.context, self.project.get_toolchain_settings(), show_progress=self.verbose
        )
        builder = IncrementalBuilder(executor, cache, use_mtime=use_mtime, cancel_event=self.cancel_event)
        report = builder.build(subgraph)

        build_time = time.time() - start_time
        if report.interrupted:
            message = "Build interrupted"
        elif report.cancelled:
            message = "Build cancelled"
        elif report.success:
            message = "Build successful"
        else:
            message = f"{len(report.failed)} units failed, {len(report.blocked)} blocked"

        return BuildResult(
            success=report.success,
            report=report,
            targets=requested,
            build_time=build_time,
            message=message,
            config_changed=config_changed,
        )

    def _check_predicate_symbols(self, index: SourceIndex) -> None:
        unknown = sorted(name for name in index.predicate_symbols() if name not in self.declarations)
        if unknown:
            logging.warning(f"Build predicates reference undeclared symbols (treated as n): {', '.join(unknown)}")

    def savedefconfig(self, path: Path) -> int:
        """Write a minimal defconfig for the saved configuration."""
        _, state = self.sync_config()
        return self.store.save_minimal(state, path)

    def diff(self, other_path: Path) -> Dict[str, Tuple[Any, Any]]:
        """
        Compare the saved configuration with another .config file.

        Returns:
            Symbol name -> (saved value, other value); None means absent or unset
        """
        saved = self.store.load()
        other = ConfigStore(other_path, self.declarations).load()
        if other is None:
            raise FileNotFoundError(f"Configuration file not found: {other_path}")
        changed = ConfigStore.diff(saved, other)
        return {
            name: (saved.value(name) if saved is not None else None, other.value(name))
            for name in sorted(changed)
        }

    def clean(self, remove_config: bool = False) -> None:
        """Remove build artifacts and the fingerprint cache.

        The .config file is kept unless ``remove_config`` is set.
        """
        output_root = self.context.output_root
        FingerprintCache(self.context.cache_dir).clear()
        if not output_root.exists():
            return
        for path in output_root.iterdir():
            if path == self.context.config_path and not remove_config:
                continue
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        self._log(f"Cleaned {output_root}")
