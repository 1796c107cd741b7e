"""
Incremental build engine.

Walks a UnitGraph in dependency order and runs the executor only for units
whose fingerprint differs from the cache. Runnable units execute on a
bounded thread pool.

Ordering guarantees:
- A unit's cache entry is written before its dependents become runnable
- A failed unit's entry is invalidated and all its dependents are BLOCKED
- After cancellation no unit is scheduled; only completed units are recorded
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Deque, Dict, List, Mapping, Optional

from ..errors import CacheCorruptionError, UnitBuildError
from ..interrupt_utils import handle_keyboard_interrupt_properly
from .cache import CacheEntry, FingerprintCache
from .compilation_executor import UnitExecutor, UnitRequest
from .fingerprint import Fingerprinter
from .unit_graph import UnitGraph

# How often the scheduler wakes up to check for cancellation
_POLL_INTERVAL = 0.1


class UnitStatus(Enum):
    """Final status of one unit in a build."""

    BUILT = "built"
    UP_TO_DATE = "up_to_date"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def satisfied(self) -> bool:
        return self in (UnitStatus.BUILT, UnitStatus.UP_TO_DATE)


@dataclass
class UnitResult:
    """Outcome of one unit."""

    unit_id: str
    status: UnitStatus
    message: str = ""
    diagnostic: str = ""
    fingerprint: Optional[str] = None
    duration: float = 0.0


@dataclass
class BuildReport:
    """Per-unit results of one build, in topological order."""

    results: Dict[str, UnitResult] = field(default_factory=dict)
    invocations: List[str] = field(default_factory=list)
    cancelled: bool = False
    interrupted: bool = False
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.cancelled and all(result.status.satisfied for result in self.results.values())

    def with_status(self, status: UnitStatus) -> List[str]:
        return [unit_id for unit_id, result in self.results.items() if result.status == status]

    @property
    def built(self) -> List[str]:
        return self.with_status(UnitStatus.BUILT)

    @property
    def up_to_date(self) -> List[str]:
        return self.with_status(UnitStatus.UP_TO_DATE)

    @property
    def failed(self) -> List[str]:
        return self.with_status(UnitStatus.FAILED)

    @property
    def blocked(self) -> List[str]:
        return self.with_status(UnitStatus.BLOCKED)

    def summary(self) -> str:
        counts = [
            f"{len(self.with_status(status))} {status.value.replace('_', '-')}"
            for status in UnitStatus
            if self.with_status(status)
        ]
        return f"{len(self.results)} units: {', '.join(counts) or 'nothing to do'} in {self.duration:.2f}s"


class IncrementalBuilder:
    """
    Schedules and runs the units of a graph.

    Example usage:
        cache = FingerprintCache.open(context.cache_dir)
        builder = IncrementalBuilder(ToolchainExecutor(context), cache)
        report = builder.build(graph, parallelism=8)
        for unit_id in report.failed:
            print(report.results[unit_id].diagnostic)
    """

    def __init__(
        self,
        executor: UnitExecutor,
        cache: FingerprintCache,
        use_mtime: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the builder.

        Args:
            executor: External compilation/linking collaborator
            cache: Fingerprint cache shared by all workers
            use_mtime: Stamp inputs by mtime and size instead of content hash
            cancel_event: Event that requests cancellation when set
        """
        self.executor = executor
        self.cache = cache
        self.use_mtime = use_mtime
        self.cancel_event = cancel_event or threading.Event()
        self._invocations_lock = threading.Lock()

    def cancel(self) -> None:
        """Request cancellation and stop running commands."""
        self.cancel_event.set()
        cancel_all = getattr(self.executor, "cancel_all", None)
        if cancel_all is not None:
            cancel_all()

    def build(self, graph: UnitGraph, parallelism: Optional[int] = None) -> BuildReport:
        """
        Build every unit of ``graph``.

        Args:
            graph: Pruned unit graph (use UnitGraph.subgraph for a target subset)
            parallelism: Worker count (default: the graph context's parallelism)

        Returns:
            BuildReport with one result per unit
        """
        parallelism = parallelism or graph.context.parallelism
        start_time = time.time()
        report = BuildReport()

        order = graph.topological_order()
        scans = self.cache.load_scans() if self.use_mtime else None
        fingerprinter = Fingerprinter(
            graph.index.source_root or Path.cwd(), graph.context.digest(), self.use_mtime, scans
        )
        pending_deps = {unit_id: set(graph.dependencies(unit_id)) for unit_id in order}
        fingerprints: Dict[str, str] = {}
        results: Dict[str, UnitResult] = {}
        ready: Deque[str] = deque(unit_id for unit_id in order if not pending_deps[unit_id])
        running: Dict[Future, str] = {}

        logging.info(f"Building {len(order)} units with {parallelism} workers")

        with ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="gatebuild-worker") as pool:
            try:
                while ready or running:
                    if self.cancel_event.is_set():
                        break

                    while ready and len(running) < parallelism:
                        unit_id = ready.popleft()
                        dep_fingerprints = {dep: fingerprints[dep] for dep in graph.dependencies(unit_id)}
                        future = pool.submit(self._run_unit, graph, fingerprinter, unit_id, dep_fingerprints, report)
                        running[future] = unit_id

                    done, _ = wait(list(running), timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                    for future in done:
                        unit_id = running.pop(future)
                        result = future.result()
                        if self.cancel_event.is_set() and not result.status.satisfied:
                            result.status = UnitStatus.CANCELLED
                        results[unit_id] = result
                        self._release(graph, result, pending_deps, fingerprints, results, ready)
            except KeyboardInterrupt:
                logging.warning("Build interrupted; stopping running commands")
                report.interrupted = True
                self.cancel()

            if running:
                if self.cancel_event.is_set():
                    self.cancel()
                for future, unit_id in running.items():
                    result = future.result()
                    if self.cancel_event.is_set() and not result.status.satisfied:
                        result.status = UnitStatus.CANCELLED
                    results[unit_id] = result

        report.cancelled = self.cancel_event.is_set()
        for unit_id in order:
            report.results[unit_id] = results.get(unit_id) or UnitResult(unit_id, UnitStatus.CANCELLED, "not started")
        if scans is not None:
            scans.update(fingerprinter.scans())
            self.cache.save_scans(scans)
        report.duration = time.time() - start_time
        logging.info(f"Build finished: {report.summary()}")
        return report

    def _release(
        self,
        graph: UnitGraph,
        result: UnitResult,
        pending_deps: Dict[str, set],
        fingerprints: Dict[str, str],
        results: Dict[str, UnitResult],
        ready: Deque[str],
    ) -> None:
        unit_id = result.unit_id
        if result.status == UnitStatus.CANCELLED:
            return
        if result.status.satisfied:
            fingerprints[unit_id] = result.fingerprint or ""
            for dependent in graph.dependents(unit_id):
                pending_deps[dependent].discard(unit_id)
                if not pending_deps[dependent] and dependent not in results:
                    ready.append(dependent)
            return

        for dependent in sorted(graph.transitive_dependents(unit_id)):
            if dependent not in results:
                results[dependent] = UnitResult(dependent, UnitStatus.BLOCKED, f"blocked by {unit_id}")

    def _run_unit(
        self,
        graph: UnitGraph,
        fingerprinter: Fingerprinter,
        unit_id: str,
        dep_fingerprints: Mapping[str, str],
        report: BuildReport,
    ) -> UnitResult:
        start_time = time.time()
        try:
            result = self._process_unit(graph, fingerprinter, unit_id, dep_fingerprints, report)
        except KeyboardInterrupt as ke:
            handle_keyboard_interrupt_properly(ke)
        except Exception as e:
            logging.exception(f"Unexpected error while building {unit_id}")
            self.cache.invalidate(unit_id)
            result = UnitResult(unit_id, UnitStatus.FAILED, f"internal error: {e}")
        result.duration = time.time() - start_time
        return result

    def _process_unit(
        self,
        graph: UnitGraph,
        fingerprinter: Fingerprinter,
        unit_id: str,
        dep_fingerprints: Mapping[str, str],
        report: BuildReport,
    ) -> UnitResult:
        unit = graph[unit_id]
        context = graph.context
        request = UnitRequest(
            unit=unit,
            context=context,
            inputs=tuple(fingerprinter.input_path(name) for name in unit.inputs)
            + tuple(context.artifact_path(dep) for dep in graph.dependencies(unit_id)),
            output=context.artifact_path(unit_id),
            config_header=context.config_header_path,
        )

        try:
            fingerprint = fingerprinter.compute(unit, graph.state, self.executor.command_for(request), dep_fingerprints)
        except FileNotFoundError as e:
            self.cache.invalidate(unit_id)
            return UnitResult(unit_id, UnitStatus.FAILED, f"missing input: {e.filename}")
        except UnitBuildError as e:
            self.cache.invalidate(unit_id)
            return UnitResult(unit_id, UnitStatus.FAILED, e.reason, e.diagnostic)

        try:
            entry = self.cache.get(unit_id)
        except CacheCorruptionError as e:
            logging.warning(f"Discarding corrupt cache entry for {unit_id}: {e}")
            entry = None

        if (
            entry is not None
            and entry.matches(fingerprint.context_digest, fingerprint.slice_hash, fingerprint.value)
            and request.output.exists()
        ):
            logging.debug(f"{unit_id} is up to date")
            return UnitResult(unit_id, UnitStatus.UP_TO_DATE, fingerprint=fingerprint.value)

        if self.cancel_event.is_set():
            return UnitResult(unit_id, UnitStatus.CANCELLED, "cancelled before start")

        # The old artifact is about to be replaced
        self.cache.invalidate(unit_id)
        with self._invocations_lock:
            report.invocations.append(unit_id)

        try:
            self.executor.execute(request)
        except UnitBuildError as e:
            logging.error(f"Failed to build {e}")
            self.cache.invalidate(unit_id)
            return UnitResult(unit_id, UnitStatus.FAILED, e.reason, e.diagnostic)

        self.cache.record(CacheEntry(unit_id, fingerprint.context_digest, fingerprint.slice_hash, fingerprint.value))
        return UnitResult(unit_id, UnitStatus.BUILT, fingerprint=fingerprint.value)


def build(
    graph: UnitGraph,
    cache: FingerprintCache,
    parallelism: Optional[int],
    executor: UnitExecutor,
    use_mtime: bool = False,
) -> BuildReport:
    """Build ``graph`` incrementally; see IncrementalBuilder."""
    return IncrementalBuilder(executor, cache, use_mtime=use_mtime).build(graph, parallelism)
