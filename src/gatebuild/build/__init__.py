"""
Build system components for gatebuild.

This module provides the build side of the orchestrator:
- Static unit declaration index (Build.ini)
- Configuration-pruned unit graph
- Fingerprint cache and incremental builder
- Toolchain command execution
- Build orchestration
"""

from .cache import CacheEntry, FingerprintCache
from .compilation_executor import ToolchainExecutor, UnitExecutor, UnitRequest
from .incremental import BuildReport, IncrementalBuilder, UnitResult, UnitStatus, build
from .orchestrator import BuildOrchestrator, BuildResult, ConfigureResult
from .source_index import SourceIndex, UnitDeclaration, UnitKind
from .unit_graph import BuildUnit, UnitGraph, construct, refresh

__all__ = [
    "CacheEntry",
    "FingerprintCache",
    "ToolchainExecutor",
    "UnitExecutor",
    "UnitRequest",
    "BuildReport",
    "IncrementalBuilder",
    "UnitResult",
    "UnitStatus",
    "build",
    "BuildOrchestrator",
    "BuildResult",
    "ConfigureResult",
    "SourceIndex",
    "UnitDeclaration",
    "UnitKind",
    "BuildUnit",
    "UnitGraph",
    "construct",
    "refresh",
]
