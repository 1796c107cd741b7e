"""
Exception hierarchy for gatebuild.

Configuration and graph errors are fatal and abort before any build unit
runs. Unit build errors stay local to the failing unit's subtree. Cache
corruption is recovered from by discarding the cache.
"""

from typing import Iterable, List, Optional


class GatebuildError(Exception):
    """Base class for all gatebuild errors."""
    pass


class DeclarationError(GatebuildError):
    """Raised when symbol declarations are malformed."""
    pass


class InconsistentConfigError(GatebuildError):
    """Raised when configuration resolution cannot reach a consistent state.

    Attributes:
        symbols: Names of the offending symbols
    """

    def __init__(self, message: str, symbols: Optional[Iterable[str]] = None):
        super().__init__(message)
        self.symbols: List[str] = sorted(symbols or [])


class ProjectConfigError(GatebuildError):
    """Raised for gatebuild.ini project file errors."""
    pass


class UnitDeclarationError(GatebuildError):
    """Raised when Build.ini unit declarations are malformed."""
    pass


class GraphCycleError(GatebuildError):
    """Raised when a dependency cycle survives graph pruning.

    Attributes:
        cycle: Node names along the cycle, first node repeated at the end
    """

    def __init__(self, cycle: List[str], what: str = "unit"):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle between {what}s: {' -> '.join(self.cycle)}")


class UnitBuildError(GatebuildError):
    """Raised by an executor when the external command for a unit fails.

    Attributes:
        unit_id: Identity of the failed unit
        reason: Failure description without the unit id
        diagnostic: Captured compiler/linker output
    """

    def __init__(self, unit_id: str, message: str, diagnostic: str = ""):
        super().__init__(f"{unit_id}: {message}")
        self.unit_id = unit_id
        self.reason = message
        self.diagnostic = diagnostic


class CacheCorruptionError(GatebuildError):
    """Raised when the persisted fingerprint cache cannot be read."""
    pass
