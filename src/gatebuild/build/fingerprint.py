"""
Unit fingerprinting.

A fingerprint is a SHA-256 over everything that can change a unit's
artifact: its declaration and command line, the content (or mtime) of its
inputs, the target context digest, the slice of the configuration the unit
depends on, and the fingerprints of its dependencies.
"""

import hashlib
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Set, Tuple

from ..config.state import ConfigurationState
from .unit_graph import BuildUnit

_CONFIG_TOKEN_RE = re.compile(rb"\bCONFIG_([A-Za-z0-9_]+)")


def scan_config_symbols(path: Path) -> Set[str]:
    """Symbol names referenced as CONFIG_* tokens in a source file.

    ``CONFIG_FOO_MODULE`` also counts as a reference to ``FOO``.
    """
    with open(path, "rb") as f:
        return _config_symbols(f.read())


def _config_symbols(content: bytes) -> Set[str]:
    symbols = set()
    for match in _CONFIG_TOKEN_RE.finditer(content):
        name = match.group(1).decode("ascii")
        symbols.add(name)
        if name.endswith("_MODULE"):
            symbols.add(name[: -len("_MODULE")])
    return symbols


@dataclass(frozen=True)
class Fingerprint:
    """Fingerprint of one unit plus the configuration slice it covers."""

    value: str
    slice_hash: str
    context_digest: str
    config_symbols: FrozenSet[str]


class Fingerprinter:
    """
    Computes unit fingerprints.

    Input stamps are memoized per path for the lifetime of the instance,
    which is one build invocation.

    In mtime mode ``scans`` maps input paths to the stamp and CONFIG_* symbols
    of an earlier scan; an input whose mtime and size are unchanged is not
    read at all. ``scans()`` returns the mapping to persist for the next build.
    """

    def __init__(
        self,
        source_root: Path,
        context_digest: str,
        use_mtime: bool = False,
        scans: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ):
        self.source_root = Path(source_root)
        self.context_digest = context_digest
        self.use_mtime = use_mtime
        self._lock = threading.Lock()
        self._stamps: Dict[Path, Tuple[str, FrozenSet[str]]] = {}
        self._known_scans = dict(scans or {})

    def input_path(self, name: str) -> Path:
        return self.source_root / name

    def _stamp(self, path: Path) -> Tuple[str, FrozenSet[str]]:
        with self._lock:
            cached = self._stamps.get(path)
        if cached is not None:
            return cached

        if self.use_mtime:
            stat = path.stat()
            stamp = f"mtime:{stat.st_mtime_ns}:{stat.st_size}"
            known = self._known_scans.get(str(path))
            if known is not None and known.get("stamp") == stamp:
                result = (stamp, frozenset(known.get("symbols", ())))
            else:
                result = (stamp, frozenset(scan_config_symbols(path)))
        else:
            with open(path, "rb") as f:
                content = f.read()
            result = (f"sha256:{hashlib.sha256(content).hexdigest()}", frozenset(_config_symbols(content)))

        with self._lock:
            self._stamps[path] = result
        return result

    def scans(self) -> Dict[str, Dict[str, Any]]:
        """Stamps and CONFIG_* symbols of every input seen so far."""
        with self._lock:
            return {
                str(path): {"stamp": stamp, "symbols": sorted(symbols)}
                for path, (stamp, symbols) in self._stamps.items()
            }

    def compute(
        self,
        unit: BuildUnit,
        state: ConfigurationState,
        command: str,
        dependency_fingerprints: Mapping[str, str],
    ) -> Fingerprint:
        """
        Compute a unit's fingerprint.

        Raises:
            FileNotFoundError: If an input file does not exist
        """
        stamps = []
        symbols = set(unit.config_symbols)
        for name in unit.inputs:
            stamp, referenced = self._stamp(self.input_path(name))
            stamps.append(f"{name}={stamp}")
            symbols |= referenced

        slice_hash = state.slice_hash(symbols)

        digest = hashlib.sha256()
        parts = [
            f"unit:{unit.describe()}",
            f"command:{command}",
            f"context:{self.context_digest}",
            f"config:{slice_hash}",
        ]
        parts.extend(f"input:{stamp}" for stamp in stamps)
        parts.extend(f"dep:{dep}={fp}" for dep, fp in sorted(dependency_fingerprints.items()))
        for part in parts:
            digest.update(part.encode("utf-8"))
            digest.update(b"\n")

        return Fingerprint(digest.hexdigest(), slice_hash, self.context_digest, frozenset(symbols))

