"""Fingerprint cache for incremental builds.

This module records, per build unit, the fingerprint of its last successful
build. It is the only mutable state shared between build workers.

Cache Structure:
    {cache_dir}/
    ├── manifest.json           # Cache format version
    ├── scans.json              # CONFIG_* symbols per input, keyed by mtime stamp
    └── units/
        └── {unit_hash}.json    # SHA256 of the unit id (first 16 chars)

Each entry file is replaced atomically, so a reader never observes a
half-written entry. Updates to different units take different locks and
never contend.
"""

import hashlib
import json
import logging
import shutil
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import CacheCorruptionError

CACHE_VERSION = 1


@dataclass(frozen=True)
class CacheEntry:
    """Record of one unit's last successful build.

    Attributes:
        unit_id: Unit identity
        context_digest: Target context the artifact was built for
        slice_hash: Hash of the configuration slice the artifact was built with
        fingerprint: Full unit fingerprint at build time
        recorded_at: Unix timestamp of the record
    """

    unit_id: str
    context_digest: str
    slice_hash: str
    fingerprint: str
    recorded_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheEntry":
        return cls(
            unit_id=data["unit_id"],
            context_digest=data["context_digest"],
            slice_hash=data["slice_hash"],
            fingerprint=data["fingerprint"],
            recorded_at=data.get("recorded_at", 0.0),
        )

    def matches(self, context_digest: str, slice_hash: str, fingerprint: str) -> bool:
        return (
            self.context_digest == context_digest
            and self.slice_hash == slice_hash
            and self.fingerprint == fingerprint
        )


class FingerprintCache:
    """Per-unit fingerprint store.

    Example usage:
        cache = FingerprintCache.open(context.cache_dir)
        entry = cache.get("drivers/net.o")
        cache.record(CacheEntry("drivers/net.o", ctx_digest, slice_hash, fp))
    """

    def __init__(self, cache_dir: Path):
        """Initialize the cache.

        Args:
            cache_dir: Directory holding the manifest and entry files
        """
        self.cache_dir = Path(cache_dir)
        self.units_dir = self.cache_dir / "units"
        self.manifest_path = self.cache_dir / "manifest.json"
        self.scans_path = self.cache_dir / "scans.json"
        self._locks_lock = threading.Lock()
        self._unit_locks: Dict[str, threading.Lock] = {}

    @classmethod
    def open(cls, cache_dir: Path) -> "FingerprintCache":
        """Open a cache, resetting it when it is unreadable or from another version."""
        cache = cls(cache_dir)
        try:
            cache.verify()
        except CacheCorruptionError as e:
            logging.warning(f"Fingerprint cache is corrupt, rebuilding from scratch: {e}")
            cache.clear()
        cache.ensure_initialized()
        return cache

    @staticmethod
    def hash_unit(unit_id: str) -> str:
        """Generate the entry file name for a unit id.

        Returns:
            First 16 characters of SHA256 hash (sufficient for uniqueness)
        """
        return hashlib.sha256(unit_id.encode("utf-8")).hexdigest()[:16]

    def entry_path(self, unit_id: str) -> Path:
        return self.units_dir / f"{self.hash_unit(unit_id)}.json"

    def get_unit_lock(self, unit_id: str) -> threading.Lock:
        """Get or create the lock guarding one unit's entry."""
        with self._locks_lock:
            if unit_id not in self._unit_locks:
                self._unit_locks[unit_id] = threading.Lock()
            return self._unit_locks[unit_id]

    def ensure_initialized(self) -> None:
        self.units_dir.mkdir(parents=True, exist_ok=True)
        if not self.manifest_path.exists():
            _write_json_atomic(self.manifest_path, {"version": CACHE_VERSION})

    def verify(self) -> None:
        """Check the manifest and every entry file.

        Raises:
            CacheCorruptionError: If anything is unreadable or inconsistent
        """
        if not self.cache_dir.exists():
            return
        if self.manifest_path.exists():
            manifest = _read_json(self.manifest_path)
            if manifest.get("version") != CACHE_VERSION:
                raise CacheCorruptionError(f"unsupported cache version {manifest.get('version')!r}")
        elif self.units_dir.exists() and any(self.units_dir.iterdir()):
            raise CacheCorruptionError("cache entries present without a manifest")

        if self.units_dir.exists():
            for path in self.units_dir.glob("*.json"):
                entry = self._parse_entry(path)
                if path.name != f"{self.hash_unit(entry.unit_id)}.json":
                    raise CacheCorruptionError(f"entry {path.name} recorded under the wrong key")

    def get(self, unit_id: str) -> Optional[CacheEntry]:
        """Get a unit's entry.

        Raises:
            CacheCorruptionError: If the entry file is unreadable
        """
        path = self.entry_path(unit_id)
        with self.get_unit_lock(unit_id):
            if not path.exists():
                return None
            entry = self._parse_entry(path)
        if entry.unit_id != unit_id:
            raise CacheCorruptionError(f"entry for {unit_id} holds {entry.unit_id}")
        return entry

    def record(self, entry: CacheEntry) -> None:
        """Atomically record a successful build."""
        if not entry.recorded_at:
            entry = CacheEntry(entry.unit_id, entry.context_digest, entry.slice_hash, entry.fingerprint, time.time())
        with self.get_unit_lock(entry.unit_id):
            _write_json_atomic(self.entry_path(entry.unit_id), entry.to_dict())

    def invalidate(self, unit_id: str) -> None:
        """Forget a unit; its next build always runs."""
        with self.get_unit_lock(unit_id):
            self.entry_path(unit_id).unlink(missing_ok=True)

    def load_scans(self) -> Dict[str, Dict[str, Any]]:
        """Input scans recorded by the previous mtime build.

        An unreadable scan file is discarded; every input is then rescanned.
        """
        if not self.scans_path.exists():
            return {}
        try:
            return _read_json(self.scans_path)
        except CacheCorruptionError as e:
            logging.warning(f"Discarding input scan cache: {e}")
            return {}

    def save_scans(self, scans: Dict[str, Dict[str, Any]]) -> None:
        _write_json_atomic(self.scans_path, scans)

    def clear(self) -> None:
        """Remove every entry."""
        with self._locks_lock:
            if self.cache_dir.exists():
                shutil.rmtree(self.cache_dir)
        logging.debug(f"Cleared fingerprint cache {self.cache_dir}")

    def __len__(self) -> int:
        if not self.units_dir.exists():
            return 0
        return sum(1 for _ in self.units_dir.glob("*.json"))

    def _parse_entry(self, path: Path) -> CacheEntry:
        data = _read_json(path)
        try:
            return CacheEntry.from_dict(data)
        except (KeyError, TypeError) as e:
            raise CacheCorruptionError(f"malformed entry {path.name}: {e}") from e


def _read_json(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        raise CacheCorruptionError(f"unreadable {path.name}: {e}") from e
    if not isinstance(data, dict):
        raise CacheCorruptionError(f"unexpected content in {path.name}")
    return data


def _write_json_atomic(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_file = path.with_name(f"{path.name}.{threading.get_ident()}.tmp")
    try:
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        # Atomic rename
        temp_file.replace(path)
    except BaseException:
        temp_file.unlink(missing_ok=True)
        raise
