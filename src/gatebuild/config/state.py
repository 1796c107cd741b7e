"""
Immutable configuration state snapshots.

A ConfigurationState maps symbol names to resolved values and carries a
content hash. Every downstream stage reads it; a configuration change
produces a new snapshot rather than mutating an existing one.
"""

import hashlib
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, Mapping, Tuple

from .expr import Expr, tri_name
from .symbols import SymbolKind, format_value


class ConfigurationState:
    """Resolved mapping of symbol name to value.

    Values are 'n'/'m'/'y' for bool and tristate symbols, str for string
    symbols, int for int and hex symbols, and None for a string/int/hex
    symbol that is explicitly unset. Symbols missing from the mapping are
    absent (never resolved or never written).
    """

    def __init__(self, values: Mapping[str, Any], kinds: Mapping[str, SymbolKind]):
        missing = set(values) - set(kinds)
        if missing:
            raise ValueError(f"No kind given for symbols: {', '.join(sorted(missing))}")
        self._values = MappingProxyType(dict(values))
        self._kinds = MappingProxyType({name: kinds[name] for name in values})
        self.hash = self._compute_hash(self._values.keys())

    def value(self, name: str) -> Any:
        return self._values.get(name)

    def is_tristate(self, name: str) -> bool:
        kind = self._kinds.get(name)
        return kind is not None and kind.is_tristate

    def kind(self, name: str) -> SymbolKind:
        return self._kinds[name]

    def evaluate(self, expr: Expr) -> str:
        """Evaluate an expression against this state, returning 'n'/'m'/'y'."""
        return tri_name(expr.tristate(self))

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def items(self) -> Iterable[Tuple[str, Any]]:
        return self._values.items()

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def kinds(self) -> Dict[str, SymbolKind]:
        return dict(self._kinds)

    def canonical_line(self, name: str) -> str:
        """Stable text form of one entry, used for hashing."""
        if name not in self._values:
            return f"{name}:absent"
        value = self._values[name]
        text = "<unset>" if value is None else format_value(self._kinds[name], value)
        return f"{name}:{self._kinds[name].value}={text}"

    def slice_hash(self, names: Iterable[str]) -> str:
        """Hash of the subset of the state a build unit depends on."""
        return self._compute_hash(names)

    def _compute_hash(self, names: Iterable[str]) -> str:
        digest = hashlib.sha256()
        for name in sorted(set(names)):
            digest.update(self.canonical_line(name).encode("utf-8"))
            digest.update(b"\n")
        return digest.hexdigest()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfigurationState):
            return NotImplemented
        return self.hash == other.hash and dict(self._values) == dict(other._values)

    def __hash__(self) -> int:
        return hash(self.hash)

    def __repr__(self) -> str:
        return f"ConfigurationState({len(self._values)} symbols, hash={self.hash[:12]})"
