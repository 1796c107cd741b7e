"""
Configuration state persistence.

The persisted format is a .config file:

    # gatebuild configuration
    # hash: 3f2a...
    CONFIG_NET=y
    CONFIG_NET_DRIVER=m
    CONFIG_HOSTNAME="box"
    # CONFIG_DEBUG is not set

A ``# CONFIG_X is not set`` line records an explicitly unset symbol; a
symbol with no line at all is absent. Writes are atomic (temporary file
plus rename) so readers never observe a half-written file.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Set

from ..errors import InconsistentConfigError
from .expr import N
from .resolver import TentativeValues, choice_default, symbol_value
from .state import ConfigurationState
from .symbols import Declarations, SymbolKind, format_value

CONFIG_PREFIX = "CONFIG_"

_SET_RE = re.compile(r"^CONFIG_(?P<name>[A-Za-z0-9_]+)=(?P<value>.*)$")
_UNSET_RE = re.compile(r"^# CONFIG_(?P<name>[A-Za-z0-9_]+) is not set$")


def read_config_lines(path: Path) -> Dict[str, Optional[str]]:
    """Parse a .config/defconfig file into name -> raw value (None = unset).

    Raises:
        FileNotFoundError: If the file does not exist
        InconsistentConfigError: If a line cannot be parsed
    """
    entries: Dict[str, Optional[str]] = {}
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            unset = _UNSET_RE.match(line)
            if unset:
                entries[unset.group("name")] = None
                continue
            if line.startswith("#"):
                continue
            match = _SET_RE.match(line)
            if not match:
                raise InconsistentConfigError(f"{path}:{lineno}: malformed configuration line: {line}")
            entries[match.group("name")] = match.group("value")
    return entries


class ConfigStore:
    """
    Loads, saves and compares configuration states.

    Example usage:
        store = ConfigStore(Path("out/x86/.config"), declarations)
        prior = store.load()
        state = resolve(prior, {"NET": "y"}, declarations)
        changed = ConfigStore.diff(prior, state)
        store.save(state)
    """

    def __init__(self, path: Path, declarations: Declarations):
        """
        Initialize configuration store.

        Args:
            path: Location of the .config file
            declarations: Declarations used to type values on load
        """
        self.path = Path(path)
        self.declarations = declarations

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Optional[ConfigurationState]:
        """
        Load the persisted configuration.

        Symbols no longer declared, or whose stored value does not fit their
        declared kind, are skipped with a warning.

        Returns:
            The stored state, or None when no configuration has been saved
        """
        if not self.path.exists():
            return None

        entries = read_config_lines(self.path)
        values: Dict[str, Any] = {}
        kinds: Dict[str, SymbolKind] = {}
        for name, raw in entries.items():
            symbol = self.declarations.get(name)
            if symbol is None:
                logging.debug(f"{self.path}: skipping undeclared symbol {name}")
                continue
            try:
                values[name] = symbol.normalize(raw)
            except ValueError as e:
                logging.warning(f"{self.path}: ignoring invalid value for {name}: {e}")
                continue
            kinds[name] = symbol.kind

        ordered = {name: values[name] for name in self.declarations.names if name in values}
        return ConfigurationState(ordered, kinds)

    def save(self, state: ConfigurationState) -> None:
        """Persist ``state`` atomically."""
        lines = ["# gatebuild configuration", f"# hash: {state.hash}"]
        for name, value in state.items():
            lines.append(self._format_line(state, name, value))
        self._write_atomic(self.path, "\n".join(lines) + "\n")
        logging.info(f"Saved configuration to {self.path} ({len(state)} symbols)")

    @staticmethod
    def diff(a: Optional[ConfigurationState], b: Optional[ConfigurationState]) -> Set[str]:
        """Names whose values differ between two states (absent counts as different)."""
        a_items = dict(a.items()) if a is not None else {}
        b_items = dict(b.items()) if b is not None else {}
        changed = set()
        for name in set(a_items) | set(b_items):
            if name not in a_items or name not in b_items or a_items[name] != b_items[name]:
                changed.add(name)
        return changed

    def load_delta(self, path: Path) -> Dict[str, Optional[str]]:
        """Read a defconfig or delta file as a user delta.

        Raises:
            InconsistentConfigError: On malformed lines or undeclared symbols
        """
        delta = read_config_lines(Path(path))
        unknown = [name for name in delta if name not in self.declarations]
        if unknown:
            raise InconsistentConfigError(
                f"{path}: undeclared symbols: {', '.join(sorted(unknown))}", unknown
            )
        return delta

    def save_minimal(self, state: ConfigurationState, path: Path) -> int:
        """
        Write a defconfig: only values that differ from their defaults.

        Resolving the written file as a delta against no prior state
        reproduces ``state``.

        Returns:
            Number of entries written
        """
        decl = self.declarations
        lookup = TentativeValues(decl, state.as_dict())
        lines = []

        for symbol in decl:
            if symbol.is_choice_member or symbol.prompt is None:
                continue
            if decl.direct_dependency(symbol.name).tristate(lookup) == N:
                continue
            if symbol_value(decl, symbol, lookup) != state.value(symbol.name):
                lines.append(self._format_line(state, symbol.name, state.value(symbol.name)))

        for choice in decl.choices:
            selected = next((m for m in choice.members if state.value(m) == "y"), None)
            if selected is not None and selected != choice_default(decl, choice, lookup):
                lines.append(f"{CONFIG_PREFIX}{selected}=y")

        self._write_atomic(Path(path), "".join(line + "\n" for line in lines))
        logging.info(f"Saved minimal configuration to {path} ({len(lines)} entries)")
        return len(lines)

    def write_header(self, state: ConfigurationState, path: Path) -> None:
        """Write a C header with one #define per enabled symbol."""
        lines = [
            "/* Automatically generated by gatebuild; do not edit. */",
            f"/* configuration hash: {state.hash} */",
        ]
        for name, value in state.items():
            kind = state.kind(name)
            if value is None or (kind.is_tristate and value == "n"):
                continue
            if kind.is_tristate:
                suffix = "_MODULE" if value == "m" else ""
                lines.append(f"#define {CONFIG_PREFIX}{name}{suffix} 1")
            else:
                lines.append(f"#define {CONFIG_PREFIX}{name} {format_value(kind, value)}")
        self._write_atomic(Path(path), "\n".join(lines) + "\n")

    @staticmethod
    def _format_line(state: ConfigurationState, name: str, value: Any) -> str:
        kind = state.kind(name)
        if value is None or (kind.is_tristate and value == "n"):
            return f"# {CONFIG_PREFIX}{name} is not set"
        return f"{CONFIG_PREFIX}{name}={format_value(kind, value)}"

    @staticmethod
    def _write_atomic(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_name(path.name + ".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(content)
            temp_file.replace(path)
        except BaseException:
            temp_file.unlink(missing_ok=True)
            raise
