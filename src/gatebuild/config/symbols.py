"""
Configuration symbol declarations.

Symbols are declared once, in Kconfig.ini files, and never mutated. Each
``[symbol:NAME]`` section declares one symbol; ``[choice:NAME]`` sections
group bool symbols into exactly-one-of-N choices.

Example Kconfig.ini:
    [config]
    modules = MODULES
    include = arch/Kconfig.ini

    [symbol:MODULES]
    type = bool
    prompt = Enable loadable module support
    default = y

    [symbol:NET]
    type = tristate
    prompt = Networking support
    depends_on = MODULES || EMBEDDED
    default =
        m if MODULES
        y
    select = CRC32 if NET_CHECKSUM

    [choice:ARCH]
    prompt = Target architecture
    members = X86 ARM
    default = X86
"""

import configparser
import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import networkx as nx

from ..errors import DeclarationError
from .expr import (
    TRUE,
    Expr,
    SymbolRef,
    conjunction,
    parse_conditional,
    parse_expr,
    parse_number,
    parse_range,
)


class SymbolKind(Enum):
    """Kind of a configuration symbol."""

    BOOL = "bool"
    TRISTATE = "tristate"
    STRING = "string"
    INT = "int"
    HEX = "hex"

    @property
    def is_tristate(self) -> bool:
        return self in (SymbolKind.BOOL, SymbolKind.TRISTATE)

    @classmethod
    def from_string(cls, value: str) -> "SymbolKind":
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(kind.value for kind in cls)
            raise DeclarationError(f"Unknown symbol type '{value}' (expected one of: {valid})")


def format_value(kind: SymbolKind, value: Any) -> str:
    """Format a resolved value the way .config stores it."""
    if value is None:
        return ""
    if kind == SymbolKind.HEX:
        return hex(value)
    if kind == SymbolKind.STRING:
        escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return str(value)


@dataclass(frozen=True)
class Conditional:
    """A ``value if condition`` entry (default, select, imply)."""

    value: Expr
    condition: Expr = TRUE


@dataclass(frozen=True)
class Range:
    """An ``int``/``hex`` range constraint."""

    low: Expr
    high: Expr
    condition: Expr = TRUE


@dataclass(frozen=True)
class Symbol:
    """A single configuration symbol."""

    name: str
    kind: SymbolKind
    prompt: Optional[str] = None
    depends_on: Expr = TRUE
    defaults: Tuple[Conditional, ...] = ()
    selects: Tuple[Conditional, ...] = ()
    implies: Tuple[Conditional, ...] = ()
    ranges: Tuple[Range, ...] = ()
    choice: Optional[str] = None
    help: str = ""

    @property
    def is_choice_member(self) -> bool:
        return self.choice is not None

    @property
    def unset_value(self) -> Any:
        """Value a symbol takes when its dependencies are unmet."""
        return "n" if self.kind.is_tristate else None

    def normalize(self, raw: Any) -> Any:
        """Validate and normalize a user-supplied value for this symbol.

        Returns:
            'n'/'m'/'y' for bool and tristate, str for string, int for int/hex,
            None for an explicitly unset string/int/hex.

        Raises:
            ValueError: If the value is not valid for the symbol kind
        """
        if raw is None:
            return self.unset_value

        if self.kind.is_tristate:
            value = str(raw).strip().lower()
            if value not in ("n", "m", "y"):
                raise ValueError(f"{self.name}: expected y/m/n, got {raw!r}")
            if self.kind == SymbolKind.BOOL and value == "m":
                return "y"
            return value

        if self.kind == SymbolKind.STRING:
            text = str(raw)
            if len(text) >= 2 and text[0] == text[-1] == '"':
                text = text[1:-1].replace('\\"', '"').replace("\\\\", "\\")
            return text

        text = str(raw).strip()
        if self.kind == SymbolKind.HEX:
            try:
                return int(text, 16)
            except ValueError:
                raise ValueError(f"{self.name}: expected hex value, got {raw!r}")

        number = parse_number(text)
        if number is None:
            raise ValueError(f"{self.name}: expected int value, got {raw!r}")
        return number

    def format_value(self, value: Any) -> str:
        """Format a value the way .config stores it."""
        return format_value(self.kind, value)


@dataclass(frozen=True)
class Choice:
    """An exactly-one-of-N group of bool symbols."""

    name: str
    members: Tuple[str, ...]
    prompt: Optional[str] = None
    depends_on: Expr = TRUE
    defaults: Tuple[Conditional, ...] = ()
    optional: bool = False


class Declarations:
    """Validated, immutable set of symbol and choice declarations.

    Declaration order is preserved; it drives default evaluation order and
    every deterministic output (state hash, .config layout).
    """

    def __init__(
        self,
        symbols: List[Symbol],
        choices: Optional[List[Choice]] = None,
        modules_symbol: Optional[str] = None,
    ):
        self._symbols: Dict[str, Symbol] = {}
        for symbol in symbols:
            if symbol.name in self._symbols:
                raise DeclarationError(f"Symbol '{symbol.name}' declared more than once")
            self._symbols[symbol.name] = symbol

        self._choices: Dict[str, Choice] = {}
        for choice in choices or []:
            if choice.name in self._choices:
                raise DeclarationError(f"Choice '{choice.name}' declared more than once")
            self._choices[choice.name] = choice
            for member in choice.members:
                symbol = self._symbols.get(member)
                if symbol is None:
                    raise DeclarationError(f"Choice '{choice.name}' member '{member}' is not declared")
                if symbol.kind != SymbolKind.BOOL:
                    raise DeclarationError(f"Choice '{choice.name}' member '{member}' must be a bool")
                if symbol.choice not in (None, choice.name):
                    raise DeclarationError(f"Symbol '{member}' is a member of two choices")
                self._symbols[member] = replace(symbol, choice=choice.name)

        self.modules_symbol = modules_symbol
        self._selectors: Dict[str, List[Tuple[str, Expr]]] = {}
        self._impliers: Dict[str, List[Tuple[str, Expr]]] = {}
        self._validate()

    def __contains__(self, name: object) -> bool:
        return name in self._symbols

    def __getitem__(self, name: str) -> Symbol:
        return self._symbols[name]

    def __iter__(self) -> Iterator[Symbol]:
        return iter(self._symbols.values())

    def __len__(self) -> int:
        return len(self._symbols)

    def get(self, name: str) -> Optional[Symbol]:
        return self._symbols.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._symbols)

    @property
    def choices(self) -> List[Choice]:
        return list(self._choices.values())

    def choice(self, name: str) -> Choice:
        return self._choices[name]

    def selectors_of(self, name: str) -> List[Tuple[str, Expr]]:
        """Symbols that select ``name``, with their select conditions."""
        return self._selectors.get(name, [])

    def impliers_of(self, name: str) -> List[Tuple[str, Expr]]:
        """Symbols that imply ``name``, with their imply conditions."""
        return self._impliers.get(name, [])

    def direct_dependency(self, name: str) -> Expr:
        """Effective depends-on expression (own plus enclosing choice)."""
        symbol = self._symbols[name]
        if symbol.choice is None:
            return symbol.depends_on
        return conjunction([self._choices[symbol.choice].depends_on, symbol.depends_on])

    def _validate(self) -> None:
        """Check references, select targets and depends-on acyclicity."""
        if self.modules_symbol is not None:
            modules = self._symbols.get(self.modules_symbol)
            if modules is None or modules.kind != SymbolKind.BOOL:
                raise DeclarationError(f"Modules symbol '{self.modules_symbol}' must be a declared bool")

        for symbol in self._symbols.values():
            exprs: List[Expr] = [symbol.depends_on]
            for entry in symbol.defaults + symbol.selects + symbol.implies:
                exprs.extend([entry.value, entry.condition])
            for entry_range in symbol.ranges:
                exprs.extend([entry_range.low, entry_range.high, entry_range.condition])
            self._check_references(symbol.name, exprs)

            for relation, entries, index in (
                ("select", symbol.selects, self._selectors),
                ("imply", symbol.implies, self._impliers),
            ):
                for entry in entries:
                    if not isinstance(entry.value, SymbolRef):
                        raise DeclarationError(f"{symbol.name}: {relation} target must be a symbol name")
                    target = self._symbols[entry.value.name]
                    if not target.kind.is_tristate:
                        raise DeclarationError(
                            f"{symbol.name}: cannot {relation} non-bool/tristate symbol '{target.name}'"
                        )
                    if target.is_choice_member:
                        raise DeclarationError(
                            f"{symbol.name}: cannot {relation} choice member '{target.name}'"
                        )
                    if not symbol.kind.is_tristate:
                        raise DeclarationError(f"{symbol.name}: only bool/tristate symbols can {relation}")
                    index.setdefault(target.name, []).append((symbol.name, entry.condition))

        for choice in self._choices.values():
            exprs = [choice.depends_on]
            for entry in choice.defaults:
                exprs.extend([entry.value, entry.condition])
                if not isinstance(entry.value, SymbolRef) or entry.value.name not in choice.members:
                    raise DeclarationError(f"Choice '{choice.name}' default must name one of its members")
            self._check_references(choice.name, exprs)

        graph = nx.DiGraph()
        graph.add_nodes_from(self._symbols)
        for name in self._symbols:
            for dependency in self.direct_dependency(name).symbols():
                graph.add_edge(name, dependency)
        try:
            cycle = nx.find_cycle(graph)
        except nx.NetworkXNoCycle:
            return
        nodes = [edge[0] for edge in cycle] + [cycle[0][0]]
        raise DeclarationError(f"Cyclic depends_on between symbols: {' -> '.join(nodes)}")

    def _check_references(self, owner: str, exprs: List[Expr]) -> None:
        for expr in exprs:
            for name in expr.symbols():
                if name not in self._symbols:
                    raise DeclarationError(f"{owner}: reference to undeclared symbol '{name}'")

    @classmethod
    def from_ini(cls, path: Path) -> "Declarations":
        """Load declarations from a Kconfig.ini file (following includes)."""
        return DeclarationLoader().load(path)


class DeclarationLoader:
    """Parses Kconfig.ini files into Declarations.

    Files are read with configparser; ``include`` entries in a ``[config]``
    section pull in further files, relative to the including file, after the
    including file's own sections.
    """

    def __init__(self) -> None:
        self._symbols: List[Symbol] = []
        self._choices: List[Choice] = []
        self._modules: Optional[str] = None
        self._seen: List[Path] = []

    def load(self, path: Path) -> Declarations:
        self._load_file(Path(path))
        return Declarations(self._symbols, self._choices, self._modules)

    def _load_file(self, path: Path) -> None:
        path = path.resolve()
        if path in self._seen:
            raise DeclarationError(f"Declaration file included twice: {path}")
        self._seen.append(path)

        if not path.exists():
            raise DeclarationError(f"Declaration file not found: {path}")

        parser = configparser.ConfigParser(interpolation=None, allow_no_value=True)
        try:
            parser.read(path, encoding="utf-8")
        except configparser.Error as e:
            raise DeclarationError(f"Failed to parse {path}: {e}") from e

        logging.debug(f"Loading symbol declarations from {path}")
        includes: List[str] = []

        for section in parser.sections():
            body = parser[section]
            if section == "config":
                if body.get("modules"):
                    if self._modules is not None:
                        raise DeclarationError(f"{path}: modules symbol declared twice")
                    self._modules = body["modules"].strip()
                includes.extend(_split_words(body.get("include", "")))
            elif section.startswith("symbol:"):
                self._symbols.append(self._parse_symbol(section.split(":", 1)[1].strip(), body, path))
            elif section.startswith("choice:"):
                self._choices.append(self._parse_choice(section.split(":", 1)[1].strip(), body, path))
            else:
                raise DeclarationError(f"{path}: unknown section [{section}]")

        for include in includes:
            self._load_file(path.parent / include)

    def _parse_symbol(self, name: str, body: configparser.SectionProxy, path: Path) -> Symbol:
        if not name:
            raise DeclarationError(f"{path}: symbol section without a name")
        if not (body.get("type") or "").strip():
            raise DeclarationError(f"{path}: symbol '{name}' has no type")
        try:
            return Symbol(
                name=name,
                kind=SymbolKind.from_string(body["type"]),
                prompt=(body.get("prompt") or "").strip() or None,
                depends_on=_parse_depends(body.get("depends_on", "")),
                defaults=tuple(_parse_entries(body.get("default", ""))),
                selects=tuple(_parse_entries(body.get("select", ""))),
                implies=tuple(_parse_entries(body.get("imply", ""))),
                ranges=tuple(Range(*parse_range(line)) for line in _split_lines(body.get("range", ""))),
                help=(body.get("help") or "").strip(),
            )
        except DeclarationError as e:
            raise DeclarationError(f"{path}: symbol '{name}': {e}") from e

    def _parse_choice(self, name: str, body: configparser.SectionProxy, path: Path) -> Choice:
        members = tuple(_split_words(body.get("members", "")))
        if not members:
            raise DeclarationError(f"{path}: choice '{name}' has no members")
        try:
            return Choice(
                name=name,
                members=members,
                prompt=(body.get("prompt") or "").strip() or None,
                depends_on=_parse_depends(body.get("depends_on", "")),
                defaults=tuple(_parse_entries(body.get("default", ""))),
                optional=_get_flag(body, "optional"),
            )
        except (DeclarationError, ValueError) as e:
            raise DeclarationError(f"{path}: choice '{name}': {e}") from e


def _get_flag(body: configparser.SectionProxy, key: str) -> bool:
    """Read a boolean key; a bare key means true."""
    if key not in body:
        return False
    value = body[key]
    if value is None:
        return True
    state = configparser.ConfigParser.BOOLEAN_STATES.get(value.strip().lower())
    if state is None:
        raise DeclarationError(f"{key} must be a boolean, not {value!r}")
    return state


def _split_lines(text: Optional[str]) -> List[str]:
    return [line.strip() for line in (text or "").splitlines() if line.strip()]


def _split_words(text: Optional[str]) -> List[str]:
    return [word for line in _split_lines(text) for word in line.replace(",", " ").split()]


def _parse_depends(text: Optional[str]) -> Expr:
    return conjunction([parse_expr(line) for line in _split_lines(text)])


def _parse_entries(text: Optional[str]) -> List[Conditional]:
    return [Conditional(*parse_conditional(line)) for line in _split_lines(text)]
