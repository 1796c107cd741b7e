"""
Static build unit declaration index.

The source tree declares its build units in Build.ini files. The index is
built once, starting at the tree root and following only the directories a
Build.ini names in ``subdirs``. A ``[subdir:NAME] when = EXPR`` gate is ANDed
into the activation predicate of every unit declared beneath that
directory, so the inheritance is explicit in each indexed unit.

Example Build.ini:
    [directory]
    subdirs = net drivers

    [subdir:net]
    when = NET

    [object:main.o]
    inputs = main.c
    uses = HOSTNAME

    [archive:built-in.a]
    deps = main.o net/built-in.a

    [image:vmlinux]
"""

import configparser
import hashlib
import logging
import posixpath
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from ..config.expr import TRUE, Expr, conjunction, parse_expr
from ..errors import DeclarationError, UnitDeclarationError

BUILD_FILE = "Build.ini"


class UnitKind(Enum):
    """Kind of build unit."""

    OBJECT = "object"
    ARCHIVE = "archive"
    MODULE = "module"
    IMAGE = "image"


@dataclass(frozen=True)
class UnitDeclaration:
    """A build unit as declared, independent of any configuration.

    Attributes:
        unit_id: Output path relative to the output root (posix form)
        kind: Unit kind
        inputs: Source paths relative to the source root
        deps: Unit ids this unit structurally depends on
        predicate: Activation predicate, including inherited directory gates
        uses: Extra configuration symbols the unit's output depends on
        modular: Objects that become modules when the predicate is 'm'
        flags: Extra flags passed to the external command
    """

    unit_id: str
    kind: UnitKind
    inputs: Tuple[str, ...] = ()
    deps: Tuple[str, ...] = ()
    predicate: Expr = TRUE
    uses: Tuple[str, ...] = ()
    modular: bool = False
    flags: str = ""

    @property
    def auto_link(self) -> bool:
        """Images without explicit deps link every top-level unit."""
        return self.kind == UnitKind.IMAGE and not self.deps

    def describe(self) -> str:
        """Stable text form, part of the unit fingerprint."""
        return "|".join([
            self.unit_id,
            self.kind.value,
            ",".join(self.inputs),
            ",".join(self.deps),
            str(self.predicate),
            ",".join(self.uses),
            str(self.modular),
            self.flags,
        ])


class SourceIndex:
    """Immutable, ordered collection of unit declarations.

    Example usage:
        index = SourceIndex.scan(Path("/src/project"))
        for unit in index:
            print(unit.unit_id, unit.kind.value)
    """

    def __init__(self, units: Iterable[UnitDeclaration], source_root: Optional[Path] = None):
        self.source_root = Path(source_root) if source_root is not None else None
        self._units: Dict[str, UnitDeclaration] = {}
        for unit in units:
            if unit.unit_id in self._units:
                raise UnitDeclarationError(f"Unit '{unit.unit_id}' declared more than once")
            self._units[unit.unit_id] = unit

        for unit in self._units.values():
            for dep in unit.deps:
                if dep not in self._units:
                    raise UnitDeclarationError(f"Unit '{unit.unit_id}' depends on undeclared unit '{dep}'")
                if dep == unit.unit_id:
                    raise UnitDeclarationError(f"Unit '{unit.unit_id}' depends on itself")

    def __iter__(self) -> Iterator[UnitDeclaration]:
        return iter(self._units.values())

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def __getitem__(self, unit_id: str) -> UnitDeclaration:
        return self._units[unit_id]

    def dependents(self) -> Dict[str, List[str]]:
        """Declared reverse edges: unit id -> ids of units depending on it."""
        reverse: Dict[str, List[str]] = {unit_id: [] for unit_id in self._units}
        for unit in self._units.values():
            for dep in unit.deps:
                reverse[dep].append(unit.unit_id)
        return reverse

    def predicate_symbols(self) -> frozenset:
        """Every symbol referenced by any activation predicate."""
        symbols: frozenset = frozenset()
        for unit in self._units.values():
            symbols |= unit.predicate.symbols()
        return symbols

    def digest(self) -> str:
        """Hash over all declarations; changes when any Build.ini changes meaning."""
        digest = hashlib.sha256()
        for unit in self._units.values():
            digest.update(unit.describe().encode("utf-8"))
            digest.update(b"\n")
        return digest.hexdigest()

    @classmethod
    def scan(cls, source_root: Path, build_file: str = BUILD_FILE) -> "SourceIndex":
        """Build the index from the Build.ini files of a source tree."""
        return SourceScanner(source_root, build_file).scan()


class SourceScanner:
    """
    Reads Build.ini files into a SourceIndex.

    The scanner:
    1. Reads the root directory's Build.ini
    2. Queues the directories it lists in ``subdirs``, with their gates
    3. Resolves unit ids, inputs and deps to root-relative paths
    4. Returns the SourceIndex in discovery order
    """

    def __init__(self, source_root: Path, build_file: str = BUILD_FILE):
        """
        Initialize source scanner.

        Args:
            source_root: Root of the source tree
            build_file: Name of the per-directory declaration file
        """
        self.source_root = Path(source_root).resolve()
        self.build_file = build_file

    def scan(self) -> SourceIndex:
        if not (self.source_root / self.build_file).exists():
            raise UnitDeclarationError(f"No {self.build_file} found in source root {self.source_root}")

        units: List[UnitDeclaration] = []
        queue: deque = deque([("", TRUE)])
        visited = set()

        while queue:
            rel_dir, inherited = queue.popleft()
            if rel_dir in visited:
                raise UnitDeclarationError(f"Directory '{rel_dir}' listed in subdirs more than once")
            visited.add(rel_dir)

            declared, subdirs = self._read_directory(rel_dir, inherited)
            units.extend(declared)
            queue.extend(subdirs)

        logging.debug(f"Indexed {len(units)} build units from {len(visited)} directories")
        return SourceIndex(units, self.source_root)

    def _read_directory(self, rel_dir: str, inherited: Expr) -> Tuple[List[UnitDeclaration], List[Tuple[str, Expr]]]:
        path = self.source_root / rel_dir / self.build_file
        if not path.exists():
            raise UnitDeclarationError(f"Missing {self.build_file} in listed subdirectory '{rel_dir}'")

        parser = configparser.ConfigParser(interpolation=None, allow_no_value=True)
        try:
            parser.read(path, encoding="utf-8")
        except configparser.Error as e:
            raise UnitDeclarationError(f"Failed to parse {path}: {e}") from e

        units: List[UnitDeclaration] = []
        subdir_names: List[str] = []
        subdir_gates: Dict[str, Expr] = {}

        try:
            for section in parser.sections():
                body = parser[section]
                if section == "directory":
                    subdir_names.extend(_split_words(body.get("subdirs")))
                    continue

                prefix, _, name = section.partition(":")
                name = name.strip()
                if not name:
                    raise UnitDeclarationError(f"{path}: section [{section}] has no name")

                if prefix == "subdir":
                    subdir_gates[name] = _parse_when(body.get("when"))
                    continue

                try:
                    kind = UnitKind(prefix)
                except ValueError:
                    raise UnitDeclarationError(f"{path}: unknown section [{section}]")
                units.append(self._parse_unit(rel_dir, kind, name, body, inherited))
        except DeclarationError as e:
            raise UnitDeclarationError(f"{path}: {e}") from e

        unknown_gates = set(subdir_gates) - set(subdir_names)
        if unknown_gates:
            raise UnitDeclarationError(
                f"{path}: [subdir:...] sections for unlisted directories: {', '.join(sorted(unknown_gates))}"
            )

        subdirs = [
            (_join(rel_dir, name), conjunction([inherited, subdir_gates.get(name, TRUE)]))
            for name in subdir_names
        ]
        return units, subdirs

    def _parse_unit(
        self,
        rel_dir: str,
        kind: UnitKind,
        name: str,
        body: configparser.SectionProxy,
        inherited: Expr,
    ) -> UnitDeclaration:
        unit_id = _join(rel_dir, name)
        inputs = tuple(_join(rel_dir, item) for item in _split_words(body.get("inputs")))
        deps = tuple(_join(rel_dir, item) for item in _split_words(body.get("deps")))

        if kind == UnitKind.OBJECT and not inputs:
            raise UnitDeclarationError(f"Object '{unit_id}' declares no inputs")

        try:
            # A bare "modular" key means yes.
            modular = "modular" in body and (body["modular"] is None or body.getboolean("modular"))
        except ValueError:
            raise UnitDeclarationError(f"Unit '{unit_id}': modular must be a boolean")
        if modular and kind != UnitKind.OBJECT:
            raise UnitDeclarationError(f"Unit '{unit_id}': only objects can be modular")

        return UnitDeclaration(
            unit_id=unit_id,
            kind=kind,
            inputs=inputs,
            deps=deps,
            predicate=conjunction([inherited, _parse_when(body.get("when"))]),
            uses=tuple(_split_words(body.get("uses"))),
            modular=modular,
            flags=(body.get("flags") or "").strip(),
        )


def _split_words(text: Optional[str]) -> List[str]:
    return [word for line in (text or "").splitlines() for word in line.replace(",", " ").split()]


def _parse_when(text: Optional[str]) -> Expr:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    return conjunction([parse_expr(line) for line in lines])


def _join(rel_dir: str, name: str) -> str:
    """Resolve a Build.ini reference; a leading '/' means root-relative."""
    if name.startswith("/"):
        joined = name.lstrip("/")
    else:
        joined = posixpath.join(rel_dir, name) if rel_dir else name
    normalized = posixpath.normpath(joined)
    if normalized.startswith("..") or normalized == ".":
        raise UnitDeclarationError(f"Path '{name}' escapes the source root")
    return normalized
