"""
Configuration resolution.

Resolves a prior configuration plus a user delta against the symbol
declarations into a complete, consistent ConfigurationState.

Each pass, in declaration order:
    1. evaluate depends_on; symbols with unmet dependencies become unset
    2. apply select (and imply) pressure, clamped by depends_on
    3. symbols without a user value take their first satisfied default
    4. resolve choice groups as a unit (exactly one member on)
Passes repeat until no value changes. Exceeding the pass bound means the
declarations oscillate and resolution fails with InconsistentConfigError.

Depends-on always dominates select: a selected symbol whose dependencies
are unmet stays off (warning, or an error in strict mode).
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Set

from ..errors import InconsistentConfigError
from .expr import M, N, TRISTATE_VALUES, Y, parse_number, tri_name
from .state import ConfigurationState
from .symbols import Choice, Declarations, Symbol, SymbolKind

_MISSING = object()


class TentativeValues:
    """SymbolLookup over the values of an in-progress resolution."""

    def __init__(self, declarations: Declarations, values: Dict[str, Any]):
        self.declarations = declarations
        self.values = values

    def value(self, name: str) -> Any:
        return self.values.get(name)

    def is_tristate(self, name: str) -> bool:
        symbol = self.declarations.get(name)
        return symbol is not None and symbol.kind.is_tristate


def _modules_enabled(declarations: Declarations, lookup: Any) -> bool:
    if declarations.modules_symbol is None:
        return True
    return lookup.value(declarations.modules_symbol) == "y"


def reverse_pressure(declarations: Declarations, name: str, lookup: Any, implied: bool = False) -> int:
    """Strongest select (or imply) currently applied to a symbol."""
    sources = declarations.impliers_of(name) if implied else declarations.selectors_of(name)
    pressure = N
    for source, condition in sources:
        source_value = TRISTATE_VALUES.get(lookup.value(source) or "n", N)
        pressure = max(pressure, min(source_value, condition.tristate(lookup)))
    return pressure


def symbol_value(declarations: Declarations, symbol: Symbol, lookup: Any, user_value: Any = _MISSING) -> Any:
    """Compute a (non choice member) symbol's value under current values.

    Args:
        declarations: All declarations
        symbol: Symbol to evaluate
        lookup: Current values of every other symbol
        user_value: Normalized user value, or omitted when the user set none

    Returns:
        The symbol's value for this pass

    Raises:
        InconsistentConfigError: If a default produces a value of the wrong kind
    """
    dependency = declarations.direct_dependency(symbol.name).tristate(lookup)
    if dependency == N:
        return symbol.unset_value

    has_user_value = user_value is not _MISSING and symbol.prompt is not None

    if symbol.kind.is_tristate:
        if has_user_value:
            base = TRISTATE_VALUES[user_value]
        else:
            base = N
            for entry in symbol.defaults:
                condition = entry.condition.tristate(lookup)
                if condition != N:
                    base = min(entry.value.tristate(lookup), condition)
                    break
            base = max(base, reverse_pressure(declarations, symbol.name, lookup, implied=True))

        value = max(base, reverse_pressure(declarations, symbol.name, lookup))
        value = min(value, dependency)
        if value == M and (symbol.kind == SymbolKind.BOOL or not _modules_enabled(declarations, lookup)):
            value = Y
        return tri_name(value)

    if has_user_value:
        # None is an explicit unset and suppresses the defaults.
        value = user_value
    else:
        value = "" if symbol.kind == SymbolKind.STRING else None
        for entry in symbol.defaults:
            if entry.condition.tristate(lookup) != N:
                try:
                    value = symbol.normalize(entry.value.raw(lookup))
                except ValueError as e:
                    raise InconsistentConfigError(f"Invalid default for {symbol.name}: {e}", [symbol.name])
                break

    if value is not None and symbol.kind in (SymbolKind.INT, SymbolKind.HEX):
        for entry_range in symbol.ranges:
            if entry_range.condition.tristate(lookup) == N:
                continue
            low = parse_number(entry_range.low.raw(lookup))
            high = parse_number(entry_range.high.raw(lookup))
            if low is not None and value < low:
                value = low
            elif high is not None and value > high:
                value = high
            break
    return value


def choice_default(declarations: Declarations, choice: Choice, lookup: Any) -> Optional[str]:
    """Member a choice selects when the user has made no selection."""
    visible = _visible_members(declarations, choice, lookup)
    if not visible or choice.optional:
        return None
    for entry in choice.defaults:
        member = entry.value.name  # type: ignore[attr-defined]
        if entry.condition.tristate(lookup) != N and member in visible:
            return member
    return visible[0]


def _visible_members(declarations: Declarations, choice: Choice, lookup: Any) -> List[str]:
    return [
        member for member in choice.members
        if declarations.direct_dependency(member).tristate(lookup) != N
    ]


class Resolver:
    """Resolves user intent into a ConfigurationState.

    Example usage:
        resolver = Resolver(declarations)
        state = resolver.resolve(prior_state, {"NET": "y"})
        for warning in resolver.warnings:
            print(warning)
    """

    def __init__(self, declarations: Declarations, strict: bool = False, max_passes: Optional[int] = None):
        """
        Initialize resolver.

        Args:
            declarations: Validated symbol declarations
            strict: Treat select/depends-on conflicts as errors instead of warnings
            max_passes: Bound on resolution passes (default scales with symbol count)
        """
        self.declarations = declarations
        self.strict = strict
        self.max_passes = max_passes or 4 * len(declarations) + 8
        self.warnings: List[str] = []

    def resolve(
        self,
        prior: Optional[ConfigurationState],
        delta: Optional[Mapping[str, Any]] = None,
    ) -> ConfigurationState:
        """
        Resolve a prior state plus a user delta into a new consistent state.

        Args:
            prior: Previously resolved (or loaded) state, None for a fresh config
            delta: User changes, symbol name to raw value (None unsets)

        Returns:
            New ConfigurationState satisfying every symbol's dependencies

        Raises:
            InconsistentConfigError: Unknown symbol or bad value in the delta,
                no fixpoint within the pass bound, or (strict) a select whose
                target's dependencies are unmet
        """
        self.warnings = []
        decl = self.declarations
        user_values: Dict[str, Any] = {}
        choice_selection: Dict[str, Optional[str]] = {}

        if prior is not None:
            for name, value in prior.items():
                symbol = decl.get(name)
                if symbol is None:
                    logging.debug(f"Ignoring stale symbol {name} from prior configuration")
                    continue
                if prior.kind(name) != symbol.kind:
                    logging.debug(f"Ignoring {name} from prior configuration: type changed")
                    continue
                if decl.direct_dependency(name).tristate(prior) == N:
                    # Forced off by unmet dependencies, not chosen by the user
                    continue
                if symbol.is_choice_member:
                    if value == "y":
                        choice_selection.setdefault(symbol.choice, name)  # type: ignore[arg-type]
                elif symbol.prompt is not None:
                    user_values[name] = value

        requested = self._apply_delta(delta or {}, user_values, choice_selection)

        values: Dict[str, Any] = {symbol.name: symbol.unset_value for symbol in decl}
        lookup = TentativeValues(decl, values)

        changed: Set[str] = set()
        for _ in range(self.max_passes):
            changed = set()
            for symbol in decl:
                if symbol.is_choice_member:
                    continue
                new_value = symbol_value(decl, symbol, lookup, user_values.get(symbol.name, _MISSING))
                if new_value != values[symbol.name]:
                    values[symbol.name] = new_value
                    changed.add(symbol.name)

            for choice in decl.choices:
                changed.update(self._resolve_choice(choice, lookup, choice_selection))

            if not changed:
                break
        else:
            raise InconsistentConfigError(
                "Configuration did not reach a fixpoint; oscillating symbols: "
                + ", ".join(sorted(changed)),
                changed,
            )

        self._verify(lookup)
        self._check_selects(lookup)
        self._report_overrides(requested, values)

        kinds = {symbol.name: symbol.kind for symbol in decl}
        return ConfigurationState(values, kinds)

    def _apply_delta(
        self,
        delta: Mapping[str, Any],
        user_values: Dict[str, Any],
        choice_selection: Dict[str, Optional[str]],
    ) -> Dict[str, Any]:
        decl = self.declarations
        requested: Dict[str, Any] = {}
        delta_choices: Dict[str, str] = {}

        for name, raw in delta.items():
            symbol = decl.get(name)
            if symbol is None:
                raise InconsistentConfigError(f"Unknown symbol '{name}' in configuration delta", [name])
            try:
                value = symbol.normalize(raw)
            except ValueError as e:
                raise InconsistentConfigError(str(e), [name])
            requested[name] = value

            if symbol.is_choice_member:
                choice = symbol.choice
                if value == "y":
                    if choice in delta_choices and delta_choices[choice] != name:  # type: ignore[index]
                        raise InconsistentConfigError(
                            f"Choice '{choice}' cannot select both {delta_choices[choice]} and {name}",  # type: ignore[index]
                            [delta_choices[choice], name],  # type: ignore[index]
                        )
                    delta_choices[choice] = name  # type: ignore[index]
                    choice_selection[choice] = name  # type: ignore[index]
                elif choice_selection.get(choice) == name:  # type: ignore[arg-type]
                    choice_selection[choice] = None  # type: ignore[index]
                continue

            if symbol.prompt is None:
                self._warn(f"{name} has no prompt; its value is computed and the requested value is ignored")
                continue
            user_values[name] = value
        return requested

    def _resolve_choice(
        self,
        choice: Choice,
        lookup: TentativeValues,
        choice_selection: Dict[str, Optional[str]],
    ) -> Set[str]:
        decl = self.declarations
        values = lookup.values
        selected: Optional[str] = None

        if choice.depends_on.tristate(lookup) != N:
            visible = _visible_members(decl, choice, lookup)
            wanted = choice_selection.get(choice.name)
            if wanted is not None and wanted in visible:
                selected = wanted
            else:
                selected = choice_default(decl, choice, lookup)

        changed = set()
        for member in choice.members:
            new_value = "y" if member == selected else "n"
            if values[member] != new_value:
                values[member] = new_value
                changed.add(member)
        return changed

    def _verify(self, lookup: TentativeValues) -> None:
        """Check the fixpoint invariant on the final values."""
        decl = self.declarations
        values = lookup.values
        for symbol in decl:
            dependency = decl.direct_dependency(symbol.name).tristate(lookup)
            value = values[symbol.name]
            if dependency == N and value != symbol.unset_value:
                raise InconsistentConfigError(
                    f"{symbol.name} is set but its dependencies are unmet", [symbol.name]
                )
            if symbol.kind == SymbolKind.TRISTATE and _modules_enabled(decl, lookup):
                if TRISTATE_VALUES[value] > dependency:
                    raise InconsistentConfigError(
                        f"{symbol.name}={value} exceeds its dependency value {tri_name(dependency)}",
                        [symbol.name],
                    )

        for choice in decl.choices:
            active = [member for member in choice.members if values[member] == "y"]
            if len(active) > 1:
                raise InconsistentConfigError(
                    f"Choice '{choice.name}' has more than one active member: {', '.join(active)}",
                    active,
                )

    def _check_selects(self, lookup: TentativeValues) -> None:
        decl = self.declarations
        for symbol in decl:
            if not decl.selectors_of(symbol.name):
                continue
            pressure = reverse_pressure(decl, symbol.name, lookup)
            dependency = decl.direct_dependency(symbol.name).tristate(lookup)
            if pressure <= dependency:
                continue
            selectors = [
                source for source, condition in decl.selectors_of(symbol.name)
                if min(TRISTATE_VALUES.get(lookup.value(source) or "n", N), condition.tristate(lookup)) > dependency
            ]
            message = (
                f"{', '.join(selectors)} selects {symbol.name} but {symbol.name} depends on "
                f"{decl.direct_dependency(symbol.name)}, which is {tri_name(dependency)}"
            )
            if self.strict:
                raise InconsistentConfigError(message, selectors + [symbol.name])
            self._warn(message)

    def _report_overrides(self, requested: Dict[str, Any], values: Dict[str, Any]) -> None:
        for name, value in requested.items():
            if values[name] != value:
                self._warn(
                    f"{name} requested as {value!r} but resolved to {values[name]!r} "
                    f"(depends on: {self.declarations.direct_dependency(name)})"
                )

    def _warn(self, message: str) -> None:
        logging.warning(message)
        self.warnings.append(message)


def resolve(
    prior: Optional[ConfigurationState],
    delta: Optional[Mapping[str, Any]],
    declarations: Declarations,
    strict: bool = False,
) -> ConfigurationState:
    """Resolve ``prior`` plus ``delta`` against ``declarations``."""
    return Resolver(declarations, strict=strict).resolve(prior, delta)
