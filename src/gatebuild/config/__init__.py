"""Configuration parsing, resolution and persistence for gatebuild."""

from .ini_parser import ProjectConfig
from .resolver import Resolver, resolve
from .state import ConfigurationState
from .store import ConfigStore
from .symbols import Choice, Declarations, Symbol, SymbolKind
from .target import TargetContext

__all__ = [
    "ProjectConfig",
    "Resolver",
    "resolve",
    "ConfigurationState",
    "ConfigStore",
    "Choice",
    "Declarations",
    "Symbol",
    "SymbolKind",
    "TargetContext",
]
