"""
Unit tests for .config persistence.
"""

import pytest

from gatebuild.config.expr import Const, SymbolRef
from gatebuild.config.resolver import resolve
from gatebuild.config.store import ConfigStore, read_config_lines
from gatebuild.config.symbols import Choice, Conditional, Declarations, Symbol, SymbolKind
from gatebuild.errors import InconsistentConfigError


@pytest.fixture
def decl():
    """Declarations covering every symbol kind."""
    return Declarations(
        [
            Symbol("MODULES", SymbolKind.BOOL, prompt="Modules", defaults=(Conditional(Const("y")),)),
            Symbol("NET", SymbolKind.TRISTATE, prompt="Networking"),
            Symbol("DEBUG", SymbolKind.BOOL, prompt="Debugging", depends_on=SymbolRef("NET")),
            Symbol("HOSTNAME", SymbolKind.STRING, prompt="Hostname", defaults=(Conditional(Const("box")),)),
            Symbol("BASE", SymbolKind.HEX, prompt="Base", defaults=(Conditional(Const("0x10")),)),
            Symbol("X86", SymbolKind.BOOL, prompt="x86"),
            Symbol("ARM", SymbolKind.BOOL, prompt="ARM"),
        ],
        [Choice("ARCH", ("X86", "ARM"))],
        modules_symbol="MODULES",
    )


@pytest.fixture
def store(tmp_path, decl):
    return ConfigStore(tmp_path / "out" / ".config", decl)


class TestConfigStore:
    """Tests for ConfigStore."""

    def test_load_missing(self, store):
        assert store.load() is None
        assert not store.exists()

    def test_save_format(self, store, decl):
        """Test the line format of every kind of value."""
        state = resolve(None, {"NET": "m", "HOSTNAME": '"my box"'}, decl)
        store.save(state)

        lines = store.path.read_text().splitlines()
        assert lines[0] == "# gatebuild configuration"
        assert lines[1] == f"# hash: {state.hash}"
        assert "CONFIG_MODULES=y" in lines
        assert "CONFIG_NET=m" in lines
        assert "# CONFIG_DEBUG is not set" in lines
        assert 'CONFIG_HOSTNAME="my box"' in lines
        assert "CONFIG_BASE=0x10" in lines
        assert "CONFIG_X86=y" in lines
        assert "# CONFIG_ARM is not set" in lines
        assert not list(store.path.parent.glob("*.tmp"))

    def test_save_then_load(self, store, decl):
        state = resolve(None, {"NET": "y", "DEBUG": "y", "ARM": "y"}, decl)
        store.save(state)
        loaded = store.load()
        assert loaded == state
        assert loaded.hash == state.hash

    def test_unset_and_absent(self, store):
        """Test that 'is not set' lines are unset and missing lines are absent."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text("# CONFIG_HOSTNAME is not set\nCONFIG_NET=y\n")
        state = store.load()
        assert "HOSTNAME" in state
        assert state["HOSTNAME"] is None
        assert state["NET"] == "y"
        assert "DEBUG" not in state

    def test_load_skips_undeclared_and_invalid(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("CONFIG_GONE=y\nCONFIG_NET=maybe\nCONFIG_MODULES=y\n")
        state = store.load()
        assert list(state) == ["MODULES"]

    def test_malformed_line(self, store):
        store.path.parent.mkdir(parents=True)
        store.path.write_text("NET=y\n")
        with pytest.raises(InconsistentConfigError, match="malformed configuration line"):
            store.load()

    def test_diff(self, decl):
        before = resolve(None, {}, decl)
        after = resolve(before, {"NET": "y", "DEBUG": "y"}, decl)
        assert ConfigStore.diff(before, after) == {"NET", "DEBUG"}
        assert ConfigStore.diff(after, after) == set()
        assert ConfigStore.diff(None, before) == set(before)

    def test_load_delta(self, store, tmp_path):
        path = tmp_path / "net.delta"
        path.write_text("# comment\nCONFIG_NET=m\n# CONFIG_DEBUG is not set\n")
        assert store.load_delta(path) == {"NET": "m", "DEBUG": None}

    def test_load_delta_undeclared(self, store, tmp_path):
        path = tmp_path / "bad.delta"
        path.write_text("CONFIG_NOPE=y\n")
        with pytest.raises(InconsistentConfigError) as exc_info:
            store.load_delta(path)
        assert exc_info.value.symbols == ["NOPE"]

    def test_save_minimal(self, store, decl, tmp_path):
        """Test that a defconfig holds only non-default values and reproduces the state."""
        state = resolve(None, {"NET": "m", "ARM": "y", "HOSTNAME": "edge"}, decl)
        path = tmp_path / "defconfig"
        written = store.save_minimal(state, path)

        lines = path.read_text().splitlines()
        assert written == 3
        assert sorted(lines) == sorted(["CONFIG_NET=m", 'CONFIG_HOSTNAME="edge"', "CONFIG_ARM=y"])
        assert resolve(None, store.load_delta(path), decl) == state

    def test_save_minimal_keeps_explicit_unset(self, store, decl, tmp_path):
        state = resolve(None, {"HOSTNAME": None}, decl)
        path = tmp_path / "defconfig"
        store.save_minimal(state, path)
        assert "# CONFIG_HOSTNAME is not set" in path.read_text().splitlines()
        assert resolve(None, store.load_delta(path), decl) == state

    def test_save_minimal_of_defaults_is_empty(self, store, decl, tmp_path):
        path = tmp_path / "defconfig"
        assert store.save_minimal(resolve(None, {}, decl), path) == 0
        assert path.read_text() == ""

    def test_write_header(self, store, decl, tmp_path):
        state = resolve(None, {"NET": "m"}, decl)
        header = tmp_path / "include" / "generated" / "autoconf.h"
        store.write_header(state, header)

        text = header.read_text()
        assert "#define CONFIG_MODULES 1" in text
        assert "#define CONFIG_NET_MODULE 1" in text
        assert "#define CONFIG_NET 1" not in text
        assert '#define CONFIG_HOSTNAME "box"' in text
        assert "#define CONFIG_BASE 0x10" in text
        assert "CONFIG_DEBUG" not in text


class TestReadConfigLines:
    """Tests for the raw .config line parser."""

    def test_comments_and_blank_lines(self, tmp_path):
        path = tmp_path / ".config"
        path.write_text("\n# header\n\nCONFIG_A=y\n  # CONFIG_B is not set  \n")
        assert read_config_lines(path) == {"A": "y", "B": None}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_config_lines(tmp_path / ".config")
