"""
Unit tests for unit fingerprinting.
"""

import os

import pytest

from gatebuild.build.fingerprint import Fingerprinter, scan_config_symbols
from gatebuild.build.source_index import UnitDeclaration, UnitKind
from gatebuild.build.unit_graph import BuildUnit
from gatebuild.config.expr import SymbolRef
from gatebuild.config.state import ConfigurationState
from gatebuild.config.symbols import SymbolKind


def make_state(**values):
    return ConfigurationState(values, {name: SymbolKind.TRISTATE for name in values})


@pytest.fixture
def source_root(tmp_path):
    root = tmp_path / "src"
    root.mkdir()
    (root / "net.c").write_text("#ifdef CONFIG_NET_DEBUG\nlog();\n#endif\n#if CONFIG_IPV6_MODULE\n#endif\n")
    (root / "plain.c").write_text("int main(void) { return 0; }\n")
    return root


@pytest.fixture
def unit():
    declaration = UnitDeclaration(
        "net.o", UnitKind.OBJECT, inputs=("net.c",), predicate=SymbolRef("NET"), uses=("HZ",)
    )
    return BuildUnit(declaration, UnitKind.OBJECT)


class TestHelpers:
    """Tests for scan_config_symbols."""

    def test_scan_config_symbols(self, source_root):
        """Test that CONFIG_X_MODULE also references X."""
        assert scan_config_symbols(source_root / "net.c") == {"NET_DEBUG", "IPV6_MODULE", "IPV6"}
        assert scan_config_symbols(source_root / "plain.c") == set()


class TestFingerprinter:
    """Tests for Fingerprinter.compute()."""

    def compute(self, source_root, unit, state, command="cc -c net.c", deps=None, context="ctx", use_mtime=False):
        fingerprinter = Fingerprinter(source_root, context, use_mtime=use_mtime)
        return fingerprinter.compute(unit, state, command, deps or {})

    def test_stable(self, source_root, unit):
        state = make_state(NET="y", HZ="y")
        assert self.compute(source_root, unit, state) == self.compute(source_root, unit, state)

    def test_config_slice(self, source_root, unit):
        """Test that predicate, uses and scanned symbols form the slice."""
        fingerprint = self.compute(source_root, unit, make_state(NET="y"))
        assert fingerprint.config_symbols == frozenset({"NET", "HZ", "NET_DEBUG", "IPV6_MODULE", "IPV6"})
        assert fingerprint.context_digest == "ctx"

    def test_relevant_symbol_changes_fingerprint(self, source_root, unit):
        before = self.compute(source_root, unit, make_state(NET="y", NET_DEBUG="n"))
        after = self.compute(source_root, unit, make_state(NET="y", NET_DEBUG="y"))
        assert before.value != after.value
        assert before.slice_hash != after.slice_hash

    def test_module_suffix_references_base_symbol(self, source_root, unit):
        before = self.compute(source_root, unit, make_state(NET="y", IPV6="y"))
        after = self.compute(source_root, unit, make_state(NET="y", IPV6="m"))
        assert before.value != after.value

    def test_unrelated_symbol_does_not_change_fingerprint(self, source_root, unit):
        before = self.compute(source_root, unit, make_state(NET="y", USB="n"))
        after = self.compute(source_root, unit, make_state(NET="y", USB="y"))
        assert before == after

    def test_input_content_changes_fingerprint(self, source_root, unit):
        state = make_state(NET="y")
        before = self.compute(source_root, unit, state)
        path = source_root / "net.c"
        path.write_text(path.read_text() + "/* changed */\n")
        after = self.compute(source_root, unit, state)
        assert before.value != after.value
        assert before.slice_hash == after.slice_hash

    def test_command_context_and_deps_change_fingerprint(self, source_root, unit):
        state = make_state(NET="y")
        base = self.compute(source_root, unit, state).value
        assert self.compute(source_root, unit, state, command="cc -O3 -c net.c").value != base
        assert self.compute(source_root, unit, state, context="other").value != base
        assert self.compute(source_root, unit, state, deps={"lib.a": "abc"}).value != base

    def test_mtime_stamps(self, source_root, unit):
        """Test that mtime mode notices a touched file with identical content."""
        state = make_state(NET="y")
        path = source_root / "net.c"
        before = self.compute(source_root, unit, state, use_mtime=True)
        stat = path.stat()
        os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
        after = self.compute(source_root, unit, state, use_mtime=True)
        assert before.value != after.value
        assert self.compute(source_root, unit, state).value == self.compute(source_root, unit, state).value

    def test_stamps_are_memoized(self, source_root, unit):
        state = make_state(NET="y")
        fingerprinter = Fingerprinter(source_root, "ctx")
        before = fingerprinter.compute(unit, state, "cc", {})
        (source_root / "net.c").write_text("changed\n")
        assert fingerprinter.compute(unit, state, "cc", {}) == before

    def test_missing_input(self, tmp_path, unit):
        with pytest.raises(FileNotFoundError):
            self.compute(tmp_path, unit, make_state(NET="y"))

    def test_known_scan_is_reused(self, source_root, unit):
        """Test that an mtime stamp match skips reading the input."""
        path = source_root / "net.c"
        first = Fingerprinter(source_root, "ctx", use_mtime=True)
        first.compute(unit, make_state(NET="y"), "cc", {})
        scans = first.scans()
        assert scans[str(path)]["symbols"] == ["IPV6", "IPV6_MODULE", "NET_DEBUG"]

        scans[str(path)]["symbols"] = ["RECORDED"]
        second = Fingerprinter(source_root, "ctx", use_mtime=True, scans=scans)
        assert "RECORDED" in second.compute(unit, make_state(NET="y"), "cc", {}).config_symbols

    def test_stale_scan_is_ignored(self, source_root, unit):
        path = source_root / "net.c"
        scans = {str(path): {"stamp": "mtime:0:0", "symbols": ["RECORDED"]}}
        fingerprint = Fingerprinter(source_root, "ctx", use_mtime=True, scans=scans).compute(
            unit, make_state(NET="y"), "cc", {}
        )
        assert "RECORDED" not in fingerprint.config_symbols
        assert "NET_DEBUG" in fingerprint.config_symbols
