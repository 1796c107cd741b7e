"""
Unit tests for BuildOrchestrator.

Each test works on a small project on disk and builds it with a recording
executor, so no toolchain is needed.
"""

import logging
import threading
from unittest.mock import patch

import pytest

from gatebuild.build.orchestrator import BuildOrchestrator
from gatebuild.build.source_index import SourceIndex, UnitKind
from gatebuild.build.unit_graph import construct
from gatebuild.errors import InconsistentConfigError, ProjectConfigError, UnitBuildError, UnitDeclarationError


class RecordingExecutor:
    """Writes each unit's output file and records the unit id."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.invocations = []
        self.lock = threading.Lock()

    def command_for(self, request):
        return f"fake-{request.unit.kind.value}"

    def execute(self, request):
        with self.lock:
            self.invocations.append(request.unit.unit_id)
        if request.unit.unit_id in self.fail:
            raise UnitBuildError(request.unit.unit_id, "command failed with exit code 1", "error: nope")
        request.output.parent.mkdir(parents=True, exist_ok=True)
        request.output.write_text(request.unit.unit_id)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("GATEBUILD_JOBS", raising=False)
    monkeypatch.delenv("GATEBUILD_CACHE_DIR", raising=False)


@pytest.fixture
def project(tmp_path):
    """Create a project with a modular networking subdirectory."""
    (tmp_path / "gatebuild.ini").write_text(
        """
[gatebuild]
declarations = Kconfig.ini
source_root = src

[target:x86]
arch = x86_64
jobs = 2
"""
    )
    (tmp_path / "Kconfig.ini").write_text(
        """
[config]
modules = MODULES

[symbol:MODULES]
type = bool
prompt = Enable loadable module support
default = y

[symbol:NET]
type = tristate
prompt = Networking support
default = y

[symbol:NET_DEBUG]
type = bool
prompt = Networking debug messages
depends_on = NET

[symbol:HOSTNAME]
type = string
prompt = Default hostname
default = "box"
"""
    )
    src = tmp_path / "src"
    (src / "net").mkdir(parents=True)
    (src / "Build.ini").write_text(
        """
[directory]
subdirs = net

[subdir:net]
when = NET

[object:main.o]
inputs = main.c
uses = HOSTNAME

[image:kernel]
"""
    )
    (src / "net" / "Build.ini").write_text("[object:core.o]\ninputs = core.c\nmodular = yes\n")
    (src / "main.c").write_text("int main(void) { return 0; }\n")
    (src / "net" / "core.c").write_text("#ifdef CONFIG_NET_DEBUG\nvoid debug(void);\n#endif\n")
    return tmp_path


def run_build(project, executor=None, **kwargs):
    executor = executor or RecordingExecutor()
    result = BuildOrchestrator(project, executor=executor).build(**kwargs)
    return result, executor


class TestOrchestratorSetup:
    """Tests for target selection."""

    def test_default_target(self, project):
        orchestrator = BuildOrchestrator(project)
        assert orchestrator.target == "x86"
        assert orchestrator.context.arch == "x86_64"
        assert orchestrator.context.parallelism == 2
        assert orchestrator.context.output_root == (project / "out" / "x86").resolve()

    def test_jobs_override(self, project):
        assert BuildOrchestrator(project, jobs=5).context.parallelism == 5

    def test_unknown_target(self, project):
        with pytest.raises(ProjectConfigError, match="Target 'arm' not found"):
            BuildOrchestrator(project, target="arm")

    def test_no_targets(self, tmp_path):
        (tmp_path / "gatebuild.ini").write_text("[gatebuild]\n")
        with pytest.raises(ProjectConfigError, match="No targets defined"):
            BuildOrchestrator(tmp_path)


class TestConfigure:
    """Tests for configure(), savedefconfig() and diff()."""

    def test_configure_writes_config_and_header(self, project):
        orchestrator = BuildOrchestrator(project)
        result = orchestrator.configure({"NET": "m"})

        assert result.state["NET"] == "m"
        assert "NET" in result.changed
        assert result.config_path == orchestrator.context.config_path
        assert "CONFIG_NET=m" in result.config_path.read_text()
        assert "#define CONFIG_NET_MODULE 1" in orchestrator.context.config_header_path.read_text()

    def test_configure_keeps_prior_values(self, project):
        BuildOrchestrator(project).configure({"NET_DEBUG": "y"})
        result = BuildOrchestrator(project).configure({"HOSTNAME": "edge"})
        assert result.state["NET_DEBUG"] == "y"
        assert result.changed == {"HOSTNAME"}

    def test_configure_reports_overrides(self, project):
        result = BuildOrchestrator(project).configure({"NET": "n", "NET_DEBUG": "y"})
        assert result.state["NET_DEBUG"] == "n"
        assert any("NET_DEBUG requested" in warning for warning in result.warnings)

    def test_delta_files_then_assignments(self, project, tmp_path):
        delta = tmp_path / "debug.delta"
        delta.write_text("CONFIG_NET_DEBUG=y\nCONFIG_HOSTNAME=\"lab\"\n")
        result = BuildOrchestrator(project).configure({"HOSTNAME": "final"}, delta_files=[delta])
        assert result.state["NET_DEBUG"] == "y"
        assert result.state["HOSTNAME"] == "final"

    def test_defconfig_discards_prior(self, project, tmp_path):
        BuildOrchestrator(project).configure({"NET_DEBUG": "y"})
        defconfig = tmp_path / "small_defconfig"
        defconfig.write_text("CONFIG_NET=m\n")
        result = BuildOrchestrator(project).configure(defconfig=defconfig)
        assert result.state["NET"] == "m"
        assert result.state["NET_DEBUG"] == "n"

    def test_reset(self, project):
        BuildOrchestrator(project).configure({"NET_DEBUG": "y"})
        result = BuildOrchestrator(project).configure(reset=True)
        assert result.state["NET_DEBUG"] == "n"

    def test_unknown_symbol(self, project):
        with pytest.raises(InconsistentConfigError):
            BuildOrchestrator(project).configure({"NOPE": "y"})

    def test_savedefconfig(self, project, tmp_path):
        orchestrator = BuildOrchestrator(project)
        orchestrator.configure({"NET": "m", "HOSTNAME": "edge"})
        path = tmp_path / "defconfig"
        assert orchestrator.savedefconfig(path) == 2
        assert sorted(path.read_text().splitlines()) == ['CONFIG_HOSTNAME="edge"', "CONFIG_NET=m"]

    def test_diff(self, project, tmp_path):
        orchestrator = BuildOrchestrator(project)
        orchestrator.configure({"NET": "m"})
        other = tmp_path / "other.config"
        other.write_text("CONFIG_MODULES=y\nCONFIG_NET=y\n# CONFIG_NET_DEBUG is not set\nCONFIG_HOSTNAME=\"box\"\n")
        assert orchestrator.diff(other) == {"NET": ("m", "y")}

    def test_diff_missing_file(self, project, tmp_path):
        with pytest.raises(FileNotFoundError):
            BuildOrchestrator(project).diff(tmp_path / "missing.config")


class TestBuild:
    """Tests for build()."""

    def test_build_without_config_uses_defaults(self, project):
        result, executor = run_build(project)
        assert result.success
        assert result.message == "Build successful"
        assert result.targets == ["kernel"]
        assert sorted(executor.invocations[:2]) == ["main.o", "net/core.o"]
        assert executor.invocations[2] == "kernel"
        orchestrator = BuildOrchestrator(project)
        assert orchestrator.context.config_path.exists()
        assert orchestrator.graph_snapshot_path.exists()

    def test_second_build_is_a_no_op(self, project):
        run_build(project)
        result, executor = run_build(project)
        assert result.success
        assert executor.invocations == []
        assert sorted(result.report.up_to_date) == ["kernel", "main.o", "net/core.o"]

    def test_symbol_referenced_by_source_rebuilds_its_unit(self, project):
        run_build(project)
        BuildOrchestrator(project).configure({"NET_DEBUG": "y"})
        result, executor = run_build(project)
        assert executor.invocations == ["net/core.o", "kernel"]
        assert result.report.up_to_date == ["main.o"]

    def test_used_symbol_rebuilds_its_unit(self, project):
        run_build(project)
        BuildOrchestrator(project).configure({"HOSTNAME": "edge"})
        _, executor = run_build(project)
        assert executor.invocations == ["main.o", "kernel"]

    def test_value_change_reuses_graph_snapshot(self, project):
        """Test that a change to a symbol outside every predicate skips graph construction."""
        run_build(project)
        BuildOrchestrator(project).configure({"HOSTNAME": "edge"})
        with patch("gatebuild.build.orchestrator.construct", wraps=construct) as outer, patch(
            "gatebuild.build.unit_graph.construct", wraps=construct
        ) as inner:
            result, _ = run_build(project)
        assert result.success
        outer.assert_not_called()
        inner.assert_not_called()

    def test_module_build(self, project):
        """Test that NET=m builds net/core.o as a module outside the image."""
        BuildOrchestrator(project).configure({"NET": "m"})
        result, executor = run_build(project)
        assert result.success
        assert result.targets == ["kernel", "net/core.o"]
        assert "net/core.o" in executor.invocations
        orchestrator = BuildOrchestrator(project)
        index = SourceIndex.scan(orchestrator.project.source_root)
        graph = orchestrator.load_graph(index, orchestrator.store.load())
        assert graph["net/core.o"].kind == UnitKind.MODULE
        assert graph.dependencies("kernel") == ["main.o"]

    def test_disabled_directory(self, project):
        BuildOrchestrator(project).configure({"NET": "n"})
        result, executor = run_build(project)
        assert result.success
        assert "net/core.o" not in executor.invocations
        assert "net/core.o" not in result.report.results

    def test_explicit_targets(self, project):
        result, executor = run_build(project, targets=["main.o"])
        assert result.success
        assert executor.invocations == ["main.o"]

    def test_inactive_target(self, project):
        BuildOrchestrator(project).configure({"NET": "n"})
        with pytest.raises(UnitDeclarationError, match="not active"):
            run_build(project, targets=["net/core.o"])

    def test_failure(self, project):
        result, executor = run_build(project, executor=RecordingExecutor(fail={"main.o"}))
        assert not result.success
        assert result.message == "1 units failed, 1 blocked"
        assert result.report.failed == ["main.o"]
        assert result.report.blocked == ["kernel"]

    def test_clean_build(self, project):
        run_build(project)
        _, executor = run_build(project, clean=True)
        assert sorted(executor.invocations) == ["kernel", "main.o", "net/core.o"]

    def test_config_changed_is_reported(self, project):
        run_build(project)
        kconfig = project / "Kconfig.ini"
        kconfig.write_text(kconfig.read_text() + "\n[symbol:USB]\ntype = bool\nprompt = USB\ndefault = y\n")
        result, _ = run_build(project)
        assert result.config_changed == {"USB"}
        assert "CONFIG_USB=y" in BuildOrchestrator(project).context.config_path.read_text()

    def test_undeclared_predicate_symbol_warns(self, project, caplog):
        build_file = project / "src" / "Build.ini"
        build_file.write_text(build_file.read_text() + "\n[object:extra.o]\ninputs = main.c\nwhen = MISSING\n")
        with caplog.at_level(logging.WARNING):
            result, executor = run_build(project)
        assert result.success
        assert "extra.o" not in executor.invocations
        assert "undeclared symbols (treated as n): MISSING" in caplog.text


class TestClean:
    """Tests for clean()."""

    def test_clean_keeps_config(self, project):
        run_build(project)
        orchestrator = BuildOrchestrator(project)
        orchestrator.clean()
        output_root = orchestrator.context.output_root
        assert orchestrator.context.config_path.exists()
        assert not (output_root / "main.o").exists()
        assert not orchestrator.context.cache_dir.exists()
        assert [path.name for path in output_root.iterdir()] == [".config"]

    def test_clean_all(self, project):
        run_build(project)
        orchestrator = BuildOrchestrator(project)
        orchestrator.clean(remove_config=True)
        assert not orchestrator.context.config_path.exists()

    def test_clean_without_output(self, project):
        BuildOrchestrator(project).clean()
